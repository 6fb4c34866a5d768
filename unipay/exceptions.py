"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Every exception carries a stable ``kind`` so callers can tell retriable
network trouble from permanent rejections without parsing messages.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Stable error kinds surfaced to callers."""

    TRUST_VERIFICATION_FAILED = "trust_verification_failed"
    IDENTITY_MISMATCH = "identity_mismatch"
    CONCURRENT_CONFLICT = "concurrent_conflict"
    SUBSCRIBER_MISMATCH = "subscriber_mismatch"
    ORDER_NOT_FOUND = "order_not_found"
    TRANSACTION_NOT_FOUND = "transaction_not_found"
    ORDER_CREATION = "order_creation"
    DATA_INTEGRITY = "data_integrity"
    NOTIFICATION_DECODE = "notification_decode"
    PUBLISHER = "publisher"


class UniPayError(Exception):
    """Base exception for all reconciliation errors."""

    kind: ErrorKind = ErrorKind.DATA_INTEGRITY
    retryable: bool = False


class TrustVerificationFailedError(UniPayError):
    """Raised when the gateway's trust authority did not vouch for a receipt."""

    kind = ErrorKind.TRUST_VERIFICATION_FAILED

    def __init__(self, message: str, status: int | None = None, retryable: bool = False) -> None:
        self.message = message
        self.status = status
        self.retryable = retryable
        super().__init__(f"Trust verification failed: {message}")


class IdentityMismatchError(UniPayError):
    """Raised when a verified receipt belongs to another bundle/package."""

    kind = ErrorKind.IDENTITY_MISMATCH

    def __init__(self, expected: str, actual: str) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Identity mismatch: expected {expected!r}, got {actual!r}")


class ConcurrentConflictError(UniPayError):
    """Raised when another worker already holds the transaction lock."""

    kind = ErrorKind.CONCURRENT_CONFLICT
    retryable = True

    def __init__(self, trade_no: str) -> None:
        self.trade_no = trade_no
        super().__init__(f"Concurrent processing of transaction {trade_no}")


class SubscriberMismatchError(UniPayError):
    """Raised when a renewal does not belong to the original subscriber."""

    kind = ErrorKind.SUBSCRIBER_MISMATCH

    def __init__(self, original_trade_no: str, trade_no: str) -> None:
        self.original_trade_no = original_trade_no
        self.trade_no = trade_no
        super().__init__(
            f"Subscriber mismatch: {trade_no} does not continue subscription {original_trade_no}"
        )


class OrderNotFoundError(UniPayError):
    """Raised by the order ledger when no order exists for a trade number."""

    kind = ErrorKind.ORDER_NOT_FOUND

    def __init__(self, trade_no: str, pay_way: str) -> None:
        self.trade_no = trade_no
        self.pay_way = pay_way
        super().__init__(f"Order not found: {pay_way}/{trade_no}")


class TransactionNotFoundError(UniPayError):
    """Raised when a verified receipt does not contain the requested transaction."""

    kind = ErrorKind.TRANSACTION_NOT_FOUND

    def __init__(self, transaction_id: str) -> None:
        self.transaction_id = transaction_id
        super().__init__(f"Transaction not found in receipt: {transaction_id}")


class OrderCreationError(UniPayError):
    """Raised when the order ledger refuses to create an order."""

    kind = ErrorKind.ORDER_CREATION

    def __init__(self, trade_no: str, reason: str) -> None:
        self.trade_no = trade_no
        self.reason = reason
        super().__init__(f"Order creation failed for {trade_no}: {reason}")


class DataIntegrityError(UniPayError):
    """Raised when gateway data violates an expected format."""

    kind = ErrorKind.DATA_INTEGRITY

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class MalformedOrderIdError(DataIntegrityError):
    """Raised when a Play Store order id has an unrecognized renewal suffix."""

    def __init__(self, order_id: str) -> None:
        self.order_id = order_id
        super().__init__(f"Unrecognized Play Store order id format: {order_id!r}")


class NotificationDecodeError(UniPayError):
    """Raised when a server notification envelope cannot be decoded."""

    kind = ErrorKind.NOTIFICATION_DECODE

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Notification decode error: {message}")


class PublisherError(UniPayError):
    """Raised when the Play publisher API call fails."""

    kind = ErrorKind.PUBLISHER
    retryable = True

    def __init__(self, message: str, status: int | None = None) -> None:
        self.message = message
        self.status = status
        super().__init__(f"Publisher API error: {message}")
