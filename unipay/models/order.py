"""
Order models - The ledger-facing view of an order and the request context.

The order ledger itself is owned by the host application; only the
shape the reconciliation engine relies on is defined here.
"""

from dataclasses import dataclass, field
from typing import Any, Protocol

from unipay.models.identity import PayWay
from unipay.models.purchase import PurchaseRecord


@dataclass(frozen=True)
class OrderInfo:
    """Summary of an order as stored by the ledger."""

    subject: str  # What was bought
    total_fee: int  # Amount in minor units
    out_trade_no: str  # Our own order number
    trade_no: str  # Gateway trade number
    attach: str  # Caller passthrough payload
    currency: str  # "CNY", "USD", ...


class Order(Protocol):
    """An order owned by the external ledger."""

    def is_paid(self) -> bool:
        """True once the payment effect has been applied."""
        ...

    def order_info(self) -> OrderInfo:
        """Ledger summary of the order."""
        ...


@dataclass
class PaymentContext:
    """
    Per-request processing context handed to the order ledger.

    Mutable on purpose: the engine records the verified purchase and
    product on it before asking the ledger to create an order.
    """

    pay_way: PayWay
    product_id: str = ""
    transaction_id: str = ""
    attach: str = ""
    uid: Any = None
    client_ip: str = ""
    currency: str = ""
    purchase: PurchaseRecord | None = None
    params: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class AttachRecord:
    """Caller passthrough payload saved before receipt verification."""

    trade_no: str
    attach: str

    def __post_init__(self) -> None:
        """Validate record fields."""
        if not self.trade_no:
            raise ValueError("trade_no required for attach record")
