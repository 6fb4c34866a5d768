"""
Reconciliation Engine - Exactly-once Invoke / Revoke against the order ledger.

NO DICTIONARIES - All data uses strongly typed models.

Every operation follows the same discipline:
1. Resolve the transaction identity (before taking any lock)
2. Lock the current trade number, failing fast on contention
3. Look the order up; create it on a miss after the continuity check
4. Apply the payment effect unless the order is already paid
5. Release the lock exactly once, whatever happened in between
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum

from structlog import get_logger

from unipay.exceptions import (
    ConcurrentConflictError,
    OrderCreationError,
    OrderNotFoundError,
    SubscriberMismatchError,
    UniPayError,
)
from unipay.models.identity import TransactionIdentity
from unipay.models.notification import ClassifiedNotification, LifecycleEvent, NotificationAction
from unipay.models.order import Order, PaymentContext
from unipay.models.purchase import PurchaseRecord
from unipay.observability.logging import log_context
from unipay.observability.metrics import metrics
from unipay.services.attach import discard_attach
from unipay.services.protocols import (
    AttachService,
    Locker,
    NoopAttachService,
    NoopLocker,
    OrderService,
)

logger = get_logger(__name__)


class ReconcileOutcome(str, Enum):
    """Successful result of a reconciliation."""

    APPLIED = "applied"  # Payment effect applied now
    ALREADY_PAID = "already_paid"  # Duplicate delivery; ledger untouched
    REVOKED = "revoked"


class ReconciliationEngine:
    """
    Drives Invoke / Revoke for verified purchase records.

    The engine holds no state of its own. Serialization of deliveries for
    the same trade number is entirely the locker's job, and idempotence
    rests on ``Order.is_paid()`` being checked under that lock.
    """

    def __init__(
        self,
        order_service: OrderService,
        locker: Locker | None = None,
        attach_service: AttachService | None = None,
    ) -> None:
        """
        Initialize the engine.

        Args:
            order_service: The external order ledger
            locker: Per-transaction locker (NoopLocker when omitted)
            attach_service: Passthrough payload store (NoopAttachService when omitted)
        """
        self.order_service = order_service
        self.locker: Locker = locker or NoopLocker()
        self.attach_service: AttachService = attach_service or NoopAttachService()

    @asynccontextmanager
    async def _transaction_lock(self, identity: TransactionIdentity) -> AsyncIterator[None]:
        if not await self.locker.lock(identity.trade_no):
            metrics.record_lock_conflict(identity.pay_way.value)
            logger.warning("transaction_lock_conflict")
            raise ConcurrentConflictError(identity.trade_no)

        try:
            yield
        finally:
            try:
                await self.locker.unlock(identity.trade_no)
            except Exception as exc:
                # The primary outcome wins; a stuck database lock expires by TTL
                logger.error("transaction_unlock_failed", error=str(exc))

    async def invoke(self, ctx: PaymentContext, record: PurchaseRecord) -> ReconcileOutcome:
        """
        Apply the payment effect of a verified purchase, at most once.

        Args:
            ctx: Processing context handed through to the ledger
            record: Trust-verified purchase record

        Returns:
            APPLIED, or ALREADY_PAID for a duplicate delivery

        Raises:
            MalformedOrderIdError: Identity could not be resolved
            ConcurrentConflictError: Another worker holds the transaction
            SubscriberMismatchError: Renewal does not continue the subscriber's chain
            OrderCreationError: The ledger refused to create the order
        """
        identity = record.identity()
        ctx.product_id = identity.product_id

        with log_context(trade_no=identity.trade_no, pay_way=identity.pay_way.value):
            try:
                async with self._transaction_lock(identity):
                    try:
                        order = await self.order_service.get_order_by_trade_no(
                            identity.trade_no, identity.pay_way.value
                        )
                    except OrderNotFoundError:
                        order = await self._create_order(ctx, record, identity)

                    if order.is_paid():
                        outcome = ReconcileOutcome.ALREADY_PAID
                    else:
                        await self.order_service.invoke(order)
                        outcome = ReconcileOutcome.APPLIED
            except UniPayError as exc:
                metrics.record_reconciliation(identity.pay_way.value, "invoke", exc.kind.value)
                raise
            except Exception as exc:
                metrics.record_reconciliation(identity.pay_way.value, "invoke", "error")
                metrics.record_error(type(exc).__name__, "invoke")
                raise

            metrics.record_reconciliation(identity.pay_way.value, "invoke", outcome.value)
            logger.info(
                "reconciliation_invoked",
                original_trade_no=identity.original_trade_no,
                outcome=outcome.value,
            )
            return outcome

    async def revoke(self, ctx: PaymentContext, record: PurchaseRecord) -> ReconcileOutcome:
        """
        Undo the payment effect of an existing order.

        Raises:
            ConcurrentConflictError: Another worker holds the transaction
            OrderNotFoundError: Nothing to revoke for this trade number
        """
        identity = record.identity()
        ctx.product_id = identity.product_id

        with log_context(trade_no=identity.trade_no, pay_way=identity.pay_way.value):
            try:
                async with self._transaction_lock(identity):
                    order = await self.order_service.get_order_by_trade_no(
                        identity.trade_no, identity.pay_way.value
                    )
                    await self.order_service.revoke(order)
            except UniPayError as exc:
                metrics.record_reconciliation(identity.pay_way.value, "revoke", exc.kind.value)
                raise
            except Exception as exc:
                metrics.record_reconciliation(identity.pay_way.value, "revoke", "error")
                metrics.record_error(type(exc).__name__, "revoke")
                raise

            metrics.record_reconciliation(
                identity.pay_way.value, "revoke", ReconcileOutcome.REVOKED.value
            )
            logger.info("reconciliation_revoked")
            return ReconcileOutcome.REVOKED

    async def _create_order(
        self,
        ctx: PaymentContext,
        record: PurchaseRecord,
        identity: TransactionIdentity,
    ) -> Order:
        """Create the order for a transaction the ledger has not seen yet."""
        if identity.is_renewal:
            matched = await self.order_service.check_sub_user(
                ctx, identity.original_trade_no, identity.trade_no
            )
            if not matched:
                metrics.record_subscriber_mismatch(identity.pay_way.value)
                logger.warning(
                    "subscriber_mismatch_rejected",
                    security_event=True,
                    original_trade_no=identity.original_trade_no,
                    uid=ctx.uid,
                    client_ip=ctx.client_ip,
                )
                raise SubscriberMismatchError(identity.original_trade_no, identity.trade_no)

        if not ctx.attach:
            ctx.attach = await self._recover_attach(identity.trade_no)

        ctx.purchase = record
        ctx.transaction_id = identity.trade_no

        try:
            order = await self.order_service.post_order(ctx)
        except UniPayError:
            raise
        except Exception as exc:
            logger.error("order_creation_failed", error=str(exc))
            raise OrderCreationError(identity.trade_no, str(exc)) from exc

        info = order.order_info()
        logger.info(
            "order_created",
            out_trade_no=info.out_trade_no,
            subject=info.subject,
            total_fee=info.total_fee,
            currency=info.currency,
            has_attach=bool(info.attach),
        )
        await discard_attach(self.attach_service, identity.trade_no)
        return order

    async def _recover_attach(self, trade_no: str) -> str:
        try:
            attach = await self.attach_service.get(trade_no)
        except Exception as exc:
            logger.warning("attach_record_read_failed", error=str(exc))
            return ""

        if attach:
            logger.info("attach_recovered")
        return attach or ""


@dataclass(frozen=True)
class NotificationResult:
    """What became of one server notification."""

    event: LifecycleEvent | None
    action: NotificationAction
    outcome: ReconcileOutcome | None  # None when nothing was applied
    acknowledged: bool = False  # Purchase acknowledged with the gateway

    @classmethod
    def ignored(cls, event: LifecycleEvent | None = None) -> "NotificationResult":
        return cls(event=event, action=NotificationAction.NONE, outcome=None)


async def apply_notification(
    engine: ReconciliationEngine,
    ctx: PaymentContext,
    classified: ClassifiedNotification,
) -> ReconcileOutcome | None:
    """Run the engine operation a classified notification calls for, if any."""
    if classified.record is None or classified.action is NotificationAction.NONE:
        return None
    if classified.action is NotificationAction.REVOKE:
        return await engine.revoke(ctx, classified.record)
    return await engine.invoke(ctx, classified.record)
