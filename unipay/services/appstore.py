"""
App Store Gateway - Client receipt confirmation and server notifications.

NO DICTIONARIES - All data uses strongly typed models.
"""

from collections.abc import Callable, Sequence
from typing import Any

from structlog import get_logger

from unipay.exceptions import TransactionNotFoundError
from unipay.models.notification import AppStoreNotification
from unipay.models.order import PaymentContext
from unipay.observability.metrics import metrics
from unipay.services.attach import save_attach
from unipay.services.classifier import AppStoreNotificationClassifier, decode_app_store_notification
from unipay.services.receipt_verifier import AppStoreReceiptVerifier
from unipay.services.reconciliation import (
    NotificationResult,
    ReconcileOutcome,
    ReconciliationEngine,
    apply_notification,
)

logger = get_logger(__name__)

AppStoreNotificationFilter = Callable[[AppStoreNotification], bool]


class AppStoreGateway:
    """
    App Store adapter around the reconciliation engine.

    The sync path trusts nothing the client sends except as input to
    Apple's verifyReceipt; the notification path trusts the signed payload.
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        verifier: AppStoreReceiptVerifier,
        classifier: AppStoreNotificationClassifier,
    ) -> None:
        self.engine = engine
        self.verifier = verifier
        self.classifier = classifier

    async def payment(self, ctx: PaymentContext, receipt_data: str) -> ReconcileOutcome:
        """
        Confirm a purchase reported by the app.

        Args:
            ctx: Context with ``transaction_id`` (the transaction to credit) and ``attach``
            receipt_data: Base64 app receipt

        Returns:
            APPLIED or ALREADY_PAID

        Raises:
            TrustVerificationFailedError: Apple did not vouch for the receipt
            IdentityMismatchError: Receipt belongs to another bundle
            TransactionNotFoundError: Receipt does not contain ``ctx.transaction_id``
        """
        # Saved before verification so a later retry can still recover it
        await save_attach(self.engine.attach_service, ctx.transaction_id, ctx.attach)

        receipt = await self.verifier.verify(receipt_data)
        inapp = receipt.find_transaction(ctx.transaction_id)
        if inapp is None:
            logger.warning(
                "appstore_transaction_not_in_receipt",
                transaction_id=ctx.transaction_id,
                receipt_transactions=len(receipt.in_app) + len(receipt.latest_receipt_info),
            )
            raise TransactionNotFoundError(ctx.transaction_id)

        return await self.engine.invoke(ctx, inapp)

    async def notify(
        self,
        body: dict[str, Any],
        ctx: PaymentContext,
        filters: Sequence[AppStoreNotificationFilter] = (),
    ) -> NotificationResult:
        """
        Handle an App Store server notification (V2 signed or legacy V1).

        Args:
            body: Parsed JSON request body
            ctx: Processing context handed through to the ledger
            filters: Predicates; any returning False suppresses processing

        Returns:
            The classified event and what the engine did with it
        """
        notification = decode_app_store_notification(body)

        for accept in filters:
            if not accept(notification):
                logger.info(
                    "appstore_notification_filtered",
                    notification_type=notification.notification_type,
                )
                return NotificationResult.ignored()

        classified = self.classifier.classify(notification)
        metrics.record_notification("app_store", classified.event.value if classified.event else None)

        outcome = await apply_notification(self.engine, ctx, classified)
        return NotificationResult(event=classified.event, action=classified.action, outcome=outcome)
