"""
Play Store Gateway - Client purchase confirmation and Real-Time Developer Notifications.

NO DICTIONARIES - All data uses strongly typed models.
"""

import json
from collections.abc import Callable, Sequence

from structlog import get_logger

from unipay.models.notification import ClassifiedNotification, DeveloperNotification
from unipay.models.order import PaymentContext
from unipay.observability.metrics import metrics
from unipay.services.attach import save_attach
from unipay.services.classifier import PlayStoreNotificationClassifier, decode_rtdn
from unipay.services.protocols import PublisherService
from unipay.services.receipt_verifier import PlayStorePurchaseVerifier
from unipay.services.reconciliation import (
    NotificationResult,
    ReconcileOutcome,
    ReconciliationEngine,
    apply_notification,
)

logger = get_logger(__name__)

PlayStoreNotificationFilter = Callable[[DeveloperNotification], bool]


def signed_order_id(purchase_data: str) -> str:
    """
    Read ``orderId`` from purchase data before its signature is checked.

    Only used to key the attach record, which the engine reads back by the
    verified order id. Unreadable data yields an empty id.
    """
    try:
        data = json.loads(purchase_data)
    except ValueError:
        return ""
    if not isinstance(data, dict):
        return ""
    return str(data.get("orderId") or "")


class PlayStoreGateway:
    """Play Store adapter around the reconciliation engine."""

    def __init__(
        self,
        engine: ReconciliationEngine,
        verifier: PlayStorePurchaseVerifier,
        classifier: PlayStoreNotificationClassifier,
        publisher: PublisherService,
    ) -> None:
        self.engine = engine
        self.verifier = verifier
        self.classifier = classifier
        self.publisher = publisher

    @property
    def package_name(self) -> str:
        return self.classifier.package_name

    async def payment(
        self, ctx: PaymentContext, purchase_data: str, signature: str
    ) -> ReconcileOutcome:
        """
        Confirm a purchase reported by the app.

        Args:
            ctx: Processing context handed through to the ledger
            purchase_data: ``INAPP_PURCHASE_DATA`` JSON exactly as signed
            signature: ``INAPP_DATA_SIGNATURE``

        Returns:
            APPLIED or ALREADY_PAID

        Raises:
            TrustVerificationFailedError: Bad signature, or a pending or canceled purchase
            IdentityMismatchError: Purchase belongs to another package
        """
        await save_attach(self.engine.attach_service, signed_order_id(purchase_data), ctx.attach)

        purchase = self.verifier.verify(purchase_data, signature)
        return await self.engine.invoke(ctx, purchase)

    async def notify(
        self,
        payload: bytes | str,
        ctx: PaymentContext,
        filters: Sequence[PlayStoreNotificationFilter] = (),
    ) -> NotificationResult:
        """
        Handle a Pub/Sub push carrying a developer notification.

        The purchase is acknowledged with Google only after the engine
        returned successfully. A failure anywhere propagates so Pub/Sub
        redelivers; the redelivery finds the order paid and acknowledges.

        Args:
            payload: Raw Pub/Sub push body
            ctx: Processing context handed through to the ledger
            filters: Predicates; any returning False suppresses processing

        Returns:
            The classified event, what the engine did and whether Google was acknowledged
        """
        notification = decode_rtdn(payload)

        for accept in filters:
            if not accept(notification):
                logger.info("playstore_notification_filtered", message_id=notification.message_id)
                return NotificationResult.ignored()

        classified = await self.classifier.classify(notification)
        metrics.record_notification(
            "play_store", classified.event.value if classified.event else None
        )

        outcome = await apply_notification(self.engine, ctx, classified)

        acknowledged = False
        if classified.needs_acknowledgement():
            await self._acknowledge(notification, classified)
            acknowledged = True

        return NotificationResult(
            event=classified.event,
            action=classified.action,
            outcome=outcome,
            acknowledged=acknowledged,
        )

    async def _acknowledge(
        self, notification: DeveloperNotification, classified: ClassifiedNotification
    ) -> None:
        if notification.subscription is not None and classified.subscription is not None:
            purchase_type = "subscription"
            call = self.publisher.acknowledge_subscription(
                self.package_name,
                notification.subscription.subscription_id,
                notification.subscription.purchase_token,
                classified.subscription.developer_payload,
            )
        elif notification.one_time_product is not None and classified.product is not None:
            purchase_type = "product"
            call = self.publisher.acknowledge_product(
                self.package_name,
                notification.one_time_product.sku,
                notification.one_time_product.purchase_token,
                classified.product.developer_payload,
            )
        else:
            return

        try:
            await call
        except Exception:
            metrics.record_acknowledgement(purchase_type, success=False)
            raise

        metrics.record_acknowledgement(purchase_type, success=True)
        logger.info(
            "playstore_purchase_acknowledged",
            purchase_type=purchase_type,
            message_id=notification.message_id,
        )
