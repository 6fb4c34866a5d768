"""
Notification Classifier - Reduces gateway notifications to lifecycle events.

NO DICTIONARIES - Decoded notifications are returned as typed models.

Gateway codes are mapped to LifecycleEvent by pure functions. Play Store
notifications are only a signal: the classifier re-queries the publisher
API for the authoritative purchase state before anything is decided.
"""

import base64
import binascii
import json
from typing import Any

import jwt
from structlog import get_logger

from unipay.exceptions import DataIntegrityError, IdentityMismatchError, NotificationDecodeError
from unipay.models.notification import (
    INVOKE_EVENTS,
    REVOKE_EVENTS,
    AppStoreNotification,
    ClassifiedNotification,
    DeveloperNotification,
    LifecycleEvent,
    NotificationAction,
    OneTimeProductNotification,
    OneTimeProductNotificationType,
    SubscriptionNotification,
    SubscriptionNotificationType,
)
from unipay.models.purchase import (
    AppStoreInApp,
    ProductPurchase,
    PlayStoreInApp,
    SubscriptionPurchase,
    latest_transaction,
)
from unipay.services.protocols import PublisherService

logger = get_logger(__name__)

# Play subscription payment states
PAYMENT_PENDING = 0
PAYMENT_RECEIVED = 1
PAYMENT_FREE_TRIAL = 2
PAYMENT_DEFERRED = 3

_SUBSCRIPTION_EVENTS: dict[int, LifecycleEvent] = {
    SubscriptionNotificationType.RECOVERED: LifecycleEvent.RECOVERED,
    SubscriptionNotificationType.RENEWED: LifecycleEvent.RENEWED,
    SubscriptionNotificationType.CANCELED: LifecycleEvent.CANCELED,
    SubscriptionNotificationType.PURCHASED: LifecycleEvent.INITIAL_PURCHASE,
    SubscriptionNotificationType.ON_HOLD: LifecycleEvent.ON_HOLD,
    SubscriptionNotificationType.IN_GRACE_PERIOD: LifecycleEvent.GRACE_PERIOD,
    SubscriptionNotificationType.RESTARTED: LifecycleEvent.RESTARTED,
    SubscriptionNotificationType.DEFERRED: LifecycleEvent.DEFERRED,
    SubscriptionNotificationType.PAUSED: LifecycleEvent.ON_HOLD,
    SubscriptionNotificationType.REVOKED: LifecycleEvent.REVOKED,
    SubscriptionNotificationType.EXPIRED: LifecycleEvent.EXPIRED,
}

_ONE_TIME_EVENTS: dict[int, LifecycleEvent] = {
    OneTimeProductNotificationType.PURCHASED: LifecycleEvent.INITIAL_PURCHASE,
    OneTimeProductNotificationType.CANCELED: LifecycleEvent.CANCELED,
}

# App Store Server Notifications V2: (notificationType, subtype) -> event.
# A None subtype matches any subtype not listed explicitly.
_APP_STORE_V2_EVENTS: dict[tuple[str, str | None], LifecycleEvent] = {
    ("SUBSCRIBED", "INITIAL_BUY"): LifecycleEvent.INITIAL_PURCHASE,
    ("SUBSCRIBED", "RESUBSCRIBE"): LifecycleEvent.RESTARTED,
    ("SUBSCRIBED", None): LifecycleEvent.INITIAL_PURCHASE,
    ("ONE_TIME_CHARGE", None): LifecycleEvent.INITIAL_PURCHASE,
    ("DID_RENEW", "BILLING_RECOVERY"): LifecycleEvent.RECOVERED,
    ("DID_RENEW", None): LifecycleEvent.RENEWED,
    ("DID_FAIL_TO_RENEW", "GRACE_PERIOD"): LifecycleEvent.GRACE_PERIOD,
    ("DID_FAIL_TO_RENEW", None): LifecycleEvent.ON_HOLD,
    ("DID_CHANGE_RENEWAL_STATUS", "AUTO_RENEW_DISABLED"): LifecycleEvent.CANCELED,
    ("EXPIRED", None): LifecycleEvent.EXPIRED,
    ("GRACE_PERIOD_EXPIRED", None): LifecycleEvent.EXPIRED,
    ("REFUND", None): LifecycleEvent.REFUNDED,
    ("REVOKE", None): LifecycleEvent.REVOKED,
    ("TEST", None): LifecycleEvent.TEST,
}

# Legacy App Store server notifications (V1)
_APP_STORE_V1_EVENTS: dict[str, LifecycleEvent] = {
    "INITIAL_BUY": LifecycleEvent.INITIAL_PURCHASE,
    "DID_RECOVER": LifecycleEvent.RECOVERED,
    "DID_RENEW": LifecycleEvent.RENEWED,
    "INTERACTIVE_RENEWAL": LifecycleEvent.RESTARTED,
    "CANCEL": LifecycleEvent.CANCELED,
    "REFUND": LifecycleEvent.REFUNDED,
    "DID_FAIL_TO_RENEW": LifecycleEvent.ON_HOLD,
}


# ============================================================================
# Pure classification
# ============================================================================


def classify_subscription_notification(notification_type: int) -> LifecycleEvent | None:
    """Lifecycle event for a Play subscription notification type, None if irrelevant."""
    return _SUBSCRIPTION_EVENTS.get(notification_type)


def classify_one_time_notification(notification_type: int) -> LifecycleEvent | None:
    """Lifecycle event for a Play one-time product notification type."""
    return _ONE_TIME_EVENTS.get(notification_type)


def classify_app_store_v2(notification_type: str, subtype: str | None) -> LifecycleEvent | None:
    """Lifecycle event for an App Store V2 notification type and subtype."""
    event = _APP_STORE_V2_EVENTS.get((notification_type, subtype))
    if event is None and subtype is not None:
        event = _APP_STORE_V2_EVENTS.get((notification_type, None))
    return event


def classify_app_store_v1(notification_type: str) -> LifecycleEvent | None:
    """Lifecycle event for a legacy App Store notification type."""
    return _APP_STORE_V1_EVENTS.get(notification_type)


def action_for_event(event: LifecycleEvent | None) -> NotificationAction:
    """Engine operation an event calls for."""
    if event in INVOKE_EVENTS:
        return NotificationAction.INVOKE
    if event in REVOKE_EVENTS:
        return NotificationAction.REVOKE
    return NotificationAction.NONE


def subscription_action(event: LifecycleEvent | None, payment_state: int | None) -> NotificationAction:
    """
    Engine operation for a Play subscription event, given the re-queried payment state.

    A received payment makes an activating event Invoke-eligible. A free
    trial only invokes the initial purchase, so the trial's order exists
    when its first renewal is checked for continuity. A revocation applies
    whether the payment was received or still a free trial.
    """
    if event in INVOKE_EVENTS and payment_state == PAYMENT_RECEIVED:
        return NotificationAction.INVOKE
    if event is LifecycleEvent.INITIAL_PURCHASE and payment_state == PAYMENT_FREE_TRIAL:
        return NotificationAction.INVOKE
    if event in REVOKE_EVENTS and payment_state in (PAYMENT_RECEIVED, PAYMENT_FREE_TRIAL):
        return NotificationAction.REVOKE
    return NotificationAction.NONE


# ============================================================================
# Play Store
# ============================================================================


def _parse_developer_notification(data: dict[str, Any], message_id: str) -> DeveloperNotification:
    subscription = None
    if sub := data.get("subscriptionNotification"):
        subscription = SubscriptionNotification(
            version=str(sub.get("version", "")),
            notification_type=int(sub.get("notificationType", 0)),
            purchase_token=str(sub.get("purchaseToken", "")),
            subscription_id=str(sub.get("subscriptionId", "")),
        )

    one_time_product = None
    if otp := data.get("oneTimeProductNotification"):
        one_time_product = OneTimeProductNotification(
            version=str(otp.get("version", "")),
            notification_type=int(otp.get("notificationType", 0)),
            purchase_token=str(otp.get("purchaseToken", "")),
            sku=str(otp.get("sku", "")),
        )

    return DeveloperNotification(
        message_id=message_id,
        version=str(data.get("version", "")),
        package_name=str(data.get("packageName", "")),
        event_time_millis=int(data.get("eventTimeMillis") or 0),
        subscription=subscription,
        one_time_product=one_time_product,
        is_test="testNotification" in data,
    )


def decode_rtdn(payload: bytes | str) -> DeveloperNotification:
    """
    Decode a Pub/Sub push envelope carrying a Real-Time Developer Notification.

    Args:
        payload: Raw request body ``{"subscription": ..., "message": {"data", "messageId"}}``

    Returns:
        Decoded developer notification

    Raises:
        NotificationDecodeError: Envelope, base64 or inner JSON is malformed
    """
    try:
        envelope = json.loads(payload)
        message = envelope.get("message") or {}
        encoded = message.get("data")
        if not encoded:
            raise NotificationDecodeError("no message data in Pub/Sub envelope")
        data = json.loads(base64.b64decode(encoded).decode("utf-8"))
        if not isinstance(data, dict):
            raise NotificationDecodeError("developer notification is not an object")
        return _parse_developer_notification(data, str(message.get("messageId", "")))
    except NotificationDecodeError:
        raise
    except (ValueError, TypeError, AttributeError, binascii.Error) as exc:
        logger.error("playstore_notification_decode_failed", error=str(exc))
        raise NotificationDecodeError(f"invalid Play notification: {exc}") from exc


def _subscription_record(
    package_name: str,
    notification: SubscriptionNotification,
    subscription: SubscriptionPurchase,
) -> PlayStoreInApp | None:
    if not subscription.order_id:
        return None
    return PlayStoreInApp(
        order_id=subscription.order_id,
        package_name=package_name,
        product_id=notification.subscription_id,
        purchase_token=notification.purchase_token,
        purchase_time_ms=subscription.start_time_millis,
        developer_payload=subscription.developer_payload,
        auto_renewing=subscription.auto_renewing,
        subscription=subscription,
    )


def _product_record(
    package_name: str,
    notification: OneTimeProductNotification,
    product: ProductPurchase,
) -> PlayStoreInApp | None:
    if not product.order_id:
        return None
    return PlayStoreInApp(
        order_id=product.order_id,
        package_name=package_name,
        product_id=notification.sku,
        purchase_token=notification.purchase_token,
        purchase_time_ms=product.purchase_time_millis,
        purchase_state=product.purchase_state,
        developer_payload=product.developer_payload,
    )


class PlayStoreNotificationClassifier:
    """Classifies RTDNs using the publisher API as the source of truth."""

    def __init__(self, publisher: PublisherService, package_name: str) -> None:
        self.publisher = publisher
        self.package_name = package_name

    async def classify(self, notification: DeveloperNotification) -> ClassifiedNotification:
        """
        Classify a decoded developer notification.

        Returns:
            Event, engine action and the authoritative purchase record

        Raises:
            IdentityMismatchError: Notification is for another package
            PublisherError: The publisher re-query failed
            DataIntegrityError: An actionable purchase has no order id
        """
        if notification.package_name != self.package_name:
            raise IdentityMismatchError(self.package_name, notification.package_name)

        if notification.subscription is not None:
            classified = await self._classify_subscription(notification.subscription)
        elif notification.one_time_product is not None:
            classified = await self._classify_one_time(notification.one_time_product)
        elif notification.is_test:
            classified = ClassifiedNotification(
                event=LifecycleEvent.TEST, action=NotificationAction.NONE, record=None
            )
        else:
            classified = ClassifiedNotification(
                event=None, action=NotificationAction.NONE, record=None
            )

        if classified.action is not NotificationAction.NONE and classified.record is None:
            raise DataIntegrityError("publisher returned a purchase without an order id")

        logger.info(
            "playstore_notification_classified",
            message_id=notification.message_id,
            lifecycle_event=classified.event.value if classified.event else None,
            action=classified.action.value,
        )
        return ClassifiedNotification(
            event=classified.event,
            action=classified.action,
            record=classified.record,
            notification_id=notification.message_id,
            subscription=classified.subscription,
            product=classified.product,
        )

    async def _classify_subscription(
        self, notification: SubscriptionNotification
    ) -> ClassifiedNotification:
        event = classify_subscription_notification(notification.notification_type)
        subscription = await self.publisher.verify_subscription(
            self.package_name, notification.subscription_id, notification.purchase_token
        )
        return ClassifiedNotification(
            event=event,
            action=subscription_action(event, subscription.payment_state),
            record=_subscription_record(self.package_name, notification, subscription),
            subscription=subscription,
        )

    async def _classify_one_time(
        self, notification: OneTimeProductNotification
    ) -> ClassifiedNotification:
        event = classify_one_time_notification(notification.notification_type)
        if event is not LifecycleEvent.INITIAL_PURCHASE:
            # Canceled pending purchases never reached the ledger
            return ClassifiedNotification(event=event, action=NotificationAction.NONE, record=None)

        product = await self.publisher.verify_product(
            self.package_name, notification.sku, notification.purchase_token
        )
        eligible = product.is_purchased() and product.needs_acknowledgement()
        return ClassifiedNotification(
            event=event,
            action=NotificationAction.INVOKE if eligible else NotificationAction.NONE,
            record=_product_record(self.package_name, notification, product),
            product=product,
        )


# ============================================================================
# App Store
# ============================================================================


def _decode_jws(signed_data: str) -> dict[str, Any]:
    """
    Decode JWS signed data from Apple.

    The x5c certificate chain is not verified here; the payload is
    treated as a signal and identities are bound to the configured bundle.
    """
    try:
        payload: dict[str, Any] = jwt.decode(signed_data, options={"verify_signature": False})
    except jwt.exceptions.DecodeError as exc:
        raise NotificationDecodeError(f"invalid JWS data: {exc}") from exc
    return payload


def decode_app_store_notification(body: dict[str, Any]) -> AppStoreNotification:
    """
    Decode an App Store server notification body, V2 (signed) or legacy V1.

    Raises:
        NotificationDecodeError: Neither format could be decoded
    """
    if "signedPayload" in body:
        payload = _decode_jws(str(body["signedPayload"]))
        data = payload.get("data") or {}
        transaction = None
        if signed_transaction := data.get("signedTransactionInfo"):
            try:
                transaction = AppStoreInApp.from_signed_transaction(_decode_jws(signed_transaction))
            except ValueError as exc:
                raise NotificationDecodeError(f"incomplete transaction info: {exc}") from exc
        return AppStoreNotification(
            notification_type=str(payload.get("notificationType", "")),
            subtype=payload.get("subtype"),
            notification_uuid=str(payload.get("notificationUUID", "")),
            version=str(payload.get("version", "2.0")),
            bundle_id=str(data.get("bundleId", "")),
            environment=str(data.get("environment", "")),
            transaction=transaction,
        )

    if "notification_type" in body:
        unified = body.get("unified_receipt") or {}
        try:
            inapps = [AppStoreInApp.from_receipt(e) for e in unified.get("latest_receipt_info") or []]
        except (ValueError, TypeError) as exc:
            raise NotificationDecodeError(f"invalid latest_receipt_info: {exc}") from exc
        return AppStoreNotification(
            notification_type=str(body["notification_type"]),
            subtype=None,
            notification_uuid="",
            version="1",
            bundle_id=str(body.get("bid", "")),
            environment=str(body.get("environment", "")),
            transaction=latest_transaction(inapps),
        )

    raise NotificationDecodeError("unrecognized App Store notification body")


class AppStoreNotificationClassifier:
    """Classifies App Store server notifications bound to one bundle."""

    def __init__(self, bundle_id: str) -> None:
        self.bundle_id = bundle_id

    def classify(self, notification: AppStoreNotification) -> ClassifiedNotification:
        """
        Classify a decoded App Store notification.

        Raises:
            IdentityMismatchError: Notification is for another bundle
            DataIntegrityError: An actionable notification carries no transaction
        """
        if notification.bundle_id and notification.bundle_id != self.bundle_id:
            raise IdentityMismatchError(self.bundle_id, notification.bundle_id)

        if notification.version == "1":
            event = classify_app_store_v1(notification.notification_type)
        else:
            event = classify_app_store_v2(notification.notification_type, notification.subtype)

        action = action_for_event(event)
        if action is not NotificationAction.NONE and notification.transaction is None:
            raise DataIntegrityError(
                f"{notification.notification_type} notification carries no transaction"
            )

        logger.info(
            "appstore_notification_classified",
            notification_type=notification.notification_type,
            subtype=notification.subtype,
            lifecycle_event=event.value if event else None,
            action=action.value,
        )
        return ClassifiedNotification(
            event=event,
            action=action,
            record=notification.transaction,
            notification_id=notification.notification_uuid,
        )
