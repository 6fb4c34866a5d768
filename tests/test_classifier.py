"""
Tests for notification decoding and classification.

Covers:
- Gateway code to lifecycle event tables
- Pub/Sub envelope decoding
- Play classification against re-queried publisher state
- App Store V2 signed and legacy V1 notifications
"""

import base64
import json

import jwt
import pytest

from tests.conftest import BUNDLE_ID, PACKAGE_NAME, pubsub_envelope
from unipay.exceptions import (
    DataIntegrityError,
    IdentityMismatchError,
    NotificationDecodeError,
)
from unipay.models.notification import (
    LifecycleEvent,
    NotificationAction,
    SubscriptionNotificationType,
)
from unipay.models.purchase import ProductPurchase, SubscriptionPurchase
from unipay.services.classifier import (
    AppStoreNotificationClassifier,
    PlayStoreNotificationClassifier,
    action_for_event,
    classify_app_store_v1,
    classify_app_store_v2,
    classify_one_time_notification,
    classify_subscription_notification,
    decode_app_store_notification,
    decode_rtdn,
    subscription_action,
)

JWS_KEY = "unipay-test-signing-key-0123456789abcdef"


def sign(payload: dict) -> str:
    return jwt.encode(payload, JWS_KEY, algorithm="HS256")


def subscription_rtdn(notification_type: int, package_name: str = PACKAGE_NAME) -> dict:
    return {
        "version": "1.0",
        "packageName": package_name,
        "eventTimeMillis": "1700000000000",
        "subscriptionNotification": {
            "version": "1.0",
            "notificationType": notification_type,
            "purchaseToken": "sub-token",
            "subscriptionId": "monthly",
        },
    }


def one_time_rtdn(notification_type: int) -> dict:
    return {
        "version": "1.0",
        "packageName": PACKAGE_NAME,
        "eventTimeMillis": "1700000000000",
        "oneTimeProductNotification": {
            "version": "1.0",
            "notificationType": notification_type,
            "purchaseToken": "otp-token",
            "sku": "coins_100",
        },
    }


# ============================================================================
# Event Tables
# ============================================================================


class TestEventTables:
    """Tests for the pure code-to-event mappings."""

    @pytest.mark.parametrize(
        ("notification_type", "expected"),
        [
            (1, LifecycleEvent.RECOVERED),
            (2, LifecycleEvent.RENEWED),
            (3, LifecycleEvent.CANCELED),
            (4, LifecycleEvent.INITIAL_PURCHASE),
            (5, LifecycleEvent.ON_HOLD),
            (6, LifecycleEvent.GRACE_PERIOD),
            (7, LifecycleEvent.RESTARTED),
            (8, None),
            (9, LifecycleEvent.DEFERRED),
            (10, LifecycleEvent.ON_HOLD),
            (11, None),
            (12, LifecycleEvent.REVOKED),
            (13, LifecycleEvent.EXPIRED),
            (99, None),
        ],
    )
    def test_play_subscription_types(self, notification_type, expected):
        """Every Play subscription type maps to its lifecycle event."""
        assert classify_subscription_notification(notification_type) == expected

    def test_play_one_time_types(self):
        """One-time product types map to purchase and cancel."""
        assert classify_one_time_notification(1) is LifecycleEvent.INITIAL_PURCHASE
        assert classify_one_time_notification(2) is LifecycleEvent.CANCELED
        assert classify_one_time_notification(3) is None

    @pytest.mark.parametrize(
        ("notification_type", "subtype", "expected"),
        [
            ("SUBSCRIBED", "INITIAL_BUY", LifecycleEvent.INITIAL_PURCHASE),
            ("SUBSCRIBED", "RESUBSCRIBE", LifecycleEvent.RESTARTED),
            ("DID_RENEW", None, LifecycleEvent.RENEWED),
            ("DID_RENEW", "BILLING_RECOVERY", LifecycleEvent.RECOVERED),
            ("DID_FAIL_TO_RENEW", "GRACE_PERIOD", LifecycleEvent.GRACE_PERIOD),
            ("DID_FAIL_TO_RENEW", None, LifecycleEvent.ON_HOLD),
            ("DID_CHANGE_RENEWAL_STATUS", "AUTO_RENEW_DISABLED", LifecycleEvent.CANCELED),
            ("DID_CHANGE_RENEWAL_STATUS", "AUTO_RENEW_ENABLED", None),
            ("EXPIRED", "VOLUNTARY", LifecycleEvent.EXPIRED),
            ("REFUND", None, LifecycleEvent.REFUNDED),
            ("REVOKE", None, LifecycleEvent.REVOKED),
            ("CONSUMPTION_REQUEST", None, None),
        ],
    )
    def test_app_store_v2(self, notification_type, subtype, expected):
        """App Store V2 types and subtypes map to lifecycle events."""
        assert classify_app_store_v2(notification_type, subtype) == expected

    def test_app_store_v1(self):
        """Legacy App Store types map to lifecycle events."""
        assert classify_app_store_v1("INITIAL_BUY") is LifecycleEvent.INITIAL_PURCHASE
        assert classify_app_store_v1("DID_RECOVER") is LifecycleEvent.RECOVERED
        assert classify_app_store_v1("INTERACTIVE_RENEWAL") is LifecycleEvent.RESTARTED
        assert classify_app_store_v1("PRICE_INCREASE_CONSENT") is None

    def test_actions(self):
        """Only activating events invoke and only revocation revokes."""
        assert action_for_event(LifecycleEvent.RENEWED) is NotificationAction.INVOKE
        assert action_for_event(LifecycleEvent.REVOKED) is NotificationAction.REVOKE
        assert action_for_event(LifecycleEvent.REFUNDED) is NotificationAction.NONE
        assert action_for_event(LifecycleEvent.CANCELED) is NotificationAction.NONE
        assert action_for_event(None) is NotificationAction.NONE

    @pytest.mark.parametrize(
        ("event", "payment_state", "expected"),
        [
            (LifecycleEvent.RENEWED, 1, NotificationAction.INVOKE),
            (LifecycleEvent.INITIAL_PURCHASE, 1, NotificationAction.INVOKE),
            (LifecycleEvent.INITIAL_PURCHASE, 2, NotificationAction.INVOKE),
            (LifecycleEvent.RENEWED, 2, NotificationAction.NONE),
            (LifecycleEvent.RECOVERED, 2, NotificationAction.NONE),
            (LifecycleEvent.RESTARTED, 2, NotificationAction.NONE),
            (LifecycleEvent.INITIAL_PURCHASE, 0, NotificationAction.NONE),
            (LifecycleEvent.RENEWED, None, NotificationAction.NONE),
            (LifecycleEvent.REVOKED, 1, NotificationAction.REVOKE),
            (LifecycleEvent.REVOKED, 2, NotificationAction.REVOKE),
            (LifecycleEvent.REVOKED, 0, NotificationAction.NONE),
            (LifecycleEvent.CANCELED, 1, NotificationAction.NONE),
        ],
    )
    def test_subscription_action_by_payment_state(self, event, payment_state, expected):
        """Renewals need a received payment; a new purchase also invokes as a free trial."""
        assert subscription_action(event, payment_state) is expected


# ============================================================================
# Pub/Sub Decoding
# ============================================================================


class TestDecodeRtdn:
    """Tests for Real-Time Developer Notification decoding."""

    def test_subscription_notification(self):
        """Test decoding a subscription notification envelope."""
        notification = decode_rtdn(pubsub_envelope(subscription_rtdn(2), message_id="m-42"))

        assert notification.message_id == "m-42"
        assert notification.package_name == PACKAGE_NAME
        assert notification.event_time_millis == 1700000000000
        assert notification.subscription.notification_type == SubscriptionNotificationType.RENEWED
        assert notification.subscription.subscription_id == "monthly"
        assert notification.one_time_product is None
        assert not notification.is_test

    def test_test_notification(self):
        """Test decoding a Play Console test notification."""
        notification = decode_rtdn(
            pubsub_envelope(
                {"version": "1.0", "packageName": PACKAGE_NAME, "testNotification": {"version": "1.0"}}
            )
        )

        assert notification.is_test

    def test_missing_data(self):
        """Test that an envelope without message data is rejected."""
        with pytest.raises(NotificationDecodeError, match="no message data"):
            decode_rtdn(json.dumps({"message": {"messageId": "1"}}))

    def test_invalid_json(self):
        """Test that a non-JSON body is rejected."""
        with pytest.raises(NotificationDecodeError):
            decode_rtdn(b"not json")

    def test_invalid_inner_payload(self):
        """Test that non-JSON message data is rejected."""
        data = base64.b64encode(b"garbage").decode("ascii")

        with pytest.raises(NotificationDecodeError):
            decode_rtdn(json.dumps({"message": {"data": data}}))


# ============================================================================
# Play Classification
# ============================================================================


class TestPlayStoreNotificationClassifier:
    """Tests for PlayStoreNotificationClassifier."""

    @pytest.fixture
    def classifier(self, publisher) -> PlayStoreNotificationClassifier:
        return PlayStoreNotificationClassifier(publisher, PACKAGE_NAME)

    @pytest.mark.asyncio
    async def test_renewal_with_received_payment(self, classifier, publisher):
        """Test that a paid renewal invokes with the re-queried order id."""
        publisher.verify_subscription.return_value = SubscriptionPurchase(
            order_id="GPA.1111-2222-3333-44444..1", payment_state=1, acknowledgement_state=1
        )

        classified = await classifier.classify(decode_rtdn(pubsub_envelope(subscription_rtdn(2))))

        publisher.verify_subscription.assert_awaited_once_with(PACKAGE_NAME, "monthly", "sub-token")
        assert classified.event is LifecycleEvent.RENEWED
        assert classified.action is NotificationAction.INVOKE
        assert classified.record.order_id == "GPA.1111-2222-3333-44444..1"
        assert classified.record.product_id == "monthly"
        assert classified.notification_id == "msg-1"

    @pytest.mark.asyncio
    async def test_free_trial_purchase_invoked(self, classifier, publisher):
        """Test that a free trial start is Invoke-eligible and needs acknowledging."""
        publisher.verify_subscription.return_value = SubscriptionPurchase(
            order_id="GPA.5555", payment_state=2, acknowledgement_state=0
        )

        classified = await classifier.classify(decode_rtdn(pubsub_envelope(subscription_rtdn(4))))

        assert classified.event is LifecycleEvent.INITIAL_PURCHASE
        assert classified.action is NotificationAction.INVOKE
        assert classified.record.is_free_trial()
        assert classified.needs_acknowledgement()

    @pytest.mark.asyncio
    async def test_revocation(self, classifier, publisher):
        """Test that a revoked subscription revokes."""
        publisher.verify_subscription.return_value = SubscriptionPurchase(
            order_id="GPA.5555", payment_state=1, acknowledgement_state=1
        )

        classified = await classifier.classify(decode_rtdn(pubsub_envelope(subscription_rtdn(12))))

        assert classified.action is NotificationAction.REVOKE

    @pytest.mark.asyncio
    async def test_package_mismatch(self, classifier, publisher):
        """Test that notifications for another app are rejected before any re-query."""
        payload = pubsub_envelope(subscription_rtdn(2, package_name="com.other.app"))

        with pytest.raises(IdentityMismatchError):
            await classifier.classify(decode_rtdn(payload))

        publisher.verify_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_actionable_without_order_id(self, classifier, publisher):
        """Test that an actionable purchase without order id is a data integrity error."""
        publisher.verify_subscription.return_value = SubscriptionPurchase(
            order_id="", payment_state=1, acknowledgement_state=0
        )

        with pytest.raises(DataIntegrityError):
            await classifier.classify(decode_rtdn(pubsub_envelope(subscription_rtdn(2))))

    @pytest.mark.asyncio
    async def test_one_time_purchase(self, classifier, publisher):
        """Test that an unacknowledged one-time purchase invokes."""
        publisher.verify_product.return_value = ProductPurchase(
            order_id="GPA.7777", purchase_state=0, acknowledgement_state=0
        )

        classified = await classifier.classify(decode_rtdn(pubsub_envelope(one_time_rtdn(1))))

        publisher.verify_product.assert_awaited_once_with(PACKAGE_NAME, "coins_100", "otp-token")
        assert classified.action is NotificationAction.INVOKE
        assert classified.record.product_id == "coins_100"
        assert classified.needs_acknowledgement()

    @pytest.mark.asyncio
    async def test_one_time_already_acknowledged(self, classifier, publisher):
        """Test that an acknowledged one-time purchase is not re-applied."""
        publisher.verify_product.return_value = ProductPurchase(
            order_id="GPA.7777", purchase_state=0, acknowledgement_state=1
        )

        classified = await classifier.classify(decode_rtdn(pubsub_envelope(one_time_rtdn(1))))

        assert classified.action is NotificationAction.NONE

    @pytest.mark.asyncio
    async def test_one_time_canceled_skips_query(self, classifier, publisher):
        """Test that a canceled pending purchase needs no re-query."""
        classified = await classifier.classify(decode_rtdn(pubsub_envelope(one_time_rtdn(2))))

        assert classified.event is LifecycleEvent.CANCELED
        assert classified.action is NotificationAction.NONE
        publisher.verify_product.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_test_notification(self, classifier):
        """Test that Play Console test notifications are recognized and ignored."""
        notification = decode_rtdn(
            pubsub_envelope(
                {"version": "1.0", "packageName": PACKAGE_NAME, "testNotification": {"version": "1.0"}}
            )
        )

        classified = await classifier.classify(notification)

        assert classified.event is LifecycleEvent.TEST
        assert classified.action is NotificationAction.NONE


# ============================================================================
# App Store
# ============================================================================


def signed_v2_body(
    notification_type: str,
    subtype: str | None = None,
    bundle_id: str = BUNDLE_ID,
    transaction: dict | None = None,
) -> dict:
    data: dict = {"bundleId": bundle_id, "environment": "Sandbox"}
    if transaction is not None:
        data["signedTransactionInfo"] = sign(transaction)
    payload = {
        "notificationType": notification_type,
        "notificationUUID": "0b4e9b6a-0000-4000-8000-000000000001",
        "version": "2.0",
        "data": data,
    }
    if subtype is not None:
        payload["subtype"] = subtype
    return {"signedPayload": sign(payload)}


RENEWAL_TRANSACTION = {
    "transactionId": "2000000222",
    "originalTransactionId": "2000000100",
    "productId": "monthly",
    "purchaseDate": 1702592000000,
}


class TestAppStoreNotifications:
    """Tests for App Store notification decoding and classification."""

    def test_decode_v2(self):
        """Test decoding a signed V2 notification."""
        notification = decode_app_store_notification(
            signed_v2_body("DID_RENEW", transaction=RENEWAL_TRANSACTION)
        )

        assert notification.version == "2.0"
        assert notification.bundle_id == BUNDLE_ID
        assert notification.transaction.transaction_id == "2000000222"
        assert notification.transaction.original_transaction_id == "2000000100"

    def test_decode_v1_uses_latest_transaction(self):
        """Test that a legacy notification carries its most recent transaction."""
        notification = decode_app_store_notification(
            {
                "notification_type": "DID_RENEW",
                "bid": BUNDLE_ID,
                "environment": "PROD",
                "unified_receipt": {
                    "latest_receipt_info": [
                        {"transaction_id": "1", "product_id": "monthly", "purchase_date_ms": "100"},
                        {
                            "transaction_id": "2",
                            "original_transaction_id": "1",
                            "product_id": "monthly",
                            "purchase_date_ms": "200",
                        },
                    ]
                },
            }
        )

        assert notification.version == "1"
        assert notification.transaction.transaction_id == "2"

    def test_decode_invalid_jws(self):
        """Test that an undecodable signed payload is rejected."""
        with pytest.raises(NotificationDecodeError):
            decode_app_store_notification({"signedPayload": "not.a.jws"})

    def test_decode_unknown_body(self):
        """Test that a body in neither format is rejected."""
        with pytest.raises(NotificationDecodeError):
            decode_app_store_notification({"hello": "world"})

    def test_classify_renewal(self):
        """Test that a V2 renewal invokes."""
        classifier = AppStoreNotificationClassifier(BUNDLE_ID)
        notification = decode_app_store_notification(
            signed_v2_body("DID_RENEW", transaction=RENEWAL_TRANSACTION)
        )

        classified = classifier.classify(notification)

        assert classified.event is LifecycleEvent.RENEWED
        assert classified.action is NotificationAction.INVOKE
        assert classified.notification_id == "0b4e9b6a-0000-4000-8000-000000000001"

    def test_classify_refund_is_no_op(self):
        """Test that a refund is classified but not acted on."""
        classifier = AppStoreNotificationClassifier(BUNDLE_ID)
        notification = decode_app_store_notification(
            signed_v2_body("REFUND", transaction=RENEWAL_TRANSACTION)
        )

        classified = classifier.classify(notification)

        assert classified.event is LifecycleEvent.REFUNDED
        assert classified.action is NotificationAction.NONE

    def test_classify_bundle_mismatch(self):
        """Test that notifications for another bundle are rejected."""
        classifier = AppStoreNotificationClassifier(BUNDLE_ID)
        notification = decode_app_store_notification(
            signed_v2_body("DID_RENEW", bundle_id="com.other.app", transaction=RENEWAL_TRANSACTION)
        )

        with pytest.raises(IdentityMismatchError):
            classifier.classify(notification)

    def test_actionable_without_transaction(self):
        """Test that an actionable notification without transaction is rejected."""
        classifier = AppStoreNotificationClassifier(BUNDLE_ID)
        notification = decode_app_store_notification(signed_v2_body("DID_RENEW"))

        with pytest.raises(DataIntegrityError):
            classifier.classify(notification)

    def test_unrecognized_type_is_no_op(self):
        """Test that unknown notification types are acknowledged without action."""
        classifier = AppStoreNotificationClassifier(BUNDLE_ID)
        notification = decode_app_store_notification(signed_v2_body("CONSUMPTION_REQUEST"))

        classified = classifier.classify(notification)

        assert classified.event is None
        assert classified.action is NotificationAction.NONE
