"""
Notification models - Lifecycle events and decoded gateway notifications.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass
from enum import Enum, IntEnum

from unipay.models.purchase import ProductPurchase, PurchaseRecord, SubscriptionPurchase


class LifecycleEvent(str, Enum):
    """Provider-neutral classification of a purchase notification."""

    INITIAL_PURCHASE = "initial_purchase"
    RENEWED = "renewed"
    RECOVERED = "recovered"
    RESTARTED = "restarted"
    CANCELED = "canceled"
    REVOKED = "revoked"
    REFUNDED = "refunded"
    EXPIRED = "expired"
    ON_HOLD = "on_hold"
    GRACE_PERIOD = "grace_period"
    DEFERRED = "deferred"
    TEST = "test"


INVOKE_EVENTS = frozenset(
    {
        LifecycleEvent.INITIAL_PURCHASE,
        LifecycleEvent.RENEWED,
        LifecycleEvent.RECOVERED,
        LifecycleEvent.RESTARTED,
    }
)
REVOKE_EVENTS = frozenset({LifecycleEvent.REVOKED})


class NotificationAction(str, Enum):
    """What the reconciliation engine should do with a classified notification."""

    INVOKE = "invoke"
    REVOKE = "revoke"
    NONE = "none"


class SubscriptionNotificationType(IntEnum):
    """Google Play RTDN subscription notification types."""

    RECOVERED = 1  # Recovered from account hold
    RENEWED = 2  # Active subscription renewed
    CANCELED = 3  # Voluntarily or involuntarily canceled
    PURCHASED = 4  # New subscription purchased
    ON_HOLD = 5  # Entered account hold
    IN_GRACE_PERIOD = 6  # Entered grace period
    RESTARTED = 7  # User restored it from Play > Account > Subscriptions
    PRICE_CHANGE_CONFIRMED = 8
    DEFERRED = 9  # Renewal time extended
    PAUSED = 10
    PAUSE_SCHEDULE_CHANGED = 11
    REVOKED = 12  # Revoked before expiration
    EXPIRED = 13


class OneTimeProductNotificationType(IntEnum):
    """Google Play RTDN one-time product notification types."""

    PURCHASED = 1
    CANCELED = 2  # Pending purchase canceled


@dataclass(frozen=True)
class SubscriptionNotification:
    """``subscriptionNotification`` part of a developer notification."""

    version: str
    notification_type: int
    purchase_token: str
    subscription_id: str


@dataclass(frozen=True)
class OneTimeProductNotification:
    """``oneTimeProductNotification`` part of a developer notification."""

    version: str
    notification_type: int
    purchase_token: str
    sku: str


@dataclass(frozen=True)
class DeveloperNotification:
    """Decoded Google Play Real-Time Developer Notification."""

    message_id: str
    version: str
    package_name: str
    event_time_millis: int
    subscription: SubscriptionNotification | None = None
    one_time_product: OneTimeProductNotification | None = None
    is_test: bool = False


@dataclass(frozen=True)
class AppStoreNotification:
    """Decoded App Store server notification (V2 signed or legacy V1)."""

    notification_type: str  # e.g. "DID_RENEW", "REFUND"
    subtype: str | None
    notification_uuid: str
    version: str  # "2.0" for signed notifications, "1" for legacy
    bundle_id: str
    environment: str
    transaction: PurchaseRecord | None


@dataclass(frozen=True)
class ClassifiedNotification:
    """A notification reduced to a lifecycle event and the record it concerns."""

    event: LifecycleEvent | None  # None: unrecognized, acknowledged as a no-op
    action: NotificationAction
    record: PurchaseRecord | None
    notification_id: str = ""
    subscription: SubscriptionPurchase | None = None
    product: ProductPurchase | None = None

    def needs_acknowledgement(self) -> bool:
        """
        True when the gateway still waits for a server-side acknowledgement.

        Pending payments cannot be acknowledged; free trials must be, or
        Google cancels them after three days.
        """
        if self.subscription is not None:
            return self.subscription.needs_acknowledgement() and (
                self.subscription.payment_state in (1, 2)
            )
        if self.product is not None:
            return self.product.needs_acknowledgement() and self.product.is_purchased()
        return False
