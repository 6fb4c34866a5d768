"""
Purchase record models - Immutable dataclasses for trust-verified purchases.

NO DICTIONARIES - All data uses strongly typed models.

A PurchaseRecord is a closed union of the two store variants. Each variant
carries a ``kind`` tag so callers dispatch on the tag instead of
inspecting types at runtime.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from unipay.models.identity import (
    PayWay,
    TransactionIdentity,
    resolve_app_store_original,
    split_play_order_id,
)


class PurchaseKind(str, Enum):
    """Tag of the PurchaseRecord union."""

    APP_STORE = "app_store"
    PLAY_STORE = "play_store"


def _as_int(value: Any, default: int = 0) -> int:
    """Gateways send millisecond timestamps as strings; normalise to int."""
    if value is None or value == "":
        return default
    return int(value)


def _as_optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


@dataclass(frozen=True)
class AppStoreInApp:
    """One verified App Store transaction from a receipt or signed notification."""

    transaction_id: str
    original_transaction_id: str
    product_id: str
    purchase_date_ms: int
    is_trial_period: bool = False
    expires_date_ms: int | None = None
    cancellation_date_ms: int | None = None
    web_order_line_item_id: str | None = None
    kind: Literal[PurchaseKind.APP_STORE] = field(default=PurchaseKind.APP_STORE, init=False)

    def __post_init__(self) -> None:
        """Validate transaction fields."""
        if not self.transaction_id:
            raise ValueError("transaction_id required")
        if not self.product_id:
            raise ValueError("product_id required")

    @classmethod
    def from_receipt(cls, data: dict[str, Any]) -> "AppStoreInApp":
        """Parse an entry of ``receipt.in_app`` or ``latest_receipt_info``."""
        transaction_id = str(data.get("transaction_id", ""))
        return cls(
            transaction_id=transaction_id,
            original_transaction_id=resolve_app_store_original(
                transaction_id, data.get("original_transaction_id")
            ),
            product_id=str(data.get("product_id", "")),
            purchase_date_ms=_as_int(data.get("purchase_date_ms")),
            is_trial_period=str(data.get("is_trial_period", "false")).lower() == "true",
            expires_date_ms=_as_optional_int(data.get("expires_date_ms")),
            cancellation_date_ms=_as_optional_int(data.get("cancellation_date_ms")),
            web_order_line_item_id=data.get("web_order_line_item_id"),
        )

    @classmethod
    def from_signed_transaction(cls, data: dict[str, Any]) -> "AppStoreInApp":
        """Parse a decoded JWS transaction payload (App Store Server API v2)."""
        transaction_id = str(data.get("transactionId", ""))
        return cls(
            transaction_id=transaction_id,
            original_transaction_id=resolve_app_store_original(
                transaction_id, data.get("originalTransactionId")
            ),
            product_id=str(data.get("productId", "")),
            purchase_date_ms=_as_int(data.get("purchaseDate")),
            # offerType 1 is an introductory offer (free trial or intro price)
            is_trial_period=data.get("offerType") == 1,
            expires_date_ms=_as_optional_int(data.get("expiresDate")),
            cancellation_date_ms=_as_optional_int(data.get("revocationDate")),
            web_order_line_item_id=data.get("webOrderLineItemId"),
        )

    @property
    def purchase_time_ms(self) -> int:
        return self.purchase_date_ms

    def identity(self) -> TransactionIdentity:
        """Canonical identity of this transaction."""
        return TransactionIdentity(
            trade_no=self.transaction_id,
            original_trade_no=self.original_transaction_id,
            product_id=self.product_id,
            pay_way=PayWay.APP_STORE,
        )

    def is_free_trial(self) -> bool:
        return self.is_trial_period


@dataclass(frozen=True)
class AppStoreReceipt:
    """Trust-verified response of Apple's verifyReceipt endpoint."""

    status: int
    bundle_id: str
    in_app: tuple[AppStoreInApp, ...] = ()
    latest_receipt_info: tuple[AppStoreInApp, ...] = ()
    environment: str = "Production"

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "AppStoreReceipt":
        """Parse the verifyReceipt JSON body."""
        receipt = data.get("receipt") or {}
        return cls(
            status=int(data.get("status", -1)),
            bundle_id=str(receipt.get("bundle_id", "")),
            in_app=tuple(AppStoreInApp.from_receipt(e) for e in receipt.get("in_app") or []),
            latest_receipt_info=tuple(
                AppStoreInApp.from_receipt(e) for e in data.get("latest_receipt_info") or []
            ),
            environment=str(data.get("environment", "Production")),
        )

    def find_transaction(self, transaction_id: str) -> AppStoreInApp | None:
        """Look up a transaction, preferring the latest receipt info."""
        for inapp in self.latest_receipt_info:
            if inapp.transaction_id == transaction_id:
                return inapp
        for inapp in self.in_app:
            if inapp.transaction_id == transaction_id:
                return inapp
        return None


def latest_transaction(inapps: Sequence[AppStoreInApp]) -> AppStoreInApp | None:
    """Transaction with the most recent purchase date, or None when empty."""
    latest: AppStoreInApp | None = None
    for inapp in inapps:
        if latest is None or inapp.purchase_date_ms > latest.purchase_date_ms:
            latest = inapp
    return latest


@dataclass(frozen=True)
class SubscriptionPurchase:
    """Authoritative subscription state from the Android Publisher API."""

    order_id: str
    payment_state: int | None  # 0: pending, 1: received, 2: free trial, 3: deferred
    acknowledgement_state: int  # 0: not acknowledged, 1: acknowledged
    auto_renewing: bool = False
    developer_payload: str = ""
    start_time_millis: int = 0
    expiry_time_millis: int = 0
    linked_purchase_token: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "SubscriptionPurchase":
        """Parse a ``purchases.subscriptions.get`` response."""
        return cls(
            order_id=str(data.get("orderId", "")),
            payment_state=_as_optional_int(data.get("paymentState")),
            acknowledgement_state=_as_int(data.get("acknowledgementState")),
            auto_renewing=bool(data.get("autoRenewing", False)),
            developer_payload=str(data.get("developerPayload", "")),
            start_time_millis=_as_int(data.get("startTimeMillis")),
            expiry_time_millis=_as_int(data.get("expiryTimeMillis")),
            linked_purchase_token=data.get("linkedPurchaseToken"),
        )

    def needs_acknowledgement(self) -> bool:
        return self.acknowledgement_state == 0


@dataclass(frozen=True)
class ProductPurchase:
    """Authoritative one-time product state from the Android Publisher API."""

    order_id: str
    purchase_state: int  # 0: purchased, 1: canceled, 2: pending
    acknowledgement_state: int  # 0: not acknowledged, 1: acknowledged
    consumption_state: int = 0  # 0: not consumed, 1: consumed
    purchase_time_millis: int = 0
    developer_payload: str = ""
    product_id: str = ""
    purchase_token: str = ""
    purchase_type: int | None = None  # None: real, 0: test, 1: promo, 2: rewarded

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "ProductPurchase":
        """Parse a ``purchases.products.get`` response."""
        return cls(
            order_id=str(data.get("orderId", "")),
            purchase_state=_as_int(data.get("purchaseState")),
            acknowledgement_state=_as_int(data.get("acknowledgementState")),
            consumption_state=_as_int(data.get("consumptionState")),
            purchase_time_millis=_as_int(data.get("purchaseTimeMillis")),
            developer_payload=str(data.get("developerPayload", "")),
            product_id=str(data.get("productId", "")),
            purchase_token=str(data.get("purchaseToken", "")),
            purchase_type=_as_optional_int(data.get("purchaseType")),
        )

    def is_purchased(self) -> bool:
        return self.purchase_state == 0

    def needs_acknowledgement(self) -> bool:
        return self.acknowledgement_state == 0


@dataclass(frozen=True)
class PlayStoreInApp:
    """One Play Store purchase, as signed by the client or re-queried from Google."""

    order_id: str
    package_name: str
    product_id: str
    purchase_token: str
    purchase_time_ms: int = 0
    purchase_state: int = 0
    developer_payload: str = ""
    auto_renewing: bool = False
    subscription: SubscriptionPurchase | None = None
    kind: Literal[PurchaseKind.PLAY_STORE] = field(default=PurchaseKind.PLAY_STORE, init=False)

    def __post_init__(self) -> None:
        """Validate purchase fields."""
        if not self.order_id:
            raise ValueError("order_id required")
        if not self.product_id:
            raise ValueError("product_id required")

    @classmethod
    def from_purchase_data(cls, data: dict[str, Any]) -> "PlayStoreInApp":
        """Parse the ``INAPP_PURCHASE_DATA`` JSON signed by Google Play on the device."""
        return cls(
            order_id=str(data.get("orderId", "")),
            package_name=str(data.get("packageName", "")),
            product_id=str(data.get("productId", "")),
            purchase_token=str(data.get("purchaseToken", "")),
            purchase_time_ms=_as_int(data.get("purchaseTime")),
            purchase_state=_as_int(data.get("purchaseState")),
            developer_payload=str(data.get("developerPayload", "")),
            auto_renewing=bool(data.get("autoRenewing", False)),
        )

    @property
    def original_order_id(self) -> str:
        return split_play_order_id(self.order_id)

    def identity(self) -> TransactionIdentity:
        """Canonical identity of this purchase."""
        return TransactionIdentity(
            trade_no=self.order_id,
            original_trade_no=self.original_order_id,
            product_id=self.product_id,
            pay_way=PayWay.PLAY_STORE,
        )

    def is_purchased(self) -> bool:
        """purchaseState 0; 1 is canceled and 2 pending."""
        return self.purchase_state == 0

    def is_free_trial(self) -> bool:
        """Only the publisher's payment state is trusted for trial detection."""
        if self.subscription is None:
            return False
        return self.subscription.payment_state == 2


PurchaseRecord = AppStoreInApp | PlayStoreInApp
