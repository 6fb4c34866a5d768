"""
Pytest Configuration and Centralized Fixtures.

Provides reusable fakes and fixtures for testing:
- An in-memory order ledger with call recording
- Purchase records for both stores
- Play license signing keys
- API test client with the ledger dependency overridden
"""

import asyncio
import base64
import json
import os
from dataclasses import dataclass, field
from unittest.mock import AsyncMock

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from fastapi import FastAPI
from fastapi.testclient import TestClient

# Play license key pair used to sign test purchase data
PLAY_PRIVATE_KEY = rsa.generate_private_key(public_exponent=65537, key_size=2048)
PLAY_PUBLIC_KEY_B64 = base64.b64encode(
    PLAY_PRIVATE_KEY.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
).decode("ascii")

BUNDLE_ID = "com.example.unipay"
PACKAGE_NAME = "com.example.unipay"

# Set required environment variables BEFORE importing unipay modules
os.environ.setdefault("APPSTORE_BUNDLE_ID", BUNDLE_ID)
os.environ.setdefault("APPSTORE_SHARED_SECRET", "test-shared-secret")
os.environ.setdefault("PLAYSTORE_PACKAGE_NAME", PACKAGE_NAME)
os.environ.setdefault("PLAYSTORE_PUBLIC_KEY", PLAY_PUBLIC_KEY_B64)
os.environ.setdefault("LOCK_BACKEND", "memory")
os.environ.setdefault("ATTACH_BACKEND", "memory")
os.environ.setdefault("LOG_FORMAT", "console")

from unipay.exceptions import OrderNotFoundError
from unipay.models.identity import PayWay
from unipay.models.order import OrderInfo, PaymentContext
from unipay.models.purchase import AppStoreInApp, PlayStoreInApp, SubscriptionPurchase
from unipay.services.attach import InMemoryAttachService
from unipay.services.locks import InMemoryLocker
from unipay.services.reconciliation import ReconciliationEngine

# ============================================================================
# Order Ledger Fakes
# ============================================================================


@dataclass
class FakeOrder:
    """Order as kept by FakeOrderService."""

    trade_no: str
    pay_way: str
    product_id: str
    attach: str = ""
    paid: bool = False
    revoked: bool = False

    def is_paid(self) -> bool:
        return self.paid

    def order_info(self) -> OrderInfo:
        return OrderInfo(
            subject=self.product_id,
            total_fee=100,
            out_trade_no=f"out-{self.trade_no}",
            trade_no=self.trade_no,
            attach=self.attach,
            currency="USD",
        )


@dataclass
class FakeOrderService:
    """In-memory order ledger that records every call."""

    subscriber_matches: bool = True
    lookup_delay: float = 0.0
    orders: dict[tuple[str, str], FakeOrder] = field(default_factory=dict)
    calls: list[str] = field(default_factory=list)
    posted: list[PaymentContext] = field(default_factory=list)

    async def post_order(self, ctx: PaymentContext) -> FakeOrder:
        self.calls.append("post_order")
        assert ctx.purchase is not None
        identity = ctx.purchase.identity()
        order = FakeOrder(
            trade_no=identity.trade_no,
            pay_way=identity.pay_way.value,
            product_id=ctx.product_id,
            attach=ctx.attach,
        )
        self.orders[(order.trade_no, order.pay_way)] = order
        self.posted.append(ctx)
        return order

    async def get_order_by_trade_no(self, trade_no: str, pay_way: str) -> FakeOrder:
        self.calls.append("get_order_by_trade_no")
        if self.lookup_delay:
            await asyncio.sleep(self.lookup_delay)
        key = (trade_no, PayWay(pay_way).value)
        if key not in self.orders:
            raise OrderNotFoundError(trade_no, key[1])
        return self.orders[key]

    async def invoke(self, order: FakeOrder) -> None:
        self.calls.append("invoke")
        order.paid = True

    async def revoke(self, order: FakeOrder) -> None:
        self.calls.append("revoke")
        order.revoked = True

    async def check_sub_user(
        self, ctx: PaymentContext, original_trade_no: str, trade_no: str
    ) -> bool:
        self.calls.append("check_sub_user")
        return self.subscriber_matches

    def seed(self, trade_no: str, pay_way: PayWay, paid: bool = False) -> FakeOrder:
        order = FakeOrder(trade_no=trade_no, pay_way=pay_way.value, product_id="seeded", paid=paid)
        self.orders[(trade_no, pay_way.value)] = order
        return order


@pytest.fixture
def ledger() -> FakeOrderService:
    """Empty in-memory order ledger."""
    return FakeOrderService()


@pytest.fixture
def locker() -> InMemoryLocker:
    return InMemoryLocker()


@pytest.fixture
def attach_service() -> InMemoryAttachService:
    return InMemoryAttachService()


@pytest.fixture
def engine(
    ledger: FakeOrderService, locker: InMemoryLocker, attach_service: InMemoryAttachService
) -> ReconciliationEngine:
    """Engine wired to in-memory collaborators."""
    return ReconciliationEngine(ledger, locker=locker, attach_service=attach_service)


# ============================================================================
# Purchase Record Fixtures
# ============================================================================


@pytest.fixture
def appstore_first_purchase() -> AppStoreInApp:
    return AppStoreInApp(
        transaction_id="1000000800000001",
        original_transaction_id="1000000800000001",
        product_id="com.example.unipay.monthly",
        purchase_date_ms=1700000000000,
    )


@pytest.fixture
def appstore_renewal() -> AppStoreInApp:
    return AppStoreInApp(
        transaction_id="1000000800000002",
        original_transaction_id="1000000800000001",
        product_id="com.example.unipay.monthly",
        purchase_date_ms=1702592000000,
    )


@pytest.fixture
def playstore_renewal() -> PlayStoreInApp:
    return PlayStoreInApp(
        order_id="GPA.1234-5678-9012-34567..0",
        package_name=PACKAGE_NAME,
        product_id="monthly",
        purchase_token="token-renewal-0",
        subscription=SubscriptionPurchase(
            order_id="GPA.1234-5678-9012-34567..0",
            payment_state=1,
            acknowledgement_state=0,
        ),
    )


@pytest.fixture
def appstore_ctx() -> PaymentContext:
    return PaymentContext(pay_way=PayWay.APP_STORE, uid="user-1", client_ip="203.0.113.7")


@pytest.fixture
def playstore_ctx() -> PaymentContext:
    return PaymentContext(pay_way=PayWay.PLAY_STORE, uid="user-1", client_ip="203.0.113.7")


# ============================================================================
# Play Signing Helpers
# ============================================================================


def sign_purchase_data(purchase_data: str) -> str:
    """Sign purchase data the way Google Play does on the device."""
    signature = PLAY_PRIVATE_KEY.sign(
        purchase_data.encode("utf-8"), padding.PKCS1v15(), hashes.SHA1()
    )
    return base64.b64encode(signature).decode("ascii")


def purchase_data_json(
    order_id: str = "GPA.3300-0000-0000-00001",
    package_name: str = PACKAGE_NAME,
    product_id: str = "coins_100",
    purchase_state: int = 0,
) -> str:
    return json.dumps(
        {
            "orderId": order_id,
            "packageName": package_name,
            "productId": product_id,
            "purchaseTime": 1700000000000,
            "purchaseState": purchase_state,
            "purchaseToken": "play-token-0001",
            "developerPayload": "",
        }
    )


def pubsub_envelope(notification: dict, message_id: str = "msg-1") -> bytes:
    """Wrap a developer notification the way Pub/Sub push delivers it."""
    data = base64.b64encode(json.dumps(notification).encode("utf-8")).decode("ascii")
    return json.dumps(
        {
            "subscription": "projects/example/subscriptions/play-rtdn",
            "message": {"data": data, "messageId": message_id},
        }
    ).encode("utf-8")


@pytest.fixture
def publisher() -> AsyncMock:
    """Publisher API mock; tests configure verify_* return values."""
    mock = AsyncMock()
    mock.acknowledge_subscription = AsyncMock(return_value=None)
    mock.acknowledge_product = AsyncMock(return_value=None)
    return mock


# ============================================================================
# FastAPI Test Client Fixtures
# ============================================================================


@pytest.fixture
def app() -> FastAPI:
    """Create FastAPI app for testing."""
    from unipay.main import app as main_app

    return main_app


@pytest.fixture
def client(app: FastAPI, ledger: FakeOrderService):
    """Test client with the order ledger dependency overridden."""
    from unipay.api.dependencies import get_order_service

    app.dependency_overrides[get_order_service] = lambda: ledger
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()
