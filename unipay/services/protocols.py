"""
Collaborator Protocols - The seams between the engine and the host application.

NO DICTIONARIES - All data uses strongly typed models.

The order ledger, the transaction locker, the attach store and the Play
publisher API are all owned elsewhere. Any object with these methods can
be plugged into the engine.
"""

from typing import Protocol

from unipay.models.order import Order, PaymentContext
from unipay.models.purchase import ProductPurchase, SubscriptionPurchase


class OrderService(Protocol):
    """
    Order ledger protocol.

    The engine guarantees ``invoke`` is called at most once per order by
    checking ``Order.is_paid()`` under the transaction lock.
    """

    async def post_order(self, ctx: PaymentContext) -> Order:
        """
        Create an order for a verified purchase.

        Args:
            ctx: Processing context; ``ctx.purchase`` holds the verified record

        Returns:
            The created order
        """
        ...

    async def get_order_by_trade_no(self, trade_no: str, pay_way: str) -> Order:
        """
        Look up an order by gateway trade number.

        Raises:
            OrderNotFoundError: No order exists for the trade number
        """
        ...

    async def invoke(self, order: Order) -> None:
        """Apply the payment effect of an order."""
        ...

    async def revoke(self, order: Order) -> None:
        """Undo the payment effect of an order."""
        ...

    async def check_sub_user(
        self, ctx: PaymentContext, original_trade_no: str, trade_no: str
    ) -> bool:
        """True when both trade numbers belong to the same subscribing user."""
        ...


class Locker(Protocol):
    """Per-transaction mutual exclusion. Never blocks waiting for a holder."""

    async def lock(self, trade_no: str) -> bool:
        """Try to acquire the lock; False when someone else holds it."""
        ...

    async def unlock(self, trade_no: str) -> None:
        """Release the lock."""
        ...


class AttachService(Protocol):
    """Durable side-channel for caller passthrough payloads, keyed by trade number."""

    async def create(self, trade_no: str, attach: str) -> None:
        ...

    async def get(self, trade_no: str) -> str | None:
        ...

    async def delete(self, trade_no: str) -> None:
        ...


class PublisherService(Protocol):
    """Google Play Android Publisher API (authoritative purchase state)."""

    async def verify_subscription(
        self, package_name: str, subscription_id: str, token: str
    ) -> SubscriptionPurchase:
        ...

    async def verify_product(
        self, package_name: str, product_id: str, token: str
    ) -> ProductPurchase:
        ...

    async def acknowledge_subscription(
        self, package_name: str, subscription_id: str, token: str, developer_payload: str = ""
    ) -> None:
        ...

    async def acknowledge_product(
        self, package_name: str, product_id: str, token: str, developer_payload: str = ""
    ) -> None:
        ...


class NoopLocker:
    """
    Locker that always acquires.

    Acceptable for single-worker deployments only: it gives up the
    guarantee that two deliveries of one transaction are serialized.
    """

    async def lock(self, trade_no: str) -> bool:
        return True

    async def unlock(self, trade_no: str) -> None:
        return None


class NoopAttachService:
    """AttachService that stores nothing."""

    async def create(self, trade_no: str, attach: str) -> None:
        return None

    async def get(self, trade_no: str) -> str | None:
        return None

    async def delete(self, trade_no: str) -> None:
        return None
