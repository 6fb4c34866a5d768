"""
Android Publisher Services - Authoritative Play purchase state.

NO DICTIONARIES - All data uses strongly typed models.

GooglePublisherService talks to the Android Publisher API directly.
RemotePublisherService forwards the same calls to a relay that can reach
Google on our behalf, for deployments where googleapis.com is unreachable.
"""

import asyncio
import json
from typing import Any

import httpx
from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from structlog import get_logger

from unipay.config import Settings
from unipay.exceptions import PublisherError
from unipay.models.purchase import ProductPurchase, SubscriptionPurchase
from unipay.services.protocols import PublisherService

logger = get_logger(__name__)

ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"

# Relay endpoints, relative to the configured base URL
REMOTE_VERIFY_PRODUCT = "/google/iap/verifyProduct"
REMOTE_ACK_PRODUCT = "/google/iap/ackProduct"
REMOTE_VERIFY_SUBSCRIPTION = "/google/iap/verifySubscription"
REMOTE_ACK_SUBSCRIPTION = "/google/iap/ackSubscription"


def _http_error(exc: HttpError, operation: str) -> PublisherError:
    error_content = exc.content.decode("utf-8") if exc.content else str(exc)
    status = int(exc.resp.status)
    logger.error("google_publisher_call_failed", operation=operation, status=status, error=error_content)

    if status == 404:
        return PublisherError("Purchase not found or invalid token", status=status)
    if status == 410:
        return PublisherError("Purchase token expired", status=status)
    return PublisherError(f"Google Play API error: {error_content}", status=status)


class GooglePublisherService:
    """
    Android Publisher API v3 client.

    The discovery client is synchronous; calls run in a worker thread.
    """

    def __init__(self, service_account_json: str | dict[str, str]) -> None:
        """
        Initialize the publisher client.

        Args:
            service_account_json: Path to service account JSON or dict with credentials
        """
        if isinstance(service_account_json, str):
            self.credentials = service_account.Credentials.from_service_account_file(  # type: ignore[no-untyped-call]
                service_account_json,
                scopes=[ANDROID_PUBLISHER_SCOPE],
            )
        else:
            self.credentials = service_account.Credentials.from_service_account_info(  # type: ignore[no-untyped-call]
                service_account_json,
                scopes=[ANDROID_PUBLISHER_SCOPE],
            )

        self.service = build(
            "androidpublisher", "v3", credentials=self.credentials, cache_discovery=False
        )

        logger.info("google_publisher_service_initialized")

    async def _execute(self, request: Any, operation: str) -> dict[str, Any]:
        try:
            result: dict[str, Any] | None = await asyncio.to_thread(request.execute)
        except HttpError as exc:
            raise _http_error(exc, operation) from exc
        return result or {}

    async def verify_subscription(
        self, package_name: str, subscription_id: str, token: str
    ) -> SubscriptionPurchase:
        request = (
            self.service.purchases()
            .subscriptions()
            .get(packageName=package_name, subscriptionId=subscription_id, token=token)
        )
        result = await self._execute(request, "verify_subscription")
        subscription = SubscriptionPurchase.from_api(result)

        logger.info(
            "google_play_subscription_verified",
            order_id=subscription.order_id,
            subscription_id=subscription_id,
            payment_state=subscription.payment_state,
            acknowledgement_state=subscription.acknowledgement_state,
        )
        return subscription

    async def verify_product(
        self, package_name: str, product_id: str, token: str
    ) -> ProductPurchase:
        request = (
            self.service.purchases()
            .products()
            .get(packageName=package_name, productId=product_id, token=token)
        )
        result = await self._execute(request, "verify_product")
        product = ProductPurchase.from_api(result)

        logger.info(
            "google_play_product_verified",
            order_id=product.order_id,
            product_id=product_id,
            purchase_state=product.purchase_state,
            purchase_type=product.purchase_type,
            is_test=product.purchase_type == 0,
        )
        return product

    async def acknowledge_subscription(
        self, package_name: str, subscription_id: str, token: str, developer_payload: str = ""
    ) -> None:
        request = (
            self.service.purchases()
            .subscriptions()
            .acknowledge(
                packageName=package_name,
                subscriptionId=subscription_id,
                token=token,
                body={"developerPayload": developer_payload},
            )
        )
        await self._execute(request, "acknowledge_subscription")

    async def acknowledge_product(
        self, package_name: str, product_id: str, token: str, developer_payload: str = ""
    ) -> None:
        request = (
            self.service.purchases()
            .products()
            .acknowledge(
                packageName=package_name,
                productId=product_id,
                token=token,
                body={"developerPayload": developer_payload},
            )
        )
        await self._execute(request, "acknowledge_product")


class RemotePublisherService:
    """Publisher calls relayed through an HTTP proxy service."""

    def __init__(
        self,
        endpoint: str,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.endpoint}{path}"
        try:
            if self._client is not None:
                response = await self._client.post(url, json=body)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(url, json=body)
        except httpx.HTTPError as exc:
            logger.error("remote_publisher_transport_error", path=path, error=str(exc))
            raise PublisherError(f"relay unreachable: {exc}") from exc

        if response.status_code != 200:
            logger.error(
                "remote_publisher_call_failed",
                path=path,
                status=response.status_code,
                error=response.text,
            )
            raise PublisherError(f"relay error: {response.text}", status=response.status_code)

        if not response.content:
            return {}
        try:
            data: dict[str, Any] = response.json()
        except ValueError as exc:
            raise PublisherError("relay returned a non-JSON body", status=200) from exc
        return data

    @staticmethod
    def _body(package_name: str, product_id: str, token: str) -> dict[str, Any]:
        return {"packageName": package_name, "subscriptionID": product_id, "purchaseToken": token}

    async def verify_subscription(
        self, package_name: str, subscription_id: str, token: str
    ) -> SubscriptionPurchase:
        data = await self._post(
            REMOTE_VERIFY_SUBSCRIPTION, self._body(package_name, subscription_id, token)
        )
        return SubscriptionPurchase.from_api(data)

    async def verify_product(
        self, package_name: str, product_id: str, token: str
    ) -> ProductPurchase:
        data = await self._post(REMOTE_VERIFY_PRODUCT, self._body(package_name, product_id, token))
        return ProductPurchase.from_api(data)

    async def acknowledge_subscription(
        self, package_name: str, subscription_id: str, token: str, developer_payload: str = ""
    ) -> None:
        body = self._body(package_name, subscription_id, token)
        if developer_payload:
            body["developerPayload"] = developer_payload
        await self._post(REMOTE_ACK_SUBSCRIPTION, body)

    async def acknowledge_product(
        self, package_name: str, product_id: str, token: str, developer_payload: str = ""
    ) -> None:
        body = self._body(package_name, product_id, token)
        if developer_payload:
            body["developerPayload"] = developer_payload
        await self._post(REMOTE_ACK_PRODUCT, body)


def build_publisher(settings: Settings) -> PublisherService | None:
    """
    Create the publisher client selected by configuration.

    Returns:
        A relay client when PLAYSTORE_PUBLISHER_ENDPOINT is set, a direct
        client when service account credentials are set, None otherwise
    """
    if settings.playstore_publisher_endpoint:
        return RemotePublisherService(
            settings.playstore_publisher_endpoint,
            timeout_seconds=settings.http_timeout_seconds,
        )

    credentials = settings.playstore_service_account_json.strip()
    if not credentials:
        return None
    if credentials.startswith("{"):
        return GooglePublisherService(json.loads(credentials))
    return GooglePublisherService(credentials)
