"""
Receipt Verifiers - Trust verification of client-submitted purchase proofs.

NO DICTIONARIES - All verified data is returned as typed models.

App Store receipts are sent to Apple's verifyReceipt endpoint with a
bounded, immediate retry on transient failures. Play Store purchases are
checked against the RSA license key of the app. Both bind the verified
purchase to the configured bundle / package.
"""

import base64
import binascii
import json
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicKey
from cryptography.hazmat.primitives.serialization import load_der_public_key
from structlog import get_logger

from unipay.exceptions import (
    DataIntegrityError,
    IdentityMismatchError,
    TrustVerificationFailedError,
)
from unipay.models.gateway import (
    APPSTORE_PRODUCTION_URL,
    APPSTORE_SANDBOX_URL,
    AppStoreConfig,
    GatewayConfig,
    PlayStoreConfig,
)
from unipay.models.purchase import AppStoreReceipt, PlayStoreInApp
from unipay.observability.metrics import metrics

logger = get_logger(__name__)

T = TypeVar("T")

# verifyReceipt status codes
STATUS_OK = 0
STATUS_SUBSCRIPTION_EXPIRED = 21006  # Receipt is valid, subscription has lapsed
STATUS_SANDBOX_RECEIPT = 21007  # Sandbox receipt sent to production
STATUS_PRODUCTION_RECEIPT = 21008  # Production receipt sent to sandbox

APPSTORE_STATUS_MESSAGES = {
    21000: "request to the App Store was not made using HTTP POST",
    21002: "receipt-data property was malformed or missing",
    21003: "receipt could not be authenticated",
    21004: "shared secret does not match the account's shared secret",
    21005: "receipt server was temporarily unable to provide the receipt",
    21009: "internal data access error",
    21010: "user account cannot be found or has been deleted",
}


def is_retryable_status(status: int) -> bool:
    """True for verifyReceipt statuses Apple documents as transient."""
    return status in (21005, 21009) or 21100 <= status <= 21199


async def verify_with_retry(
    call: Callable[[], Awaitable[T]],
    max_attempts: int,
    gateway: str = "app_store",
) -> T:
    """
    Run a verification call with bounded, immediate retry.

    Only retryable TrustVerificationFailedError is re-attempted; anything
    else (a receipt the authority rejected, a bundle mismatch, a bug)
    surfaces from the first attempt.

    Args:
        call: Zero-argument coroutine factory performing one verification
        max_attempts: Total number of attempts, at least 1
        gateway: Label for metrics and logs

    Returns:
        Result of the first successful attempt

    Raises:
        TrustVerificationFailedError: Last failure once attempts are exhausted
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    started = time.time()
    last_error: TrustVerificationFailedError | None = None
    try:
        for attempt in range(1, max_attempts + 1):
            try:
                result = await call()
            except TrustVerificationFailedError as exc:
                if not exc.retryable:
                    metrics.record_verification_attempt(gateway, "rejected")
                    raise
                metrics.record_verification_attempt(gateway, "transient")
                logger.warning(
                    "receipt_verification_attempt_failed",
                    gateway=gateway,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    status=exc.status,
                    error=exc.message,
                )
                last_error = exc
                continue

            metrics.record_verification_attempt(gateway, "verified")
            return result
    finally:
        metrics.record_verification(gateway, time.time() - started)

    assert last_error is not None
    logger.error(
        "receipt_verification_exhausted",
        gateway=gateway,
        attempts=max_attempts,
        status=last_error.status,
    )
    raise last_error


class AppStoreReceiptVerifier:
    """
    Verifies App Store receipts against Apple's verifyReceipt endpoint.

    A sandbox receipt sent to production (status 21007) is re-posted to
    the sandbox endpoint within the same attempt, and vice versa for 21008.
    """

    def __init__(
        self,
        config: AppStoreConfig,
        gateway_config: GatewayConfig,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Initialize the verifier.

        Args:
            config: Bundle binding and shared secret
            gateway_config: Shared retry and timeout settings
            client: Optional shared HTTP client (a fresh client per call otherwise)
        """
        self.config = config
        self.gateway_config = gateway_config
        self._client = client

    async def _post(self, url: str, body: dict[str, Any]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(url, json=body)
        async with httpx.AsyncClient(timeout=self.gateway_config.http_timeout_seconds) as client:
            return await client.post(url, json=body)

    async def _request(self, url: str, receipt_data: str) -> dict[str, Any]:
        """POST one receipt; transport trouble and 5xx are retryable."""
        body = {
            "receipt-data": receipt_data,
            "password": self.config.shared_secret,
            "exclude-old-transactions": False,
        }
        try:
            response = await self._post(url, body)
        except httpx.HTTPError as exc:
            raise TrustVerificationFailedError(f"transport error: {exc}", retryable=True) from exc

        if response.status_code >= 500:
            raise TrustVerificationFailedError(
                f"verifyReceipt HTTP {response.status_code}", retryable=True
            )
        if response.status_code >= 400:
            raise TrustVerificationFailedError(f"verifyReceipt HTTP {response.status_code}")

        try:
            data: dict[str, Any] = response.json()
        except ValueError as exc:
            raise TrustVerificationFailedError(
                "verifyReceipt returned a non-JSON body", retryable=True
            ) from exc
        return data

    async def verify_once(self, receipt_data: str) -> AppStoreReceipt:
        """
        Perform a single verification attempt.

        Raises:
            TrustVerificationFailedError: Apple did not vouch for the receipt
        """
        url = self.config.verify_url
        data = await self._request(url, receipt_data)
        status = int(data.get("status", -1))

        if status == STATUS_SANDBOX_RECEIPT and url != APPSTORE_SANDBOX_URL:
            logger.info("appstore_receipt_retargeted", target="sandbox")
            data = await self._request(APPSTORE_SANDBOX_URL, receipt_data)
            status = int(data.get("status", -1))
        elif status == STATUS_PRODUCTION_RECEIPT and url != APPSTORE_PRODUCTION_URL:
            logger.info("appstore_receipt_retargeted", target="production")
            data = await self._request(APPSTORE_PRODUCTION_URL, receipt_data)
            status = int(data.get("status", -1))

        if status not in (STATUS_OK, STATUS_SUBSCRIPTION_EXPIRED):
            message = APPSTORE_STATUS_MESSAGES.get(status, f"unexpected status {status}")
            raise TrustVerificationFailedError(
                message, status=status, retryable=is_retryable_status(status)
            )

        try:
            return AppStoreReceipt.from_response(data)
        except (ValueError, TypeError) as exc:
            raise DataIntegrityError(f"unparseable verifyReceipt response: {exc}") from exc

    async def verify(self, receipt_data: str, max_attempts: int | None = None) -> AppStoreReceipt:
        """
        Verify a receipt with retry, then bind it to the configured bundle.

        Args:
            receipt_data: Base64 receipt as sent by the device
            max_attempts: Attempts override (GatewayConfig value otherwise)

        Returns:
            Trust-verified receipt

        Raises:
            TrustVerificationFailedError: Rejected, or transient failures exhausted attempts
            IdentityMismatchError: Receipt was issued for another bundle
        """
        attempts = max_attempts
        if attempts is None:
            attempts = self.gateway_config.verify_max_attempts
        receipt = await verify_with_retry(
            lambda: self.verify_once(receipt_data), attempts, gateway="app_store"
        )

        if receipt.bundle_id != self.config.bundle_id:
            logger.warning(
                "appstore_bundle_mismatch",
                expected=self.config.bundle_id,
                actual=receipt.bundle_id,
            )
            raise IdentityMismatchError(self.config.bundle_id, receipt.bundle_id)

        return receipt


class PlayStorePurchaseVerifier:
    """Verifies client-signed Play purchase data with the app's license key."""

    def __init__(self, config: PlayStoreConfig) -> None:
        self.config = config
        self._key: RSAPublicKey | None = None

    def _public_key(self) -> RSAPublicKey:
        if self._key is None:
            if not self.config.public_key:
                raise TrustVerificationFailedError("Play license public key is not configured")
            try:
                key = load_der_public_key(base64.b64decode(self.config.public_key))
            except (ValueError, binascii.Error) as exc:
                raise TrustVerificationFailedError(f"invalid Play license public key: {exc}") from exc
            if not isinstance(key, RSAPublicKey):
                raise TrustVerificationFailedError("Play license public key is not an RSA key")
            self._key = key
        return self._key

    def verify(self, purchase_data: str, signature: str) -> PlayStoreInApp:
        """
        Verify and parse ``INAPP_PURCHASE_DATA``.

        Args:
            purchase_data: JSON string exactly as signed by Google Play
            signature: Base64 ``INAPP_DATA_SIGNATURE``

        Returns:
            Trust-verified purchase bound to the configured package

        Raises:
            TrustVerificationFailedError: Bad signature, or the purchase is not completed
            DataIntegrityError: Signed payload is not a purchase
            IdentityMismatchError: Purchase belongs to another package
        """
        try:
            raw_signature = base64.b64decode(signature, validate=True)
        except (ValueError, binascii.Error) as exc:
            raise TrustVerificationFailedError("signature is not valid base64") from exc

        try:
            self._public_key().verify(
                raw_signature,
                purchase_data.encode("utf-8"),
                padding.PKCS1v15(),
                hashes.SHA1(),
            )
        except InvalidSignature as exc:
            logger.warning("playstore_signature_invalid")
            raise TrustVerificationFailedError("purchase signature does not verify") from exc

        try:
            purchase = PlayStoreInApp.from_purchase_data(json.loads(purchase_data))
        except (ValueError, TypeError, AttributeError) as exc:
            raise DataIntegrityError(f"signed purchase data is not a purchase: {exc}") from exc

        if purchase.package_name != self.config.package_name:
            logger.warning(
                "playstore_package_mismatch",
                expected=self.config.package_name,
                actual=purchase.package_name,
            )
            raise IdentityMismatchError(self.config.package_name, purchase.package_name)

        if not purchase.is_purchased():
            logger.warning(
                "playstore_purchase_not_completed",
                order_id=purchase.order_id,
                purchase_state=purchase.purchase_state,
            )
            raise TrustVerificationFailedError(
                f"purchase is not completed (purchaseState {purchase.purchase_state})"
            )

        return purchase
