"""
FastAPI Dependencies - Wiring of gateways to their collaborators.

NO DICTIONARIES - All dependencies return typed objects.

The order ledger belongs to the host application, which provides it by
overriding ``get_order_service``:

    app.dependency_overrides[get_order_service] = lambda: MyLedger()
"""

from functools import lru_cache

from fastapi import Depends, HTTPException, status
from structlog import get_logger

from unipay.config import settings
from unipay.models.gateway import AppStoreConfig, GatewayConfig, PlayStoreConfig
from unipay.services.appstore import AppStoreGateway
from unipay.services.attach import build_attach_service
from unipay.services.classifier import (
    AppStoreNotificationClassifier,
    PlayStoreNotificationClassifier,
)
from unipay.services.locks import build_locker
from unipay.services.playstore import PlayStoreGateway
from unipay.services.protocols import AttachService, Locker, OrderService, PublisherService
from unipay.services.publisher import build_publisher
from unipay.services.receipt_verifier import AppStoreReceiptVerifier, PlayStorePurchaseVerifier
from unipay.services.reconciliation import ReconciliationEngine

logger = get_logger(__name__)


def _not_configured(what: str) -> HTTPException:
    logger.error("gateway_not_configured", component=what)
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=f"{what} is not configured",
    )


async def get_order_service() -> OrderService:
    """Placeholder until the host application overrides it."""
    raise _not_configured("Order service")


@lru_cache
def get_locker() -> Locker:
    """Process-wide locker; one instance so in-memory locks are shared."""
    return build_locker(settings)


@lru_cache
def get_attach_service() -> AttachService:
    return build_attach_service(settings)


@lru_cache
def get_publisher() -> PublisherService | None:
    return build_publisher(settings)


def get_gateway_config() -> GatewayConfig:
    return GatewayConfig.from_settings(settings)


def get_reconciliation_engine(
    order_service: OrderService = Depends(get_order_service),
    locker: Locker = Depends(get_locker),
    attach_service: AttachService = Depends(get_attach_service),
) -> ReconciliationEngine:
    return ReconciliationEngine(order_service, locker=locker, attach_service=attach_service)


def get_appstore_gateway(
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
    gateway_config: GatewayConfig = Depends(get_gateway_config),
) -> AppStoreGateway:
    """Build the App Store gateway, 503 when the bundle is not configured."""
    try:
        config = AppStoreConfig.from_settings(settings)
    except ValueError as exc:
        raise _not_configured("App Store") from exc

    return AppStoreGateway(
        engine=engine,
        verifier=AppStoreReceiptVerifier(config, gateway_config),
        classifier=AppStoreNotificationClassifier(config.bundle_id),
    )


def get_playstore_gateway(
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
    publisher: PublisherService | None = Depends(get_publisher),
) -> PlayStoreGateway:
    """Build the Play Store gateway, 503 without package or publisher credentials."""
    try:
        config = PlayStoreConfig.from_settings(settings)
    except ValueError as exc:
        raise _not_configured("Play Store") from exc
    if publisher is None:
        raise _not_configured("Play publisher API")

    return PlayStoreGateway(
        engine=engine,
        verifier=PlayStorePurchaseVerifier(config),
        classifier=PlayStoreNotificationClassifier(publisher, config.package_name),
        publisher=publisher,
    )
