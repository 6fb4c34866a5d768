"""
API Routes - FastAPI endpoints for purchase verification and gateway webhooks.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

import json
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import text
from structlog import get_logger

from unipay.api.dependencies import get_appstore_gateway, get_playstore_gateway
from unipay.config import settings
from unipay.exceptions import (
    ConcurrentConflictError,
    DataIntegrityError,
    IdentityMismatchError,
    NotificationDecodeError,
    OrderNotFoundError,
    PublisherError,
    SubscriberMismatchError,
    TransactionNotFoundError,
    TrustVerificationFailedError,
    UniPayError,
)
from unipay.models.api import (
    AppStoreVerifyRequest,
    HealthResponse,
    NotificationResponse,
    PlayStoreVerifyRequest,
    ReconcileResponse,
)
from unipay.models.identity import PayWay
from unipay.models.order import PaymentContext
from unipay.services.appstore import AppStoreGateway
from unipay.services.playstore import PlayStoreGateway
from unipay.services.reconciliation import NotificationResult

logger = get_logger(__name__)

router = APIRouter()


def to_http_exception(exc: UniPayError) -> HTTPException:
    """Map a reconciliation error to an HTTP error with a stable ``kind``."""
    if isinstance(exc, ConcurrentConflictError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, (SubscriberMismatchError, IdentityMismatchError)):
        code = status.HTTP_403_FORBIDDEN
    elif isinstance(exc, TrustVerificationFailedError):
        code = status.HTTP_502_BAD_GATEWAY if exc.retryable else status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, (OrderNotFoundError, TransactionNotFoundError)):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, (NotificationDecodeError, DataIntegrityError)):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, PublisherError):
        code = status.HTTP_502_BAD_GATEWAY
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR

    return HTTPException(
        status_code=code,
        detail={"kind": exc.kind.value, "retryable": exc.retryable, "message": str(exc)},
    )


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else ""


def _notification_response(result: NotificationResult) -> NotificationResponse:
    return NotificationResponse(
        status="ok" if result.outcome is not None or result.acknowledged else "ignored",
        event=result.event.value if result.event else None,
        action=result.action.value,
        outcome=result.outcome.value if result.outcome else None,
        acknowledged=result.acknowledged,
    )


# ============================================================================
# Client Verification
# ============================================================================


@router.post("/v1/unipay/appstore/verify", response_model=ReconcileResponse)
async def verify_appstore_purchase(
    body: AppStoreVerifyRequest,
    request: Request,
    gateway: AppStoreGateway = Depends(get_appstore_gateway),
) -> ReconcileResponse:
    """
    Verify an App Store receipt and reconcile the reported transaction.

    Idempotent: resubmitting the same transaction returns ``already_paid``.
    """
    ctx = PaymentContext(
        pay_way=PayWay.APP_STORE,
        transaction_id=body.transaction_id,
        attach=body.attach,
        uid=body.uid,
        client_ip=_client_ip(request),
        currency=body.currency,
    )
    try:
        outcome = await gateway.payment(ctx, body.receipt_data)
    except UniPayError as exc:
        logger.warning(
            "appstore_verify_rejected",
            transaction_id=body.transaction_id,
            kind=exc.kind.value,
            error=str(exc),
        )
        raise to_http_exception(exc) from exc

    return ReconcileResponse(pay_way=PayWay.APP_STORE.value, outcome=outcome.value)


@router.post("/v1/unipay/playstore/verify", response_model=ReconcileResponse)
async def verify_playstore_purchase(
    body: PlayStoreVerifyRequest,
    request: Request,
    gateway: PlayStoreGateway = Depends(get_playstore_gateway),
) -> ReconcileResponse:
    """
    Verify signed Play purchase data and reconcile the purchase.

    Idempotent: resubmitting the same purchase returns ``already_paid``.
    """
    ctx = PaymentContext(
        pay_way=PayWay.PLAY_STORE,
        transaction_id=body.transaction_id,
        attach=body.attach,
        uid=body.uid,
        client_ip=_client_ip(request),
        currency=body.currency,
    )
    try:
        outcome = await gateway.payment(ctx, body.purchase_data, body.signature)
    except UniPayError as exc:
        logger.warning("playstore_verify_rejected", kind=exc.kind.value, error=str(exc))
        raise to_http_exception(exc) from exc

    return ReconcileResponse(pay_way=PayWay.PLAY_STORE.value, outcome=outcome.value)


# ============================================================================
# Gateway Webhooks
# ============================================================================


@router.post("/v1/unipay/webhooks/appstore", response_model=NotificationResponse)
async def appstore_webhook(
    request: Request,
    gateway: AppStoreGateway = Depends(get_appstore_gateway),
) -> NotificationResponse:
    """
    Handle App Store Server Notifications (V2 signed payload or legacy V1).

    Irrelevant events answer 200 so Apple stops retrying; failures answer
    an error status so Apple redelivers later.
    """
    try:
        body = json.loads(await request.body())
        if not isinstance(body, dict):
            raise NotificationDecodeError("notification body is not an object")
        result = await gateway.notify(body, PaymentContext(pay_way=PayWay.APP_STORE))
    except json.JSONDecodeError as exc:
        logger.error("appstore_webhook_invalid_json", error=str(exc))
        raise to_http_exception(NotificationDecodeError("invalid JSON payload")) from exc
    except UniPayError as exc:
        logger.error("appstore_webhook_failed", kind=exc.kind.value, error=str(exc))
        raise to_http_exception(exc) from exc

    return _notification_response(result)


@router.post("/v1/unipay/webhooks/playstore", response_model=NotificationResponse)
async def playstore_webhook(
    request: Request,
    gateway: PlayStoreGateway = Depends(get_playstore_gateway),
) -> NotificationResponse:
    """
    Handle Google Play Real-Time Developer Notifications (Pub/Sub push).

    The purchase state is re-queried from Google before anything is
    applied; the notification body is only a signal.
    """
    payload = await request.body()
    try:
        result = await gateway.notify(payload, PaymentContext(pay_way=PayWay.PLAY_STORE))
    except UniPayError as exc:
        logger.error("playstore_webhook_failed", kind=exc.kind.value, error=str(exc))
        raise to_http_exception(exc) from exc

    return _notification_response(result)


# ============================================================================
# Health
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity when a database-backed store is in use.
    """
    if "database" not in (settings.lock_backend, settings.attach_backend):
        return HealthResponse(
            status="healthy",
            database="not_configured",
            timestamp=datetime.now(UTC).isoformat(),
        )

    from unipay.db.session import get_session

    try:
        async with get_session() as session:
            await session.execute(text("SELECT 1"))
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc

    return HealthResponse(
        status="healthy",
        database="connected",
        timestamp=datetime.now(UTC).isoformat(),
    )
