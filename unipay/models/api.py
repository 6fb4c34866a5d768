"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from typing import Literal

from pydantic import BaseModel, Field

# ============================================================================
# Client Verification Models
# ============================================================================


class AppStoreVerifyRequest(BaseModel):
    """POST /v1/unipay/appstore/verify request body."""

    transaction_id: str = Field(..., min_length=1, max_length=128)
    receipt_data: str = Field(..., min_length=1, description="Base64 app receipt")
    attach: str = Field("", max_length=4096, description="Passthrough payload for the order")
    uid: str | None = Field(None, max_length=255)
    currency: str = Field("", max_length=8)


class PlayStoreVerifyRequest(BaseModel):
    """POST /v1/unipay/playstore/verify request body."""

    purchase_data: str = Field(
        ..., min_length=2, description="INAPP_PURCHASE_DATA exactly as signed"
    )
    signature: str = Field(..., min_length=1, description="INAPP_DATA_SIGNATURE")
    transaction_id: str = Field(
        "", max_length=128, description="Client-reported order id, informational"
    )
    attach: str = Field("", max_length=4096)
    uid: str | None = Field(None, max_length=255)
    currency: str = Field("", max_length=8)


class ReconcileResponse(BaseModel):
    """Result of a client verification."""

    pay_way: str
    outcome: Literal["applied", "already_paid", "revoked"]


# ============================================================================
# Webhook Models
# ============================================================================


class NotificationResponse(BaseModel):
    """Webhook response; any 2xx stops gateway redelivery."""

    status: Literal["ok", "ignored"]
    event: str | None = None
    action: Literal["invoke", "revoke", "none"] = "none"
    outcome: str | None = None
    acknowledged: bool = False


# ============================================================================
# Health Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: Literal["healthy", "unhealthy"]
    database: Literal["connected", "disconnected", "not_configured"]
    timestamp: str
