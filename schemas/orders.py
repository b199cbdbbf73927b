# Pydantic Schemas for the order pipeline
# Wire bodies use camelCase; integers that can exceed 2**53 are sent as strings.

from pydantic import BaseModel, Field, HttpUrl, validator
from pydantic.alias_generators import to_camel
from typing import Optional, Dict, Any
from datetime import datetime


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


# Matches Order.post_url
POST_URL_MAX_LENGTH = 500


# ============================================================================
# REQUESTS
# ============================================================================

class SubmitProofRequest(CamelModel):
    post_id: str = Field(..., min_length=1, max_length=64, description="Id of the published post")
    post_url: HttpUrl = Field(..., description="Public URL of the published post")

    @validator("post_id")
    def post_id_not_blank(cls, v):
        if not v.strip():
            raise ValueError("postId must not be blank")
        return v.strip()

    @validator("post_url")
    def post_url_fits(cls, v):
        if len(str(v)) > POST_URL_MAX_LENGTH:
            raise ValueError(f"postUrl must be at most {POST_URL_MAX_LENGTH} characters")
        return v


class EscrowFundedRequest(CamelModel):
    signature: str = Field(..., min_length=1, max_length=128, description="Ledger funding transaction signature")


# ============================================================================
# VERIFICATION RESULT
# ============================================================================

class VerifyResult(BaseModel):
    """Outcome of one verification run, persisted on the order as JSON."""
    checks: Dict[str, bool] = Field(default_factory=dict)
    passed: bool = False
    reason: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


# ============================================================================
# RESPONSES
# ============================================================================

class OrderResponse(CamelModel):
    id: str
    order_sequence_no: str
    campaign_id: str
    offer_id: str
    requester_id: str
    fulfiller_id: str
    amount: str
    fee_bps: int
    escrow_handle: str
    escrow_phase: str
    status: str
    post_id: Optional[str] = None
    post_url: Optional[str] = None
    posted_at: Optional[datetime] = None
    retention_window_seconds: int
    verify_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None
    verify_result: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_order(cls, order) -> "OrderResponse":
        return cls(
            id=order.id,
            order_sequence_no=str(order.sequence_no),
            campaign_id=order.campaign_id,
            offer_id=order.offer_id,
            requester_id=order.requester_id,
            fulfiller_id=order.fulfiller_id,
            amount=str(order.amount),
            fee_bps=order.fee_bps,
            escrow_handle=order.escrow_handle,
            escrow_phase=order.escrow_phase.value,
            status=order.status.value,
            post_id=order.post_id,
            post_url=order.post_url,
            posted_at=order.posted_at,
            retention_window_seconds=order.retention_window_seconds,
            verify_at=order.verify_at,
            verified_at=order.verified_at,
            verify_result=order.verify_result,
            created_at=order.created_at,
        )


class ErrorResponse(BaseModel):
    error: str
    detail: Any = None


# Documented error bodies, all rendered by the handlers in server.py
ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid input or order state conflict"},
    401: {"model": ErrorResponse, "description": "Missing or invalid bearer token"},
    403: {"model": ErrorResponse, "description": "Caller may not act on this resource"},
    404: {"model": ErrorResponse, "description": "Order or offer not found"},
}
