# Schemas module for ShillMarket
# Pydantic request/response bodies for the order pipeline

from schemas.orders import (
    SubmitProofRequest,
    EscrowFundedRequest,
    VerifyResult,
    OrderResponse,
    ErrorResponse,
)

__all__ = [
    "SubmitProofRequest",
    "EscrowFundedRequest",
    "VerifyResult",
    "OrderResponse",
    "ErrorResponse",
]
