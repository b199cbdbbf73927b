# Offers Router for ShillMarket
# Offer acceptance is the only offer operation that touches the order pipeline.

from fastapi import APIRouter, Depends, status

from auth.dependencies import get_current_agent
from auth.roles import capability_for
from database.models import Agent
from schemas.orders import ERROR_RESPONSES, OrderResponse
from services.order_service import OrderService, get_order_service

router = APIRouter(prefix="/offers", tags=["Offers"])


@router.post("/{offer_id}/accept", response_model=OrderResponse, status_code=status.HTTP_201_CREATED,
             responses=ERROR_RESPONSES)
async def accept_offer(
    offer_id: str,
    service: OrderService = Depends(get_order_service),
    current_agent: Agent = Depends(get_current_agent)
):
    """Accept a pending offer (campaign owner only). Creates the escrow-backed order."""
    order = service.accept_offer(offer_id, current_agent.id, capability_for(current_agent.role))
    return OrderResponse.from_order(order)
