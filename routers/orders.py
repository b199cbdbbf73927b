# Orders Router for ShillMarket
# Proof submission, escrow funding confirmation and order status polling.
# Verification outcomes are only observable here; the job never answers a caller.

from fastapi import APIRouter, Depends
from typing import List

from auth.decorators import require_permission
from auth.dependencies import get_current_agent
from auth.roles import Permission, capability_for
from database.models import Agent
from schemas.orders import ERROR_RESPONSES, SubmitProofRequest, EscrowFundedRequest, OrderResponse
from services.order_service import OrderService, get_order_service

router = APIRouter(prefix="/orders", tags=["Orders"])


@router.get("", response_model=List[OrderResponse], responses=ERROR_RESPONSES)
async def list_my_orders(
    service: OrderService = Depends(get_order_service),
    current_agent: Agent = Depends(require_permission(Permission.VIEW_OWN_ORDERS))
):
    """Orders where the agent is the requester (requesters) or fulfiller (fulfillers)."""
    orders = service.list_orders(current_agent.id, current_agent.role)
    return [OrderResponse.from_order(order) for order in orders]


@router.get("/{order_id}", response_model=OrderResponse, responses=ERROR_RESPONSES)
async def get_order(
    order_id: str,
    service: OrderService = Depends(get_order_service),
    current_agent: Agent = Depends(get_current_agent)
):
    """Order status and verification result. Only the two parties may view it."""
    order = service.get_order(order_id, current_agent.id, capability_for(current_agent.role))
    return OrderResponse.from_order(order)


@router.post("/{order_id}/proof", response_model=OrderResponse, responses=ERROR_RESPONSES)
async def submit_proof(
    order_id: str,
    request: SubmitProofRequest,
    service: OrderService = Depends(get_order_service),
    current_agent: Agent = Depends(get_current_agent)
):
    """
    Submit the published post as proof of work (fulfiller only).
    Verification runs once the campaign's retention window has passed.
    """
    order = service.submit_proof(
        order_id,
        current_agent.id,
        request.post_id,
        str(request.post_url),
        capability_for(current_agent.role),
    )
    return OrderResponse.from_order(order)


@router.post("/{order_id}/escrow-funded", response_model=OrderResponse, responses=ERROR_RESPONSES)
async def confirm_escrow_funded(
    order_id: str,
    request: EscrowFundedRequest,
    service: OrderService = Depends(get_order_service),
    current_agent: Agent = Depends(get_current_agent)
):
    """Record the ledger confirmation that the requester funded the escrow."""
    order = service.mark_escrow_funded(
        order_id,
        current_agent.id,
        request.signature,
        capability_for(current_agent.role),
    )
    return OrderResponse.from_order(order)
