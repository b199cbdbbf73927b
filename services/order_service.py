# Order State Machine for the ShillMarket pipeline
# Owns every write to an Order row. Status writes are conditional updates on
# the expected prior status, so a concurrent writer turns into a state
# conflict instead of a lost update.
#
#   ACCEPTED ──> ESCROW_FUNDED ──> POSTED <──> VERIFYING ──> PAID | FAILED
#       └─────────────────────────────^

from datetime import datetime, timedelta
from typing import Dict, Any, List, Optional, Union
from urllib.parse import urlparse
import logging

from fastapi import Depends
from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from auth.roles import Capability, Permission, allow_all
from config.app_config import PLATFORM_FEE_BPS, DEFAULT_RETENTION_WINDOW_SECONDS
from core.escrow_service import EscrowService, get_escrow_service
from database.config import get_db
from database.models import AgentRole, utcnow
from database.marketplace_models import (
    Campaign, CampaignStatusDB,
    Offer, OfferStatusDB,
    Order, OrderStatusDB, OrderSequence,
    EscrowPhaseDB,
)
from schemas.orders import POST_URL_MAX_LENGTH, VerifyResult
from services.dispatch_scheduler import DispatchScheduler, VERIFY_ORDER_JOB, get_dispatch_scheduler
from services.exceptions import (
    AuthorizationError,
    NotFoundError,
    SettlementRecordError,
    StateConflictError,
    ValidationError,
)

logger = logging.getLogger(__name__)

ORDER_SEQUENCE_NAME = "orders"
PROOF_SUBMITTABLE_STATUSES = (OrderStatusDB.ACCEPTED, OrderStatusDB.ESCROW_FUNDED)
TERMINAL_STATUSES = (OrderStatusDB.PAID, OrderStatusDB.FAILED)


class OrderService:
    """
    State machine operations for a single order.

    One instance wraps one session. Escrow and scheduler collaborators are
    only required by the operations that use them.
    """

    def __init__(
        self,
        db: Session,
        escrow: Optional[EscrowService] = None,
        scheduler: Optional[DispatchScheduler] = None,
        fee_bps: int = PLATFORM_FEE_BPS,
        clock=utcnow,
    ):
        self.db = db
        self.escrow = escrow
        self.scheduler = scheduler
        self.fee_bps = fee_bps
        self.clock = clock

    # ------------------------------------------------------------------
    # Acceptance
    # ------------------------------------------------------------------

    def accept_offer(self, offer_id: str, actor_id: str, capability: Capability = allow_all) -> Order:
        """
        Turn a pending offer into an order.

        The order insert, the offer status change, the campaign fill increment
        and the sequence counter bump commit together or not at all.
        """
        if not capability(Permission.ACCEPT_OFFERS):
            raise AuthorizationError("Only requesters can accept offers")

        try:
            offer = self.db.query(Offer).options(
                joinedload(Offer.campaign)
            ).filter(Offer.id == offer_id).first()

            if not offer:
                raise NotFoundError("Offer not found")

            campaign = offer.campaign
            if campaign.requester_id != actor_id:
                raise AuthorizationError("Not your campaign")
            if offer.status != OfferStatusDB.PENDING:
                raise StateConflictError(f"Offer is not pending (status: {offer.status.value})", offer.status)
            if campaign.status != CampaignStatusDB.ACTIVE:
                raise StateConflictError(f"Campaign is not active (status: {campaign.status.value})", campaign.status)
            if offer.price > campaign.max_price:
                raise ValidationError("Offer price exceeds campaign max price")

            filled = self.db.query(Campaign).filter(
                Campaign.id == campaign.id,
                Campaign.filled < Campaign.quantity
            ).update({Campaign.filled: Campaign.filled + 1}, synchronize_session=False)
            if not filled:
                raise StateConflictError("Campaign is already filled")

            marked = self.db.query(Offer).filter(
                Offer.id == offer.id,
                Offer.status == OfferStatusDB.PENDING
            ).update({Offer.status: OfferStatusDB.ACCEPTED, Offer.accepted_at: self.clock()}, synchronize_session=False)
            if not marked:
                raise StateConflictError("Offer is no longer pending")

            sequence_no = self._next_sequence_no()
            order = Order(
                campaign_id=campaign.id,
                offer_id=offer.id,
                requester_id=campaign.requester_id,
                fulfiller_id=offer.fulfiller_id,
                sequence_no=sequence_no,
                amount=offer.price,
                fee_bps=self.fee_bps,
                escrow_handle=self._escrow().derive_handle(sequence_no),
                escrow_phase=EscrowPhaseDB.LOCKED,
                status=OrderStatusDB.ACCEPTED,
                retention_window_seconds=campaign.retention_window_seconds or DEFAULT_RETENTION_WINDOW_SECONDS,
            )
            self.db.add(order)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(order)
        logger.info(f"[orders] Offer {offer_id} accepted: order {order.id} (#{order.sequence_no}, amount={order.amount})")
        return order

    def _next_sequence_no(self) -> int:
        """Atomically bump the order counter inside the current transaction."""
        bumped = self.db.query(OrderSequence).filter(
            OrderSequence.name == ORDER_SEQUENCE_NAME
        ).update({OrderSequence.last_value: OrderSequence.last_value + 1}, synchronize_session=False)

        if not bumped:
            # Counter row missing; init_db seeds it, this covers bare schemas
            self.db.add(OrderSequence(name=ORDER_SEQUENCE_NAME, last_value=1))
            self.db.flush()
            return 1

        return self.db.query(OrderSequence.last_value).filter(
            OrderSequence.name == ORDER_SEQUENCE_NAME
        ).scalar()

    # ------------------------------------------------------------------
    # Requester / fulfiller transitions
    # ------------------------------------------------------------------

    def mark_escrow_funded(self, order_id: str, actor_id: str, signature: str,
                           capability: Capability = allow_all) -> Order:
        """Record the ledger's funding confirmation (ACCEPTED -> ESCROW_FUNDED)."""
        order = self._get(order_id)
        if order.requester_id != actor_id or not capability(Permission.CONFIRM_ESCROW):
            raise AuthorizationError("Not your order")

        self._transition(
            order,
            (OrderStatusDB.ACCEPTED,),
            {Order.status: OrderStatusDB.ESCROW_FUNDED, Order.escrow_funded_signature: signature},
            action="confirm escrow funding",
        )
        self.db.commit()
        self.db.refresh(order)
        logger.info(f"[orders] Order {order_id} escrow funded ({signature})")
        return order

    def submit_proof(self, order_id: str, actor_id: str, post_id: str, post_url: str,
                     capability: Capability = allow_all) -> Order:
        """
        Record the fulfiller's proof of posting and schedule verification.

        The verification job is scheduled only after the POSTED write has
        committed.
        """
        post_id = (post_id or "").strip()
        if not post_id:
            raise ValidationError("postId must not be empty")
        parsed = urlparse(post_url or "")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValidationError("postUrl must be a valid http(s) URL")
        if len(post_url) > POST_URL_MAX_LENGTH:
            raise ValidationError(f"postUrl must be at most {POST_URL_MAX_LENGTH} characters")

        order = self._get(order_id)
        if order.fulfiller_id != actor_id or not capability(Permission.SUBMIT_PROOF):
            raise AuthorizationError("Not your order")

        retention_window = order.retention_window_seconds
        posted_at = self.clock()
        verify_at = posted_at + timedelta(seconds=retention_window)
        self._transition(
            order,
            PROOF_SUBMITTABLE_STATUSES,
            {
                Order.post_id: post_id,
                Order.post_url: post_url,
                Order.posted_at: posted_at,
                Order.verify_at: verify_at,
                Order.status: OrderStatusDB.POSTED,
            },
            action="submit proof",
        )
        self.db.commit()

        job_id = self._scheduler().schedule(
            VERIFY_ORDER_JOB,
            {"order_id": order_id},
            retention_window,
        )
        logger.info(f"[orders] Order {order_id} posted ({post_id}); verification job {job_id} due at {verify_at}")

        self.db.refresh(order)
        return order

    # ------------------------------------------------------------------
    # Verification transitions (verification job only)
    # ------------------------------------------------------------------

    def claim_for_verification(self, order_id: str, reclaim_before: Optional[datetime] = None) -> Optional[Order]:
        """
        POSTED -> VERIFYING compare-and-set.

        With reclaim_before, a VERIFYING order whose claim was taken before that
        time is claimed again; its holder is presumed dead.

        Returns the claimed order with campaign and fulfiller loaded, or None
        when the order is not claimable (held, settled or missing).
        """
        claimable = Order.status == OrderStatusDB.POSTED
        if reclaim_before is not None:
            claimable = or_(claimable, and_(
                Order.status == OrderStatusDB.VERIFYING,
                Order.claimed_at < reclaim_before,
            ))

        try:
            claimed = self.db.query(Order).filter(
                Order.id == order_id,
                claimable
            ).update({Order.status: OrderStatusDB.VERIFYING, Order.claimed_at: self.clock()}, synchronize_session=False)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if not claimed:
            return None

        order = self.db.query(Order).options(
            joinedload(Order.campaign),
            joinedload(Order.fulfiller)
        ).filter(Order.id == order_id).populate_existing().first()
        # Hand back a detached snapshot and end the read, so no lock is held
        # while the caller waits on external calls
        self.db.expunge_all()
        self.db.commit()
        return order

    def release_claim(self, order_id: str, verify_result: Union[VerifyResult, Dict[str, Any]]) -> bool:
        """VERIFYING -> POSTED after a transient failure. Escrow phase is untouched."""
        self.db.rollback()
        try:
            released = self.db.query(Order).filter(
                Order.id == order_id,
                Order.status == OrderStatusDB.VERIFYING
            ).update({
                Order.status: OrderStatusDB.POSTED,
                Order.claimed_at: None,
                Order.verify_result: _as_record(verify_result),
                Order.verify_attempts: Order.verify_attempts + 1,
            }, synchronize_session=False)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if not released:
            logger.warning(f"[orders] Order {order_id} claim was not held when releasing it")
        return bool(released)

    def finalize_success(self, order_id: str, verify_result: Union[VerifyResult, Dict[str, Any]]) -> Order:
        """Release escrow to the fulfiller, then mark the order PAID."""
        order = self._get_claimed(order_id)
        sequence_no, amount, fee_bps = order.sequence_no, order.amount, order.fee_bps
        self.db.commit()

        confirmation = self._escrow().release(sequence_no, amount, fee_bps)

        return self._settle(order_id, {
            Order.status: OrderStatusDB.PAID,
            Order.escrow_phase: EscrowPhaseDB.RELEASED,
            Order.verified_at: self.clock(),
            Order.verify_result: _as_record(verify_result),
            Order.release_signature: confirmation.signature,
        }, action="release")

    def finalize_failure(self, order_id: str, verify_result: Union[VerifyResult, Dict[str, Any]]) -> Order:
        """Refund escrow to the requester, then mark the order FAILED."""
        order = self._get_claimed(order_id)
        sequence_no, amount = order.sequence_no, order.amount
        self.db.commit()

        confirmation = self._escrow().refund(sequence_no, amount)

        return self._settle(order_id, {
            Order.status: OrderStatusDB.FAILED,
            Order.escrow_phase: EscrowPhaseDB.REFUNDED,
            Order.verified_at: self.clock(),
            Order.verify_result: _as_record(verify_result),
            Order.refund_signature: confirmation.signature,
        }, action="refund")

    def _settle(self, order_id: str, values: Dict, action: str) -> Order:
        try:
            settled = self.db.query(Order).filter(
                Order.id == order_id,
                Order.status == OrderStatusDB.VERIFYING
            ).update(values, synchronize_session=False)
            if not settled:
                raise SettlementRecordError(f"Order {order_id} left VERIFYING during escrow {action}")
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.critical(f"[orders] Escrow {action} done for order {order_id} but the order row was not updated: {e}")
            raise SettlementRecordError(f"Escrow {action} recorded on ledger only: {e}") from e
        except SettlementRecordError as e:
            self.db.rollback()
            logger.critical(f"[orders] {e}")
            raise

        order = self._get(order_id)
        logger.info(f"[orders] Order {order_id} settled: {order.status.value} (escrow {action})")
        return order

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_order(self, order_id: str, actor_id: str, capability: Capability = allow_all) -> Order:
        """An order as seen by one of its parties."""
        order = self._get(order_id)
        if actor_id not in (order.requester_id, order.fulfiller_id) and not capability(Permission.RECONCILE_ORDERS):
            raise AuthorizationError("Not authorized to view this order")
        return order

    def list_orders(self, actor_id: str, role: AgentRole) -> List[Order]:
        """The actor's orders, newest first."""
        query = self.db.query(Order)
        if role == AgentRole.REQUESTER:
            query = query.filter(Order.requester_id == actor_id)
        elif role == AgentRole.FULFILLER:
            query = query.filter(Order.fulfiller_id == actor_id)
        return query.order_by(Order.sequence_no.desc()).all()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get(self, order_id: str) -> Order:
        order = self.db.query(Order).filter(Order.id == order_id).populate_existing().first()
        if not order:
            raise NotFoundError("Order not found")
        return order

    def _get_claimed(self, order_id: str) -> Order:
        order = self._get(order_id)
        if order.status != OrderStatusDB.VERIFYING:
            raise StateConflictError(
                f"Order must be claimed for verification before settling (status: {order.status.value})",
                order.status,
            )
        return order

    def _transition(self, order: Order, allowed: tuple, values: Dict, action: str) -> None:
        if order.status not in allowed:
            raise StateConflictError(f"Cannot {action} in status: {order.status.value}", order.status)

        changed = self.db.query(Order).filter(
            Order.id == order.id,
            Order.status.in_(allowed)
        ).update(values, synchronize_session=False)

        if not changed:
            self.db.rollback()
            current = self._get(order.id)
            raise StateConflictError(f"Cannot {action} in status: {current.status.value}", current.status)

    def _escrow(self) -> EscrowService:
        if self.escrow is None:
            self.escrow = EscrowService()
        return self.escrow

    def _scheduler(self) -> DispatchScheduler:
        if self.scheduler is None:
            self.scheduler = get_dispatch_scheduler()
        return self.scheduler


def _as_record(verify_result: Union[VerifyResult, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(verify_result, VerifyResult):
        return verify_result.to_record()
    return dict(verify_result)


def get_order_service(
    db: Session = Depends(get_db),
    scheduler: DispatchScheduler = Depends(get_dispatch_scheduler),
    escrow: EscrowService = Depends(get_escrow_service),
) -> OrderService:
    """FastAPI dependency for the order state machine."""
    return OrderService(db, escrow=escrow, scheduler=scheduler)
