# Verification Job Processor
# Runs after an order's retention window: checks the posted proof against the
# campaign policy and settles escrow through the order state machine.

from datetime import timedelta
from typing import Any, Dict, Optional
import logging

from config.app_config import RECONCILE_STALE_CLAIM_SECONDS
from core.escrow_service import EscrowService
from core.twitter_service import get_proof_source
from database.config import SessionLocal
from database.models import utcnow
from database.marketplace_models import Order, OrderStatusDB
from schemas.orders import VerifyResult
from services.exceptions import JobNotDue, SettlementRecordError, TransientExternalError
from services.order_service import OrderService

logger = logging.getLogger(__name__)

REASON_POST_NOT_FOUND = "post not found"
REASON_AUTHOR_MISMATCH = "author mismatch"
REASON_MISSING_LINKS = "missing required links"
REASON_MISSING_DISCLOSURE = "missing disclosure text"
REASON_VERIFICATION_ERROR = "verification error"


class VerificationJobProcessor:
    """
    Processor for `verify_order` jobs, payload {"order_id": ...}.

    Safe under duplicate delivery: only the delivery that wins the
    POSTED -> VERIFYING claim talks to the proof source and the ledger.
    Transient failures release the claim and propagate so the scheduler
    retries; failed checks settle the order through a refund. A claim left
    behind by a worker that died mid-run is taken over once it is stale.
    """

    def __init__(self, session_factory=SessionLocal, proof_source=None, escrow=None, clock=utcnow,
                 stale_claim_seconds: int = RECONCILE_STALE_CLAIM_SECONDS):
        self.session_factory = session_factory
        self.proof_source = proof_source
        self.escrow = escrow
        self.clock = clock
        self.stale_claim_seconds = stale_claim_seconds

    def __call__(self, payload: Dict[str, Any]) -> Optional[str]:
        return self.process(payload)

    def process(self, payload: Dict[str, Any]) -> Optional[str]:
        """Returns the resulting order status value, or None when skipped."""
        order_id = payload.get("order_id") if isinstance(payload, dict) else None
        if not order_id:
            logger.error(f"[verify] Ignoring job without order_id: {payload}")
            return None

        logger.info(f"[verify] Processing order {order_id}")
        db = self.session_factory()
        try:
            service = OrderService(db, escrow=self._escrow(), clock=self.clock)

            order = db.query(Order).filter(Order.id == order_id).first()
            if order and order.status == OrderStatusDB.VERIFYING:
                return self._reclaim_stale(db, service, order)
            if not order or order.status != OrderStatusDB.POSTED:
                logger.info(f"[verify] Order {order_id} skipped: status={order.status.value if order else None}")
                return None

            now = self.clock()
            if order.verify_at and now < order.verify_at:
                raise JobNotDue((order.verify_at - now).total_seconds())

            claimed = service.claim_for_verification(order_id)
            if claimed is None:
                logger.info(f"[verify] Order {order_id} skipped: claimed by another delivery")
                return None

            return self._verify(service, claimed)
        finally:
            db.close()

    def _reclaim_stale(self, db, service: OrderService, order: Order) -> Optional[str]:
        """
        Take over a VERIFYING claim whose holder stopped before settling.

        While the claim is younger than stale_claim_seconds the job is deferred
        to the moment it turns stale; by then the holder has settled the order
        or is presumed dead. When a ledger is configured the escrow must still
        be locked there; otherwise funds already moved and the order is left
        for reconciliation.
        """
        order_id = order.id
        cutoff = self.clock() - timedelta(seconds=self.stale_claim_seconds)
        if order.claimed_at is None:
            logger.error(f"[verify] Order {order_id} is VERIFYING without a claim time; leaving it for reconciliation")
            return None
        if order.claimed_at >= cutoff:
            logger.info(f"[verify] Order {order_id} is claimed by another delivery, checking back once the claim is stale")
            raise JobNotDue((order.claimed_at - cutoff).total_seconds() + 1)

        sequence_no = order.sequence_no
        claimed_at = order.claimed_at
        # End the read before talking to the ledger
        db.rollback()

        escrow = self._escrow()
        if not escrow.dry_run:
            ledger_phase = escrow.get_escrow_phase(sequence_no)
            if ledger_phase != "locked":
                logger.error(f"[verify] Order {order_id} has a stale claim but the ledger reports "
                             f"'{ledger_phase}'; leaving it for reconciliation")
                return None

        logger.warning(f"[verify] Order {order_id} claim from {claimed_at} is stale, taking it over")
        claimed = service.claim_for_verification(order_id, reclaim_before=cutoff)
        if claimed is None:
            logger.info(f"[verify] Order {order_id} skipped: claimed by another delivery")
            return None
        return self._verify(service, claimed)

    def _verify(self, service: OrderService, order: Order) -> str:
        result = VerifyResult(timestamp=self.clock())
        order_id = order.id
        post_id = order.post_id
        verified_author_id = order.fulfiller.verified_author_id
        required_links = list(order.campaign.required_links or [])
        disclosure_text = order.campaign.disclosure_text or ""

        try:
            # 1. Post exists
            post = self._proof_source().get_post(post_id)
            if post is None:
                result.checks["exists"] = False
                return self._fail(service, order_id, result, REASON_POST_NOT_FOUND)
            result.checks["exists"] = True

            # 2. Author matches verified account
            if not verified_author_id or post.author_id != verified_author_id:
                result.checks["author"] = False
                return self._fail(service, order_id, result, REASON_AUTHOR_MISMATCH)
            result.checks["author"] = True

            # 3. Required links
            links_present = all(link in post.text for link in required_links)
            result.checks["requiredLinks"] = links_present
            if not links_present:
                return self._fail(service, order_id, result, REASON_MISSING_LINKS)

            # 4. Disclosure text
            has_disclosure = disclosure_text in post.text
            result.checks["disclosure"] = has_disclosure
            if not has_disclosure:
                return self._fail(service, order_id, result, REASON_MISSING_DISCLOSURE)

            result.passed = True
            service.finalize_success(order_id, result)
            logger.info(f"[verify] Order {order_id} PASSED - escrow released")
            return OrderStatusDB.PAID.value
        except SettlementRecordError:
            # Funds already moved; keep the claim so reconciliation flags it
            raise
        except Exception as e:
            result.passed = False
            result.reason = REASON_VERIFICATION_ERROR
            result.error = str(e)
            try:
                service.release_claim(order_id, result)
            except Exception as release_error:
                # The claim stays VERIFYING and is taken over once stale
                logger.error(f"[verify] Could not release claim on order {order_id}: {release_error}", exc_info=True)
            if isinstance(e, TransientExternalError):
                logger.warning(f"[verify] Order {order_id} could not be verified, will retry: {e}")
            else:
                logger.error(f"[verify] Error verifying order {order_id}: {e}", exc_info=True)
            raise

    def _fail(self, service: OrderService, order_id: str, result: VerifyResult, reason: str) -> str:
        result.reason = reason
        service.finalize_failure(order_id, result)
        logger.info(f"[verify] Order {order_id} FAILED - {reason}")
        return OrderStatusDB.FAILED.value

    def _proof_source(self):
        if self.proof_source is None:
            self.proof_source = get_proof_source()
        return self.proof_source

    def _escrow(self):
        if self.escrow is None:
            self.escrow = EscrowService()
        return self.escrow
