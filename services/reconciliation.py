# Reconciliation pass
# Compares order records with the escrow ledger and reports disagreements.
# Findings are logged for an operator; nothing is repaired automatically.

from datetime import timedelta
from typing import List, Optional
import logging

from pydantic import BaseModel
from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from config.app_config import RECONCILE_STALE_CLAIM_SECONDS
from core.escrow_service import EscrowService
from database.models import utcnow
from database.marketplace_models import Order, OrderStatusDB, EscrowPhaseDB
from services.exceptions import EscrowError

logger = logging.getLogger(__name__)

STALE_CLAIM = "stale_claim"
OVERDUE_VERIFICATION = "overdue_verification"
PHASE_MISMATCH = "phase_mismatch"
LEDGER_AHEAD = "ledger_ahead"

OPEN_STATUSES = (
    OrderStatusDB.ACCEPTED,
    OrderStatusDB.ESCROW_FUNDED,
    OrderStatusDB.POSTED,
    OrderStatusDB.VERIFYING,
)
SETTLED_LEDGER_PHASES = (EscrowPhaseDB.RELEASED.value, EscrowPhaseDB.REFUNDED.value)


class ReconciliationFinding(BaseModel):
    order_id: str
    sequence_no: int
    kind: str
    order_status: str
    escrow_phase: str
    ledger_phase: Optional[str] = None
    detail: str


class ReconciliationService:
    def __init__(self, db: Session, escrow: Optional[EscrowService] = None,
                 stale_claim_seconds: int = RECONCILE_STALE_CLAIM_SECONDS, clock=utcnow):
        self.db = db
        self.escrow = escrow or EscrowService()
        self.stale_claim_seconds = stale_claim_seconds
        self.clock = clock

    def run(self) -> List[ReconciliationFinding]:
        cutoff = self.clock() - timedelta(seconds=self.stale_claim_seconds)
        findings: List[ReconciliationFinding] = []

        stale_claims = self.db.query(Order).filter(
            Order.status == OrderStatusDB.VERIFYING,
            Order.claimed_at < cutoff
        ).all()
        for order in stale_claims:
            findings.append(self._finding(
                order, STALE_CLAIM,
                f"Verification claimed at {order.claimed_at} never finished; escrow may have moved",
            ))

        overdue = self.db.query(Order).filter(
            Order.status == OrderStatusDB.POSTED,
            Order.verify_at < cutoff
        ).all()
        for order in overdue:
            findings.append(self._finding(
                order, OVERDUE_VERIFICATION,
                f"Verification was due at {order.verify_at}; the job may be lost or abandoned",
            ))

        mismatched = self.db.query(Order).filter(or_(
            and_(Order.status == OrderStatusDB.PAID, Order.escrow_phase != EscrowPhaseDB.RELEASED),
            and_(Order.status == OrderStatusDB.FAILED, Order.escrow_phase != EscrowPhaseDB.REFUNDED),
        )).all()
        for order in mismatched:
            findings.append(self._finding(
                order, PHASE_MISMATCH,
                f"Order is {order.status.value} but escrow phase is {order.escrow_phase.value}",
            ))

        if not self.escrow.dry_run:
            findings.extend(self._check_ledger())

        for finding in findings:
            logger.error(
                f"[reconcile] {finding.kind}: order {finding.order_id} (#{finding.sequence_no}) "
                f"status={finding.order_status} phase={finding.escrow_phase} "
                f"ledger={finding.ledger_phase} - {finding.detail}"
            )
        logger.info(f"[reconcile] Pass complete: {len(findings)} finding(s)")
        return findings

    def _check_ledger(self) -> List[ReconciliationFinding]:
        findings = []
        open_orders = self.db.query(Order).filter(Order.status.in_(OPEN_STATUSES)).all()
        for order in open_orders:
            try:
                ledger_phase = self.escrow.get_escrow_phase(order.sequence_no)
            except EscrowError as e:
                logger.warning(f"[reconcile] Could not read ledger for order {order.id}: {e}")
                continue
            if ledger_phase in SETTLED_LEDGER_PHASES:
                findings.append(self._finding(
                    order, LEDGER_AHEAD,
                    f"Ledger is {ledger_phase} but the order is still {order.status.value}",
                    ledger_phase=ledger_phase,
                ))
        return findings

    @staticmethod
    def _finding(order: Order, kind: str, detail: str, ledger_phase: Optional[str] = None) -> ReconciliationFinding:
        return ReconciliationFinding(
            order_id=order.id,
            sequence_no=order.sequence_no,
            kind=kind,
            order_status=order.status.value,
            escrow_phase=order.escrow_phase.value,
            ledger_phase=ledger_phase,
            detail=detail,
        )
