"""Verification job: policy checks, settlement and delivery-safety."""

import threading

import pytest

from config.app_config import RECONCILE_STALE_CLAIM_SECONDS as STALE_CLAIM_SECONDS
from conftest import (
    DISCLOSURE, FEE_BPS, OFFER_PRICE, REQUIRED_LINKS, RETENTION_SECONDS, VERIFIED_AUTHOR_ID,
    jobs_for, transient_escrow_error, transient_proof_error,
)
from database.models import AgentRole
from database.marketplace_models import OrderStatusDB, EscrowPhaseDB
from services.exceptions import EscrowError, JobNotDue, ProofSourceError
from services.order_service import OrderService
from services.verification_service import (
    REASON_AUTHOR_MISMATCH,
    REASON_MISSING_DISCLOSURE,
    REASON_MISSING_LINKS,
    REASON_POST_NOT_FOUND,
    REASON_VERIFICATION_ERROR,
)


@pytest.fixture
def due(clock):
    """Move the clock past the retention window."""
    clock.advance(RETENTION_SECONDS + 1)


# ============================================================================
# Outcomes
# ============================================================================

class TestVerificationOutcomes:
    def test_passing_post_releases_escrow(self, posted_order, due, verify, escrow, fetch_order):
        assert verify(posted_order) == "paid"

        order = fetch_order(posted_order)
        assert order.status == OrderStatusDB.PAID
        assert order.escrow_phase == EscrowPhaseDB.RELEASED
        assert order.release_signature == f"release-{order.sequence_no}"
        assert order.verified_at is not None
        assert order.claimed_at is not None
        assert order.verify_result["passed"] is True
        assert order.verify_result["checks"] == {
            "exists": True, "author": True, "requiredLinks": True, "disclosure": True,
        }

        assert escrow.calls == [("release", order.sequence_no, OFFER_PRICE, FEE_BPS)]
        confirmation = escrow.confirmations[0]
        assert confirmation.fulfiller_amount == 485_000
        assert confirmation.fee_amount == 15_000

    def test_missing_link_refunds(self, posted_order, due, verify, escrow, proof_source, fetch_order):
        proof_source.add_post("tweet-1", text=f"gm {REQUIRED_LINKS[0]} {DISCLOSURE}")

        assert verify(posted_order) == "failed"

        order = fetch_order(posted_order)
        assert order.status == OrderStatusDB.FAILED
        assert order.escrow_phase == EscrowPhaseDB.REFUNDED
        assert order.refund_signature == f"refund-{order.sequence_no}"
        assert order.verify_result["passed"] is False
        assert order.verify_result["reason"] == REASON_MISSING_LINKS
        assert order.verify_result["checks"]["requiredLinks"] is False
        assert escrow.calls == [("refund", order.sequence_no, OFFER_PRICE)]

    def test_missing_disclosure(self, posted_order, due, verify, proof_source, fetch_order):
        proof_source.add_post("tweet-1", text=f"gm {' '.join(REQUIRED_LINKS)}")

        assert verify(posted_order) == "failed"

        result = fetch_order(posted_order).verify_result
        assert result["reason"] == REASON_MISSING_DISCLOSURE
        assert result["checks"] == {
            "exists": True, "author": True, "requiredLinks": True, "disclosure": False,
        }

    def test_author_mismatch(self, posted_order, due, verify, proof_source, escrow, fetch_order):
        proof_source.add_post("tweet-1", author_id="999")

        assert verify(posted_order) == "failed"

        result = fetch_order(posted_order).verify_result
        assert result["reason"] == REASON_AUTHOR_MISMATCH
        assert result["checks"] == {"exists": True, "author": False}
        assert [call[0] for call in escrow.calls] == ["refund"]

    def test_post_not_found(self, posted_order, due, verify, proof_source, fetch_order):
        proof_source.posts.clear()

        assert verify(posted_order) == "failed"

        result = fetch_order(posted_order).verify_result
        assert result["reason"] == REASON_POST_NOT_FOUND
        assert result["checks"] == {"exists": False}

    def test_unverified_fulfiller_fails_author_check(self, db, seeder, service, proof_source, clock, verify, fetch_order):
        requester = seeder.agent(AgentRole.REQUESTER)
        fulfiller = seeder.agent(AgentRole.FULFILLER, verified_author_id=None)
        campaign = seeder.campaign(requester)
        offer = seeder.offer(campaign, fulfiller)
        order_id = service.accept_offer(offer, requester).id
        proof_source.add_post("tweet-9")
        service.submit_proof(order_id, fulfiller, "tweet-9", "https://x.com/a/status/9")
        clock.advance(RETENTION_SECONDS)

        assert verify(order_id) == "failed"
        assert fetch_order(order_id).verify_result["reason"] == REASON_AUTHOR_MISMATCH

    def test_campaign_without_required_links(self, db, seeder, service, proof_source, clock, verify):
        requester = seeder.agent(AgentRole.REQUESTER)
        fulfiller = seeder.agent(AgentRole.FULFILLER, verified_author_id=VERIFIED_AUTHOR_ID)
        campaign = seeder.campaign(requester, required_links=[])
        offer = seeder.offer(campaign, fulfiller)
        order_id = service.accept_offer(offer, requester).id
        proof_source.add_post("tweet-7", text=f"no links here {DISCLOSURE}")
        service.submit_proof(order_id, fulfiller, "tweet-7", "https://x.com/a/status/7")
        clock.advance(RETENTION_SECONDS)

        assert verify(order_id) == "paid"


# ============================================================================
# Delivery safety
# ============================================================================

class TestDeliverySafety:
    def test_early_delivery_is_deferred(self, posted_order, clock, verify, escrow, proof_source, fetch_order):
        clock.advance(RETENTION_SECONDS - 60)

        with pytest.raises(JobNotDue) as exc:
            verify(posted_order)

        assert exc.value.retry_after_seconds == pytest.approx(60)
        assert fetch_order(posted_order).status == OrderStatusDB.POSTED
        assert proof_source.lookups == []
        assert escrow.calls == []

    def test_duplicate_delivery_is_a_no_op(self, posted_order, due, verify, escrow, fetch_order):
        verify(posted_order)
        first = fetch_order(posted_order)

        assert verify(posted_order) is None

        second = fetch_order(posted_order)
        assert len(escrow.calls) == 1
        assert second.status == first.status == OrderStatusDB.PAID
        assert second.verified_at == first.verified_at
        assert second.verify_result == first.verify_result

    def test_delivery_for_unknown_order_is_skipped(self, processor):
        assert processor.process({"order_id": "missing-order"}) is None
        assert processor.process({}) is None

    def test_delivery_before_proof_is_skipped(self, accepted_order, verify, escrow, fetch_order):
        assert verify(accepted_order) is None
        assert fetch_order(accepted_order).status == OrderStatusDB.ACCEPTED
        assert escrow.calls == []

    def test_concurrent_deliveries_settle_once(self, db, posted_order, due, processor, proof_source, escrow, fetch_order):
        proof_source.delay_seconds = 0.2
        db.rollback()
        outcomes = []
        start = threading.Barrier(3)

        def deliver():
            start.wait()
            try:
                outcomes.append(processor.process({"order_id": posted_order}))
            except JobNotDue:
                outcomes.append("deferred")

        threads = [threading.Thread(target=deliver) for _ in range(3)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count("paid") == 1
        assert set(outcomes) <= {"paid", "deferred", None}
        assert len(outcomes) == 3
        assert len(escrow.calls) == 1
        assert len(proof_source.lookups) == 1
        assert fetch_order(posted_order).status == OrderStatusDB.PAID


# ============================================================================
# Transient failures
# ============================================================================

class TestTransientFailures:
    def test_proof_source_error_releases_claim(self, posted_order, due, verify, proof_source, escrow, fetch_order):
        proof_source.failures.append(transient_proof_error())

        with pytest.raises(ProofSourceError):
            verify(posted_order)

        order = fetch_order(posted_order)
        assert order.status == OrderStatusDB.POSTED
        assert order.claimed_at is None
        assert order.verify_attempts == 1
        assert order.escrow_phase == EscrowPhaseDB.LOCKED
        assert order.verify_result["reason"] == REASON_VERIFICATION_ERROR
        assert "429" in order.verify_result["error"]
        assert escrow.calls == []

    def test_escrow_error_keeps_funds_locked(self, posted_order, due, verify, escrow, fetch_order):
        escrow.failures.append(transient_escrow_error())

        with pytest.raises(EscrowError):
            verify(posted_order)

        order = fetch_order(posted_order)
        assert order.status == OrderStatusDB.POSTED
        assert order.escrow_phase == EscrowPhaseDB.LOCKED
        assert order.release_signature is None

    def test_retry_through_scheduler_then_paid(self, posted_order, due, deliver, dispatcher, proof_source, fetch_order):
        proof_source.failures.append(transient_proof_error())

        assert deliver(posted_order) == "retrying"
        retries = [job for job in jobs_for(dispatcher, posted_order) if job.args[2] == 2]
        assert len(retries) == 1
        assert fetch_order(posted_order).status == OrderStatusDB.POSTED

        assert deliver(posted_order, attempt=2) == "completed"

        order = fetch_order(posted_order)
        assert order.status == OrderStatusDB.PAID
        assert order.verify_attempts == 1

    def test_early_delivery_through_scheduler_is_requeued(self, posted_order, deliver, dispatcher, clock):
        clock.advance(100)

        assert deliver(posted_order) == "deferred"

        requeued = [job for job in jobs_for(dispatcher, posted_order) if job.args[2] == 1]
        # The submit_proof job plus the re-queued delivery
        assert len(requeued) == 2


# ============================================================================
# Abandoned claims
# ============================================================================

ONE_DAY = 24 * 60 * 60


@pytest.fixture
def abandoned_claim(db, posted_order, due, service):
    """A claim taken by a worker that died before calling the ledger."""
    assert service.claim_for_verification(posted_order) is not None
    db.rollback()
    return posted_order


class TestAbandonedClaims:
    def test_redelivery_takes_over_stale_claim(self, abandoned_claim, clock, deliver, escrow, fetch_order):
        clock.advance(ONE_DAY)

        assert deliver(abandoned_claim, attempt=2) == "completed"

        order = fetch_order(abandoned_claim)
        assert order.status == OrderStatusDB.PAID
        assert order.escrow_phase == EscrowPhaseDB.RELEASED
        assert [call[0] for call in escrow.calls] == ["release"]

    def test_redelivery_guard_firing_early_is_requeued(self, abandoned_claim, clock, deliver, dispatcher,
                                                       escrow, fetch_order):
        clock.advance(STALE_CLAIM_SECONDS - 5)

        assert deliver(abandoned_claim, attempt=2) == "deferred"
        assert [job for job in jobs_for(dispatcher, abandoned_claim) if job.args[2] == 2]

        clock.advance(10)
        assert deliver(abandoned_claim, attempt=2) == "completed"
        assert fetch_order(abandoned_claim).status == OrderStatusDB.PAID
        assert len(escrow.calls) == 1

    def test_recent_claim_defers_until_stale(self, abandoned_claim, verify, proof_source, escrow, fetch_order):
        with pytest.raises(JobNotDue) as exc:
            verify(abandoned_claim)

        assert exc.value.retry_after_seconds == pytest.approx(STALE_CLAIM_SECONDS + 1)

        assert fetch_order(abandoned_claim).status == OrderStatusDB.VERIFYING
        assert proof_source.lookups == []
        assert escrow.calls == []

    def test_locked_on_ledger_is_taken_over(self, abandoned_claim, clock, verify, escrow, fetch_order):
        sequence_no = fetch_order(abandoned_claim).sequence_no
        escrow.ledger_phases = {sequence_no: "locked"}
        clock.advance(ONE_DAY)

        assert verify(abandoned_claim) == "paid"
        assert fetch_order(abandoned_claim).status == OrderStatusDB.PAID

    def test_settled_on_ledger_is_left_for_reconciliation(self, abandoned_claim, clock, verify, escrow,
                                                          proof_source, fetch_order):
        sequence_no = fetch_order(abandoned_claim).sequence_no
        escrow.ledger_phases = {sequence_no: "released"}
        clock.advance(ONE_DAY)

        assert verify(abandoned_claim) is None

        order = fetch_order(abandoned_claim)
        assert order.status == OrderStatusDB.VERIFYING
        assert order.escrow_phase == EscrowPhaseDB.LOCKED
        assert proof_source.lookups == []
        assert escrow.calls == []

    def test_failed_release_keeps_original_error(self, posted_order, due, clock, verify, proof_source,
                                                 escrow, fetch_order, monkeypatch):
        def broken_release(self, order_id, result):
            raise RuntimeError("database is locked")

        proof_source.failures.append(transient_proof_error())
        with monkeypatch.context() as patch:
            patch.setattr(OrderService, "release_claim", broken_release)
            with pytest.raises(ProofSourceError):
                verify(posted_order)

        assert fetch_order(posted_order).status == OrderStatusDB.VERIFYING

        clock.advance(ONE_DAY)
        assert verify(posted_order) == "paid"
        assert len(escrow.calls) == 1
