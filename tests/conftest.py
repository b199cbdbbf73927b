# Shared fixtures for the order pipeline tests
# Each test gets its own SQLite file, an in-memory (never started) dispatch
# scheduler and scripted escrow / proof source collaborators.

import os

os.environ.setdefault("SCHEDULER_JOBSTORE", "memory")

import threading
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.orm import sessionmaker

from core.escrow_service import EscrowConfirmation, EscrowService, compute_fee_split
from core.twitter_service import Post
from database.config import create_db_engine, init_db
from database.models import Agent, AgentRole
from database.marketplace_models import Campaign, Offer, Order
from services.dispatch_scheduler import DispatchScheduler, VERIFY_ORDER_JOB
from services.exceptions import EscrowError, ProofSourceError
from services.order_service import OrderService
from services.verification_service import VerificationJobProcessor

REQUIRED_LINKS = ["https://shill.example/token", "https://t.me/shilltoken"]
DISCLOSURE = "#ad"
RETENTION_SECONDS = 300
OFFER_PRICE = 500_000
FEE_BPS = 300
VERIFIED_AUTHOR_ID = "1850000000000000001"


# ============================================================================
# Collaborators
# ============================================================================

class MutableClock:
    """Naive UTC clock the tests move by hand."""

    def __init__(self, start: datetime):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self.now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self.now = self.now + timedelta(seconds=seconds)


class RecordingEscrow(EscrowService):
    """In-process ledger that records every settlement and can be told to fail."""

    def __init__(self):
        super().__init__(base_url="", api_key="", program_id="test-escrow-program")
        self.calls = []
        self.confirmations = []
        self.failures = []
        self.ledger_phases = None
        self._lock = threading.Lock()

    @property
    def dry_run(self) -> bool:
        return self.ledger_phases is None

    def release(self, sequence_no, amount, fee_bps):
        with self._lock:
            if self.failures:
                raise self.failures.pop(0)
            self.calls.append(("release", sequence_no, amount, fee_bps))
        split = compute_fee_split(amount, fee_bps)
        confirmation = EscrowConfirmation(
            escrow_handle=self.derive_handle(sequence_no),
            action="release",
            sequence_no=sequence_no,
            fulfiller_amount=split.fulfiller_amount,
            fee_amount=split.fee_amount,
            signature=f"release-{sequence_no}",
        )
        self.confirmations.append(confirmation)
        return confirmation

    def refund(self, sequence_no, amount):
        with self._lock:
            if self.failures:
                raise self.failures.pop(0)
            self.calls.append(("refund", sequence_no, amount))
        confirmation = EscrowConfirmation(
            escrow_handle=self.derive_handle(sequence_no),
            action="refund",
            sequence_no=sequence_no,
            refund_amount=amount,
            signature=f"refund-{sequence_no}",
        )
        self.confirmations.append(confirmation)
        return confirmation

    def get_escrow_phase(self, sequence_no):
        if self.ledger_phases is None:
            return None
        phase = self.ledger_phases.get(sequence_no)
        if isinstance(phase, Exception):
            raise phase
        return phase


class ScriptedProofSource:
    """Proof source backed by a dict of posts, with queued failures."""

    def __init__(self):
        self.posts = {}
        self.failures = []
        self.lookups = []
        self.delay_seconds = 0
        self._lock = threading.Lock()

    def add_post(self, post_id, author_id=VERIFIED_AUTHOR_ID, text=None):
        if text is None:
            text = f"Loving this token {' '.join(REQUIRED_LINKS)} {DISCLOSURE}"
        self.posts[post_id] = Post(id=post_id, author_id=author_id, text=text)

    def get_post(self, post_id):
        with self._lock:
            self.lookups.append(post_id)
            failure = self.failures.pop(0) if self.failures else None
        if self.delay_seconds:
            threading.Event().wait(self.delay_seconds)
        if failure is not None:
            raise failure
        return self.posts.get(post_id)


# ============================================================================
# Database
# ============================================================================

@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'orders.db'}")
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


# ============================================================================
# Services
# ============================================================================

@pytest.fixture
def clock():
    return MutableClock(datetime(2026, 1, 1, 12, 0, 0))


@pytest.fixture
def escrow():
    return RecordingEscrow()


@pytest.fixture
def proof_source():
    return ScriptedProofSource()


@pytest.fixture
def processor(session_factory, proof_source, escrow, clock):
    return VerificationJobProcessor(
        session_factory=session_factory,
        proof_source=proof_source,
        escrow=escrow,
        clock=clock,
    )


@pytest.fixture
def dispatcher(processor):
    scheduler = DispatchScheduler(
        scheduler=BackgroundScheduler(jobstores={"default": MemoryJobStore()}, timezone=timezone.utc),
        max_attempts=3,
        retry_backoff_seconds=30,
        redelivery_seconds=600,
    )
    scheduler.register(VERIFY_ORDER_JOB, processor)
    return scheduler


@pytest.fixture
def service(db, escrow, dispatcher, clock):
    return OrderService(db, escrow=escrow, scheduler=dispatcher, fee_bps=FEE_BPS, clock=clock)


# ============================================================================
# Seed data
# ============================================================================

class Seeder:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def agent(self, role, name=None, verified_author_id=None):
        with self.session_factory() as db:
            agent = Agent(name=name or f"{role.value}-agent", role=role, verified_author_id=verified_author_id)
            db.add(agent)
            db.commit()
            return agent.id

    def campaign(self, requester_id, quantity=5, max_price=1_000_000, retention=RETENTION_SECONDS,
                 required_links=None, disclosure_text=DISCLOSURE):
        with self.session_factory() as db:
            campaign = Campaign(
                requester_id=requester_id,
                brief="Promote the token launch",
                required_links=list(REQUIRED_LINKS if required_links is None else required_links),
                disclosure_text=disclosure_text,
                max_price=max_price,
                quantity=quantity,
                retention_window_seconds=retention,
            )
            db.add(campaign)
            db.commit()
            return campaign.id

    def offer(self, campaign_id, fulfiller_id, price=OFFER_PRICE):
        with self.session_factory() as db:
            offer = Offer(campaign_id=campaign_id, fulfiller_id=fulfiller_id,
                          draft_text="gm, check this out", price=price)
            db.add(offer)
            db.commit()
            return offer.id


@pytest.fixture
def seeder(session_factory):
    return Seeder(session_factory)


@pytest.fixture
def seed(seeder):
    """One requester, one verified fulfiller, an active campaign and a pending offer."""
    requester_id = seeder.agent(AgentRole.REQUESTER, "requester")
    fulfiller_id = seeder.agent(AgentRole.FULFILLER, "fulfiller", verified_author_id=VERIFIED_AUTHOR_ID)
    campaign_id = seeder.campaign(requester_id)
    offer_id = seeder.offer(campaign_id, fulfiller_id)
    return SimpleNamespace(
        requester_id=requester_id,
        fulfiller_id=fulfiller_id,
        campaign_id=campaign_id,
        offer_id=offer_id,
    )


# SQLite holds its write lock for the whole of any transaction, reads
# included, so fixtures end the shared session's transaction before another
# session runs.

@pytest.fixture
def accepted_order(db, service, seed):
    order_id = service.accept_offer(seed.offer_id, seed.requester_id).id
    db.rollback()
    return order_id


@pytest.fixture
def posted_order(db, service, seed, accepted_order, proof_source):
    proof_source.add_post("tweet-1")
    service.submit_proof(accepted_order, seed.fulfiller_id, "tweet-1", "https://x.com/fulfiller/status/1")
    db.rollback()
    return accepted_order


@pytest.fixture
def fetch_order(db):
    """Detached, freshly loaded copy of an order."""
    def fetch(order_id):
        db.rollback()
        order = db.query(Order).filter(Order.id == order_id).populate_existing().first()
        if order is not None:
            db.expunge(order)
        db.rollback()
        return order
    return fetch


@pytest.fixture
def verify(db, processor):
    """Deliver one verify_order job straight to the processor."""
    def run(order_id):
        db.rollback()
        return processor.process({"order_id": order_id})
    return run


@pytest.fixture
def deliver(db, dispatcher):
    """Deliver one verify_order job through the dispatch scheduler."""
    def run(order_id, attempt=1):
        db.rollback()
        return dispatcher.dispatch(VERIFY_ORDER_JOB, {"order_id": order_id}, attempt)
    return run


def jobs_for(dispatcher, order_id):
    return [job for job in dispatcher.pending_jobs() if job.args[1].get("order_id") == order_id]


def transient_escrow_error():
    return EscrowError("ledger timeout")


def transient_proof_error():
    return ProofSourceError("429 Too Many Requests")
