# Database Models for the ShillMarket order pipeline
# Campaigns and offers are written by the listing API; orders are owned by
# services/order_service.py and must only be mutated through it.

from sqlalchemy import Column, String, Integer, BigInteger, DateTime, ForeignKey, Text, JSON, Enum, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum

# Use the same Base from the agent models
from database.models import Base, generate_uuid


# ============================================================================
# ENUMS
# ============================================================================

class CampaignStatusDB(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class OfferStatusDB(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class OrderStatusDB(str, enum.Enum):
    ACCEPTED = "accepted"
    ESCROW_FUNDED = "escrow_funded"
    POSTED = "posted"
    VERIFYING = "verifying"    # Claimed by a verification job
    PAID = "paid"
    FAILED = "failed"


class EscrowPhaseDB(str, enum.Enum):
    NONE = "none"
    LOCKED = "locked"
    RELEASED = "released"
    REFUNDED = "refunded"


def _enum_column(enum_cls, name, **kwargs):
    return Column(Enum(enum_cls, values_callable=lambda x: [e.value for e in x], name=name), **kwargs)


# ============================================================================
# CAMPAIGN
# ============================================================================

class Campaign(Base):
    """A requester's promotion brief. `filled` never exceeds `quantity`."""
    __tablename__ = "campaigns"
    __table_args__ = (
        CheckConstraint("filled <= quantity", name="ck_campaigns_filled_le_quantity"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    requester_id = Column(String(36), ForeignKey("agents.id"), nullable=False, index=True)

    brief = Column(Text, nullable=False)
    required_links = Column(JSON, default=list)  # ["https://example.com", ...]
    disclosure_text = Column(String(255), nullable=False, default="#ad")

    max_price = Column(BigInteger, nullable=False)  # In lamports
    quantity = Column(Integer, nullable=False, default=1)
    filled = Column(Integer, nullable=False, default=0)
    retention_window_seconds = Column(Integer)  # Falls back to DEFAULT_RETENTION_WINDOW_SECONDS

    status = _enum_column(CampaignStatusDB, "campaignstatusdb", default=CampaignStatusDB.ACTIVE)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    requester = relationship("Agent", foreign_keys=[requester_id])
    offers = relationship("Offer", back_populates="campaign")


# ============================================================================
# OFFER
# ============================================================================

class Offer(Base):
    """A fulfiller's priced proposal for one campaign."""
    __tablename__ = "offers"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    campaign_id = Column(String(36), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True)
    fulfiller_id = Column(String(36), ForeignKey("agents.id"), nullable=False, index=True)

    draft_text = Column(Text, nullable=False)
    price = Column(BigInteger, nullable=False)  # In lamports, <= campaign.max_price
    feedback = Column(Text)

    status = _enum_column(OfferStatusDB, "offerstatusdb", default=OfferStatusDB.PENDING)

    accepted_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    campaign = relationship("Campaign", back_populates="offers")
    fulfiller = relationship("Agent", foreign_keys=[fulfiller_id])


# ============================================================================
# ORDER SEQUENCE
# ============================================================================

class OrderSequence(Base):
    """Named counter backing Order.sequence_no; one row per sequence."""
    __tablename__ = "order_sequences"

    name = Column(String(50), primary_key=True)
    last_value = Column(BigInteger, nullable=False, default=0)


# ============================================================================
# ORDER
# ============================================================================

class Order(Base):
    """Escrow-backed order created when an offer is accepted."""
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    campaign_id = Column(String(36), ForeignKey("campaigns.id"), nullable=False, index=True)
    offer_id = Column(String(36), ForeignKey("offers.id"), nullable=False, unique=True)
    requester_id = Column(String(36), ForeignKey("agents.id"), nullable=False, index=True)
    fulfiller_id = Column(String(36), ForeignKey("agents.id"), nullable=False, index=True)

    # Escrow ledger nonce
    sequence_no = Column(BigInteger, nullable=False, unique=True)

    amount = Column(BigInteger, nullable=False)  # Copied from offer.price, never mutated
    fee_bps = Column(Integer, nullable=False)
    escrow_handle = Column(String(128), nullable=False)
    escrow_phase = _enum_column(EscrowPhaseDB, "escrowphasedb", default=EscrowPhaseDB.NONE, nullable=False)

    status = _enum_column(OrderStatusDB, "orderstatusdb", default=OrderStatusDB.ACCEPTED, nullable=False, index=True)

    # Proof
    post_id = Column(String(64))
    post_url = Column(String(500))
    posted_at = Column(DateTime)

    # Verification
    retention_window_seconds = Column(Integer, nullable=False)
    verify_at = Column(DateTime)
    claimed_at = Column(DateTime)
    verified_at = Column(DateTime)
    verify_result = Column(JSON)  # {"checks": {...}, "passed": bool, "reason": str, "error": str, "timestamp": str}
    verify_attempts = Column(Integer, nullable=False, default=0)

    # Ledger confirmations
    escrow_funded_signature = Column(String(128))
    release_signature = Column(String(128))
    refund_signature = Column(String(128))

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    campaign = relationship("Campaign")
    offer = relationship("Offer")
    requester = relationship("Agent", foreign_keys=[requester_id])
    fulfiller = relationship("Agent", foreign_keys=[fulfiller_id])
