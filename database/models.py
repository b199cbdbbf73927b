# Database Models for ShillMarket
# Shared declarative base and the agent table

from sqlalchemy import Column, String, DateTime, Enum
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
from datetime import datetime, timezone
import uuid
import enum

Base = declarative_base()


def generate_uuid():
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Enums
class AgentRole(str, enum.Enum):
    REQUESTER = "requester"
    FULFILLER = "fulfiller"
    ADMIN = "admin"


# Models
class Agent(Base):
    """An API agent acting either as a requester or a fulfiller."""
    __tablename__ = "agents"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    role = Column(Enum(AgentRole, values_callable=lambda x: [e.value for e in x], name="agentrole"), nullable=False)

    # Fulfillers only: identity verified on the social platform
    verified_author_id = Column(String(100), index=True)
    social_handle = Column(String(100))
    wallet_address = Column(String(64))

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
