"""Database models for the Payment Orchestrator."""
from datetime import datetime
from enum import Enum

from sqlalchemy import Column, DateTime, Numeric, String, Uuid

from fulfillment.shared.database import Base


class PaymentOutcome(str, Enum):
    """What the gateway reported for an intent."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ConfirmationOutcome(str, Enum):
    """Result of handling a (possibly replayed) payment confirmation."""
    APPLIED = "applied"
    ALREADY_PROCESSED = "already_processed"
    REJECTED = "rejected"


class PaymentIntentRecord(Base):
    """Local mirror of a gateway payment intent. Rebuildable from the gateway."""

    __tablename__ = "payment_intents"

    intent_id = Column(String(255), primary_key=True)
    order_id = Column(Uuid(as_uuid=True), nullable=False, unique=True, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), default="usd", nullable=False)
    status = Column(String(40), nullable=False)
    client_secret = Column(String(255), nullable=True)
    last_event_id = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
