"""Append-only audit trail of saga steps."""
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from sqlalchemy import Column, DateTime, Index, String, Text, Uuid
from sqlalchemy.ext.asyncio import AsyncSession

from .database import Base, JSONType

logger = logging.getLogger(__name__)


class SagaStep(str, Enum):
    """Steps in the fulfillment saga."""
    INVENTORY_RESERVATION = "inventory_reservation"
    ORDER_PLACED = "order_placed"
    PAYMENT_INTENT = "payment_intent"
    PAYMENT_CONFIRMATION = "payment_confirmation"
    EXPIRY = "expiry"
    CANCELLATION = "cancellation"
    FULFILLMENT = "fulfillment"


class StepStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    COMPENSATED = "compensated"
    REJECTED = "rejected"


class SagaLog(Base):
    """Audit log for saga execution steps."""

    __tablename__ = "saga_logs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    order_id = Column(Uuid(as_uuid=True), nullable=True, index=True)

    step = Column(String(50), nullable=False)
    event_type = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False)

    detail = Column(JSONType, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_saga_logs_order_created", "order_id", "created_at"),
    )


async def log_saga_step(
    session: AsyncSession,
    order_id: Optional[UUID],
    step: SagaStep,
    event_type: str,
    status: StepStatus,
    detail: Optional[Dict[str, Any]] = None,
    error_message: Optional[str] = None,
):
    """Add a saga log row to the caller's transaction."""
    session.add(SagaLog(
        order_id=order_id,
        step=step.value,
        event_type=event_type,
        status=status.value,
        detail=detail,
        error_message=error_message,
        created_at=datetime.utcnow(),
    ))
