"""Database models for Order Service."""
from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import relationship

from fulfillment.shared.database import Base, JSONType


class OrderStatus(str, Enum):
    """Order status in the saga."""
    PENDING = "pending"
    AWAITING_PAYMENT = "awaiting_payment"
    PAID = "paid"
    FULFILLING = "fulfilling"
    CANCELLED = "cancelled"
    FAILED = "failed"


# Statuses from which an order may still be rolled back
OPEN_STATUSES = (OrderStatus.PENDING, OrderStatus.AWAITING_PAYMENT)
PAID_STATUSES = (OrderStatus.PAID, OrderStatus.FULFILLING)
TERMINAL_STATUSES = (OrderStatus.CANCELLED, OrderStatus.FAILED)


class Order(Base):
    """Order aggregate root."""

    __tablename__ = "orders"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(String(255), nullable=False, index=True)
    status = Column(String(50), default=OrderStatus.PENDING.value, nullable=False, index=True)

    # Order details
    shipping_address = Column(JSONType, nullable=False)
    subtotal = Column(Numeric(12, 2), nullable=False)
    tax = Column(Numeric(12, 2), nullable=False)
    shipping_cost = Column(Numeric(12, 2), nullable=False)
    total = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), default="usd", nullable=False)

    # Saga tracking
    payment_intent_id = Column(String(255), nullable=True, unique=True)
    failure_reason = Column(Text, nullable=True)
    requires_attention = Column(Boolean, default=False, nullable=False)

    # Metadata
    estimated_delivery = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    lines = relationship(
        "OrderLine",
        back_populates="order",
        lazy="selectin",
        order_by="OrderLine.position",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_orders_status_created", "status", "created_at"),
        Index("ix_orders_account_created", "account_id", "created_at"),
    )

    @property
    def reservation_ids(self):
        return [line.reservation_id for line in self.lines]


class OrderLine(Base):
    """One ordered SKU, priced from the catalog and backed by one reservation."""

    __tablename__ = "order_lines"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Uuid(as_uuid=True), ForeignKey("orders.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)

    sku_id = Column(String(100), nullable=False)
    kind = Column(String(20), nullable=False, default="fabric")
    reservation_id = Column(Uuid(as_uuid=True), nullable=False, unique=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    line_total = Column(Numeric(12, 2), nullable=False)
    customizations = Column(JSONType, nullable=True)

    order = relationship("Order", back_populates="lines")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_line_quantity_positive"),
    )
