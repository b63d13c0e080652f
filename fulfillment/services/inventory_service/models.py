"""Database models for the inventory side of the saga."""
from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
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

from fulfillment.shared.database import Base


class ReservationState(str, Enum):
    """Reservation state. HELD is the only state a reservation can leave."""
    HELD = "held"
    COMMITTED = "committed"
    RELEASED = "released"


class ProductKind(str, Enum):
    FABRIC = "fabric"
    CLOTHING = "clothing"


class CatalogStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    DISCONTINUED = "discontinued"


class CatalogItem(Base):
    """Orderable fabric or clothing variant with its authoritative price."""

    __tablename__ = "catalog_items"

    sku_id = Column(String(100), primary_key=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    kind = Column(String(20), nullable=False, default=ProductKind.FABRIC.value)
    price = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="usd")
    min_order_quantity = Column(Integer, nullable=False, default=1)
    status = Column(String(20), nullable=False, default=CatalogStatus.ACTIVE.value)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_catalog_price_non_negative"),
        CheckConstraint("min_order_quantity >= 1", name="ck_catalog_min_order_positive"),
    )


class StockRecord(Base):
    """Per-SKU stock counters. Sellable quantity is ``available - reserved``."""

    __tablename__ = "stock_records"

    sku_id = Column(String(100), ForeignKey("catalog_items.sku_id"), primary_key=True)
    available = Column(Integer, nullable=False, default=0)
    reserved = Column(Integer, nullable=False, default=0)
    reorder_point = Column(Integer, nullable=False, default=0)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("available >= 0", name="ck_stock_available_non_negative"),
        CheckConstraint("reserved >= 0", name="ck_stock_reserved_non_negative"),
        CheckConstraint("reserved <= available", name="ck_stock_reserved_within_available"),
    )

    @property
    def sellable(self) -> int:
        return self.available - self.reserved


class Reservation(Base):
    """Time-bounded hold against sellable stock for one order line."""

    __tablename__ = "reservations"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    sku_id = Column(String(100), ForeignKey("stock_records.sku_id"), nullable=False)
    order_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)

    state = Column(String(20), default=ReservationState.HELD.value, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    resolved_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_reservation_quantity_positive"),
        Index("ix_reservations_state_expires", "state", "expires_at"),
    )
