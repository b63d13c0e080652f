"""Event definitions for the fulfillment saga."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Event types emitted by the fulfillment saga."""

    # Order events
    ORDER_PLACED = "order.placed"
    ORDER_AWAITING_PAYMENT = "order.awaiting_payment"
    ORDER_PAID = "order.paid"
    ORDER_CANCELLED = "order.cancelled"
    ORDER_FAILED = "order.failed"
    ORDER_FULFILLING = "order.fulfilling"

    # Inventory events
    INVENTORY_LOW_STOCK = "inventory.low_stock"

    # Payment events
    PAYMENT_UNVERIFIED = "payment.unverified"

    # Operator events
    OPERATOR_ALERT = "operator.alert"


class BaseEvent(BaseModel):
    """Base event model with common fields."""

    event_id: UUID = Field(default_factory=uuid4)
    event_type: EventType
    aggregate_id: str  # ID of the main entity (order_id or sku_id)
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    version: int = Field(default=1)
    correlation_id: Optional[UUID] = None  # order_id of the checkout attempt
    metadata: Dict[str, Any] = Field(default_factory=dict)


# Order Events
class OrderPlacedEvent(BaseEvent):
    """Event emitted when an order is created and its stock is held."""
    event_type: EventType = EventType.ORDER_PLACED
    order_id: UUID
    account_id: str
    items: list[Dict[str, Any]]  # [{"sku_id": str, "quantity": int, "unit_price": str}]
    total: str


class OrderAwaitingPaymentEvent(BaseEvent):
    """Event emitted when a payment intent is attached to an order."""
    event_type: EventType = EventType.ORDER_AWAITING_PAYMENT
    order_id: UUID
    payment_intent_id: str


class OrderPaidEvent(BaseEvent):
    """Event emitted when payment is confirmed and stock committed."""
    event_type: EventType = EventType.ORDER_PAID
    order_id: UUID
    payment_intent_id: str
    total: str
    currency: str


class OrderCancelledEvent(BaseEvent):
    """Event emitted when an order is cancelled (compensating action)."""
    event_type: EventType = EventType.ORDER_CANCELLED
    order_id: UUID
    reason: str
    released_reservations: list[UUID] = Field(default_factory=list)


class OrderFailedEvent(BaseEvent):
    """Event emitted when an order fails (compensating action)."""
    event_type: EventType = EventType.ORDER_FAILED
    order_id: UUID
    reason: str
    released_reservations: list[UUID] = Field(default_factory=list)


class OrderFulfillingEvent(BaseEvent):
    """Event published when a paid order is handed to fulfillment."""
    event_type: EventType = EventType.ORDER_FULFILLING
    order_id: UUID


# Inventory Events
class LowStockEvent(BaseEvent):
    """Event emitted when a SKU drops to or below its reorder point."""
    event_type: EventType = EventType.INVENTORY_LOW_STOCK
    sku_id: str
    sellable: int
    reorder_point: int


# Payment Events
class PaymentUnverifiedEvent(BaseEvent):
    """Event emitted when a gateway callback fails its signature check."""
    event_type: EventType = EventType.PAYMENT_UNVERIFIED
    reason: str


# Operator Events
class OperatorAlertEvent(BaseEvent):
    """Event that needs a human: refunds, consistency faults."""
    event_type: EventType = EventType.OPERATOR_ALERT
    alert_kind: str
    order_id: Optional[UUID] = None
    message: str


# Event Registry for deserialization
EVENT_REGISTRY: Dict[EventType, type[BaseEvent]] = {
    EventType.ORDER_PLACED: OrderPlacedEvent,
    EventType.ORDER_AWAITING_PAYMENT: OrderAwaitingPaymentEvent,
    EventType.ORDER_PAID: OrderPaidEvent,
    EventType.ORDER_CANCELLED: OrderCancelledEvent,
    EventType.ORDER_FAILED: OrderFailedEvent,
    EventType.ORDER_FULFILLING: OrderFulfillingEvent,

    EventType.INVENTORY_LOW_STOCK: LowStockEvent,

    EventType.PAYMENT_UNVERIFIED: PaymentUnverifiedEvent,

    EventType.OPERATOR_ALERT: OperatorAlertEvent,
}


def deserialize_event(event_data: Dict[str, Any]) -> BaseEvent:
    """Deserialize event from dictionary."""
    event_type = EventType(event_data["event_type"])
    event_class = EVENT_REGISTRY.get(event_type, BaseEvent)
    return event_class(**event_data)
