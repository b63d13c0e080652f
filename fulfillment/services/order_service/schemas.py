"""Request/response models for the order API."""
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class StrictModel(BaseModel):
    """Rejects unknown fields instead of silently dropping them."""

    model_config = ConfigDict(extra="forbid")


class ShippingAddress(StrictModel):
    name: str = Field(min_length=1)
    company_name: str = Field(min_length=1)
    address: str = Field(min_length=1)
    city: str = Field(min_length=1)
    state: str = Field(min_length=1)
    zip_code: str = Field(min_length=1)
    country: str = Field(min_length=1)
    phone_number: str = Field(min_length=1)


class Customizations(StrictModel):
    size: Optional[str] = None
    color: Optional[str] = None
    style: Optional[str] = None
    logo_id: Optional[str] = None


class LineItemRequest(StrictModel):
    sku_id: str = Field(min_length=1)
    quantity: int = Field(gt=0)
    customizations: Optional[Customizations] = None


class CheckoutRequest(StrictModel):
    """Checkout payload. Prices and totals are never accepted from the client."""
    line_items: List[LineItemRequest] = Field(min_length=1)
    shipping_address: ShippingAddress


class CheckoutResponse(BaseModel):
    order_id: UUID
    payment_intent_client_secret: Optional[str]


class OrderLineResponse(BaseModel):
    sku_id: str
    kind: str
    reservation_id: UUID
    quantity: int
    unit_price: Decimal
    line_total: Decimal
    customizations: Optional[Dict] = None

    model_config = ConfigDict(from_attributes=True)


class OrderResponse(BaseModel):
    id: UUID
    account_id: str
    status: str
    line_items: List[OrderLineResponse]
    shipping_address: Dict
    subtotal: Decimal
    tax: Decimal
    shipping_cost: Decimal
    total: Decimal
    currency: str
    payment_intent_id: Optional[str]
    failure_reason: Optional[str]
    requires_attention: bool
    estimated_delivery: Optional[datetime]
    created_at: datetime

    @classmethod
    def from_order(cls, order) -> "OrderResponse":
        return cls(
            id=order.id,
            account_id=order.account_id,
            status=order.status,
            line_items=[OrderLineResponse.model_validate(line) for line in order.lines],
            shipping_address=order.shipping_address,
            subtotal=order.subtotal,
            tax=order.tax,
            shipping_cost=order.shipping_cost,
            total=order.total,
            currency=order.currency,
            payment_intent_id=order.payment_intent_id,
            failure_reason=order.failure_reason,
            requires_attention=order.requires_attention,
            estimated_delivery=order.estimated_delivery,
            created_at=order.created_at,
        )


class OrderStatsResponse(BaseModel):
    total_orders: int
    total_spent: Decimal
    average_order_value: Decimal
    status_counts: Dict[str, int]


class SagaLogResponse(BaseModel):
    id: UUID
    order_id: Optional[UUID]
    step: str
    event_type: str
    status: str
    error_message: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ConfirmationResponse(BaseModel):
    received: bool = True
    outcome: Optional[str] = None


class StockResponse(BaseModel):
    sku_id: str
    available: int
    reserved: int
    sellable: int
    reorder_point: int

    model_config = ConfigDict(from_attributes=True)


class AdjustStockRequest(StrictModel):
    delta: int


class SkuResponse(BaseModel):
    sku_id: str
    name: str
    kind: str
    price: Decimal
    currency: str
    sellable: int
    min_order_quantity: int
    status: str
    orderable: bool

    model_config = ConfigDict(from_attributes=True)
