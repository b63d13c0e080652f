"""Order persistence and the order status state machine."""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.shared.exceptions import (
    InvalidState,
    NotFound,
    PostPaymentCancellationAttempted,
)

from .models import (
    OPEN_STATUSES,
    PAID_STATUSES,
    Order,
    OrderLine,
    OrderStatus,
)
from .pricing import OrderTotals, quantize

logger = logging.getLogger(__name__)


@dataclass
class OrderLineDraft:
    sku_id: str
    reservation_id: UUID
    quantity: int
    unit_price: Decimal
    kind: str = "fabric"
    customizations: Optional[Dict[str, Any]] = None


@dataclass
class OrderDraft:
    order_id: UUID
    account_id: str
    shipping_address: Dict[str, Any]
    totals: OrderTotals
    currency: str
    lines: List[OrderLineDraft] = field(default_factory=list)
    estimated_delivery: Optional[datetime] = None


class OrderStore:
    """
    Durable orders.

    Status changes are conditional updates on the order row
    (``WHERE status IN allowed``); the row is the arbiter between a payment
    confirmation and an expiry or cancellation racing for the same order.
    An order flagged for operator attention refuses every transition.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, draft: OrderDraft) -> Order:
        order = Order(
            id=draft.order_id,
            account_id=draft.account_id,
            status=OrderStatus.PENDING.value,
            shipping_address=draft.shipping_address,
            subtotal=draft.totals.subtotal,
            tax=draft.totals.tax,
            shipping_cost=draft.totals.shipping_cost,
            total=draft.totals.total,
            currency=draft.currency,
            estimated_delivery=draft.estimated_delivery,
            lines=[
                OrderLine(
                    position=position,
                    sku_id=line.sku_id,
                    kind=line.kind,
                    reservation_id=line.reservation_id,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    line_total=quantize(line.unit_price * line.quantity),
                    customizations=line.customizations,
                )
                for position, line in enumerate(draft.lines)
            ],
        )
        self.session.add(order)
        await self.session.flush()

        logger.info(f"Created order {order.id} for account {order.account_id} (total {order.total})")
        return order

    async def get(self, order_id: UUID) -> Order:
        order = await self.find(order_id)
        if not order:
            raise NotFound(f"Order not found: {order_id}")
        return order

    async def find(self, order_id: UUID) -> Optional[Order]:
        result = await self.session.execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_for_account(self, account_id: str) -> List[Order]:
        result = await self.session.execute(
            select(Order)
            .where(Order.account_id == account_id)
            .order_by(Order.created_at.desc())
        )
        return list(result.scalars().all())

    async def account_stats(self, account_id: str) -> Dict[str, Any]:
        counts = await self.session.execute(
            select(Order.status, func.count(Order.id))
            .where(Order.account_id == account_id)
            .group_by(Order.status)
        )
        status_counts = {status: count for status, count in counts.all()}

        spent = await self.session.execute(
            select(func.count(Order.id), func.coalesce(func.sum(Order.total), 0))
            .where(
                Order.account_id == account_id,
                Order.status.in_([s.value for s in PAID_STATUSES]),
            )
        )
        paid_count, total_spent = spent.one()
        total_spent = quantize(Decimal(str(total_spent)))

        return {
            "total_orders": sum(status_counts.values()),
            "total_spent": total_spent,
            "average_order_value": quantize(total_spent / paid_count) if paid_count else Decimal("0.00"),
            "status_counts": status_counts,
        }

    async def attach_payment_intent(self, order_id: UUID, intent_id: str) -> Order:
        return await self._transition(
            order_id,
            allowed=(OrderStatus.PENDING,),
            target=OrderStatus.AWAITING_PAYMENT,
            payment_intent_id=intent_id,
        )

    async def mark_paid(self, order_id: UUID) -> Order:
        return await self._transition(
            order_id,
            allowed=(OrderStatus.AWAITING_PAYMENT,),
            target=OrderStatus.PAID,
        )

    async def mark_fulfilling(self, order_id: UUID) -> Order:
        return await self._transition(
            order_id,
            allowed=(OrderStatus.PAID,),
            target=OrderStatus.FULFILLING,
        )

    async def mark_failed(self, order_id: UUID, reason: str) -> Order:
        return await self._roll_back(order_id, OrderStatus.FAILED, reason)

    async def mark_cancelled(self, order_id: UUID, reason: str) -> Order:
        return await self._roll_back(order_id, OrderStatus.CANCELLED, reason)

    async def flag_for_attention(self, order_id: UUID, reason: str):
        await self.session.execute(
            update(Order)
            .where(Order.id == order_id)
            .values(requires_attention=True, failure_reason=reason, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        logger.critical(f"Order {order_id} flagged for operator attention: {reason}")

    async def _roll_back(self, order_id: UUID, target: OrderStatus, reason: str) -> Order:
        try:
            return await self._transition(
                order_id,
                allowed=OPEN_STATUSES,
                target=target,
                failure_reason=reason,
            )
        except InvalidState as e:
            if OrderStatus(e.current) in PAID_STATUSES:
                raise PostPaymentCancellationAttempted(
                    f"Order {order_id} is {e.current}; it can only be unwound by a refund",
                    details={"order_id": str(order_id), "current": e.current},
                )
            raise

    async def _transition(
        self,
        order_id: UUID,
        allowed: Iterable[OrderStatus],
        target: OrderStatus,
        **values,
    ) -> Order:
        allowed = tuple(allowed)
        result = await self.session.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.status.in_([s.value for s in allowed]),
                Order.requires_attention.is_(False),
            )
            .values(status=target.value, updated_at=datetime.utcnow(), **values)
            .execution_options(synchronize_session=False)
        )

        order = await self.get(order_id)
        if result.rowcount == 0:
            raise InvalidState("Order", order_id, order.status, target.value)

        logger.info(f"Order {order_id} -> {target.value}")
        return order
