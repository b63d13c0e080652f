"""Reservation manager: the single writer of stock counters."""
import logging
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.shared.events import LowStockEvent
from fulfillment.shared.exceptions import (
    ConsistencyFault,
    InsufficientStock,
    InvalidState,
    NotFound,
    ValidationError,
)
from fulfillment.shared.outbox import save_event_to_outbox

from .ledger import InventoryLedger
from .models import Reservation, ReservationState

logger = logging.getLogger(__name__)

DEFAULT_RESERVATION_TTL = timedelta(minutes=15)


class ReservationManager:
    """
    Moves stock between available, reserved and committed.

    Each operation works inside the caller's session; the caller owns the
    transaction boundary. Reservation state changes are conditional on the
    reservation still being HELD, so a duplicate or racing commit/release
    matches zero rows and is detected rather than applied twice.
    """

    def __init__(self, session: AsyncSession, ttl: timedelta = DEFAULT_RESERVATION_TTL):
        self.session = session
        self.ttl = ttl
        self.ledger = InventoryLedger(session)

    async def reserve(self, sku_id: str, quantity: int, order_id: UUID) -> Reservation:
        """
        Hold ``quantity`` units of ``sku_id`` for an order.

        Raises:
            InsufficientStock: sellable quantity is lower than requested
            NotFound: unknown SKU
        """
        if quantity <= 0:
            raise ValidationError(f"Reservation quantity must be positive, got {quantity}")

        if not await self.ledger.try_hold(sku_id, quantity):
            sellable = await self.ledger.get_sellable(sku_id)
            logger.warning(
                f"Reservation refused for {sku_id}: requested {quantity}, sellable {sellable}"
            )
            raise InsufficientStock(sku_id, requested=quantity, sellable=sellable)

        now = datetime.utcnow()
        reservation = Reservation(
            id=uuid4(),
            sku_id=sku_id,
            order_id=order_id,
            quantity=quantity,
            state=ReservationState.HELD.value,
            created_at=now,
            expires_at=now + self.ttl,
        )
        self.session.add(reservation)
        await self.session.flush()

        logger.info(f"Reserved {quantity} x {sku_id} for order {order_id} ({reservation.id})")
        return reservation

    async def commit(self, reservation_id: UUID) -> bool:
        """
        Convert a hold into a permanent deduction.

        Returns True when the commit was applied, False when the reservation was
        already committed.

        Raises:
            InvalidState: the reservation was released
            ConsistencyFault: the stock counters refused the deduction
        """
        reservation = await self._transition(reservation_id, ReservationState.COMMITTED)
        if reservation is None:
            return False

        if not await self.ledger.consume_hold(reservation.sku_id, reservation.quantity):
            raise ConsistencyFault(
                f"Stock for {reservation.sku_id} could not absorb committed reservation "
                f"{reservation_id} ({reservation.quantity} units)",
                details={"reservation_id": str(reservation_id), "sku_id": reservation.sku_id},
            )

        logger.info(f"Committed reservation {reservation_id}")
        await self._check_reorder_point(reservation.sku_id, reservation.order_id)
        return True

    async def release(self, reservation_id: UUID) -> bool:
        """
        Return a hold to the sellable pool.

        Returns True when released now, False when it was already released.

        Raises:
            InvalidState: the reservation was committed
            ConsistencyFault: the stock counters refused the release
        """
        reservation = await self._transition(reservation_id, ReservationState.RELEASED)
        if reservation is None:
            return False

        if not await self.ledger.release_hold(reservation.sku_id, reservation.quantity):
            raise ConsistencyFault(
                f"Stock for {reservation.sku_id} could not release reservation "
                f"{reservation_id} ({reservation.quantity} units)",
                details={"reservation_id": str(reservation_id), "sku_id": reservation.sku_id},
            )

        logger.info(f"Released reservation {reservation_id}")
        return True

    async def get(self, reservation_id: UUID) -> Reservation:
        result = await self.session.execute(
            select(Reservation)
            .where(Reservation.id == reservation_id)
            .execution_options(populate_existing=True)
        )
        reservation = result.scalar_one_or_none()
        if not reservation:
            raise NotFound(f"Reservation not found: {reservation_id}")
        return reservation

    async def for_order(self, order_id: UUID) -> List[Reservation]:
        result = await self.session.execute(
            select(Reservation)
            .where(Reservation.order_id == order_id)
            .order_by(Reservation.created_at)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def expired_held(self, now: Optional[datetime] = None, limit: int = 500) -> List[Reservation]:
        """HELD reservations whose ``expires_at`` has passed."""
        now = now or datetime.utcnow()
        result = await self.session.execute(
            select(Reservation)
            .where(
                Reservation.state == ReservationState.HELD.value,
                Reservation.expires_at < now,
            )
            .order_by(Reservation.expires_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _transition(self, reservation_id: UUID, target: ReservationState) -> Optional[Reservation]:
        """
        Move a HELD reservation to ``target``.

        Returns the reservation when this call performed the transition, None
        when it was already in ``target``.
        """
        result = await self.session.execute(
            update(Reservation)
            .where(
                Reservation.id == reservation_id,
                Reservation.state == ReservationState.HELD.value,
            )
            .values(state=target.value, resolved_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )

        reservation = await self.get(reservation_id)

        if result.rowcount == 1:
            return reservation

        if reservation.state == target.value:
            logger.info(f"Reservation {reservation_id} already {target.value}")
            return None

        raise InvalidState("Reservation", reservation_id, reservation.state, target.value)

    async def _check_reorder_point(self, sku_id: str, order_id: UUID):
        record = await self.ledger.get_record(sku_id)
        if record.sellable <= record.reorder_point:
            logger.warning(
                f"{sku_id} at or below reorder point: sellable {record.sellable}, "
                f"reorder point {record.reorder_point}"
            )
            await save_event_to_outbox(
                self.session,
                LowStockEvent(
                    aggregate_id=sku_id,
                    correlation_id=order_id,
                    sku_id=sku_id,
                    sellable=record.sellable,
                    reorder_point=record.reorder_point,
                ),
            )
