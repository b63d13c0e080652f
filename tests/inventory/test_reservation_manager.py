"""Tests for reservation transitions and the no-oversell guarantee."""
import asyncio
from datetime import datetime, timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select

from fulfillment.services.inventory_service.ledger import InventoryLedger
from fulfillment.services.inventory_service.models import ReservationState
from fulfillment.services.inventory_service.reservation_manager import ReservationManager
from fulfillment.shared.exceptions import InsufficientStock, InvalidState, NotFound, ValidationError
from fulfillment.shared.outbox import OutboxMessage


async def _reserve(session_factory, sku_id, quantity, order_id=None):
    async with session_factory() as session:
        reservation = await ReservationManager(session).reserve(sku_id, quantity, order_id or uuid4())
        await session.commit()
        return reservation


async def _stock(session_factory, sku_id):
    async with session_factory() as session:
        return await InventoryLedger(session).get_record(sku_id)


class TestReserve:

    async def test_reserve_holds_stock(self, session_factory):
        order_id = uuid4()
        reservation = await _reserve(session_factory, "cotton-white", 10, order_id)

        assert reservation.state == ReservationState.HELD.value
        assert reservation.order_id == order_id
        assert reservation.expires_at - reservation.created_at == timedelta(minutes=15)

        record = await _stock(session_factory, "cotton-white")
        assert (record.available, record.reserved, record.sellable) == (100, 10, 90)

    async def test_insufficient_stock_leaves_nothing_behind(self, session_factory):
        order_id = uuid4()
        with pytest.raises(InsufficientStock) as exc:
            await _reserve(session_factory, "linen-natural", 51, order_id)

        assert exc.value.sku_id == "linen-natural"
        assert exc.value.sellable == 50

        async with session_factory() as session:
            assert await ReservationManager(session).for_order(order_id) == []
        record = await _stock(session_factory, "linen-natural")
        assert record.reserved == 0

    async def test_quantity_must_be_positive(self, session_factory):
        with pytest.raises(ValidationError):
            await _reserve(session_factory, "cotton-white", 0)

    async def test_unknown_sku(self, session_factory):
        with pytest.raises(NotFound):
            await _reserve(session_factory, "velvet-red", 1)


class TestTerminalTransitions:

    async def test_commit_deducts_available(self, session_factory):
        reservation = await _reserve(session_factory, "cotton-white", 10)

        async with session_factory() as session:
            manager = ReservationManager(session)
            assert await manager.commit(reservation.id)
            await session.commit()
            assert (await manager.get(reservation.id)).state == ReservationState.COMMITTED.value

        record = await _stock(session_factory, "cotton-white")
        assert (record.available, record.reserved) == (90, 0)

    async def test_commit_twice_is_a_noop(self, session_factory):
        reservation = await _reserve(session_factory, "cotton-white", 10)

        async with session_factory() as session:
            manager = ReservationManager(session)
            assert await manager.commit(reservation.id)
            assert not await manager.commit(reservation.id)
            await session.commit()

        record = await _stock(session_factory, "cotton-white")
        assert (record.available, record.reserved) == (90, 0)

    async def test_release_twice_is_a_noop(self, session_factory):
        reservation = await _reserve(session_factory, "cotton-white", 10)

        async with session_factory() as session:
            manager = ReservationManager(session)
            assert await manager.release(reservation.id)
            assert not await manager.release(reservation.id)
            await session.commit()

        record = await _stock(session_factory, "cotton-white")
        assert (record.available, record.reserved) == (100, 0)

    async def test_commit_after_release_is_refused(self, session_factory):
        reservation = await _reserve(session_factory, "cotton-white", 10)

        async with session_factory() as session:
            manager = ReservationManager(session)
            await manager.release(reservation.id)
            with pytest.raises(InvalidState) as exc:
                await manager.commit(reservation.id)
            assert exc.value.current == ReservationState.RELEASED.value

    async def test_release_after_commit_is_refused(self, session_factory):
        reservation = await _reserve(session_factory, "cotton-white", 10)

        async with session_factory() as session:
            manager = ReservationManager(session)
            await manager.commit(reservation.id)
            with pytest.raises(InvalidState):
                await manager.release(reservation.id)

    async def test_unknown_reservation(self, session_factory):
        async with session_factory() as session:
            with pytest.raises(NotFound):
                await ReservationManager(session).commit(uuid4())

    async def test_commit_below_reorder_point_emits_low_stock(self, session_factory):
        reservation = await _reserve(session_factory, "cotton-white", 95)

        async with session_factory() as session:
            await ReservationManager(session).commit(reservation.id)
            await session.commit()

        async with session_factory() as session:
            result = await session.execute(select(OutboxMessage.event_type))
            assert "inventory.low_stock" in result.scalars().all()


class TestConcurrency:

    async def test_no_oversell_under_concurrent_reservations(self, session_factory):
        async def attempt():
            try:
                await _reserve(session_factory, "silk-ivory", 40)
                return True
            except InsufficientStock:
                return False

        results = await asyncio.gather(*(attempt() for _ in range(10)))

        assert sum(results) == 7
        record = await _stock(session_factory, "silk-ivory")
        assert (record.available, record.reserved, record.sellable) == (300, 280, 20)

    async def test_last_units_go_to_exactly_one_caller_each(self, session_factory):
        async def attempt():
            try:
                await _reserve(session_factory, "linen-natural", 1)
                return True
            except InsufficientStock:
                return False

        results = await asyncio.gather(*(attempt() for _ in range(60)))

        assert sum(results) == 50
        record = await _stock(session_factory, "linen-natural")
        assert record.sellable == 0


class TestExpiredHeld:

    async def test_only_held_past_expiry(self, session_factory):
        held = await _reserve(session_factory, "cotton-white", 5)
        committed = await _reserve(session_factory, "cotton-white", 5)
        async with session_factory() as session:
            await ReservationManager(session).commit(committed.id)
            await session.commit()

        async with session_factory() as session:
            manager = ReservationManager(session)
            assert await manager.expired_held() == []

            later = datetime.utcnow() + timedelta(minutes=16)
            expired = await manager.expired_held(now=later)
            assert [r.id for r in expired] == [held.id]
