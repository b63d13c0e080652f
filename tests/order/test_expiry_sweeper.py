"""Tests for the reservation expiry sweeper."""
from datetime import datetime, timedelta
from uuid import uuid4

from fulfillment.services.inventory_service.ledger import InventoryLedger
from fulfillment.services.inventory_service.reservation_manager import ReservationManager
from fulfillment.services.order_service.expiry_sweeper import ReservationExpirySweeper
from fulfillment.services.order_service.models import OrderStatus
from tests.fakes import ACCOUNT_ID, make_checkout_request


def _after_expiry():
    return datetime.utcnow() + timedelta(minutes=16)


async def _reserved(session_factory, sku_id):
    async with session_factory() as session:
        return (await InventoryLedger(session).get_record(sku_id)).reserved


class TestSweepOnce:

    async def test_nothing_to_do_before_expiry(self, saga, session_factory):
        await saga.place_order(ACCOUNT_ID, make_checkout_request(("cotton-white", 10)))
        sweeper = ReservationExpirySweeper(session_factory, saga)

        assert await sweeper.sweep_once() == 0
        assert await _reserved(session_factory, "cotton-white") == 10

    async def test_expired_order_is_cancelled(self, saga, gateway, session_factory):
        result = await saga.place_order(
            ACCOUNT_ID, make_checkout_request(("cotton-white", 10), ("linen-natural", 5))
        )
        sweeper = ReservationExpirySweeper(session_factory, saga)

        assert await sweeper.sweep_once(now=_after_expiry()) == 1

        order = await saga.get_order(result.order_id)
        assert order.status == OrderStatus.CANCELLED.value
        assert order.failure_reason == "Reservation expired before payment"
        assert await _reserved(session_factory, "cotton-white") == 0
        assert await _reserved(session_factory, "linen-natural") == 0
        assert gateway.cancelled == [order.payment_intent_id]

        assert await sweeper.sweep_once(now=_after_expiry()) == 0

    async def test_orphaned_holds_are_released(self, saga, session_factory):
        async with session_factory() as session:
            await ReservationManager(session).reserve("silk-ivory", 25, uuid4())
            await session.commit()
        sweeper = ReservationExpirySweeper(session_factory, saga)

        assert await sweeper.sweep_once(now=_after_expiry()) == 1
        assert await _reserved(session_factory, "silk-ivory") == 0


class TestLifecycle:

    async def test_start_and_stop(self, saga, session_factory):
        sweeper = ReservationExpirySweeper(session_factory, saga, interval=3600)

        await sweeper.start()
        assert sweeper._running
        await sweeper.stop()

        assert not sweeper._running
        assert sweeper._task.done()
