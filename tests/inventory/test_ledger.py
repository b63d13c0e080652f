"""Tests for the per-SKU stock counters."""
import pytest

from fulfillment.services.inventory_service.ledger import InventoryLedger
from fulfillment.shared.exceptions import InsufficientStock, NotFound


class TestStockQueries:

    async def test_sellable_is_available_minus_reserved(self, session_factory):
        async with session_factory() as session:
            ledger = InventoryLedger(session)
            assert await ledger.try_hold("cotton-white", 30)

            record = await ledger.get_record("cotton-white")
            assert (record.available, record.reserved) == (100, 30)
            assert await ledger.get_sellable("cotton-white") == 70

    async def test_unknown_sku(self, session_factory):
        async with session_factory() as session:
            ledger = InventoryLedger(session)
            with pytest.raises(NotFound):
                await ledger.get_record("velvet-red")
            assert await ledger.find_record("velvet-red") is None


class TestHoldPrimitives:

    async def test_hold_refused_beyond_sellable(self, session_factory):
        async with session_factory() as session:
            ledger = InventoryLedger(session)
            assert not await ledger.try_hold("cotton-white", 101)

            record = await ledger.get_record("cotton-white")
            assert record.reserved == 0

    async def test_hold_of_exact_sellable_quantity(self, session_factory):
        async with session_factory() as session:
            ledger = InventoryLedger(session)
            assert await ledger.try_hold("cotton-white", 100)
            assert await ledger.get_sellable("cotton-white") == 0
            assert not await ledger.try_hold("cotton-white", 1)

    async def test_consume_hold_deducts_available(self, session_factory):
        async with session_factory() as session:
            ledger = InventoryLedger(session)
            await ledger.try_hold("cotton-white", 10)
            assert await ledger.consume_hold("cotton-white", 10)

            record = await ledger.get_record("cotton-white")
            assert (record.available, record.reserved) == (90, 0)

    async def test_release_hold_cannot_go_negative(self, session_factory):
        async with session_factory() as session:
            ledger = InventoryLedger(session)
            assert not await ledger.release_hold("cotton-white", 5)

            await ledger.try_hold("cotton-white", 5)
            assert await ledger.release_hold("cotton-white", 5)
            assert await ledger.get_sellable("cotton-white") == 100


class TestAdjustAvailable:

    async def test_restock(self, session_factory):
        async with session_factory() as session:
            record = await InventoryLedger(session).adjust_available("cotton-white", 50)
            assert record.available == 150

    async def test_correction_cannot_take_held_units(self, session_factory):
        async with session_factory() as session:
            ledger = InventoryLedger(session)
            await ledger.try_hold("cotton-white", 80)

            with pytest.raises(InsufficientStock) as exc:
                await ledger.adjust_available("cotton-white", -30)
            assert exc.value.sku_id == "cotton-white"

            record = await ledger.get_record("cotton-white")
            assert record.available == 100

    async def test_correction_down_to_reserved(self, session_factory):
        async with session_factory() as session:
            ledger = InventoryLedger(session)
            await ledger.try_hold("cotton-white", 80)

            record = await ledger.adjust_available("cotton-white", -20)
            assert (record.available, record.reserved, record.sellable) == (80, 80, 0)


class TestLowStock:

    async def test_lists_skus_at_reorder_point(self, session_factory):
        async with session_factory() as session:
            ledger = InventoryLedger(session)
            assert await ledger.list_low_stock() == []

            await ledger.try_hold("linen-natural", 45)
            low = await ledger.list_low_stock()
            assert [record.sku_id for record in low] == ["linen-natural"]
