"""Inventory ledger: the per-SKU stock counters."""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.shared.exceptions import InsufficientStock, NotFound

from .models import StockRecord

logger = logging.getLogger(__name__)


class InventoryLedger:
    """
    Counter store for sellable quantity.

    Performs no business validation. Every mutation is one conditional UPDATE
    whose WHERE clause carries the invariant, so the database decides whether
    the change is allowed and two callers can never both pass the same check.
    The Reservation Manager is the only caller of the hold primitives.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, sku_id: str, available: int, reorder_point: int = 0) -> StockRecord:
        record = StockRecord(
            sku_id=sku_id,
            available=available,
            reserved=0,
            reorder_point=reorder_point,
        )
        self.session.add(record)
        await self.session.flush()
        return record

    async def get_record(self, sku_id: str) -> StockRecord:
        result = await self.session.execute(
            select(StockRecord)
            .where(StockRecord.sku_id == sku_id)
            .execution_options(populate_existing=True)
        )
        record = result.scalar_one_or_none()
        if not record:
            raise NotFound(f"SKU not found: {sku_id}")
        return record

    async def find_record(self, sku_id: str) -> Optional[StockRecord]:
        result = await self.session.execute(
            select(StockRecord)
            .where(StockRecord.sku_id == sku_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_sellable(self, sku_id: str) -> int:
        """Return ``available - reserved`` for a SKU."""
        record = await self.get_record(sku_id)
        return record.sellable

    async def adjust_available(self, sku_id: str, delta: int) -> StockRecord:
        """
        Restock (positive delta) or correct (negative delta) owned stock.

        A correction may not take away units that are already held.
        """
        result = await self._conditional_update(
            update(StockRecord)
            .where(
                StockRecord.sku_id == sku_id,
                StockRecord.available + delta >= StockRecord.reserved,
            )
            .values(available=StockRecord.available + delta, updated_at=datetime.utcnow())
        )

        if result.rowcount == 0:
            record = await self.get_record(sku_id)
            raise InsufficientStock(sku_id, requested=-delta, sellable=record.sellable)

        record = await self.get_record(sku_id)
        logger.info(f"Adjusted {sku_id} available by {delta} (now {record.available})")
        return record

    async def list_low_stock(self) -> List[StockRecord]:
        """Records whose sellable quantity is at or below their reorder point."""
        result = await self.session.execute(
            select(StockRecord)
            .where(StockRecord.available - StockRecord.reserved <= StockRecord.reorder_point)
            .order_by(StockRecord.sku_id)
        )
        return list(result.scalars().all())

    # Hold primitives

    async def try_hold(self, sku_id: str, quantity: int) -> bool:
        """Increment ``reserved`` iff ``available - reserved >= quantity``."""
        result = await self._conditional_update(
            update(StockRecord)
            .where(
                StockRecord.sku_id == sku_id,
                StockRecord.available - StockRecord.reserved >= quantity,
            )
            .values(reserved=StockRecord.reserved + quantity, updated_at=datetime.utcnow())
        )
        return result.rowcount == 1

    async def release_hold(self, sku_id: str, quantity: int) -> bool:
        """Return held units to the sellable pool."""
        result = await self._conditional_update(
            update(StockRecord)
            .where(StockRecord.sku_id == sku_id, StockRecord.reserved >= quantity)
            .values(reserved=StockRecord.reserved - quantity, updated_at=datetime.utcnow())
        )
        return result.rowcount == 1

    async def consume_hold(self, sku_id: str, quantity: int) -> bool:
        """Turn held units into a permanent deduction from ``available``."""
        result = await self._conditional_update(
            update(StockRecord)
            .where(StockRecord.sku_id == sku_id, StockRecord.reserved >= quantity)
            .values(
                available=StockRecord.available - quantity,
                reserved=StockRecord.reserved - quantity,
                updated_at=datetime.utcnow(),
            )
        )
        return result.rowcount == 1

    async def _conditional_update(self, statement):
        return await self.session.execute(
            statement.execution_options(synchronize_session=False)
        )
