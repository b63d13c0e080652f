"""Read-only catalog lookups and catalog seeding."""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.shared.exceptions import NotFound

from .ledger import InventoryLedger
from .models import CatalogItem, CatalogStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SkuQuote:
    """Authoritative price and current sellable quantity for one SKU."""

    sku_id: str
    name: str
    kind: str
    price: Decimal
    currency: str
    sellable: int
    min_order_quantity: int
    status: str

    @property
    def orderable(self) -> bool:
        return self.status == CatalogStatus.ACTIVE.value


class Catalog:
    """Pricing source for checkout and the storefront listing. Never writes stock."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.ledger = InventoryLedger(session)

    async def get_sku(self, sku_id: str) -> SkuQuote:
        result = await self.session.execute(
            select(CatalogItem).where(CatalogItem.sku_id == sku_id)
        )
        item = result.scalar_one_or_none()
        if not item:
            raise NotFound(f"SKU not found: {sku_id}")
        return await self._quote(item)

    async def list_skus(self, kind: Optional[str] = None) -> List[SkuQuote]:
        """Active catalog entries, optionally restricted to one kind."""
        query = (
            select(CatalogItem)
            .where(CatalogItem.status == CatalogStatus.ACTIVE.value)
            .order_by(CatalogItem.sku_id)
        )
        if kind:
            query = query.where(CatalogItem.kind == kind)

        result = await self.session.execute(query)
        return [await self._quote(item) for item in result.scalars().all()]

    async def _quote(self, item: CatalogItem) -> SkuQuote:
        record = await self.ledger.find_record(item.sku_id)

        return SkuQuote(
            sku_id=item.sku_id,
            name=item.name,
            kind=item.kind,
            price=Decimal(item.price),
            currency=item.currency,
            sellable=record.sellable if record else 0,
            min_order_quantity=item.min_order_quantity,
            status=item.status,
        )


async def seed_catalog(session: AsyncSession, items: Iterable[Dict[str, Any]]) -> int:
    """
    Insert catalog items and their stock records, skipping SKUs that exist.

    Each item is a dict with ``sku_id``, ``name``, ``price``, ``available`` and
    optionally ``kind``, ``description``, ``currency``, ``min_order_quantity``,
    ``reorder_point``, ``status``.
    """
    ledger = InventoryLedger(session)
    created = 0

    for item in items:
        existing = await session.execute(
            select(CatalogItem.sku_id).where(CatalogItem.sku_id == item["sku_id"])
        )
        if existing.scalar_one_or_none():
            continue

        session.add(CatalogItem(
            sku_id=item["sku_id"],
            name=item["name"],
            description=item.get("description"),
            kind=item.get("kind", "fabric"),
            price=Decimal(str(item["price"])),
            currency=item.get("currency", "usd"),
            min_order_quantity=item.get("min_order_quantity", 1),
            status=item.get("status", CatalogStatus.ACTIVE.value),
        ))
        await session.flush()
        await ledger.create(
            item["sku_id"],
            available=item["available"],
            reorder_point=item.get("reorder_point", 0),
        )
        created += 1

    if created:
        logger.info(f"Seeded {created} catalog items")
    return created


DEFAULT_CATALOG = [
    {
        "sku_id": "cotton-white",
        "name": "Premium Cotton (White)",
        "kind": "fabric",
        "description": "Soft, breathable cotton perfect for shirts and dresses",
        "price": "12.99",
        "available": 1000,
        "reorder_point": 100,
    },
    {
        "sku_id": "linen-natural",
        "name": "Linen Blend (Natural)",
        "kind": "fabric",
        "description": "Durable linen blend for summer garments",
        "price": "15.50",
        "available": 800,
        "reorder_point": 80,
    },
    {
        "sku_id": "silk-ivory",
        "name": "Silk Satin (Ivory)",
        "kind": "fabric",
        "description": "Luxurious silk for evening wear",
        "price": "29.99",
        "available": 300,
        "reorder_point": 30,
    },
    {
        "sku_id": "polo-navy",
        "name": "Custom Polo Shirt (Navy)",
        "kind": "clothing",
        "description": "Pique polo with optional embroidered logo",
        "price": "18.00",
        "available": 500,
        "reorder_point": 50,
        "min_order_quantity": 12,
    },
]
