from __future__ import annotations
from typing import Any, List, Mapping, Optional

from sqlalchemy import insert, select, update

from ...helpers import now_ts
from ...infra.sql import Database, transaction
from ..orm import CatalogEntry as CatalogRow
from ._types import CatalogEntry

catalog_t = CatalogRow.__table__


def _entry(row: Mapping[str, Any]) -> CatalogEntry:
    return CatalogEntry(
        product_id=row["product_id"],
        name=row["name"],
        price=int(row["price"]),
        description=row["description"],
        stock=int(row["stock"] or 0),
        updated_at=float(row["updated_at"]),
    )


class CatalogStore:
    """Catalog entries in the same SQL database as orders and inventory."""

    def __init__(self, *, database: Database) -> None:
        self.database = database

    async def list_entries(self) -> List[CatalogEntry]:
        async with self.database.session() as db:
            async with transaction(db) as session:
                rows = (await session.execute(
                    select(catalog_t).order_by(catalog_t.c.product_id)
                )).mappings().all()
        return [_entry(r) for r in rows]

    async def get_entry(self, product_id: str) -> Optional[CatalogEntry]:
        async with self.database.session() as db:
            async with transaction(db) as session:
                row = (await session.execute(
                    select(catalog_t)
                    .where(catalog_t.c.product_id == product_id)
                )).mappings().first()
        return _entry(row) if row else None

    async def upsert_entry(
        self,
        product_id: str,
        *,
        name: str,
        price: int,
        description: Optional[str] = None,
    ) -> CatalogEntry:
        """Create or edit display fields; the cached stock is kept."""
        meta = {"name": name, "price": int(price),
                "description": description, "updated_at": now_ts()}
        async with self.database.session() as db:
            async with transaction(db) as session:
                row = (await session.execute(
                    update(catalog_t)
                    .where(catalog_t.c.product_id == product_id)
                    .values(**meta)
                    .returning(*catalog_t.c)
                )).mappings().first()
                if row is None:
                    row = (await session.execute(
                        insert(catalog_t)
                        .values(product_id=product_id, stock=0, **meta)
                        .returning(*catalog_t.c)
                    )).mappings().first()
        return _entry(row)

    async def set_stock(self, product_id: str, stock: int) -> None:
        async with self.database.session() as db:
            async with transaction(db) as session:
                await session.execute(
                    update(catalog_t)
                    .where(catalog_t.c.product_id == product_id)
                    .values(stock=int(stock), updated_at=now_ts())
                )
