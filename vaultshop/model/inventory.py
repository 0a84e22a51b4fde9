# model/inventory.py
"""
Inventory repository: one row per sellable credential bundle.

A unit moves available -> sold exactly once. The claim is a single
conditional UPDATE, never a read followed by a separate write:

    UPDATE inventory_units
       SET status='sold', order_id=:oid, ...
     WHERE id = (SELECT id FROM inventory_units
                  WHERE product_id=:pid AND status='available'
                  ORDER BY id LIMIT 1
                  FOR UPDATE SKIP LOCKED)
       AND status='available'
    RETURNING *

On SQLite the lock clause is dropped by the dialect; the per-engine gate
serializes writers there.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import func, insert, select, text, update
from sqlalchemy.exc import IntegrityError

from ..errors import ConflictError
from ..helpers import now_ts, to_iso
from ..infra.sql import GatedAsyncSession, transaction
from .orm import InventoryUnit

units_t = InventoryUnit.__table__

AVAILABLE = "available"
SOLD = "sold"


@dataclass(frozen=True)
class UnitRecord:
    id: int
    product_id: str
    payload: Dict[str, Any]
    status: str
    order_id: Optional[str]
    customer: Optional[str]
    claimed_at: Optional[float]
    created_at: float

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "UnitRecord":
        return cls(
            id=int(row["id"]),
            product_id=row["product_id"],
            payload=dict(row["payload"] or {}),
            status=row["status"],
            order_id=row["order_id"],
            customer=row["customer"],
            claimed_at=row["claimed_at"],
            created_at=row["created_at"],
        )

    def as_dict(self, with_payload: bool = False) -> Dict[str, Any]:
        out = {
            "unit_id": self.id,
            "product_id": self.product_id,
            "status": self.status,
            "order_id": self.order_id,
            "customer": self.customer,
            "claimed_at": to_iso(self.claimed_at),
        }
        if with_payload:
            out["payload"] = self.payload
        return out


class InventoryRepository:
    def __init__(self, db: GatedAsyncSession) -> None:
        self.db = db

    async def add_units(
        self, product_id: str, payloads: Iterable[Mapping[str, Any]]
    ) -> int:
        ts = now_ts()
        rows = [
            {
                "product_id": product_id,
                "payload": dict(p),
                "status": AVAILABLE,
                "created_at": ts,
            }
            for p in payloads
        ]
        if not rows:
            return 0
        async with transaction(self.db) as session:
            await session.execute(insert(units_t), rows)
        return len(rows)

    async def get_unit(self, unit_id: int) -> Optional[UnitRecord]:
        async with transaction(self.db) as session:
            row = (await session.execute(
                select(units_t).where(units_t.c.id == unit_id)
            )).mappings().first()
        return UnitRecord.from_row(row) if row else None

    async def find_by_order(self, order_id: str) -> Optional[UnitRecord]:
        async with transaction(self.db) as session:
            row = (await session.execute(
                select(units_t).where(units_t.c.order_id == order_id)
            )).mappings().first()
        return UnitRecord.from_row(row) if row else None

    async def _claim(self, where, order_id: str,
                     customer: Optional[str]) -> Optional[UnitRecord]:
        stmt = (
            update(units_t)
            .where(*where, units_t.c.status == AVAILABLE)
            .values(
                status=SOLD,
                order_id=order_id,
                customer=customer,
                claimed_at=now_ts(),
            )
            .returning(*units_t.c)
        )
        try:
            async with transaction(self.db) as session:
                row = (await session.execute(stmt)).mappings().first()
        except IntegrityError as exc:
            # unique(order_id): another claim for this order won first
            raise ConflictError(order_id) from exc
        return UnitRecord.from_row(row) if row else None

    async def claim_one(
        self,
        product_id: str,
        order_id: str,
        customer: Optional[str] = None,
        skip_locked: bool = True,
    ) -> Optional[UnitRecord]:
        """
        Claim any available unit of `product_id`; None when none left.
        With skip_locked=False the claim waits on rows other claimers hold.
        """
        # aliased so the subquery is not correlated to the UPDATE target
        cand = units_t.alias("candidate")
        candidate = (
            select(cand.c.id)
            .where(cand.c.product_id == product_id,
                   cand.c.status == AVAILABLE)
            .order_by(cand.c.id)
            .limit(1)
            .with_for_update(skip_locked=skip_locked)
            .scalar_subquery()
        )
        return await self._claim(
            [units_t.c.id == candidate], order_id, customer
        )

    async def claim_specific(
        self,
        unit_id: int,
        product_id: str,
        order_id: str,
        customer: Optional[str] = None,
    ) -> Optional[UnitRecord]:
        """Claim exactly `unit_id`; None unless it is available and
        belongs to `product_id`."""
        return await self._claim(
            [units_t.c.id == unit_id, units_t.c.product_id == product_id],
            order_id,
            customer,
        )

    async def count_available(self, product_id: str) -> int:
        async with transaction(self.db) as session:
            n = (await session.execute(
                select(func.count())
                .select_from(units_t)
                .where(units_t.c.product_id == product_id,
                       units_t.c.status == AVAILABLE)
            )).scalar_one()
        return int(n)

    async def counts_by_product(self) -> Dict[str, Dict[str, int]]:
        """{product_id: {"total", "available", "sold"}}"""
        async with transaction(self.db) as session:
            rows = (await session.execute(text("""
                SELECT product_id,
                       COUNT(*) AS total,
                       SUM(CASE WHEN status='available' THEN 1 ELSE 0 END)
                           AS available,
                       SUM(CASE WHEN status='sold' THEN 1 ELSE 0 END)
                           AS sold
                FROM inventory_units
                GROUP BY product_id
            """))).mappings().all()
        return {
            r["product_id"]: {
                "total": int(r["total"] or 0),
                "available": int(r["available"] or 0),
                "sold": int(r["sold"] or 0),
            }
            for r in rows
        }

    async def list_units(
        self,
        product_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 200,
    ) -> List[UnitRecord]:
        stmt = select(units_t)
        if product_id:
            stmt = stmt.where(units_t.c.product_id == product_id)
        if status:
            stmt = stmt.where(units_t.c.status == status)
        stmt = stmt.order_by(units_t.c.id).limit(max(1, min(limit, 1000)))
        async with transaction(self.db) as session:
            rows = (await session.execute(stmt)).mappings().all()
        return [UnitRecord.from_row(r) for r in rows]

    async def find_orphaned_allocations(self) -> List[Dict[str, Any]]:
        """
        Sold units that are not the allocated unit of a completed order:
        the order is missing, not completed, or points at another unit.
        Read-only; repairing them is a manual operator decision.
        """
        async with transaction(self.db) as session:
            rows = (await session.execute(text("""
                SELECT u.id AS unit_id,
                       u.product_id,
                       u.order_id,
                       u.claimed_at,
                       o.status AS order_status,
                       o.allocated_unit_id
                FROM inventory_units AS u
                LEFT JOIN orders AS o ON o.id = u.order_id
                WHERE u.status = 'sold'
                  AND (o.id IS NULL
                       OR o.status <> 'completed'
                       OR o.allocated_unit_id IS NULL
                       OR o.allocated_unit_id <> u.id)
                ORDER BY u.id
            """))).mappings().all()
        return [
            {
                "unit_id": int(r["unit_id"]),
                "product_id": r["product_id"],
                "order_id": r["order_id"],
                "claimed_at": to_iso(r["claimed_at"]),
                "order_status": r["order_status"],
                "order_allocated_unit_id": r["allocated_unit_id"],
            }
            for r in rows
        ]
