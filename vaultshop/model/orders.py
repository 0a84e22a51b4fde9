# model/orders.py
"""
Order repository: the single source of truth for order state.

All status changes go through transition_if_status(), a conditional
UPDATE ... WHERE status = :expected. Two writers racing for the same order
(duplicate webhook delivery, webhook vs. admin completion) therefore resolve
to one winner and one ConflictError, without any process-level lock.
"""
from __future__ import annotations
from dataclasses import dataclass, fields
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from ..errors import ConflictError, DuplicateOrderId, OrderNotFound
from ..helpers import now_ts, to_iso
from ..infra.sql import GatedAsyncSession, transaction
from .orm import Order

orders_t = Order.__table__

PENDING = "pending"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"
EXPIRED = "expired"

TERMINAL = frozenset({COMPLETED, FAILED, CANCELLED, EXPIRED})

# no transitions out of a terminal state
TRANSITIONS = {
    PENDING: frozenset({COMPLETED, FAILED, CANCELLED, EXPIRED}),
}

# never writable through update_order()
PROTECTED = frozenset({
    "id", "amount", "status", "allocated_unit_id", "created_at",
})


@dataclass(frozen=True)
class OrderRecord:
    id: str
    customer: str
    product_id: str
    amount: int
    payment_method: Optional[str]
    status: str
    allocated_unit_id: Optional[int]
    failure_reason: Optional[str]
    created_at: float
    updated_at: float
    completed_at: Optional[float]
    failed_at: Optional[float]
    last_seen_at: Optional[float]
    customer_notified: bool
    customer_notified_at: Optional[float]
    admin_notified: bool
    notify_attempts: int
    notify_error: Optional[str]

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "OrderRecord":
        return cls(**{f.name: row[f.name] for f in fields(cls)})

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL

    def as_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.id,
            "customer": self.customer,
            "product_id": self.product_id,
            "amount": self.amount,
            "payment_method": self.payment_method,
            "status": self.status,
            "allocated_unit_id": self.allocated_unit_id,
            "failure_reason": self.failure_reason,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "completed_at": to_iso(self.completed_at),
            "failed_at": to_iso(self.failed_at),
        }


def _checked_patch(patch: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    values = dict(patch or {})
    unknown = set(values) - set(orders_t.c.keys())
    if unknown:
        raise ValueError(f"unknown order fields: {sorted(unknown)}")
    return values


class OrderRepository:
    def __init__(self, db: GatedAsyncSession) -> None:
        self.db = db

    async def find_by_order_id(self, order_id: str) -> Optional[OrderRecord]:
        """None when the order is not (yet) visible; callers retry."""
        async with transaction(self.db) as session:
            row = (await session.execute(
                select(orders_t).where(orders_t.c.id == order_id)
            )).mappings().first()
        return OrderRecord.from_row(row) if row else None

    async def lock_for_update(self, order_id: str) -> Optional[OrderRecord]:
        """
        Row-lock the order until the enclosing transaction ends. Concurrent
        completions of one order queue here; SQLite drops the clause and
        relies on the gate.
        """
        async with transaction(self.db) as session:
            row = (await session.execute(
                select(orders_t)
                .where(orders_t.c.id == order_id)
                .with_for_update()
            )).mappings().first()
        return OrderRecord.from_row(row) if row else None

    async def create_order(
        self,
        *,
        order_id: str,
        customer: str,
        product_id: str,
        amount: int,
        payment_method: Optional[str] = None,
        created_at: Optional[float] = None,
    ) -> OrderRecord:
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValueError("amount must be an integer")
        if amount < 0:
            raise ValueError("amount must not be negative")
        ts = now_ts() if created_at is None else created_at
        try:
            async with transaction(self.db) as session:
                row = (await session.execute(
                    insert(orders_t).values(
                        id=order_id,
                        customer=customer,
                        product_id=product_id,
                        amount=amount,
                        payment_method=payment_method,
                        status=PENDING,
                        created_at=ts,
                        updated_at=ts,
                    ).returning(*orders_t.c)
                )).mappings().first()
        except IntegrityError as exc:
            raise DuplicateOrderId(order_id) from exc
        return OrderRecord.from_row(row)

    async def update_order(
        self, order_id: str, patch: Mapping[str, Any]
    ) -> OrderRecord:
        """
        Unconditioned partial update for non-concurrent fields
        (notification flags, last_seen_at, ...). Status changes must use
        transition_if_status().
        """
        values = _checked_patch(patch)
        forbidden = PROTECTED & set(values)
        if forbidden:
            raise ValueError(
                f"fields not writable via update_order: {sorted(forbidden)}"
            )
        values["updated_at"] = now_ts()
        async with transaction(self.db) as session:
            row = (await session.execute(
                update(orders_t)
                .where(orders_t.c.id == order_id)
                .values(**values)
                .returning(*orders_t.c)
            )).mappings().first()
        if row is None:
            raise OrderNotFound(order_id)
        return OrderRecord.from_row(row)

    async def transition_if_status(
        self,
        order_id: str,
        expected: str,
        new: str,
        patch: Optional[Mapping[str, Any]] = None,
    ) -> OrderRecord:
        """
        Atomically move `order_id` from `expected` to `new` and apply
        `patch`. Raises ConflictError if the stored status is not
        `expected`, OrderNotFound if there is no such order.
        """
        if new not in TRANSITIONS.get(expected, ()):
            raise ValueError(f"illegal transition {expected} -> {new}")
        values = _checked_patch(patch)
        for k in ("id", "amount", "created_at", "status"):
            values.pop(k, None)
        if new == COMPLETED:
            if values.get("allocated_unit_id") is None:
                raise ValueError("completion requires allocated_unit_id")
        elif "allocated_unit_id" in values:
            raise ValueError("allocated_unit_id is only set on completion")
        values["status"] = new
        values["updated_at"] = now_ts()

        async with transaction(self.db) as session:
            row = (await session.execute(
                update(orders_t)
                .where(orders_t.c.id == order_id,
                       orders_t.c.status == expected)
                .values(**values)
                .returning(*orders_t.c)
            )).mappings().first()
            if row is None:
                current = (await session.execute(
                    select(orders_t.c.status)
                    .where(orders_t.c.id == order_id)
                )).scalar_one_or_none()
                if current is None:
                    raise OrderNotFound(order_id)
                raise ConflictError(order_id, expected, current)
        return OrderRecord.from_row(row)

    async def list_orders(
        self, status: Optional[str] = None, limit: int = 200
    ) -> List[OrderRecord]:
        stmt = select(orders_t)
        if status:
            stmt = stmt.where(orders_t.c.status == status)
        stmt = stmt.order_by(orders_t.c.created_at.desc()).limit(
            max(1, min(limit, 500))
        )
        async with transaction(self.db) as session:
            rows = (await session.execute(stmt)).mappings().all()
        return [OrderRecord.from_row(r) for r in rows]

    async def list_stale_pending(
        self, older_than: float, limit: int = 100
    ) -> List[str]:
        async with transaction(self.db) as session:
            rows = (await session.execute(
                select(orders_t.c.id)
                .where(orders_t.c.status == PENDING,
                       orders_t.c.created_at < older_than)
                .order_by(orders_t.c.created_at)
                .limit(limit)
            )).all()
        return [r[0] for r in rows]
