# vaultshop/fulfillment.py
"""
Payment-event reconciliation and the order state machine.

    pending --completed event, unit claimed-----> completed
    pending --completed event, no stock---------> failed (OutOfStock)
    pending --other terminal status tag---------> failed (<tag>)
    pending --pending event (redelivery)--------> pending (last_seen_at)
    pending --expiry sweep, age > TTL-----------> expired (Timeout)
    pending --admin cancel----------------------> cancelled
    terminal --anything-------------------------> unchanged, "already processed"

The unit claim and the pending -> completed transition share one database
transaction, which first row-locks the order. A delivery that loses the
race (duplicate webhook, or a webhook racing an admin completion) waits on
that lock, finds the order no longer pending and acknowledges as already
processed without claiming a unit.
"""
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, Union
)

from .allocation import Allocator
from .config import Settings
from .errors import (
    AmountMismatch, ConflictError, DeadlineExceeded, MalformedEvent,
    NotificationFailure, OrderNotFound, OutOfStock, RepositoryUnavailable,
    UnitUnavailable,
)
from .helpers import now_ts, to_iso
from .infra.sql import Database, GatedAsyncSession, transaction
from .infra.timings import timeit
from .model.catalog import CatalogStore
from .model.inventory import InventoryRepository, UnitRecord
from .model.orders import (
    CANCELLED, COMPLETED, EXPIRED, FAILED, PENDING, OrderRecord,
    OrderRepository,
)
from .notify import Notifier
from .paygate import (
    STATUS_COMPLETED, STATUS_PENDING, PaymentEvent, parse_event,
)

log = logging.getLogger(__name__)

TIMEOUT_REASON = "Timeout"
EXPIRY_BATCH = 500


class Outcome(str, Enum):
    PROCESSED = "processed"
    ALREADY_PROCESSED = "already_processed"
    ORDER_NOT_FOUND = "order_not_found"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Ack:
    outcome: Outcome
    order_id: Optional[str]
    status: Optional[str]
    warning: Optional[str] = None
    error: Optional[str] = None

    @property
    def received(self) -> bool:
        return self.outcome is not Outcome.REJECTED

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "received": self.received,
            "order_id": self.order_id,
            # gateway-facing spelling of the same field
            "orderId": self.order_id,
            "status": self.status,
            "outcome": self.outcome.value,
        }
        if self.warning:
            out["warning"] = self.warning
        if self.error:
            out["error"] = self.error
        return out


FollowUp = Optional[Callable[[], Awaitable[None]]]


class Fulfillment:
    def __init__(
        self,
        database: Database,
        notifier: Notifier,
        settings: Settings,
        catalog: Optional[CatalogStore] = None,
    ) -> None:
        self.database = database
        self.notifier = notifier
        self.settings = settings
        self.catalog = catalog

    # ------------------------------------------------------------------
    # Webhook path
    # ------------------------------------------------------------------
    async def handle_payment_event(
        self, event: Union[PaymentEvent, Mapping[str, Any]]
    ) -> Ack:
        """
        Reconcile one payment notification against its order.

        Never raises for business outcomes; the Ack says what happened.
        Raises RetriableError (repository down, deadline exceeded) so the
        transport can ask the gateway to redeliver.
        """
        if not isinstance(event, PaymentEvent):
            try:
                event = parse_event(event)
            except MalformedEvent as exc:
                log.warning("malformed payment event: %s", exc)
                oid = event.get("order_id") if isinstance(event, Mapping) \
                    else None
                return Ack(Outcome.REJECTED, oid, None, error=str(exc))

        deadline = self.settings.webhook_deadline_seconds
        committed: List[Tuple[Ack, FollowUp]] = []
        try:
            async with timeit("fulfillment.handle"):
                ack, follow_up = await asyncio.wait_for(
                    self._handle(event, committed), timeout=deadline
                )
        except asyncio.TimeoutError as exc:
            if not committed:
                log.error("payment event for %s exceeded %.1fs deadline",
                          event.order_id, deadline)
                raise DeadlineExceeded(
                    f"payment event for {event.order_id} exceeded deadline"
                ) from exc
            # the completion is durable: answer with it and still notify
            ack, follow_up = committed[0]
            log.warning("order %s completed but its event exceeded the "
                        "%.1fs deadline", event.order_id, deadline)

        # notifications run outside the deadline and never undo the ack
        if follow_up is not None:
            await follow_up()
        return ack

    async def _handle(
        self, event: PaymentEvent, committed: List[Tuple[Ack, FollowUp]]
    ) -> Tuple[Ack, FollowUp]:
        log.info("payment event: order=%s status=%s amount=%s method=%s",
                 event.order_id, event.status, event.amount,
                 event.payment_method)
        async with self.database.session() as db:
            orders = OrderRepository(db)

            order = await self._resolve(orders, event.order_id)
            if order is None:
                log.warning("order not found after %d lookups: %s",
                            self.settings.order_lookup_retries + 1,
                            event.order_id)
                return Ack(
                    Outcome.ORDER_NOT_FOUND, event.order_id, event.status,
                    warning="order not found",
                ), None

            if order.amount != event.amount:
                err = AmountMismatch(order.id, order.amount, event.amount)
                log.error("%s; order left untouched", err)
                return Ack(
                    Outcome.REJECTED, order.id, order.status,
                    error="amount mismatch",
                ), None

            if order.is_terminal:
                log.info("order %s already processed (%s)",
                         order.id, order.status)
                return Ack(
                    Outcome.ALREADY_PROCESSED, order.id, order.status
                ), None

            if event.status == STATUS_COMPLETED:
                return await self._complete_from_event(
                    db, order, event, committed
                )

            if event.status == STATUS_PENDING:
                order = await orders.update_order(
                    order.id, {"last_seen_at": now_ts()}
                )
                return Ack(Outcome.PROCESSED, order.id, order.status), None

            return await self._fail(orders, order, event.status), None

    async def _resolve(
        self, orders: OrderRepository, order_id: str
    ) -> Optional[OrderRecord]:
        # the creating write may not be visible yet: a fixed number of
        # retries with linear backoff
        retries = max(0, self.settings.order_lookup_retries)
        backoff = self.settings.order_lookup_backoff_seconds
        for attempt in range(retries + 1):
            async with timeit("orders.find"):
                order = await orders.find_by_order_id(order_id)
            if order is not None:
                return order
            if attempt < retries:
                delay = backoff * (attempt + 1)
                log.debug("order %s not visible, retry %d in %.2fs",
                          order_id, attempt + 1, delay)
                await asyncio.sleep(delay)
        return None

    async def _complete_from_event(
        self,
        db: GatedAsyncSession,
        order: OrderRecord,
        event: PaymentEvent,
        committed: List[Tuple[Ack, FollowUp]],
    ) -> Tuple[Ack, FollowUp]:
        orders = OrderRepository(db)
        allocator = Allocator(InventoryRepository(db))
        patch = {
            "completed_at": event.completed_at or now_ts(),
            "payment_method": event.payment_method or order.payment_method,
            "last_seen_at": now_ts(),
        }
        try:
            done, unit = await self._complete(
                db, order,
                lambda: allocator.allocate(
                    order.product_id, order.id, order.customer
                ),
                patch,
            )
        except OutOfStock as exc:
            log.warning("order %s: %s", order.id, exc)
            return await self._fail(orders, order, OutOfStock.reason), None
        except ConflictError as exc:
            log.warning("order %s lost completion race: %s", order.id, exc)
            return await self._already_processed(orders, order.id), None

        async def follow_up() -> None:
            await self._after_completion(done, unit)

        ack = Ack(Outcome.PROCESSED, done.id, done.status)
        committed.append((ack, follow_up))
        return ack, follow_up

    async def _complete(
        self,
        db: GatedAsyncSession,
        order: OrderRecord,
        claim: Callable[[], Awaitable[UnitRecord]],
        patch: Mapping[str, Any],
    ) -> Tuple[OrderRecord, UnitRecord]:
        orders = OrderRepository(db)
        async with timeit("fulfillment.complete"):
            async with transaction(db):
                # same-order deliveries queue on the order row before any
                # unit is touched
                current = await orders.lock_for_update(order.id)
                if current is None:
                    raise OrderNotFound(order.id)
                if current.status != PENDING:
                    raise ConflictError(order.id, PENDING, current.status)
                unit = await claim()
                done = await orders.transition_if_status(
                    order.id, PENDING, COMPLETED,
                    dict(patch, allocated_unit_id=unit.id),
                )
        log.info("order %s completed with unit %s", done.id, unit.id)
        return done, unit

    async def _fail(
        self, orders: OrderRepository, order: OrderRecord, reason: str
    ) -> Ack:
        ts = now_ts()
        try:
            failed = await orders.transition_if_status(
                order.id, PENDING, FAILED,
                {"failure_reason": reason, "failed_at": ts,
                 "last_seen_at": ts},
            )
        except ConflictError:
            return await self._already_processed(orders, order.id)
        log.info("order %s failed: %s", failed.id, reason)
        return Ack(Outcome.PROCESSED, failed.id, failed.status)

    async def _already_processed(
        self, orders: OrderRepository, order_id: str
    ) -> Ack:
        current = await orders.find_by_order_id(order_id)
        status = current.status if current else None
        log.info("order %s already processed (%s)", order_id, status)
        return Ack(Outcome.ALREADY_PROCESSED, order_id, status)

    # ------------------------------------------------------------------
    # Admin surface
    # ------------------------------------------------------------------
    async def complete_order_manually(
        self, order_id: str, unit_id: int
    ) -> OrderRecord:
        """
        Same claim + conditional transition as the webhook path, with the
        unit chosen by an operator. Raises OrderNotFound, ConflictError
        (order not pending, or completed concurrently) or UnitUnavailable.
        """
        async with self.database.session() as db:
            orders = OrderRepository(db)
            order = await orders.find_by_order_id(order_id)
            if order is None:
                raise OrderNotFound(order_id)
            if order.status != PENDING:
                raise ConflictError(order_id, PENDING, order.status)
            allocator = Allocator(InventoryRepository(db))
            done, unit = await self._complete(
                db, order,
                lambda: allocator.allocate_specific(
                    unit_id, order.product_id, order.id, order.customer
                ),
                {"completed_at": now_ts()},
            )
        log.info("order %s completed manually with unit %s",
                 done.id, unit.id)
        await self._after_completion(done, unit)
        return done

    async def cancel_order(
        self, order_id: str, reason: Optional[str] = None
    ) -> OrderRecord:
        async with self.database.session() as db:
            order = await OrderRepository(db).transition_if_status(
                order_id, PENDING, CANCELLED,
                {"failure_reason": reason or "Cancelled by admin",
                 "failed_at": now_ts()},
            )
        log.info("order %s cancelled: %s", order.id, order.failure_reason)
        return order

    async def expire_stale_orders(self, now: Optional[float] = None) -> int:
        """Expire pending orders older than the configured TTL."""
        now = now_ts() if now is None else now
        cutoff = now - self.settings.order_ttl_seconds
        expired = 0
        async with self.database.session() as db:
            orders = OrderRepository(db)
            while True:
                ids = await orders.list_stale_pending(cutoff, EXPIRY_BATCH)
                for oid in ids:
                    try:
                        await orders.transition_if_status(
                            oid, PENDING, EXPIRED,
                            {"failure_reason": TIMEOUT_REASON,
                             "failed_at": now},
                        )
                    except ConflictError:
                        # completed or cancelled since the listing
                        continue
                    expired += 1
                if len(ids) < EXPIRY_BATCH:
                    break
        if expired:
            log.info("expired %d pending orders older than %ds",
                     expired, self.settings.order_ttl_seconds)
        return expired

    async def resend_notification(self, order_id: str) -> Dict[str, Any]:
        async with self.database.session() as db:
            order = await OrderRepository(db).find_by_order_id(order_id)
            if order is None:
                raise OrderNotFound(order_id)
            if order.status != COMPLETED or order.allocated_unit_id is None:
                raise ConflictError(order_id, COMPLETED, order.status)
            unit = await InventoryRepository(db).get_unit(
                order.allocated_unit_id
            )
            if unit is None:
                raise UnitUnavailable(order.allocated_unit_id, "unknown unit")

        error = await self._dispatch(order, unit, operator=False)
        if error:
            raise NotificationFailure(error)
        return await self.notification_status(order_id)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------
    async def get_order(self, order_id: str) -> Dict[str, Any]:
        """Status view; credentials only once completed."""
        async with self.database.session() as db:
            order = await OrderRepository(db).find_by_order_id(order_id)
            if order is None:
                raise OrderNotFound(order_id)
            out = order.as_dict()
            out["credentials"] = None
            if order.status == COMPLETED and order.allocated_unit_id:
                unit = await InventoryRepository(db).get_unit(
                    order.allocated_unit_id
                )
                if unit is not None:
                    out["credentials"] = unit.payload
        return out

    async def notification_status(self, order_id: str) -> Dict[str, Any]:
        async with self.database.session() as db:
            order = await OrderRepository(db).find_by_order_id(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return {
            "order_id": order.id,
            "status": order.status,
            "customer": order.customer,
            "customer_notified": order.customer_notified,
            "customer_notified_at": to_iso(order.customer_notified_at),
            "admin_notified": order.admin_notified,
            "notify_attempts": order.notify_attempts,
            "notify_error": order.notify_error,
        }

    # ------------------------------------------------------------------
    # Notifications (best effort)
    # ------------------------------------------------------------------
    async def _after_completion(
        self, order: OrderRecord, unit: UnitRecord
    ) -> None:
        await self._dispatch(order, unit, operator=True)
        await self._check_low_stock(order.product_id)

    async def _product_name(self, product_id: str) -> str:
        if self.catalog is None:
            return product_id
        try:
            entry = await self.catalog.get_entry(product_id)
        except RepositoryUnavailable as exc:
            log.warning("catalog lookup for %s failed: %s", product_id, exc)
            return product_id
        return entry.name if entry else product_id

    async def _dispatch(
        self, order: OrderRecord, unit: UnitRecord, operator: bool
    ) -> Optional[str]:
        """Returns the customer delivery error, None on success."""
        name = await self._product_name(order.product_id)
        summary = {
            "order_id": order.id,
            "product_id": order.product_id,
            "product_name": name,
            "amount": order.amount,
            "payment_method": order.payment_method,
            "customer": order.customer,
        }
        flags: Dict[str, Any] = {
            "notify_attempts": order.notify_attempts + 1,
        }
        error = None
        try:
            async with timeit("notify.customer"):
                mid = await self.notifier.send_fulfillment(
                    order.customer,
                    dict(summary, unit_id=unit.id, credentials=unit.payload),
                )
            flags.update(customer_notified=True,
                         customer_notified_at=now_ts(), notify_error=None)
            log.info("fulfillment for %s sent to %s (%s)",
                     order.id, order.customer, mid)
        except NotificationFailure as exc:
            error = str(exc)
            flags.update(customer_notified=False, notify_error=error)
            log.error("fulfillment notification for %s failed: %s",
                      order.id, exc)

        if operator:
            try:
                async with timeit("notify.operator"):
                    await self.notifier.send_operator(
                        "order_completed", summary
                    )
                flags["admin_notified"] = True
            except NotificationFailure as exc:
                log.error("operator notification for %s failed: %s",
                          order.id, exc)

        await self._record_flags(order.id, flags)
        return error

    async def _record_flags(self, order_id: str,
                            flags: Mapping[str, Any]) -> None:
        try:
            async with self.database.session() as db:
                await OrderRepository(db).update_order(order_id, flags)
        except RepositoryUnavailable as exc:
            # the completion itself is already committed
            log.error("could not record notification flags for %s: %s",
                      order_id, exc)

    async def _check_low_stock(self, product_id: str) -> None:
        threshold = self.settings.low_stock_threshold
        if threshold < 0:
            return
        try:
            async with self.database.session() as db:
                left = await InventoryRepository(db).count_available(
                    product_id
                )
        except RepositoryUnavailable as exc:
            log.warning("stock check for %s failed: %s", product_id, exc)
            return
        if left > threshold:
            return
        log.warning("stock alert: %s has %d available", product_id, left)
        try:
            await self.notifier.send_operator(
                "low_stock", {"product_id": product_id, "available": left}
            )
        except NotificationFailure as exc:
            log.error("low-stock notification for %s failed: %s",
                      product_id, exc)


__all__ = ["Ack", "Fulfillment", "Outcome", "TIMEOUT_REASON"]
