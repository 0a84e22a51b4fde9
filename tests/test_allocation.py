import asyncio

import pytest

from vaultshop.allocation import Allocator
from vaultshop.errors import ConflictError, OutOfStock, UnitUnavailable
from vaultshop.infra.sql import Database, transaction
from vaultshop.model.inventory import AVAILABLE, SOLD, InventoryRepository
from vaultshop.model.orders import (
    CANCELLED, COMPLETED, PENDING, OrderRepository,
)


async def _allocate(database, product_id, order_id):
    async with database.session() as db:
        return await Allocator(InventoryRepository(db)).allocate(
            product_id, order_id, "buyer@example.com"
        )


async def _allocate_specific(database, unit_id, product_id, order_id):
    async with database.session() as db:
        return await Allocator(InventoryRepository(db)).allocate_specific(
            unit_id, product_id, order_id
        )


async def _units(database, product_id=None):
    async with database.session() as db:
        return await InventoryRepository(db).list_units(product_id)


async def test_allocate_claims_one_unit(database, add_units, available):
    await add_units("P1", 2)
    unit = await _allocate(database, "P1", "ORD-1")
    assert unit.status == SOLD
    assert unit.order_id == "ORD-1"
    assert unit.customer == "buyer@example.com"
    assert unit.claimed_at is not None
    assert unit.payload["login"].startswith("p1-user")
    assert await available("P1") == 1


async def test_allocate_is_idempotent_per_order(database, add_units,
                                                available):
    await add_units("P1", 3)
    first = await _allocate(database, "P1", "ORD-1")
    second = await _allocate(database, "P1", "ORD-1")
    assert first.id == second.id
    assert await available("P1") == 2


async def test_out_of_stock(database, add_units):
    await add_units("P2", 1)
    with pytest.raises(OutOfStock) as info:
        await _allocate(database, "P1", "ORD-1")
    assert info.value.product_id == "P1"


async def test_concurrent_allocations_never_oversell(database, add_units,
                                                     available):
    await add_units("P1", 3)
    results = await asyncio.gather(
        *(_allocate(database, "P1", f"ORD-{i}") for i in range(10)),
        return_exceptions=True,
    )
    units = [r for r in results if not isinstance(r, Exception)]
    errors = [r for r in results if isinstance(r, Exception)]

    assert len(units) == 3
    assert len({u.id for u in units}) == 3
    assert len({u.order_id for u in units}) == 3
    assert len(errors) == 7
    assert all(isinstance(e, OutOfStock) for e in errors)
    assert await available("P1") == 0


async def test_claims_across_engines_never_oversell(
    settings, database, add_units, available,
):
    # two engines on one file: each has its own gate, so the claims only
    # serialize in the database itself
    await add_units("P1", 4)
    engines = [Database(settings.database_url, settings.db_gate_limit)
               for _ in range(2)]

    async def claim(i):
        async with engines[i % 2].session() as db:
            return await InventoryRepository(db).claim_one(
                "P1", f"ORD-{i}", skip_locked=i % 3 != 0
            )

    try:
        results = await asyncio.gather(*(claim(i) for i in range(10)))
    finally:
        for engine in engines:
            await engine.dispose()

    units = [u for u in results if u is not None]
    assert len(units) == 4
    assert len({u.id for u in units}) == 4
    assert len({u.order_id for u in units}) == 4
    assert results.count(None) == 6
    assert await available("P1") == 0
    for unit in await _units(database, "P1"):
        assert unit.status == SOLD


async def test_claim_rolls_back_with_enclosing_transaction(
    database, add_units, make_order, available
):
    await add_units("P1", 1)
    await make_order("ORD-1")
    async with database.session() as db:
        await OrderRepository(db).transition_if_status(
            "ORD-1", PENDING, CANCELLED
        )

    async with database.session() as db:
        orders = OrderRepository(db)
        allocator = Allocator(InventoryRepository(db))
        with pytest.raises(ConflictError):
            async with transaction(db):
                unit = await allocator.allocate("P1", "ORD-1")
                await orders.transition_if_status(
                    "ORD-1", PENDING, COMPLETED,
                    {"allocated_unit_id": unit.id},
                )

    assert await available("P1") == 1
    [unit] = await _units(database, "P1")
    assert unit.status == AVAILABLE
    assert unit.order_id is None


async def test_allocate_specific(database, add_units, available):
    await add_units("P1", 2)
    await add_units("P2", 1)
    p1 = await _units(database, "P1")
    p2 = await _units(database, "P2")

    unit = await _allocate_specific(database, p1[1].id, "P1", "ORD-1")
    assert unit.id == p1[1].id
    assert unit.order_id == "ORD-1"
    # same unit again for the same order is a no-op
    again = await _allocate_specific(database, p1[1].id, "P1", "ORD-1")
    assert again.id == unit.id
    assert await available("P1") == 1

    with pytest.raises(UnitUnavailable, match="status sold"):
        await _allocate_specific(database, p1[1].id, "P1", "ORD-2")
    with pytest.raises(UnitUnavailable, match="belongs to product P2"):
        await _allocate_specific(database, p2[0].id, "P1", "ORD-2")
    with pytest.raises(UnitUnavailable, match="unknown unit"):
        await _allocate_specific(database, 99999, "P1", "ORD-2")
    # ORD-1 already holds a different unit
    with pytest.raises(ConflictError):
        await _allocate_specific(database, p1[0].id, "P1", "ORD-1")


async def test_orphaned_allocations(database, add_units, make_order):
    await add_units("P1", 3)
    await make_order("ORD-ok")
    await make_order("ORD-pending")

    ok = await _allocate(database, "P1", "ORD-ok")
    async with database.session() as db:
        await OrderRepository(db).transition_if_status(
            "ORD-ok", PENDING, COMPLETED, {"allocated_unit_id": ok.id}
        )
    # sold without the matching completion
    stray = await _allocate(database, "P1", "ORD-pending")
    ghost = await _allocate(database, "P1", "ORD-ghost")

    async with database.session() as db:
        orphans = await InventoryRepository(db).find_orphaned_allocations()

    by_unit = {o["unit_id"]: o for o in orphans}
    assert set(by_unit) == {stray.id, ghost.id}
    assert by_unit[stray.id]["order_status"] == PENDING
    assert by_unit[ghost.id]["order_status"] is None


async def test_counts_by_product(database, add_units):
    await add_units("P1", 3)
    await add_units("P2", 1)
    await _allocate(database, "P1", "ORD-1")
    async with database.session() as db:
        counts = await InventoryRepository(db).counts_by_product()
    assert counts == {
        "P1": {"total": 3, "available": 2, "sold": 1},
        "P2": {"total": 1, "available": 1, "sold": 0},
    }
