# vaultshop/stocksync.py
"""
One-directional cache repair: inventory_units -> catalog stock.

Only this module writes CatalogEntry.stock. The webhook path never does,
so the cached number has a single writer and can only drift until the
next pass.

    python -m vaultshop.stocksync            # reconcile and print result
    python -m vaultshop.stocksync --report   # read-only report
"""
from __future__ import annotations
import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional

import redis.asyncio as redis

from .config import Settings, load_settings
from .helpers import now_ts, to_iso
from .infra.logs import setup_logging
from .infra.sql import Database
from .infra.timings import timeit
from .model.catalog import CatalogEntry, CatalogStore, new_store
from .model.inventory import InventoryRepository
from .model.orm import create_schema

log = logging.getLogger(__name__)


class StockSync:
    def __init__(self, database: Database, catalog: CatalogStore) -> None:
        self.database = database
        self.catalog = catalog
        # one pass at a time per process
        self._lock = asyncio.Lock()

    async def _snapshot(self):
        async with self.database.session() as db:
            counts = await InventoryRepository(db).counts_by_product()
        entries = await self.catalog.list_entries()
        return counts, entries

    @staticmethod
    def _row(entry: CatalogEntry,
             counts: Dict[str, Dict[str, int]]) -> Dict[str, Any]:
        c = counts.get(entry.product_id, {})
        actual = c.get("available", 0)
        return {
            "product_id": entry.product_id,
            "name": entry.name,
            "price": entry.price,
            "cached_stock": entry.stock,
            "actual_available": actual,
            "total_units": c.get("total", 0),
            "sold_units": c.get("sold", 0),
            "needs_update": entry.stock != actual,
        }

    async def report(self) -> Dict[str, Any]:
        """Cached vs. actual counts per catalog product; mutates nothing."""
        async with timeit("stocksync.report"):
            counts, entries = await self._snapshot()
        return {
            "timestamp": to_iso(now_ts()),
            "products": [self._row(e, counts) for e in entries],
            "uncatalogued": sorted(
                set(counts) - {e.product_id for e in entries}
            ),
        }

    async def reconcile(self) -> Dict[str, Any]:
        """
        Overwrite every mismatching cached stock with the available count.
        Catalog products without any unit get 0. Running it twice without
        an allocation in between changes nothing the second time.
        """
        async with self._lock:
            async with timeit("stocksync.reconcile"):
                counts, entries = await self._snapshot()
                products: List[Dict[str, Any]] = []
                updated = 0
                for entry in entries:
                    actual = counts.get(entry.product_id, {}).get(
                        "available", 0
                    )
                    changed = entry.stock != actual
                    if changed:
                        await self.catalog.set_stock(entry.product_id, actual)
                        updated += 1
                        log.info("stock corrected for %s: %d -> %d",
                                 entry.product_id, entry.stock, actual)
                    products.append({
                        "product_id": entry.product_id,
                        "name": entry.name,
                        "before": entry.stock,
                        "after": actual,
                        "updated": changed,
                    })

        known = {e.product_id for e in entries}
        for pid in sorted(set(counts) - known):
            log.warning("inventory product %s has no catalog entry "
                        "(%d available)", pid, counts[pid]["available"])

        log.info("stock sync: %d of %d products updated",
                 updated, len(entries))
        return {
            "timestamp": to_iso(now_ts()),
            "updated_product_count": updated,
            "products": products,
        }


async def run_periodic(sync: StockSync, interval: float,
                       stop: asyncio.Event) -> None:
    """Reconcile every `interval` seconds until `stop` is set."""
    while not stop.is_set():
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
            return
        except asyncio.TimeoutError:
            pass
        try:
            await sync.reconcile()
        except Exception:
            # keep the schedule alive; the next pass repairs the cache
            log.exception("periodic stock sync failed")


# ----------------------------
# CLI
# ----------------------------
async def _run(settings: Settings, report_only: bool) -> Dict[str, Any]:
    database = Database(settings.database_url, settings.db_gate_limit)
    r = None
    try:
        await create_schema(database.engine)
        if settings.catalog_backend == "redis":
            r = redis.from_url(settings.redis_url, decode_responses=True)
        catalog = new_store(backend=settings.catalog_backend,
                            database=database, r=r)
        sync = StockSync(database, catalog)
        if report_only:
            return await sync.report()
        return await sync.reconcile()
    finally:
        if r is not None:
            await r.aclose()
        await database.dispose()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="python -m vaultshop.stocksync",
        description="Repair cached catalog stock from inventory.",
    )
    parser.add_argument(
        "--report", action="store_true",
        help="print cached vs. actual counts without changing anything",
    )
    args = parser.parse_args(argv)

    settings = load_settings()
    setup_logging(settings.log_level)
    result = asyncio.run(_run(settings, args.report))
    json.dump(result, sys.stdout, indent=2)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
