import json

from vaultshop import stocksync
from vaultshop.stocksync import StockSync


async def _seed(catalog, add_units):
    await catalog.upsert_entry("P1", name="Streaming 1M", price=20000)
    await catalog.upsert_entry("P2", name="Music 3M", price=45000)
    await catalog.set_stock("P2", 5)
    await add_units("P1", 3)
    # inventory without a catalog entry
    await add_units("P9", 2)


async def test_report_is_read_only(database, catalog, add_units):
    await _seed(catalog, add_units)
    sync = StockSync(database, catalog)

    report = await sync.report()
    rows = {p["product_id"]: p for p in report["products"]}
    assert rows["P1"]["cached_stock"] == 0
    assert rows["P1"]["actual_available"] == 3
    assert rows["P1"]["total_units"] == 3
    assert rows["P1"]["needs_update"] is True
    assert rows["P2"]["cached_stock"] == 5
    assert rows["P2"]["actual_available"] == 0
    assert rows["P2"]["needs_update"] is True
    assert report["uncatalogued"] == ["P9"]

    assert (await catalog.get_entry("P1")).stock == 0


async def test_reconcile_converges(database, catalog, add_units):
    await _seed(catalog, add_units)
    sync = StockSync(database, catalog)

    result = await sync.reconcile()
    assert result["updated_product_count"] == 2
    changes = {p["product_id"]: (p["before"], p["after"])
               for p in result["products"]}
    assert changes == {"P1": (0, 3), "P2": (5, 0)}

    assert (await catalog.get_entry("P1")).stock == 3
    assert (await catalog.get_entry("P2")).stock == 0
    # never creates entries for uncatalogued inventory
    assert await catalog.get_entry("P9") is None

    again = await sync.reconcile()
    assert again["updated_product_count"] == 0
    report = await sync.report()
    assert not any(p["needs_update"] for p in report["products"])


async def test_reconcile_follows_allocations(database, catalog, add_units,
                                             make_order, fulfillment):
    await _seed(catalog, add_units)
    sync = StockSync(database, catalog)
    await sync.reconcile()

    await make_order("ORD-1")
    await fulfillment.handle_payment_event(
        {"order_id": "ORD-1", "amount": 20000, "status": "completed"}
    )
    report = await sync.report()
    p1 = next(p for p in report["products"] if p["product_id"] == "P1")
    assert p1["cached_stock"] == 3
    assert p1["actual_available"] == 2
    assert p1["sold_units"] == 1
    assert p1["needs_update"] is True

    result = await sync.reconcile()
    assert result["updated_product_count"] == 1
    assert (await catalog.get_entry("P1")).stock == 2


def test_cli_report(monkeypatch, settings, capsys):
    monkeypatch.setenv("DATABASE_URL", settings.database_url)
    monkeypatch.setenv("CATALOG_BACKEND", "sql")
    # leave pytest's log handlers alone
    monkeypatch.setattr(stocksync, "setup_logging", lambda level: None)

    assert stocksync.main(["--report"]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["products"] == []
    assert out["uncatalogued"] == []
