from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from vaultshop.config import Settings
from vaultshop.errors import NotificationFailure
from vaultshop.fulfillment import Fulfillment
from vaultshop.infra import timings
from vaultshop.infra.sql import Database
from vaultshop.model.catalog import SqlCatalogStore
from vaultshop.model.inventory import InventoryRepository
from vaultshop.model.orders import OrderRecord, OrderRepository
from vaultshop.model.orm import create_schema
from vaultshop.notify import Notifier

ADMIN_TOKEN = "test-admin-token"


class RecordingNotifier(Notifier):
    """Keeps every message; can be told to fail customer deliveries."""

    def __init__(self) -> None:
        self.sent: List[Tuple[str, Dict[str, Any]]] = []
        self.operator: List[Tuple[str, Dict[str, Any]]] = []
        self.fail_customer = False

    async def send_fulfillment(self, to: str, data: Dict[str, Any]) -> str:
        if self.fail_customer:
            raise NotificationFailure("relay unreachable")
        self.sent.append((to, data))
        return f"msg_{len(self.sent)}"

    async def send_operator(self, kind: str, data: Dict[str, Any]) -> str:
        self.operator.append((kind, data))
        return f"op_{len(self.operator)}"

    def operator_kinds(self) -> List[str]:
        return [kind for kind, _ in self.operator]


@pytest.fixture(autouse=True)
def _clear_timings():
    timings.reset()
    yield
    timings.reset()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'vaultshop-test.db'}",
        order_lookup_retries=2,
        order_lookup_backoff_seconds=0.01,
        webhook_deadline_seconds=5.0,
        expiry_sweep_interval_seconds=0,
        stock_sync_interval_seconds=0,
        admin_token=ADMIN_TOKEN,
    )


@pytest_asyncio.fixture
async def database(settings):
    db = Database(settings.database_url, settings.db_gate_limit)
    await create_schema(db.engine)
    yield db
    await db.dispose()


@pytest.fixture
def catalog(database) -> SqlCatalogStore:
    return SqlCatalogStore(database=database)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def fulfillment(database, catalog, notifier, settings) -> Fulfillment:
    return Fulfillment(database, notifier, settings, catalog)


@pytest.fixture
def add_units(database):
    async def _add(product_id: str, n: int) -> int:
        payloads = [
            {"login": f"{product_id.lower()}-user{i}", "secret": f"pw-{i}"}
            for i in range(n)
        ]
        async with database.session() as db:
            return await InventoryRepository(db).add_units(
                product_id, payloads
            )
    return _add


@pytest.fixture
def make_order(database):
    async def _make(
        order_id: str,
        product_id: str = "P1",
        amount: int = 20000,
        customer: str = "buyer@example.com",
        created_at: Optional[float] = None,
    ) -> OrderRecord:
        async with database.session() as db:
            return await OrderRepository(db).create_order(
                order_id=order_id,
                customer=customer,
                product_id=product_id,
                amount=amount,
                created_at=created_at,
            )
    return _make


@pytest.fixture
def load_order(database):
    async def _load(order_id: str) -> Optional[OrderRecord]:
        async with database.session() as db:
            return await OrderRepository(db).find_by_order_id(order_id)
    return _load


@pytest.fixture
def available(database):
    async def _count(product_id: str) -> int:
        async with database.session() as db:
            return await InventoryRepository(db).count_available(product_id)
    return _count
