from __future__ import annotations
from typing import Dict, List, Optional
import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ...errors import RepositoryUnavailable
from ...helpers import now_ts
from ._types import CatalogEntry


# ---- keys
def k_entry(product_id: str) -> str: return f"catalog:{product_id}"


INDEX = "catalog:index"

_UNAVAILABLE = (RedisConnectionError, RedisTimeoutError)


def _entry(product_id: str, h: Dict[str, str]) -> CatalogEntry:
    return CatalogEntry(
        product_id=product_id,
        name=h.get("name", ""),
        price=int(h.get("price", "0") or 0),
        description=h.get("description") or None,
        stock=int(h.get("stock", "0") or 0),
        updated_at=float(h.get("updated_at", "0") or 0),
    )


class CatalogStore:
    """
    One hash per product plus an index set. Expects a client created with
    decode_responses=True.
    """

    def __init__(self, *, r: redis.Redis) -> None:
        self.r = r

    async def list_entries(self) -> List[CatalogEntry]:
        try:
            ids = sorted(await self.r.smembers(INDEX))
            pipe = self.r.pipeline()
            for pid in ids:
                pipe.hgetall(k_entry(pid))
            rows = await pipe.execute()
        except _UNAVAILABLE as exc:
            raise RepositoryUnavailable(str(exc)) from exc
        return [_entry(pid, h) for pid, h in zip(ids, rows) if h]

    async def get_entry(self, product_id: str) -> Optional[CatalogEntry]:
        try:
            h = await self.r.hgetall(k_entry(product_id))
        except _UNAVAILABLE as exc:
            raise RepositoryUnavailable(str(exc)) from exc
        return _entry(product_id, h) if h else None

    async def upsert_entry(
        self,
        product_id: str,
        *,
        name: str,
        price: int,
        description: Optional[str] = None,
    ) -> CatalogEntry:
        try:
            pipe = self.r.pipeline(transaction=True)
            pipe.hset(k_entry(product_id), mapping={
                "name": name,
                "price": str(int(price)),
                "description": description or "",
                "updated_at": str(now_ts()),
            })
            # keep an existing cached stock
            pipe.hsetnx(k_entry(product_id), "stock", "0")
            pipe.sadd(INDEX, product_id)
            await pipe.execute()
            h = await self.r.hgetall(k_entry(product_id))
        except _UNAVAILABLE as exc:
            raise RepositoryUnavailable(str(exc)) from exc
        return _entry(product_id, h)

    async def set_stock(self, product_id: str, stock: int) -> None:
        try:
            if not await self.r.sismember(INDEX, product_id):
                return
            await self.r.hset(k_entry(product_id), mapping={
                "stock": str(int(stock)),
                "updated_at": str(now_ts()),
            })
        except _UNAVAILABLE as exc:
            raise RepositoryUnavailable(str(exc)) from exc
