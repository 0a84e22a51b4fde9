import os
from typing import Optional, Union
import redis.asyncio as redis

from ...infra.sql import Database
from ._types import CatalogEntry
from ._redis import CatalogStore as RedisCatalogStore
from ._sql import CatalogStore as SqlCatalogStore

BACKEND = os.getenv("CATALOG_BACKEND", "sql").lower()  # 'sql' | 'redis'

CatalogStore = Union[SqlCatalogStore, RedisCatalogStore]


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, backend: Optional[str] = None,
              database: Optional[Database] = None,
              r: Optional[redis.Redis] = None) -> CatalogStore:
    backend = (backend or BACKEND).lower()
    if backend == "redis":
        if r is None:
            raise RuntimeError("CatalogStore(redis) requires r=redis.Redis")
        return RedisCatalogStore(r=r)
    if backend == "sql":
        if database is None:
            raise RuntimeError("CatalogStore(sql) requires database=Database")
        return SqlCatalogStore(database=database)
    raise ValueError(f"unknown catalog backend: {backend!r}")


__all__ = [
    "CatalogEntry", "CatalogStore", "SqlCatalogStore", "RedisCatalogStore",
    "new_store", "BACKEND",
]
