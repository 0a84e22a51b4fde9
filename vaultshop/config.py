import os
from dataclasses import dataclass
from typing import Optional


# ----------------------------
# Config & Constants
# ----------------------------
DEFAULT_DATABASE_URL = "sqlite:///./vaultshop.db"


def _opt(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    db_gate_limit: Optional[int] = None

    catalog_backend: str = "sql"  # 'sql' | 'redis'
    redis_url: str = "redis://127.0.0.1:6379"
    redis_max_conn: int = 64

    webhook_secret: Optional[str] = None
    webhook_signature_header: str = "x-webhook-signature"
    webhook_deadline_seconds: float = 10.0

    # bounded retry against order read-lag: sleeps 0.5, 1.0, 1.5
    order_lookup_retries: int = 3
    order_lookup_backoff_seconds: float = 0.5

    order_ttl_seconds: int = 15 * 60
    expiry_sweep_interval_seconds: float = 60.0
    stock_sync_interval_seconds: float = 300.0
    low_stock_threshold: int = 2

    notify_url: Optional[str] = None
    notify_timeout_seconds: float = 5.0
    admin_contact: str = "admin"
    admin_token: Optional[str] = None

    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8000


def load_settings() -> Settings:
    gate = _opt("DB_GATE_LIMIT")
    return Settings(
        database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
        db_gate_limit=int(gate) if gate else None,
        catalog_backend=os.getenv("CATALOG_BACKEND", "sql").lower(),
        redis_url=os.getenv("REDIS_URL", "redis://127.0.0.1:6379"),
        redis_max_conn=int(os.getenv("REDIS_MAX_CONN", "64")),
        webhook_secret=_opt("WEBHOOK_SECRET"),
        webhook_signature_header=os.getenv(
            "WEBHOOK_SIGNATURE_HEADER", "x-webhook-signature"
        ).lower(),
        webhook_deadline_seconds=float(
            os.getenv("WEBHOOK_DEADLINE_SECONDS", "10")
        ),
        order_lookup_retries=int(os.getenv("ORDER_LOOKUP_RETRIES", "3")),
        order_lookup_backoff_seconds=float(
            os.getenv("ORDER_LOOKUP_BACKOFF_SECONDS", "0.5")
        ),
        order_ttl_seconds=int(os.getenv("ORDER_TTL_SECONDS", "900")),
        expiry_sweep_interval_seconds=float(
            os.getenv("EXPIRY_SWEEP_INTERVAL_SECONDS", "60")
        ),
        stock_sync_interval_seconds=float(
            os.getenv("STOCK_SYNC_INTERVAL_SECONDS", "300")
        ),
        low_stock_threshold=int(os.getenv("LOW_STOCK_THRESHOLD", "2")),
        notify_url=_opt("NOTIFY_URL"),
        notify_timeout_seconds=float(
            os.getenv("NOTIFY_TIMEOUT_SECONDS", "5")
        ),
        admin_contact=os.getenv("ADMIN_CONTACT", "admin"),
        admin_token=_opt("ADMIN_TOKEN"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
    )
