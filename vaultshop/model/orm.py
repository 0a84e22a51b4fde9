from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Float,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.ext.asyncio import AsyncEngine


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    customer = Column(String, nullable=False)  # email-like
    product_id = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)  # smallest currency unit
    payment_method = Column(String, nullable=True)

    # pending | completed | failed | cancelled | expired
    status = Column(String, nullable=False, default="pending")
    # set iff status == completed
    allocated_unit_id = Column(Integer, nullable=True)
    failure_reason = Column(String, nullable=True)

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
    completed_at = Column(Float, nullable=True)
    failed_at = Column(Float, nullable=True)
    last_seen_at = Column(Float, nullable=True)

    customer_notified = Column(Boolean, nullable=False, default=False)
    customer_notified_at = Column(Float, nullable=True)
    admin_notified = Column(Boolean, nullable=False, default=False)
    notify_attempts = Column(Integer, nullable=False, default=0)
    notify_error = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_orders_status_created", "status", "created_at"),
    )


class InventoryUnit(Base):
    __tablename__ = "inventory_units"
    id = Column(Integer, primary_key=True, autoincrement=True)
    product_id = Column(String, nullable=False)
    # opaque credential bundle (login / secret / extra fields)
    payload = Column(JSON, nullable=False)
    # available | sold
    status = Column(String, nullable=False, default="available")
    # at most one unit per order
    order_id = Column(String, nullable=True, unique=True)
    customer = Column(String, nullable=True)
    claimed_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("ix_inventory_product_status", "product_id", "status"),
    )


class CatalogEntry(Base):
    __tablename__ = "catalog_entries"
    product_id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    price = Column(Integer, nullable=False)
    description = Column(Text, nullable=True)
    # cached count of available units, written by stock sync only
    stock = Column(Integer, nullable=False, default=0)
    updated_at = Column(Float, nullable=False)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
