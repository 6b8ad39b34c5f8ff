"""
Product Service - Inventory Ledger tables.

products.stock never goes below zero. applied_effects records which
(order_id, effect) pairs have already been applied so that a redelivered
order.created event is not applied twice.
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
)

metadata = MetaData()

products = Table(
    "products",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("price", Numeric(12, 2, asdecimal=False), nullable=False),
    Column("stock", Integer, CheckConstraint("stock >= 0"), nullable=False, default=0),
    Column("category", String(64), nullable=False, default="general"),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

applied_effects = Table(
    "applied_effects",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", Integer, nullable=False),
    Column("effect", String(64), nullable=False),
    Column("event_id", String(64)),
    Column("applied_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("order_id", "effect", name="uq_applied_effects_order_effect"),
)
