"""
Order Service - Order Ledger tables.

The order ledger is the single source of truth for order history. Rows are
created once and never mutated here; total_price is a snapshot taken at
creation time.
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
)

metadata = MetaData()

ORDER_STATUS_CREATED = "created"

orders = Table(
    "orders",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("product_id", String(64), nullable=False),
    Column("product_name", String(255)),
    Column("quantity", Integer, CheckConstraint("quantity > 0"), nullable=False),
    Column("unit_price", Numeric(12, 2, asdecimal=False)),
    Column("total_price", Numeric(12, 2, asdecimal=False)),
    Column("status", String(20), nullable=False, default=ORDER_STATUS_CREATED),
    Column("created_at", DateTime(timezone=True), nullable=False),
)
