"""
Product Service - command handlers (write side of the inventory ledger)

Stock changes in exactly two ways: a manual admin override, or the
decrement applied for a consumed order.created event.
"""

import logging
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import queries
from .schema import applied_effects, products

logger = logging.getLogger(__name__)

STOCK_DECREMENT = "stock_decrement"


async def create_product(
    session: AsyncSession,
    name: str,
    price: float,
    stock: int,
    category: str = "general",
    product_id: str | None = None,
) -> dict:
    now = datetime.now(timezone.utc)
    product_id = product_id or uuid4().hex
    await session.execute(
        insert(products).values(
            id=product_id,
            name=name,
            price=price,
            stock=stock,
            category=category,
            created_at=now,
            updated_at=now,
        )
    )
    await session.commit()
    logger.info("Product created: %s (%s)", name, product_id)
    return await queries.get_product(session, product_id)


async def set_stock(session: AsyncSession, product_id: str, stock: int) -> dict | None:
    """Manual stock override. Returns None when the product does not exist."""
    result = await session.execute(
        update(products)
        .where(products.c.id == product_id)
        .values(stock=stock, updated_at=datetime.now(timezone.utc))
        .returning(products.c.id)
    )
    if result.first() is None:
        await session.rollback()
        return None
    await session.commit()
    logger.info("Stock set manually: %s -> %d", product_id, stock)
    return await queries.get_product(session, product_id)


async def apply_stock_decrement(
    session: AsyncSession,
    order_id: int,
    product_id: str,
    quantity: int,
    event_id: str | None = None,
) -> dict:
    """
    Decrement stock for an order, at most once per order.

    The decrement and the applied_effects record commit together, so a
    redelivered event finds the record and changes nothing. When stock is
    lower than the quantity (concurrent orders passed the same stock check)
    stock is clamped to zero instead of going negative.

    Returns {"status": "applied" | "duplicate" | "product_not_found", ...}.
    """
    seen = await session.execute(
        select(applied_effects.c.id).where(
            applied_effects.c.order_id == order_id,
            applied_effects.c.effect == STOCK_DECREMENT,
        )
    )
    if seen.first() is not None:
        return {"status": "duplicate"}

    now = datetime.now(timezone.utc)
    result = await session.execute(
        update(products)
        .where(products.c.id == product_id, products.c.stock >= quantity)
        .values(stock=products.c.stock - quantity, updated_at=now)
        .returning(products.c.stock)
    )
    row = result.first()
    clamped = False
    if row is None:
        result = await session.execute(
            update(products)
            .where(products.c.id == product_id)
            .values(stock=0, updated_at=now)
            .returning(products.c.stock)
        )
        row = result.first()
        if row is None:
            await session.rollback()
            return {"status": "product_not_found"}
        clamped = True

    try:
        await session.execute(
            insert(applied_effects).values(
                order_id=order_id, effect=STOCK_DECREMENT, event_id=event_id, applied_at=now
            )
        )
        await session.commit()
    except IntegrityError:
        # a concurrent delivery of the same order won the race
        await session.rollback()
        return {"status": "duplicate"}

    return {"status": "applied", "stock": row.stock, "clamped": clamped}
