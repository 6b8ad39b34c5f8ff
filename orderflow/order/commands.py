"""
Order Service - command handlers (write side of the order ledger)
"""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Order, ProductSnapshot
from .schema import ORDER_STATUS_CREATED, orders


async def create_order(session: AsyncSession, product: ProductSnapshot, quantity: int) -> Order:
    """
    Record a new order.

    total_price = unit_price * quantity is computed once, here, from the
    product snapshot; later price changes never touch it.
    """
    now = datetime.now(timezone.utc)
    unit_price = Decimal(str(product.price))
    total_price = unit_price * quantity

    result = await session.execute(
        insert(orders)
        .values(
            product_id=product.id,
            product_name=product.name,
            quantity=quantity,
            unit_price=float(unit_price),
            total_price=float(total_price),
            status=ORDER_STATUS_CREATED,
            created_at=now,
        )
        .returning(orders.c.id)
    )
    order_id = result.scalar_one()
    await session.commit()

    return Order(
        id=order_id,
        product_id=product.id,
        product_name=product.name,
        quantity=quantity,
        unit_price=float(unit_price),
        total_price=float(total_price),
        status=ORDER_STATUS_CREATED,
        created_at=now,
    )
