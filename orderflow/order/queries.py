"""
Order Service - query handlers (read side of the order ledger)
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Order
from .schema import orders


def _to_order(row) -> Order:
    return Order(
        id=row.id,
        product_id=row.product_id,
        product_name=row.product_name,
        quantity=row.quantity,
        unit_price=float(row.unit_price),
        total_price=float(row.total_price),
        status=row.status,
        created_at=row.created_at,
    )


async def get_order(session: AsyncSession, order_id: int) -> Order | None:
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    row = result.fetchone()
    if not row:
        return None
    return _to_order(row)


async def list_orders(session: AsyncSession) -> list[Order]:
    """All orders, newest first."""
    result = await session.execute(
        select(orders).order_by(orders.c.created_at.desc(), orders.c.id.desc())
    )
    return [_to_order(row) for row in result.fetchall()]
