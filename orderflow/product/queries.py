"""
Product Service - query handlers (read side of the inventory ledger)
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import products


def _to_dict(row) -> dict:
    return {
        "id": row.id,
        "name": row.name,
        "price": float(row.price),
        "stock": row.stock,
        "category": row.category,
        "createdAt": row.created_at.isoformat() if row.created_at else None,
        "updatedAt": row.updated_at.isoformat() if row.updated_at else None,
    }


async def get_product(session: AsyncSession, product_id: str) -> dict | None:
    result = await session.execute(select(products).where(products.c.id == product_id))
    row = result.fetchone()
    if not row:
        return None
    return _to_dict(row)


async def list_products(session: AsyncSession) -> list[dict]:
    """All products, newest first."""
    result = await session.execute(
        select(products).order_by(products.c.created_at.desc(), products.c.id)
    )
    return [_to_dict(row) for row in result.fetchall()]
