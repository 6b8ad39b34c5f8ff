"""
Product Service - seed catalogue, inserted only when the products table is empty.
"""

import logging

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from . import commands
from .schema import products

logger = logging.getLogger(__name__)

SEED_PRODUCTS = [
    {"product_id": "P1", "name": "Laptop", "price": 25000, "stock": 50, "category": "electronics"},
    {"product_id": "P2", "name": "Headphones", "price": 500, "stock": 200, "category": "electronics"},
    {"product_id": "P3", "name": "Keyboard", "price": 750, "stock": 100, "category": "electronics"},
    {"product_id": "P4", "name": "T-shirt", "price": 150, "stock": 300, "category": "clothing"},
    {"product_id": "P5", "name": "Book - Node.js", "price": 80, "stock": 150, "category": "books"},
]


async def seed_products(session: AsyncSession) -> int:
    count = (await session.execute(select(func.count()).select_from(products))).scalar_one()
    if count:
        return 0
    for item in SEED_PRODUCTS:
        await commands.create_product(session, **item)
    logger.info("Seeded %d products", len(SEED_PRODUCTS))
    return len(SEED_PRODUCTS)
