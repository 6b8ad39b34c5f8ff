"""
Order Service - API models.

JSON on the wire is camelCase (productId, totalPrice); Python code uses
snake_case.
"""

from datetime import datetime
from typing import Any

from ..models import CamelModel


class Order(CamelModel):
    id: int
    product_id: str
    product_name: str | None
    quantity: int
    unit_price: float
    total_price: float
    status: str
    created_at: datetime


class ProductSnapshot(CamelModel):
    """What the product-owning service reports at lookup time."""

    id: str
    name: str
    price: float
    stock: int
    category: str = "general"


class CreateOrderRequest(CamelModel):
    # validated by OrderWorkflow.create_order
    product_id: Any = None
    quantity: Any = None
