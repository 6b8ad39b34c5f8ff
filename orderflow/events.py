"""
Event definitions.

Events are named in the past tense and are immutable once published.
On the wire the body is camelCase JSON: {"orderId", "productId", "quantity",
"timestamp"}.
"""

from datetime import datetime

from pydantic import ConfigDict, Field

from .models import CamelModel

ORDER_CREATED = "order.created"


class OrderCreatedEvent(CamelModel):
    """An order was persisted by the order-placing service."""

    model_config = ConfigDict(frozen=True)

    order_id: int
    product_id: str = Field(min_length=1)
    quantity: int = Field(gt=0)
    timestamp: datetime | None = None
