"""
Order Workflow Coordinator

  ┌──────────────────────────────────────────────────────────────┐
  │ 1. validate (productId, quantity)                 InvalidRequest
  │ 2. SYNC  GET product-service /products/{id}       ProductNotFound
  │                                                   UpstreamUnavailable
  │ 3. requested quantity <= reported stock           InsufficientStock
  │ 4. persist order (total = unit price * quantity)  PersistenceError
  │ 5. ASYNC publish order.created                    logged, never raised
  └──────────────────────────────────────────────────────────────┘

Step 3 is a point-in-time read, not a reservation: concurrent orders can
oversubscribe stock. Step 5 runs only after step 4 committed, so a failed
write never produces an event. A failed publish leaves the order in place
without a stock decrement; that drift is counted in
order_events_dropped_total so it can be reconciled.
"""

import logging
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..broker import Broker, PublishResult
from ..errors import InsufficientStock, InvalidRequest, PersistenceError
from ..events import ORDER_CREATED, OrderCreatedEvent
from ..observability import Counters
from . import commands
from .models import Order
from .products import ProductClient

logger = logging.getLogger(__name__)


@dataclass
class OrderPlacement:
    order: Order
    publish: PublishResult
    communication: dict = field(default_factory=dict)

    @property
    def event_published(self) -> bool:
        return self.publish.ok

    def to_json(self) -> dict:
        return {
            **self.order.to_json(),
            "eventPublished": self.event_published,
            "communication": self.communication,
        }


def validate_order_request(product_id, quantity) -> tuple[str, int]:
    if not isinstance(product_id, str) or not product_id.strip():
        raise InvalidRequest("productId is required")
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InvalidRequest("quantity must be a positive integer", quantity=quantity)
    return product_id.strip(), quantity


class OrderWorkflow:
    def __init__(
        self,
        products: ProductClient,
        async_session_factory: sessionmaker,
        broker: Broker,
        counters: Counters,
    ) -> None:
        self.products = products
        self.async_session = async_session_factory
        self.broker = broker
        self.counters = counters

    async def create_order(self, product_id, quantity) -> OrderPlacement:
        product_id, quantity = validate_order_request(product_id, quantity)

        # ── Step 2: SYNC product lookup ─────────────
        product = await self.products.get_product(product_id)

        if quantity > product.stock:
            raise InsufficientStock(
                "Insufficient stock",
                productId=product_id,
                available=product.stock,
                requested=quantity,
            )

        # ── Step 4: persist ─────────────────────────
        try:
            async with self.async_session() as session:
                order = await commands.create_order(session, product, quantity)
        except (SQLAlchemyError, OSError) as e:
            logger.exception("Order write failed for product %s", product_id)
            raise PersistenceError("Order could not be saved") from e
        logger.info("Order saved: #%d (%s x%d)", order.id, order.product_name, order.quantity)

        # ── Step 5: ASYNC event, fire-and-forget ────
        result = await self._publish_order_created(order)

        return OrderPlacement(
            order=order,
            publish=result,
            communication={
                "sync": f"HTTP GET -> product-service /products/{product_id} (product lookup and stock check)",
                "async": f"{self.broker.exchange} -> {ORDER_CREATED} (stock decrement, notification)",
            },
        )

    async def _publish_order_created(self, order: Order) -> PublishResult:
        event = OrderCreatedEvent(
            order_id=order.id,
            product_id=order.product_id,
            quantity=order.quantity,
            timestamp=order.created_at,
        )
        try:
            result = await self.broker.publish(ORDER_CREATED, event.to_json())
        except Exception as e:
            logger.exception("Unexpected publish failure for order #%d", order.id)
            result = PublishResult("", error=f"{type(e).__name__}: {e}")

        if result.ok:
            self.counters.incr("order_events_published_total")
        else:
            self.counters.incr("order_events_dropped_total")
            logger.error(
                "BrokerUnavailable: %s for order #%d not published (%s); stock will not be decremented",
                ORDER_CREATED,
                order.id,
                result.error,
            )
        return result
