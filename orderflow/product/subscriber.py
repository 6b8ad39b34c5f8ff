"""
Product Service - stock-decrement consumer

Consumes order.created from the product_stock_update queue and decrements
the product's stock.

  malformed payload   -> dead-lettered, never requeued
  unknown product     -> acknowledged and dropped (counted)
  already applied     -> acknowledged, stock untouched
  database failure    -> ProcessingError -> requeued until max deliveries
"""

import logging
from functools import partial

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..broker import Broker, Delivery, Disposition
from ..errors import ProcessingError
from ..events import ORDER_CREATED, OrderCreatedEvent
from ..observability import Counters
from . import commands

logger = logging.getLogger(__name__)


async def handle_delivery(
    delivery: Delivery,
    async_session_factory: sessionmaker,
    counters: Counters,
) -> Disposition:
    if delivery.event and delivery.event != ORDER_CREATED:
        logger.info("Ignoring %s on %s", delivery.event, delivery.queue)
        return Disposition.ACK

    try:
        event = OrderCreatedEvent.model_validate_json(delivery.body)
    except ValidationError as e:
        logger.error("Malformed %s payload %r: %s", ORDER_CREATED, delivery.body[:200], e)
        counters.incr("events_malformed_total", queue=delivery.queue)
        return Disposition.DEAD_LETTER

    logger.info(
        "Event received: %s -> order #%d, product %s, qty %d (attempt %d)",
        ORDER_CREATED,
        event.order_id,
        event.product_id,
        event.quantity,
        delivery.attempt,
    )

    try:
        async with async_session_factory() as session:
            result = await commands.apply_stock_decrement(
                session,
                event.order_id,
                event.product_id,
                event.quantity,
                event_id=delivery.event_id or None,
            )
    except (SQLAlchemyError, OSError) as e:
        raise ProcessingError(
            f"Stock update failed for order #{event.order_id}", orderId=event.order_id
        ) from e

    status = result["status"]
    if status == "applied":
        counters.incr("stock_decrements_total")
        if result["clamped"]:
            counters.incr("stock_clamped_total")
            logger.warning(
                "Stock anomaly: product %s oversubscribed by order #%d, clamped to 0",
                event.product_id,
                event.order_id,
            )
        else:
            logger.info("Stock updated: %s -> new stock %d", event.product_id, result["stock"])
    elif status == "duplicate":
        counters.incr("stock_duplicates_total")
        logger.info("Order #%d already applied, skipping", event.order_id)
    else:
        counters.incr("stock_missing_product_total")
        logger.warning(
            "Product %s not found for order #%d, dropping", event.product_id, event.order_id
        )
    return Disposition.ACK


def run_subscriber(
    broker: Broker,
    async_session_factory: sessionmaker,
    counters: Counters,
    queue: str,
):
    """Subscribe the stock worker to ``queue``; returns the consumer task."""
    handler = partial(handle_delivery, async_session_factory=async_session_factory, counters=counters)
    return broker.subscribe(queue, handler)
