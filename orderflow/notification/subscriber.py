"""
Notification Service - order.created consumer

Same redelivery policy as the stock worker: malformed payloads are
dead-lettered, a failing mailer is requeued until max deliveries.

Already-notified orders are remembered in memory (bounded), so a
redelivery right after a successful send does not mail twice. After a
restart that memory is gone; notifications are at-least-once.
"""

import logging
from collections import OrderedDict

from pydantic import ValidationError

from ..broker import Broker, Delivery, Disposition
from ..errors import ProcessingError
from ..events import ORDER_CREATED, OrderCreatedEvent
from ..observability import Counters
from .mailer import Mailer

logger = logging.getLogger(__name__)

NOTIFY = "notify"


class SentLog:
    """Bounded record of (order_id, effect) pairs already handled."""

    def __init__(self, capacity: int = 10_000) -> None:
        self.capacity = capacity
        self._seen: OrderedDict[tuple[int, str], None] = OrderedDict()

    def __contains__(self, key: tuple[int, str]) -> bool:
        return key in self._seen

    def add(self, key: tuple[int, str]) -> None:
        self._seen[key] = None
        self._seen.move_to_end(key)
        while len(self._seen) > self.capacity:
            self._seen.popitem(last=False)


class NotificationWorker:
    def __init__(self, mailer: Mailer, counters: Counters, sent: SentLog | None = None) -> None:
        self.mailer = mailer
        self.counters = counters
        self.sent = sent if sent is not None else SentLog()

    async def __call__(self, delivery: Delivery) -> Disposition:
        if delivery.event and delivery.event != ORDER_CREATED:
            return Disposition.ACK

        try:
            event = OrderCreatedEvent.model_validate_json(delivery.body)
        except ValidationError as e:
            logger.error("Malformed %s payload %r: %s", ORDER_CREATED, delivery.body[:200], e)
            self.counters.incr("events_malformed_total", queue=delivery.queue)
            return Disposition.DEAD_LETTER

        logger.info(
            "Event received: %s -> order #%d, product %s, qty %d",
            ORDER_CREATED,
            event.order_id,
            event.product_id,
            event.quantity,
        )

        key = (event.order_id, NOTIFY)
        if key in self.sent:
            self.counters.incr("mails_duplicate_total")
            logger.info("Order #%d already notified, skipping", event.order_id)
            return Disposition.ACK

        try:
            await self.mailer.send(event)
        except Exception as e:
            raise ProcessingError(
                f"Mail for order #{event.order_id} failed", orderId=event.order_id
            ) from e

        self.sent.add(key)
        self.counters.incr("mails_sent_total", event=ORDER_CREATED)
        return Disposition.ACK


def run_subscriber(broker: Broker, worker: NotificationWorker, queue: str):
    """Subscribe the notification worker to ``queue``; returns the consumer task."""
    return broker.subscribe(queue, worker)
