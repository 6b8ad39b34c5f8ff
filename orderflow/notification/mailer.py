"""
Notification Service - mail sending.

Sending is a black box behind ``Mailer.send``; ``LoggingMailer`` only writes
the mail to the log.
"""

import logging
from typing import Protocol

from ..events import OrderCreatedEvent

logger = logging.getLogger(__name__)


class Mailer(Protocol):
    async def send(self, event: OrderCreatedEvent) -> None: ...


class LoggingMailer:
    async def send(self, event: OrderCreatedEvent) -> None:
        logger.info("Sending mail...")
        logger.info("Mail sent: notification for order #%d", event.order_id)
        logger.info("   product: %s, quantity: %d", event.product_id, event.quantity)
