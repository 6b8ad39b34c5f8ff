"""
Notification Service - FastAPI entry point

No command or query endpoints: the service only consumes order.created
from its own queue (mail_notification) in a background task.

Run with: uvicorn orderflow.notification.main:create_app --factory --port 8000
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from ..broker import Broker
from ..config import Settings
from ..observability import Counters, configure_logging
from ..web import health_payload
from .mailer import LoggingMailer, Mailer
from .subscriber import NotificationWorker, run_subscriber

DEFAULTS = {"service_name": "notification-service"}


def create_app(
    settings: Settings | None = None,
    *,
    broker: Broker | None = None,
    mailer: Mailer | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env(**DEFAULTS)
    configure_logging(settings.service_name, settings.instance_id, settings.log_level)

    counters = broker.counters if broker else Counters()
    broker = broker or Broker.from_settings(settings, counters=counters)
    worker = NotificationWorker(mailer or LoggingMailer(), counters)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        broker.start()
        run_subscriber(broker, worker, settings.notification_queue)
        yield
        await broker.close()

    app = FastAPI(title="Notification Service", lifespan=lifespan)

    @app.get("/")
    async def index():
        return {
            "service": settings.service_name,
            "instance": settings.instance_id,
            "description": "Listens to order.created events and sends notification mails",
            "queue": settings.notification_queue,
        }

    @app.get("/health")
    async def health():
        return health_payload(settings, broker, counters)

    return app
