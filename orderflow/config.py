"""
Settings shared by every service.

Each value comes from an environment variable; services pass their own
defaults (database name, service name) to ``Settings.from_env``.
"""

import os
import socket

from pydantic import BaseModel, Field

ENV_VARS = {
    "database_url": "DATABASE_URL",
    "redis_url": "REDIS_URL",
    "product_service_url": "PRODUCT_SERVICE_URL",
    "product_service_timeout": "PRODUCT_SERVICE_TIMEOUT",
    "exchange": "BROKER_EXCHANGE",
    "broker_retry_delay": "BROKER_RETRY_DELAY",
    "broker_max_retry_delay": "BROKER_MAX_RETRY_DELAY",
    "broker_connect_attempts": "BROKER_CONNECT_ATTEMPTS",
    "broker_max_deliveries": "BROKER_MAX_DELIVERIES",
    "broker_stream_maxlen": "BROKER_STREAM_MAXLEN",
    "broker_claim_idle": "BROKER_CLAIM_IDLE",
    "stock_queue": "STOCK_QUEUE",
    "notification_queue": "NOTIFICATION_QUEUE",
    "seed_products": "SEED_PRODUCTS",
    "log_level": "LOG_LEVEL",
    "instance_id": "INSTANCE_ID",
}


class Settings(BaseModel):
    service_name: str = "orderflow"
    instance_id: str = Field(default_factory=socket.gethostname)
    log_level: str = "INFO"

    database_url: str = "sqlite+aiosqlite:///./orderflow.db"

    redis_url: str = "redis://localhost:6379"
    exchange: str = "order_events"
    broker_retry_delay: float = Field(default=5.0, ge=0)
    broker_max_retry_delay: float = Field(default=60.0, ge=0)
    broker_connect_attempts: int = Field(default=0, ge=0)
    broker_max_deliveries: int = Field(default=5, ge=1)
    broker_stream_maxlen: int = Field(default=0, ge=0)
    broker_claim_idle: float = Field(default=30.0, gt=0)

    product_service_url: str = "http://localhost:6000"
    product_service_timeout: float = Field(default=5.0, gt=0)

    stock_queue: str = "product_stock_update"
    notification_queue: str = "mail_notification"
    seed_products: bool = True

    @classmethod
    def from_env(cls, **defaults) -> "Settings":
        """Build settings from os.environ, falling back to ``defaults``."""
        values = {
            field: os.environ[var] for field, var in ENV_VARS.items() if var in os.environ
        }
        return cls(**{**defaults, **values})
