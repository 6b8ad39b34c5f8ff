import json

import httpx
import pytest
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis
from redis.exceptions import ConnectionError as RedisConnectionError

from orderflow.broker import Broker
from orderflow.db import create_session_factory, init_db
from orderflow.observability import Counters
from orderflow.order import schema as order_schema
from orderflow.product import schema as product_schema

EXCHANGE = "order_events"


class UnreachableRedis:
    """Client whose connection is always refused."""

    async def ping(self):
        raise RedisConnectionError("Connection refused")

    async def aclose(self):
        pass


@pytest.fixture()
def redis_server():
    return FakeServer()


@pytest.fixture()
def counters():
    return Counters()


@pytest.fixture()
def make_broker(redis_server, counters):
    def factory(**kwargs) -> Broker:
        options = {
            "retry_delay": 0.0,
            "max_deliveries": 3,
            "instance_id": "test-1",
            "idle_delay": 0.01,
            "block_ms": 10,
            "counters": counters,
            "client_factory": lambda url, **kw: FakeRedis(server=redis_server, **kw),
        }
        options.update(kwargs)
        return Broker("redis://fake:6379", EXCHANGE, **options)

    return factory


@pytest.fixture()
async def broker(make_broker):
    b = make_broker()
    await b.connect()
    yield b
    await b.close()


@pytest.fixture()
def offline_broker(counters):
    """A broker that never manages to connect."""
    return Broker(
        "redis://unreachable:6379",
        EXCHANGE,
        retry_delay=0.01,
        connect_attempts=1,
        instance_id="test-1",
        counters=counters,
        client_factory=lambda url, **kw: UnreachableRedis(),
    )


@pytest.fixture()
async def redis_client(redis_server):
    client = FakeRedis(server=redis_server, decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture()
async def order_db(tmp_path):
    engine, async_session = create_session_factory(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await init_db(engine, order_schema.metadata)
    yield async_session
    await engine.dispose()


@pytest.fixture()
async def product_db(tmp_path):
    engine, async_session = create_session_factory(f"sqlite+aiosqlite:///{tmp_path / 'products.db'}")
    await init_db(engine, product_schema.metadata)
    yield async_session
    await engine.dispose()


@pytest.fixture()
def catalogue():
    """Products the fake product-owning service answers with, keyed by id."""
    return {
        "P1": {"id": "P1", "name": "Laptop", "price": 25000, "stock": 50, "category": "electronics"},
        "P9": {"id": "P9", "name": "Sold out", "price": 10, "stock": 0, "category": "general"},
    }


@pytest.fixture()
def product_calls():
    return []


@pytest.fixture()
def product_transport(catalogue, product_calls):
    def handler(request: httpx.Request) -> httpx.Response:
        product_calls.append(request.url.path)
        product_id = request.url.path.rsplit("/", 1)[-1]
        if product_id not in catalogue:
            return httpx.Response(404, json={"detail": "Product not found"})
        return httpx.Response(200, json=catalogue[product_id])

    return httpx.MockTransport(handler)


@pytest.fixture()
def order_created_fields():
    def build(order_id=1, product_id="P1", quantity=2, **overrides) -> dict:
        body = {"orderId": order_id, "productId": product_id, "quantity": quantity}
        fields = {
            "event": "order.created",
            "event_id": f"evt-{order_id}",
            "attempt": 1,
            "body": json.dumps(body),
        }
        fields.update(overrides)
        return fields

    return build
