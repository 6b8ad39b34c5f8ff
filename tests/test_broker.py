"""Tests for the Redis Streams broker: fan-out, ack, requeue, dead-letter, recovery."""

import asyncio
import time

import pytest
from fakeredis.aioredis import FakeRedis
from opentelemetry import trace
from opentelemetry.trace import NonRecordingSpan, SpanContext, TraceFlags
from redis.exceptions import ConnectionError as RedisConnectionError

from orderflow.broker import Broker, Delivery, Disposition
from orderflow.errors import BrokerUnavailable


def recording_handler(disposition=Disposition.ACK):
    seen: list[Delivery] = []

    async def handler(delivery: Delivery) -> Disposition:
        seen.append(delivery)
        return disposition

    return handler, seen


async def test_publish_is_acknowledged_by_consumer(broker, redis_client, counters):
    await broker.declare_queue("stock")
    result = await broker.publish("order.created", {"orderId": 1, "productId": "P1", "quantity": 2})
    assert result.ok
    assert result.message_id

    handler, seen = recording_handler()
    assert await broker.poll("stock", handler) == 1

    assert len(seen) == 1
    assert seen[0].event == "order.created"
    assert seen[0].event_id == result.event_id
    assert seen[0].attempt == 1
    summary = await redis_client.xpending(broker.exchange, "stock")
    assert summary["pending"] == 0
    assert counters.get("events_acked_total", queue="stock") == 1


async def test_every_bound_queue_receives_every_message(broker):
    await broker.declare_queue("stock")
    await broker.declare_queue("mail")
    await broker.publish("order.created", {"orderId": 1, "productId": "P1", "quantity": 1})

    stock_handler, stock_seen = recording_handler()
    mail_handler, mail_seen = recording_handler()
    await broker.poll("stock", stock_handler)
    await broker.poll("mail", mail_handler)

    assert [d.event_id for d in stock_seen] == [d.event_id for d in mail_seen]
    assert len(stock_seen) == 1


async def test_queue_only_sees_messages_published_after_binding(broker):
    await broker.publish("order.created", {"orderId": 1, "productId": "P1", "quantity": 1})
    await broker.declare_queue("late")

    handler, seen = recording_handler()
    assert await broker.poll("late", handler) == 0
    assert seen == []


async def test_declare_queue_twice_is_harmless(broker):
    await broker.declare_queue("stock")
    await broker.declare_queue("stock")


async def test_publish_without_connection_returns_failed_result(make_broker):
    broker = make_broker()
    result = await broker.publish("order.created", {"orderId": 1})
    assert not result.ok
    assert "not connected" in result.error
    assert result.message_id is None


async def test_failing_handler_is_requeued_then_dead_lettered(broker, redis_client, counters):
    await broker.declare_queue("stock")
    await broker.publish("order.created", {"orderId": 7, "productId": "P1", "quantity": 1})
    attempts = []

    async def handler(delivery: Delivery) -> Disposition:
        attempts.append(delivery.attempt)
        raise RuntimeError("database down")

    for _ in range(5):
        await broker.poll("stock", handler)

    assert attempts == [1, 2, 3]
    dead = await redis_client.xrange(broker.dead_letter_stream("stock"))
    assert len(dead) == 1
    _, fields = dead[0]
    assert fields["queue"] == "stock"
    assert "max deliveries" in fields["reason"]
    assert "RuntimeError" in fields["reason"]
    assert counters.get("events_requeued_total", queue="stock") == 2
    assert counters.get("events_dead_lettered_total", queue="stock") == 1


async def test_dead_letter_disposition_skips_retries(broker, redis_client):
    await broker.declare_queue("stock")
    await broker.publish("order.created", {"bad": True})

    handler, seen = recording_handler(Disposition.DEAD_LETTER)
    await broker.poll("stock", handler)
    await broker.poll("stock", handler)

    assert len(seen) == 1
    assert await redis_client.xlen(broker.dead_letter_stream("stock")) == 1
    assert await redis_client.xlen(broker.retry_stream("stock")) == 0


async def test_pending_entries_are_recovered_after_a_crash(broker, redis_client):
    await broker.declare_queue("stock")
    await broker.publish("order.created", {"orderId": 3, "productId": "P1", "quantity": 1})

    # delivered to this consumer, never acknowledged
    await redis_client.xreadgroup("stock", "test-1", {broker.exchange: ">"}, count=1)

    handler, seen = recording_handler()
    assert await broker.poll("stock", handler) == 0
    assert await broker.poll("stock", handler, pending=True) == 1
    assert len(seen) == 1
    summary = await redis_client.xpending(broker.exchange, "stock")
    assert summary["pending"] == 0


async def test_connect_gives_up_after_configured_attempts(offline_broker):
    offline_broker.connect_attempts = 2
    with pytest.raises(BrokerUnavailable):
        await offline_broker.connect()
    assert not offline_broker.connected


async def test_close_releases_the_connection(make_broker):
    broker = make_broker()
    await broker.connect()
    assert broker.connected
    await broker.close()
    assert not broker.connected


async def test_requeued_entry_waits_for_its_backoff(make_broker, redis_client):
    broker = make_broker(retry_delay=0.2)
    await broker.connect()
    try:
        await broker.declare_queue("stock")
        await broker.publish("order.created", {"orderId": 1, "productId": "P1", "quantity": 1})
        attempts = []

        async def handler(delivery: Delivery) -> Disposition:
            attempts.append(delivery.attempt)
            if delivery.attempt == 1:
                raise RuntimeError("database down")
            return Disposition.ACK

        await broker.poll("stock", handler)
        (_, fields), = await redis_client.xrange(broker.retry_stream("stock"))
        assert float(fields["not_before"]) > time.time()

        assert await broker.poll("stock", handler) == 0
        assert attempts == [1]

        await asyncio.sleep(0.25)
        assert await broker.poll("stock", handler) == 1
        assert attempts == [1, 2]
    finally:
        await broker.close()


def test_backoff_doubles_up_to_the_cap(make_broker):
    broker = make_broker(retry_delay=1.0, max_retry_delay=5.0)
    assert [broker.retry_backoff(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


async def test_short_outage_is_survived_by_backoff(make_broker, redis_client, counters):
    broker = make_broker(retry_delay=0.1, max_deliveries=5)
    await broker.connect()
    await broker.declare_queue("stock")
    loop = asyncio.get_running_loop()
    outage_ends = loop.time() + 0.25
    attempted_at = []

    async def handler(delivery: Delivery) -> Disposition:
        attempted_at.append(loop.time())
        if loop.time() < outage_ends:
            raise ConnectionError("database restarting")
        return Disposition.ACK

    broker.subscribe("stock", handler)
    try:
        await broker.publish("order.created", {"orderId": 1, "productId": "P1", "quantity": 1})
        for _ in range(300):
            if counters.get("events_acked_total", queue="stock"):
                break
            await asyncio.sleep(0.01)
    finally:
        await broker.close()

    assert counters.get("events_acked_total", queue="stock") == 1
    assert counters.get("events_dead_lettered_total", queue="stock") == 0
    assert all(b - a >= 0.1 for a, b in zip(attempted_at, attempted_at[1:]))
    assert await redis_client.xlen(broker.dead_letter_stream("stock")) == 0


async def test_entries_left_by_a_dead_consumer_are_reclaimed(broker, make_broker, redis_client):
    await broker.declare_queue("stock")
    await broker.publish("order.created", {"orderId": 5, "productId": "P1", "quantity": 1})
    # a replica with another host name read it and died
    await redis_client.xreadgroup("stock", "old-host", {broker.exchange: ">"}, count=1)

    successor = make_broker(instance_id="new-host", claim_idle=0.05)
    await successor.connect()
    try:
        handler, seen = recording_handler()
        assert await successor.reclaim("stock", handler) == 0

        await asyncio.sleep(0.06)
        assert await successor.reclaim("stock", handler) == 1
    finally:
        await successor.close()

    assert [d.event for d in seen] == ["order.created"]
    summary = await redis_client.xpending(broker.exchange, "stock")
    assert summary["pending"] == 0


async def test_consumer_reclaims_while_serving(broker, make_broker, redis_client):
    await broker.declare_queue("stock")
    await broker.publish("order.created", {"orderId": 6, "productId": "P1", "quantity": 1})
    await redis_client.xreadgroup("stock", "old-host", {broker.exchange: ">"}, count=1)

    successor = make_broker(instance_id="new-host", claim_idle=0.05)
    await successor.connect()
    handler, seen = recording_handler()
    successor.subscribe("stock", handler)
    try:
        for _ in range(200):
            if seen:
                break
            await asyncio.sleep(0.01)
    finally:
        await successor.close()

    assert len(seen) == 1
    summary = await redis_client.xpending(broker.exchange, "stock")
    assert summary["pending"] == 0


async def test_settled_entries_do_not_pile_up(broker, redis_client):
    await broker.declare_queue("stock")
    failed = set()

    async def fails_once(delivery: Delivery) -> Disposition:
        if delivery.event_id not in failed:
            failed.add(delivery.event_id)
            raise RuntimeError("first try fails")
        return Disposition.ACK

    for order_id in range(50):
        await broker.publish("order.created", {"orderId": order_id, "productId": "P1", "quantity": 1})
    for _ in range(5):
        await broker.poll("stock", fails_once, count=100)

    assert broker.counters.get("events_acked_total", queue="stock") == 50
    assert await redis_client.xlen(broker.retry_stream("stock")) == 0
    assert await broker.trim() == 50
    assert await redis_client.xlen(broker.exchange) == 0


async def test_trim_keeps_what_a_slower_queue_still_needs(broker, redis_client):
    await broker.declare_queue("stock")
    await broker.declare_queue("mail")
    for order_id in range(3):
        await broker.publish("order.created", {"orderId": order_id, "productId": "P1", "quantity": 1})

    handler, _ = recording_handler()
    await broker.poll("stock", handler, count=10)
    assert await broker.trim() == 0
    assert await redis_client.xlen(broker.exchange) == 3

    # delivered to mail but not yet acknowledged
    await redis_client.xreadgroup("mail", "test-1", {broker.exchange: ">"}, count=2)
    assert await broker.trim() == 0

    await broker.poll("mail", handler, pending=True, count=10)
    assert await broker.trim() == 2
    await broker.poll("mail", handler, count=10)
    assert await broker.trim() == 1
    assert await redis_client.xlen(broker.exchange) == 0


async def test_connect_keeps_retrying_until_the_broker_is_up(redis_server, counters):
    attempts = []

    def flaky_factory(url, **kwargs):
        attempts.append(url)
        if len(attempts) <= 3:
            return UnreachableClient()
        return FakeRedis(server=redis_server, **kwargs)

    broker = Broker(
        "redis://flaky:6379",
        retry_delay=0.01,
        connect_attempts=0,
        counters=counters,
        client_factory=flaky_factory,
    )
    await broker.connect()
    try:
        assert broker.connected
        assert len(attempts) == 4
    finally:
        await broker.close()


async def test_supervisor_reconnects_after_a_lost_connection(make_broker, redis_server):
    broker = make_broker(retry_delay=0.01)
    broker.start()
    try:
        await wait_until(lambda: broker.connected)

        redis_server.connected = False
        result = await broker.publish("order.created", {"orderId": 1})
        assert not result.ok
        assert "connection lost" in result.error
        await asyncio.sleep(0.05)
        assert not broker.connected

        redis_server.connected = True
        await wait_until(lambda: broker.connected)
        assert (await broker.publish("order.created", {"orderId": 2})).ok
    finally:
        await broker.close()


async def test_trace_context_travels_with_the_event(broker, redis_client):
    await broker.declare_queue("mail")
    parent = NonRecordingSpan(
        SpanContext(
            trace_id=0x4BF92F3577B34DA6A3CE929D0E0E4736,
            span_id=0x00F067AA0BA902B7,
            is_remote=False,
            trace_flags=TraceFlags(TraceFlags.SAMPLED),
        )
    )
    with trace.use_span(parent):
        await broker.publish("order.created", {"orderId": 1, "productId": "P1", "quantity": 1})

    (_, fields), = await redis_client.xrange(broker.exchange)
    assert fields["traceparent"].startswith("00-4bf92f3577b34da6a3ce929d0e0e4736-")

    trace_ids = []

    async def handler(delivery: Delivery) -> Disposition:
        trace_ids.append(trace.get_current_span().get_span_context().trace_id)
        return Disposition.ACK

    await broker.poll("mail", handler)
    assert trace_ids == [0x4BF92F3577B34DA6A3CE929D0E0E4736]


class UnreachableClient:
    async def ping(self):
        raise RedisConnectionError("Connection refused")

    async def aclose(self):
        pass


async def wait_until(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)
