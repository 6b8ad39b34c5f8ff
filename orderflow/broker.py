"""
Broker - fan-out publish and acknowledged consumption on Redis Streams.

Plain Redis Pub/Sub is fire-and-forget: a subscriber that is down loses the
message. Streams with consumer groups give the queue semantics consumers need:

  exchange  order_events                 one stream, every publish appended once
  queue     consumer group on the stream  every group sees every entry
  ack       XACK                          entry leaves the group's pending list
  requeue   order_events.<queue>.retry    same group, attempt + 1, due after a backoff
  dead      order_events.<queue>.dlq      entry parked with the failure reason

┌──────────────┐  XADD   ┌──────────────┐  XREADGROUP  ┌──────────────────────┐
│ order-service │ ──────▶ │ order_events │ ───────────▶ │ product_stock_update │
└──────────────┘          │   (stream)   │ ───────────▶ │ mail_notification    │
                          └──────────────┘              └──────────────────────┘

Retry backoff: a requeued entry carries ``not_before``
(retry_delay * 2 ** (attempt - 1), capped at max_retry_delay). Entries read
before they are due stay unacknowledged in the reading consumer's pending
list and are dispatched by a later poll once due.

Housekeeping, every ``claim_idle`` seconds while consuming:

  reclaim   XAUTOCLAIM    entries left pending by a dead consumer (any name)
  trim      XTRIM MINID   exchange entries every queue has acknowledged

Retry entries are deleted when they are settled. A queue whose consumer is
down holds the trim floor, so the exchange grows until it catches up;
``stream_maxlen`` is the hard cap on top of that.

A Broker instance is an owned handle: it is passed to the coordinator and to
each worker, and its supervisor task reconnects after a lost connection.
"""

import asyncio
import enum
import json
import logging
import socket
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable
from uuid import uuid4

import redis.asyncio as aioredis
from opentelemetry import propagate, trace
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .config import Settings
from .errors import BrokerUnavailable
from .observability import Counters

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

CONNECTION_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError)

SCAN_BATCH = 100


class Disposition(enum.Enum):
    """What a handler wants done with a delivery."""

    ACK = "ack"
    REQUEUE = "requeue"
    DEAD_LETTER = "dead_letter"


@dataclass(frozen=True)
class PublishResult:
    event_id: str
    message_id: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class Delivery:
    queue: str
    stream: str
    message_id: str
    event: str
    event_id: str
    attempt: int
    body: str
    fields: dict
    not_before: float = 0.0

    @classmethod
    def from_entry(cls, queue: str, stream: str, message_id: str, fields: dict) -> "Delivery":
        return cls(
            queue=queue,
            stream=stream,
            message_id=message_id,
            event=fields.get("event", ""),
            event_id=fields.get("event_id", ""),
            attempt=_to_number(fields.get("attempt"), int, 1),
            body=fields.get("body", ""),
            fields=dict(fields),
            not_before=_to_number(fields.get("not_before"), float, 0.0),
        )

    def due(self, now: float) -> bool:
        return self.not_before <= now


def _to_number(value, kind, default):
    try:
        return kind(value)
    except (TypeError, ValueError):
        return default


def _id_key(message_id: str) -> tuple[int, int]:
    ms, _, seq = message_id.partition("-")
    return int(ms), int(seq or 0)


def _next_id(message_id: str) -> str:
    ms, seq = _id_key(message_id)
    return f"{ms}-{seq + 1}"


Handler = Callable[[Delivery], Awaitable[Disposition]]


class Broker:
    def __init__(
        self,
        redis_url: str,
        exchange: str = "order_events",
        *,
        retry_delay: float = 5.0,
        max_retry_delay: float = 60.0,
        connect_attempts: int = 0,
        max_deliveries: int = 5,
        stream_maxlen: int = 0,
        claim_idle: float = 30.0,
        instance_id: str | None = None,
        block_ms: int = 1000,
        idle_delay: float = 0.1,
        client_factory: Callable[..., aioredis.Redis] = aioredis.from_url,
        counters: Counters | None = None,
    ) -> None:
        self.redis_url = redis_url
        self.exchange = exchange
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay
        self.connect_attempts = connect_attempts
        self.max_deliveries = max_deliveries
        self.stream_maxlen = stream_maxlen or None
        self.claim_idle = claim_idle
        self.instance_id = instance_id or socket.gethostname()
        self.block_ms = block_ms
        self.idle_delay = idle_delay
        self._client_factory = client_factory
        self.counters = counters if counters is not None else Counters()

        self._redis: aioredis.Redis | None = None
        self._ready = asyncio.Event()
        self._lost = asyncio.Event()
        self._closing = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "Broker":
        return cls(
            settings.redis_url,
            settings.exchange,
            retry_delay=settings.broker_retry_delay,
            max_retry_delay=settings.broker_max_retry_delay,
            connect_attempts=settings.broker_connect_attempts,
            max_deliveries=settings.broker_max_deliveries,
            stream_maxlen=settings.broker_stream_maxlen,
            claim_idle=settings.broker_claim_idle,
            instance_id=settings.instance_id,
            **kwargs,
        )

    @property
    def connected(self) -> bool:
        return self._ready.is_set() and self._redis is not None

    def retry_stream(self, queue: str) -> str:
        return f"{self.exchange}.{queue}.retry"

    def dead_letter_stream(self, queue: str) -> str:
        return f"{self.exchange}.{queue}.dlq"

    def retry_backoff(self, attempt: int) -> float:
        """Seconds to wait before redelivering after failed delivery ``attempt``."""
        return min(self.retry_delay * 2 ** (attempt - 1), self.max_retry_delay)

    # ── Connection lifecycle ─────────────────────────

    async def connect(self) -> None:
        """
        Connect, retrying with a fixed delay.

        Runs forever unless ``connect_attempts`` caps it, in which case
        BrokerUnavailable is raised after the last failed attempt.
        """
        attempt = 0
        while not self._closing.is_set():
            attempt += 1
            client = self._client_factory(self.redis_url, decode_responses=True)
            try:
                await client.ping()
            except CONNECTION_ERRORS as e:
                await _close_quietly(client)
                logger.error("Broker connection failed (attempt %d): %s", attempt, e)
                if self.connect_attempts and attempt >= self.connect_attempts:
                    raise BrokerUnavailable(
                        f"Broker unreachable after {attempt} attempts", url=self.redis_url
                    ) from e
                logger.info("Retrying broker connection in %.1fs", self.retry_delay)
                await self._sleep(self.retry_delay)
                continue

            self._redis = client
            self._lost.clear()
            self._ready.set()
            logger.info("Broker connected: %s (exchange=%s)", self.redis_url, self.exchange)
            return

    def start(self) -> asyncio.Task:
        """Start the supervisor task that keeps the connection alive."""
        task = asyncio.create_task(self._supervise(), name=f"broker-supervisor-{self.exchange}")
        self._tasks.append(task)
        return task

    async def _supervise(self) -> None:
        while not self._closing.is_set():
            if not self.connected:
                try:
                    await self.connect()
                except BrokerUnavailable:
                    logger.exception("Broker supervisor giving up")
                    return
            await self._lost.wait()
            if self._closing.is_set():
                return
            logger.warning("Broker connection lost, reconnecting")
            self._ready.clear()
            await self._drop_client()

    def _mark_lost(self) -> None:
        self._ready.clear()
        self._lost.set()

    async def _drop_client(self) -> None:
        client, self._redis = self._redis, None
        if client is not None:
            await _close_quietly(client)

    async def close(self) -> None:
        self._closing.set()
        self._lost.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self._ready.clear()
        await self._drop_client()

    async def _sleep(self, delay: float) -> None:
        """Sleep, waking early when the broker is closing."""
        try:
            await asyncio.wait_for(self._closing.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _wait_ready(self) -> bool:
        while not self._closing.is_set():
            if self.connected:
                return True
            await self._sleep(self.idle_delay)
        return False

    # ── Producer side ────────────────────────────────

    async def publish(self, event: str, payload: dict) -> PublishResult:
        """
        Append an event to the exchange stream.

        Never raises for broker trouble: the caller gets a PublishResult whose
        ``error`` says why the event was not handed to the broker. The active
        trace context travels in the ``traceparent`` field.
        """
        event_id = uuid4().hex
        if not self.connected:
            return PublishResult(event_id, error="broker channel not connected")

        with tracer.start_as_current_span(
            f"{self.exchange} publish",
            kind=trace.SpanKind.PRODUCER,
            attributes={"messaging.destination.name": self.exchange, "messaging.message.id": event_id},
        ):
            fields = {
                "event": event,
                "event_id": event_id,
                "attempt": 1,
                "published_at": datetime.now(timezone.utc).isoformat(),
                "body": json.dumps(payload, default=str),
            }
            propagate.inject(fields)
            try:
                message_id = await self._redis.xadd(
                    self.exchange, fields, maxlen=self.stream_maxlen, approximate=True
                )
            except CONNECTION_ERRORS as e:
                self._mark_lost()
                return PublishResult(event_id, error=f"broker connection lost: {e}")
            except RedisError as e:
                return PublishResult(event_id, error=str(e))

        logger.info("Published %s event_id=%s -> %s", event, event_id, self.exchange)
        return PublishResult(event_id, message_id=message_id)

    # ── Consumer side ────────────────────────────────

    async def declare_queue(self, queue: str) -> None:
        """
        Bind ``queue`` to the exchange.

        The group starts at "$": like a freshly bound queue it only sees
        messages published after the binding. Re-declaring is a no-op.
        """
        for stream in (self.exchange, self.retry_stream(queue)):
            try:
                await self._redis.xgroup_create(stream, queue, id="$", mkstream=True)
                logger.info("Declared queue %s on %s", queue, stream)
            except ResponseError as e:
                if "BUSYGROUP" not in str(e):
                    raise

    async def poll(
        self,
        queue: str,
        handler: Handler,
        *,
        consumer: str | None = None,
        pending: bool = False,
        count: int = 1,
        block: int | None = None,
    ) -> int:
        """
        Read once from the queue and dispatch what arrived and is due.

        ``pending=True`` re-reads this consumer's delivered-but-unacknowledged
        entries (a crash mid-processing leaves them there) instead of new ones.
        Either way, retries parked in this consumer's pending list that have
        become due are dispatched too. Returns the number of entries handled.
        """
        consumer = consumer or self.instance_id
        offset = "0" if pending else ">"
        streams = {self.exchange: offset, self.retry_stream(queue): offset}
        response = await self._redis.xreadgroup(
            queue, consumer, streams, count=count, block=None if pending else block
        )
        handled = 0
        for stream, entries in response or []:
            handled += await self._handle_entries(queue, stream, entries, handler)
        if not pending:
            handled += await self._release_due(queue, handler, consumer)
        return handled

    async def _release_due(self, queue: str, handler: Handler, consumer: str) -> int:
        stream = self.retry_stream(queue)
        start = "0"
        handled = 0
        while True:
            response = await self._redis.xreadgroup(
                queue, consumer, {stream: start}, count=SCAN_BATCH
            )
            entries = response[0][1] if response else []
            if not entries:
                return handled
            handled += await self._handle_entries(queue, stream, entries, handler)
            start = entries[-1][0]

    async def _handle_entries(self, queue: str, stream: str, entries, handler: Handler) -> int:
        now = time.time()
        handled = 0
        for message_id, fields in entries:
            if message_id is None:
                continue
            if not fields:
                # trimmed away while pending
                await self._redis.xack(stream, queue, message_id)
                continue
            delivery = Delivery.from_entry(queue, stream, message_id, fields)
            if not delivery.due(now):
                continue
            await self._dispatch(delivery, handler)
            handled += 1
        return handled

    async def reclaim(self, queue: str, handler: Handler, consumer: str | None = None) -> int:
        """
        Take over entries any consumer of ``queue`` left unacknowledged for
        ``claim_idle`` seconds, and dispatch those that are due.
        """
        consumer = consumer or self.instance_id
        min_idle = int(self.claim_idle * 1000)
        handled = 0
        for stream in (self.exchange, self.retry_stream(queue)):
            start = "0-0"
            while True:
                response = await self._redis.xautoclaim(
                    stream, queue, consumer, min_idle, start_id=start, count=SCAN_BATCH
                )
                start, entries = response[0], response[1]
                if entries:
                    logger.warning(
                        "Reclaimed %d idle entries of %s on %s", len(entries), queue, stream
                    )
                    self.counters.incr("events_reclaimed_total", len(entries), queue=queue)
                    handled += await self._handle_entries(queue, stream, entries, handler)
                if start == "0-0":
                    break
        return handled

    async def trim(self) -> int:
        """
        Drop exchange entries that every queue has acknowledged.

        The floor is the oldest pending entry of any queue, or for a queue with
        nothing pending, the entry after the last one delivered to it.
        """
        try:
            groups = await self._redis.xinfo_groups(self.exchange)
        except ResponseError:
            return 0
        floor = None
        for group in groups:
            summary = await self._redis.xpending(self.exchange, group["name"])
            if summary["pending"]:
                keep_from = summary["min"]
            else:
                keep_from = _next_id(group["last-delivered-id"])
            if floor is None or _id_key(keep_from) < _id_key(floor):
                floor = keep_from
        if floor is None:
            return 0
        trimmed = await self._redis.xtrim(self.exchange, minid=floor, approximate=False)
        if trimmed:
            logger.info("Trimmed %d acknowledged entries from %s", trimmed, self.exchange)
        return trimmed

    async def _maintain(self, queue: str, handler: Handler, consumer: str | None) -> None:
        await self.reclaim(queue, handler, consumer)
        await self.trim()

    async def consume(self, queue: str, handler: Handler, consumer: str | None = None) -> None:
        """
        Serve ``queue`` until the broker is closed.

        Each (re)connection declares the queue and drains this consumer's
        pending entries before reading new ones; reclaim and trim run every
        ``claim_idle`` seconds.
        """
        loop = asyncio.get_running_loop()
        while not self._closing.is_set():
            if not await self._wait_ready():
                return
            try:
                await self.declare_queue(queue)
                while await self.poll(queue, handler, consumer=consumer, pending=True, count=10):
                    pass
                logger.info("Consuming %s (%s)", queue, self.exchange)
                next_maintenance = loop.time()
                while not self._closing.is_set():
                    if loop.time() >= next_maintenance:
                        await self._maintain(queue, handler, consumer)
                        next_maintenance = loop.time() + self.claim_idle
                    handled = await self.poll(queue, handler, consumer=consumer, block=self.block_ms)
                    if not handled:
                        await asyncio.sleep(self.idle_delay)
            except CONNECTION_ERRORS as e:
                logger.error("Consumer %s lost the broker: %s", queue, e)
                self._mark_lost()
                await self._sleep(self.retry_delay)
            except RedisError:
                logger.exception("Consumer %s failed, re-declaring", queue)
                await self._sleep(self.retry_delay)

    def subscribe(self, queue: str, handler: Handler) -> asyncio.Task:
        """Run ``consume`` as a background task owned by this broker."""
        task = asyncio.create_task(self.consume(queue, handler), name=f"consumer-{queue}")
        self._tasks.append(task)
        return task

    async def _dispatch(self, delivery: Delivery, handler: Handler) -> None:
        self.counters.incr("events_received_total", queue=delivery.queue)
        with tracer.start_as_current_span(
            f"{delivery.queue} process",
            context=propagate.extract(delivery.fields),
            kind=trace.SpanKind.CONSUMER,
            attributes={
                "messaging.destination.name": self.exchange,
                "messaging.consumer.group.name": delivery.queue,
                "messaging.message.id": delivery.event_id or delivery.message_id,
            },
        ):
            try:
                disposition = await handler(delivery)
            except Exception as e:
                logger.exception(
                    "Handler for %s failed on %s (attempt %d)",
                    delivery.queue,
                    delivery.message_id,
                    delivery.attempt,
                )
                disposition, reason = Disposition.REQUEUE, f"{type(e).__name__}: {e}"
            else:
                reason = "rejected by handler"

        if disposition is Disposition.REQUEUE and delivery.attempt >= self.max_deliveries:
            logger.error(
                "Giving up on %s after %d deliveries", delivery.message_id, delivery.attempt
            )
            disposition, reason = Disposition.DEAD_LETTER, f"max deliveries reached: {reason}"

        if disposition is Disposition.ACK:
            async with self._redis.pipeline(transaction=True) as pipe:
                self._settle(pipe, delivery)
                await pipe.execute()
            self.counters.incr("events_acked_total", queue=delivery.queue)
        elif disposition is Disposition.REQUEUE:
            await self._requeue(delivery, reason)
            self.counters.incr("events_requeued_total", queue=delivery.queue)
        else:
            await self._dead_letter(delivery, reason)
            self.counters.incr("events_dead_lettered_total", queue=delivery.queue)

    def _settle(self, pipe, delivery: Delivery) -> None:
        pipe.xack(delivery.stream, delivery.queue, delivery.message_id)
        if delivery.stream == self.retry_stream(delivery.queue):
            pipe.xdel(delivery.stream, delivery.message_id)

    async def _requeue(self, delivery: Delivery, reason: str) -> None:
        backoff = self.retry_backoff(delivery.attempt)
        fields = {
            **delivery.fields,
            "attempt": delivery.attempt + 1,
            "not_before": time.time() + backoff,
            "last_error": reason,
        }
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.xadd(
                self.retry_stream(delivery.queue),
                fields,
                maxlen=self.stream_maxlen,
                approximate=True,
            )
            self._settle(pipe, delivery)
            await pipe.execute()
        logger.warning(
            "Requeued %s on %s (attempt %d in %.2fs)",
            delivery.event_id or delivery.message_id,
            delivery.queue,
            delivery.attempt + 1,
            backoff,
        )

    async def _dead_letter(self, delivery: Delivery, reason: str) -> None:
        fields = {
            **delivery.fields,
            "queue": delivery.queue,
            "reason": reason,
            "dead_lettered_at": datetime.now(timezone.utc).isoformat(),
        }
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.xadd(self.dead_letter_stream(delivery.queue), fields)
            self._settle(pipe, delivery)
            await pipe.execute()
        logger.error(
            "Dead-lettered %s from %s: %s",
            delivery.event_id or delivery.message_id,
            delivery.queue,
            reason,
        )


async def _close_quietly(client: aioredis.Redis) -> None:
    try:
        await client.aclose()
    except CONNECTION_ERRORS:
        pass
