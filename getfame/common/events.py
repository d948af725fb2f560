"""Kafka envelope + producer/consumer helpers.

Order events are always keyed by `aggregate_id == order_id`; consumers
restore the trace/event/order logging context from the envelope before the
handler runs.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from pydantic import BaseModel, Field

from getfame.common.config import settings
from getfame.common.logging import event_id_ctx, logger, order_id_ctx, trace_id_ctx
from getfame.common.metrics import event_queue_delay_seconds

PAYMENTS_CONFIRMED = "payments.confirmed"
ORDERS_FULFILLED = "orders.fulfilled"
ORDERS_DISPATCH_FAILED = "orders.dispatch_failed"


class EventEnvelope(BaseModel):
    """Canonical event shape sent across Kafka topics."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_id: str
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str
    payload: dict[str, Any]


EventHandler = Callable[[EventEnvelope], Awaitable[None]]


class KafkaBus:
    """Lazy Kafka producer wrapper used by outbox publishers."""

    def __init__(self) -> None:
        self._producer: AIOKafkaProducer | None = None

    async def producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            self._producer = AIOKafkaProducer(bootstrap_servers=settings.kafka_bootstrap_servers)
            await self._producer.start()
        return self._producer

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        producer = await self.producer()
        # Key by order so every event of one order lands on the same partition.
        await producer.send_and_wait(
            topic,
            json.dumps(event.model_dump()).encode("utf-8"),
            key=event.aggregate_id.encode("utf-8"),
        )

    async def close(self) -> None:
        if self._producer:
            await self._producer.stop()


async def make_consumer(topic: str, group_id: str) -> AIOKafkaConsumer:
    """Create a configured Kafka consumer for one topic/group."""

    consumer = AIOKafkaConsumer(
        topic,
        bootstrap_servers=settings.kafka_bootstrap_servers,
        group_id=group_id,
        auto_offset_reset="earliest",
        enable_auto_commit=False,
    )
    await consumer.start()
    return consumer


def _observe_delay(topic: str, event: EventEnvelope) -> None:
    occurred_at = datetime.fromisoformat(event.occurred_at.replace("Z", "+00:00"))
    delay_seconds = max(
        0.0,
        (datetime.now(timezone.utc) - occurred_at.astimezone(timezone.utc)).total_seconds(),
    )
    event_queue_delay_seconds.labels(service=settings.service_name, topic=topic).observe(delay_seconds)


async def handle_message(topic: str, group_id: str, raw: bytes, handler: EventHandler) -> None:
    """Decode one Kafka message and run `handler` inside its logging context."""

    event = EventEnvelope(**json.loads(raw.decode("utf-8")))
    _observe_delay(topic, event)
    trace_token = trace_id_ctx.set(event.trace_id)
    event_token = event_id_ctx.set(event.event_id)
    order_token = order_id_ctx.set(event.aggregate_id)
    try:
        logger.info(
            "event_received topic=%s group=%s event_type=%s order_id=%s",
            topic,
            group_id,
            event.event_type,
            event.aggregate_id,
        )
        await handler(event)
    finally:
        trace_id_ctx.reset(trace_token)
        event_id_ctx.reset(event_token)
        order_id_ctx.reset(order_token)


async def consume_forever(topic: str, group_id: str, handler: EventHandler) -> None:
    """Continuously consume one topic and pass parsed envelopes to `handler`.

    Errors in individual messages are logged and processing continues; commit is
    done per batch. Handlers must be idempotent since delivery is at-least-once.
    """

    while True:
        consumer = None
        try:
            consumer = await make_consumer(topic, group_id)
            while True:
                results = await consumer.getmany(timeout_ms=500, max_records=50)
                for _, messages in results.items():
                    for msg in messages:
                        try:
                            await handle_message(topic, group_id, msg.value, handler)
                        except Exception as exc:
                            logger.error(
                                "handler_error topic=%s group=%s offset=%s error=%s",
                                topic,
                                group_id,
                                msg.offset,
                                exc,
                            )
                await consumer.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("consumer_loop_error topic=%s group=%s error=%s", topic, group_id, exc)
            await asyncio.sleep(2)
        finally:
            if consumer is not None:
                await consumer.stop()
            await asyncio.sleep(0)
