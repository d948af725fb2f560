"""Transactional outbox: enqueue in the order transaction, publish later.

Rows are written by OrderStore in the same transaction as the state change
they announce, then claimed and pushed to Kafka by `run_outbox_publisher`.
Claims use `FOR UPDATE SKIP LOCKED`, so the storefront and fulfillment
processes can both run a publisher against the same table.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import func, or_, select, update

from getfame.common.events import EventEnvelope, KafkaBus
from getfame.common.logging import logger
from getfame.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total

OUTBOX_PENDING = "PENDING"
OUTBOX_PROCESSING = "PROCESSING"
OUTBOX_SENT = "SENT"


def enqueue_event(
    db,
    outbox_model,
    topic: str,
    order_id: str,
    trace_id: str | None,
    payload: dict[str, Any],
) -> EventEnvelope:
    """Add one outbox row for `topic`; the caller owns the commit."""

    envelope = EventEnvelope(
        event_type=topic,
        aggregate_id=order_id,
        trace_id=trace_id or "",
        payload=payload,
    )
    db.add(
        outbox_model(
            aggregate_type="order",
            aggregate_id=order_id,
            event_type=topic,
            topic=topic,
            payload=envelope.model_dump(),
            status=OUTBOX_PENDING,
        )
    )
    return envelope


def claim_outbox_batch(db, outbox_model, limit: int = 100, processing_timeout_seconds: int = 30) -> list[dict]:
    """Atomically claim a batch of pending/stale rows for publishing."""

    table = outbox_model.__table__
    now = datetime.now(timezone.utc)
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    claim_ids = (
        select(table.c.id)
        .where(
            or_(
                table.c.status == OUTBOX_PENDING,
                (table.c.status == OUTBOX_PROCESSING)
                & (table.c.sent_at.is_not(None))
                & (table.c.sent_at < stale_before),
            )
        )
        .order_by(table.c.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
        .cte("claim_ids")
    )
    rows = db.execute(
        update(table)
        .where(table.c.id.in_(select(claim_ids.c.id)))
        .values(status=OUTBOX_PROCESSING, sent_at=now)
        .returning(table.c.id, table.c.topic, table.c.payload)
    ).all()
    return [{"id": row.id, "topic": row.topic, "payload": row.payload} for row in rows]


def mark_outbox_sent(db, outbox_model, event_id: str) -> None:
    """Mark one claimed outbox row as delivered."""

    table = outbox_model.__table__
    db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == OUTBOX_PROCESSING)
        .values(status=OUTBOX_SENT, sent_at=datetime.now(timezone.utc))
    )


def requeue_outbox_event(db, outbox_model, event_id: str) -> None:
    """Return a claimed row to `PENDING` so it can be retried."""

    table = outbox_model.__table__
    db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == OUTBOX_PROCESSING)
        .values(status=OUTBOX_PENDING, sent_at=None)
    )


def update_outbox_backlog_metrics(db, outbox_model, service_name: str) -> None:
    """Update process-level gauges for pending outbox depth and oldest age."""

    table = outbox_model.__table__
    now = datetime.now(timezone.utc)
    pending_statuses = (OUTBOX_PENDING, OUTBOX_PROCESSING)
    pending_count = (
        db.execute(select(func.count()).select_from(table).where(table.c.status.in_(pending_statuses))).scalar_one()
    )
    oldest_pending = db.execute(
        select(func.min(table.c.created_at)).where(table.c.status.in_(pending_statuses))
    ).scalar_one()
    age_seconds = 0.0
    if oldest_pending is not None:
        if oldest_pending.tzinfo is None:
            oldest_pending = oldest_pending.replace(tzinfo=timezone.utc)
        age_seconds = max(0.0, (now - oldest_pending).total_seconds())
    outbox_pending_total.labels(service=service_name).set(float(pending_count))
    outbox_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)


async def publish_outbox_once(session_factory, outbox_model, bus: KafkaBus, service_name: str) -> int:
    """Claim one batch and publish it; returns the number of rows sent."""

    with session_factory() as db:
        rows = claim_outbox_batch(db, outbox_model, limit=100)
        update_outbox_backlog_metrics(db, outbox_model, service_name)
        db.commit()
    sent = 0
    for row in rows:
        try:
            await bus.publish(row["topic"], EventEnvelope(**row["payload"]))
            with session_factory() as db:
                mark_outbox_sent(db, outbox_model, row["id"])
                db.commit()
            sent += 1
        except Exception as exc:
            logger.exception("outbox publish failed topic=%s error=%s", row["topic"], exc)
            with session_factory() as db:
                requeue_outbox_event(db, outbox_model, row["id"])
                db.commit()
    return sent


async def run_outbox_publisher(
    session_factory,
    outbox_model,
    bus: KafkaBus,
    service_name: str,
    interval_seconds: float = 0.5,
) -> None:
    """Continuously publish and ack pending outbox events."""

    while True:
        try:
            await publish_outbox_once(session_factory, outbox_model, bus, service_name)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("outbox_publisher_error service=%s error=%s", service_name, exc)
        await asyncio.sleep(interval_seconds)
