"""Consumer-side deduplication of Kafka events.

Every consumer records `(event_id, consumer)` in the same transaction as its
side effects and skips envelopes it has already seen.
"""

from datetime import datetime

from sqlalchemy import DateTime, String, UniqueConstraint, func, select
from sqlalchemy.orm import Mapped, mapped_column

from getfame.common.db import Base
from getfame.common.logging import logger
from getfame.common.metrics import duplicate_events_skipped_total


class InboxEvent(Base):
    """Deduplication table for consumed Kafka events."""

    __tablename__ = "inbox_events"
    __table_args__ = (UniqueConstraint("event_id", "consumed_by_service", name="uq_inbox_consumer"),)

    event_id: Mapped[str] = mapped_column(String, primary_key=True)
    consumed_by_service: Mapped[str] = mapped_column(String, primary_key=True)
    consumed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


def inbox_seen(db, event_id: str, consumer: str) -> bool:
    return (
        db.execute(
            select(InboxEvent).where(
                InboxEvent.event_id == event_id,
                InboxEvent.consumed_by_service == consumer,
            )
        ).scalar_one_or_none()
        is not None
    )


def mark_inbox(db, event_id: str, consumer: str) -> None:
    db.add(InboxEvent(event_id=event_id, consumed_by_service=consumer))


def skip_if_seen(db, event_id: str, consumer: str, topic: str) -> bool:
    """Return True (and count it) when this consumer already handled the event."""

    if not inbox_seen(db, event_id, consumer):
        return False
    logger.info("duplicate event skipped topic=%s event_id=%s", topic, event_id)
    duplicate_events_skipped_total.labels(service=consumer, topic=topic).inc()
    return True
