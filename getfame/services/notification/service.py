"""Notification sink for paid, fulfilled and failed orders."""

import asyncio

import httpx

from getfame.common.events import (
    ORDERS_DISPATCH_FAILED,
    ORDERS_FULFILLED,
    PAYMENTS_CONFIRMED,
    EventEnvelope,
    consume_forever,
)
from getfame.common.inbox import mark_inbox, skip_if_seen
from getfame.common.logging import logger
from getfame.services.notification.models import NotificationLog

CHANNEL_TELEGRAM = "telegram"
CHANNEL_LOG = "log"


class TelegramSender:
    """Plain-text messages through the Bot API; a no-op when unconfigured."""

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        timeout_seconds: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    async def send(self, text: str) -> bool:
        """Returns True when Telegram accepted the message."""

        if not self.configured:
            return False
        url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                resp = await client.post(url, json={"chat_id": self.chat_id, "text": text})
        except httpx.HTTPError as exc:
            logger.error("telegram_send_failed error=%s", exc)
            return False
        if resp.status_code >= 400:
            logger.error("telegram_send_failed status=%s body=%s", resp.status_code, resp.text[:200])
            return False
        return True


def format_message(event: EventEnvelope) -> str:
    payload = event.payload
    order_line = f"Order {event.aggregate_id}: {payload.get('quantity')} {payload.get('service')}"
    if event.event_type == PAYMENTS_CONFIRMED:
        return (
            f"New paid order\n{order_line}\n"
            f"Amount: {payload.get('amount')} via {payload.get('provider')}\n"
            f"Email: {payload.get('email')}"
        )
    if event.event_type == ORDERS_FULFILLED:
        return f"Order fulfilled\n{order_line}\nUpstream order: {payload.get('upstream_order_id')}"
    if event.event_type == ORDERS_DISPATCH_FAILED:
        return (
            f"ACTION NEEDED: dispatch failed ({payload.get('kind')})\n{order_line}\n"
            f"Link: {payload.get('link')}\nReason: {payload.get('reason')}"
        )
    return f"{event.event_type}\n{order_line}"


class NotificationService:
    """Writes notification logs and forwards alerts to Telegram."""

    def __init__(self, session_factory, sender: TelegramSender, service_name: str = "notification") -> None:
        self.session_factory = session_factory
        self.sender = sender
        self.service_name = service_name

    async def handle_event(self, event: EventEnvelope) -> None:
        """Persist one notification log, skipping duplicate events safely."""

        with self.session_factory() as db:
            if skip_if_seen(db, event.event_id, self.service_name, event.event_type):
                return
        message = format_message(event)
        delivered = await self.sender.send(message)
        with self.session_factory() as db:
            db.add(
                NotificationLog(
                    order_id=event.aggregate_id,
                    event_type=event.event_type,
                    channel=CHANNEL_TELEGRAM if self.sender.configured else CHANNEL_LOG,
                    message=message,
                    delivered=delivered,
                )
            )
            mark_inbox(db, event.event_id, self.service_name)
            db.commit()
        logger.info(
            "notification_recorded event_type=%s order_id=%s delivered=%s",
            event.event_type,
            event.aggregate_id,
            delivered,
        )

    async def start_consumers(self) -> None:
        await asyncio.gather(
            consume_forever(PAYMENTS_CONFIRMED, "notification-payments-confirmed", self.handle_event),
            consume_forever(ORDERS_FULFILLED, "notification-orders-fulfilled", self.handle_event),
            consume_forever(ORDERS_DISPATCH_FAILED, "notification-orders-dispatch-failed", self.handle_event),
        )
