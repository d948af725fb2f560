"""Kafka side of the fulfillment process."""

from decimal import Decimal

from getfame.common.events import PAYMENTS_CONFIRMED, EventEnvelope, KafkaBus, consume_forever
from getfame.common.inbox import mark_inbox, skip_if_seen
from getfame.common.logging import logger
from getfame.common.outbox import run_outbox_publisher
from getfame.services.fulfillment.dispatcher import DispatchReport, FulfillmentDispatcher
from getfame.services.orders.models import OutboxEvent
from getfame.services.payments.base import PaymentConfirmed


class FulfillmentService:
    """Consumes `payments.confirmed` and hands each fact to the dispatcher."""

    def __init__(self, session_factory, dispatcher: FulfillmentDispatcher, service_name: str = "fulfillment") -> None:
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.kafka = KafkaBus()
        self.service_name = service_name

    @staticmethod
    def _fact_from(event: EventEnvelope) -> PaymentConfirmed:
        payload = event.payload
        provider = payload.get("provider")
        provider_ref = payload.get("provider_ref")
        if not isinstance(provider, str) or not isinstance(provider_ref, str) or not provider_ref:
            raise ValueError("payments.confirmed payload missing provider/provider_ref")
        return PaymentConfirmed(
            provider=provider,
            provider_ref=provider_ref,
            charged_amount=Decimal(str(payload.get("charged_amount", "0"))),
            currency=str(payload.get("currency") or "USD"),
            order_id_hint=event.aggregate_id,
        )

    async def handle_payment_confirmed(self, event: EventEnvelope) -> DispatchReport | None:
        with self.session_factory() as db:
            if skip_if_seen(db, event.event_id, self.service_name, PAYMENTS_CONFIRMED):
                return None
        try:
            fact = self._fact_from(event)
        except ValueError as exc:
            logger.warning("payment_event_dropped event_id=%s reason=%s", event.event_id, exc)
            report = None
        else:
            report = await self.dispatcher.on_payment_confirmed(fact, trace_id=event.trace_id)
            logger.info(
                "payment_event_handled event_id=%s order_id=%s status=%s attempts=%s",
                event.event_id,
                report.order_id,
                report.status,
                report.attempts,
            )
        # Recorded after dispatch: a redelivery finds the order claimed and skips.
        with self.session_factory() as db:
            mark_inbox(db, event.event_id, self.service_name)
            db.commit()
        return report

    async def outbox_publisher(self) -> None:
        await run_outbox_publisher(self.session_factory, OutboxEvent, self.kafka, self.service_name)

    async def start_consumers(self) -> None:
        await consume_forever(PAYMENTS_CONFIRMED, "fulfillment-payments-confirmed", self.handle_payment_confirmed)
