"""Consuming `payments.confirmed`: inbox dedupe around the dispatcher."""

from decimal import Decimal

import pytest

from getfame.common.db import SessionLocal
from getfame.common.events import PAYMENTS_CONFIRMED, EventEnvelope
from getfame.services.fulfillment.dispatcher import STATUS_FULFILLED, FulfillmentDispatcher
from getfame.services.fulfillment.service import FulfillmentService


def _confirmed(order_id: str, **payload) -> EventEnvelope:
    body = {"provider": "crypto", "provider_ref": "inv-1", "charged_amount": "12.50", "currency": "USD"}
    return EventEnvelope(
        event_type=PAYMENTS_CONFIRMED,
        aggregate_id=order_id,
        trace_id="t-1",
        payload={**body, **payload},
    )


@pytest.fixture
def panel(fake_provisioning):
    return fake_provisioning(outcomes=["23501"])


@pytest.fixture
def consumer(store, panel, sleeps):
    dispatcher = FulfillmentDispatcher(store, panel, sleep=sleeps)
    return FulfillmentService(SessionLocal, dispatcher, service_name="fulfillment")


@pytest.mark.asyncio
async def test_confirmed_payment_is_dispatched(consumer, store, panel, pending_order):
    store.mark_paid(pending_order.order_id, "inv-1", Decimal("12.50"))

    report = await consumer.handle_payment_confirmed(_confirmed(pending_order.order_id))

    assert report.status == STATUS_FULFILLED
    assert report.upstream_order_id == "23501"
    assert panel.add_calls == [pending_order.order_id]
    assert store.get(pending_order.order_id).state == "fulfilled"


@pytest.mark.asyncio
async def test_redelivered_event_is_skipped(consumer, store, panel, pending_order):
    store.mark_paid(pending_order.order_id, "inv-1", Decimal("12.50"))
    event = _confirmed(pending_order.order_id)

    await consumer.handle_payment_confirmed(event)
    assert await consumer.handle_payment_confirmed(event) is None

    assert len(panel.add_calls) == 1


@pytest.mark.asyncio
async def test_distinct_event_for_same_order_does_not_dispatch_twice(consumer, store, panel, pending_order):
    store.mark_paid(pending_order.order_id, "inv-1", Decimal("12.50"))

    await consumer.handle_payment_confirmed(_confirmed(pending_order.order_id))
    report = await consumer.handle_payment_confirmed(_confirmed(pending_order.order_id))

    assert report.status == "already_dispatching_or_done"
    assert len(panel.add_calls) == 1


@pytest.mark.asyncio
async def test_malformed_payload_is_dropped(consumer, panel, pending_order):
    event = _confirmed(pending_order.order_id, provider_ref=None)

    assert await consumer.handle_payment_confirmed(event) is None
    assert panel.add_calls == []
