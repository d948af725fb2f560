"""OrderStore transitions, claims and outbox side effects."""

from decimal import Decimal

import pytest
from sqlalchemy import select

from getfame.common.db import SessionLocal
from getfame.common.errors import InvalidOrder, InvalidTransition, NotFoundError
from getfame.common.events import ORDERS_DISPATCH_FAILED, ORDERS_FULFILLED, PAYMENTS_CONFIRMED
from getfame.services.orders.models import OutboxEvent
from getfame.services.orders.schemas import FAILURE_PERMANENT, Failed, Fulfilled
from getfame.services.payments.base import CARD, CRYPTO


def _outbox_topics() -> list[str]:
    with SessionLocal() as db:
        return [row.topic for row in db.execute(select(OutboxEvent).order_by(OutboxEvent.created_at)).scalars()]


def test_create_snapshots_price_and_starts_pending(pending_order):
    assert pending_order.state == "pending"
    assert pending_order.state_version == 0
    assert pending_order.amount_cents == 1250
    assert pending_order.rate_per_thousand_cents == 250
    assert pending_order.cost_cents == 500
    assert pending_order.payment_provider == CRYPTO
    assert pending_order.payment_provider_ref == "inv-1"


@pytest.mark.parametrize("quantity", [99, 100_001])
def test_create_rejects_quantity_outside_service_bounds(store, service, draft, quantity):
    with pytest.raises(InvalidOrder, match="Quantity must be between 100 and 100000"):
        store.create(draft.model_copy(update={"quantity": quantity}), service, CARD)
    assert store.list_orders() == []


def test_create_rejects_link_for_another_platform(store, service, draft):
    with pytest.raises(InvalidOrder, match="Invalid link format"):
        store.create(draft.model_copy(update={"link": "https://tiktok.com/@someone"}), service, CARD)


def test_provider_ref_index(store, pending_order):
    found = store.find_by_provider_ref(CRYPTO, "inv-1")
    assert found.order_id == pending_order.order_id
    assert store.find_by_provider_ref(CARD, "inv-1") is None
    assert store.find_by_provider_ref(CRYPTO, "inv-2") is None


def test_attach_provider_ref_cannot_be_overwritten(store, pending_order):
    # Same reference again is accepted.
    store.attach_provider_ref(pending_order.order_id, "inv-1")
    with pytest.raises(InvalidTransition):
        store.attach_provider_ref(pending_order.order_id, "inv-9")


def test_mark_paid_twice_is_idempotent(store, pending_order):
    first = store.mark_paid(pending_order.order_id, "inv-1", Decimal("12.50"))
    second = store.mark_paid(pending_order.order_id, "inv-1", Decimal("12.50"))

    assert first.state == second.state == "paid"
    assert second.state_version == 1
    assert second.charged_amount_cents == 1250
    reasons = [row.reason for row in store.timeline(pending_order.order_id)]
    assert reasons == ["order_created", "payment_confirmed"]


def test_mark_paid_rejects_foreign_provider_ref(store, pending_order):
    with pytest.raises(NotFoundError):
        store.mark_paid(pending_order.order_id, "inv-other", Decimal("12.50"))
    assert store.get(pending_order.order_id).state == "pending"


def test_mark_paid_enqueues_dispatch_only_while_paid(store, pending_order):
    store.mark_paid(pending_order.order_id, "inv-1", Decimal("12.50"), enqueue_dispatch=True)
    assert _outbox_topics() == [PAYMENTS_CONFIRMED]

    store.try_begin_dispatch(pending_order.order_id)
    store.mark_paid(pending_order.order_id, "inv-1", Decimal("12.50"), enqueue_dispatch=True)
    assert _outbox_topics() == [PAYMENTS_CONFIRMED]


def test_try_begin_dispatch_has_a_single_winner(store, pending_order):
    store.mark_paid(pending_order.order_id, "inv-1", Decimal("12.50"))

    first = store.try_begin_dispatch(pending_order.order_id)
    second = store.try_begin_dispatch(pending_order.order_id)

    assert first is not None and first.state == "dispatching"
    assert second is None


def test_try_begin_dispatch_requires_payment(store, pending_order):
    assert store.try_begin_dispatch(pending_order.order_id) is None


def test_fulfilled_records_upstream_id_and_notifies(store, pending_order):
    store.mark_paid(pending_order.order_id, "inv-1", Decimal("12.50"))
    store.try_begin_dispatch(pending_order.order_id)

    order = store.record_dispatch_result(pending_order.order_id, Fulfilled(upstream_order_id="777"))

    assert order.state == "fulfilled"
    assert order.upstream_order_id == "777"
    assert _outbox_topics() == [ORDERS_FULFILLED]
    assert store.try_begin_dispatch(pending_order.order_id) is None
    with pytest.raises(InvalidTransition):
        store.record_dispatch_result(pending_order.order_id, Fulfilled(upstream_order_id="778"))


def test_only_final_failures_are_announced(store, pending_order):
    store.mark_paid(pending_order.order_id, "inv-1", Decimal("12.50"))
    store.try_begin_dispatch(pending_order.order_id)
    order = store.record_dispatch_result(pending_order.order_id, Failed(reason="503", final=False))
    assert order.state == "dispatch_failed"
    assert order.retry_count == 1
    assert _outbox_topics() == []

    assert store.try_begin_dispatch(pending_order.order_id) is not None
    order = store.record_dispatch_result(
        pending_order.order_id,
        Failed(reason="Incorrect link", kind=FAILURE_PERMANENT, final=True),
    )
    assert order.retry_count == 2
    assert order.failure_kind == FAILURE_PERMANENT
    assert order.last_error == "Incorrect link"
    assert _outbox_topics() == [ORDERS_DISPATCH_FAILED]


def test_record_requires_a_claim(store, pending_order):
    with pytest.raises(InvalidTransition):
        store.record_dispatch_result(pending_order.order_id, Fulfilled(upstream_order_id="1"))


def test_list_orders_filters_by_state(store, service, draft, pending_order):
    other = store.create(draft, service, CARD)
    store.mark_paid(pending_order.order_id, "inv-1", Decimal("12.50"))

    assert [o.order_id for o in store.list_orders(state="paid")] == [pending_order.order_id]
    assert [o.order_id for o in store.list_orders(state="pending")] == [other.order_id]
    assert len(store.list_orders()) == 2


def test_get_unknown_order(store):
    with pytest.raises(NotFoundError):
        store.get("missing")
