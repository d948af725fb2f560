"""OrderStore: the only writer of order rows.

Every transition is a conditional UPDATE guarded by `(order_id, state,
state_version)`; a transition succeeds only when its row count is exactly one.
`try_begin_dispatch` relies on this to hand the dispatch claim to exactly one
caller, however many duplicate webhooks or workers race for it.

Announcements (`payments.confirmed`, `orders.fulfilled`,
`orders.dispatch_failed`) are written to the outbox in the same transaction
as the transition they describe.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import select, update

from getfame.common.errors import ConcurrencyConflict, InvalidTransition, NotFoundError
from getfame.common.events import ORDERS_DISPATCH_FAILED, ORDERS_FULFILLED, PAYMENTS_CONFIRMED
from getfame.common.logging import logger
from getfame.common.metrics import order_e2e_seconds
from getfame.common.money import from_cents, order_total, to_cents
from getfame.common.outbox import enqueue_event
from getfame.common.state_machine import (
    DISPATCH_FAILED,
    DISPATCHABLE_STATES,
    DISPATCHING,
    FULFILLED,
    PAID,
    PENDING,
    validate_transition,
)
from getfame.services.catalog.service import Service
from getfame.services.orders.models import Order, OrderTimeline, OutboxEvent
from getfame.services.orders.schemas import Failed, Fulfilled, OrderDraft
from getfame.services.orders.validation import validate_draft


class OrderStore:
    """Owns order lifecycle progression and the provider-reference index."""

    def __init__(
        self,
        session_factory,
        min_charge_cents: int = 50,
        max_charge_cents: int = 5_000_000,
        service_name: str = "orders",
    ) -> None:
        self.session_factory = session_factory
        self.min_charge_cents = min_charge_cents
        self.max_charge_cents = max_charge_cents
        self.service_name = service_name

    # Reads

    def get(self, order_id: str) -> Order:
        with self.session_factory() as db:
            return self._load(db, order_id)

    def find_by_provider_ref(self, provider: str, provider_ref: str) -> Order | None:
        with self.session_factory() as db:
            return db.execute(
                select(Order).where(
                    Order.payment_provider == provider,
                    Order.payment_provider_ref == provider_ref,
                )
            ).scalar_one_or_none()

    def list_orders(self, state: str | None = None, limit: int = 100) -> list[Order]:
        with self.session_factory() as db:
            query = select(Order).order_by(Order.created_at.asc()).limit(limit)
            if state is not None:
                query = query.where(Order.state == state)
            return list(db.execute(query).scalars().all())

    def timeline(self, order_id: str) -> list[OrderTimeline]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(OrderTimeline)
                    .where(OrderTimeline.order_id == order_id)
                    .order_by(OrderTimeline.created_at.asc())
                )
                .scalars()
                .all()
            )

    # Writes

    def create(self, draft: OrderDraft, service: Service, provider: str) -> Order:
        """Validate `draft` against `service` and persist it as `pending`."""

        total = validate_draft(draft, service, self.min_charge_cents, self.max_charge_cents)
        cost = None if service.source_rate is None else order_total(service.source_rate, draft.quantity)
        with self.session_factory() as db:
            order = Order(
                service_id=service.id,
                service_name=service.name,
                platform=service.platform,
                link=draft.link,
                quantity=draft.quantity,
                email=draft.email,
                rate_per_thousand_cents=to_cents(service.public_rate),
                amount_cents=to_cents(total),
                cost_cents=None if cost is None else to_cents(cost),
                currency="USD",
                payment_provider=provider,
                state=PENDING,
                state_version=0,
                retry_count=0,
            )
            db.add(order)
            db.flush()
            db.add(
                OrderTimeline(
                    order_id=order.order_id,
                    from_state=None,
                    to_state=PENDING,
                    reason="order_created",
                )
            )
            db.commit()
            logger.info(
                "order_created order_id=%s service_id=%s quantity=%s amount_cents=%s provider=%s",
                order.order_id,
                order.service_id,
                order.quantity,
                order.amount_cents,
                provider,
            )
            return order

    def attach_provider_ref(self, order_id: str, provider_ref: str) -> Order:
        """Record the checkout session/invoice id that webhooks will carry."""

        with self.session_factory() as db:
            result = db.execute(
                update(Order)
                .where(
                    Order.order_id == order_id,
                    Order.state == PENDING,
                    Order.payment_provider_ref.is_(None),
                )
                .values(payment_provider_ref=provider_ref, updated_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )
            order = self._load(db, order_id)
            if result.rowcount != 1 and order.payment_provider_ref != provider_ref:
                raise InvalidTransition(f"order {order_id} already has a provider reference")
            db.refresh(order)
            db.commit()
            return order

    def mark_paid(
        self,
        order_id: str,
        provider_ref: str,
        charged_amount: Decimal,
        currency: str = "USD",
        enqueue_dispatch: bool = False,
        trace_id: str | None = None,
        event_id: str | None = None,
    ) -> Order:
        """Move `pending -> paid`; a no-op for orders already paid or later.

        With `enqueue_dispatch`, a `payments.confirmed` event is queued whenever
        the order is left in `paid`, i.e. not yet claimed by a dispatcher.
        """

        with self.session_factory() as db:
            order = self._load(db, order_id)
            if order.payment_provider_ref != provider_ref:
                raise NotFoundError(f"provider reference does not match order {order_id}")
            if order.state == PENDING:
                charged_cents = to_cents(charged_amount)
                moved = self._transition(
                    db,
                    order,
                    PAID,
                    reason="payment_confirmed",
                    event_id=event_id,
                    values={"charged_amount_cents": charged_cents, "paid_at": datetime.now(timezone.utc)},
                )
                if moved and charged_cents != order.amount_cents:
                    logger.warning(
                        "charged_amount_mismatch order_id=%s expected_cents=%s charged_cents=%s currency=%s",
                        order_id,
                        order.amount_cents,
                        charged_cents,
                        currency,
                    )
                db.refresh(order)
            else:
                logger.info("mark_paid_noop order_id=%s state=%s", order_id, order.state)
            if enqueue_dispatch and order.state == PAID:
                enqueue_event(
                    db,
                    OutboxEvent,
                    PAYMENTS_CONFIRMED,
                    order.order_id,
                    trace_id,
                    {
                        "provider": order.payment_provider,
                        "provider_ref": provider_ref,
                        "charged_amount": str(charged_amount),
                        "currency": currency,
                        "email": order.email,
                        "amount": str(from_cents(order.amount_cents)),
                        "service": order.service_name,
                        "quantity": order.quantity,
                    },
                )
            db.commit()
            return order

    def try_begin_dispatch(
        self,
        order_id: str,
        from_states: tuple[str, ...] = DISPATCHABLE_STATES,
        reason: str = "dispatch_claimed",
    ) -> Order | None:
        """Claim the order for one upstream call.

        Returns the claimed order, or None when another caller holds the claim
        or the order is not in one of `from_states` (AlreadyDispatchingOrDone).
        """

        for state in from_states:
            validate_transition(state, DISPATCHING)
        with self.session_factory() as db:
            order = self._load(db, order_id)
            if order.state not in from_states:
                return None
            if not self._transition(db, order, DISPATCHING, reason=reason):
                db.rollback()
                return None
            db.refresh(order)
            db.commit()
            return order

    def record_dispatch_result(
        self,
        order_id: str,
        outcome: Fulfilled | Failed,
        trace_id: str | None = None,
    ) -> Order:
        """Close a dispatch claim with its outcome."""

        with self.session_factory() as db:
            order = self._load(db, order_id)
            if order.state != DISPATCHING:
                raise InvalidTransition(f"order {order_id} is {order.state}, not {DISPATCHING}")
            if isinstance(outcome, Fulfilled):
                if order.upstream_order_id is not None:
                    raise InvalidTransition(f"order {order_id} already has an upstream order id")
                moved = self._transition(
                    db,
                    order,
                    FULFILLED,
                    reason="upstream_accepted",
                    values={"upstream_order_id": outcome.upstream_order_id, "failure_kind": None, "last_error": None},
                    extra_where=(Order.upstream_order_id.is_(None),),
                )
            else:
                moved = self._transition(
                    db,
                    order,
                    DISPATCH_FAILED,
                    reason=f"dispatch_failed:{outcome.kind}",
                    values={
                        "retry_count": Order.retry_count + 1,
                        "failure_kind": outcome.kind,
                        "last_error": outcome.reason[:500],
                    },
                )
            if not moved:
                raise ConcurrencyConflict(f"order {order_id} changed while recording dispatch result")
            db.refresh(order)
            if isinstance(outcome, Fulfilled):
                enqueue_event(db, OutboxEvent, ORDERS_FULFILLED, order.order_id, trace_id, self._summary(order))
            elif outcome.final:
                enqueue_event(
                    db,
                    OutboxEvent,
                    ORDERS_DISPATCH_FAILED,
                    order.order_id,
                    trace_id,
                    {**self._summary(order), "reason": outcome.reason, "kind": outcome.kind},
                )
            db.commit()
        if isinstance(outcome, Fulfilled) or outcome.final:
            self._observe_e2e(order)
        return order

    # Internals

    @staticmethod
    def _load(db, order_id: str) -> Order:
        order = db.get(Order, order_id)
        if order is None:
            raise NotFoundError(f"order {order_id} not found")
        return order

    def _transition(
        self,
        db,
        order: Order,
        new_state: str,
        reason: str,
        event_id: str | None = None,
        values: dict[str, Any] | None = None,
        extra_where: tuple = (),
    ) -> bool:
        """Apply one validated transition as a compare-and-set on state + version."""

        validate_transition(order.state, new_state)
        from_state = order.state
        current_version = order.state_version
        result = db.execute(
            update(Order)
            .where(
                Order.order_id == order.order_id,
                Order.state == from_state,
                Order.state_version == current_version,
                *extra_where,
            )
            .values(
                state=new_state,
                state_version=current_version + 1,
                updated_at=datetime.now(timezone.utc),
                **(values or {}),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info(
                "transition_lost order_id=%s from=%s to=%s version=%s",
                order.order_id,
                from_state,
                new_state,
                current_version,
            )
            return False
        db.add(
            OrderTimeline(
                order_id=order.order_id,
                from_state=from_state,
                to_state=new_state,
                reason=reason,
                event_id=event_id,
            )
        )
        return True

    @staticmethod
    def _summary(order: Order) -> dict[str, Any]:
        return {
            "service_id": order.service_id,
            "service": order.service_name,
            "link": order.link,
            "quantity": order.quantity,
            "email": order.email,
            "amount": str(from_cents(order.amount_cents)),
            "upstream_order_id": order.upstream_order_id,
            "retry_count": order.retry_count,
        }

    def _observe_e2e(self, order: Order) -> None:
        if order.created_at is None:
            return
        created_at = order.created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        elapsed = max(0.0, (datetime.now(timezone.utc) - created_at).total_seconds())
        order_e2e_seconds.labels(service=self.service_name, terminal_state=order.state).observe(elapsed)
