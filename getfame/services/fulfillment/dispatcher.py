"""Turns a confirmed payment into exactly one upstream provisioning order.

Only the caller that wins `OrderStore.try_begin_dispatch` talks to the
provisioning API, and every retry re-enters through a fresh claim. An add call
whose response was lost (timeout, dropped connection, no order id) has an
unknown outcome, so it is reconciled against the upstream status lookup before
anything is retried. Orders left with `failure_kind == "unknown"` are
reconciled again when a manual retry claims them.
"""

import asyncio
from collections.abc import Awaitable, Callable

from pydantic import BaseModel

from getfame.common.errors import (
    ConcurrencyConflict,
    InvalidTransition,
    NotFoundError,
    PermanentUpstreamError,
    UpstreamError,
    UpstreamOutcomeUnknown,
)
from getfame.common.logging import logger, order_context
from getfame.common.metrics import (
    dispatch_attempts_total,
    dispatch_outcomes_total,
    duplicate_dispatch_skipped_total,
    retries_total,
)
from getfame.common.state_machine import DISPATCH_FAILED, PAID
from getfame.common.tracing import tracer
from getfame.services.fulfillment.retry import RetryPolicy
from getfame.services.orders.models import Order
from getfame.services.orders.schemas import (
    FAILURE_PERMANENT,
    FAILURE_TRANSIENT,
    FAILURE_UNKNOWN,
    Failed,
    Fulfilled,
)
from getfame.services.orders.store import OrderStore
from getfame.services.payments.base import PaymentConfirmed
from getfame.services.provisioning.client import ProvisioningClient

STATUS_FULFILLED = "fulfilled"
STATUS_DISPATCH_FAILED = "dispatch_failed"
STATUS_ALREADY_DISPATCHING_OR_DONE = "already_dispatching_or_done"
STATUS_ORDER_NOT_FOUND = "order_not_found"


class DispatchReport(BaseModel):
    """What one dispatcher invocation did."""

    order_id: str | None
    status: str
    attempts: int = 0
    upstream_order_id: str | None = None
    failure_kind: str | None = None


class FulfillmentDispatcher:
    def __init__(
        self,
        store: OrderStore,
        client: ProvisioningClient,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        service_name: str = "fulfillment",
    ) -> None:
        self.store = store
        self.client = client
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self.service_name = service_name

    async def on_payment_confirmed(self, fact: PaymentConfirmed, trace_id: str | None = None) -> DispatchReport:
        """Mark the order paid and dispatch it unless another caller already owns it."""

        order = self.store.find_by_provider_ref(fact.provider, fact.provider_ref)
        if order is None or (fact.order_id_hint and fact.order_id_hint != order.order_id):
            logger.warning(
                "dispatch_order_not_found provider=%s provider_ref=%s",
                fact.provider,
                fact.provider_ref,
            )
            return DispatchReport(order_id=fact.order_id_hint, status=STATUS_ORDER_NOT_FOUND)

        with order_context(order.order_id):
            self.store.mark_paid(
                order.order_id,
                fact.provider_ref,
                fact.charged_amount,
                fact.currency,
                trace_id=trace_id,
            )
            # Event-triggered dispatch never picks up dispatch_failed orders.
            claim = self.store.try_begin_dispatch(order.order_id, from_states=(PAID,))
            if claim is None:
                return self._skipped(order.order_id)
            return await self._run(claim, trace_id)

    async def retry(self, order_id: str, trace_id: str | None = None) -> DispatchReport:
        """Manual retry of a `dispatch_failed` order."""

        with order_context(order_id):
            try:
                claim = self.store.try_begin_dispatch(order_id, from_states=(DISPATCH_FAILED,), reason="manual_retry")
            except NotFoundError:
                return DispatchReport(order_id=order_id, status=STATUS_ORDER_NOT_FOUND)
            if claim is None:
                return self._skipped(order_id)
            logger.info("manual_retry_claimed order_id=%s retry_count=%s", order_id, claim.retry_count)
            return await self._run(claim, trace_id)

    async def _run(self, order: Order, trace_id: str | None) -> DispatchReport:
        try:
            return await self._dispatch(order, trace_id)
        except (Exception, asyncio.CancelledError) as exc:
            self._release(order.order_id, exc, trace_id)
            raise

    async def _dispatch(self, order: Order, trace_id: str | None) -> DispatchReport:
        attempt = 1
        while True:
            outcome = await self._attempt(order, attempt)
            if isinstance(outcome, Fulfilled):
                self.store.record_dispatch_result(order.order_id, outcome, trace_id=trace_id)
                dispatch_outcomes_total.labels(service=self.service_name, outcome=STATUS_FULFILLED).inc()
                logger.info(
                    "dispatch_fulfilled order_id=%s upstream_order_id=%s attempt=%s",
                    order.order_id,
                    outcome.upstream_order_id,
                    attempt,
                )
                return DispatchReport(
                    order_id=order.order_id,
                    status=STATUS_FULFILLED,
                    attempts=attempt,
                    upstream_order_id=outcome.upstream_order_id,
                )

            final = outcome.final or self.policy.exhausted(attempt)
            outcome = outcome.model_copy(update={"final": final})
            self.store.record_dispatch_result(order.order_id, outcome, trace_id=trace_id)
            if final:
                dispatch_outcomes_total.labels(service=self.service_name, outcome=f"failed_{outcome.kind}").inc()
                logger.error(
                    "dispatch_failed order_id=%s kind=%s attempt=%s reason=%s",
                    order.order_id,
                    outcome.kind,
                    attempt,
                    outcome.reason,
                )
                return DispatchReport(
                    order_id=order.order_id,
                    status=STATUS_DISPATCH_FAILED,
                    attempts=attempt,
                    failure_kind=outcome.kind,
                )

            retries_total.labels(service=self.service_name, dependency="provisioning").inc()
            backoff_seconds = self.policy.backoff(attempt)
            logger.warning(
                "dispatch_retry order_id=%s attempt=%s backoff_s=%s reason=%s",
                order.order_id,
                attempt,
                backoff_seconds,
                outcome.reason,
            )
            await self._sleep(backoff_seconds)
            claim = self.store.try_begin_dispatch(order.order_id, from_states=(DISPATCH_FAILED,), reason="auto_retry")
            if claim is None:
                return self._skipped(order.order_id, attempts=attempt)
            order = claim
            attempt += 1

    async def _attempt(self, order: Order, attempt: int) -> Fulfilled | Failed:
        with tracer.start_as_current_span("provisioning.add_order") as span:
            span.set_attribute("order.id", order.order_id)
            span.set_attribute("dispatch.attempt", attempt)
            if order.failure_kind == FAILURE_UNKNOWN:
                # The previous add may have executed; never send a second one blind.
                settled = await self._reconcile(order, "previous attempt outcome unknown")
                if settled is not None:
                    return settled
            dispatch_attempts_total.labels(service=self.service_name).inc()
            try:
                upstream_order_id = await self.client.add_order(
                    order.service_id,
                    order.link,
                    order.quantity,
                    reference=order.order_id,
                )
            except UpstreamOutcomeUnknown as exc:
                settled = await self._reconcile(order, str(exc))
                if settled is not None:
                    return settled
                return Failed(reason=f"{exc}; not executed upstream", kind=FAILURE_TRANSIENT, final=False)
            except PermanentUpstreamError as exc:
                return Failed(reason=str(exc), kind=FAILURE_PERMANENT, final=True)
            except UpstreamError as exc:
                return Failed(reason=str(exc), kind=FAILURE_TRANSIENT, final=False)
            return Fulfilled(upstream_order_id=upstream_order_id)

    async def _reconcile(self, order: Order, cause: str) -> Fulfilled | Failed | None:
        """Decide whether an add call with an unobserved outcome was executed upstream.

        Returns None when upstream has no order with our reference.
        """

        with tracer.start_as_current_span("provisioning.find_by_reference"):
            try:
                found = await self.client.find_by_reference(order.order_id)
            except UpstreamError as exc:
                logger.error("reconcile_lookup_failed order_id=%s error=%s", order.order_id, exc)
                return Failed(
                    reason=f"{cause}; status lookup failed: {exc}",
                    kind=FAILURE_UNKNOWN,
                    final=True,
                )
        if found is None:
            logger.info("reconciled_not_found order_id=%s cause=%s", order.order_id, cause)
            return None
        logger.info(
            "reconciled_found_upstream order_id=%s upstream_order_id=%s status=%s",
            order.order_id,
            found.upstream_order_id,
            found.status,
        )
        return Fulfilled(upstream_order_id=found.upstream_order_id)

    def _release(self, order_id: str, exc: BaseException, trace_id: str | None) -> None:
        """Close a claim left open by an unexpected error as a final unknown failure."""

        logger.error("dispatch_interrupted order_id=%s error=%r", order_id, exc)
        try:
            self.store.record_dispatch_result(
                order_id,
                Failed(reason=f"dispatch interrupted: {exc!r}", kind=FAILURE_UNKNOWN, final=True),
                trace_id=trace_id,
            )
        except (InvalidTransition, ConcurrencyConflict) as record_exc:
            # Not dispatching any more: the claim was already closed.
            logger.warning("dispatch_release_skipped order_id=%s error=%s", order_id, record_exc)

    def _skipped(self, order_id: str, attempts: int = 0) -> DispatchReport:
        duplicate_dispatch_skipped_total.labels(service=self.service_name).inc()
        logger.info("dispatch_skipped order_id=%s reason=already_dispatching_or_done", order_id)
        return DispatchReport(order_id=order_id, status=STATUS_ALREADY_DISPATCHING_OR_DONE, attempts=attempts)
