"""Fulfillment API + worker lifecycle.

Consumes confirmed payments, dispatches them upstream and exposes ops
endpoints for inspecting and manually retrying failed orders.
"""

import asyncio
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Query

from getfame.common.config import settings
from getfame.common.db import SessionLocal
from getfame.common.errors import NotFoundError
from getfame.common.http import enforce_api_key, install_metrics_middleware
from getfame.common.logging import configure_logging, trace_id_ctx
from getfame.common.metrics import metrics_response
from getfame.common.startup import log_startup_config
from getfame.common.state_machine import ALLOWED_TRANSITIONS
from getfame.common.tracing import instrument_app, setup_tracing
from getfame.services.fulfillment.dispatcher import (
    STATUS_ALREADY_DISPATCHING_OR_DONE,
    STATUS_ORDER_NOT_FOUND,
    DispatchReport,
    FulfillmentDispatcher,
)
from getfame.services.fulfillment.retry import RetryPolicy
from getfame.services.fulfillment.service import FulfillmentService
from getfame.services.orders.schemas import OpsOrderView
from getfame.services.orders.store import OrderStore
from getfame.services.provisioning.client import ProvisioningClient

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "POSTGRES_DSN",
        "KAFKA_BOOTSTRAP_SERVERS",
        "PROVIDER_URL",
        "PROVIDER_API_KEY",
        "DISPATCH_MAX_ATTEMPTS",
        "DISPATCH_BACKOFF_SECONDS",
    ],
)
store = OrderStore(
    SessionLocal,
    min_charge_cents=settings.min_charge_cents,
    max_charge_cents=settings.max_charge_cents,
    service_name=settings.service_name,
)
dispatcher = FulfillmentDispatcher(
    store,
    ProvisioningClient(settings.provider_url, settings.provider_api_key, settings.provider_timeout_seconds),
    RetryPolicy(
        max_attempts=settings.dispatch_max_attempts,
        base_delay_seconds=settings.dispatch_backoff_seconds,
    ),
    service_name=settings.service_name,
)
service = FulfillmentService(SessionLocal, dispatcher, service_name=settings.service_name)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run outbox publisher + payments.confirmed consumer with app lifecycle."""

    publisher_task = asyncio.create_task(service.outbox_publisher())
    consumer_task = asyncio.create_task(service.start_consumers())
    yield
    publisher_task.cancel()
    consumer_task.cancel()
    await service.kafka.close()


app = FastAPI(title="GetFame Fulfillment", lifespan=lifespan)
instrument_app(app)
install_metrics_middleware(app)


def _ops_view(order) -> OpsOrderView:
    return OpsOrderView(
        order_id=order.order_id,
        state=order.state,
        service_id=order.service_id,
        link=order.link,
        quantity=order.quantity,
        email=order.email,
        payment_provider=order.payment_provider,
        payment_provider_ref=order.payment_provider_ref,
        upstream_order_id=order.upstream_order_id,
        retry_count=order.retry_count,
        failure_kind=order.failure_kind,
        last_error=order.last_error,
    )


@app.get("/ops/orders", response_model=list[OpsOrderView])
def list_orders(
    state: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    x_api_key: str | None = Header(default=None),
):
    """List orders, typically `?state=dispatch_failed`, for manual action."""

    enforce_api_key(x_api_key)
    if state is not None and state not in ALLOWED_TRANSITIONS:
        raise HTTPException(status_code=400, detail=f"unknown state {state}")
    return [_ops_view(order) for order in store.list_orders(state=state, limit=limit)]


@app.get("/ops/orders/{order_id}", response_model=OpsOrderView)
def get_order(order_id: str, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    try:
        return _ops_view(store.get(order_id))
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail="order not found") from exc


@app.post("/ops/orders/{order_id}/retry", response_model=DispatchReport)
async def retry_order(
    order_id: str,
    x_api_key: str | None = Header(default=None),
    x_trace_id: str | None = Header(default=None),
):
    """Re-dispatch a `dispatch_failed` order; 409 when it is not retryable."""

    enforce_api_key(x_api_key)
    trace_id = x_trace_id or str(uuid4())
    trace_id_ctx.set(trace_id)
    report = await dispatcher.retry(order_id, trace_id=trace_id)
    if report.status == STATUS_ORDER_NOT_FOUND:
        raise HTTPException(status_code=404, detail="order not found")
    if report.status == STATUS_ALREADY_DISPATCHING_OR_DONE:
        raise HTTPException(status_code=409, detail="order is not in dispatch_failed")
    return report


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True, "provisioning_configured": bool(settings.provider_api_key)}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()
