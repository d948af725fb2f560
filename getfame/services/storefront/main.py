"""Public storefront: catalog, checkout, order status and provider webhooks.

Checkout creates a `pending` order and a hosted payment session. Provider
webhooks move orders to `paid` and queue `payments.confirmed` through the
orders outbox, which this process also publishes.
"""

import asyncio
from contextlib import asynccontextmanager
from uuid import uuid4

import redis
from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from getfame.common.config import settings
from getfame.common.db import SessionLocal
from getfame.common.errors import AuthenticityError, NotFoundError, UpstreamError, ValidationError
from getfame.common.events import KafkaBus
from getfame.common.http import install_metrics_middleware
from getfame.common.logging import configure_logging, logger, order_context, trace_id_ctx
from getfame.common.metrics import checkout_rejected_total, checkout_requests_total, metrics_response
from getfame.common.money import from_cents
from getfame.common.outbox import run_outbox_publisher
from getfame.common.ratelimit import TokenBucket
from getfame.common.startup import log_startup_config
from getfame.common.state_machine import FULFILLED
from getfame.common.tracing import instrument_app, setup_tracing
from getfame.services.catalog.service import ServiceCatalog
from getfame.services.orders.models import OutboxEvent
from getfame.services.orders.schemas import CheckoutResponse, OrderDraft, OrderStatusResponse, UpstreamProgress
from getfame.services.orders.store import OrderStore
from getfame.services.payments.base import CARD, CRYPTO, ReturnUrls
from getfame.services.payments.card import CardPaymentAdapter
from getfame.services.payments.crypto import CryptoPaymentAdapter
from getfame.services.payments.signatures import REJECTED, SignatureVerifier
from getfame.services.payments.webhooks import WebhookProcessor
from getfame.services.provisioning.client import ProvisioningClient

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "POSTGRES_DSN",
        "KAFKA_BOOTSTRAP_SERVERS",
        "REDIS_URL",
        "PROVIDER_URL",
        "PROFIT_MARGIN",
        "RATE_LIMIT_PER_MINUTE",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "NOWPAYMENTS_API_KEY",
        "NOWPAYMENTS_IPN_SECRET",
        "FRONTEND_URL",
        "BACKEND_URL",
    ],
)

provisioning = ProvisioningClient(settings.provider_url, settings.provider_api_key, settings.provider_timeout_seconds)
catalog = ServiceCatalog(
    provisioning.list_services,
    margin=settings.profit_margin,
    fallback_rate=settings.catalog_fallback_rate,
    ttl_seconds=settings.catalog_ttl_seconds,
    service_name=settings.service_name,
)
store = OrderStore(
    SessionLocal,
    min_charge_cents=settings.min_charge_cents,
    max_charge_cents=settings.max_charge_cents,
    service_name=settings.service_name,
)
adapters = {
    CARD: CardPaymentAdapter(settings.stripe_secret_key),
    CRYPTO: CryptoPaymentAdapter(
        settings.nowpayments_api_url,
        settings.nowpayments_api_key,
        timeout_seconds=settings.provider_timeout_seconds,
    ),
}
webhooks = WebhookProcessor(
    store,
    adapters,
    secrets={CARD: settings.stripe_webhook_secret, CRYPTO: settings.nowpayments_ipn_secret},
    verifier=SignatureVerifier(settings.stripe_tolerance_seconds),
    service_name=settings.service_name,
)
limiter = TokenBucket(redis.Redis.from_url(settings.redis_url, decode_responses=True), settings.rate_limit_per_minute)
kafka = KafkaBus()


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the orders outbox publisher with app lifecycle."""

    publisher_task = asyncio.create_task(
        run_outbox_publisher(SessionLocal, OutboxEvent, kafka, settings.service_name)
    )
    yield
    publisher_task.cancel()
    await kafka.close()


app = FastAPI(title="GetFame Storefront", lifespan=lifespan)
instrument_app(app)
install_metrics_middleware(app)


def return_urls_for(provider: str, order_id: str) -> ReturnUrls:
    frontend = settings.frontend_url.rstrip("/")
    backend = settings.backend_url.rstrip("/")
    if provider == CARD:
        return ReturnUrls(
            success_url=f"{frontend}/success/?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{frontend}/order/",
        )
    return ReturnUrls(
        success_url=f"{frontend}/success/?order={order_id}",
        cancel_url=f"{frontend}/order/",
        callback_url=f"{backend}/api/webhooks/nowpayments",
    )


def _service_view(service) -> dict:
    # Upstream cost never leaves the process.
    return service.model_dump(mode="json", exclude={"source_rate"})


@app.get("/api/services")
async def list_services():
    return [_service_view(service) for service in await catalog.list_services()]


@app.get("/api/services/{platform}")
async def list_platform_services(platform: str):
    return [_service_view(service) for service in await catalog.list_services(platform)]


async def _checkout(provider: str, draft: OrderDraft, request: Request) -> CheckoutResponse:
    client_ip = request.client.host if request.client else "unknown"
    if not limiter.allow(f"order:{client_ip}"):
        checkout_rejected_total.labels(service=settings.service_name, reason="rate_limited").inc()
        raise HTTPException(status_code=429, detail="Too many orders, please try again later")
    checkout_requests_total.labels(service=settings.service_name, provider=provider).inc()

    try:
        service = await catalog.get_service(draft.service_id)
        order = store.create(draft, service, provider)
    except NotFoundError as exc:
        checkout_rejected_total.labels(service=settings.service_name, reason="unknown_service").inc()
        raise HTTPException(status_code=400, detail="Invalid service") from exc
    except ValidationError as exc:
        checkout_rejected_total.labels(service=settings.service_name, reason="validation").inc()
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with order_context(order.order_id):
        try:
            session = await adapters[provider].create_checkout(order, return_urls_for(provider, order.order_id))
        except UpstreamError as exc:
            logger.error("checkout_session_failed provider=%s error=%s", provider, exc)
            raise HTTPException(status_code=502, detail="Payment initialization failed") from exc
        store.attach_provider_ref(order.order_id, session.provider_ref)
        logger.info("checkout_created provider=%s provider_ref=%s", provider, session.provider_ref)
    return CheckoutResponse(
        order_id=order.order_id,
        redirect_url=session.redirect_url,
        total=from_cents(order.amount_cents),
    )


@app.post("/api/order", response_model=CheckoutResponse)
async def create_card_order(draft: OrderDraft, request: Request):
    """Create a pending order and a Stripe Checkout session."""

    return await _checkout(CARD, draft, request)


@app.post("/api/order/crypto", response_model=CheckoutResponse)
async def create_crypto_order(draft: OrderDraft, request: Request):
    """Create a pending order and a NOWPayments invoice."""

    return await _checkout(CRYPTO, draft, request)


@app.get("/api/order/{order_id}", response_model=OrderStatusResponse)
async def get_order(order_id: str, refresh: bool = Query(default=False)):
    try:
        order = store.get(order_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail="Order not found") from exc

    upstream = None
    if refresh and order.state == FULFILLED and order.upstream_order_id:
        try:
            status = await provisioning.order_status(order.upstream_order_id)
            upstream = UpstreamProgress(status=status.status, remains=status.remains, start_count=status.start_count)
        except UpstreamError as exc:
            logger.warning("order_status_refresh_failed order_id=%s error=%s", order_id, exc)
    return OrderStatusResponse(
        order_id=order.order_id,
        state=order.state,
        service=order.service_name,
        quantity=order.quantity,
        total=from_cents(order.amount_cents),
        upstream_order_id=order.upstream_order_id,
        upstream=upstream,
    )


def _receive_webhook(provider: str, raw: bytes, signature: str | None, x_trace_id: str | None):
    trace_id = x_trace_id or str(uuid4())
    trace_id_ctx.set(trace_id)
    try:
        outcome = webhooks.process(provider, raw, signature, trace_id=trace_id)
    except AuthenticityError:
        return JSONResponse(status_code=400, content={"detail": REJECTED})
    logger.info("webhook_acknowledged provider=%s outcome=%s", provider, outcome.outcome)
    return {"received": True}


@app.post("/api/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None),
    x_trace_id: str | None = Header(default=None),
):
    return _receive_webhook(CARD, await request.body(), stripe_signature, x_trace_id)


@app.post("/api/webhooks/nowpayments")
async def nowpayments_webhook(
    request: Request,
    x_nowpayments_sig: str | None = Header(default=None),
    x_trace_id: str | None = Header(default=None),
):
    return _receive_webhook(CRYPTO, await request.body(), x_nowpayments_sig, x_trace_id)


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {
        "ok": True,
        "card_configured": adapters[CARD].configured,
        "crypto_configured": adapters[CRYPTO].configured,
        "provisioning_configured": bool(settings.provider_api_key),
    }


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()
