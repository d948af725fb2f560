"""Storefront HTTP surface: catalog, checkout, status and webhooks."""

import json
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from getfame.common.db import SessionLocal
from getfame.common.errors import NotFoundError, TransientUpstreamError
from getfame.services.orders.models import OutboxEvent
from getfame.services.orders.schemas import Fulfilled
from getfame.services.payments.base import CARD, CRYPTO, CheckoutSession
from getfame.services.payments.card import CardPaymentAdapter
from getfame.services.payments.crypto import CryptoPaymentAdapter
from getfame.services.payments.signatures import sign_ipn
from getfame.services.payments.webhooks import WebhookProcessor
from getfame.services.provisioning.client import UpstreamStatus
from getfame.services.storefront import main as storefront
from test_signatures import stripe_header

IPN_SECRET = "ipn-secret"
STRIPE_SECRET = "whsec_test"


class FakeCatalog:
    def __init__(self, service) -> None:
        self.service = service

    async def list_services(self, platform=None):
        if platform and platform.lower() != self.service.platform:
            return []
        return [self.service]

    async def get_service(self, service_id):
        if service_id != self.service.id:
            raise NotFoundError(service_id)
        return self.service


class FakeCheckout:
    configured = True

    def __init__(self, error=None) -> None:
        self.error = error
        self.orders = []

    async def create_checkout(self, order, return_urls):
        self.orders.append(order.order_id)
        if self.error:
            raise self.error
        return CheckoutSession(redirect_url=f"https://pay.test/{order.order_id}", provider_ref="inv-1")


class Limiter:
    def __init__(self, allowed=True) -> None:
        self.allowed = allowed

    def allow(self, subject):
        return self.allowed


@pytest.fixture
def checkout():
    return FakeCheckout()


@pytest.fixture
def client(monkeypatch, service, checkout):
    monkeypatch.setattr(storefront, "catalog", FakeCatalog(service))
    monkeypatch.setattr(storefront, "limiter", Limiter())
    monkeypatch.setitem(storefront.adapters, CRYPTO, checkout)
    monkeypatch.setattr(
        storefront,
        "webhooks",
        WebhookProcessor(
            storefront.store,
            {CARD: CardPaymentAdapter("sk_test"), CRYPTO: CryptoPaymentAdapter("https://np.test/v1", "key")},
            secrets={CARD: STRIPE_SECRET, CRYPTO: IPN_SECRET},
        ),
    )
    return TestClient(storefront.app)


ORDER = {"service_id": 5951, "link": "https://instagram.com/getfame", "quantity": 5000, "email": "buyer@example.com"}


def _ipn(order_id, invoice_id="inv-1", status="finished", amount=12.5) -> bytes:
    return json.dumps(
        {"invoice_id": invoice_id, "order_id": order_id, "payment_status": status, "price_amount": amount}
    ).encode()


def _outbox_topics():
    with SessionLocal() as db:
        return [row.topic for row in db.execute(select(OutboxEvent)).scalars()]


def test_services_hide_upstream_cost(client):
    resp = client.get("/api/services")

    assert resp.status_code == 200
    (service,) = resp.json()
    assert service["id"] == 5951
    assert "source_rate" not in service
    assert client.get("/api/services/TikTok").json() == []


def test_crypto_checkout_creates_pending_order(client, checkout):
    resp = client.post("/api/order/crypto", json=ORDER)

    assert resp.status_code == 200
    body = resp.json()
    assert Decimal(body["total"]) == Decimal("12.50")
    assert body["redirect_url"] == f"https://pay.test/{body['order_id']}"
    order = storefront.store.get(body["order_id"])
    assert order.state == "pending"
    assert order.payment_provider_ref == "inv-1"
    assert checkout.orders == [body["order_id"]]


def test_checkout_rejects_quantity_outside_bounds_before_payment(client, checkout):
    resp = client.post("/api/order/crypto", json={**ORDER, "quantity": 50})

    assert resp.status_code == 400
    assert "Quantity must be between" in resp.json()["detail"]
    assert checkout.orders == []
    assert storefront.store.list_orders() == []


def test_checkout_rejects_unknown_service(client):
    assert client.post("/api/order/crypto", json={**ORDER, "service_id": 1}).status_code == 400


def test_checkout_is_rate_limited(client, monkeypatch):
    monkeypatch.setattr(storefront, "limiter", Limiter(allowed=False))

    assert client.post("/api/order/crypto", json=ORDER).status_code == 429


def test_provider_failure_at_checkout_is_bad_gateway(client, monkeypatch):
    monkeypatch.setitem(storefront.adapters, CRYPTO, FakeCheckout(error=TransientUpstreamError("503")))

    resp = client.post("/api/order/crypto", json=ORDER)

    assert resp.status_code == 502


def test_signed_ipn_marks_order_paid_and_queues_dispatch(client):
    order_id = client.post("/api/order/crypto", json=ORDER).json()["order_id"]
    raw = _ipn(order_id)

    resp = client.post(
        "/api/webhooks/nowpayments",
        content=raw,
        headers={"x-nowpayments-sig": sign_ipn(raw, IPN_SECRET), "content-type": "application/json"},
    )

    assert resp.status_code == 200
    assert resp.json() == {"received": True}
    assert storefront.store.get(order_id).state == "paid"
    assert _outbox_topics() == ["payments.confirmed"]


def test_forged_ipn_is_rejected_without_state_change(client):
    order_id = client.post("/api/order/crypto", json=ORDER).json()["order_id"]
    signature = sign_ipn(_ipn(order_id), IPN_SECRET)

    resp = client.post(
        "/api/webhooks/nowpayments",
        content=_ipn(order_id, amount=0.01),
        headers={"x-nowpayments-sig": signature},
    )

    assert resp.status_code == 400
    assert resp.json() == {"detail": "invalid webhook"}
    assert storefront.store.get(order_id).state == "pending"
    assert _outbox_topics() == []


@pytest.mark.parametrize(
    "raw",
    [
        _ipn("nobody", invoice_id="inv-404"),
        _ipn("nobody", status="partially_paid"),
        json.dumps({"payment_status": "finished"}).encode(),
    ],
)
def test_authentic_but_unusable_ipns_are_acknowledged(client, raw):
    headers = {"x-nowpayments-sig": sign_ipn(raw, IPN_SECRET)}

    resp = client.post("/api/webhooks/nowpayments", content=raw, headers=headers)

    assert resp.status_code == 200
    assert resp.json() == {"received": True}
    assert _outbox_topics() == []


def test_signed_stripe_event_marks_card_order_paid(client, store, service, draft):
    order = store.create(draft, service, CARD)
    store.attach_provider_ref(order.order_id, "cs_test_1")
    raw = json.dumps(
        {
            "id": "evt_1",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_test_1",
                    "payment_status": "paid",
                    "amount_total": 1250,
                    "currency": "usd",
                    "metadata": {"order_id": order.order_id},
                }
            },
        }
    ).encode()

    resp = client.post("/api/webhooks/stripe", content=raw, headers={"stripe-signature": stripe_header(raw)})

    assert resp.status_code == 200
    assert store.get(order.order_id).state == "paid"


def test_stripe_event_without_signature_is_rejected(client):
    assert client.post("/api/webhooks/stripe", content=b"{}").status_code == 400


def test_order_status(client, store, pending_order, monkeypatch):
    store.mark_paid(pending_order.order_id, "inv-1", Decimal("12.50"))
    store.try_begin_dispatch(pending_order.order_id)
    store.record_dispatch_result(pending_order.order_id, Fulfilled(upstream_order_id="23501"))

    class Panel:
        async def order_status(self, upstream_order_id):
            return UpstreamStatus(upstream_order_id=upstream_order_id, status="Partial", remains=157, start_count=3572)

    monkeypatch.setattr(storefront, "provisioning", Panel())

    plain = client.get(f"/api/order/{pending_order.order_id}").json()
    refreshed = client.get(f"/api/order/{pending_order.order_id}", params={"refresh": "true"}).json()

    assert plain["state"] == "fulfilled"
    assert plain["quantity"] == 5000
    assert plain["upstream_order_id"] == "23501"
    assert plain["upstream"] is None
    assert refreshed["upstream"] == {"status": "Partial", "remains": 157, "start_count": 3572}


def test_unknown_order_is_404(client):
    assert client.get("/api/order/missing").status_code == 404


def test_health_reports_provider_configuration(client):
    body = client.get("/health").json()
    assert body["ok"] is True
    assert body["crypto_configured"] is True


def test_authentic_ipn_with_non_finite_amount_is_acknowledged(client):
    order_id = client.post("/api/order/crypto", json=ORDER).json()["order_id"]
    raw = _ipn(order_id, amount="NaN")
    headers = {"x-nowpayments-sig": sign_ipn(raw, IPN_SECRET)}

    resp = client.post("/api/webhooks/nowpayments", content=raw, headers=headers)

    assert resp.status_code == 200
    assert storefront.store.get(order_id).state == "pending"
