"""Card and crypto adapters: checkout creation and webhook parsing."""

import json
from decimal import Decimal
from types import SimpleNamespace

import httpx
import pytest
import stripe

from getfame.common.errors import PermanentUpstreamError, TransientUpstreamError
from getfame.services.payments.base import Ignorable, Invalid, PaymentConfirmed, ReturnUrls
from getfame.services.payments.card import CardPaymentAdapter
from getfame.services.payments.crypto import CryptoPaymentAdapter

URLS = ReturnUrls(
    success_url="https://getfame.net/success/",
    cancel_url="https://getfame.net/order/",
    callback_url="https://api.getfame.net/api/webhooks/nowpayments",
)


def _stripe_event(event_type="checkout.session.completed", **session) -> bytes:
    body = {
        "id": "cs_test_1",
        "payment_status": "paid",
        "amount_total": 1250,
        "currency": "usd",
        "metadata": {"order_id": "O1"},
        "customer_details": {"email": "buyer@example.com"},
    }
    body.update(session)
    return json.dumps({"id": "evt_1", "type": event_type, "data": {"object": body}}).encode()


def test_card_completed_and_paid_confirms():
    result = CardPaymentAdapter("sk_test").parse_webhook(_stripe_event())

    assert result == PaymentConfirmed(
        provider="card",
        provider_ref="cs_test_1",
        charged_amount=Decimal("12.50"),
        currency="USD",
        order_id_hint="O1",
        customer_email="buyer@example.com",
    )


def test_card_async_payment_succeeded_confirms():
    raw = _stripe_event("checkout.session.async_payment_succeeded", payment_status="unpaid")
    assert isinstance(CardPaymentAdapter("sk_test").parse_webhook(raw), PaymentConfirmed)


def test_card_completed_but_unpaid_is_ignorable():
    result = CardPaymentAdapter("sk_test").parse_webhook(_stripe_event(payment_status="unpaid"))
    assert isinstance(result, Ignorable)
    assert result.provider_ref == "cs_test_1"


def test_card_other_event_types_are_ignorable():
    assert isinstance(CardPaymentAdapter("sk_test").parse_webhook(_stripe_event("charge.refunded")), Ignorable)


@pytest.mark.parametrize("raw", [b"not json", b"[]", _stripe_event(amount_total=None)])
def test_card_malformed_bodies_are_invalid(raw):
    assert isinstance(CardPaymentAdapter("sk_test").parse_webhook(raw), Invalid)


def test_crypto_finished_confirms():
    raw = json.dumps(
        {
            "invoice_id": 4711,
            "order_id": "O1",
            "payment_status": "finished",
            "price_amount": 12.5,
            "price_currency": "usd",
        }
    ).encode()
    result = CryptoPaymentAdapter("https://np.test/v1", "key").parse_webhook(raw)

    assert isinstance(result, PaymentConfirmed)
    assert result.provider_ref == "4711"
    assert result.charged_amount == Decimal("12.5")
    assert result.order_id_hint == "O1"


@pytest.mark.parametrize("status", ["partially_paid", "waiting", "failed", "expired"])
def test_crypto_non_final_statuses_are_ignorable(status):
    raw = json.dumps({"invoice_id": 4711, "payment_status": status}).encode()
    result = CryptoPaymentAdapter("https://np.test/v1", "key").parse_webhook(raw)
    assert isinstance(result, Ignorable)
    assert status in result.reason


def test_crypto_without_invoice_is_invalid():
    raw = json.dumps({"payment_status": "finished"}).encode()
    assert isinstance(CryptoPaymentAdapter("https://np.test/v1", "key").parse_webhook(raw), Invalid)


@pytest.mark.asyncio
async def test_crypto_checkout_creates_invoice(pending_order):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["key"] = request.headers["x-api-key"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": 4711, "invoice_url": "https://nowpayments.io/payment/?iid=4711"})

    adapter = CryptoPaymentAdapter("https://np.test/v1/", "np-key", transport=httpx.MockTransport(handler))
    session = await adapter.create_checkout(pending_order, URLS)

    assert session.provider_ref == "4711"
    assert session.redirect_url.endswith("iid=4711")
    assert seen["url"] == "https://np.test/v1/invoice"
    assert seen["key"] == "np-key"
    assert seen["body"]["price_amount"] == 12.5
    assert seen["body"]["order_id"] == pending_order.order_id
    assert seen["body"]["ipn_callback_url"] == URLS.callback_url


@pytest.mark.asyncio
async def test_crypto_checkout_error_mapping(pending_order):
    def rejected(request):
        return httpx.Response(400, json={"message": "price_amount too small"})

    def unavailable(request):
        return httpx.Response(503, text="down")

    def adapter(handler):
        return CryptoPaymentAdapter("https://np.test/v1", "k", transport=httpx.MockTransport(handler))

    with pytest.raises(PermanentUpstreamError, match="too small"):
        await adapter(rejected).create_checkout(pending_order, URLS)
    with pytest.raises(TransientUpstreamError):
        await adapter(unavailable).create_checkout(pending_order, URLS)


@pytest.mark.asyncio
async def test_unconfigured_adapters_refuse_checkout(pending_order):
    with pytest.raises(PermanentUpstreamError):
        await CardPaymentAdapter("").create_checkout(pending_order, URLS)
    with pytest.raises(PermanentUpstreamError):
        await CryptoPaymentAdapter("https://np.test/v1", None).create_checkout(pending_order, URLS)


@pytest.mark.asyncio
async def test_card_checkout_session(monkeypatch, pending_order):
    calls = []

    def fake_create(**kwargs):
        calls.append(kwargs)
        return SimpleNamespace(id="cs_test_1", url="https://checkout.stripe.com/c/pay/cs_test_1")

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)
    session = await CardPaymentAdapter("sk_test").create_checkout(pending_order, URLS)

    assert session.provider_ref == "cs_test_1"
    (kwargs,) = calls
    assert kwargs["api_key"] == "sk_test"
    assert kwargs["metadata"]["order_id"] == pending_order.order_id
    assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 1250
    assert kwargs["line_items"][0]["price_data"]["product_data"]["name"] == "5000 Instagram Followers"
    assert kwargs["customer_email"] == "buyer@example.com"


@pytest.mark.asyncio
async def test_card_checkout_maps_stripe_errors(monkeypatch, pending_order):
    def unavailable(**kwargs):
        raise stripe.APIConnectionError("connection reset")

    monkeypatch.setattr(stripe.checkout.Session, "create", unavailable)
    with pytest.raises(TransientUpstreamError):
        await CardPaymentAdapter("sk_test").create_checkout(pending_order, URLS)


@pytest.mark.parametrize(
    "session",
    [
        {"metadata": "O1"},
        {"metadata": {"order_id": 42}},
        {"customer_details": ["buyer@example.com"]},
    ],
)
def test_card_malformed_session_fields_are_invalid(session):
    assert isinstance(CardPaymentAdapter("sk_test").parse_webhook(_stripe_event(**session)), Invalid)


@pytest.mark.parametrize("amount", ["NaN", "Infinity", "-Infinity"])
def test_crypto_non_finite_amount_is_invalid(amount):
    raw = json.dumps({"invoice_id": 4711, "payment_status": "finished", "price_amount": amount}).encode()
    assert isinstance(CryptoPaymentAdapter("https://np.test/v1", "key").parse_webhook(raw), Invalid)
