"""Crypto payments through NOWPayments hosted invoices."""

import json
from decimal import Decimal, InvalidOperation

import httpx

from getfame.common.errors import PermanentUpstreamError, TransientUpstreamError, UpstreamTimeout
from getfame.common.logging import logger
from getfame.common.money import from_cents
from getfame.services.orders.models import Order
from getfame.services.payments.base import (
    CRYPTO,
    CheckoutSession,
    Ignorable,
    Invalid,
    PaymentAdapter,
    PaymentConfirmed,
    ReturnUrls,
    WebhookResult,
)

CONFIRMED_STATUSES = frozenset({"finished", "confirmed"})


class CryptoPaymentAdapter(PaymentAdapter):
    """One NOWPayments invoice per order; the invoice id is the provider reference."""

    kind = CRYPTO

    def __init__(
        self,
        api_url: str,
        api_key: str | None,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def create_checkout(self, order: Order, return_urls: ReturnUrls) -> CheckoutSession:
        if not self.configured:
            raise PermanentUpstreamError("crypto payments are not configured")
        body = {
            "price_amount": float(from_cents(order.amount_cents)),
            "price_currency": order.currency.lower(),
            "order_id": order.order_id,
            "order_description": f"{order.quantity} {order.service_name}",
            "ipn_callback_url": return_urls.callback_url,
            "success_url": return_urls.success_url,
            "cancel_url": return_urls.cancel_url,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                resp = await client.post(f"{self.api_url}/invoice", json=body, headers={"x-api-key": self.api_key})
        except httpx.TimeoutException as exc:
            raise UpstreamTimeout("invoice creation timed out") from exc
        except httpx.TransportError as exc:
            raise TransientUpstreamError(f"invoice transport error: {exc}") from exc

        if resp.status_code >= 500 or resp.status_code == 429:
            raise TransientUpstreamError(f"invoice failed with status={resp.status_code}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise TransientUpstreamError("invoice returned a malformed body") from exc
        if resp.status_code >= 400:
            message = data.get("message") if isinstance(data, dict) else None
            logger.error(
                "nowpayments_invoice_rejected order_id=%s status=%s message=%s",
                order.order_id,
                resp.status_code,
                message,
            )
            raise PermanentUpstreamError(message or f"invoice rejected with status={resp.status_code}")
        if not isinstance(data, dict) or not data.get("id") or not data.get("invoice_url"):
            raise TransientUpstreamError("invoice response missing id or invoice_url")
        return CheckoutSession(redirect_url=data["invoice_url"], provider_ref=str(data["id"]))

    def parse_webhook(self, raw: bytes) -> WebhookResult:
        try:
            ipn = json.loads(raw)
        except ValueError:
            return Invalid(provider=CRYPTO, reason="body is not JSON")
        if not isinstance(ipn, dict):
            return Invalid(provider=CRYPTO, reason="body is not an object")

        invoice_id = ipn.get("invoice_id")
        if invoice_id in (None, ""):
            return Invalid(provider=CRYPTO, reason="invoice_id missing")
        provider_ref = str(invoice_id)
        status = ipn.get("payment_status")
        if not isinstance(status, str) or status not in CONFIRMED_STATUSES:
            # partially_paid, waiting, confirming, sending, failed, expired, refunded
            return Ignorable(provider=CRYPTO, provider_ref=provider_ref, reason=f"payment_status {status}")
        try:
            charged = Decimal(str(ipn.get("price_amount")))
        except InvalidOperation:
            return Invalid(provider=CRYPTO, reason="price_amount missing")
        if not charged.is_finite():
            return Invalid(provider=CRYPTO, reason=f"price_amount {charged} is not a number")
        order_id = ipn.get("order_id")
        return PaymentConfirmed(
            provider=CRYPTO,
            provider_ref=provider_ref,
            charged_amount=charged,
            currency=str(ipn.get("price_currency") or "usd").upper(),
            order_id_hint=None if order_id is None else str(order_id),
        )
