"""Card payments through Stripe Checkout."""

import asyncio
import json

import stripe

from getfame.common.errors import PermanentUpstreamError, TransientUpstreamError
from getfame.common.logging import logger
from getfame.common.money import from_cents
from getfame.services.orders.models import Order
from getfame.services.payments.base import (
    CARD,
    CheckoutSession,
    Ignorable,
    Invalid,
    PaymentAdapter,
    PaymentConfirmed,
    ReturnUrls,
    WebhookResult,
)

CHECKOUT_COMPLETED = "checkout.session.completed"
ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"

_TRANSIENT_STRIPE_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


class CardPaymentAdapter(PaymentAdapter):
    """Hosted Stripe Checkout session per order."""

    kind = CARD

    def __init__(self, secret_key: str | None) -> None:
        self.secret_key = secret_key

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    async def create_checkout(self, order: Order, return_urls: ReturnUrls) -> CheckoutSession:
        if not self.configured:
            raise PermanentUpstreamError("card payments are not configured")
        try:
            # The SDK is synchronous; keep it off the event loop.
            session = await asyncio.to_thread(
                stripe.checkout.Session.create,
                api_key=self.secret_key,
                mode="payment",
                payment_method_types=["card"],
                line_items=[
                    {
                        "price_data": {
                            "currency": order.currency.lower(),
                            "product_data": {"name": f"{order.quantity} {order.service_name}"},
                            "unit_amount": order.amount_cents,
                        },
                        "quantity": 1,
                    }
                ],
                customer_email=order.email,
                client_reference_id=order.order_id,
                metadata={"order_id": order.order_id, "service_id": str(order.service_id)},
                success_url=return_urls.success_url,
                cancel_url=return_urls.cancel_url,
                idempotency_key=f"checkout-{order.order_id}",
            )
        except _TRANSIENT_STRIPE_ERRORS as exc:
            logger.error("stripe_checkout_failed order_id=%s transient=true error=%s", order.order_id, exc)
            raise TransientUpstreamError(f"stripe checkout failed: {exc}") from exc
        except stripe.StripeError as exc:
            logger.error("stripe_checkout_failed order_id=%s transient=false error=%s", order.order_id, exc)
            raise PermanentUpstreamError(f"stripe checkout rejected: {exc}") from exc
        return CheckoutSession(redirect_url=session.url, provider_ref=session.id)

    def parse_webhook(self, raw: bytes) -> WebhookResult:
        try:
            event = json.loads(raw)
        except ValueError:
            return Invalid(provider=CARD, reason="body is not JSON")
        if not isinstance(event, dict):
            return Invalid(provider=CARD, reason="body is not an object")

        event_type = event.get("type")
        data = event.get("data")
        session = data.get("object") if isinstance(data, dict) else None
        if event_type not in (CHECKOUT_COMPLETED, ASYNC_PAYMENT_SUCCEEDED):
            return Ignorable(provider=CARD, reason=f"event type {event_type}")
        if not isinstance(session, dict) or not session.get("id"):
            return Invalid(provider=CARD, reason="checkout session missing")

        # Delayed payment methods complete the session before the money moves.
        if event_type == CHECKOUT_COMPLETED and session.get("payment_status") != "paid":
            return Ignorable(
                provider=CARD,
                provider_ref=str(session["id"]),
                reason=f"payment_status {session.get('payment_status')}",
            )
        amount_total = session.get("amount_total")
        if not isinstance(amount_total, int):
            return Invalid(provider=CARD, reason="amount_total missing")

        metadata = session.get("metadata") or {}
        customer = session.get("customer_details") or {}
        if not isinstance(metadata, dict) or not isinstance(customer, dict):
            return Invalid(provider=CARD, reason="metadata or customer_details is not an object")
        order_id_hint = metadata.get("order_id") or session.get("client_reference_id")
        customer_email = customer.get("email") or session.get("customer_email")
        if not isinstance(order_id_hint, (str, type(None))) or not isinstance(customer_email, (str, type(None))):
            return Invalid(provider=CARD, reason="order id or customer email is not a string")
        return PaymentConfirmed(
            provider=CARD,
            provider_ref=str(session["id"]),
            charged_amount=from_cents(amount_total),
            currency=str(session.get("currency") or "usd").upper(),
            order_id_hint=order_id_hint,
            customer_email=customer_email,
        )
