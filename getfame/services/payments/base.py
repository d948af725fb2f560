"""Provider-neutral checkout and webhook types.

A `PaymentAdapter` hides one payment provider behind two operations: creating
the hosted checkout for an order and turning an authenticated webhook body
into a tagged result the webhook processor acts on.
"""

from abc import ABC, abstractmethod
from decimal import Decimal

from pydantic import BaseModel

from getfame.services.orders.models import Order

CARD = "card"
CRYPTO = "crypto"
PROVIDERS = (CARD, CRYPTO)


class ReturnUrls(BaseModel):
    """Where the provider sends the customer and its notifications."""

    success_url: str
    cancel_url: str
    callback_url: str | None = None


class CheckoutSession(BaseModel):
    redirect_url: str
    provider_ref: str


class PaymentConfirmed(BaseModel):
    """Provider confirmed that the order was paid."""

    provider: str
    provider_ref: str
    charged_amount: Decimal
    currency: str = "USD"
    # Order id echoed back in provider metadata; cross-checked, never trusted alone.
    order_id_hint: str | None = None
    customer_email: str | None = None


class Ignorable(BaseModel):
    """Authentic event that does not change order state."""

    provider: str
    reason: str
    provider_ref: str | None = None


class Invalid(BaseModel):
    """Authentic but malformed event."""

    provider: str
    reason: str


WebhookResult = PaymentConfirmed | Ignorable | Invalid


class PaymentAdapter(ABC):
    """One payment provider behind a common interface."""

    kind: str

    @abstractmethod
    async def create_checkout(self, order: Order, return_urls: ReturnUrls) -> CheckoutSession:
        """Create the hosted checkout for `order`."""

    @abstractmethod
    def parse_webhook(self, raw: bytes) -> WebhookResult:
        """Map an already-verified webhook body onto a webhook result."""

    @property
    @abstractmethod
    def configured(self) -> bool:
        """True when credentials for this provider are present."""
