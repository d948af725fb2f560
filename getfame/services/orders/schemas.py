"""Request/response schemas and dispatch outcomes for order endpoints."""

from decimal import Decimal

from pydantic import BaseModel, Field, field_validator

FAILURE_TRANSIENT = "transient"
FAILURE_PERMANENT = "permanent"
FAILURE_UNKNOWN = "unknown"


class OrderDraft(BaseModel):
    """Checkout payload accepted from the storefront."""

    service_id: int = Field(gt=0)
    link: str = Field(min_length=5, max_length=500)
    quantity: int = Field(gt=0, le=1_000_000)
    email: str = Field(min_length=3, max_length=254)

    @field_validator("link", "email")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()


class CheckoutResponse(BaseModel):
    order_id: str
    redirect_url: str
    total: Decimal


class UpstreamProgress(BaseModel):
    status: str
    remains: int | None = None
    start_count: int | None = None


class OrderStatusResponse(BaseModel):
    """Public view of one order."""

    order_id: str
    state: str
    service: str
    quantity: int
    total: Decimal
    upstream_order_id: str | None = None
    upstream: UpstreamProgress | None = None


class OpsOrderView(BaseModel):
    """Operator view including failure details."""

    order_id: str
    state: str
    service_id: int
    link: str
    quantity: int
    email: str
    payment_provider: str
    payment_provider_ref: str | None
    upstream_order_id: str | None
    retry_count: int
    failure_kind: str | None
    last_error: str | None


class Fulfilled(BaseModel):
    """Upstream accepted the order."""

    upstream_order_id: str = Field(min_length=1)


class Failed(BaseModel):
    """Dispatch attempt failed.

    `final` marks the end of the automatic retry window; only final failures
    are announced to the notification sink.
    """

    reason: str
    kind: str = FAILURE_TRANSIENT
    final: bool = True
