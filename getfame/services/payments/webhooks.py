"""Provider webhook handling: verify, parse, resolve, mark paid.

Everything except an authenticity failure is acknowledged, so providers do
not retry events we have already decided to drop.
"""

from pydantic import BaseModel

from getfame.common.errors import AuthenticityError, NotFoundError
from getfame.common.logging import logger, order_context
from getfame.common.metrics import webhook_events_total
from getfame.services.orders.store import OrderStore
from getfame.services.payments.base import Ignorable, Invalid, PaymentAdapter, PaymentConfirmed
from getfame.services.payments.signatures import REJECTED, SignatureVerifier

OUTCOME_CONFIRMED = "confirmed"
OUTCOME_IGNORED = "ignored"
OUTCOME_INVALID = "invalid"
OUTCOME_UNKNOWN_REFERENCE = "unknown_reference"
OUTCOME_REJECTED = "rejected"


class WebhookOutcome(BaseModel):
    provider: str
    outcome: str
    order_id: str | None = None
    order_state: str | None = None


class WebhookProcessor:
    """Turns one raw provider callback into at most one `mark_paid`."""

    def __init__(
        self,
        store: OrderStore,
        adapters: dict[str, PaymentAdapter],
        secrets: dict[str, str | None],
        verifier: SignatureVerifier | None = None,
        service_name: str = "storefront",
    ) -> None:
        self.store = store
        self.adapters = adapters
        self.secrets = secrets
        self.verifier = verifier or SignatureVerifier()
        self.service_name = service_name

    def process(self, provider: str, raw: bytes, signature: str | None, trace_id: str | None = None) -> WebhookOutcome:
        """Raises `AuthenticityError` when the callback cannot be authenticated."""

        adapter = self.adapters.get(provider)
        try:
            if adapter is None:
                raise AuthenticityError(REJECTED)
            self.verifier.verify(provider, raw, signature, self.secrets.get(provider))
        except AuthenticityError:
            self._count(provider, OUTCOME_REJECTED)
            raise

        result = adapter.parse_webhook(raw)
        if isinstance(result, Invalid):
            logger.warning("webhook_invalid provider=%s reason=%s", provider, result.reason)
            return self._done(provider, OUTCOME_INVALID)
        if isinstance(result, Ignorable):
            logger.info(
                "webhook_ignored provider=%s provider_ref=%s reason=%s",
                provider,
                result.provider_ref,
                result.reason,
            )
            return self._done(provider, OUTCOME_IGNORED)
        return self._confirm(result, trace_id)

    def _confirm(self, fact: PaymentConfirmed, trace_id: str | None) -> WebhookOutcome:
        order = self.store.find_by_provider_ref(fact.provider, fact.provider_ref)
        if order is None or (fact.order_id_hint and fact.order_id_hint != order.order_id):
            logger.warning(
                "webhook_unknown_reference provider=%s provider_ref=%s order_id_hint=%s",
                fact.provider,
                fact.provider_ref,
                fact.order_id_hint,
            )
            return self._done(fact.provider, OUTCOME_UNKNOWN_REFERENCE)

        with order_context(order.order_id):
            try:
                order = self.store.mark_paid(
                    order.order_id,
                    fact.provider_ref,
                    fact.charged_amount,
                    fact.currency,
                    enqueue_dispatch=True,
                    trace_id=trace_id,
                )
            except NotFoundError as exc:
                logger.warning("webhook_unknown_reference provider=%s error=%s", fact.provider, exc)
                return self._done(fact.provider, OUTCOME_UNKNOWN_REFERENCE)
            logger.info(
                "payment_confirmed provider=%s provider_ref=%s order_id=%s state=%s",
                fact.provider,
                fact.provider_ref,
                order.order_id,
                order.state,
            )
        return self._done(fact.provider, OUTCOME_CONFIRMED, order.order_id, order.state)

    def _done(
        self,
        provider: str,
        outcome: str,
        order_id: str | None = None,
        order_state: str | None = None,
    ) -> WebhookOutcome:
        self._count(provider, outcome)
        return WebhookOutcome(provider=provider, outcome=outcome, order_id=order_id, order_state=order_state)

    def _count(self, provider: str, outcome: str) -> None:
        webhook_events_total.labels(service=self.service_name, provider=provider, outcome=outcome).inc()
