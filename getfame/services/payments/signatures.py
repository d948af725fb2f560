"""Webhook authenticity checks.

Every rejection raises the same `AuthenticityError` message, whatever the
cause, so callers cannot probe which part of a forged request was wrong.
"""

import hashlib
import hmac
import json
from typing import Any

import stripe

from getfame.common.errors import AuthenticityError
from getfame.common.logging import logger
from getfame.services.payments.base import CARD, CRYPTO

REJECTED = "invalid webhook"


def _js_numbers(value: Any) -> Any:
    """Format numbers the way the provider's JSON serializer prints them."""

    if isinstance(value, dict):
        return {key: _js_numbers(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_js_numbers(item) for item in value]
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def canonical_ipn_body(raw: bytes) -> bytes:
    """Re-serialize an IPN body with recursively sorted keys and compact separators."""

    body = json.loads(raw)
    return json.dumps(
        _js_numbers(body),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def sign_ipn(raw: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), canonical_ipn_body(raw), hashlib.sha512).hexdigest()


class SignatureVerifier:
    """Checks provider signatures over the exact raw request body."""

    def __init__(self, card_tolerance_seconds: int = 300) -> None:
        self.card_tolerance_seconds = card_tolerance_seconds

    def verify(self, provider: str, raw: bytes, signature: str | None, secret: str | None) -> None:
        if not secret or not signature:
            self._reject(provider, "missing secret or signature")
        if provider == CARD:
            self._verify_card(raw, signature, secret)
        elif provider == CRYPTO:
            self._verify_crypto(raw, signature, secret)
        else:
            self._reject(provider, "unknown provider")

    def _verify_card(self, raw: bytes, signature: str, secret: str) -> None:
        try:
            payload = raw.decode("utf-8")
            stripe.WebhookSignature.verify_header(payload, signature, secret, self.card_tolerance_seconds)
        except (UnicodeDecodeError, stripe.SignatureVerificationError) as exc:
            self._reject(CARD, str(exc))

    def _verify_crypto(self, raw: bytes, signature: str, secret: str) -> None:
        try:
            expected = sign_ipn(raw, secret)
        except ValueError as exc:
            self._reject(CRYPTO, f"unparseable body: {exc}")
        if not hmac.compare_digest(expected, signature.strip().lower()):
            self._reject(CRYPTO, "signature mismatch")

    @staticmethod
    def _reject(provider: str, detail: str) -> None:
        logger.warning("webhook_rejected provider=%s detail=%s", provider, detail)
        raise AuthenticityError(REJECTED)
