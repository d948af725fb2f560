"""Error taxonomy shared by the checkout, webhook and dispatch paths.

HTTP layers map these to status codes; the dispatcher uses the upstream
subclasses to decide between retrying and failing terminally.
"""


class ValidationError(ValueError):
    """Bad quantity/link/email/amount; rejected before reaching the store."""


class InvalidOrder(ValidationError):
    """An order draft failed validation against its catalog service."""


class AuthenticityError(ValueError):
    """Webhook payload could not be authenticated."""


class NotFoundError(LookupError):
    """Unknown order, service or provider reference."""


class InvalidTransition(ValueError):
    """Order state change not permitted by the lifecycle."""


class ConcurrencyConflict(RuntimeError):
    """A guarded update matched no row because another writer got there first."""


class UpstreamError(RuntimeError):
    """Base class for failures talking to an upstream HTTP API."""

    transient = False


class TransientUpstreamError(UpstreamError):
    """Network error, 5xx or throttling; safe to retry."""

    transient = True


class UpstreamOutcomeUnknown(TransientUpstreamError):
    """The request reached upstream but its outcome was not observed.

    It may or may not have executed, so it is reconciled before any retry.
    """


class UpstreamTimeout(UpstreamOutcomeUnknown):
    """Request timed out; the upstream may or may not have executed it."""


class PermanentUpstreamError(UpstreamError):
    """Upstream explicitly rejected the request; retrying will not help."""
