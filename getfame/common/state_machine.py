"""Order lifecycle states and the transitions OrderStore enforces."""

from getfame.common.errors import InvalidTransition

PENDING = "pending"
PAID = "paid"
DISPATCHING = "dispatching"
FULFILLED = "fulfilled"
DISPATCH_FAILED = "dispatch_failed"

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    PENDING: {PAID},
    PAID: {DISPATCHING},
    DISPATCHING: {FULFILLED, DISPATCH_FAILED},
    # Retry edge; only reachable through a dispatch claim.
    DISPATCH_FAILED: {DISPATCHING},
    FULFILLED: set(),
}

# States a dispatch claim may start from.
DISPATCHABLE_STATES: tuple[str, ...] = (PAID, DISPATCH_FAILED)


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Invalid transition: {current} -> {new}")
