"""Subscription status state machine.

Every write that changes a subscription's status must go through
``assert_valid_transition`` before it is persisted. Writing the current
status again is always allowed.
"""

from billing_core.models.subscription import SubscriptionStatus

VALID_STATUS_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    # Initial state while the first payment is being set up
    SubscriptionStatus.INCOMPLETE: frozenset(
        {
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.TRIALING,
            SubscriptionStatus.INCOMPLETE_EXPIRED,
            SubscriptionStatus.CANCELED,
        }
    ),
    SubscriptionStatus.INCOMPLETE_EXPIRED: frozenset(),
    SubscriptionStatus.TRIALING: frozenset(
        {
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.PAST_DUE,
            SubscriptionStatus.CANCELED,
            SubscriptionStatus.PAUSED,
        }
    ),
    SubscriptionStatus.ACTIVE: frozenset(
        {
            SubscriptionStatus.PAST_DUE,
            SubscriptionStatus.CANCELED,
            SubscriptionStatus.PAUSED,
            SubscriptionStatus.UNPAID,
        }
    ),
    SubscriptionStatus.PAST_DUE: frozenset(
        {
            SubscriptionStatus.ACTIVE,  # payment recovered
            SubscriptionStatus.UNPAID,  # grace period expired
            SubscriptionStatus.CANCELED,
        }
    ),
    SubscriptionStatus.UNPAID: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED}
    ),
    SubscriptionStatus.PAUSED: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED}
    ),
    # Reactivation requires a new subscription
    SubscriptionStatus.CANCELED: frozenset(),
}


class InvalidStatusTransition(ValueError):
    """Raised when a status change is not allowed by the transition table."""

    def __init__(
        self,
        from_status: SubscriptionStatus,
        to_status: SubscriptionStatus,
        subscription_id: str | None = None,
    ):
        self.from_status = from_status
        self.to_status = to_status
        self.subscription_id = subscription_id
        target = f" for subscription {subscription_id}" if subscription_id else ""
        super().__init__(
            f"Invalid subscription status transition{target}: "
            f"{from_status.value} -> {to_status.value}"
        )


def _coerce(status: SubscriptionStatus | str) -> SubscriptionStatus:
    if isinstance(status, SubscriptionStatus):
        return status
    try:
        return SubscriptionStatus(status)
    except ValueError:
        raise ValueError(f"Unknown subscription status: {status}") from None


def is_valid_transition(
    from_status: SubscriptionStatus | str, to_status: SubscriptionStatus | str
) -> bool:
    """Check whether moving from ``from_status`` to ``to_status`` is allowed."""
    source = _coerce(from_status)
    target = _coerce(to_status)
    if source == target:
        return True
    return target in VALID_STATUS_TRANSITIONS[source]


def assert_valid_transition(
    from_status: SubscriptionStatus | str,
    to_status: SubscriptionStatus | str,
    subscription_id: object | None = None,
) -> None:
    """Raise InvalidStatusTransition unless the transition is allowed.

    Args:
        from_status: Current subscription status.
        to_status: Requested subscription status.
        subscription_id: Optional subscription ID included in the error.

    Raises:
        InvalidStatusTransition: If the table has no such edge.
    """
    if not is_valid_transition(from_status, to_status):
        raise InvalidStatusTransition(
            _coerce(from_status),
            _coerce(to_status),
            str(subscription_id) if subscription_id is not None else None,
        )


def get_valid_transitions(status: SubscriptionStatus | str) -> frozenset[SubscriptionStatus]:
    return VALID_STATUS_TRANSITIONS[_coerce(status)]


def is_terminal(status: SubscriptionStatus | str) -> bool:
    """A status is terminal when no transition leaves it."""
    return not VALID_STATUS_TRANSITIONS[_coerce(status)]
