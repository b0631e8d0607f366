"""
Booking lifecycle rules.

    pending  ─┬─> accepted ─┬─> paid ─┬─> completed
              ├─> declined  │         ├─> disputed ──> refunded
              └─> canceled_customer   └─> refunded
                            ├─> canceled_provider
                            └─> canceled_customer

Statuses written before the rename ("confirmed", "canceled") are mapped onto
their canonical values by normalize_status. Only deserialization code should
need to call it; everything past the schema layer works with BookingStatus.
"""

from enum import StrEnum

from app.exceptions import InvalidTransitionError, UnknownStatusError


class BookingStatus(StrEnum):
    PENDING = "pending"  # requested by the customer, awaiting the provider
    ACCEPTED = "accepted"  # provider agreed, awaiting payment
    DECLINED = "declined"
    PAID = "paid"  # payment captured, work not yet confirmed
    COMPLETED = "completed"
    CANCELED_CUSTOMER = "canceled_customer"
    CANCELED_PROVIDER = "canceled_provider"
    DISPUTED = "disputed"
    REFUNDED = "refunded"


LEGACY_STATUS_ALIASES: dict[str, BookingStatus] = {
    "confirmed": BookingStatus.ACCEPTED,
    "canceled": BookingStatus.CANCELED_CUSTOMER,
}

_ALLOWED_TRANSITIONS: dict[BookingStatus, tuple[BookingStatus, ...]] = {
    BookingStatus.PENDING: (
        BookingStatus.ACCEPTED,
        BookingStatus.DECLINED,
        BookingStatus.CANCELED_CUSTOMER,
    ),
    BookingStatus.ACCEPTED: (
        BookingStatus.PAID,
        BookingStatus.CANCELED_PROVIDER,
        BookingStatus.CANCELED_CUSTOMER,
    ),
    BookingStatus.DECLINED: (),
    BookingStatus.PAID: (
        BookingStatus.COMPLETED,
        BookingStatus.DISPUTED,
        BookingStatus.REFUNDED,
    ),
    BookingStatus.COMPLETED: (),
    BookingStatus.CANCELED_CUSTOMER: (),
    BookingStatus.CANCELED_PROVIDER: (),
    BookingStatus.DISPUTED: (BookingStatus.REFUNDED,),
    BookingStatus.REFUNDED: (),
}

TERMINAL_STATUSES: frozenset[BookingStatus] = frozenset(
    s for s, allowed in _ALLOWED_TRANSITIONS.items() if not allowed
)


def normalize_status(status: str) -> BookingStatus:
    """Resolve a stored or submitted status string to its canonical value."""
    if status in LEGACY_STATUS_ALIASES:
        return LEGACY_STATUS_ALIASES[status]
    try:
        return BookingStatus(status)
    except ValueError:
        raise UnknownStatusError(str(status)) from None


def status_aliases(status: str) -> list[str]:
    """All raw values that normalize to `status`, canonical value first."""
    canonical = normalize_status(status)
    return [canonical.value] + [
        alias for alias, target in LEGACY_STATUS_ALIASES.items() if target == canonical
    ]


def can_transition(current: str, next_status: str) -> bool:
    try:
        normalized_current = normalize_status(current)
    except UnknownStatusError:
        return False
    return next_status in _ALLOWED_TRANSITIONS[normalized_current]


def assert_transition(current: str, next_status: str) -> None:
    """
    Raise InvalidTransitionError unless `current -> next_status` is legal.
    An unrecognised `current` raises UnknownStatusError instead.
    """
    normalized_current = normalize_status(current)
    if not can_transition(normalized_current, next_status):
        raise InvalidTransitionError(
            current=normalized_current.value,
            attempted=str(next_status),
            allowed=[s.value for s in _ALLOWED_TRANSITIONS[normalized_current]],
        )


def get_allowed_transitions(current: str) -> list[BookingStatus]:
    return list(_ALLOWED_TRANSITIONS[normalize_status(current)])
