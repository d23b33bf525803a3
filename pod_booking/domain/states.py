"""
Lifecycle states and transition functions.

Every state machine in the service is expressed as a pure function that
takes the current state (and the requested action) and returns the next
state or raises InvalidTransitionError. Callers persist the result; nothing
here touches the database or keeps hidden "previous status" fields.

Pod state machine:

    AVAILABLE --reserve--> OCCUPIED --release(cleaning)--> NEEDS_CLEANING
        ^                     |                                |
        |                 release(cancel)                start_cleaning
        |                     v                                v
        +------------------ AVAILABLE <--complete_cleaning-- CLEANING

    any --enter_maintenance--> MAINTENANCE
    any --force_out_of_service--> OUT_OF_SERVICE
    MAINTENANCE | OUT_OF_SERVICE --exit_maintenance--> AVAILABLE (or NEEDS_CLEANING)
"""
from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple

from pod_booking.domain.errors import InvalidTransitionError


class PodStatus(str, Enum):
    """Pod lifecycle states."""

    AVAILABLE = "AVAILABLE"
    OCCUPIED = "OCCUPIED"
    NEEDS_CLEANING = "NEEDS_CLEANING"
    CLEANING = "CLEANING"
    MAINTENANCE = "MAINTENANCE"
    OUT_OF_SERVICE = "OUT_OF_SERVICE"


class PodAction(str, Enum):
    """Guarded operations on a pod."""

    RESERVE = "reserve"
    RELEASE_TO_CLEANING = "release_to_cleaning"
    RELEASE_TO_AVAILABLE = "release_to_available"
    START_CLEANING = "start_cleaning"
    COMPLETE_CLEANING = "complete_cleaning"
    ENTER_MAINTENANCE = "enter_maintenance"
    FORCE_OUT_OF_SERVICE = "force_out_of_service"
    EXIT_MAINTENANCE = "exit_maintenance"


# Administrative override states: a booking that ends while its pod sits in
# one of these must not drag the pod back into circulation.
OVERRIDE_STATES: FrozenSet[PodStatus] = frozenset(
    {PodStatus.MAINTENANCE, PodStatus.OUT_OF_SERVICE}
)

# action -> (allowed source states, or None for "any"; target state)
_POD_TRANSITIONS: Dict[PodAction, Tuple[Optional[FrozenSet[PodStatus]], PodStatus]] = {
    PodAction.RESERVE: (frozenset({PodStatus.AVAILABLE}), PodStatus.OCCUPIED),
    PodAction.RELEASE_TO_CLEANING: (frozenset({PodStatus.OCCUPIED}), PodStatus.NEEDS_CLEANING),
    PodAction.RELEASE_TO_AVAILABLE: (frozenset({PodStatus.OCCUPIED}), PodStatus.AVAILABLE),
    PodAction.START_CLEANING: (frozenset({PodStatus.NEEDS_CLEANING}), PodStatus.CLEANING),
    PodAction.COMPLETE_CLEANING: (frozenset({PodStatus.CLEANING}), PodStatus.AVAILABLE),
    PodAction.ENTER_MAINTENANCE: (None, PodStatus.MAINTENANCE),
    PodAction.FORCE_OUT_OF_SERVICE: (None, PodStatus.OUT_OF_SERVICE),
    PodAction.EXIT_MAINTENANCE: (OVERRIDE_STATES, PodStatus.AVAILABLE),
}


def next_pod_status(
    current: PodStatus | str,
    action: PodAction,
    *,
    require_cleaning: bool = False,
) -> PodStatus:
    """
    Compute the status a pod moves to when ``action`` is applied.

    Args:
        current: Current pod status
        action: Requested operation
        require_cleaning: Route pods leaving maintenance through NEEDS_CLEANING

    Returns:
        PodStatus: The new status

    Raises:
        InvalidTransitionError: If ``action`` is not allowed from ``current``
    """
    current = PodStatus(current)
    allowed, target = _POD_TRANSITIONS[action]

    if allowed is not None and current not in allowed:
        raise InvalidTransitionError(
            f"Cannot {action.value} a pod in status {current.value}",
            entity="pod",
            action=action.value,
            current_status=current.value,
        )

    if action == PodAction.EXIT_MAINTENANCE and require_cleaning:
        return PodStatus.NEEDS_CLEANING
    return target


class BookingStatus(str, Enum):
    """Booking lifecycle states."""

    BOOKED = "BOOKED"
    IN_USE = "IN_USE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


ACTIVE_BOOKING_STATES: FrozenSet[BookingStatus] = frozenset(
    {BookingStatus.BOOKED, BookingStatus.IN_USE}
)

_BOOKING_TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
    BookingStatus.BOOKED: frozenset(
        {BookingStatus.IN_USE, BookingStatus.COMPLETED, BookingStatus.CANCELLED}
    ),
    BookingStatus.IN_USE: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}


def next_booking_status(current: BookingStatus | str, target: BookingStatus) -> BookingStatus:
    """Validate a booking transition and return the target status."""
    current = BookingStatus(current)
    if target not in _BOOKING_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Cannot move booking from {current.value} to {target.value}",
            entity="booking",
            current_status=current.value,
            target_status=target.value,
        )
    return target


class PaymentStatus(str, Enum):
    """
    Payment lifecycle states.

    AUTHORIZED is the success terminal state reported by the gateway (the
    payment is complete from the customer's point of view).

    State machine:
    INITIATED → AUTHORIZED → REFUNDED
        ↓
      FAILED | CANCELLED
    """

    INITIATED = "INITIATED"
    AUTHORIZED = "AUTHORIZED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"


_PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.INITIATED: frozenset(
        {PaymentStatus.AUTHORIZED, PaymentStatus.FAILED, PaymentStatus.CANCELLED}
    ),
    PaymentStatus.AUTHORIZED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
}


def next_payment_status(current: PaymentStatus | str, target: PaymentStatus) -> PaymentStatus:
    """Validate a forward-only payment transition and return the target status."""
    current = PaymentStatus(current)
    if target not in _PAYMENT_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Cannot move payment from {current.value} to {target.value}",
            entity="payment",
            current_status=current.value,
            target_status=target.value,
        )
    return target


class IncidentSeverity(str, Enum):
    """Incident severities."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


# Severities that take the pod out of service as soon as they are reported.
OUT_OF_SERVICE_SEVERITIES: FrozenSet[IncidentSeverity] = frozenset(
    {IncidentSeverity.HIGH, IncidentSeverity.CRITICAL}
)


class IncidentStatus(str, Enum):
    """Incident handling progression, in order."""

    PENDING = "PENDING"
    INVESTIGATING = "INVESTIGATING"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


_INCIDENT_ORDER = list(IncidentStatus)


def next_incident_status(current: IncidentStatus | str, target: IncidentStatus) -> IncidentStatus:
    """
    Incidents only move forward. Skipping ahead (PENDING -> RESOLVED) is
    allowed; going back or staying put is not.
    """
    current = IncidentStatus(current)
    if _INCIDENT_ORDER.index(target) <= _INCIDENT_ORDER.index(current):
        raise InvalidTransitionError(
            f"Cannot move incident from {current.value} to {target.value}",
            entity="incident",
            current_status=current.value,
            target_status=target.value,
        )
    return target
