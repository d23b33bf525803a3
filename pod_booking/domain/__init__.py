"""Domain layer: lifecycle states, transition rules and the error taxonomy."""
from pod_booking.domain.errors import (
    AmountMismatchError,
    DuplicateCodeError,
    InvalidSignatureError,
    InvalidTransitionError,
    LockTimeoutError,
    NotFoundError,
    PodBookingError,
    PodUnavailableError,
    TimeSlotConflictError,
    ValidationError,
)
from pod_booking.domain.states import (
    BookingStatus,
    IncidentSeverity,
    IncidentStatus,
    PaymentStatus,
    PodAction,
    PodStatus,
)

__all__ = [
    "AmountMismatchError",
    "BookingStatus",
    "DuplicateCodeError",
    "IncidentSeverity",
    "IncidentStatus",
    "InvalidSignatureError",
    "InvalidTransitionError",
    "LockTimeoutError",
    "NotFoundError",
    "PaymentStatus",
    "PodAction",
    "PodBookingError",
    "PodStatus",
    "PodUnavailableError",
    "TimeSlotConflictError",
    "ValidationError",
]
