"""
Domain error taxonomy.

Core operations raise these; the API layer maps ``code`` to a transport
status in one place, and the IPN handler maps them to gateway RspCodes.
Every error keeps the context a caller needs to act on it (which pod, which
conflicting interval, ...).
"""
from typing import Any, Dict


class PodBookingError(Exception):
    """Base exception for pod booking errors."""

    code = "error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form used in API error bodies."""
        return {"error": self.code, "message": self.message, "context": self.context}


class NotFoundError(PodBookingError):
    """Pod, cluster, booking, payment or incident does not exist."""

    code = "not_found"


class InvalidTransitionError(PodBookingError):
    """A state machine rejected the requested transition."""

    code = "invalid_transition"


class PodUnavailableError(PodBookingError):
    """Pod is not AVAILABLE for a new booking."""

    code = "pod_unavailable"


class TimeSlotConflictError(PodBookingError):
    """Requested interval overlaps an active booking on the same pod."""

    code = "time_slot_conflict"


class InvalidSignatureError(PodBookingError):
    """Gateway callback signature does not match."""

    code = "invalid_signature"


class AmountMismatchError(PodBookingError):
    """Callback amount differs from the stored payment amount."""

    code = "amount_mismatch"


class ValidationError(PodBookingError):
    """Malformed input or a configured limit was exceeded."""

    code = "validation_error"


class DuplicateCodeError(PodBookingError):
    """Pod code or cluster name collides with an existing one."""

    code = "duplicate_code"


class LockTimeoutError(PodBookingError):
    """A resource lock could not be acquired in time."""

    code = "lock_timeout"
