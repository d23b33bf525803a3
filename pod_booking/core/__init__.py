"""Core services: pod registry, bookings, payments, incidents."""
from pod_booking.core.booking_coordinator import BookingCoordinator
from pod_booking.core.incidents import IncidentService
from pod_booking.core.payment_engine import (
    PaymentEngine,
    PaymentIntent,
    SettlementOutcome,
    SettlementResult,
)
from pod_booking.core.pod_registry import PodRegistry

__all__ = [
    "BookingCoordinator",
    "IncidentService",
    "PaymentEngine",
    "PaymentIntent",
    "PodRegistry",
    "SettlementOutcome",
    "SettlementResult",
]
