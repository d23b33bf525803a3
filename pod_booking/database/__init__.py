"""Persistence layer: models and async session management."""
from pod_booking.database.connection import (
    close_db,
    get_db,
    get_engine,
    get_session_factory,
    init_db,
    transaction,
)
from pod_booking.database.models import (
    Base,
    Booking,
    Incident,
    OutboxEvent,
    Payment,
    PaymentEvent,
    Pod,
    PodCluster,
)

__all__ = [
    "Base",
    "Booking",
    "Incident",
    "OutboxEvent",
    "Payment",
    "PaymentEvent",
    "Pod",
    "PodCluster",
    "close_db",
    "get_db",
    "get_engine",
    "get_session_factory",
    "init_db",
    "transaction",
]
