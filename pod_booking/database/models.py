"""SQLAlchemy database models for the pod booking service."""
import uuid
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from pod_booking.domain.clock import utcnow
from pod_booking.domain.states import (
    BookingStatus,
    IncidentSeverity,
    IncidentStatus,
    PaymentStatus,
    PodStatus,
)

# JSONB on PostgreSQL, plain JSON elsewhere.
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY.
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


def _new_id() -> str:
    return str(uuid.uuid4())


def _in_clause(column: str, enum_cls: Any) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class PodCluster(Base):
    """
    A named group of pods within one location.

    Locations are owned by an external collaborator; only the reference is
    kept here.
    """

    __tablename__ = "pod_clusters"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    location_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        UniqueConstraint("location_id", "name", name="uq_cluster_location_name"),
    )

    def __repr__(self) -> str:
        """String representation of PodCluster."""
        return f"<PodCluster(id={self.id}, name={self.name})>"


class Pod(Base):
    """
    A single rentable unit.

    ``code`` is unique within its cluster only. ``status`` follows the pod
    state machine in pod_booking.domain.states.
    """

    __tablename__ = "pods"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    cluster_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("pod_clusters.id", ondelete="RESTRICT"), nullable=False
    )
    code: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=PodStatus.AVAILABLE.value, index=True
    )
    maintenance_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    soundproof_level: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    ventilation_level: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    power_outlets: Mapped[int] = mapped_column(Integer, nullable=False, default=2)
    wifi_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    max_session_duration: Mapped[int] = mapped_column(
        Integer, nullable=False, default=480
    )  # minutes
    last_cleaned_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("cluster_id", "code", name="uq_pod_cluster_code"),
        CheckConstraint(_in_clause("status", PodStatus), name="valid_pod_status"),
        CheckConstraint("soundproof_level BETWEEN 1 AND 5", name="valid_soundproof_level"),
        CheckConstraint("ventilation_level BETWEEN 1 AND 5", name="valid_ventilation_level"),
        CheckConstraint("power_outlets >= 0", name="non_negative_power_outlets"),
        CheckConstraint("max_session_duration >= 60", name="min_session_duration"),
        Index("idx_pods_cluster_status", "cluster_id", "status"),
    )

    def __repr__(self) -> str:
        """String representation of Pod."""
        return f"<Pod(id={self.id}, code={self.code}, status={self.status})>"


class Booking(Base):
    """
    Time-windowed reservation of a pod over [start_time, end_time).
    """

    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    pod_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("pods.id", ondelete="CASCADE"), nullable=False
    )
    requester_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    actual_end_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=BookingStatus.BOOKED.value
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(_in_clause("status", BookingStatus), name="valid_booking_status"),
        CheckConstraint("start_time < end_time", name="valid_booking_interval"),
        Index("idx_bookings_pod_status", "pod_id", "status"),
    )

    def __repr__(self) -> str:
        """String representation of Booking."""
        return (
            f"<Booking(id={self.id}, pod_id={self.pod_id}, "
            f"status={self.status})>"
        )


class Payment(Base):
    """
    Payment records table.

    ``order_id`` is the gateway-facing reference (vnp_TxnRef);
    ``payment_id`` is internal. ``booking_id`` is deliberately not a foreign
    key: a placeholder is synthesized when a payment is created without one.
    """

    __tablename__ = "payments"

    payment_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    order_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    booking_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    method: Mapped[str] = mapped_column(String(16), nullable=False, default="VNPAY")
    order_info: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=PaymentStatus.INITIATED.value, index=True
    )
    gateway_data: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    authorized_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint(_in_clause("status", PaymentStatus), name="valid_payment_status"),
        Index("idx_payments_booking_status", "booking_id", "status"),
    )

    def __repr__(self) -> str:
        """String representation of Payment."""
        return (
            f"<Payment(payment_id={self.payment_id}, order_id={self.order_id}, "
            f"amount={self.amount}, status={self.status})>"
        )


class PaymentEvent(Base):
    """
    Payment events audit trail table.

    Stores all events related to a payment for complete audit trail.
    Immutable once written.
    """

    __tablename__ = "payment_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    payment_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    correlation_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    __table_args__ = (Index("idx_payment_events_type", "event_type"),)

    def __repr__(self) -> str:
        """String representation of PaymentEvent."""
        return (
            f"<PaymentEvent(id={self.id}, payment_id={self.payment_id}, "
            f"type={self.event_type})>"
        )


class Incident(Base):
    """Fault report against a pod."""

    __tablename__ = "incidents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    pod_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("pods.id", ondelete="CASCADE"), nullable=False, index=True
    )
    reporter_id: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[str] = mapped_column(
        String(16), nullable=False, default=IncidentSeverity.LOW.value
    )
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=IncidentStatus.PENDING.value, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(_in_clause("severity", IncidentSeverity), name="valid_incident_severity"),
        CheckConstraint(_in_clause("status", IncidentStatus), name="valid_incident_status"),
    )

    def __repr__(self) -> str:
        """String representation of Incident."""
        return f"<Incident(id={self.id}, pod_id={self.pod_id}, severity={self.severity})>"


class OutboxEvent(Base):
    """
    Transactional outbox events table.

    Events are written in the same transaction as domain changes,
    then published asynchronously by a background worker.
    """

    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    aggregate_id: Mapped[str] = mapped_column(String(64), nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_outbox_aggregate", "aggregate_id", "aggregate_type"),
        Index("idx_outbox_pending", "published", "attempts"),
    )

    def __repr__(self) -> str:
        """String representation of OutboxEvent."""
        return (
            f"<OutboxEvent(id={self.id}, type={self.event_type}, "
            f"published={self.published})>"
        )
