"""
Booking coordinator.

Reserves pods against half-open time windows [start, end) and releases them
when a booking completes or is cancelled. The overlap check, the booking
insert and the pod status flip share one transaction that commits while the
pod lock is still held, so two concurrent requests for the same pod can never
both succeed.
"""
from datetime import datetime
from typing import List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pod_booking.config import Settings, get_settings
from pod_booking.core.identifiers import is_placeholder_booking_id
from pod_booking.core.locking import LockManager, get_lock_manager, pod_lock_key
from pod_booking.core.outbox import write_outbox_event
from pod_booking.core.pod_registry import PodRegistry
from pod_booking.database.connection import transaction
from pod_booking.database.models import Booking
from pod_booking.domain.clock import as_utc, utcnow
from pod_booking.domain.errors import (
    InvalidTransitionError,
    NotFoundError,
    PodBookingError,
    PodUnavailableError,
    TimeSlotConflictError,
    ValidationError,
)
from pod_booking.domain.states import (
    ACTIVE_BOOKING_STATES,
    OVERRIDE_STATES,
    BookingStatus,
    PodAction,
    PodStatus,
    next_booking_status,
)
from pod_booking.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def intervals_overlap(
    start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime
) -> bool:
    """Half-open overlap: touching endpoints do not conflict."""
    return start_a < end_b and start_b < end_a


def booking_payload(booking: Booking) -> dict:
    return {
        "booking_id": booking.id,
        "pod_id": booking.pod_id,
        "requester_id": booking.requester_id,
        "status": booking.status,
        "start_time": as_utc(booking.start_time).isoformat(),
        "end_time": as_utc(booking.end_time).isoformat(),
    }


class BookingCoordinator:
    """Creates bookings against available pods and releases them again."""

    def __init__(
        self,
        pod_registry: Optional[PodRegistry] = None,
        lock_manager: Optional[LockManager] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.lock_manager = lock_manager or get_lock_manager()
        self.pod_registry = pod_registry or PodRegistry(self.lock_manager, self.settings)

    async def create_booking(
        self,
        db: AsyncSession,
        pod_id: str,
        requester_id: str,
        start_time: datetime,
        end_time: datetime,
    ) -> Booking:
        """
        Reserve a pod for [start_time, end_time).

        Flow:
        1. Validate the interval
        2. Acquire the pod lock and load the pod
        3. Require the pod to be AVAILABLE
        4. Reject overlaps with BOOKED/IN_USE bookings on the pod
        5. Insert the booking, flip the pod to OCCUPIED, write the outbox event
        6. Commit, then release the lock

        Raises:
            ValidationError: start >= end, or longer than the pod's max session
            NotFoundError: Unknown pod
            PodUnavailableError: Pod is not AVAILABLE
            TimeSlotConflictError: Interval overlaps an active booking
        """
        start_time, end_time = as_utc(start_time), as_utc(end_time)
        if start_time >= end_time:
            metrics.record_booking("create", "invalid")
            raise ValidationError(
                "start_time must be before end_time",
                start_time=start_time.isoformat(),
                end_time=end_time.isoformat(),
            )
        if not requester_id:
            raise ValidationError("requester_id is required")

        logger.info(
            "booking_creation_started",
            pod_id=pod_id,
            requester_id=requester_id,
            start_time=start_time.isoformat(),
            end_time=end_time.isoformat(),
        )

        try:
            async with self.lock_manager.hold(pod_lock_key(pod_id)):
                async with transaction(db):
                    pod = await self.pod_registry.load_for_update(db, pod_id)

                    if pod.status != PodStatus.AVAILABLE.value:
                        raise PodUnavailableError(
                            f"Pod is {pod.status}", pod_id=pod_id, current_status=pod.status
                        )

                    duration_minutes = (end_time - start_time).total_seconds() / 60
                    if duration_minutes > pod.max_session_duration:
                        raise ValidationError(
                            f"Booking exceeds the pod's {pod.max_session_duration} minute limit",
                            pod_id=pod_id,
                            duration_minutes=duration_minutes,
                            max_session_duration=pod.max_session_duration,
                        )

                    for existing in await self._active_bookings(db, pod_id):
                        existing_start = as_utc(existing.start_time)
                        existing_end = as_utc(existing.end_time)
                        if intervals_overlap(start_time, end_time, existing_start, existing_end):
                            raise TimeSlotConflictError(
                                "Requested time overlaps an existing booking",
                                pod_id=pod_id,
                                conflicting_booking_id=existing.id,
                                conflict_start=existing_start.isoformat(),
                                conflict_end=existing_end.isoformat(),
                            )

                    booking = Booking(
                        pod_id=pod_id,
                        requester_id=requester_id,
                        start_time=start_time,
                        end_time=end_time,
                        status=BookingStatus.BOOKED.value,
                    )
                    db.add(booking)
                    await db.flush()

                    self.pod_registry.apply_transition(pod, PodAction.RESERVE)
                    write_outbox_event(
                        db, booking.id, "booking", "booking.created", booking_payload(booking)
                    )

        except PodUnavailableError:
            metrics.record_booking("create", "pod_unavailable")
            raise
        except TimeSlotConflictError as e:
            metrics.record_booking("create", "conflict")
            logger.info("booking_time_slot_conflict", context=e.context)
            raise

        metrics.record_booking("create", "created")
        metrics.record_booking_duration(duration_minutes)
        logger.info("booking_created", booking_id=booking.id, pod_id=pod_id)
        return booking

    async def _active_bookings(self, db: AsyncSession, pod_id: str) -> List[Booking]:
        result = await db.execute(
            select(Booking).where(
                Booking.pod_id == pod_id,
                Booking.status.in_([s.value for s in ACTIVE_BOOKING_STATES]),
            )
        )
        return list(result.scalars().all())

    async def _load_for_update(self, db: AsyncSession, booking_id: str) -> Booking:
        result = await db.execute(
            select(Booking)
            .where(Booking.id == booking_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        booking = result.scalar_one_or_none()
        if booking is None:
            raise NotFoundError("Booking not found", booking_id=booking_id)
        return booking

    async def get_booking(self, db: AsyncSession, booking_id: str) -> Booking:
        booking = await db.get(Booking, booking_id)
        if booking is None:
            raise NotFoundError("Booking not found", booking_id=booking_id)
        return booking

    async def list_bookings(
        self,
        db: AsyncSession,
        pod_id: Optional[str] = None,
        requester_id: Optional[str] = None,
        status: Optional[BookingStatus] = None,
    ) -> List[Booking]:
        stmt = select(Booking).order_by(Booking.start_time)
        if pod_id is not None:
            stmt = stmt.where(Booking.pod_id == pod_id)
        if requester_id is not None:
            stmt = stmt.where(Booking.requester_id == requester_id)
        if status is not None:
            stmt = stmt.where(Booking.status == BookingStatus(status).value)
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def start_session(self, db: AsyncSession, booking_id: str) -> Booking:
        """Check-in: BOOKED -> IN_USE. The pod stays OCCUPIED."""
        pod_id = (await self.get_booking(db, booking_id)).pod_id
        async with self.lock_manager.hold(pod_lock_key(pod_id)):
            async with transaction(db):
                booking = await self._load_for_update(db, booking_id)
                booking.status = next_booking_status(booking.status, BookingStatus.IN_USE).value

        metrics.record_booking("start_session", "started")
        logger.info("booking_session_started", booking_id=booking_id, pod_id=pod_id)
        return booking

    async def complete_booking(self, db: AsyncSession, booking_id: str) -> Booking:
        """BOOKED/IN_USE -> COMPLETED; the pod goes to NEEDS_CLEANING."""
        return await self._finish(db, booking_id, BookingStatus.COMPLETED)

    async def cancel_booking(self, db: AsyncSession, booking_id: str) -> Booking:
        """BOOKED/IN_USE -> CANCELLED; the pod goes back to AVAILABLE."""
        return await self._finish(db, booking_id, BookingStatus.CANCELLED)

    async def _finish(
        self,
        db: AsyncSession,
        booking_id: str,
        target: BookingStatus,
        only_from: Optional[BookingStatus] = None,
    ) -> Optional[Booking]:
        """
        End a booking and release its pod.

        A pod in an administrative override state (MAINTENANCE,
        OUT_OF_SERVICE) is left where it is. Any other non-OCCUPIED pod
        status means the records disagree; nothing is written. Neither is it
        when another active booking holds the OCCUPIED pod.

        With ``only_from``, a booking found in any other status is left
        untouched and None is returned.
        """
        operation = "complete" if target == BookingStatus.COMPLETED else "cancel"
        pod_id = (await self.get_booking(db, booking_id)).pod_id

        try:
            async with self.lock_manager.hold(pod_lock_key(pod_id)):
                async with transaction(db):
                    booking = await self._load_for_update(db, booking_id)
                    if only_from is not None and booking.status != only_from.value:
                        logger.info(
                            "booking_release_skipped_status",
                            booking_id=booking_id,
                            status=booking.status,
                        )
                        return None
                    new_status = next_booking_status(booking.status, target)

                    pod = await self.pod_registry.load_for_update(db, pod_id)
                    if pod.status == PodStatus.OCCUPIED.value:
                        holders = [
                            other
                            for other in await self._active_bookings(db, pod_id)
                            if other.id != booking.id
                        ]
                        if holders:
                            raise InvalidTransitionError(
                                "Pod was re-occupied by another booking",
                                entity="pod",
                                pod_id=pod_id,
                                booking_id=booking_id,
                                current_status=pod.status,
                                occupying_booking_id=holders[0].id,
                            )
                        action = (
                            PodAction.RELEASE_TO_CLEANING
                            if target == BookingStatus.COMPLETED
                            else PodAction.RELEASE_TO_AVAILABLE
                        )
                        self.pod_registry.apply_transition(pod, action)
                    elif PodStatus(pod.status) in OVERRIDE_STATES:
                        logger.info(
                            "booking_release_pod_left_in_override",
                            booking_id=booking_id,
                            pod_id=pod_id,
                            pod_status=pod.status,
                        )
                    else:
                        raise InvalidTransitionError(
                            f"Pod is {pod.status}, expected OCCUPIED",
                            entity="pod",
                            pod_id=pod_id,
                            booking_id=booking_id,
                            current_status=pod.status,
                        )

                    booking.status = new_status.value
                    if target == BookingStatus.COMPLETED:
                        booking.actual_end_time = utcnow()
                    write_outbox_event(
                        db,
                        booking.id,
                        "booking",
                        f"booking.{new_status.value.lower()}",
                        booking_payload(booking),
                    )

        except InvalidTransitionError:
            metrics.record_booking(operation, "rejected")
            raise

        metrics.record_booking(operation, new_status.value.lower())
        logger.info(
            "booking_finished", booking_id=booking_id, pod_id=pod_id, status=new_status.value
        )
        return booking

    async def release_for_failed_payment(
        self, db: AsyncSession, booking_id: str
    ) -> Optional[Booking]:
        """
        Cancel the booking behind a failed or expired payment.

        Placeholder and unknown booking ids are ignored, as are bookings that
        already moved past BOOKED.
        """
        if is_placeholder_booking_id(booking_id):
            logger.info("booking_release_skipped_placeholder", booking_id=booking_id)
            return None

        try:
            return await self._finish(
                db, booking_id, BookingStatus.CANCELLED, only_from=BookingStatus.BOOKED
            )
        except NotFoundError:
            logger.warning("booking_release_skipped_unknown", booking_id=booking_id)
            return None
        except PodBookingError as e:
            logger.error(
                "booking_release_failed", booking_id=booking_id, error=e.code, context=e.context
            )
            raise
