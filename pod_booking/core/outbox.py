"""
Transactional outbox.

State changes (booking.created, payment.authorized, incident.reported ...)
add their event to the session of the transaction that makes the change, so
an event exists if and only if the change committed. OutboxPublisher relays
them afterwards, at least once and in id order.

Delivery failures are counted per event. After ``max_attempts`` failures an
event is parked (dead-lettered): it stays unpublished but is no longer
fetched, so one poison event cannot stall the stream behind it.
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pod_booking.database.connection import get_session_factory
from pod_booking.database.models import OutboxEvent
from pod_booking.domain.clock import as_utc, utcnow
from pod_booking.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

Publisher = Callable[[Dict[str, Any]], Awaitable[None]]

MAX_ERROR_LENGTH = 500


def write_outbox_event(
    db: AsyncSession,
    aggregate_id: str,
    aggregate_type: str,
    event_type: str,
    payload: Dict[str, Any],
) -> OutboxEvent:
    """
    Add an event to the outbox in the caller's transaction.

    Args:
        db: Session owning the current unit of work
        aggregate_id: Id of the changed entity
        aggregate_type: 'pod', 'booking', 'payment' or 'incident'
        event_type: e.g. 'booking.created'
        payload: JSON-serializable event body
    """
    event = OutboxEvent(
        aggregate_id=str(aggregate_id),
        aggregate_type=aggregate_type,
        event_type=event_type,
        payload=payload,
        published=False,
        attempts=0,
        created_at=utcnow(),
    )
    db.add(event)
    return event


def event_envelope(event: OutboxEvent) -> Dict[str, Any]:
    """What publishers receive for one outbox row."""
    return {
        "id": event.id,
        "aggregate_id": event.aggregate_id,
        "aggregate_type": event.aggregate_type,
        "event_type": event.event_type,
        "payload": event.payload,
        "created_at": as_utc(event.created_at).isoformat(),
    }


class OutboxPublisher:
    """
    Relays outbox rows to ``publisher_func`` in batches.

    Published rows are flagged in the same session that read them; failed
    rows get their attempt count and last error recorded and are retried on
    a later batch.
    """

    def __init__(
        self,
        publisher_func: Publisher,
        batch_size: int = 100,
        poll_interval_seconds: float = 1.0,
        max_attempts: int = 10,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.publisher_func = publisher_func
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.max_attempts = max_attempts
        self.session_factory = session_factory
        self._running = False

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        return self.session_factory or get_session_factory()

    def _deliverable(self) -> Any:
        return (OutboxEvent.published.is_(False)) & (OutboxEvent.attempts < self.max_attempts)

    async def _fetch_batch(self, db: AsyncSession) -> List[OutboxEvent]:
        result = await db.execute(
            select(OutboxEvent)
            .where(self._deliverable())
            .order_by(OutboxEvent.id)
            .limit(self.batch_size)
        )
        return list(result.scalars().all())

    async def _deliver(self, event: OutboxEvent) -> Optional[str]:
        """Hand one event to the publisher; returns the error text on failure."""
        try:
            await self.publisher_func(event_envelope(event))
        except Exception as e:
            logger.warning(
                "outbox_event_delivery_failed",
                event_id=event.id,
                event_type=event.event_type,
                attempt=event.attempts + 1,
                error=str(e),
            )
            return f"{type(e).__name__}: {e}"[:MAX_ERROR_LENGTH]

        metrics.record_outbox_event_published(event.event_type)
        return None

    async def process_batch(self) -> int:
        """
        Deliver one batch.

        Returns:
            int: Number of events published
        """
        started = time.monotonic()
        async with self._sessions()() as db:
            try:
                events = await self._fetch_batch(db)
                if not events:
                    return 0

                now = utcnow()
                delivered: List[int] = []
                for event in events:
                    error = await self._deliver(event)
                    if error is None:
                        delivered.append(event.id)
                        continue
                    event.attempts += 1
                    event.last_error = error
                    if event.attempts >= self.max_attempts:
                        metrics.record_outbox_dead_letter(event.event_type)
                        logger.error(
                            "outbox_event_dead_lettered",
                            event_id=event.id,
                            event_type=event.event_type,
                            aggregate_id=event.aggregate_id,
                            error=error,
                        )

                if delivered:
                    await db.execute(
                        update(OutboxEvent)
                        .where(OutboxEvent.id.in_(delivered))
                        .values(published=True, published_at=now)
                    )
                await db.commit()

                logger.info(
                    "outbox_batch_processed",
                    fetched=len(events),
                    published=len(delivered),
                    failed=len(events) - len(delivered),
                )
                return len(delivered)

            except Exception as e:
                logger.error("outbox_batch_processing_error", error=str(e))
                await db.rollback()
                return 0

            finally:
                metrics.record_outbox_batch(time.monotonic() - started)

    async def start(self) -> None:
        """Poll and publish until stop() is called."""
        self._running = True
        logger.info(
            "outbox_publisher_started",
            batch_size=self.batch_size,
            max_attempts=self.max_attempts,
        )

        try:
            while self._running:
                try:
                    published = await self.process_batch()
                    metrics.set_outbox_queue_depth(await self.get_pending_count())
                    # A full batch means more are probably waiting
                    if published < self.batch_size:
                        await asyncio.sleep(self.poll_interval_seconds)
                except Exception as e:
                    logger.error("outbox_publisher_error", error=str(e))
                    await asyncio.sleep(self.poll_interval_seconds)
        finally:
            logger.info("outbox_publisher_stopped")

    def stop(self) -> None:
        self._running = False
        logger.info("outbox_publisher_stop_requested")

    async def get_pending_count(self) -> int:
        """Unpublished events still eligible for delivery."""
        async with self._sessions()() as db:
            result = await db.execute(
                select(func.count(OutboxEvent.id)).where(self._deliverable())
            )
            return int(result.scalar_one())

    async def get_dead_letter_count(self) -> int:
        """Unpublished events that ran out of attempts."""
        async with self._sessions()() as db:
            result = await db.execute(
                select(func.count(OutboxEvent.id)).where(
                    OutboxEvent.published.is_(False),
                    OutboxEvent.attempts >= self.max_attempts,
                )
            )
            return int(result.scalar_one())
