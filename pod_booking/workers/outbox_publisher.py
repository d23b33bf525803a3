"""
Outbox publisher background worker.

Relays committed booking, payment and incident events from the outbox table
to downstream consumers. Two sinks:

- ``redis``: one Redis stream per aggregate type (``<prefix>.payment`` ...)
- ``log``: structured log records, for deployments that ship logs instead
"""
import asyncio
import json
import signal
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
import structlog

from pod_booking.config import Settings, get_settings
from pod_booking.core.outbox import OutboxPublisher
from pod_booking.database.connection import close_db
from pod_booking.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)

EventSink = Callable[[Dict[str, Any]], Awaitable[None]]


class RedisStreamSink:
    """Appends outbox events to capped Redis streams."""

    def __init__(
        self,
        redis_client: aioredis.Redis,
        stream_prefix: str,
        max_length: int = 100_000,
    ) -> None:
        self.redis = redis_client
        self.stream_prefix = stream_prefix
        self.max_length = max_length

    def stream_for(self, event_data: Dict[str, Any]) -> str:
        return f"{self.stream_prefix}.{event_data['aggregate_type']}"

    async def __call__(self, event_data: Dict[str, Any]) -> None:
        stream = self.stream_for(event_data)
        fields = {
            "event_id": str(event_data["id"]),
            "event_type": event_data["event_type"],
            "aggregate_id": event_data["aggregate_id"],
            "payload": json.dumps(event_data["payload"], default=str),
            "created_at": event_data.get("created_at") or "",
        }
        entry_id = await self.redis.xadd(
            stream, fields, maxlen=self.max_length, approximate=True
        )
        logger.debug(
            "outbox_event_streamed",
            stream=stream,
            entry_id=entry_id,
            event_type=event_data["event_type"],
        )

    async def close(self) -> None:
        await self.redis.aclose()


async def log_event(event_data: Dict[str, Any]) -> None:
    logger.info(
        "event_published",
        event_type=event_data.get("event_type"),
        aggregate_type=event_data.get("aggregate_type"),
        aggregate_id=event_data.get("aggregate_id"),
    )


def build_sink(settings: Settings) -> EventSink:
    """The configured event sink."""
    if settings.outbox_sink == "redis":
        return RedisStreamSink(
            aioredis.from_url(settings.redis_url, decode_responses=True),
            stream_prefix=settings.outbox_stream_prefix,
        )
    return log_event


async def start_outbox_publisher(sink: Optional[EventSink] = None) -> None:
    """
    Start the outbox publisher worker.

    Runs until SIGINT or SIGTERM.
    """
    setup_logging(service="outbox-publisher")
    settings = get_settings()
    sink = sink or build_sink(settings)

    logger.info("outbox_publisher_worker_starting", sink=settings.outbox_sink)

    publisher = OutboxPublisher(
        publisher_func=sink,
        batch_size=settings.outbox_batch_size,
        max_attempts=settings.outbox_max_attempts,
        poll_interval_seconds=settings.outbox_poll_interval_seconds,
    )

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("outbox_publisher_worker_shutdown_signal_received", signal=sig)
        publisher.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await publisher.start()
    except Exception as e:
        logger.error("outbox_publisher_worker_error", error=str(e))
        raise
    finally:
        if isinstance(sink, RedisStreamSink):
            await sink.close()
        await close_db()
        logger.info("outbox_publisher_worker_stopped")


def main() -> None:
    asyncio.run(start_outbox_publisher())


if __name__ == "__main__":
    main()
