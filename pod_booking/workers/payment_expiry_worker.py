"""
Payment expiry background worker.

Cancels INITIATED payments whose payment window has closed and frees the
pods their bookings were holding.
"""
import asyncio
import signal
from typing import Any, Optional

import structlog

from pod_booking.config import get_settings
from pod_booking.core.locking import close_lock_manager
from pod_booking.core.payment_engine import PaymentEngine
from pod_booking.database.connection import close_db, get_session_factory
from pod_booking.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_expiry_sweep(engine: Optional[PaymentEngine] = None) -> int:
    """
    Run one expiry sweep.

    Returns:
        int: Number of payments cancelled
    """
    engine = engine or PaymentEngine()
    async with get_session_factory()() as db:
        expired = await engine.expire_stale_payments(db)

    if expired:
        logger.info("payment_expiry_sweep_completed", expired=expired)
    return expired


async def start_payment_expiry_worker(poll_seconds: Optional[float] = None) -> None:
    """
    Start the payment expiry worker.

    Args:
        poll_seconds: Seconds between sweeps (default from settings)
    """
    setup_logging(service="payment-expiry")
    interval = poll_seconds or get_settings().payment_expiry_poll_seconds

    logger.info("payment_expiry_worker_starting", poll_seconds=interval)

    engine = PaymentEngine()
    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("payment_expiry_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                await run_expiry_sweep(engine)
            except Exception as e:
                # One failed sweep must not stop the worker
                logger.error("payment_expiry_sweep_error", error=str(e))

            await asyncio.sleep(interval)

    finally:
        await close_lock_manager()
        await close_db()
        logger.info("payment_expiry_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Payment expiry worker")
    parser.add_argument(
        "--interval", type=float, default=None, help="Seconds between expiry sweeps"
    )
    args = parser.parse_args()

    asyncio.run(start_payment_expiry_worker(poll_seconds=args.interval))


if __name__ == "__main__":
    main()
