"""
Identifier formats.

Order ids: ``ORDER-YYYYMMDD-NNN``. The date is the gateway-local (UTC+7) day
and NNN is a per-day sequence, zero-padded to three digits (it simply grows
wider past 999). Pod codes in a grid: row letters (A..Z, AA, AB, ...) + two
digit column + level (L lower, U upper), e.g. ``B02U``.
"""
import re
import time
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pod_booking.database.models import Payment
from pod_booking.domain.clock import to_vn, utcnow

logger = structlog.get_logger(__name__)

ORDER_PREFIX = "ORDER-"
ORDER_ID_RE = re.compile(r"^ORDER-(\d{8})-(\d+)$")

LOWER_LEVEL = "L"
UPPER_LEVEL = "U"
POD_LEVELS = (LOWER_LEVEL, UPPER_LEVEL)


def order_day(now: Optional[datetime] = None) -> str:
    """The gateway-local calendar day as YYYYMMDD."""
    return to_vn(now or utcnow()).strftime("%Y%m%d")


def format_order_id(day: str, sequence: int) -> str:
    return f"{ORDER_PREFIX}{day}-{sequence:03d}"


def parse_order_sequence(order_id: str, day: str) -> Optional[int]:
    """Sequence number of ``order_id`` if it belongs to ``day``, else None."""
    match = ORDER_ID_RE.match(order_id)
    if match is None or match.group(1) != day:
        return None
    return int(match.group(2))


def fallback_order_id() -> str:
    """Timestamp id used when the sequence cannot be read."""
    return f"{ORDER_PREFIX}{int(time.time() * 1000)}"


def placeholder_booking_id() -> str:
    """Stand-in booking reference for payments created without a booking."""
    return f"BOOKING-{int(time.time() * 1000)}"


def is_placeholder_booking_id(booking_id: str) -> bool:
    return booking_id.startswith("BOOKING-")


async def next_order_id(db: AsyncSession, now: Optional[datetime] = None) -> str:
    """
    Next order id for today: highest existing sequence + 1.

    Must run before the caller adds anything to the session (a read failure
    rolls the session back) and while holding the order-seq lock for the day,
    or two callers can read the same maximum.

    Falls back to ``ORDER-<epoch ms>`` if the lookup fails.
    """
    day = order_day(now)
    prefix = f"{ORDER_PREFIX}{day}-"

    try:
        result = await db.execute(
            select(Payment.order_id).where(Payment.order_id.like(f"{prefix}%"))
        )
        existing = result.scalars().all()
    except SQLAlchemyError as e:
        await db.rollback()
        order_id = fallback_order_id()
        logger.warning("order_sequence_lookup_failed", error=str(e), fallback_order_id=order_id)
        return order_id

    sequences = [
        seq for seq in (parse_order_sequence(oid, day) for oid in existing) if seq is not None
    ]
    return format_order_id(day, max(sequences, default=0) + 1)


def row_letter(index: int) -> str:
    """Zero-based row index to spreadsheet-style letters: 0 -> A, 25 -> Z, 26 -> AA."""
    if index < 0:
        raise ValueError("row index must be non-negative")
    letters = ""
    n = index + 1
    while n > 0:
        n, rem = divmod(n - 1, 26)
        letters = chr(ord("A") + rem) + letters
    return letters


def grid_pod_code(row: int, col: int, level: str) -> str:
    """Code of the pod at zero-based (row, col) on the given level."""
    return f"{row_letter(row)}{col + 1:02d}{level}"


def normalize_pod_code(code: str) -> str:
    return code.strip().upper()
