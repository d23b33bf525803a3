"""
Time helpers.

Everything is stored in UTC. The gateway and the order-id sequence work in
Vietnam local time, which is a fixed UTC+7 offset (no DST).
"""
from datetime import datetime, timedelta, timezone

VN_TZ = timezone(timedelta(hours=7), name="UTC+07:00")

GATEWAY_DATE_FORMAT = "%Y%m%d%H%M%S"


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """
    Normalize a datetime to aware UTC.

    Naive values are taken to be UTC already (some drivers, e.g. SQLite,
    return naive datetimes for timezone-aware columns).
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_vn(value: datetime) -> datetime:
    """Convert to the gateway's local time."""
    return as_utc(value).astimezone(VN_TZ)


def format_gateway_date(value: datetime) -> str:
    """yyyyMMddHHmmss in UTC+7, as used by vnp_CreateDate / vnp_ExpireDate."""
    return to_vn(value).strftime(GATEWAY_DATE_FORMAT)


def parse_gateway_date(value: str) -> datetime:
    """Parse a yyyyMMddHHmmss gateway timestamp (UTC+7) into aware UTC."""
    local = datetime.strptime(value, GATEWAY_DATE_FORMAT).replace(tzinfo=VN_TZ)
    return local.astimezone(timezone.utc)
