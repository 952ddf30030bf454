"""
Time helpers: timezone resolution and local calendar day boundaries.

The daily call quota is bucketed by the center's local calendar day, so the
start of "today" must be computed in the center's zone and converted to UTC,
never by truncating a UTC timestamp.
"""

import logging
import re
from datetime import datetime, time, timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

_FRACTION = re.compile(r"\.(\d+)")


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def resolve_timezone(name: Optional[str], default: str) -> ZoneInfo:
    """
    Resolve an IANA zone name, falling back to ``default``.

    Args:
        name: Zone name stored on the center (may be empty or invalid)
        default: Fallback zone name

    Returns:
        ZoneInfo for the center
    """
    if name:
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Unknown timezone {name!r}, falling back to {default}")
    return ZoneInfo(default)


def start_of_local_day(now: datetime, zone: ZoneInfo) -> datetime:
    """
    UTC instant of the most recent local midnight in ``zone``.

    On days where midnight is skipped by a DST jump the result is the first
    instant that exists locally; where midnight repeats, the earlier one.

    Args:
        now: Aware datetime (any zone)
        zone: Zone defining the calendar day

    Returns:
        Aware UTC datetime
    """
    if now.tzinfo is None:
        raise ValueError("now must be timezone-aware")

    local_date = now.astimezone(zone).date()
    local_midnight = datetime.combine(local_date, time.min, tzinfo=zone)
    return local_midnight.astimezone(timezone.utc)


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse a Postgres/ISO timestamp into an aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        # PostgREST trims trailing zeros from the fraction
        text = value.replace('Z', '+00:00')
        text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    """Serialize an aware datetime for storage."""
    return value.astimezone(timezone.utc).isoformat() if value is not None else None


def mask_token(token: Optional[str], visible: int = 4) -> str:
    """Shorten a credential for log output."""
    if not token:
        return "<empty>"
    if len(token) <= visible:
        return "…"
    return f"{token[:visible]}…"
