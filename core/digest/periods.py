"""
core/digest/periods.py — Day-bucket computation for digests.

A period key identifies one local calendar day as the half-open interval
[midnight, next midnight). Keys are "YYYY-MM-DD" strings, so lexicographic
order equals temporal order.

Timezone: DIGEST_TZ (IANA name) or "local" for the host zone.
    - naive datetimes are taken as wall-clock time in that zone already
    - aware datetimes are converted into the zone before truncation
"""
from __future__ import annotations

from datetime import date, datetime, time, timedelta, tzinfo
from typing import Optional, Tuple

from utils.logger import log_warn

_KEY_FORMAT = "%Y-%m-%d"


def _get_tz() -> Optional[tzinfo]:
    """Configured digest zone, or None for the host-local zone."""
    try:
        from config import get_digest_tz
        name = get_digest_tz()
    except Exception:
        return None
    if not name or name.lower() == "local":
        return None
    try:
        from zoneinfo import ZoneInfo
        return ZoneInfo(name)
    except Exception as exc:
        log_warn(f"[DigestPeriod] unknown DIGEST_TZ={name!r} ({exc}) — using host zone")
        return None


def _localize(ts: datetime, tz: Optional[tzinfo]) -> datetime:
    if ts.tzinfo is None:
        return ts
    if tz is None:
        return ts.astimezone()
    return ts.astimezone(tz)


def period_of(ts: datetime, tz: Optional[tzinfo] = None) -> str:
    """
    Period key of the local calendar day containing `ts`.

    Same key iff same local day; t1 < t2 implies period_of(t1) <= period_of(t2).
    """
    if tz is None:
        tz = _get_tz()
    return _localize(ts, tz).date().strftime(_KEY_FORMAT)


def period_date(key: str) -> date:
    return datetime.strptime(key, _KEY_FORMAT).date()


def period_bounds(key: str, tz: Optional[tzinfo] = None) -> Tuple[datetime, datetime]:
    """
    (start, end) of the period, end exclusive.

    Computed as consecutive local midnights so DST days are 23h or 25h long.
    Bounds are naive for the host-local zone, aware otherwise.
    """
    if tz is None:
        tz = _get_tz()
    day = period_date(key)
    start = datetime.combine(day, time.min)
    end = datetime.combine(day + timedelta(days=1), time.min)
    if tz is not None:
        start = start.replace(tzinfo=tz)
        end = end.replace(tzinfo=tz)
    return start, end


class SystemClock:
    """Wall clock in the configured digest zone."""

    def __init__(self, tz: Optional[tzinfo] = None) -> None:
        self._tz = tz

    def now(self) -> datetime:
        tz = self._tz if self._tz is not None else _get_tz()
        if tz is None:
            return datetime.now()
        return datetime.now(tz=tz)
