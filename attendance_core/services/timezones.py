from __future__ import annotations

from datetime import date, datetime, time, timezone
from functools import lru_cache
import logging
import re
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger("attendance_core.timezones")

_HHMM_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})(?::\d{2})?\s*$")


@lru_cache(maxsize=256)
def _load_zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def zone_for(name: str | None, fallback: str = "UTC") -> ZoneInfo:
    raw_name = (name or "").strip() or fallback
    try:
        return _load_zone(raw_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("timezone_unknown", extra={"timezone": raw_name, "fallback": fallback})
        return _load_zone(fallback)


def normalize_ts(ts: datetime | None) -> datetime:
    if ts is None:
        return datetime.now(timezone.utc)
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def local_work_date(ts: datetime, tz: ZoneInfo) -> date:
    return normalize_ts(ts).astimezone(tz).date()


def minutes_of_day(ts: datetime, tz: ZoneInfo) -> int:
    local = normalize_ts(ts).astimezone(tz)
    return local.hour * 60 + local.minute


def parse_hhmm(value: object) -> int | None:
    """``"HH:MM"`` to minutes after midnight; None when unparseable."""
    if not isinstance(value, str):
        return None
    match = _HHMM_RE.match(value)
    if match is None:
        return None
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        return None
    return hours * 60 + minutes


def combine_local(work_date: date, hhmm: str, tz: ZoneInfo) -> datetime | None:
    minutes = parse_hhmm(hhmm)
    if minutes is None:
        return None
    local = datetime.combine(work_date, time(minutes // 60, minutes % 60), tzinfo=tz)
    return local.astimezone(timezone.utc)


def weekday_index(value: date) -> int:
    """0=Sunday ... 6=Saturday."""
    return value.isoweekday() % 7


def is_known_zone(name: str | None) -> bool:
    if not name or not name.strip():
        return False
    try:
        _load_zone(name.strip())
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True
