from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from math import ceil
from typing import Any

from attendance_core.models import AttendanceStatus
from attendance_core.services.timezones import minutes_of_day, parse_hhmm, zone_for
from attendance_core.settings import get_default_working_weekdays, get_settings

DEFAULT_WORK_START_MINUTES = 9 * 60
DEFAULT_WORK_END_MINUTES = 18 * 60


@dataclass(frozen=True)
class ScheduleRule:
    timezone: str
    work_start: str
    work_end: str
    late_grace_minutes: int
    early_grace_minutes: int
    rounding_minutes: int
    working_weekdays: frozenset[int] = field(default_factory=frozenset)
    name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "timezone": self.timezone,
            "work_start": self.work_start,
            "work_end": self.work_end,
            "late_grace_minutes": self.late_grace_minutes,
            "early_grace_minutes": self.early_grace_minutes,
            "rounding_minutes": self.rounding_minutes,
            "working_weekdays": sorted(self.working_weekdays),
        }


@dataclass(frozen=True)
class DayMetrics:
    status: AttendanceStatus
    work_minutes: int = 0
    late_minutes: int = 0
    early_leave_minutes: int = 0
    raw_minutes: int = 0
    leave_minutes: int = 0
    overtime_minutes: int = 0


def normalize_working_weekdays(value: Any, fallback: frozenset[int] | None = None) -> frozenset[int]:
    if not isinstance(value, (list, tuple, set, frozenset)):
        return fallback if fallback is not None else get_default_working_weekdays()
    weekdays: set[int] = set()
    for item in value:
        try:
            weekday = int(item)
        except (TypeError, ValueError):
            continue
        if 0 <= weekday <= 6:
            weekdays.add(weekday)
    return frozenset(weekdays)


def builtin_schedule() -> ScheduleRule:
    settings = get_settings()
    return ScheduleRule(
        timezone=settings.default_timezone,
        work_start=settings.default_work_start,
        work_end=settings.default_work_end,
        late_grace_minutes=settings.default_late_grace_minutes,
        early_grace_minutes=settings.default_early_grace_minutes,
        rounding_minutes=settings.default_rounding_minutes,
        working_weekdays=get_default_working_weekdays(),
        name="builtin",
    )


def round_work_minutes(minutes: int, step: int) -> int:
    if minutes <= 0:
        return 0
    if step <= 1:
        return int(minutes)
    return (int(minutes) // step) * step


def round_overtime_minutes(
    minutes: int,
    *,
    min_minutes: int = 0,
    rounding_minutes: int = 0,
    max_minutes: int | None = None,
) -> int:
    if minutes <= 0:
        return 0
    value = max(int(minutes), max(0, min_minutes))
    if rounding_minutes > 1:
        value = int(ceil(value / rounding_minutes) * rounding_minutes)
    if max_minutes is not None and max_minutes >= 0:
        value = min(value, max_minutes)
    return value


def _raw_minutes(first_in: datetime, last_out: datetime) -> int:
    return max(0, int((last_out - first_in).total_seconds() // 60))


def compute_day_metrics(
    *,
    schedule: ScheduleRule,
    first_in: datetime | None,
    last_out: datetime | None,
    is_working_day: bool,
    leave_minutes: int = 0,
    overtime_minutes: int = 0,
) -> DayMetrics:
    leave_minutes = max(0, int(leave_minutes or 0))
    overtime_minutes = max(0, int(overtime_minutes or 0))
    extras = {"leave_minutes": leave_minutes, "overtime_minutes": overtime_minutes}

    if not is_working_day:
        if first_in is None or last_out is None:
            return DayMetrics(status=AttendanceStatus.OFF, **extras)
        raw = _raw_minutes(first_in, last_out)
        return DayMetrics(
            status=AttendanceStatus.OFF,
            work_minutes=round_work_minutes(raw, schedule.rounding_minutes),
            raw_minutes=raw,
            **extras,
        )

    if first_in is None and last_out is None:
        status = AttendanceStatus.ADJUSTED if leave_minutes > 0 else AttendanceStatus.ABSENT
        return DayMetrics(status=status, **extras)

    if first_in is None or last_out is None:
        return DayMetrics(status=AttendanceStatus.PARTIAL, **extras)

    raw = _raw_minutes(first_in, last_out)
    work_minutes = round_work_minutes(raw, schedule.rounding_minutes)

    tz = zone_for(schedule.timezone)
    start_minutes = parse_hhmm(schedule.work_start)
    end_minutes = parse_hhmm(schedule.work_end)
    if start_minutes is None:
        start_minutes = DEFAULT_WORK_START_MINUTES
    if end_minutes is None:
        end_minutes = DEFAULT_WORK_END_MINUTES

    late_threshold = start_minutes + max(0, schedule.late_grace_minutes)
    early_threshold = end_minutes - max(0, schedule.early_grace_minutes)
    late_minutes = max(0, minutes_of_day(first_in, tz) - late_threshold)
    early_leave_minutes = max(0, early_threshold - minutes_of_day(last_out, tz))

    if late_minutes > 0 and early_leave_minutes > 0:
        status = AttendanceStatus.LATE_EARLY
    elif late_minutes > 0:
        status = AttendanceStatus.LATE
    elif early_leave_minutes > 0:
        status = AttendanceStatus.EARLY_LEAVE
    elif leave_minutes > 0 or overtime_minutes > 0:
        status = AttendanceStatus.ADJUSTED
    else:
        status = AttendanceStatus.NORMAL

    return DayMetrics(
        status=status,
        work_minutes=work_minutes,
        late_minutes=late_minutes,
        early_leave_minutes=early_leave_minutes,
        raw_minutes=raw,
        **extras,
    )
