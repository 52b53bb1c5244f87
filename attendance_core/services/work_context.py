from __future__ import annotations

from dataclasses import dataclass
from datetime import date
import logging
from typing import Any, Literal
from uuid import uuid4

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from attendance_core.db import atomic, optional_read, store_errors
from attendance_core.errors import VALIDATION_ERROR, ApiError, StoreNotReadyError
from attendance_core.models import (
    AttendanceRule,
    AttendanceShift,
    Holiday,
    RotationAssignment,
    RotationRule,
    ShiftAssignment,
)
from attendance_core.schemas import DefaultRuleUpdate
from attendance_core.services.metrics import ScheduleRule, builtin_schedule, normalize_working_weekdays
from attendance_core.services.registry import EVENT_RULE_UPDATED, EventBus
from attendance_core.services.timezones import is_known_zone, parse_hhmm, weekday_index
from attendance_core.settings import get_settings

logger = logging.getLogger("attendance_core.work_context")

ContextSource = Literal["rotation", "shift", "rule"]


@dataclass(frozen=True)
class WorkContext:
    schedule: ScheduleRule
    is_working_day: bool
    source: ContextSource
    holiday: Holiday | None = None
    shift_id: str | None = None
    shift_name: str | None = None

    @property
    def is_holiday(self) -> bool:
        return self.holiday is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "is_working_day": self.is_working_day,
            "is_holiday": self.is_holiday,
            "holiday_name": self.holiday.name if self.holiday is not None else None,
            "shift_id": self.shift_id,
            "shift_name": self.shift_name,
            "schedule": self.schedule.to_dict(),
        }


def schedule_from_rule(row: AttendanceRule) -> ScheduleRule:
    fallback = builtin_schedule()
    return ScheduleRule(
        timezone=row.timezone or fallback.timezone,
        work_start=row.work_start_time or fallback.work_start,
        work_end=row.work_end_time or fallback.work_end,
        late_grace_minutes=_int_or(row.late_grace_minutes, fallback.late_grace_minutes),
        early_grace_minutes=_int_or(row.early_grace_minutes, fallback.early_grace_minutes),
        rounding_minutes=_int_or(row.rounding_minutes, fallback.rounding_minutes),
        working_weekdays=normalize_working_weekdays(row.working_days, fallback.working_weekdays),
        name=row.name,
    )


def schedule_from_shift(
    shift: AttendanceShift,
    base: ScheduleRule,
    *,
    timezone_override: str | None = None,
) -> ScheduleRule:
    """Shift columns left NULL inherit the org default."""
    return ScheduleRule(
        timezone=timezone_override or shift.timezone or base.timezone,
        work_start=shift.work_start_time or base.work_start,
        work_end=shift.work_end_time or base.work_end,
        late_grace_minutes=_int_or(shift.late_grace_minutes, base.late_grace_minutes),
        early_grace_minutes=_int_or(shift.early_grace_minutes, base.early_grace_minutes),
        rounding_minutes=_int_or(shift.rounding_minutes, base.rounding_minutes),
        working_weekdays=(
            normalize_working_weekdays(shift.working_days, base.working_weekdays)
            if shift.working_days is not None
            else base.working_weekdays
        ),
        name=shift.name,
    )


def _int_or(value: Any, fallback: int) -> int:
    if value is None:
        return fallback
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return fallback


def _query_default_rule(db: Session, org_id: str) -> AttendanceRule | None:
    return db.scalar(
        select(AttendanceRule)
        .where(
            AttendanceRule.org_id == org_id,
            AttendanceRule.is_default.is_(True),
        )
        .order_by(AttendanceRule.created_at.desc())
        .limit(1)
    )


def load_default_schedule(db: Session, org_id: str | None) -> ScheduleRule:
    """Org default rule, else the ``default`` org's rule, else built-in values.

    A missing rules table degrades to the built-in schedule.
    """
    default_org_id = get_settings().default_org_id
    target_org_id = org_id or default_org_id
    try:
        with optional_read(db):
            row = _query_default_rule(db, target_org_id)
            if row is None and target_org_id != default_org_id:
                row = _query_default_rule(db, default_org_id)
    except StoreNotReadyError:
        logger.warning("default_rule_store_not_ready", extra={"org_id": target_org_id})
        return builtin_schedule()

    if row is None:
        return builtin_schedule()
    return schedule_from_rule(row)


def _validated_time(value: str | None, fallback: str, field_name: str) -> str:
    if value is None:
        return fallback
    minutes = parse_hhmm(value)
    if minutes is None:
        raise ApiError(status_code=422, code=VALIDATION_ERROR, message=f"{field_name} must be HH:MM.")
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def upsert_default_rule(
    db: Session,
    *,
    org_id: str,
    payload: DefaultRuleUpdate,
    events: EventBus | None = None,
) -> AttendanceRule:
    """Replace the org default rule; omitted fields take the built-in values."""
    if payload.timezone is not None and not is_known_zone(payload.timezone):
        raise ApiError(status_code=422, code=VALIDATION_ERROR, message="Unknown timezone.")
    fallback = builtin_schedule()
    work_start = _validated_time(payload.work_start_time, fallback.work_start, "work_start_time")
    work_end = _validated_time(payload.work_end_time, fallback.work_end, "work_end_time")
    if work_start == work_end:
        raise ApiError(
            status_code=422,
            code=VALIDATION_ERROR,
            message="work_end_time must differ from work_start_time.",
        )
    working_days = (
        sorted(set(payload.working_days)) if payload.working_days is not None else sorted(fallback.working_weekdays)
    )

    with atomic(db):
        db.execute(
            update(AttendanceRule)
            .where(AttendanceRule.org_id == org_id, AttendanceRule.is_default.is_(True))
            .values(is_default=False)
            .execution_options(synchronize_session=False)
        )
        rule = AttendanceRule(
            id=str(uuid4()),
            org_id=org_id,
            name=payload.name or "Default",
            timezone=payload.timezone.strip() if payload.timezone is not None else fallback.timezone,
            work_start_time=work_start,
            work_end_time=work_end,
            late_grace_minutes=_int_or(payload.late_grace_minutes, fallback.late_grace_minutes),
            early_grace_minutes=_int_or(payload.early_grace_minutes, fallback.early_grace_minutes),
            rounding_minutes=_int_or(payload.rounding_minutes, fallback.rounding_minutes),
            working_days=working_days,
            is_default=True,
        )
        db.add(rule)
        db.flush()

    logger.info("default_rule_updated", extra={"org_id": org_id, "rule_id": rule.id})
    if events is not None:
        events.publish(EVENT_RULE_UPDATED, {"org_id": org_id, "rule_id": rule.id})
    return rule


def rotation_offset(work_date: date, start_date: date, sequence_length: int) -> int | None:
    """Index into a rotation sequence, or None when the date precedes the start."""
    if sequence_length <= 0:
        return None
    delta_days = (work_date - start_date).days
    if delta_days < 0:
        return None
    return delta_days % sequence_length


def _covering(model: type[ShiftAssignment] | type[RotationAssignment], work_date: date):  # type: ignore[no-untyped-def]
    return (
        model.start_date <= work_date,
        or_(model.end_date.is_(None), model.end_date >= work_date),
        model.is_active.is_(True),
    )


def _find_rotation_assignment(
    db: Session,
    *,
    org_id: str,
    user_id: str,
    work_date: date,
) -> RotationAssignment | None:
    return db.scalar(
        select(RotationAssignment)
        .where(
            RotationAssignment.org_id == org_id,
            RotationAssignment.user_id == user_id,
            *_covering(RotationAssignment, work_date),
        )
        .order_by(RotationAssignment.start_date.desc(), RotationAssignment.created_at.desc())
        .limit(1)
    )


def _find_shift_assignment(
    db: Session,
    *,
    org_id: str,
    user_id: str,
    work_date: date,
) -> ShiftAssignment | None:
    return db.scalar(
        select(ShiftAssignment)
        .where(
            ShiftAssignment.org_id == org_id,
            ShiftAssignment.user_id == user_id,
            *_covering(ShiftAssignment, work_date),
        )
        .order_by(ShiftAssignment.start_date.desc(), ShiftAssignment.created_at.desc())
        .limit(1)
    )


def _find_holiday(db: Session, *, org_id: str, work_date: date) -> Holiday | None:
    return db.scalar(
        select(Holiday).where(
            Holiday.org_id == org_id,
            Holiday.holiday_date == work_date,
        )
    )


def _get_shift(db: Session, shift_id: str) -> AttendanceShift | None:
    return db.get(AttendanceShift, shift_id)


def _resolve_rotation_shift(
    db: Session,
    *,
    org_id: str,
    user_id: str,
    work_date: date,
) -> tuple[AttendanceShift, RotationRule] | None:
    assignment = _find_rotation_assignment(db, org_id=org_id, user_id=user_id, work_date=work_date)
    if assignment is None:
        return None

    rotation = assignment.rotation_rule
    log_extra = {
        "org_id": org_id,
        "user_id": user_id,
        "work_date": work_date.isoformat(),
        "rotation_assignment_id": assignment.id,
    }
    if rotation is None or not rotation.is_active:
        logger.warning("rotation_rule_unavailable", extra=log_extra)
        return None

    sequence = [str(item) for item in (rotation.shift_sequence or []) if item]
    if not sequence:
        logger.warning("rotation_sequence_empty", extra=log_extra)
        return None

    offset = rotation_offset(work_date, assignment.start_date, len(sequence))
    if offset is None:
        logger.warning("rotation_offset_negative", extra=log_extra)
        return None

    shift = _get_shift(db, sequence[offset])
    if shift is None or not shift.is_active:
        logger.warning("rotation_shift_missing", extra={**log_extra, "shift_id": sequence[offset]})
        return None
    return shift, rotation


def resolve_work_context(
    db: Session,
    *,
    org_id: str,
    user_id: str,
    work_date: date,
    default_schedule: ScheduleRule | None = None,
) -> WorkContext:
    base = default_schedule if default_schedule is not None else load_default_schedule(db, org_id)

    with store_errors():
        schedule = base
        source: ContextSource = "rule"
        shift_id: str | None = None
        shift_name: str | None = None

        rotation_hit = _resolve_rotation_shift(db, org_id=org_id, user_id=user_id, work_date=work_date)
        if rotation_hit is not None:
            shift, rotation = rotation_hit
            schedule = schedule_from_shift(shift, base, timezone_override=rotation.timezone)
            source = "rotation"
            shift_id, shift_name = shift.id, shift.name
        else:
            assignment = _find_shift_assignment(db, org_id=org_id, user_id=user_id, work_date=work_date)
            shift = assignment.shift if assignment is not None else None
            if shift is not None and shift.is_active:
                schedule = schedule_from_shift(shift, base)
                source = "shift"
                shift_id, shift_name = shift.id, shift.name

        is_working_day = weekday_index(work_date) in schedule.working_weekdays
        holiday = _find_holiday(db, org_id=org_id, work_date=work_date)
        if holiday is not None:
            is_working_day = bool(holiday.is_working_day)

    return WorkContext(
        schedule=schedule,
        is_working_day=is_working_day,
        source=source,
        holiday=holiday,
        shift_id=shift_id,
        shift_name=shift_name,
    )
