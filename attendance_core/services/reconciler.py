from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime
import enum
import logging
from typing import Any, Iterable
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.orm import Session

from attendance_core.errors import INVALID_STATE, ApiError
from attendance_core.models import AttendanceRecord, AttendanceStatus
from attendance_core.services.metrics import DayMetrics, compute_day_metrics
from attendance_core.services.rule_sets import ADJUSTMENT_META_KEYS, Adjuster
from attendance_core.services.timezones import normalize_ts
from attendance_core.services.work_context import WorkContext

logger = logging.getLogger("attendance_core.reconciler")


class ReconcileMode(str, enum.Enum):
    APPEND = "append"
    MERGE = "merge"
    OVERRIDE = "override"


@dataclass(frozen=True)
class MetricsOverride:
    work_minutes: int | None = None
    late_minutes: int | None = None
    early_leave_minutes: int | None = None
    status: AttendanceStatus | None = None

    def apply(self, metrics: DayMetrics) -> DayMetrics:
        changes: dict[str, Any] = {}
        for name in ("work_minutes", "late_minutes", "early_leave_minutes"):
            value = getattr(self, name)
            if value is not None:
                changes[name] = max(0, int(value))
        if self.status is not None:
            changes["status"] = self.status
        return replace(metrics, **changes) if changes else metrics

    @property
    def is_empty(self) -> bool:
        return (
            self.work_minutes is None
            and self.late_minutes is None
            and self.early_leave_minutes is None
            and self.status is None
        )


def _aware(value: datetime | None) -> datetime | None:
    return normalize_ts(value) if value is not None else None


def merge_punches(
    existing_in: datetime | None,
    existing_out: datetime | None,
    new_in: datetime | None,
    new_out: datetime | None,
    mode: ReconcileMode,
) -> tuple[datetime | None, datetime | None]:
    existing_in, existing_out = _aware(existing_in), _aware(existing_out)
    new_in, new_out = _aware(new_in), _aware(new_out)

    if mode == ReconcileMode.OVERRIDE:
        return new_in, new_out
    if mode == ReconcileMode.MERGE:
        return (
            new_in if new_in is not None else existing_in,
            new_out if new_out is not None else existing_out,
        )

    first_in = existing_in
    if new_in is not None and (first_in is None or new_in < first_in):
        first_in = new_in
    last_out = existing_out
    if new_out is not None and (last_out is None or new_out > last_out):
        last_out = new_out
    return first_in, last_out


def lock_record(
    db: Session,
    *,
    user_id: str,
    org_id: str,
    work_date: date,
    timezone_name: str,
) -> AttendanceRecord:
    """Ensure the daily row exists, then return it under ``FOR UPDATE``."""
    db.execute(
        pg_insert(AttendanceRecord)
        .values(
            id=str(uuid4()),
            user_id=user_id,
            org_id=org_id,
            work_date=work_date,
            timezone=timezone_name,
            status=AttendanceStatus.ABSENT,
            meta={},
        )
        .on_conflict_do_nothing(index_elements=["user_id", "org_id", "work_date"])
    )
    record = db.scalar(
        select(AttendanceRecord)
        .where(
            AttendanceRecord.user_id == user_id,
            AttendanceRecord.org_id == org_id,
            AttendanceRecord.work_date == work_date,
        )
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if record is None:
        raise ApiError(status_code=409, code=INVALID_STATE, message="Attendance record could not be locked.")
    return record


def _meta_minutes(meta: dict[str, Any] | None, key: str) -> int:
    try:
        return max(0, int((meta or {}).get(key) or 0))
    except (TypeError, ValueError):
        return 0


def _base_minutes(meta: dict[str, Any], key: str) -> int:
    """Unadjusted input minutes; rows written before the base keys existed fall back to the output value."""
    base_key = f"base_{key}"
    if base_key in meta:
        return _meta_minutes(meta, base_key)
    return _meta_minutes(meta, key)


def reconcile_record(
    db: Session,
    *,
    user_id: str,
    org_id: str,
    work_date: date,
    context: WorkContext,
    first_in: datetime | None = None,
    last_out: datetime | None = None,
    mode: ReconcileMode = ReconcileMode.APPEND,
    leave_minutes: int | None = None,
    overtime_minutes: int | None = None,
    override: MetricsOverride | None = None,
    adjust: Adjuster | None = None,
    meta: dict[str, Any] | None = None,
) -> AttendanceRecord:
    """Merge new punch data into the locked daily record and recompute it.

    Must run inside the caller's transaction. Leave and overtime minutes not
    passed explicitly come from the unadjusted base in the record's metadata.
    """
    record = lock_record(
        db,
        user_id=user_id,
        org_id=org_id,
        work_date=work_date,
        timezone_name=context.schedule.timezone,
    )
    existing_meta = {key: value for key, value in (record.meta or {}).items() if key not in ADJUSTMENT_META_KEYS}
    if leave_minutes is None:
        leave_minutes = _base_minutes(existing_meta, "leave_minutes")
    if overtime_minutes is None:
        overtime_minutes = _base_minutes(existing_meta, "overtime_minutes")

    merged_in, merged_out = merge_punches(record.first_in_at, record.last_out_at, first_in, last_out, mode)
    metrics = compute_day_metrics(
        schedule=context.schedule,
        first_in=merged_in,
        last_out=merged_out,
        is_working_day=context.is_working_day,
        leave_minutes=leave_minutes,
        overtime_minutes=overtime_minutes,
    )

    base_leave_minutes = metrics.leave_minutes
    base_overtime_minutes = metrics.overtime_minutes
    adjust_meta: dict[str, Any] = {}
    if adjust is not None:
        metrics, adjust_meta = adjust(metrics, (merged_in, merged_out))
    if override is not None:
        metrics = override.apply(metrics)

    record.timezone = context.schedule.timezone
    record.first_in_at = merged_in
    record.last_out_at = merged_out
    record.work_minutes = metrics.work_minutes
    record.late_minutes = metrics.late_minutes
    record.early_leave_minutes = metrics.early_leave_minutes
    record.status = metrics.status
    record.is_workday = context.is_working_day
    record.meta = {
        **existing_meta,
        **adjust_meta,
        **(meta or {}),
        "base_leave_minutes": base_leave_minutes,
        "base_overtime_minutes": base_overtime_minutes,
        "leave_minutes": metrics.leave_minutes,
        "overtime_minutes": metrics.overtime_minutes,
        "raw_minutes": metrics.raw_minutes,
        "context": context.to_dict(),
        "last_mode": mode.value,
    }
    db.flush()

    logger.info(
        "record_reconciled",
        extra={
            "record_id": record.id,
            "user_id": user_id,
            "org_id": org_id,
            "work_date": work_date.isoformat(),
            "mode": mode.value,
            "status": metrics.status.value,
            "work_minutes": metrics.work_minutes,
        },
    )
    return record


RECORD_EXPORT_HEADERS = [
    "work_date",
    "user_id",
    "org_id",
    "timezone",
    "first_in_at",
    "last_out_at",
    "work_minutes",
    "late_minutes",
    "early_leave_minutes",
    "leave_minutes",
    "overtime_minutes",
    "status",
    "is_workday",
]


def record_export_rows(records: Iterable[AttendanceRecord]) -> tuple[list[str], list[list[Any]]]:
    rows: list[list[Any]] = []
    for record in records:
        meta = record.meta or {}
        rows.append(
            [
                record.work_date.isoformat(),
                record.user_id,
                record.org_id,
                record.timezone,
                record.first_in_at.isoformat() if record.first_in_at else None,
                record.last_out_at.isoformat() if record.last_out_at else None,
                record.work_minutes,
                record.late_minutes,
                record.early_leave_minutes,
                _meta_minutes(meta, "leave_minutes"),
                _meta_minutes(meta, "overtime_minutes"),
                record.status.value if isinstance(record.status, AttendanceStatus) else str(record.status),
                record.is_workday,
            ]
        )
    return list(RECORD_EXPORT_HEADERS), rows
