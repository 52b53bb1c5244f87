from __future__ import annotations

from collections import Counter
from datetime import date
import logging
from typing import Any, Iterable
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from attendance_core.db import atomic, store_errors
from attendance_core.errors import VALIDATION_ERROR, ApiError
from attendance_core.models import (
    AttendanceEvent,
    AttendanceEventType,
    AttendanceRecord,
    AttendanceStatus,
)
from attendance_core.schemas import PunchRequest
from attendance_core.services.punch_constraints import check_punch_constraints
from attendance_core.services.reconciler import ReconcileMode, reconcile_record
from attendance_core.services.registry import EVENT_PUNCHED, EVENT_RECORD_UPDATED, EventBus
from attendance_core.services.rule_sets import RuleSetAdjuster, load_rule_set
from attendance_core.services.settings_cache import AttendanceSettings
from attendance_core.services.timezones import is_known_zone, local_work_date, normalize_ts, zone_for
from attendance_core.services.work_context import load_default_schedule, resolve_work_context

logger = logging.getLogger("attendance_core.attendance")


def validate_date_range(from_date: date, to_date: date, *, max_days: int = 366) -> None:
    if to_date < from_date:
        raise ApiError(status_code=422, code=VALIDATION_ERROR, message="to_date must not precede from_date.")
    if (to_date - from_date).days >= max_days:
        raise ApiError(status_code=422, code=VALIDATION_ERROR, message=f"Date range exceeds {max_days} days.")


def record_punch(
    db: Session,
    *,
    user_id: str,
    org_id: str,
    payload: PunchRequest,
    settings: AttendanceSettings,
    role_ids: Iterable[str] = (),
    client_ip: str | None = None,
    events: EventBus | None = None,
) -> tuple[AttendanceEvent, AttendanceRecord]:
    if payload.timezone is not None and not is_known_zone(payload.timezone):
        raise ApiError(status_code=422, code=VALIDATION_ERROR, message="Unknown timezone.")

    occurred_at = normalize_ts(payload.occurred_at)
    location = payload.location.model_dump() if payload.location is not None else None
    if location is None and isinstance(payload.meta.get("location"), dict):
        location = payload.meta["location"]

    with atomic(db):
        check_punch_constraints(
            db,
            user_id=user_id,
            org_id=org_id,
            occurred_at=occurred_at,
            settings=settings,
            client_ip=client_ip,
            location=location,
        )

        default_schedule = load_default_schedule(db, org_id)
        tz_name = payload.timezone or default_schedule.timezone
        work_date = local_work_date(occurred_at, zone_for(tz_name))
        context = resolve_work_context(
            db,
            org_id=org_id,
            user_id=user_id,
            work_date=work_date,
            default_schedule=default_schedule,
        )

        event_type = AttendanceEventType(payload.event_type)
        event = AttendanceEvent(
            id=str(uuid4()),
            user_id=user_id,
            org_id=org_id,
            work_date=work_date,
            occurred_at=occurred_at,
            event_type=event_type,
            source=payload.source,
            timezone=tz_name,
            location=location or {},
            meta=dict(payload.meta),
        )
        db.add(event)

        rule_set = load_rule_set(db, org_id=org_id)
        adjust = None
        if rule_set is not None and not rule_set.is_empty:
            adjust = RuleSetAdjuster(
                rule_set,
                user_id=user_id,
                work_date=work_date,
                context=context,
                profile={"role_tags": list(role_ids)},
            )

        record = reconcile_record(
            db,
            user_id=user_id,
            org_id=org_id,
            work_date=work_date,
            context=context,
            first_in=occurred_at if event_type == AttendanceEventType.CHECK_IN else None,
            last_out=occurred_at if event_type == AttendanceEventType.CHECK_OUT else None,
            mode=ReconcileMode.APPEND,
            adjust=adjust,
            meta={"last_event_id": event.id},
        )

    logger.info(
        "punch_recorded",
        extra={
            "event_id": event.id,
            "user_id": user_id,
            "org_id": org_id,
            "work_date": work_date.isoformat(),
            "event_type": event_type.value,
            "status": record.status.value,
        },
    )
    if events is not None:
        events.publish(
            EVENT_PUNCHED,
            {
                "event_id": event.id,
                "user_id": user_id,
                "org_id": org_id,
                "work_date": work_date.isoformat(),
                "event_type": event_type.value,
            },
        )
        events.publish(EVENT_RECORD_UPDATED, record_payload(record))
    return event, record


def record_payload(record: AttendanceRecord) -> dict[str, Any]:
    return {
        "record_id": record.id,
        "user_id": record.user_id,
        "org_id": record.org_id,
        "work_date": record.work_date.isoformat(),
        "status": record.status.value,
        "work_minutes": record.work_minutes,
    }


def list_records(
    db: Session,
    *,
    user_id: str,
    org_id: str,
    from_date: date,
    to_date: date,
) -> list[AttendanceRecord]:
    validate_date_range(from_date, to_date)
    with store_errors():
        return list(
            db.scalars(
                select(AttendanceRecord)
                .where(
                    AttendanceRecord.user_id == user_id,
                    AttendanceRecord.org_id == org_id,
                    AttendanceRecord.work_date >= from_date,
                    AttendanceRecord.work_date <= to_date,
                )
                .order_by(AttendanceRecord.work_date.asc())
            ).all()
        )


def summarize_records(
    records: Iterable[AttendanceRecord],
    *,
    user_id: str,
    org_id: str,
    from_date: date,
    to_date: date,
) -> dict[str, Any]:
    status_counts: Counter[str] = Counter()
    total_work = total_late = total_early = 0
    days = 0
    for record in records:
        days += 1
        status = record.status.value if isinstance(record.status, AttendanceStatus) else str(record.status)
        status_counts[status] += 1
        total_work += record.work_minutes or 0
        total_late += record.late_minutes or 0
        total_early += record.early_leave_minutes or 0

    return {
        "user_id": user_id,
        "org_id": org_id,
        "from_date": from_date,
        "to_date": to_date,
        "total_days": days,
        "total_work_minutes": total_work,
        "total_late_minutes": total_late,
        "total_early_leave_minutes": total_early,
        "status_counts": {status.value: status_counts.get(status.value, 0) for status in AttendanceStatus},
    }
