from __future__ import annotations

from datetime import date, datetime, timedelta
import logging
from typing import Any, Callable

from sqlalchemy import select, union
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.orm import Session

from attendance_core.db import atomic, store_errors
from attendance_core.models import AttendanceRecord, AttendanceRule, AutoAbsenceRun, OrgMember
from attendance_core.services.metrics import ScheduleRule
from attendance_core.services.reconciler import ReconcileMode, reconcile_record
from attendance_core.services.registry import EVENT_ABSENCE_GENERATED, EventBus
from attendance_core.services.settings_cache import AttendanceSettings
from attendance_core.services.timezones import normalize_ts, parse_hhmm, zone_for
from attendance_core.services.work_context import load_default_schedule, resolve_work_context
from attendance_core.settings import get_settings

logger = logging.getLogger("attendance_core.auto_absence")


def list_org_ids(db: Session) -> list[str]:
    with store_errors():
        rows = db.scalars(
            union(
                select(AttendanceRule.org_id),
                select(OrgMember.org_id).where(OrgMember.is_active.is_(True)),
            )
        ).all()
    org_ids = sorted({str(item) for item in rows if item})
    return org_ids or [get_settings().default_org_id]


def absence_candidates(db: Session, *, org_id: str) -> list[str]:
    return list(
        db.scalars(
            select(OrgMember.user_id)
            .where(OrgMember.org_id == org_id, OrgMember.is_active.is_(True))
            .order_by(OrgMember.user_id.asc())
        ).all()
    )


def _users_with_records(db: Session, *, org_id: str, work_date: date) -> set[str]:
    return set(
        db.scalars(
            select(AttendanceRecord.user_id).where(
                AttendanceRecord.org_id == org_id,
                AttendanceRecord.work_date == work_date,
            )
        ).all()
    )


def _claim_run(db: Session, *, org_id: str, work_date: date) -> int | None:
    """Insert the last-run marker; None when another run already holds it."""
    return db.scalar(
        pg_insert(AutoAbsenceRun)
        .values(org_id=org_id, work_date=work_date, created_count=0)
        .on_conflict_do_nothing(index_elements=["org_id", "work_date"])
        .returning(AutoAbsenceRun.id)
    )


def generate_absences_for_date(
    db: Session,
    *,
    org_id: str,
    work_date: date,
    default_schedule: ScheduleRule,
) -> list[str] | None:
    """Create absence records for one (org, date). None when it already ran."""
    with atomic(db):
        run_id = _claim_run(db, org_id=org_id, work_date=work_date)
        if run_id is None:
            return None

        existing = _users_with_records(db, org_id=org_id, work_date=work_date)
        created: list[str] = []
        for user_id in absence_candidates(db, org_id=org_id):
            if user_id in existing:
                continue
            context = resolve_work_context(
                db,
                org_id=org_id,
                user_id=user_id,
                work_date=work_date,
                default_schedule=default_schedule,
            )
            if not context.is_working_day:
                continue
            reconcile_record(
                db,
                user_id=user_id,
                org_id=org_id,
                work_date=work_date,
                context=context,
                mode=ReconcileMode.APPEND,
                meta={"source": "auto_absence"},
            )
            created.append(user_id)

        run = db.get(AutoAbsenceRun, run_id)
        if run is not None:
            run.created_count = len(created)
    return created


def run_auto_absence(
    db: Session,
    *,
    lookback_days: int,
    now: datetime | None = None,
    events: EventBus | None = None,
) -> list[dict[str, Any]]:
    now_utc = normalize_ts(now)
    results: list[dict[str, Any]] = []
    for org_id in list_org_ids(db):
        schedule = load_default_schedule(db, org_id)
        today = now_utc.astimezone(zone_for(schedule.timezone)).date()
        for offset in range(1, max(1, lookback_days) + 1):
            work_date = today - timedelta(days=offset)
            created = generate_absences_for_date(
                db,
                org_id=org_id,
                work_date=work_date,
                default_schedule=schedule,
            )
            if created is None:
                continue
            result = {"org_id": org_id, "work_date": work_date.isoformat(), "total": len(created)}
            results.append(result)
            if created:
                logger.info("absence_generated", extra=result)
            if events is not None:
                events.publish(EVENT_ABSENCE_GENERATED, {**result, "user_ids": created})
    return results


def is_due(now: datetime, run_at: str, timezone_name: str) -> bool:
    minutes = parse_hhmm(run_at)
    if minutes is None:
        return False
    local = normalize_ts(now).astimezone(zone_for(timezone_name))
    return local.hour * 60 + local.minute >= minutes


def run_auto_absence_if_due(
    session_factory: Callable[[], Session],
    *,
    settings_provider: Callable[[], AttendanceSettings],
    now: datetime | None = None,
    events: EventBus | None = None,
) -> list[dict[str, Any]]:
    settings = settings_provider()
    if not settings.auto_absence.enabled:
        return []
    now_utc = normalize_ts(now)
    if not is_due(now_utc, settings.auto_absence.run_at, get_settings().default_timezone):
        return []
    with session_factory() as db:
        return run_auto_absence(
            db,
            lookback_days=settings.auto_absence.lookback_days,
            now=now_utc,
            events=events,
        )
