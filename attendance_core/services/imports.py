from __future__ import annotations

from datetime import date, datetime
import logging
from typing import Any, Mapping
from uuid import uuid4
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from attendance_core.db import atomic, is_undefined_table_error
from attendance_core.errors import (
    ALREADY_EXISTS,
    INTERNAL_ERROR,
    VALIDATION_ERROR,
    ApiError,
    StoreNotReadyError,
)
from attendance_core.models import AttendanceRecord, AttendanceStatus, ImportBatch
from attendance_core.schemas import ImportCommitRequest, ImportRow
from attendance_core.services.attendance import record_payload
from attendance_core.services.metrics import ScheduleRule
from attendance_core.services.reconciler import MetricsOverride, ReconcileMode, reconcile_record
from attendance_core.services.registry import EVENT_RECORD_UPDATED, EventBus
from attendance_core.services.rule_sets import CompiledRuleSet, RuleSetAdjuster, load_rule_set, map_fields
from attendance_core.services.timezones import combine_local, parse_hhmm, zone_for
from attendance_core.services.work_context import load_default_schedule, resolve_work_context

logger = logging.getLogger("attendance_core.imports")


class ImportRowError(ValueError):
    pass


def parse_import_timestamp(value: Any, work_date: date, tz: ZoneInfo) -> datetime | None:
    """ISO-8601 or ``HH:MM`` on the work date; anything else is None."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if parse_hhmm(text) is not None:
            return combine_local(work_date, text, tz)
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed


def _parse_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            return None
    return None


def _optional_minutes(value: Any) -> int | None:
    if value is None or isinstance(value, bool) or value == "":
        return None
    try:
        return max(0, int(round(float(value))))
    except (TypeError, ValueError):
        return None


def _optional_status(value: Any) -> AttendanceStatus | None:
    if value is None or value == "":
        return None
    try:
        return AttendanceStatus(str(value).strip().lower())
    except ValueError:
        return None


def build_metrics_override(fields: Mapping[str, Any]) -> MetricsOverride | None:
    override = MetricsOverride(
        work_minutes=_optional_minutes(fields.get("work_minutes")),
        late_minutes=_optional_minutes(fields.get("late_minutes")),
        early_leave_minutes=_optional_minutes(fields.get("early_leave_minutes")),
        status=_optional_status(fields.get("status")),
    )
    return None if override.is_empty else override


def _import_row(
    db: Session,
    *,
    org_id: str,
    row: ImportRow,
    mode: ReconcileMode,
    batch_id: str,
    rule_set: CompiledRuleSet | None,
    default_schedule: ScheduleRule,
    timezone_name: str | None,
) -> AttendanceRecord:
    fields = map_fields(row.fields, rule_set.column_map if rule_set is not None else None)
    user_id = row.user_id or (str(fields["user_id"]) if fields.get("user_id") else None)
    if not user_id:
        raise ImportRowError("user_id is required.")
    work_date = row.work_date or _parse_date(fields.get("work_date"))
    if work_date is None:
        raise ImportRowError("work_date is missing or invalid.")

    context = resolve_work_context(
        db,
        org_id=org_id,
        user_id=user_id,
        work_date=work_date,
        default_schedule=default_schedule,
    )
    tz = zone_for(timezone_name or context.schedule.timezone)

    warnings: list[str] = []
    first_in = parse_import_timestamp(fields.get("first_in_at"), work_date, tz)
    last_out = parse_import_timestamp(fields.get("last_out_at"), work_date, tz)
    if fields.get("first_in_at") and first_in is None:
        warnings.append("first_in_at_unparseable")
    if fields.get("last_out_at") and last_out is None:
        warnings.append("last_out_at_unparseable")

    adjust = None
    if rule_set is not None and not rule_set.is_empty:
        adjust = RuleSetAdjuster(rule_set, user_id=user_id, work_date=work_date, context=context, fields=fields)

    meta: dict[str, Any] = {"import_batch_id": batch_id, "source": "import"}
    if warnings:
        meta["import_warnings"] = warnings

    return reconcile_record(
        db,
        user_id=user_id,
        org_id=org_id,
        work_date=work_date,
        context=context,
        first_in=first_in,
        last_out=last_out,
        mode=mode,
        leave_minutes=_optional_minutes(fields.get("leave_minutes")),
        overtime_minutes=_optional_minutes(fields.get("overtime_minutes")),
        override=build_metrics_override(fields),
        adjust=adjust,
        meta=meta,
    )


def _find_batch(db: Session, idempotency_key: str) -> ImportBatch | None:
    return db.scalar(select(ImportBatch).where(ImportBatch.idempotency_key == idempotency_key))


def commit_import(
    db: Session,
    *,
    org_id: str,
    actor_id: str,
    payload: ImportCommitRequest,
    events: EventBus | None = None,
) -> dict[str, Any]:
    """Reconcile each row inside its own savepoint; failed rows are reported, not fatal."""
    mode = ReconcileMode(payload.mode)
    batch_id = str(uuid4())
    records: list[AttendanceRecord] = []
    errors: list[dict[str, Any]] = []

    with atomic(db):
        if payload.idempotency_key:
            existing = _find_batch(db, payload.idempotency_key)
            if existing is not None:
                if existing.org_id != org_id:
                    raise ApiError(status_code=409, code=ALREADY_EXISTS, message="Idempotency key already used.")
                logger.info("import_replayed", extra={"batch_id": existing.id, "org_id": org_id})
                return {**existing.summary, "replayed": True}

        rule_set = load_rule_set(db, org_id=org_id, rule_set_id=payload.rule_set_id)
        default_schedule = load_default_schedule(db, org_id)

        for index, row in enumerate(payload.rows):
            try:
                with db.begin_nested():
                    record = _import_row(
                        db,
                        org_id=org_id,
                        row=row,
                        mode=mode,
                        batch_id=batch_id,
                        rule_set=rule_set,
                        default_schedule=default_schedule,
                        timezone_name=payload.timezone,
                    )
                records.append(record)
            except StoreNotReadyError:
                raise
            except ApiError as exc:
                errors.append({"index": index, "code": exc.code, "message": exc.message})
            except ImportRowError as exc:
                errors.append({"index": index, "code": VALIDATION_ERROR, "message": str(exc)})
            except DBAPIError as exc:
                if is_undefined_table_error(exc):
                    raise StoreNotReadyError() from exc
                logger.warning("import_row_failed", extra={"batch_id": batch_id, "index": index})
                errors.append({"index": index, "code": INTERNAL_ERROR, "message": exc.__class__.__name__})
            except SQLAlchemyError as exc:
                logger.warning("import_row_failed", extra={"batch_id": batch_id, "index": index})
                errors.append({"index": index, "code": INTERNAL_ERROR, "message": exc.__class__.__name__})

        summary: dict[str, Any] = {
            "batch_id": batch_id,
            "mode": mode.value,
            "total": len(payload.rows),
            "imported": len(records),
            "failed": len(errors),
            "errors": errors,
            "record_ids": [record.id for record in records],
            "replayed": False,
        }
        db.add(
            ImportBatch(
                id=batch_id,
                org_id=org_id,
                idempotency_key=payload.idempotency_key or f"auto:{batch_id}",
                rule_set_id=rule_set.id if rule_set is not None else None,
                mode=mode.value,
                row_count=len(payload.rows),
                summary=summary,
                created_by=actor_id,
            )
        )
        try:
            db.flush()
        except IntegrityError as exc:
            raise ApiError(status_code=409, code=ALREADY_EXISTS, message="Idempotency key already used.") from exc

    logger.info(
        "import_committed",
        extra={
            "batch_id": batch_id,
            "org_id": org_id,
            "mode": mode.value,
            "imported": len(records),
            "failed": len(errors),
        },
    )
    if events is not None:
        for record in records:
            events.publish(EVENT_RECORD_UPDATED, record_payload(record))
    return summary
