from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError


@dataclass(frozen=True, slots=True)
class SchemaGuardResult:
    ok: bool
    checked_at_utc: datetime
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at_utc": self.checked_at_utc.isoformat(),
            "issues": list(self.issues),
            "warnings": list(self.warnings),
        }


REQUIRED_TABLE_COLUMNS: dict[str, set[str]] = {
    "attendance_rules": {"id", "org_id", "working_days", "is_default"},
    "attendance_shifts": {"id", "org_id", "work_start_time", "work_end_time"},
    "attendance_shift_assignments": {"id", "user_id", "shift_id", "start_date", "end_date"},
    "attendance_rotation_rules": {"id", "shift_sequence"},
    "attendance_rotation_assignments": {"id", "user_id", "rotation_rule_id", "start_date"},
    "attendance_holidays": {"id", "org_id", "holiday_date", "is_working_day"},
    "attendance_events": {"id", "user_id", "work_date", "occurred_at", "event_type"},
    "attendance_records": {"id", "user_id", "org_id", "work_date", "status", "meta"},
    "attendance_requests": {"id", "status", "approval_instance_id", "metadata"},
    "approval_instances": {"id", "status", "version"},
    "approval_records": {"id", "instance_id", "from_version", "to_version"},
    "attendance_rule_sets": {"id", "config", "version"},
    "attendance_import_batches": {"id", "idempotency_key", "summary"},
    "attendance_auto_absence_runs": {"id", "org_id", "work_date"},
    "system_configs": {"key", "value"},
    "alembic_version": {"version_num"},
}

REQUIRED_ENUM_VALUES: dict[str, set[str]] = {
    "attendance_status": {"normal", "late", "early_leave", "late_early", "partial", "absent", "adjusted", "off"},
    "attendance_event_type": {"check_in", "check_out", "adjustment"},
    "approval_status": {"pending", "approved", "rejected", "cancelled"},
}


def verify_runtime_schema(engine: Engine) -> SchemaGuardResult:
    issues: list[str] = []
    warnings: list[str] = []
    checked_at_utc = datetime.now(timezone.utc)
    inspector = inspect(engine)

    for table_name, required_columns in REQUIRED_TABLE_COLUMNS.items():
        try:
            column_names = {str(item.get("name")) for item in inspector.get_columns(table_name)}
        except SQLAlchemyError as exc:
            issues.append(f"TABLE_MISSING:{table_name}:{exc.__class__.__name__}")
            continue

        missing_columns = sorted(item for item in required_columns if item not in column_names)
        if missing_columns:
            issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing_columns)}")

    try:
        enums = inspector.get_enums() or []
    except (SQLAlchemyError, NotImplementedError) as exc:
        warnings.append(f"ENUM_INSPECTION_FAILED:{exc.__class__.__name__}")
        enums = []

    labels_by_enum = {
        str(item.get("name")): {str(label) for label in item.get("labels") or []}
        for item in enums
        if item.get("name")
    }
    for enum_name, required_values in REQUIRED_ENUM_VALUES.items():
        labels = labels_by_enum.get(enum_name)
        if labels is None:
            warnings.append(f"ENUM_NOT_FOUND:{enum_name}")
            continue
        missing_values = sorted(required_values - labels)
        if missing_values:
            issues.append(f"MISSING_ENUM_VALUES:{enum_name}:{','.join(missing_values)}")

    try:
        with engine.connect() as connection:
            version = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
        if not str(version or "").strip():
            issues.append("ALEMBIC_VERSION_EMPTY")
    except SQLAlchemyError as exc:
        issues.append(f"ALEMBIC_VERSION_CHECK_FAILED:{exc.__class__.__name__}")

    return SchemaGuardResult(
        ok=not issues,
        checked_at_utc=checked_at_utc,
        issues=issues,
        warnings=warnings,
    )
