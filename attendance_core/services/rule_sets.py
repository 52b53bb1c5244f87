from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
import logging
from typing import Any, Callable, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from attendance_core.db import optional_read, store_errors
from attendance_core.errors import NOT_FOUND, ApiError, RuleSetError, StoreNotReadyError
from attendance_core.models import RuleSet
from attendance_core.services.metrics import DayMetrics
from attendance_core.services.policy_overlay import PolicyOverlay
from attendance_core.services.rule_engine import RuleEngine, build_facts, build_rule_engine, canonical_field
from attendance_core.services.rule_templates import BUILTIN_TEMPLATES
from attendance_core.services.work_context import WorkContext

logger = logging.getLogger("attendance_core.rule_sets")

Punches = tuple[datetime | None, datetime | None]
Adjuster = Callable[[DayMetrics, Punches], tuple[DayMetrics, dict[str, Any]]]

# Record meta keys written by RuleSetAdjuster.
ADJUSTMENT_META_KEYS = ("rule_set", "engine", "policy")

_SECTION_KEYS = {
    "engine": ("engine", "rule_engine", "ruleEngine"),
    "policies": ("policies", "policy"),
    "mappings": ("mappings", "field_mappings", "fieldMappings", "columns"),
}


def _section(config: Mapping[str, Any], name: str) -> Any:
    for key in _SECTION_KEYS[name]:
        if key in config:
            return config[key]
    return None


@dataclass(frozen=True)
class CompiledRuleSet:
    id: str | None
    name: str
    version: int
    engine: RuleEngine
    overlay: PolicyOverlay
    column_map: dict[str, str] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return self.engine.is_empty and self.overlay.is_empty


def compile_rule_set(
    config: Mapping[str, Any] | None,
    *,
    rule_set_id: str | None = None,
    name: str = "inline",
    version: int = 1,
) -> CompiledRuleSet:
    """Compile a stored rule-set document.

    Unknown top-level keys are ignored and every section may be absent.
    """
    config = config or {}
    if not isinstance(config, Mapping):
        raise RuleSetError("Rule set config must be an object.")

    mappings = _section(config, "mappings") or {}
    if not isinstance(mappings, Mapping):
        raise RuleSetError("Rule set mappings must be an object.")
    column_map: dict[str, str] = {}
    for source, target in mappings.items():
        if not isinstance(target, str) or not target.strip():
            raise RuleSetError(f"Mapping for column '{source}' must name a field.")
        column_map[str(source)] = canonical_field(target.strip())

    return CompiledRuleSet(
        id=rule_set_id,
        name=name,
        version=version,
        engine=build_rule_engine(_section(config, "engine"), library=BUILTIN_TEMPLATES),
        overlay=PolicyOverlay.from_config(_section(config, "policies")),
        column_map=column_map,
    )


def map_fields(raw_fields: Mapping[str, Any], column_map: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Rename source columns to canonical field names."""
    mapped: dict[str, Any] = {}
    column_map = column_map or {}
    for key, value in raw_fields.items():
        name = column_map.get(str(key)) or canonical_field(str(key))
        mapped[name] = value
    return mapped


def load_rule_set(
    db: Session,
    *,
    org_id: str,
    rule_set_id: str | None = None,
) -> CompiledRuleSet | None:
    if rule_set_id:
        with store_errors():
            row = db.get(RuleSet, rule_set_id)
        if row is None or row.org_id != org_id or not row.is_active:
            raise ApiError(status_code=404, code=NOT_FOUND, message="Rule set not found.")
        return compile_rule_set(row.config, rule_set_id=row.id, name=row.name, version=row.version)

    try:
        with optional_read(db):
            row = db.scalar(
                select(RuleSet)
                .where(
                    RuleSet.org_id == org_id,
                    RuleSet.is_default.is_(True),
                    RuleSet.is_active.is_(True),
                )
                .order_by(RuleSet.version.desc(), RuleSet.created_at.desc())
                .limit(1)
            )
    except StoreNotReadyError:
        logger.warning("rule_set_store_not_ready", extra={"org_id": org_id})
        return None
    if row is None:
        return None
    return compile_rule_set(row.config, rule_set_id=row.id, name=row.name, version=row.version)


def _hours_to_minutes(hours: float | None) -> int | None:
    if hours is None:
        return None
    return max(0, int(round(hours * 60)))


class RuleSetAdjuster:
    """Runs the rule engine, then the policy overlay, over freshly computed metrics."""

    def __init__(
        self,
        rule_set: CompiledRuleSet,
        *,
        user_id: str,
        work_date: date,
        context: WorkContext,
        fields: Mapping[str, Any] | None = None,
        profile: Mapping[str, Any] | None = None,
    ):
        self.rule_set = rule_set
        self.user_id = user_id
        self.work_date = work_date
        self.context = context
        self.fields = dict(fields or {})
        self.profile = dict(profile or {})

    def __call__(self, metrics: DayMetrics, punches: Punches) -> tuple[DayMetrics, dict[str, Any]]:
        first_in, last_out = punches
        meta: dict[str, Any] = {"rule_set": {"id": self.rule_set.id, "version": self.rule_set.version}}

        if not self.rule_set.engine.is_empty:
            record_facts = {
                **self.fields,
                "user_id": self.user_id,
                "work_date": self.work_date.isoformat(),
                "timezone": self.context.schedule.timezone,
                "first_in_at": first_in,
                "last_out_at": last_out,
                "is_holiday": self.context.is_holiday,
                "is_workday": self.context.is_working_day,
            }
            if self.context.shift_name and "shift" not in self.fields:
                record_facts["shift"] = self.context.shift_name
            calc_facts = {
                "status": metrics.status.value,
                "work_minutes": metrics.work_minutes,
                "late_minutes": metrics.late_minutes,
                "early_leave_minutes": metrics.early_leave_minutes,
                "leave_minutes": metrics.leave_minutes,
                "overtime_minutes": metrics.overtime_minutes,
                "actual_hours": round(metrics.work_minutes / 60, 2),
            }
            outcome = self.rule_set.engine.evaluate(build_facts(record_facts, self.profile, calc_facts))
            changes: dict[str, int] = {}
            actual = _hours_to_minutes(outcome.actual_hours)
            overtime = _hours_to_minutes(outcome.overtime_hours)
            if actual is not None:
                changes["work_minutes"] = actual
            if overtime is not None:
                changes["overtime_minutes"] = overtime
            if changes:
                metrics = replace(metrics, **changes)
            meta["engine"] = outcome.to_dict()

        if not self.rule_set.overlay.is_empty:
            overlay_fields = {**self.profile, **self.fields}
            policy = self.rule_set.overlay.apply(
                metrics,
                user_id=self.user_id,
                fields=overlay_fields,
                is_holiday=self.context.is_holiday,
                is_working_day=self.context.is_working_day,
                shift_name=self.context.shift_name or overlay_fields.get("shift"),
            )
            metrics = policy.metrics
            meta["policy"] = {
                "applied_rules": policy.applied_rules,
                "warnings": policy.warnings,
                "user_groups": policy.user_groups,
            }

        return metrics, meta
