from __future__ import annotations

import unittest
from contextlib import contextmanager
from datetime import date, datetime, timezone

from attendance_core.errors import ApiError, RuleSetError, StoreNotReadyError
from attendance_core.models import AttendanceStatus, RuleSet
from attendance_core.services.metrics import DayMetrics, ScheduleRule
from attendance_core.services.rule_sets import RuleSetAdjuster, compile_rule_set, load_rule_set, map_fields
from attendance_core.services.work_context import WorkContext

SCHEDULE = ScheduleRule(
    timezone="UTC",
    work_start="09:00",
    work_end="18:00",
    late_grace_minutes=10,
    early_grace_minutes=10,
    rounding_minutes=5,
    working_weekdays=frozenset({1, 2, 3, 4, 5}),
)


def _context(*, shift_name: str | None = None, is_working_day: bool = True) -> WorkContext:
    return WorkContext(
        schedule=SCHEDULE,
        is_working_day=is_working_day,
        source="shift" if shift_name else "rule",
        shift_id="s-1" if shift_name else None,
        shift_name=shift_name,
    )


class _GetDB:
    def __init__(self, row: RuleSet | None):
        self._row = row

    def get(self, model, pk):  # type: ignore[no-untyped-def]
        if self._row is not None and model is RuleSet and pk == self._row.id:
            return self._row
        return None


class _NotReadyDB:
    def __init__(self) -> None:
        self.savepoint_rollbacks = 0

    @contextmanager
    def begin_nested(self):  # type: ignore[no-untyped-def]
        try:
            yield self
        except BaseException:
            self.savepoint_rollbacks += 1
            raise

    def scalar(self, _statement):  # type: ignore[no-untyped-def]
        raise StoreNotReadyError()


class CompileRuleSetTests(unittest.TestCase):
    def test_sections_and_aliases(self) -> None:
        compiled = compile_rule_set(
            {
                "ruleEngine": {"templateNames": ["driver_default_hours"]},
                "policy": {"rules": [{"name": "p", "then": {"set_late_minutes": 0}}]},
                "fieldMappings": {"Giriş": "clockIn1", "Sicil": "userId"},
                "ui": {"ignored": True},
            },
            rule_set_id="rs-1",
            version=3,
        )

        self.assertEqual(compiled.version, 3)
        self.assertEqual([template.name for template in compiled.engine.templates], ["driver_default_hours"])
        self.assertFalse(compiled.overlay.is_empty)
        self.assertEqual(compiled.column_map, {"Giriş": "first_in_at", "Sicil": "user_id"})
        self.assertFalse(compiled.is_empty)

    def test_empty_document_is_empty(self) -> None:
        self.assertTrue(compile_rule_set(None).is_empty)

    def test_bad_mapping_rejected(self) -> None:
        with self.assertRaises(RuleSetError):
            compile_rule_set({"mappings": {"A": 5}})

    def test_map_fields(self) -> None:
        mapped = map_fields({"Sicil": "u-7", "lateMinutes": 3, "custom": "x"}, {"Sicil": "user_id"})
        self.assertEqual(mapped, {"user_id": "u-7", "late_minutes": 3, "custom": "x"})


class LoadRuleSetTests(unittest.TestCase):
    def test_explicit_id_must_belong_to_org(self) -> None:
        row = RuleSet(id="rs-1", org_id="org-2", name="other", version=1, config={}, is_active=True)

        with self.assertRaises(ApiError) as ctx:
            load_rule_set(_GetDB(row), org_id="org-1", rule_set_id="rs-1")  # type: ignore[arg-type]

        self.assertEqual(ctx.exception.status_code, 404)

    def test_explicit_id_compiles_row(self) -> None:
        row = RuleSet(id="rs-1", org_id="org-1", name="main", version=2, config={}, is_active=True)

        compiled = load_rule_set(_GetDB(row), org_id="org-1", rule_set_id="rs-1")  # type: ignore[arg-type]

        self.assertIsNotNone(compiled)
        assert compiled is not None
        self.assertEqual((compiled.id, compiled.name, compiled.version), ("rs-1", "main", 2))

    def test_default_lookup_degrades_when_store_not_ready(self) -> None:
        db = _NotReadyDB()

        with self.assertLogs("attendance_core.rule_sets", level="WARNING") as logs:
            compiled = load_rule_set(db, org_id="org-1")  # type: ignore[arg-type]

        self.assertIsNone(compiled)
        self.assertEqual(db.savepoint_rollbacks, 1)
        self.assertIn("rule_set_store_not_ready", logs.output[0])


class RuleSetAdjusterTests(unittest.TestCase):
    def test_engine_hours_become_minutes_and_policy_runs_after(self) -> None:
        compiled = compile_rule_set(
            {
                "engine": {"template_names": ["rest_shift_trip_overtime"]},
                "policies": {
                    "rules": [
                        {
                            "name": "cap-overtime",
                            "when": {"compare": [{"field": "overtime_minutes", "op": "gt", "value": 300}]},
                            "then": {"set_overtime_minutes": 300, "warning": "overtime capped"},
                        }
                    ]
                },
            },
            rule_set_id="rs-1",
        )
        adjuster = RuleSetAdjuster(
            compiled,
            user_id="u-1",
            work_date=date(2026, 3, 2),
            context=_context(shift_name="rest"),
            fields={"approval": "business trip"},
        )
        metrics = DayMetrics(status=AttendanceStatus.NORMAL, work_minutes=480)
        punches = (
            datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc),
            datetime(2026, 3, 2, 17, 0, tzinfo=timezone.utc),
        )

        adjusted, meta = adjuster(metrics, punches)

        self.assertEqual(adjusted.overtime_minutes, 300)
        self.assertEqual(adjusted.work_minutes, 480)
        self.assertEqual(meta["engine"]["applied_rules"], ["rest-shift-trip-overtime"])
        self.assertEqual(meta["engine"]["reasons"], ["Business trip on rest shift"])
        self.assertEqual(meta["policy"]["applied_rules"], ["cap-overtime"])
        self.assertEqual(meta["rule_set"], {"id": "rs-1", "version": 1})

    def test_driver_default_hours_sets_work_minutes(self) -> None:
        compiled = compile_rule_set({"engine": {"template_names": ["driver_default_hours"]}})
        adjuster = RuleSetAdjuster(
            compiled,
            user_id="u-1",
            work_date=date(2026, 3, 2),
            context=_context(),
            profile={"role_tags": ["driver"]},
        )

        adjusted, meta = adjuster(DayMetrics(status=AttendanceStatus.LATE, work_minutes=300), (None, None))

        self.assertEqual(adjusted.work_minutes, 480)
        self.assertEqual(meta["engine"]["warnings"], ["Driver default 8 hours applied"])
        self.assertNotIn("policy", meta)


if __name__ == "__main__":
    unittest.main()
