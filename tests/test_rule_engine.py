from __future__ import annotations

import unittest
from datetime import datetime, timezone

from attendance_core.errors import RuleSetError
from attendance_core.services.rule_engine import (
    Op,
    build_facts,
    build_rule_engine,
    canonical_field,
    compile_condition,
    compile_effect,
    evaluate_predicate,
)
from attendance_core.services.rule_templates import BUILTIN_TEMPLATES, list_builtin_templates


class ConditionTests(unittest.TestCase):
    def test_suffix_operators_compile_to_fields(self) -> None:
        predicate = compile_condition(
            {"shift": "rest", "approval_contains": "trip", "record.clockIn1_before": "09:00"}
        )

        ops = [(child.field, child.op) for child in predicate.children]
        self.assertEqual(
            ops,
            [("shift", Op.MATCH), ("approval", Op.CONTAINS), ("first_in_at", Op.BEFORE)],
        )
        self.assertEqual(predicate.children[2].operand, 540)

    def test_not_contains_wins_over_contains(self) -> None:
        predicate = compile_condition({"department_not_contains": "ops"})
        self.assertEqual(predicate.children[0].op, Op.NOT_CONTAINS)
        self.assertEqual(predicate.children[0].field, "department")

    def test_object_form_and_composites(self) -> None:
        predicate = compile_condition(
            {
                "any": [
                    {"field": "late_minutes", "op": "gte", "value": 30},
                    {"not": {"is_workday": True}},
                ]
            }
        )
        facts = {"late_minutes": 45, "is_workday": True}
        self.assertTrue(evaluate_predicate(predicate, facts))
        self.assertFalse(evaluate_predicate(predicate, {"late_minutes": 5, "is_workday": True}))
        self.assertTrue(evaluate_predicate(predicate, {"late_minutes": 5, "is_workday": False}))

    def test_unknown_operator_rejected(self) -> None:
        with self.assertRaises(RuleSetError):
            compile_condition({"field": "late_minutes", "op": "between", "value": [1, 2]})

    def test_bad_time_operand_rejected(self) -> None:
        with self.assertRaises(RuleSetError):
            compile_condition({"first_in_before": "nine"})

    def test_user_ids_condition(self) -> None:
        predicate = compile_condition({"userIds": ["u-1", "u-2"]})
        self.assertTrue(evaluate_predicate(predicate, {"user_id": "u-2"}))
        self.assertFalse(evaluate_predicate(predicate, {"user_id": "u-3"}))

    def test_odd_fact_values_do_not_match(self) -> None:
        predicate = compile_condition({"late_minutes_gt": 10, "first_in_after": "09:00"})
        self.assertFalse(evaluate_predicate(predicate, {"late_minutes": "n/a", "first_in_at": object()}))

    def test_canonical_field_strips_prefixes_and_aliases(self) -> None:
        self.assertEqual(canonical_field("profile.roleTags"), "role_tags")
        self.assertEqual(canonical_field("calc.workMinutes"), "work_minutes")
        self.assertEqual(canonical_field("custom_flag"), "custom_flag")


class EffectTests(unittest.TestCase):
    def test_effect_shorthand_and_blocks(self) -> None:
        effect = compile_effect({"overtime_hours": 2, "add": {"actual_hours": 1}, "warn": "x", "stop": True})

        self.assertEqual(effect.sets, (("overtime_hours", 2.0),))
        self.assertEqual(effect.adds, (("actual_hours", 1.0),))
        self.assertEqual(effect.warnings, ("x",))
        self.assertTrue(effect.stop)

    def test_unknown_effect_rejected(self) -> None:
        with self.assertRaises(RuleSetError):
            compile_effect({"bonus": 100})
        with self.assertRaises(RuleSetError):
            compile_effect({"set": {"salary": 1}})


class RuleEngineTests(unittest.TestCase):
    def test_rest_shift_trip_applies_overtime_once(self) -> None:
        engine = build_rule_engine(
            {
                "rules": [
                    {
                        "id": "trip-on-rest",
                        "when": {"shift": "rest", "approval_contains": "trip"},
                        "then": {"overtime_hours": 8},
                    }
                ]
            }
        )
        facts = build_facts(record={"shift": "rest", "approval": "business trip request"})

        result = engine.evaluate(facts)

        self.assertEqual(result.applied_rules, ["trip-on-rest"])
        self.assertEqual(result.overtime_hours, 8.0)
        self.assertIsNone(result.actual_hours)

    def test_template_scope_gates_rules(self) -> None:
        engine = build_rule_engine(
            {"template_names": ["driver_rest_overtime"]},
            BUILTIN_TEMPLATES,
        )
        driver = build_facts(
            record={"shift": "rest day", "first_in_at": "2026-03-02T08:00:00"},
            profile={"role_tags": "driver, night"},
        )
        clerk = build_facts(
            record={"shift": "rest day", "first_in_at": "2026-03-02T08:00:00"},
            profile={"role_tags": ["clerk"]},
        )

        self.assertEqual(engine.evaluate(driver).overtime_hours, 8.0)
        self.assertEqual(engine.evaluate(driver).warnings, ["Driver rest-day punch counted as overtime"])
        self.assertEqual(engine.evaluate(clerk).applied_rules, [])

    def test_stop_halts_evaluation_and_adds_accumulate(self) -> None:
        engine = build_rule_engine(
            {
                "rules": [
                    {"id": "base", "when": {}, "then": {"add_actual_hours": 1, "warn": "w"}},
                    {"id": "again", "when": {}, "then": {"add": {"actual_hours": 1}, "warn": "w", "stop": True}},
                    {"id": "never", "when": {}, "then": {"actual_hours": 0}},
                ]
            }
        )

        result = engine.evaluate(build_facts(calc={"actual_hours": 6}))

        self.assertEqual(result.applied_rules, ["base", "again"])
        self.assertEqual(result.actual_hours, 8.0)
        self.assertEqual(result.warnings, ["w"])

    def test_unknown_template_name_rejected(self) -> None:
        with self.assertRaises(RuleSetError):
            build_rule_engine({"templateName": "missing"}, BUILTIN_TEMPLATES)

    def test_default_library_templates_used_without_names(self) -> None:
        engine = build_rule_engine({}, BUILTIN_TEMPLATES)
        self.assertEqual([template.name for template in engine.templates], ["default"])
        self.assertTrue(engine.is_empty)

    def test_list_builtin_templates(self) -> None:
        names = [item["name"] for item in list_builtin_templates()]
        self.assertIn("rest_shift_trip_overtime", names)


class FactTests(unittest.TestCase):
    def test_record_wins_over_profile_and_calc(self) -> None:
        facts = build_facts(
            record={"department": "ops"},
            profile={"dept": "hr", "roles": "a,b"},
            calc={"department": "calc", "workMinutes": 480},
        )

        self.assertEqual(facts["department"], "ops")
        self.assertEqual(facts["role_tags"], ["a", "b"])
        self.assertEqual(facts["work_minutes"], 480)
        self.assertFalse(facts["has_punch"])

    def test_datetimes_shifted_into_record_timezone(self) -> None:
        facts = build_facts(
            record={
                "timezone": "Europe/Istanbul",
                "first_in_at": datetime(2026, 3, 2, 5, 50, tzinfo=timezone.utc),
            }
        )
        predicate = compile_condition({"first_in_before": "09:00"})

        self.assertEqual(facts["first_in_at"].hour, 8)
        self.assertTrue(evaluate_predicate(predicate, facts))
        self.assertTrue(facts["has_punch"])


if __name__ == "__main__":
    unittest.main()
