"""Declarative condition/effect rules over a flattened fact map.

Rule documents are compiled once into :class:`Predicate` trees and
:class:`Effect` values. Unknown operators and unknown effect keys are rejected
with :class:`RuleSetError` at compile time; evaluation itself never raises on
odd fact values, a predicate that cannot be evaluated simply does not match.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import enum
import logging
import re
from typing import Any, Iterable, Mapping, Sequence

from attendance_core.errors import RuleSetError
from attendance_core.services.timezones import parse_hhmm, zone_for

logger = logging.getLogger("attendance_core.rule_engine")

HOUR_FIELDS = ("overtime_hours", "required_hours", "actual_hours")

FIELD_ALIASES: dict[str, str] = {
    "userId": "user_id",
    "orgId": "org_id",
    "workDate": "work_date",
    "date": "work_date",
    "firstInAt": "first_in_at",
    "first_in": "first_in_at",
    "clockIn1": "first_in_at",
    "clock_in_1": "first_in_at",
    "checkIn": "first_in_at",
    "lastOutAt": "last_out_at",
    "last_out": "last_out_at",
    "clockOut1": "last_out_at",
    "clock_out_1": "last_out_at",
    "checkOut": "last_out_at",
    "workMinutes": "work_minutes",
    "lateMinutes": "late_minutes",
    "earlyLeaveMinutes": "early_leave_minutes",
    "leaveMinutes": "leave_minutes",
    "overtimeMinutes": "overtime_minutes",
    "attendanceGroup": "attendance_group",
    "group": "attendance_group",
    "shiftName": "shift",
    "shift_name": "shift",
    "isHoliday": "is_holiday",
    "isWorkday": "is_workday",
    "isWorkingDay": "is_workday",
    "is_working_day": "is_workday",
    "roleTags": "role_tags",
    "roles": "role_tags",
    "approvals": "approval",
    "approvalSummary": "approval",
    "department": "department",
    "dept": "department",
    "overtimeHours": "overtime_hours",
    "requiredHours": "required_hours",
    "actualHours": "actual_hours",
}

_FACT_PREFIXES = ("record.", "profile.", "calc.")


def canonical_field(name: str) -> str:
    key = str(name).strip()
    for prefix in _FACT_PREFIXES:
        if key.startswith(prefix):
            key = key[len(prefix):]
            break
    return FIELD_ALIASES.get(key, key)


class Op(str, enum.Enum):
    EXISTS = "exists"
    CONTAINS = "contains"
    CONTAINS_ANY = "contains_any"
    NOT_CONTAINS = "not_contains"
    BEFORE = "before"
    AFTER = "after"
    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"
    EQ = "eq"
    NE = "ne"
    IN = "in"
    TRUTHY = "truthy"
    FALSY = "falsy"
    REGEX = "regex"
    MATCH = "match"
    ROLE = "role"
    ALL = "all"
    ANY = "any"
    NOT = "not"


# Longest suffix first so ``_not_contains`` wins over ``_contains``.
_SUFFIX_OPS: tuple[tuple[str, Op], ...] = (
    ("_contains_any", Op.CONTAINS_ANY),
    ("_not_contains", Op.NOT_CONTAINS),
    ("_contains", Op.CONTAINS),
    ("_exists", Op.EXISTS),
    ("_before", Op.BEFORE),
    ("_after", Op.AFTER),
    ("_gte", Op.GTE),
    ("_lte", Op.LTE),
    ("_gt", Op.GT),
    ("_lt", Op.LT),
    ("_eq", Op.EQ),
    ("_ne", Op.NE),
)

_OBJECT_OPS: dict[str, Op] = {
    "eq": Op.EQ,
    "equals": Op.EQ,
    "ne": Op.NE,
    "neq": Op.NE,
    "gt": Op.GT,
    "lt": Op.LT,
    "gte": Op.GTE,
    "lte": Op.LTE,
    "exists": Op.EXISTS,
    "contains": Op.CONTAINS,
    "contains_any": Op.CONTAINS_ANY,
    "not_contains": Op.NOT_CONTAINS,
    "before": Op.BEFORE,
    "after": Op.AFTER,
    "in": Op.IN,
    "truthy": Op.TRUTHY,
    "falsy": Op.FALSY,
    "regex": Op.REGEX,
}


@dataclass(frozen=True)
class Predicate:
    op: Op
    field: str = ""
    operand: Any = None
    children: tuple[Predicate, ...] = ()


@dataclass(frozen=True)
class Effect:
    sets: tuple[tuple[str, float], ...] = ()
    adds: tuple[tuple[str, float], ...] = ()
    warnings: tuple[str, ...] = ()
    reasons: tuple[str, ...] = ()
    stop: bool = False


@dataclass(frozen=True)
class CompiledRule:
    rule_id: str
    condition: Predicate
    effect: Effect


@dataclass(frozen=True)
class CompiledTemplate:
    name: str
    scope: Predicate | None
    rules: tuple[CompiledRule, ...]
    is_default: bool = False
    description: str | None = None


@dataclass
class EngineResult:
    applied_rules: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    reasons: list[str] = field(default_factory=list)
    overtime_hours: float | None = None
    required_hours: float | None = None
    actual_hours: float | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "applied_rules": list(self.applied_rules),
            "warnings": list(self.warnings),
            "reasons": list(self.reasons),
        }
        for name in HOUR_FIELDS:
            value = getattr(self, name)
            if value is not None:
                payload[name] = value
        return payload


_COMPOSITE_KEYS = {"all": Op.ALL, "any": Op.ANY, "not": Op.NOT}


def _split_suffix(key: str) -> tuple[str, Op]:
    if key == "role":
        return "role", Op.ROLE
    for suffix, op in _SUFFIX_OPS:
        if key.endswith(suffix) and len(key) > len(suffix):
            return key[: -len(suffix)], op
    return key, Op.MATCH


def _compile_object_condition(raw: Mapping[str, Any]) -> Predicate:
    field_name = str(raw.get("field") or "").strip()
    op_name = str(raw.get("op") or "eq").strip().lower()
    op = _OBJECT_OPS.get(op_name)
    if op is None:
        raise RuleSetError(f"Unknown rule operator: {op_name}")
    if not field_name:
        raise RuleSetError("Rule condition requires a field.")
    operand = raw.get("value", True if op == Op.EXISTS else None)
    if op == Op.REGEX:
        try:
            operand = re.compile(str(operand or ""))
        except re.error as exc:
            raise RuleSetError(f"Invalid regex in rule condition: {exc}") from exc
    return Predicate(op=op, field=canonical_field(field_name), operand=operand)


def compile_condition(raw: Any) -> Predicate:
    """Compile a ``when``/``scope`` clause into a predicate tree (AND at the top)."""
    if raw is None:
        return Predicate(op=Op.ALL)
    if isinstance(raw, list):
        return Predicate(op=Op.ALL, children=tuple(compile_condition(item) for item in raw))
    if not isinstance(raw, Mapping):
        raise RuleSetError("Rule condition must be an object or a list.")

    if "field" in raw or "op" in raw:
        return _compile_object_condition(raw)

    children: list[Predicate] = []
    for key, value in raw.items():
        key = str(key)
        if key in _COMPOSITE_KEYS:
            op = _COMPOSITE_KEYS[key]
            if op == Op.NOT:
                children.append(Predicate(op=Op.NOT, children=(compile_condition(value),)))
                continue
            if not isinstance(value, list):
                raise RuleSetError(f"'{key}' expects a list of conditions.")
            children.append(Predicate(op=op, children=tuple(compile_condition(item) for item in value)))
            continue
        if key in ("userIds", "user_ids"):
            if not isinstance(value, list):
                raise RuleSetError(f"'{key}' expects a list of user ids.")
            children.append(Predicate(op=Op.IN, field="user_id", operand=[str(item) for item in value]))
            continue

        field_name, op = _split_suffix(key)
        operand = value
        if op in (Op.BEFORE, Op.AFTER):
            operand = parse_hhmm(value)
            if operand is None:
                raise RuleSetError(f"'{key}' expects an HH:MM time.")
        children.append(Predicate(op=op, field=canonical_field(field_name), operand=operand))
    return Predicate(op=Op.ALL, children=tuple(children))


_EFFECT_KEYS = {
    "set",
    "add",
    "warn",
    "warning",
    "warnings",
    "reason",
    "reasons",
    "stop",
    *HOUR_FIELDS,
    *(f"add_{name}" for name in HOUR_FIELDS),
}


def _number(value: Any, key: str) -> float:
    if isinstance(value, bool):
        raise RuleSetError(f"Effect '{key}' expects a number.")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise RuleSetError(f"Effect '{key}' expects a number.") from exc


def _text_list(*values: Any) -> tuple[str, ...]:
    items: list[str] = []
    for value in values:
        if value is None:
            continue
        for item in value if isinstance(value, list) else [value]:
            text = str(item).strip()
            if text:
                items.append(text)
    return tuple(items)


def compile_effect(raw: Any) -> Effect:
    if raw is None:
        return Effect()
    if not isinstance(raw, Mapping):
        raise RuleSetError("Rule 'then' must be an object.")
    unknown = sorted(str(key) for key in raw if key not in _EFFECT_KEYS)
    if unknown:
        raise RuleSetError(f"Unknown rule effect: {', '.join(unknown)}")

    sets: dict[str, float] = {}
    adds: dict[str, float] = {}
    for section, target in (("set", sets), ("add", adds)):
        block = raw.get(section) or {}
        if not isinstance(block, Mapping):
            raise RuleSetError(f"Rule '{section}' must be an object.")
        for key, value in block.items():
            if key not in HOUR_FIELDS:
                raise RuleSetError(f"Unknown rule effect field: {section}.{key}")
            target[key] = _number(value, f"{section}.{key}")
    for name in HOUR_FIELDS:
        if name in raw:
            sets[name] = _number(raw[name], name)
        if f"add_{name}" in raw:
            adds[name] = _number(raw[f"add_{name}"], f"add_{name}")

    return Effect(
        sets=tuple(sets.items()),
        adds=tuple(adds.items()),
        warnings=_text_list(raw.get("warn"), raw.get("warning"), raw.get("warnings")),
        reasons=_text_list(raw.get("reason"), raw.get("reasons")),
        stop=bool(raw.get("stop", False)),
    )


def compile_template(raw: Mapping[str, Any], *, fallback_name: str) -> CompiledTemplate:
    if not isinstance(raw, Mapping):
        raise RuleSetError("Rule template must be an object.")
    name = str(raw.get("name") or fallback_name).strip() or fallback_name
    raw_rules = raw.get("rules") or []
    if not isinstance(raw_rules, list):
        raise RuleSetError(f"Template '{name}' rules must be a list.")

    rules: list[CompiledRule] = []
    for index, raw_rule in enumerate(raw_rules):
        if not isinstance(raw_rule, Mapping):
            raise RuleSetError(f"Template '{name}' rule #{index} must be an object.")
        rule_id = str(raw_rule.get("id") or raw_rule.get("name") or f"{name}:{index}").strip()
        effect = compile_effect(raw_rule.get("then", raw_rule.get("action")))
        if raw_rule.get("stop") or raw_rule.get("stopOnMatch"):
            effect = Effect(effect.sets, effect.adds, effect.warnings, effect.reasons, True)
        rules.append(
            CompiledRule(
                rule_id=rule_id,
                condition=compile_condition(raw_rule.get("when", raw_rule.get("if"))),
                effect=effect,
            )
        )

    scope_raw = raw.get("scope")
    return CompiledTemplate(
        name=name,
        scope=compile_condition(scope_raw) if scope_raw else None,
        rules=tuple(rules),
        is_default=bool(raw.get("is_default") or raw.get("isDefault") or raw.get("default")),
        description=raw.get("description"),
    )


def _flatten(source: Mapping[str, Any] | None, into: dict[str, Any]) -> None:
    for key, value in (source or {}).items():
        into[canonical_field(str(key))] = value


def build_facts(
    record: Mapping[str, Any] | None = None,
    profile: Mapping[str, Any] | None = None,
    calc: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Record values win over profile values, which win over calculated ones."""
    facts: dict[str, Any] = {}
    _flatten(calc, facts)
    _flatten(profile, facts)
    _flatten(record, facts)

    tz_name = facts.get("timezone")
    if isinstance(tz_name, str) and tz_name:
        tz = zone_for(tz_name)
        for key, value in list(facts.items()):
            if isinstance(value, datetime) and value.tzinfo is not None:
                facts[key] = value.astimezone(tz)

    role_tags = facts.get("role_tags")
    if isinstance(role_tags, str):
        facts["role_tags"] = [item.strip() for item in role_tags.split(",") if item.strip()]
    elif role_tags is None:
        facts["role_tags"] = []

    facts["has_punch"] = _present(facts.get("first_in_at")) or _present(facts.get("last_out_at"))
    return facts


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip() != ""
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) > 0
    return True


def _as_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_time_minutes(value: Any) -> int | None:
    if isinstance(value, datetime):
        return value.hour * 60 + value.minute
    if isinstance(value, str):
        text = value.strip()
        if "T" in text:
            text = text.split("T", 1)[1][:5]
        elif " " in text:
            text = text.split(" ", 1)[1][:5]
        return parse_hhmm(text)
    return None


def _contains_one(value: Any, expected: Any) -> bool:
    if value is None:
        return False
    needle = str(expected)
    if isinstance(value, (list, tuple, set)):
        return any(str(item) == needle or needle in str(item) for item in value)
    return needle in str(value)


def _loose_equal(value: Any, expected: Any) -> bool:
    if isinstance(expected, bool) or isinstance(value, bool):
        return _as_bool(value) == _as_bool(expected)
    left, right = _as_float(value), _as_float(expected)
    if left is not None and right is not None:
        return left == right
    if value is None or expected is None:
        return value is expected
    return str(value) == str(expected)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "y", "on")
    return bool(value)


def _plain_match(value: Any, expected: Any) -> bool:
    if isinstance(expected, (list, tuple)):
        if isinstance(value, (list, tuple, set)):
            return any(_loose_equal(item, candidate) for item in value for candidate in expected)
        return any(_loose_equal(value, candidate) for candidate in expected)
    if isinstance(value, (list, tuple, set)):
        return any(_loose_equal(item, expected) for item in value)
    return _loose_equal(value, expected)


def _role_match(facts: Mapping[str, Any], expected: Any) -> bool:
    tags = facts.get("role_tags") or []
    tag_set = {str(item) for item in tags} if isinstance(tags, (list, tuple, set)) else set()
    role = facts.get("role")
    wanted = expected if isinstance(expected, (list, tuple)) else [expected]
    for item in wanted:
        needle = str(item)
        if needle in tag_set:
            return True
        if role is not None and _contains_one(role, needle):
            return True
    return False


def evaluate_predicate(predicate: Predicate, facts: Mapping[str, Any]) -> bool:
    op = predicate.op
    if op == Op.ALL:
        return all(evaluate_predicate(child, facts) for child in predicate.children)
    if op == Op.ANY:
        return any(evaluate_predicate(child, facts) for child in predicate.children)
    if op == Op.NOT:
        return not all(evaluate_predicate(child, facts) for child in predicate.children)
    if op == Op.ROLE:
        return _role_match(facts, predicate.operand)

    value = facts.get(predicate.field)
    expected = predicate.operand

    if op == Op.EXISTS:
        return _present(value) == _as_bool(expected)
    if op == Op.CONTAINS:
        items = expected if isinstance(expected, list) else [expected]
        return all(_contains_one(value, item) for item in items)
    if op == Op.CONTAINS_ANY:
        items = expected if isinstance(expected, list) else [expected]
        return any(_contains_one(value, item) for item in items)
    if op == Op.NOT_CONTAINS:
        items = expected if isinstance(expected, list) else [expected]
        return not any(_contains_one(value, item) for item in items)
    if op in (Op.BEFORE, Op.AFTER):
        actual = _as_time_minutes(value)
        target = expected if isinstance(expected, int) else _as_time_minutes(expected)
        if actual is None or target is None:
            return False
        return actual < target if op == Op.BEFORE else actual > target
    if op in (Op.GT, Op.LT, Op.GTE, Op.LTE):
        left, right = _as_float(value), _as_float(expected)
        if left is None or right is None:
            return False
        if op == Op.GT:
            return left > right
        if op == Op.LT:
            return left < right
        if op == Op.GTE:
            return left >= right
        return left <= right
    if op == Op.EQ:
        return _loose_equal(value, expected)
    if op == Op.NE:
        return not _loose_equal(value, expected)
    if op == Op.IN:
        if not isinstance(expected, (list, tuple)):
            return False
        return any(_loose_equal(value, item) for item in expected)
    if op == Op.TRUTHY:
        return _as_bool(value)
    if op == Op.FALSY:
        return not _as_bool(value)
    if op == Op.REGEX:
        return bool(expected.search("" if value is None else str(value)))
    return _plain_match(value, expected)


def _append_unique(target: list[str], items: Iterable[str]) -> None:
    for item in items:
        if item not in target:
            target.append(item)


class RuleEngine:
    def __init__(self, templates: Sequence[CompiledTemplate]):
        self.templates = tuple(templates)

    @property
    def is_empty(self) -> bool:
        return not any(template.rules for template in self.templates)

    def evaluate(self, facts: Mapping[str, Any]) -> EngineResult:
        result = EngineResult()
        for template in self.templates:
            if template.scope is not None and not evaluate_predicate(template.scope, facts):
                continue
            for rule in template.rules:
                if not evaluate_predicate(rule.condition, facts):
                    continue
                result.applied_rules.append(rule.rule_id)
                self._apply(rule.effect, result, facts)
                if rule.effect.stop:
                    return result
        return result

    @staticmethod
    def _apply(effect: Effect, result: EngineResult, facts: Mapping[str, Any]) -> None:
        for name, value in effect.sets:
            setattr(result, name, value)
        for name, delta in effect.adds:
            current = getattr(result, name)
            if current is None:
                current = _as_float(facts.get(name)) or 0.0
            setattr(result, name, current + delta)
        _append_unique(result.warnings, effect.warnings)
        _append_unique(result.reasons, effect.reasons)


def build_rule_engine(
    config: Mapping[str, Any] | None,
    library: Sequence[Mapping[str, Any]] = (),
) -> RuleEngine:
    """Select and compile templates from a rule-set ``engine`` section.

    Templates named in ``template_names``/``templateName`` are taken from the
    document first, then from ``library``. Without names every document
    template is used, plus library templates flagged as default. Top-level
    ``rules`` form a trailing ad-hoc template.
    """
    config = config or {}
    if not isinstance(config, Mapping):
        raise RuleSetError("Rule engine section must be an object.")

    raw_templates = config.get("templates") or []
    if not isinstance(raw_templates, list):
        raise RuleSetError("Rule engine templates must be a list.")
    document = [
        compile_template(item, fallback_name=f"template-{index + 1}") for index, item in enumerate(raw_templates)
    ]
    by_name = {template.name: template for template in document}

    names: list[str] = []
    single = config.get("template_name", config.get("templateName"))
    if isinstance(single, str) and single.strip():
        names.append(single.strip())
    many = config.get("template_names", config.get("templateNames")) or []
    if not isinstance(many, list):
        raise RuleSetError("template_names must be a list.")
    names.extend(str(item).strip() for item in many if str(item).strip())

    selected: list[CompiledTemplate] = []
    if names:
        library_by_name = {str(item.get("name")): item for item in library}
        for name in names:
            if name in by_name:
                selected.append(by_name[name])
            elif name in library_by_name:
                selected.append(compile_template(library_by_name[name], fallback_name=name))
            else:
                raise RuleSetError(f"Unknown rule template: {name}")
    else:
        selected.extend(document)
        for item in library:
            if item.get("is_default") or item.get("isDefault"):
                selected.append(compile_template(item, fallback_name=str(item.get("name"))))

    extra_rules = config.get("rules")
    if extra_rules:
        selected.append(compile_template({"name": "custom", "rules": extra_rules}, fallback_name="custom"))

    return RuleEngine(selected)
