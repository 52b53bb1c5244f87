from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Sequence

from attendance_core.errors import RuleSetError
from attendance_core.models import AttendanceStatus
from attendance_core.services.metrics import DayMetrics
from attendance_core.services.rule_engine import canonical_field

METRIC_FIELDS = ("work_minutes", "late_minutes", "early_leave_minutes", "leave_minutes", "overtime_minutes")

_COMPARE_OPS = {"gt", "gte", "lt", "lte", "eq", "ne"}

_WHEN_ALIASES = {
    "userIds": "user_ids",
    "userGroups": "user_groups",
    "shiftNames": "shift_names",
    "isHoliday": "is_holiday",
    "isWorkingDay": "is_working_day",
    "statusIn": "status_in",
    "fieldsExist": "fields_exist",
    "fieldEquals": "field_equals",
}

_GROUP_ALIASES = {
    "userIds": "user_ids",
    "fieldEquals": "field_equals",
    "fieldIn": "field_in",
    "fieldContains": "field_contains",
    "fieldBoolean": "field_boolean",
}


def _snake(key: str) -> str:
    out = []
    for char in key:
        if char.isupper():
            out.append("_")
            out.append(char.lower())
        else:
            out.append(char)
    return "".join(out)


@dataclass(frozen=True)
class UserGroup:
    name: str
    user_ids: frozenset[str] = frozenset()
    field_equals: tuple[tuple[str, Any], ...] = ()
    field_in: tuple[tuple[str, tuple[Any, ...]], ...] = ()
    field_contains: tuple[tuple[str, str], ...] = ()
    field_boolean: tuple[tuple[str, bool], ...] = ()

    @property
    def has_predicates(self) -> bool:
        return bool(self.field_equals or self.field_in or self.field_contains or self.field_boolean)


@dataclass(frozen=True)
class Comparison:
    field: str
    op: str
    value: Any


@dataclass(frozen=True)
class PolicyWhen:
    user_ids: frozenset[str] | None = None
    user_groups: tuple[str, ...] | None = None
    shift_names: tuple[str, ...] | None = None
    is_holiday: bool | None = None
    is_working_day: bool | None = None
    status_in: tuple[str, ...] | None = None
    fields_exist: tuple[str, ...] = ()
    field_equals: tuple[tuple[str, Any], ...] = ()
    compare: tuple[Comparison, ...] = ()


@dataclass(frozen=True)
class PolicyThen:
    sets: tuple[tuple[str, int], ...] = ()
    adds: tuple[tuple[str, int], ...] = ()
    status: AttendanceStatus | None = None
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class PolicyRule:
    name: str
    when: PolicyWhen
    then: PolicyThen


@dataclass
class PolicyResult:
    metrics: DayMetrics
    applied_rules: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    user_groups: list[str] = field(default_factory=list)


def _mapping(value: Any, label: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise RuleSetError(f"'{label}' must be an object.")
    return value


def _string_tuple(value: Any, label: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise RuleSetError(f"'{label}' must be a list.")
    return tuple(str(item) for item in value)


def _to_int(value: Any, label: str) -> int:
    if isinstance(value, bool):
        raise RuleSetError(f"'{label}' expects a number.")
    try:
        return int(round(float(value)))
    except (TypeError, ValueError) as exc:
        raise RuleSetError(f"'{label}' expects a number.") from exc


def parse_user_group(raw: Mapping[str, Any], *, index: int) -> UserGroup:
    if not isinstance(raw, Mapping):
        raise RuleSetError("User group must be an object.")
    data = {_GROUP_ALIASES.get(key, key): value for key, value in raw.items()}
    name = str(data.get("name") or "").strip()
    if not name:
        raise RuleSetError(f"User group #{index} requires a name.")

    field_in: list[tuple[str, tuple[Any, ...]]] = []
    for key, values in _mapping(data.get("field_in"), "field_in").items():
        if not isinstance(values, list):
            raise RuleSetError(f"field_in.{key} must be a list.")
        field_in.append((canonical_field(key), tuple(values)))

    return UserGroup(
        name=name,
        user_ids=frozenset(_string_tuple(data.get("user_ids"), "user_ids")),
        field_equals=tuple(
            (canonical_field(key), value) for key, value in _mapping(data.get("field_equals"), "field_equals").items()
        ),
        field_in=tuple(field_in),
        field_contains=tuple(
            (canonical_field(key), str(value))
            for key, value in _mapping(data.get("field_contains"), "field_contains").items()
        ),
        field_boolean=tuple(
            (canonical_field(key), bool(value))
            for key, value in _mapping(data.get("field_boolean"), "field_boolean").items()
        ),
    )


def _parse_when(raw: Any, rule_name: str) -> PolicyWhen:
    data = {_WHEN_ALIASES.get(key, key): value for key, value in _mapping(raw, "when").items()}
    known = {
        "user_ids",
        "user_groups",
        "shift_names",
        "is_holiday",
        "is_working_day",
        "status_in",
        "fields_exist",
        "field_equals",
        "compare",
    }
    unknown = sorted(key for key in data if key not in known)
    if unknown:
        raise RuleSetError(f"Policy '{rule_name}' has unknown conditions: {', '.join(unknown)}")

    comparisons: list[Comparison] = []
    raw_compare = data.get("compare") or []
    if not isinstance(raw_compare, list):
        raise RuleSetError(f"Policy '{rule_name}' compare must be a list.")
    for item in raw_compare:
        if not isinstance(item, Mapping) or not item.get("field"):
            raise RuleSetError(f"Policy '{rule_name}' compare entries need a field.")
        op = str(item.get("op") or "eq").strip().lower()
        if op not in _COMPARE_OPS:
            raise RuleSetError(f"Policy '{rule_name}' uses unknown operator: {op}")
        comparisons.append(Comparison(field=_snake(str(item["field"])), op=op, value=item.get("value")))

    statuses = _string_tuple(data.get("status_in"), "status_in") if "status_in" in data else None
    return PolicyWhen(
        user_ids=frozenset(_string_tuple(data["user_ids"], "user_ids")) if "user_ids" in data else None,
        user_groups=_string_tuple(data["user_groups"], "user_groups") if "user_groups" in data else None,
        shift_names=_string_tuple(data["shift_names"], "shift_names") if "shift_names" in data else None,
        is_holiday=bool(data["is_holiday"]) if data.get("is_holiday") is not None else None,
        is_working_day=bool(data["is_working_day"]) if data.get("is_working_day") is not None else None,
        status_in=statuses,
        fields_exist=tuple(canonical_field(item) for item in _string_tuple(data.get("fields_exist"), "fields_exist")),
        field_equals=tuple(
            (canonical_field(key), value) for key, value in _mapping(data.get("field_equals"), "field_equals").items()
        ),
        compare=tuple(comparisons),
    )


def _parse_then(raw: Any, rule_name: str) -> PolicyThen:
    sets: list[tuple[str, int]] = []
    adds: list[tuple[str, int]] = []
    status: AttendanceStatus | None = None
    warnings: list[str] = []

    for key, value in _mapping(raw, "then").items():
        name = _snake(str(key))
        if name.startswith("set_") and name[4:] in METRIC_FIELDS:
            sets.append((name[4:], _to_int(value, key)))
        elif name.startswith("add_") and name[4:] in METRIC_FIELDS:
            adds.append((name[4:], _to_int(value, key)))
        elif name == "set_status":
            try:
                status = AttendanceStatus(str(value))
            except ValueError as exc:
                raise RuleSetError(f"Policy '{rule_name}' sets unknown status: {value}") from exc
        elif name in ("warning", "warn"):
            if str(value).strip():
                warnings.append(str(value).strip())
        elif name == "warnings":
            warnings.extend(item for item in _string_tuple(value, key) if item.strip())
        else:
            raise RuleSetError(f"Policy '{rule_name}' has unknown effect: {key}")

    return PolicyThen(sets=tuple(sets), adds=tuple(adds), status=status, warnings=tuple(warnings))


def parse_policy_rule(raw: Mapping[str, Any], *, index: int) -> PolicyRule:
    if not isinstance(raw, Mapping):
        raise RuleSetError("Policy rule must be an object.")
    name = str(raw.get("name") or raw.get("id") or f"policy-{index + 1}")
    return PolicyRule(name=name, when=_parse_when(raw.get("when"), name), then=_parse_then(raw.get("then"), name))


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip() != ""
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) > 0
    return True


def _number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _same(left: Any, right: Any) -> bool:
    a, b = _number(left), _number(right)
    if a is not None and b is not None:
        return a == b
    if isinstance(left, bool) or isinstance(right, bool):
        return bool(left) == bool(right)
    return str(left) == str(right)


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "y", "on")
    return bool(value)


def user_in_group(group: UserGroup, *, user_id: str, fields: Mapping[str, Any]) -> bool:
    if user_id in group.user_ids:
        return True
    if not group.has_predicates:
        return False
    for key, expected in group.field_equals:
        if not _same(fields.get(key), expected):
            return False
    for key, options in group.field_in:
        if not any(_same(fields.get(key), option) for option in options):
            return False
    for key, needle in group.field_contains:
        value = fields.get(key)
        if value is None:
            return False
        if isinstance(value, (list, tuple, set)):
            if not any(needle in str(item) for item in value):
                return False
        elif needle not in str(value):
            return False
    for key, expected in group.field_boolean:
        if _truthy(fields.get(key)) != expected:
            return False
    return True


def _compare(actual: Any, op: str, expected: Any) -> bool:
    left, right = _number(actual), _number(expected)
    if left is None or right is None:
        if op == "eq":
            return actual is not None and _same(actual, expected)
        if op == "ne":
            return actual is None or not _same(actual, expected)
        return False
    if op == "gt":
        return left > right
    if op == "gte":
        return left >= right
    if op == "lt":
        return left < right
    if op == "lte":
        return left <= right
    if op == "eq":
        return left == right
    return left != right


class PolicyOverlay:
    """Org-configured rules applied, in order, on top of computed metrics.

    Later rules see the metrics as already changed by earlier rules.
    """

    def __init__(self, groups: Sequence[UserGroup], rules: Sequence[PolicyRule]):
        self.groups = {group.name: group for group in groups}
        self.rules = tuple(rules)

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | None) -> PolicyOverlay:
        config = _mapping(config, "policies")
        raw_groups = config.get("user_groups", config.get("userGroups")) or []
        raw_rules = config.get("rules") or []
        if not isinstance(raw_groups, list) or not isinstance(raw_rules, list):
            raise RuleSetError("Policy user_groups and rules must be lists.")
        return cls(
            [parse_user_group(item, index=index) for index, item in enumerate(raw_groups)],
            [parse_policy_rule(item, index=index) for index, item in enumerate(raw_rules)],
        )

    @property
    def is_empty(self) -> bool:
        return not self.rules

    def resolve_groups(self, *, user_id: str, fields: Mapping[str, Any]) -> list[str]:
        return [name for name, group in self.groups.items() if user_in_group(group, user_id=user_id, fields=fields)]

    def apply(
        self,
        metrics: DayMetrics,
        *,
        user_id: str,
        fields: Mapping[str, Any] | None = None,
        is_holiday: bool = False,
        is_working_day: bool = True,
        shift_name: str | None = None,
    ) -> PolicyResult:
        row_fields = {canonical_field(str(key)): value for key, value in (fields or {}).items()}
        groups = self.resolve_groups(user_id=user_id, fields=row_fields)
        result = PolicyResult(metrics=metrics, user_groups=groups)

        for rule in self.rules:
            if not self._matches(
                rule.when,
                metrics=result.metrics,
                user_id=user_id,
                groups=groups,
                fields=row_fields,
                is_holiday=is_holiday,
                is_working_day=is_working_day,
                shift_name=shift_name,
            ):
                continue
            result.metrics = self._apply_then(rule.then, result.metrics)
            result.applied_rules.append(rule.name)
            for warning in rule.then.warnings:
                if warning not in result.warnings:
                    result.warnings.append(warning)
        return result

    @staticmethod
    def _matches(
        when: PolicyWhen,
        *,
        metrics: DayMetrics,
        user_id: str,
        groups: list[str],
        fields: Mapping[str, Any],
        is_holiday: bool,
        is_working_day: bool,
        shift_name: str | None,
    ) -> bool:
        if when.user_ids is not None and user_id not in when.user_ids:
            return False
        if when.user_groups is not None and not any(name in groups for name in when.user_groups):
            return False
        if when.shift_names is not None and (shift_name is None or shift_name not in when.shift_names):
            return False
        if when.is_holiday is not None and when.is_holiday != is_holiday:
            return False
        if when.is_working_day is not None and when.is_working_day != is_working_day:
            return False
        if when.status_in is not None and metrics.status.value not in when.status_in:
            return False
        for key in when.fields_exist:
            if not _present(fields.get(key)):
                return False
        for key, expected in when.field_equals:
            if not _same(fields.get(key), expected):
                return False
        for comparison in when.compare:
            if comparison.field in METRIC_FIELDS:
                actual = getattr(metrics, comparison.field)
            else:
                actual = fields.get(canonical_field(comparison.field))
            if not _compare(actual, comparison.op, comparison.value):
                return False
        return True

    @staticmethod
    def _apply_then(then: PolicyThen, metrics: DayMetrics) -> DayMetrics:
        changes: dict[str, Any] = {}
        for name, value in then.sets:
            changes[name] = max(0, value)
        for name, delta in then.adds:
            current = changes.get(name, getattr(metrics, name))
            changes[name] = max(0, int(current) + delta)
        if then.status is not None:
            changes["status"] = then.status
        return replace(metrics, **changes) if changes else metrics
