"""Extra lead filters attached to a rule.

Grammar::

    {"all": [cond, ...]}   every condition holds
    {"any": [cond, ...]}   at least one holds
    {"not": cond}          negation
    {"field": "status", "op": "in", "value": ["new", "contacted"]}

Supported operators: equals, not_equals, contains, in, lt, gt, lte, gte,
exists. Fields are looked up on the lead snapshot and may be dotted paths.
An empty mapping always matches.
"""

from __future__ import annotations

from typing import Any, Mapping, Sequence

from crm_automation.domain.errors import InvalidConfiguration

_COMPOUND_KEYS = ("all", "any", "not")
_OPERATORS = {
    "equals",
    "eq",
    "not_equals",
    "ne",
    "contains",
    "in",
    "lt",
    "gt",
    "lte",
    "gte",
    "exists",
}


def evaluate_conditions(snapshot: Mapping[str, Any], conditions: Mapping[str, Any] | None) -> bool:
    if not conditions:
        return True
    return _evaluate(snapshot, conditions)


def validate_conditions(conditions: Mapping[str, Any] | None) -> None:
    if not conditions:
        return
    problems: list[dict] = []
    _collect_problems(conditions, "conditions", problems)
    if problems:
        raise InvalidConfiguration(detail="Invalid rule conditions", errors=problems)


def _evaluate(snapshot: Mapping[str, Any], condition: Any) -> bool:
    if not isinstance(condition, Mapping):
        return False
    if "field" in condition:
        actual = _lookup(snapshot, condition["field"])
        return _apply(actual, condition.get("value"), str(condition.get("op", "equals")).lower())

    all_conditions = condition.get("all")
    any_conditions = condition.get("any")
    not_condition = condition.get("not")
    if all_conditions is not None and not all(_evaluate(snapshot, item) for item in all_conditions):
        return False
    if any_conditions is not None and not any(_evaluate(snapshot, item) for item in any_conditions):
        return False
    if not_condition is not None and _evaluate(snapshot, not_condition):
        return False
    return any(key in condition for key in _COMPOUND_KEYS)


def _collect_problems(condition: Any, path: str, problems: list[dict]) -> None:
    if not isinstance(condition, Mapping):
        problems.append({"field": path, "message": "condition must be an object"})
        return
    if "field" in condition:
        field = condition.get("field")
        if not isinstance(field, str) or not field:
            problems.append({"field": f"{path}.field", "message": "field must be a non-empty string"})
        op = str(condition.get("op", "equals")).lower()
        if op not in _OPERATORS:
            problems.append({"field": f"{path}.op", "message": f"unsupported operator: {op}"})
        if op == "in" and not isinstance(condition.get("value"), (list, tuple)):
            problems.append({"field": f"{path}.value", "message": "'in' expects a list"})
        return
    present = [key for key in _COMPOUND_KEYS if key in condition]
    if not present:
        problems.append({"field": path, "message": "expected one of all/any/not or a field condition"})
        return
    for key in ("all", "any"):
        if key not in condition:
            continue
        items = condition[key]
        if not isinstance(items, Sequence) or isinstance(items, str):
            problems.append({"field": f"{path}.{key}", "message": "must be a list"})
            continue
        for index, item in enumerate(items):
            _collect_problems(item, f"{path}.{key}[{index}]", problems)
    if "not" in condition:
        _collect_problems(condition["not"], f"{path}.not", problems)


def _lookup(snapshot: Mapping[str, Any], field: str) -> Any:
    current: Any = snapshot
    for part in field.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return None
    return current


def _apply(actual: Any, expected: Any, op: str) -> bool:
    if op in {"equals", "eq"}:
        return actual == expected
    if op in {"not_equals", "ne"}:
        return actual != expected
    if op == "exists":
        return (actual is not None) == bool(expected if expected is not None else True)
    if op == "contains":
        if isinstance(actual, str) and isinstance(expected, str):
            return expected in actual
        if isinstance(actual, (list, tuple, set)):
            return expected in actual
        return False
    if op == "in":
        return isinstance(expected, (list, tuple, set)) and actual in expected
    if op in {"lt", "gt", "lte", "gte"}:
        if isinstance(actual, bool) or not isinstance(actual, (int, float)):
            return False
        if isinstance(expected, bool) or not isinstance(expected, (int, float)):
            return False
        if op == "lt":
            return actual < expected
        if op == "gt":
            return actual > expected
        if op == "lte":
            return actual <= expected
        return actual >= expected
    return False
