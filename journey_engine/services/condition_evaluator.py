from typing import Any, Iterable

from journey_engine.schemas.node_config import ConditionRule
from journey_engine.services.customer_directory import CustomerDirectory


_MISSING = object()


def evaluate_conditions(
    conditions: Iterable[ConditionRule | dict[str, Any]] | None,
    context: dict[str, Any],
    logic: str = "all",
    *,
    directory: CustomerDirectory | None = None,
) -> bool:
    """Evaluate rules against ``customer``, ``order`` and ``product`` context.

    An empty rule list is no filter and passes. ``logic`` is ``all`` or
    ``any``; ``AND``/``OR`` are accepted case-insensitively.
    """
    rules = [_as_rule(item) for item in (conditions or [])]
    rules = [rule for rule in rules if rule is not None]
    if not rules:
        return True

    resolver = _ContextResolver(context, directory)
    results = [
        _compare(rule.operator, resolver.actual_value(rule.source, rule.field), rule.value)
        for rule in rules
    ]
    if str(logic or "all").strip().lower() in {"any", "or"}:
        return any(results)
    return all(results)


def _as_rule(item: ConditionRule | dict[str, Any]) -> ConditionRule | None:
    if isinstance(item, ConditionRule):
        return item
    if isinstance(item, dict) and all(isinstance(item.get(key), str) for key in ("source", "field", "operator")):
        return ConditionRule.model_validate(item)
    return None


class _ContextResolver:
    def __init__(self, context: dict[str, Any], directory: CustomerDirectory | None):
        self._context = context or {}
        self._directory = directory
        self._customer: Any = _MISSING

    def _customer_record(self) -> Any:
        if self._customer is _MISSING:
            customer = self._context.get("customer")
            if customer is None and self._context.get("customer_id") and self._directory is not None:
                customer = self._directory.get_customer(str(self._context["customer_id"]))
            self._customer = customer
        return self._customer

    def actual_value(self, source: str, path: str) -> Any:
        if source == "customer":
            return resolve_path(self._customer_record(), path)
        if source == "order":
            return resolve_path(_first_present(self._context.get("order"), self._context.get("trigger_event")), path)
        if source == "product":
            return resolve_path(_first_present(self._context.get("product"), self._context.get("trigger_event")), path)
        return None


def _first_present(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def resolve_path(container: Any, path: str) -> Any:
    normalized = (path or "").strip()
    if not normalized or not isinstance(container, dict):
        return None

    current: Any = container
    for part in [item for item in normalized.split(".") if item]:
        if isinstance(current, dict):
            if part not in current:
                return None
            current = current[part]
            continue
        if isinstance(current, list):
            if not part.isdigit():
                return None
            index = int(part)
            if index >= len(current):
                return None
            current = current[index]
            continue
        return None
    return current


def _compare(operator: str, actual: Any, expected: Any) -> bool:
    op = (operator or "").strip().lower()
    if op == "is_not_set":
        return not _has_value(actual)
    if actual is None:
        return False
    if op == "is_set":
        return _has_value(actual)

    if op == "equals":
        return _equals(actual, expected)
    if op == "not_equals":
        return not _equals(actual, expected)
    if op == "contains":
        return _lower(expected) in _lower(actual)
    if op == "not_contains":
        return _lower(expected) not in _lower(actual)
    if op == "starts_with":
        return _lower(actual).startswith(_lower(expected))

    if op in {"greater_than", "gt", "less_than", "lt"}:
        left = to_number(actual)
        right = to_number(expected)
        if left is None or right is None:
            return False
        if op in {"greater_than", "gt"}:
            return left > right
        return left < right

    if op == "between":
        if not isinstance(expected, (list, tuple)) or len(expected) != 2:
            return False
        value = to_number(actual)
        low = to_number(expected[0])
        high = to_number(expected[1])
        if value is None or low is None or high is None:
            return False
        return low <= value <= high

    return False


def _equals(left: Any, right: Any) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return left is right
    return left == right


def _lower(value: Any) -> str:
    return str("" if value is None else value).lower()


def to_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return number


def _has_value(value: Any) -> bool:
    if value is None:
        return False
    return bool(str(value).strip())
