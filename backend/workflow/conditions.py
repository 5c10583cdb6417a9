"""Declarative condition evaluation.

A condition is a mapping of dotted paths to either a literal (equality)
or an operator object. All entries must match (implicit AND):

    {"after.status": "resolved", "before.status": {"$ne": "resolved"}}
    {"priority": {"$in": ["high", "urgent"]}, "score": {"$gte": 5}}
    {"$or": [{"status": "open"}, {"assignee": {"$exists": False}}]}
"""

import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

MISSING = object()


def get_value_by_path(obj: Any, path: str, default: Any = None) -> Any:
    """Resolve a dotted path ('after.owner.email', 'items.0') against nested dicts/lists."""
    current = obj
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return default
            current = current[part]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return default
        elif current is not None and hasattr(current, part):
            current = getattr(current, part)
        else:
            return default
    return current


def _safe_compare(compare: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def _op(actual: Any, expected: Any) -> bool:
        try:
            return compare(actual, expected)
        except TypeError:
            # None vs number, str vs int, ...
            return False
    return _op


def _in(actual: Any, expected: Any) -> bool:
    try:
        return actual in expected
    except TypeError:
        return False


OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "$eq": lambda actual, expected: actual == expected,
    "$ne": lambda actual, expected: actual != expected,
    "$gt": _safe_compare(lambda a, e: a > e),
    "$gte": _safe_compare(lambda a, e: a >= e),
    "$lt": _safe_compare(lambda a, e: a < e),
    "$lte": _safe_compare(lambda a, e: a <= e),
    "$in": _in,
    "$nin": lambda actual, expected: not _in(actual, expected),
}


def _matches_rule(actual: Any, rule: Any) -> bool:
    is_operator_object = (
        isinstance(rule, dict) and rule and all(k.startswith("$") for k in rule)
    )
    if not is_operator_object:
        return (None if actual is MISSING else actual) == rule

    for op, expected in rule.items():
        if op == "$exists":
            if (actual is not MISSING) != bool(expected):
                return False
            continue
        handler = OPERATORS.get(op)
        if handler is None:
            logger.warning(f"Unknown condition operator {op!r}, treating as no match")
            return False
        if not handler(None if actual is MISSING else actual, expected):
            return False
    return True


def evaluate_condition(
    condition: dict[str, Any],
    data: Any,
    resolve: Callable[[Any, str], Any] = None,
) -> bool:
    """Evaluate a condition mapping against data.

    Args:
        condition: Mapping of path -> literal or operator object
        data: Object the paths are resolved against
        resolve: Optional resolver(data, key) overriding dotted-path lookup

    Returns:
        True if every entry matches
    """
    resolver = resolve or (lambda obj, key: get_value_by_path(obj, key, MISSING))

    for key, rule in condition.items():
        if key == "$and":
            if not isinstance(rule, list) or not all(
                evaluate_condition(sub, data, resolve) for sub in rule
            ):
                return False
            continue
        if key == "$or":
            if not isinstance(rule, list) or not any(
                evaluate_condition(sub, data, resolve) for sub in rule
            ):
                return False
            continue

        if not _matches_rule(resolver(data, key), rule):
            return False

    return True
