"""Template interpolation for step fields.

Resolves ``{{ path }}`` references against the execution namespace:

- ``{{ variables.ticket.id }}``       job variables (and assign_to results)
- ``{{ trigger.after.status }}``      trigger snapshot
- ``{{ session.user.email }}``        acting user
- ``{{ variables.webhook.body.ref }}`` inbound webhook data

A string that is exactly one reference resolves to the raw value (so
dicts, lists and numbers keep their type). References embedded in longer
text are stringified. Unresolvable references are left untouched.
"""

import re
from typing import Any

from workflow.conditions import MISSING, get_value_by_path

_TEMPLATE = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")


class ExpressionEvaluator:
    """Resolves ``{{ path }}`` templates in strings and nested structures."""

    @staticmethod
    def evaluate(expression: Any, namespace: dict[str, Any]) -> Any:
        """Resolve a single string. Non-strings are returned as-is."""
        if not isinstance(expression, str) or "{{" not in expression:
            return expression

        whole = _TEMPLATE.fullmatch(expression.strip())
        if whole:
            value = get_value_by_path(namespace, whole.group(1), MISSING)
            return expression if value is MISSING else value

        def _replace(match: re.Match) -> str:
            value = get_value_by_path(namespace, match.group(1), MISSING)
            if value is MISSING or value is None:
                return match.group(0)
            return str(value)

        return _TEMPLATE.sub(_replace, expression)

    @classmethod
    def resolve(cls, value: Any, namespace: dict[str, Any]) -> Any:
        """Recursively resolve templates in strings, dicts and lists."""
        if isinstance(value, str):
            return cls.evaluate(value, namespace)
        if isinstance(value, dict):
            return {key: cls.resolve(item, namespace) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return [cls.resolve(item, namespace) for item in value]
        return value
