"""Tests for condition evaluation and template interpolation."""

import pytest

from workflow.conditions import MISSING, evaluate_condition, get_value_by_path
from workflow.expressions import ExpressionEvaluator


@pytest.mark.unit
class TestGetValueByPath:
    def test_nested_dict(self):
        data = {"after": {"owner": {"email": "a@example.com"}}}
        assert get_value_by_path(data, "after.owner.email") == "a@example.com"

    def test_list_index(self):
        assert get_value_by_path({"items": [10, 20]}, "items.1") == 20

    def test_missing_returns_default(self):
        assert get_value_by_path({"a": 1}, "a.b.c") is None
        assert get_value_by_path({"a": 1}, "b", MISSING) is MISSING

    def test_none_value_is_not_missing(self):
        assert get_value_by_path({"a": None}, "a", MISSING) is None


@pytest.mark.unit
class TestEvaluateCondition:
    def test_literal_equality(self):
        assert evaluate_condition({"status": "resolved"}, {"status": "resolved"})
        assert not evaluate_condition({"status": "resolved"}, {"status": "open"})

    def test_all_entries_must_match(self):
        data = {"status": "resolved", "priority": "low"}
        assert not evaluate_condition({"status": "resolved", "priority": "high"}, data)

    def test_empty_condition_matches(self):
        assert evaluate_condition({}, {"anything": 1})

    @pytest.mark.parametrize("rule,value,expected", [
        ({"$eq": 5}, 5, True),
        ({"$ne": "resolved"}, "open", True),
        ({"$ne": "resolved"}, "resolved", False),
        ({"$gt": 3}, 5, True),
        ({"$gte": 5}, 5, True),
        ({"$lt": 3}, 5, False),
        ({"$lte": 5}, 5, True),
        ({"$in": ["high", "urgent"]}, "urgent", True),
        ({"$nin": ["high", "urgent"]}, "low", True),
        ({"$gt": 1, "$lt": 10}, 5, True),
        ({"$gt": 1, "$lt": 10}, 50, False),
    ])
    def test_operators(self, rule, value, expected):
        assert evaluate_condition({"field": rule}, {"field": value}) is expected

    def test_ordering_against_missing_value_is_false(self):
        assert not evaluate_condition({"score": {"$gt": 1}}, {})

    def test_ordering_across_types_is_false(self):
        assert not evaluate_condition({"score": {"$gt": 1}}, {"score": "high"})

    def test_ne_matches_missing_field(self):
        assert evaluate_condition({"status": {"$ne": "resolved"}}, {})

    def test_exists(self):
        assert evaluate_condition({"assignee": {"$exists": True}}, {"assignee": None})
        assert evaluate_condition({"assignee": {"$exists": False}}, {})
        assert not evaluate_condition({"assignee": {"$exists": True}}, {})

    def test_or(self):
        condition = {"$or": [{"status": "open"}, {"priority": "high"}]}
        assert evaluate_condition(condition, {"status": "closed", "priority": "high"})
        assert not evaluate_condition(condition, {"status": "closed", "priority": "low"})

    def test_and(self):
        condition = {"$and": [{"status": "open"}, {"priority": "high"}]}
        assert evaluate_condition(condition, {"status": "open", "priority": "high"})
        assert not evaluate_condition(condition, {"status": "open", "priority": "low"})

    def test_unknown_operator_fails_without_raising(self):
        assert not evaluate_condition({"status": {"$regex": "^re"}}, {"status": "resolved"})

    def test_dict_literal_compared_by_equality(self):
        assert evaluate_condition({"meta": {"a": 1}}, {"meta": {"a": 1}})

    def test_custom_resolver(self):
        def resolve(_data, key):
            return {"x": 1}.get(key, MISSING)

        assert evaluate_condition({"x": 1}, None, resolve)
        assert not evaluate_condition({"y": 1}, None, resolve)


@pytest.mark.unit
class TestExpressionEvaluator:
    NAMESPACE = {
        "variables": {"ticket": {"id": 42, "tags": ["a", "b"]}, "name": "Ada"},
        "trigger": {"after": {"status": "resolved"}},
    }

    def test_whole_template_keeps_type(self):
        assert ExpressionEvaluator.evaluate("{{ variables.ticket.id }}", self.NAMESPACE) == 42
        assert ExpressionEvaluator.evaluate("{{variables.ticket.tags}}", self.NAMESPACE) == ["a", "b"]

    def test_embedded_template_is_stringified(self):
        result = ExpressionEvaluator.evaluate(
            "Ticket {{ variables.ticket.id }} is {{ trigger.after.status }}", self.NAMESPACE
        )
        assert result == "Ticket 42 is resolved"

    def test_unresolved_reference_is_left_in_place(self):
        assert ExpressionEvaluator.evaluate("{{ variables.nope }}", self.NAMESPACE) == "{{ variables.nope }}"
        assert ExpressionEvaluator.evaluate("Hi {{ variables.nope }}", self.NAMESPACE) == "Hi {{ variables.nope }}"

    def test_plain_values_untouched(self):
        assert ExpressionEvaluator.evaluate("no templates", self.NAMESPACE) == "no templates"
        assert ExpressionEvaluator.evaluate(7, self.NAMESPACE) == 7

    def test_resolve_nested_structures(self):
        value = {"id": "{{ variables.ticket.id }}", "who": ["{{ variables.name }}", 1]}
        assert ExpressionEvaluator.resolve(value, self.NAMESPACE) == {"id": 42, "who": ["Ada", 1]}
