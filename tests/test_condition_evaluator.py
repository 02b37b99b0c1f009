"""Tests for routing condition evaluation"""
import pytest

from approval_engine.engine.condition_evaluator import ConditionEvaluator


@pytest.fixture
def evaluator():
    return ConditionEvaluator()


def group(*conditions, operator="and"):
    return {"operator": operator, "conditions": list(conditions)}


def rule(field, operator, value=None):
    return {"field": field, "operator": operator, "value": value}


@pytest.mark.parametrize("operator,value,expected", [
    ("gt", 1000, True),
    ("gte", 5000, True),
    ("lt", 5000, False),
    ("lte", 5000, True),
    ("eq", 5000, True),
    ("ne", 5000, False),
    ("between", [1000, 6000], True),
    ("between", [6000, 9000], False),
    (">", "4999.5", True),
])
def test_numeric_operators(evaluator, operator, value, expected):
    assert evaluator.evaluate(group(rule("amount", operator, value)), {"amount": 5000}) is expected


def test_dot_path_lookup(evaluator):
    context = {"order": {"vendor": {"country": "DE"}}}
    assert evaluator.evaluate(group(rule("order.vendor.country", "in", ["DE", "FR"])), context)
    assert not evaluator.evaluate(group(rule("order.vendor.city", "exists")), context)
    assert evaluator.evaluate(group(rule("order.vendor.city", "not_exists")), context)


def test_and_or_nesting(evaluator):
    conditions = group(
        rule("department", "eq", "finance"),
        group(rule("amount", "gt", 10000), rule("urgent", "eq", True), operator="or"),
    )
    assert evaluator.evaluate(conditions, {"department": "finance", "amount": 50, "urgent": True})
    assert not evaluator.evaluate(conditions, {"department": "finance", "amount": 50, "urgent": False})
    assert not evaluator.evaluate(conditions, {"department": "sales", "amount": 50000})


def test_empty_groups(evaluator):
    assert evaluator.evaluate(group(), {}) is True
    assert evaluator.evaluate(group(operator="or"), {}) is False


def test_string_operators(evaluator):
    context = {"title": "Laptop refresh Q3", "tags": ["it", "hardware"]}
    assert evaluator.evaluate(group(rule("title", "starts_with", "Laptop")), context)
    assert evaluator.evaluate(group(rule("title", "ends_with", "Q3")), context)
    assert evaluator.evaluate(group(rule("title", "contains", "refresh")), context)
    assert evaluator.evaluate(group(rule("tags", "contains", "it")), context)
    assert evaluator.evaluate(group(rule("tags", "not_contains", "travel")), context)
    assert evaluator.evaluate(group(rule("title", "matches", r"Q\d$")), context)


def test_empty_checks(evaluator):
    assert evaluator.evaluate(group(rule("note", "empty")), {"note": "   "})
    assert evaluator.evaluate(group(rule("items", "is_not_empty")), {"items": [1]})
    assert evaluator.evaluate(group(rule("missing", "empty")), {})


def test_dates(evaluator):
    context = {"needed_by": "2030-01-15T00:00:00Z"}
    assert evaluator.evaluate(group(rule("needed_by", "date_after", "2030-01-01")), context)
    assert not evaluator.evaluate(group(rule("needed_by", "date_before", "2030-01-01")), context)


class TestFailsClosed:

    def test_unknown_operator(self, evaluator):
        assert not evaluator.evaluate(group(rule("amount", "roughly", 10)), {"amount": 10})

    def test_non_numeric_comparison(self, evaluator):
        assert not evaluator.evaluate(group(rule("amount", "gt", 10)), {"amount": "lots"})

    def test_booleans_are_not_numbers(self, evaluator):
        assert not evaluator.evaluate(group(rule("flag", "gt", 0)), {"flag": True})

    def test_invalid_regex(self, evaluator):
        assert not evaluator.evaluate(group(rule("name", "matches", "([")), {"name": "x"})

    def test_malformed_group(self, evaluator):
        assert not evaluator.evaluate({"operator": "and", "conditions": [{"field": "x"}]}, {"x": 1})
