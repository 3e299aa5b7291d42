"""Tests for rule evaluation and the JavaScript-style coercions behind it."""

import math

import pytest

from cvflow.schemas.flow import Rule
from cvflow.services.conditions import (
    evaluate,
    evaluate_rule,
    js_number,
    js_string,
    js_trim,
)


def rule(field, operator, value=""):
    return Rule(field=field, operator=operator, value=value)


class TestCoercions:
    @pytest.mark.parametrize(
        "raw, expected",
        [("21", 21.0), (" 21 ", 21.0), ("", 0.0), ("0x1A", 26.0), ("1e3", 1000.0), (".5", 0.5), (True, 1.0)],
    )
    def test_js_number(self, raw, expected):
        assert js_number(raw) == expected

    @pytest.mark.parametrize("raw", ["not-a-number", "12abc", None, "1,000"])
    def test_js_number_nan(self, raw):
        assert math.isnan(js_number(raw))

    def test_js_string(self):
        assert js_string(None) == "undefined"
        assert js_string(True) == "true"
        assert js_string(3.0) == "3"
        assert js_string(2.5) == "2.5"

    def test_js_trim_matches_string_trim(self):
        assert js_trim("\u3000\u2003 A\u202f\ufeff") == "A"
        # not whitespace to String.prototype.trim()
        assert js_trim("A\x85") == "A\x85"
        assert js_trim("\x1cA") == "\x1cA"

    def test_equals_keeps_non_js_whitespace(self):
        assert evaluate_rule(rule("ab", "equals", "A"), {"ab": "A\x85"}) is False
        assert evaluate_rule(rule("ab", "equals", "A"), {"ab": "A\u3000"}) is True


class TestOperators:
    def test_greater_than_numeric_string(self):
        assert evaluate_rule(rule("age", "greater_than", "18"), {"age": "21"}) is True

    def test_greater_than_not_a_number_is_false(self):
        assert evaluate_rule(rule("age", "greater_than", "18"), {"age": "not-a-number"}) is False
        assert evaluate_rule(rule("age", "less_than", "18"), {"age": "not-a-number"}) is False

    def test_in_list_ignores_case_and_spaces(self):
        assert evaluate_rule(rule("role", "in_list", "admin, editor"), {"role": "Editor"}) is True
        assert evaluate_rule(rule("role", "in_list", "admin, editor"), {"role": "viewer"}) is False

    def test_not_in_list_is_complement(self):
        bindings = {"role": " ADMIN "}
        assert evaluate_rule(rule("role", "not_in_list", "admin,editor"), bindings) is False
        assert evaluate_rule(rule("role", "not_in_list", "owner"), bindings) is True

    def test_equals_trims_and_ignores_case(self):
        assert evaluate_rule(rule("ab", "equals", "a"), {"ab": "  A "}) is True
        assert evaluate_rule(rule("ab", "not_equals", "a"), {"ab": "A"}) is False

    def test_contains_is_case_sensitive(self):
        assert evaluate_rule(rule("skills", "contains", "Py"), {"skills": "Python, Go"}) is True
        assert evaluate_rule(rule("skills", "contains", "py"), {"skills": "Python, Go"}) is False

    def test_starts_and_ends_with(self):
        bindings = {"email": "Jane@Example.com"}
        assert evaluate_rule(rule("email", "starts_with", "jane"), bindings) is True
        assert evaluate_rule(rule("email", "ends_with", "EXAMPLE.COM"), bindings) is True

    @pytest.mark.parametrize("value", [None, "", "   ", 0, False])
    def test_is_empty(self, value):
        bindings = {} if value is None else {"x": value}
        assert evaluate_rule(rule("x", "is_empty"), bindings) is True
        assert evaluate_rule(rule("x", "is_not_empty"), bindings) is False

    def test_missing_binding_is_undefined(self):
        # String(undefined) == "undefined"
        assert evaluate_rule(rule("x", "equals", "undefined"), {}) is True

    def test_unknown_operator_is_false(self):
        assert evaluate_rule(rule("x", "matches_regex", ".*"), {"x": "a"}) is False

    def test_numeric_binding_compares_as_number(self):
        assert evaluate_rule(rule("years", "greater_than", "2"), {"years": 3}) is True
        assert evaluate_rule(rule("years", "equals", "3"), {"years": 3.0}) is True


class TestCombinators:
    def test_no_rules_passes(self):
        assert evaluate("and", [], {}) is True
        assert evaluate("or", [], {}) is True

    def test_and_requires_all(self):
        rules = [rule("a", "equals", "1"), rule("b", "equals", "2")]
        assert evaluate("and", rules, {"a": "1", "b": "2"}) is True
        assert evaluate("and", rules, {"a": "1", "b": "3"}) is False

    def test_or_requires_any(self):
        rules = [rule("a", "equals", "1"), rule("b", "equals", "2")]
        assert evaluate("or", rules, {"a": "0", "b": "2"}) is True
        assert evaluate("or", rules, {"a": "0", "b": "0"}) is False

    def test_unknown_combinator_means_and(self):
        rules = [rule("a", "equals", "1"), rule("b", "equals", "2")]
        assert evaluate("xor", rules, {"a": "1", "b": "0"}) is False
        assert evaluate(None, rules, {"a": "1", "b": "2"}) is True
