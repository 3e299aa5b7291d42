"""
Rule evaluation for condition nodes.

Flows are authored in a browser designer and were first run there, so the
comparison semantics follow JavaScript's String()/Number() coercions. A
binding that was never set behaves like ``undefined``.
"""

from __future__ import annotations

import math
import re
from collections.abc import Iterable, Mapping
from typing import Any, Optional

from cvflow.schemas.flow import Rule

OPERATORS = frozenset(
    {
        "equals",
        "not_equals",
        "contains",
        "greater_than",
        "less_than",
        "starts_with",
        "ends_with",
        "is_empty",
        "is_not_empty",
        "in_list",
        "not_in_list",
    }
)

_JS_DECIMAL = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")
_JS_RADIX = {"0x": 16, "0o": 8, "0b": 2}
# String.prototype.trim() also strips the BOM
_JS_WHITESPACE = (
    " \t\n\r\x0b\x0c\xa0\u1680\u2000\u2001\u2002\u2003\u2004\u2005\u2006"
    "\u2007\u2008\u2009\u200a\u2028\u2029\u202f\u205f\u3000\ufeff"
)


def js_trim(value: str) -> str:
    return value.strip(_JS_WHITESPACE)


def js_string(value: Any) -> str:
    if value is None:
        return "undefined"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        if value.is_integer() and abs(value) < 1e21:
            return str(int(value))
        return repr(value)
    return str(value)


def js_number(value: Any) -> float:
    if value is None:
        return math.nan
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)

    text = js_trim(str(value))
    if text == "":
        return 0.0
    if text in ("Infinity", "+Infinity"):
        return math.inf
    if text == "-Infinity":
        return -math.inf
    prefix = text[:2].lower()
    if prefix in _JS_RADIX:
        try:
            return float(int(text[2:], _JS_RADIX[prefix]))
        except ValueError:
            return math.nan
    if _JS_DECIMAL.match(text):
        return float(text)
    return math.nan


def js_truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, float) and math.isnan(value):
        return False
    return bool(value)


def _split_list(raw: Any) -> list[str]:
    return [js_trim(item).lower() for item in js_string(raw).split(",")]


def _is_empty(field_value: Any) -> bool:
    return not js_truthy(field_value) or js_trim(js_string(field_value)) == ""


def evaluate_rule(rule: Rule, bindings: Mapping[str, Any]) -> bool:
    field_value = bindings.get(rule.field)
    rule_value = rule.value
    op = rule.operator

    if op == "equals":
        return js_trim(js_string(field_value)).lower() == js_trim(js_string(rule_value)).lower()
    if op == "not_equals":
        return js_trim(js_string(field_value)).lower() != js_trim(js_string(rule_value)).lower()
    if op == "contains":
        return js_string(rule_value) in js_string(field_value)
    if op == "greater_than":
        return js_number(field_value) > js_number(rule_value)
    if op == "less_than":
        return js_number(field_value) < js_number(rule_value)
    if op == "starts_with":
        return js_string(field_value).lower().startswith(js_string(rule_value).lower())
    if op == "ends_with":
        return js_string(field_value).lower().endswith(js_string(rule_value).lower())
    if op == "is_empty":
        return _is_empty(field_value)
    if op == "is_not_empty":
        return not _is_empty(field_value)
    if op == "in_list":
        return js_trim(js_string(field_value)).lower() in _split_list(rule_value)
    if op == "not_in_list":
        return js_trim(js_string(field_value)).lower() not in _split_list(rule_value)
    return False


def evaluate(
    combinator: Optional[str], rules: Iterable[Rule], bindings: Mapping[str, Any]
) -> bool:
    """Combine rule results; no rules is a vacuous pass, anything but "or" means "and"."""
    results = [evaluate_rule(rule, bindings) for rule in rules]
    if not results:
        return True
    if combinator == "or":
        return any(results)
    return all(results)
