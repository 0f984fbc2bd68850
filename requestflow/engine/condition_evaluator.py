"""Condition Evaluator - Safe evaluation of edge conditions

Conditions arrive in three shapes:

- structured simple predicate ``{field, operator, value}``
- structured complex predicate ``{type: and|or, conditions: [...]}``
- string expression ``"amount > 500"``, ``"status == 'approved'"`` or a bare ``"vip"``

Each shape is compiled once into a small immutable AST (``Predicate``) which is then
evaluated against a request's data context. Nothing is ever passed to ``eval()``.
Anything unrecognized compiles to ``Never`` so evaluation fails closed.
"""
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Optional, Tuple, Union

from ..domain.models import ComplexCondition, SimpleCondition, REJECT_MARKER
from ..domain.enums import ConditionLogic, ConditionOperator, EXPRESSION_OPERATORS
from ..utils.logger import get_logger

logger = get_logger(__name__)


_EXPRESSION_RE = re.compile(r"^\s*([^\s<>=!]+)\s*(==|!=|>=|<=|>|<)\s*(.+?)\s*$")
_NUMBER_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")
_OPERATOR_CHARS = set("<>=!")


# ============================================================================
# AST
# ============================================================================

@dataclass(frozen=True)
class Comparison:
    field: str
    operator: ConditionOperator
    value: Any

    def evaluate(self, context: Mapping) -> bool:
        return compare(lookup(context, self.field), self.operator, self.value)


@dataclass(frozen=True)
class Truthy:
    field: str

    def evaluate(self, context: Mapping) -> bool:
        return bool(lookup(context, self.field))


@dataclass(frozen=True)
class AllOf:
    parts: Tuple["Predicate", ...]

    def evaluate(self, context: Mapping) -> bool:
        return all(part.evaluate(context) for part in self.parts)


@dataclass(frozen=True)
class AnyOf:
    parts: Tuple["Predicate", ...]

    def evaluate(self, context: Mapping) -> bool:
        return any(part.evaluate(context) for part in self.parts)


@dataclass(frozen=True)
class Never:
    reason: str

    def evaluate(self, context: Mapping) -> bool:
        return False


Predicate = Union[Comparison, Truthy, AllOf, AnyOf, Never]


# ============================================================================
# Compilation
# ============================================================================

def compile_condition(condition: Any) -> Predicate:
    """
    Compile any supported condition shape into a predicate

    Args:
        condition: SimpleCondition, ComplexCondition, dict or string expression

    Returns:
        Predicate ready for repeated evaluation
    """
    if isinstance(condition, str):
        return _compile_expression(condition)
    if isinstance(condition, SimpleCondition):
        return _compile_simple(condition.field, condition.operator, condition.value)
    if isinstance(condition, ComplexCondition):
        return _compile_complex(condition.kind, condition.conditions)
    if isinstance(condition, Mapping):
        if "field" in condition and "operator" in condition:
            return _compile_simple(condition["field"], condition["operator"], condition.get("value"))
        kind = condition.get("type", condition.get("kind"))
        if kind is not None and "conditions" in condition:
            return _compile_complex(kind, condition["conditions"])
    return Never(f"unsupported condition: {condition!r}")


def _compile_simple(field: Any, operator: Any, value: Any) -> Predicate:
    if not isinstance(field, str) or not field:
        return Never("missing field")
    parsed = _parse_operator(operator)
    if parsed is None:
        return Never(f"unknown operator: {operator!r}")
    return Comparison(field=field, operator=parsed, value=value)


def _compile_complex(kind: Any, conditions: Any) -> Predicate:
    if not isinstance(conditions, (list, tuple)):
        return Never("conditions must be a list")
    parts = tuple(compile_condition(c) for c in conditions)
    logic = str(kind).strip().lower()
    if logic == ConditionLogic.AND.value:
        return AllOf(parts)
    if logic == ConditionLogic.OR.value:
        return AnyOf(parts)
    return Never(f"unknown combinator: {kind!r}")


def _parse_operator(operator: Any) -> Optional[ConditionOperator]:
    if isinstance(operator, ConditionOperator):
        return operator
    if not isinstance(operator, str):
        return None
    if operator in EXPRESSION_OPERATORS:
        return EXPRESSION_OPERATORS[operator]
    try:
        return ConditionOperator(operator)
    except ValueError:
        return None


@lru_cache(maxsize=1024)
def _compile_expression(expression: str) -> Predicate:
    text = expression.strip()
    if not text:
        return Never("empty expression")
    if text.lower() == REJECT_MARKER:
        return Never("reject marker")

    # Bare identifier: truthy check on the context key
    if not any(ch.isspace() for ch in text) and not (_OPERATOR_CHARS & set(text)):
        return Truthy(field=text)

    match = _EXPRESSION_RE.match(text)
    if not match:
        return Never(f"malformed expression: {expression!r}")

    field, symbol, raw_value = match.groups()
    return Comparison(
        field=field,
        operator=EXPRESSION_OPERATORS[symbol],
        value=_parse_literal(raw_value),
    )


def _parse_literal(raw: str) -> Any:
    """Unquote strings, convert numbers and booleans"""
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in ("'", '"'):
        return raw[1:-1]
    if _NUMBER_RE.match(raw):
        number = float(raw)
        return int(number) if number.is_integer() and "." not in raw and "e" not in raw.lower() else number
    if raw == "true":
        return True
    if raw == "false":
        return False
    return raw


# ============================================================================
# Evaluation helpers
# ============================================================================

def lookup(context: Mapping, field: str) -> Any:
    """
    Get field value from context

    An exact key wins; otherwise dot notation walks nested mappings.
    Example: "form.amount" -> context["form"]["amount"]
    """
    if not isinstance(context, Mapping):
        return None
    if field in context:
        return context[field]

    value: Any = context
    for part in field.split("."):
        if isinstance(value, Mapping):
            value = value.get(part)
        else:
            return None
    return value


def to_number(value: Any) -> float:
    """Numeric coercion; missing or non-numeric values become NaN"""
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and _NUMBER_RE.match(value.strip()):
        return float(value.strip())
    return math.nan


def to_text(value: Any) -> str:
    """Text coercion used by contains/startsWith/endsWith"""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def loose_equals(left: Any, right: Any) -> bool:
    """Equality that tolerates form values arriving as strings"""
    if left is None or right is None:
        return left is None and right is None
    if left == right:
        return True
    if isinstance(left, bool) or isinstance(right, bool):
        return to_text(left).lower() == to_text(right).lower()
    if isinstance(left, (int, float)) or isinstance(right, (int, float)):
        a, b = to_number(left), to_number(right)
        return not math.isnan(a) and not math.isnan(b) and a == b
    return False


def compare(actual: Any, operator: ConditionOperator, expected: Any) -> bool:
    """Apply one operator"""
    if operator == ConditionOperator.EQ:
        return loose_equals(actual, expected)
    if operator == ConditionOperator.NEQ:
        return not loose_equals(actual, expected)

    if operator.is_numeric:
        a, b = to_number(actual), to_number(expected)
        if operator == ConditionOperator.GT:
            return a > b
        if operator == ConditionOperator.LT:
            return a < b
        if operator == ConditionOperator.GTE:
            return a >= b
        return a <= b

    if actual is None:
        return False
    text, needle = to_text(actual), to_text(expected)
    if operator == ConditionOperator.CONTAINS:
        return needle in text
    if operator == ConditionOperator.STARTS_WITH:
        return text.startswith(needle)
    if operator == ConditionOperator.ENDS_WITH:
        return text.endswith(needle)
    return False


# ============================================================================
# Public evaluator
# ============================================================================

class ConditionEvaluator:
    """
    Evaluate edge conditions safely

    Uses a small compiled DSL - no eval() or exec(). Fails closed.
    """

    def evaluate(self, condition: Any, context: Optional[Dict[str, Any]]) -> bool:
        """
        Evaluate a condition in any supported shape

        Args:
            condition: Structured predicate, dict, or string expression
            context: Request data context

        Returns:
            True if the condition holds
        """
        return self.evaluate_compiled(compile_condition(condition), context)

    def evaluate_compiled(self, predicate: Predicate, context: Optional[Dict[str, Any]]) -> bool:
        """Evaluate a predicate compiled ahead of time"""
        if isinstance(predicate, Never):
            logger.debug(f"Condition evaluates false: {predicate.reason}")
            return False
        try:
            return bool(predicate.evaluate(context or {}))
        except Exception as e:
            logger.warning(f"Condition evaluation failed: {e}")
            return False  # Fail closed
