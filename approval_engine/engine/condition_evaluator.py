"""Condition Evaluator - Safe evaluation of routing rule conditions"""
import math
import re
from typing import Any, Callable, Dict, Mapping, Union

from pydantic import ValidationError as PydanticValidationError

from ..domain.models import ConditionGroup, ConditionRule
from ..domain.enums import ConditionOperator, LogicalOperator
from ..utils.logger import get_logger
from ..utils.time import parse_datetime

logger = get_logger(__name__)

# Symbolic and legacy spellings accepted for operators
OPERATOR_ALIASES: Dict[str, ConditionOperator] = {
    "=": ConditionOperator.EQ,
    "==": ConditionOperator.EQ,
    "equals": ConditionOperator.EQ,
    "!=": ConditionOperator.NE,
    "<>": ConditionOperator.NE,
    "not_equals": ConditionOperator.NE,
    ">": ConditionOperator.GT,
    "greater_than": ConditionOperator.GT,
    ">=": ConditionOperator.GTE,
    "<": ConditionOperator.LT,
    "less_than": ConditionOperator.LT,
    "<=": ConditionOperator.LTE,
    "is_empty": ConditionOperator.EMPTY,
    "is_not_empty": ConditionOperator.NOT_EMPTY,
}

_MISSING = object()


class ConditionEvaluator:
    """
    Evaluate condition trees against a context

    Uses a simple DSL - no eval() or exec(). Evaluation is total: missing
    fields, malformed rules and unknown operators evaluate to False rather
    than raising.
    """

    def evaluate(
        self,
        group: Union[ConditionGroup, Mapping[str, Any]],
        context: Dict[str, Any]
    ) -> bool:
        """
        Evaluate a condition group

        Args:
            group: Group of rules / nested groups with AND/OR logic
            context: Context with field values

        Returns:
            True if conditions are met. An empty AND group is True and an
            empty OR group is False; callers that treat "no conditions" as
            "always match" must check for that before calling.
        """
        try:
            parsed = group if isinstance(group, ConditionGroup) else ConditionGroup.model_validate(group)
        except PydanticValidationError as e:
            logger.warning(f"Malformed condition group: {e.error_count()} errors")
            return False
        return self._evaluate_group(parsed, context)

    def _evaluate_group(self, group: ConditionGroup, context: Dict[str, Any]) -> bool:
        logic = (group.operator or LogicalOperator.AND.value).lower()

        results = (
            self._evaluate_group(item, context) if isinstance(item, ConditionGroup)
            else self.evaluate_rule(item, context)
            for item in group.conditions
        )

        if logic == LogicalOperator.OR.value:
            return any(results)
        return all(results)

    def evaluate_rule(self, rule: ConditionRule, context: Dict[str, Any]) -> bool:
        """Evaluate a single leaf rule"""
        operator = self._normalize_operator(rule.operator)
        if operator is None:
            logger.warning(f"Unknown condition operator: {rule.operator}")
            return False

        try:
            field_value = self.get_field_value(rule.field, context)
            return self._compare(field_value, operator, rule.value)
        except Exception as e:
            logger.warning(f"Condition evaluation failed: {e}")
            return False  # Fail closed

    def get_field_value(self, field_path: str, context: Dict[str, Any]) -> Any:
        """
        Get field value from context using dot notation

        Example: "amount.currency" -> context["amount"]["currency"]
        Missing segments resolve to None.
        """
        value = self._lookup(field_path, context)
        return None if value is _MISSING else value

    def _lookup(self, field_path: str, context: Dict[str, Any]) -> Any:
        value: Any = context
        for part in field_path.split("."):
            if isinstance(value, Mapping) and part in value:
                value = value[part]
            else:
                return _MISSING
        return value

    def _normalize_operator(self, raw: str):
        if raw is None:
            return None
        key = str(raw).strip()
        if key in OPERATOR_ALIASES:
            return OPERATOR_ALIASES[key]
        try:
            return ConditionOperator(key.lower())
        except ValueError:
            return OPERATOR_ALIASES.get(key.lower())

    def _compare(
        self,
        field_value: Any,
        operator: ConditionOperator,
        compare_value: Any
    ) -> bool:
        """Compare values using operator"""

        if operator == ConditionOperator.EQ:
            return field_value == compare_value

        elif operator == ConditionOperator.NE:
            return field_value != compare_value

        elif operator == ConditionOperator.GT:
            return self._compare_numeric(field_value, compare_value, lambda a, b: a > b)

        elif operator == ConditionOperator.GTE:
            return self._compare_numeric(field_value, compare_value, lambda a, b: a >= b)

        elif operator == ConditionOperator.LT:
            return self._compare_numeric(field_value, compare_value, lambda a, b: a < b)

        elif operator == ConditionOperator.LTE:
            return self._compare_numeric(field_value, compare_value, lambda a, b: a <= b)

        elif operator == ConditionOperator.IN:
            if not isinstance(compare_value, (list, tuple, set)):
                compare_value = [compare_value]
            return field_value in compare_value

        elif operator == ConditionOperator.NOT_IN:
            if not isinstance(compare_value, (list, tuple, set)):
                compare_value = [compare_value]
            return field_value not in compare_value

        elif operator == ConditionOperator.CONTAINS:
            return self._contains(field_value, compare_value)

        elif operator == ConditionOperator.NOT_CONTAINS:
            if field_value is None:
                return True
            return not self._contains(field_value, compare_value)

        elif operator == ConditionOperator.STARTS_WITH:
            return isinstance(field_value, str) and field_value.startswith(str(compare_value))

        elif operator == ConditionOperator.ENDS_WITH:
            return isinstance(field_value, str) and field_value.endswith(str(compare_value))

        elif operator == ConditionOperator.MATCHES:
            if field_value is None:
                return False
            try:
                return re.search(str(compare_value), str(field_value)) is not None
            except re.error:
                return False

        elif operator == ConditionOperator.EXISTS:
            return field_value is not None

        elif operator == ConditionOperator.NOT_EXISTS:
            return field_value is None

        elif operator == ConditionOperator.BETWEEN:
            if not isinstance(compare_value, (list, tuple)) or len(compare_value) != 2:
                return False
            low, high = compare_value
            return (
                self._compare_numeric(field_value, low, lambda a, b: a >= b)
                and self._compare_numeric(field_value, high, lambda a, b: a <= b)
            )

        elif operator == ConditionOperator.EMPTY:
            return self._is_empty(field_value)

        elif operator == ConditionOperator.NOT_EMPTY:
            return not self._is_empty(field_value)

        elif operator == ConditionOperator.DATE_BEFORE:
            return self._compare_dates(field_value, compare_value, lambda a, b: a < b)

        elif operator == ConditionOperator.DATE_AFTER:
            return self._compare_dates(field_value, compare_value, lambda a, b: a > b)

        return False

    def _contains(self, field_value: Any, compare_value: Any) -> bool:
        if field_value is None:
            return False
        if isinstance(field_value, (list, tuple, set)):
            return compare_value in field_value
        return str(compare_value) in str(field_value)

    def _is_empty(self, value: Any) -> bool:
        if value is None:
            return True
        if isinstance(value, str):
            return value.strip() == ""
        if isinstance(value, (list, tuple, set, dict)):
            return len(value) == 0
        return False

    def _compare_numeric(
        self,
        field_value: Any,
        compare_value: Any,
        comparator: Callable[[float, float], bool]
    ) -> bool:
        """Compare numeric values, coercing numeric strings"""
        if field_value is None or compare_value is None:
            return False
        if isinstance(field_value, bool) or isinstance(compare_value, bool):
            return False
        try:
            a = float(field_value)
            b = float(compare_value)
        except (ValueError, TypeError):
            return False
        if math.isnan(a) or math.isnan(b):
            return False
        return comparator(a, b)

    def _compare_dates(
        self,
        field_value: Any,
        compare_value: Any,
        comparator: Callable
    ) -> bool:
        a = parse_datetime(field_value)
        b = parse_datetime(compare_value)
        if a is None or b is None:
            return False
        return comparator(a, b)
