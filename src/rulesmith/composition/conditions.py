"""
Condition evaluation against a build context.

Conditions gate both composition members and extensions. An environment
condition compares the build environment, a parameter condition compares a
supplied parameter value, and a context condition compares the value at a
dotted path of the whole build context (e.g. ``user.organization_id``).
"""

import logging
import re
from typing import Any, Iterable

from rulesmith.schema import (
    VOLATILE_CONTEXT_PATHS,
    BuildContext,
    ConditionOperator,
    ConditionType,
    ExtensionCondition,
)

logger = logging.getLogger(__name__)

_MISSING = object()


def get_path(data: Any, path: str) -> Any:
    """Value at a dotted path of nested mappings/lists, or None when absent."""
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part, _MISSING)
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
        if current is _MISSING:
            return None
    return current


def compare(actual: Any, operator: ConditionOperator, expected: Any) -> bool:
    """Apply a condition operator. Incomparable operands evaluate to False."""
    if operator == ConditionOperator.EQ:
        return actual == expected
    if operator == ConditionOperator.NE:
        return actual != expected
    if operator in (ConditionOperator.IN, ConditionOperator.NOT_IN):
        try:
            found = actual in expected
        except TypeError:
            found = False
        return found if operator == ConditionOperator.IN else not found
    if operator == ConditionOperator.REGEX:
        if actual is None:
            return False
        try:
            return re.search(str(expected), str(actual)) is not None
        except re.error as e:
            logger.warning("Invalid condition regex %r: %s", expected, e)
            return False
    try:
        if operator == ConditionOperator.GT:
            return actual > expected
        if operator == ConditionOperator.LT:
            return actual < expected
        if operator == ConditionOperator.GE:
            return actual >= expected
        if operator == ConditionOperator.LE:
            return actual <= expected
    except TypeError:
        return False
    return False


def evaluate_condition(condition: ExtensionCondition, context: BuildContext) -> bool:
    """Evaluate one condition."""
    if condition.type == ConditionType.ENVIRONMENT:
        actual = context.environment
    elif condition.type == ConditionType.PARAMETER:
        actual = context.parameters.get(condition.expression)
    else:
        actual = get_path(context.model_dump(), condition.expression)
    return compare(actual, condition.operator, condition.value)


def evaluate_conditions(
    conditions: Iterable[ExtensionCondition],
    context: BuildContext | None,
) -> bool:
    """True when every condition holds. No conditions always holds."""
    conditions = list(conditions)
    if not conditions:
        return True
    context = context or BuildContext()
    return all(evaluate_condition(c, context) for c in conditions)


def reads_volatile_context(conditions: Iterable[ExtensionCondition]) -> bool:
    """True when a context condition reads per-build metadata (timestamp, build id)."""
    for condition in conditions:
        if condition.type != ConditionType.CONTEXT:
            continue
        path = condition.expression
        if path in ("", "metadata"):
            return True
        if any(path == p or path.startswith(p + ".") for p in VOLATILE_CONTEXT_PATHS):
            return True
    return False
