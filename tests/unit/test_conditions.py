"""
Unit tests for condition evaluation.

Tests cover:
- Environment, parameter and context conditions
- Every comparison operator
- Incomparable operands and bad regexes
"""

import pytest

from rulesmith.composition.conditions import (
    compare,
    evaluate_condition,
    evaluate_conditions,
    get_path,
)
from rulesmith.schema import (
    BuildContext,
    BuildUser,
    ConditionOperator,
    ConditionType,
    ExtensionCondition,
)


@pytest.fixture
def context() -> BuildContext:
    """A production build for a user in acme."""
    return BuildContext(
        environment="production",
        parameters={"strictness": 3, "language": "python"},
        user=BuildUser(id="alice", organization_id="acme"),
    )


class TestGetPath:
    """Tests for dotted path lookup."""

    def test_nested(self) -> None:
        """Dotted paths walk mappings and list indices."""
        data = {"a": {"b": [10, {"c": 5}]}}
        assert get_path(data, "a.b.1.c") == 5
        assert get_path(data, "a.b.0") == 10

    def test_missing(self) -> None:
        """Missing segments yield None."""
        assert get_path({"a": {}}, "a.b.c") is None


class TestCompare:
    """Tests for operators."""

    @pytest.mark.parametrize(
        ("actual", "operator", "expected", "outcome"),
        [
            (3, ConditionOperator.EQ, 3, True),
            (3, ConditionOperator.NE, 3, False),
            (3, ConditionOperator.GT, 2, True),
            (3, ConditionOperator.LT, 2, False),
            (3, ConditionOperator.GE, 3, True),
            (3, ConditionOperator.LE, 2, False),
            ("py", ConditionOperator.IN, ["py", "js"], True),
            ("go", ConditionOperator.NOT_IN, ["py", "js"], True),
            ("production-eu", ConditionOperator.REGEX, r"^prod", True),
        ],
    )
    def test_operators(
        self,
        actual: object,
        operator: ConditionOperator,
        expected: object,
        outcome: bool,
    ) -> None:
        """Each operator compares as documented."""
        assert compare(actual, operator, expected) is outcome

    def test_incomparable_is_false(self) -> None:
        """Ordering across types evaluates to False instead of raising."""
        assert compare("3", ConditionOperator.GT, 2) is False
        assert compare(None, ConditionOperator.LE, 2) is False
        assert compare(3, ConditionOperator.IN, 5) is False

    def test_bad_regex_is_false(self) -> None:
        """An invalid pattern never matches."""
        assert compare("abc", ConditionOperator.REGEX, "(") is False


class TestEvaluate:
    """Tests for condition evaluation against a context."""

    def test_environment(self, context: BuildContext) -> None:
        """Environment conditions compare the build environment."""
        condition = ExtensionCondition(type=ConditionType.ENVIRONMENT, value="production")
        assert evaluate_condition(condition, context)

    def test_parameter(self, context: BuildContext) -> None:
        """Parameter conditions compare supplied parameters."""
        condition = ExtensionCondition(
            type=ConditionType.PARAMETER,
            expression="strictness",
            operator=ConditionOperator.GE,
            value=2,
        )
        assert evaluate_condition(condition, context)

    def test_context_path(self, context: BuildContext) -> None:
        """Context conditions walk the whole build context."""
        condition = ExtensionCondition(
            type=ConditionType.CONTEXT,
            expression="user.organization_id",
            value="acme",
        )
        assert evaluate_condition(condition, context)

    def test_all_must_hold(self, context: BuildContext) -> None:
        """One failing condition fails the set."""
        conditions = [
            ExtensionCondition(type=ConditionType.ENVIRONMENT, value="production"),
            ExtensionCondition(type=ConditionType.PARAMETER, expression="language", value="go"),
        ]
        assert not evaluate_conditions(conditions, context)

    def test_no_conditions_hold(self) -> None:
        """An empty set always holds, even without a context."""
        assert evaluate_conditions([], None)
