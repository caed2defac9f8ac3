"""
Unit tests for the error hierarchy.

Tests cover:
- Base RulesmithError behavior
- Structural and inheritance errors with context
- Composition errors carrying every conflict
- Sandbox error codes per kind
- Lifecycle errors and their suggestions
- Error serialization
"""

import pytest

from rulesmith.errors import (
    ERROR_APPROVAL_REQUIRED,
    ERROR_CIRCULAR_INHERITANCE,
    ERROR_COMPOSITION_CONFLICT,
    ERROR_INVALID_TRANSITION,
    ERROR_SANDBOX_MEMORY,
    ERROR_SANDBOX_RUNTIME,
    ERROR_SANDBOX_TIMEOUT,
    ERROR_STRUCTURAL,
    ERROR_TEMPLATE_NOT_FOUND,
    ApprovalRequiredError,
    CircularInheritanceError,
    CircularReferenceError,
    CompositionError,
    ExtensionHasDependentsError,
    InheritanceError,
    InvalidExtensionError,
    InvalidTransitionError,
    LifecycleError,
    ParentNotFoundError,
    RulesmithError,
    SandboxError,
    StorageError,
    StorageIntegrityError,
    StructuralError,
    TemplateNotFoundError,
    VersionIncompatibleError,
)
from rulesmith.schema import CompositionConflict


class TestRulesmithError:
    """Tests for base RulesmithError."""

    def test_basic_error(self) -> None:
        """Create a basic error with message."""
        err = RulesmithError(message="Something went wrong", code=9999)
        assert err.message == "Something went wrong"
        assert err.code == 9999
        assert err.suggestion is None
        assert err.context == {}

    def test_str_format(self) -> None:
        """String form carries the code and the suggestion."""
        err = RulesmithError(message="Failed", code=42, suggestion="Try again")
        assert str(err) == "[E42] Failed\nSuggestion: Try again"

    def test_repr_format(self) -> None:
        """Repr names the class."""
        err = RulesmithError(message="Failed", code=1)
        assert repr(err).startswith("RulesmithError(")

    def test_to_dict(self) -> None:
        """Errors serialize for JSON output."""
        err = TemplateNotFoundError(template_id="base")
        data = err.to_dict()
        assert data["error_type"] == "TemplateNotFoundError"
        assert data["code"] == ERROR_TEMPLATE_NOT_FOUND
        assert data["context"]["template_id"] == "base"

    def test_is_exception(self) -> None:
        """Errors can be raised and caught."""
        with pytest.raises(RulesmithError):
            raise RulesmithError(message="boom")


class TestStructuralErrors:
    """Tests for malformed-input errors."""

    def test_details_in_message(self) -> None:
        """Details are joined into the default message."""
        err = StructuralError(source="team.yaml", details=["rules.deny: bad"])
        assert err.code == ERROR_STRUCTURAL
        assert "team.yaml" in err.message
        assert "rules.deny: bad" in err.message

    def test_template_not_found(self) -> None:
        """Missing templates suggest registering them."""
        err = TemplateNotFoundError(template_id="ghost")
        assert "ghost" in err.message
        assert err.suggestion is not None
        assert isinstance(err, StructuralError)

    def test_invalid_extension(self) -> None:
        """Invalid extensions list their problems."""
        err = InvalidExtensionError(extension_id="ext", details=["missing name"])
        assert "missing name" in err.message
        assert err.context["extension_id"] == "ext"


class TestInheritanceErrors:
    """Tests for inheritance errors."""

    def test_circular_inheritance_path(self) -> None:
        """The cycle is rendered as a path."""
        err = CircularInheritanceError(template_id="a", chain=["a", "b"])
        assert err.code == ERROR_CIRCULAR_INHERITANCE
        assert "a -> b -> a" in err.message

    def test_parent_not_found(self) -> None:
        """Missing parent names both templates."""
        err = ParentNotFoundError(template_id="child", parent_id="gone")
        assert "gone" in err.message
        assert err.context["parent_id"] == "gone"
        assert isinstance(err, InheritanceError)

    def test_version_bounds_in_message(self) -> None:
        """The compatible range is shown half-open."""
        err = VersionIncompatibleError(
            template_id="child",
            parent_id="base",
            parent_version="2.0.0",
            min_version="1.0.0",
            max_version="2.0.0",
        )
        assert "[1.0.0, 2.0.0)" in err.message


class TestCompositionErrors:
    """Tests for composition errors."""

    def test_all_conflicts_attached(self) -> None:
        """Every conflict path appears in the message."""
        conflicts = [
            CompositionConflict(path="scope.team_id", base_value="a", overlay_value="b"),
            CompositionConflict(path="parameters.mode.type", base_value="string", overlay_value="integer"),
        ]
        err = CompositionError(conflicts=conflicts)
        assert err.code == ERROR_COMPOSITION_CONFLICT
        assert "scope.team_id" in err.message
        assert "parameters.mode.type" in err.message
        assert err.context["conflict_count"] == 2

    def test_circular_reference_is_composition_error(self) -> None:
        """Cycles in a composition set are composition errors."""
        err = CircularReferenceError(cycle=["a", "b", "a"])
        assert isinstance(err, CompositionError)
        assert "a -> b -> a" in err.message


class TestSandboxError:
    """Tests for sandbox error codes."""

    @pytest.mark.parametrize(
        ("kind", "code"),
        [
            ("timeout", ERROR_SANDBOX_TIMEOUT),
            ("memory", ERROR_SANDBOX_MEMORY),
            ("runtime", ERROR_SANDBOX_RUNTIME),
            ("unknown", ERROR_SANDBOX_RUNTIME),
        ],
    )
    def test_code_per_kind(self, kind: str, code: int) -> None:
        """Each kind maps to its own code."""
        err = SandboxError(kind=kind)
        assert err.code == code
        assert err.context["kind"] == kind


class TestLifecycleErrors:
    """Tests for lifecycle errors."""

    def test_invalid_transition_suggests_targets(self) -> None:
        """The suggestion lists the allowed targets."""
        err = InvalidTransitionError(
            extension_id="ext",
            from_state="draft",
            to_state="deployed",
            allowed=["testing", "archived"],
        )
        assert err.code == ERROR_INVALID_TRANSITION
        assert "testing, archived" in (err.suggestion or "")

    def test_terminal_state_suggestion(self) -> None:
        """A state without targets is called terminal."""
        err = InvalidTransitionError(extension_id="ext", from_state="archived", to_state="draft")
        assert "terminal" in (err.suggestion or "")

    def test_approval_required(self) -> None:
        """Approval errors point at approved_by."""
        err = ApprovalRequiredError(extension_id="ext", from_state="testing", to_state="approved")
        assert err.code == ERROR_APPROVAL_REQUIRED
        assert "approved_by" in (err.suggestion or "")

    def test_has_dependents(self) -> None:
        """Dependents are listed."""
        err = ExtensionHasDependentsError(extension_id="a", dependents=["b", "c"])
        assert "b, c" in err.message
        assert isinstance(err, LifecycleError)


class TestErrorHierarchy:
    """Tests for catching errors by category."""

    def test_catch_all_rulesmith_errors(self) -> None:
        """Every error is a RulesmithError."""
        errors = [
            StructuralError(source="x"),
            InheritanceError(template_id="t"),
            CompositionError(),
            SandboxError(kind="timeout"),
            LifecycleError(extension_id="e"),
            StorageIntegrityError(record_id="r"),
        ]
        for err in errors:
            with pytest.raises(RulesmithError):
                raise err

    def test_storage_hierarchy(self) -> None:
        """Integrity errors are storage errors."""
        assert isinstance(StorageIntegrityError(record_id="r"), StorageError)
