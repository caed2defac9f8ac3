"""
Exception hierarchy for Rulesmith.

All Rulesmith exceptions inherit from RulesmithError, allowing callers to catch
every engine failure with a single except clause.

Exception Categories:
    - StructuralError: Malformed or unknown template/extension
    - InheritanceError: Cycle, missing parent, version mismatch, locks
    - CompositionError: Merge conflicts under the ``error`` policy
    - SandboxError: Untrusted code failed (timeout, memory, security, ...)
    - LifecycleError: Illegal extension state transition or deployment
    - StorageError: Persistence layer failed

Design Principles:
    - All errors have error codes for programmatic handling
    - All errors include context (template, extension, state where applicable)
    - All errors provide actionable suggestions where possible
    - Errors are designed to be both human-readable and machine-parseable
"""

from dataclasses import dataclass, field
from typing import Any


# =============================================================================
# Error Codes
# =============================================================================

# Structural errors: 1xxx
ERROR_STRUCTURAL = 1001
ERROR_TEMPLATE_NOT_FOUND = 1002
ERROR_EXTENSION_NOT_FOUND = 1003
ERROR_INVALID_EXTENSION = 1004
ERROR_DUPLICATE_TEMPLATE = 1005

# Inheritance errors: 2xxx
ERROR_INHERITANCE = 2001
ERROR_CIRCULAR_INHERITANCE = 2002
ERROR_PARENT_NOT_FOUND = 2003
ERROR_VERSION_INCOMPATIBLE = 2004
ERROR_TEMPLATE_LOCKED = 2005
ERROR_INHERITANCE_DENIED = 2006
ERROR_VALIDATION_FAILED = 2007

# Composition errors: 3xxx
ERROR_COMPOSITION_CONFLICT = 3001
ERROR_CIRCULAR_REFERENCE = 3002
ERROR_COMPOSITION_EMPTY = 3003

# Sandbox errors: 4xxx
ERROR_SANDBOX_TIMEOUT = 4001
ERROR_SANDBOX_MEMORY = 4002
ERROR_SANDBOX_SECURITY = 4003
ERROR_SANDBOX_RUNTIME = 4004
ERROR_SANDBOX_MODULE = 4005

# Lifecycle errors: 5xxx
ERROR_INVALID_TRANSITION = 5001
ERROR_APPROVAL_REQUIRED = 5002
ERROR_EXTENSION_STATE = 5003
ERROR_EXTENSION_HAS_DEPENDENTS = 5004
ERROR_EXTENSION_TEST_FAILED = 5005
ERROR_DEPLOYMENT_FAILED = 5006
ERROR_MARKETPLACE_DISABLED = 5007

# Storage errors: 6xxx
ERROR_STORAGE_CONNECTION = 6001
ERROR_STORAGE_WRITE = 6002
ERROR_STORAGE_READ = 6003
ERROR_STORAGE_INTEGRITY = 6004


# =============================================================================
# Base Exception
# =============================================================================


@dataclass
class RulesmithError(Exception):
    """
    Base exception for all Rulesmith errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code for programmatic handling
        suggestion: Optional hint for how to resolve the error
        context: Optional dict with additional debugging info
    """

    message: str = ""
    code: int = 0
    suggestion: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Hook for subclasses; the base error has nothing to fill in."""

    def __str__(self) -> str:
        """Format error for display."""
        parts = [f"[E{self.code}] {self.message}"]
        if self.suggestion:
            parts.append(f"\nSuggestion: {self.suggestion}")
        return "".join(parts)

    def __repr__(self) -> str:
        """Format error for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code}, "
            f"context={self.context!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "suggestion": self.suggestion,
            "context": self.context,
        }


# =============================================================================
# Structural Errors
# =============================================================================


@dataclass
class StructuralError(RulesmithError):
    """
    Raised when a template, extension, or document is malformed.

    Always fatal to the single operation that received the bad input.

    Attributes:
        source: Where the malformed input came from (file path, operation)
        details: Individual problems found
    """

    source: str = ""
    details: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Malformed input in {self.source or 'document'}"
            if self.details:
                self.message += f": {'; '.join(self.details)}"
        if self.code == 0:
            self.code = ERROR_STRUCTURAL
        self.context.update({"source": self.source, "details": self.details})


@dataclass
class TemplateNotFoundError(StructuralError):
    """Raised when a template id is not registered."""

    template_id: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Template not found: {self.template_id}"
        if self.code == 0:
            self.code = ERROR_TEMPLATE_NOT_FOUND
        if not self.suggestion:
            self.suggestion = "Register the template before referencing it"
        super().__post_init__()
        self.context["template_id"] = self.template_id


@dataclass
class DuplicateTemplateError(StructuralError):
    """Raised when creating a template whose id is already registered."""

    template_id: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Template already exists: {self.template_id}"
        if self.code == 0:
            self.code = ERROR_DUPLICATE_TEMPLATE
        super().__post_init__()
        self.context["template_id"] = self.template_id


@dataclass
class ExtensionNotFoundError(StructuralError):
    """Raised when an extension id is not in the registry."""

    extension_id: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Extension not found: {self.extension_id}"
        if self.code == 0:
            self.code = ERROR_EXTENSION_NOT_FOUND
        super().__post_init__()
        self.context["extension_id"] = self.extension_id


@dataclass
class InvalidExtensionError(StructuralError):
    """Raised when an extension fails validation on create or update."""

    extension_id: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid extension: {self.extension_id}"
            if self.details:
                self.message += f" ({'; '.join(self.details)})"
        if self.code == 0:
            self.code = ERROR_INVALID_EXTENSION
        super().__post_init__()
        self.context["extension_id"] = self.extension_id


# =============================================================================
# Inheritance Errors
# =============================================================================


@dataclass
class InheritanceError(RulesmithError):
    """
    Base for errors raised while building or resolving an inheritance chain.

    Attributes:
        template_id: The template being resolved or modified
    """

    template_id: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Inheritance error for template {self.template_id}"
        if self.code == 0:
            self.code = ERROR_INHERITANCE
        self.context["template_id"] = self.template_id


@dataclass
class CircularInheritanceError(InheritanceError):
    """
    Raised when a parent link revisits a template already on the chain.

    Attributes:
        chain: The ids visited before the revisit, in walk order
    """

    chain: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            path = " -> ".join([*self.chain, self.template_id])
            self.message = f"Circular inheritance detected: {path}"
        if self.code == 0:
            self.code = ERROR_CIRCULAR_INHERITANCE
        if not self.suggestion:
            self.suggestion = "Point one of the templates at a different parent"
        super().__post_init__()
        self.context["chain"] = self.chain


@dataclass
class ParentNotFoundError(InheritanceError):
    """Raised when a parent_id does not resolve to a registered template."""

    parent_id: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = (
                f"Parent template {self.parent_id} of {self.template_id} not found"
            )
        if self.code == 0:
            self.code = ERROR_PARENT_NOT_FOUND
        super().__post_init__()
        self.context["parent_id"] = self.parent_id


@dataclass
class VersionIncompatibleError(InheritanceError):
    """Raised when a parent's version falls outside the child's bounds."""

    parent_id: str = ""
    parent_version: str = ""
    min_version: str | None = None
    max_version: str | None = None

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            bounds = f"[{self.min_version or '*'}, {self.max_version or '*'})"
            self.message = (
                f"Parent {self.parent_id}@{self.parent_version} is outside "
                f"{self.template_id}'s compatible range {bounds}"
            )
        if self.code == 0:
            self.code = ERROR_VERSION_INCOMPATIBLE
        if not self.suggestion:
            self.suggestion = "Update the child's compatibility bounds or pin the parent"
        super().__post_init__()
        self.context.update({
            "parent_id": self.parent_id,
            "parent_version": self.parent_version,
            "min_version": self.min_version,
            "max_version": self.max_version,
        })


@dataclass
class TemplateLockedError(InheritanceError):
    """Raised when a locked template is modified by someone other than the holder."""

    locked_by: str = ""
    requested_by: str | None = None

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Template {self.template_id} is locked by {self.locked_by}"
        if self.code == 0:
            self.code = ERROR_TEMPLATE_LOCKED
        if not self.suggestion:
            self.suggestion = f"Ask {self.locked_by} to unlock the template"
        super().__post_init__()
        self.context.update({
            "locked_by": self.locked_by,
            "requested_by": self.requested_by,
        })


@dataclass
class InheritanceDeniedError(InheritanceError):
    """Raised when an inheritance request is refused by permissions or policy."""

    reason: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Inheritance denied for {self.template_id}: {self.reason}"
        if self.code == 0:
            self.code = ERROR_INHERITANCE_DENIED
        super().__post_init__()
        self.context["reason"] = self.reason


@dataclass
class ValidationFailedError(RulesmithError):
    """
    Raised when a resolved template does not pass validation.

    Attributes:
        template_id: The template that failed
        errors: Error messages from the validation result
        result: The full ValidationResult, when available
    """

    template_id: str = ""
    errors: list[str] = field(default_factory=list)
    result: Any = None

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Template {self.template_id} failed validation"
            if self.errors:
                self.message += f": {'; '.join(self.errors)}"
        if self.code == 0:
            self.code = ERROR_VALIDATION_FAILED
        self.context.update({"template_id": self.template_id, "errors": self.errors})


# =============================================================================
# Composition Errors
# =============================================================================


@dataclass
class CompositionError(RulesmithError):
    """
    Raised when composition cannot produce a result.

    Under the ``error`` conflict policy every recorded conflict is attached,
    so a single failure reports the complete problem set.

    Attributes:
        conflicts: CompositionConflict records collected during the merge
    """

    conflicts: list[Any] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            paths = ", ".join(getattr(c, "path", str(c)) for c in self.conflicts)
            self.message = f"Composition failed with {len(self.conflicts)} conflict(s)"
            if paths:
                self.message += f": {paths}"
        if self.code == 0:
            self.code = ERROR_COMPOSITION_CONFLICT
        if not self.suggestion and self.conflicts:
            self.suggestion = "Use a non-error conflict strategy or align the values"
        self.context["conflict_count"] = len(self.conflicts)


@dataclass
class CircularReferenceError(CompositionError):
    """Raised when the composition set contains a parent/extension cycle."""

    cycle: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Circular reference detected: {' -> '.join(self.cycle)}"
        if self.code == 0:
            self.code = ERROR_CIRCULAR_REFERENCE
        super().__post_init__()
        self.context["cycle"] = self.cycle


# =============================================================================
# Sandbox Errors
# =============================================================================

SANDBOX_ERROR_CODES = {
    "timeout": ERROR_SANDBOX_TIMEOUT,
    "memory": ERROR_SANDBOX_MEMORY,
    "security": ERROR_SANDBOX_SECURITY,
    "runtime": ERROR_SANDBOX_RUNTIME,
    "module": ERROR_SANDBOX_MODULE,
}


@dataclass
class SandboxError(RulesmithError):
    """
    Failure of a sandboxed execution.

    Sandbox failures are returned inside a SandboxResult rather than raised;
    this type is raised only by SandboxResult.raise_for_error().

    Attributes:
        kind: One of timeout, memory, security, runtime, module
    """

    kind: str = "runtime"

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Sandbox {self.kind} error"
        if self.code == 0:
            self.code = SANDBOX_ERROR_CODES.get(self.kind, ERROR_SANDBOX_RUNTIME)
        self.context["kind"] = self.kind


# =============================================================================
# Lifecycle Errors
# =============================================================================


@dataclass
class LifecycleError(RulesmithError):
    """
    Base for extension lifecycle failures.

    Lifecycle errors are raised before any state mutation, so the registry
    entry is unchanged when one propagates.

    Attributes:
        extension_id: The extension being acted on
    """

    extension_id: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Lifecycle error for extension {self.extension_id}"
        if self.code == 0:
            self.code = ERROR_INVALID_TRANSITION
        self.context["extension_id"] = self.extension_id


@dataclass
class InvalidTransitionError(LifecycleError):
    """Raised when the transition table has no entry for (from, to)."""

    from_state: str = ""
    to_state: str = ""
    allowed: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = (
                f"Invalid transition for {self.extension_id}: "
                f"{self.from_state} -> {self.to_state}"
            )
        if self.code == 0:
            self.code = ERROR_INVALID_TRANSITION
        if not self.suggestion:
            if self.allowed:
                self.suggestion = f"Allowed from {self.from_state}: {', '.join(self.allowed)}"
            else:
                self.suggestion = f"{self.from_state} is a terminal state"
        super().__post_init__()
        self.context.update({
            "from_state": self.from_state,
            "to_state": self.to_state,
            "allowed": self.allowed,
        })


@dataclass
class ApprovalRequiredError(LifecycleError):
    """Raised when a gated transition is requested without an approver."""

    from_state: str = ""
    to_state: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = (
                f"Transition {self.from_state} -> {self.to_state} "
                f"for {self.extension_id} requires approval"
            )
        if self.code == 0:
            self.code = ERROR_APPROVAL_REQUIRED
        if not self.suggestion:
            self.suggestion = "Pass approved_by or enable auto_approval"
        super().__post_init__()
        self.context.update({"from_state": self.from_state, "to_state": self.to_state})


@dataclass
class ExtensionStateError(LifecycleError):
    """Raised when an operation is not permitted in the extension's current state."""

    state: str = ""
    operation: str = ""
    required: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = (
                f"Cannot {self.operation} extension {self.extension_id} "
                f"in state {self.state}"
            )
            if self.required:
                self.message += f" (requires {' or '.join(self.required)})"
        if self.code == 0:
            self.code = ERROR_EXTENSION_STATE
        super().__post_init__()
        self.context.update({
            "state": self.state,
            "operation": self.operation,
            "required": self.required,
        })


@dataclass
class ExtensionHasDependentsError(LifecycleError):
    """Raised when deleting an extension that other extensions depend on."""

    dependents: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = (
                f"Cannot delete extension {self.extension_id} with dependents: "
                f"{', '.join(self.dependents)}"
            )
        if self.code == 0:
            self.code = ERROR_EXTENSION_HAS_DEPENDENTS
        if not self.suggestion:
            self.suggestion = "Delete or archive the dependent extensions first"
        super().__post_init__()
        self.context["dependents"] = self.dependents


@dataclass
class ExtensionTestFailedError(LifecycleError):
    """Raised when the self-test run on entering ``testing`` fails."""

    errors: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Extension {self.extension_id} failed its self-test"
            if self.errors:
                self.message += f": {'; '.join(self.errors)}"
        if self.code == 0:
            self.code = ERROR_EXTENSION_TEST_FAILED
        super().__post_init__()
        self.context["errors"] = self.errors


@dataclass
class DeploymentError(LifecycleError):
    """Raised when a deployment request cannot be started."""

    reason: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Deployment of {self.extension_id} failed: {self.reason}"
        if self.code == 0:
            self.code = ERROR_DEPLOYMENT_FAILED
        super().__post_init__()
        self.context["reason"] = self.reason


@dataclass
class MarketplaceDisabledError(LifecycleError):
    """Raised when publishing while the marketplace subsystem is off."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = "Marketplace is not enabled"
        if self.code == 0:
            self.code = ERROR_MARKETPLACE_DISABLED
        if not self.suggestion:
            self.suggestion = "Set extensions.enable_marketplace in settings"
        super().__post_init__()


# =============================================================================
# Storage Errors
# =============================================================================


@dataclass
class StorageError(RulesmithError):
    """Base class for storage-related errors."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if self.code == 0:
            self.code = ERROR_STORAGE_CONNECTION


@dataclass
class StorageConnectionError(StorageError):
    """Raised when the database cannot be opened."""

    db_path: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Cannot connect to database: {self.db_path}"
        if self.code == 0:
            self.code = ERROR_STORAGE_CONNECTION
        if not self.suggestion:
            self.suggestion = "Check that the directory exists and is writable"
        super().__post_init__()
        self.context["db_path"] = self.db_path


@dataclass
class StorageWriteError(StorageError):
    """Raised when writing to the database fails."""

    operation: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Storage write failed during {self.operation}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_WRITE
        super().__post_init__()
        self.context.update({
            "operation": self.operation,
            "underlying_error": self.underlying_error,
        })


@dataclass
class StorageReadError(StorageError):
    """Raised when reading from the database fails."""

    operation: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Storage read failed during {self.operation}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_READ
        super().__post_init__()
        self.context.update({
            "operation": self.operation,
            "underlying_error": self.underlying_error,
        })


@dataclass
class StorageIntegrityError(StorageError):
    """Raised when a persisted record fails its checksum on reload."""

    record_id: str = ""
    expected: str = ""
    actual: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Checksum mismatch for record {self.record_id}"
        if self.code == 0:
            self.code = ERROR_STORAGE_INTEGRITY
        super().__post_init__()
        self.context.update({
            "record_id": self.record_id,
            "expected": self.expected,
            "actual": self.actual,
        })
