"""
Schema definitions for Rulesmith.

This module defines the Pydantic models shared by every engine component:
- Template/RuleSet: A versioned allow/deny/ask rule set with inheritance metadata
- TemplateExtension/RulePatch: Prioritized patches applied on top of a template
- CompositionConfig/MergeStrategy/ConflictResolution: How templates are merged
- BuildContext: Environment, parameters and user a build is evaluated against
- ValidationResult/ValidationIssue: Accumulated validator diagnostics
- ExtensionRegistryEntry/StateTransition: Extension lifecycle bookkeeping
- DeploymentConfig/DeploymentResult/MarketplaceEntry: Rollout and publication

Design Decisions:
    - Rule configuration is a closed model; unknown keys are rejected
    - Value models are immutable (frozen=True) and replaced wholesale on change
    - Registry entries and metrics are mutable and owned by the extension manager
    - Structural clones go through model_copy(deep=True), never a JSON round-trip
"""

import re
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from rulesmith.errors import StructuralError


# =============================================================================
# Enums
# =============================================================================


class InheritanceLevel(str, Enum):
    """
    Position of a template in the organizational hierarchy.

    Levels are ordered: base < organization < team < project < user.
    Composition merges lower levels first.
    """

    BASE = "base"
    ORGANIZATION = "organization"
    TEAM = "team"
    PROJECT = "project"
    USER = "user"

    @property
    def rank(self) -> int:
        """Ordinal of this level, base being 0."""
        return LEVEL_ORDER.index(self)

    def next_level(self) -> "InheritanceLevel":
        """The level a child of this level lives at (user stays user)."""
        return LEVEL_ORDER[min(self.rank + 1, len(LEVEL_ORDER) - 1)]


LEVEL_ORDER = [
    InheritanceLevel.BASE,
    InheritanceLevel.ORGANIZATION,
    InheritanceLevel.TEAM,
    InheritanceLevel.PROJECT,
    InheritanceLevel.USER,
]


class ExtensionType(str, Enum):
    """How a child relates to its parent, or how an extension applies."""

    INHERIT = "inherit"
    EXTEND = "extend"
    OVERRIDE = "override"
    COMPOSE = "compose"


class ParameterType(str, Enum):
    """Type of a template parameter."""

    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"


class Severity(str, Enum):
    """Severity of a validation finding or custom rule."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ConditionType(str, Enum):
    """What a condition inspects in the build context."""

    ENVIRONMENT = "environment"
    PARAMETER = "parameter"
    CONTEXT = "context"


class ConditionOperator(str, Enum):
    """Comparison operators available to conditions."""

    EQ = "=="
    NE = "!="
    GT = ">"
    LT = "<"
    GE = ">="
    LE = "<="
    IN = "in"
    NOT_IN = "not_in"
    REGEX = "regex"


class RulesStrategy(str, Enum):
    """Merge policy for the rules configuration."""

    DEEP_MERGE = "deep_merge"
    MERGE = "merge"
    REPLACE = "replace"
    APPEND = "append"


class ArrayStrategy(str, Enum):
    """Merge policy for keyed arrays (tags, compliance, parameters, extensions)."""

    UNIQUE_MERGE = "unique_merge"
    MERGE = "merge"
    APPEND = "append"
    REPLACE = "replace"


class ObjectStrategy(str, Enum):
    """Merge policy for nested objects (scope)."""

    DEEP_MERGE = "deep_merge"
    MERGE = "merge"
    REPLACE = "replace"


class ParameterStrategy(str, Enum):
    """Merge policy for template parameters."""

    VALIDATE_MERGE = "validate_merge"
    MERGE = "merge"
    REPLACE = "replace"


class ConflictStrategy(str, Enum):
    """
    What happens when a merge records a conflict.

    ERROR fails the whole composition; every other strategy lets the
    overlay value win. IGNORE additionally suppresses conflict logging.
    """

    ERROR = "error"
    WARN = "warn"
    MERGE = "merge"
    OVERRIDE = "override"
    IGNORE = "ignore"


class ConflictType(str, Enum):
    """Kind of disagreement recorded during a merge."""

    VALUE = "value_conflict"
    TYPE = "type_conflict"


class LifecycleState(str, Enum):
    """Extension lifecycle state. ARCHIVED is terminal."""

    DRAFT = "draft"
    TESTING = "testing"
    APPROVED = "approved"
    DEPLOYED = "deployed"
    DEPRECATED = "deprecated"
    ARCHIVED = "archived"


class DeploymentStrategy(str, Enum):
    """Rollout strategy for an extension deployment."""

    IMMEDIATE = "immediate"
    GRADUAL = "gradual"
    CANARY = "canary"


class DeploymentStatus(str, Enum):
    """Outcome of a deployment attempt."""

    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ROLLED_BACK = "rolled_back"


class CodeIssueSeverity(str, Enum):
    """Severity of a static code-scan finding."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


RULE_CATEGORIES = ("deny", "allow", "ask")

SEMVER_PATTERN = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _check_patterns(v: list[str] | None) -> list[str] | None:
    if v is None:
        return v
    for index, pattern in enumerate(v):
        if not pattern or not pattern.strip():
            msg = f"Rule pattern at index {index} is empty"
            raise ValueError(msg)
    return v


# =============================================================================
# Rule Models
# =============================================================================


class RuleSet(BaseModel):
    """
    The rules configuration of a template.

    Attributes:
        deny: Patterns that are always blocked
        allow: Patterns that are permitted without prompting
        ask: Patterns that require confirmation
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    deny: list[str] = Field(default_factory=list, description="Blocked patterns")
    allow: list[str] = Field(default_factory=list, description="Permitted patterns")
    ask: list[str] = Field(default_factory=list, description="Patterns requiring confirmation")

    @field_validator("deny", "allow", "ask")
    @classmethod
    def validate_patterns(cls, v: list[str]) -> list[str]:
        """Reject empty-string patterns."""
        return _check_patterns(v)

    def total(self) -> int:
        """Number of patterns across all categories."""
        return len(self.deny) + len(self.allow) + len(self.ask)


class RulePatch(BaseModel):
    """
    A partial rules configuration carried by an extension.

    A category left as None is not touched by the patch.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    deny: list[str] | None = Field(default=None, description="Patterns to add to deny")
    allow: list[str] | None = Field(default=None, description="Patterns to add to allow")
    ask: list[str] | None = Field(default=None, description="Patterns to add to ask")

    @field_validator("deny", "allow", "ask")
    @classmethod
    def validate_patterns(cls, v: list[str] | None) -> list[str] | None:
        """Reject empty-string patterns."""
        return _check_patterns(v)

    def is_empty(self) -> bool:
        """True when no category is specified."""
        return self.deny is None and self.allow is None and self.ask is None


# =============================================================================
# Template Models
# =============================================================================


class TemplateParameter(BaseModel):
    """A typed customization parameter declared by a template."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1, description="Parameter name (merge key)")
    type: ParameterType = Field(default=ParameterType.STRING, description="Value type")
    description: str = Field(default="", description="What the parameter controls")
    default: Any = Field(default=None, description="Default value")
    required: bool = Field(default=False, description="Whether a value must be supplied")


class TemplateScope(BaseModel):
    """Organizational scope a template applies to. All identifiers optional."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    organization_id: str | None = None
    team_id: str | None = None
    project_id: str | None = None
    user_id: str | None = None


class TemplateLock(BaseModel):
    """Lock held on a template. Only the holder may modify or unlock it."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    locked_by: str = Field(..., min_length=1, description="Holder of the lock")
    locked_at: datetime = Field(default_factory=_utcnow, description="When the lock was taken")
    reason: str | None = Field(default=None, description="Why the template is locked")


class VersionCompatibility(BaseModel):
    """
    Parent version bounds.

    min_parent_version is inclusive, max_parent_version is exclusive.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    min_parent_version: str | None = None
    max_parent_version: str | None = None


class OverridePermissions(BaseModel):
    """What a child template is allowed to do to its inherited rules."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    can_override_rules: bool = True
    can_add_rules: bool = True
    can_remove_rules: bool = False
    can_modify_metadata: bool = True


class InheritanceMetadata(BaseModel):
    """
    Inheritance information attached to every template.

    Attributes:
        parent_id: The template this one inherits from, if any
        level: Hierarchy level
        extension_type: How this template relates to its parent
        chain: Root-first ancestor ids, the template itself excluded
        compatibility: Accepted parent version range
        permissions: Override permissions granted to this template
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    parent_id: str | None = Field(default=None, description="Parent template id")
    level: InheritanceLevel = Field(default=InheritanceLevel.BASE, description="Hierarchy level")
    extension_type: ExtensionType = Field(
        default=ExtensionType.INHERIT,
        description="Relationship to the parent",
    )
    chain: list[str] = Field(default_factory=list, description="Root-first ancestor ids")
    compatibility: VersionCompatibility = Field(default_factory=VersionCompatibility)
    permissions: OverridePermissions = Field(default_factory=OverridePermissions)


class ExtensionCondition(BaseModel):
    """
    A predicate evaluated against a BuildContext.

    Attributes:
        type: environment, parameter, or context
        expression: Parameter name or dotted context path (unused for environment)
        operator: Comparison operator
        value: Right-hand side of the comparison
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: ConditionType
    expression: str = Field(default="", description="Parameter name or context path")
    operator: ConditionOperator = Field(default=ConditionOperator.EQ)
    value: Any = None


class ExtensionMetadata(BaseModel):
    """Authoring metadata of an extension."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    description: str = ""
    author: str = ""
    version: str = "1.0.0"
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class TemplateExtension(BaseModel):
    """
    A prioritized rules patch targeting one template.

    Attributes:
        id: Unique extension identifier
        name: Human-readable name
        type: How the extension applies
        target_template_id: Template the extension patches
        rules: Patterns merged into the target's rules
        remove_rules: Rule paths deleted after the merge
        priority: Lower values are applied first
        conditions: All must hold for the extension to apply
        dependencies: Extension ids this extension requires
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., min_length=1, description="Unique extension identifier")
    name: str = Field(..., min_length=1, description="Human-readable name")
    type: ExtensionType = Field(default=ExtensionType.EXTEND)
    target_template_id: str = Field(..., min_length=1, description="Template to patch")
    rules: RulePatch = Field(default_factory=RulePatch)
    remove_rules: list[str] = Field(default_factory=list, description="Rule paths to delete")
    priority: int = Field(default=100, description="Application order, ascending")
    metadata: ExtensionMetadata = Field(default_factory=ExtensionMetadata)
    conditions: list[ExtensionCondition] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list, description="Required extension ids")


class CustomValidationRule(BaseModel):
    """
    An author-supplied validation rule.

    The validator body is opaque Python source and only ever runs inside
    the sandbox. Templates reference registered rules by id.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., min_length=1)
    name: str = Field(default="")
    description: str = Field(default="")
    severity: Severity = Field(default=Severity.WARNING)
    category: str = Field(default="custom")
    validator: str = Field(default="", description="Sandboxed Python source")
    parameters: dict[str, Any] = Field(default_factory=dict)
    capabilities: list[str] = Field(
        default_factory=list,
        description="Declared capabilities (informational)",
    )


class Template(BaseModel):
    """
    A named, versioned security rule set.

    Attributes:
        id: Unique template identifier
        name: Human-readable name
        version: Semantic version (major.minor.patch[-pre][+build])
        rules: The allow/deny/ask configuration
        parameters: Typed customization parameters (keyed by name)
        scope: Organizational scope
        locked: Lock information when the template is locked
        is_built_in: Shipped templates cannot be overridden
        inheritance: Parent, level, chain and permissions
        extensions: Extensions attached directly to the template
        custom_validation: Custom rules to run during validation
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., description="Unique template identifier")
    name: str = Field(..., description="Human-readable name")
    version: str = Field(default="1.0.0", description="Semantic version")
    description: str = Field(default="")
    category: str = Field(default="general")
    tags: list[str] = Field(default_factory=list)
    compliance: list[str] = Field(default_factory=list, description="Compliance frameworks")
    parameters: list[TemplateParameter] = Field(default_factory=list)
    rules: RuleSet = Field(default_factory=RuleSet)
    scope: TemplateScope = Field(default_factory=TemplateScope)
    locked: TemplateLock | None = None
    is_built_in: bool = False
    inheritance: InheritanceMetadata = Field(default_factory=InheritanceMetadata)
    extensions: list[TemplateExtension] = Field(default_factory=list)
    custom_validation: list[CustomValidationRule] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """Require a semantic version."""
        if not is_valid_version(v):
            msg = f"Invalid semantic version: {v}"
            raise ValueError(msg)
        return v

    @property
    def level(self) -> InheritanceLevel:
        """Shortcut for inheritance.level."""
        return self.inheritance.level

    @property
    def parent_id(self) -> str | None:
        """Shortcut for inheritance.parent_id."""
        return self.inheritance.parent_id


def clone_template(template: Template) -> Template:
    """Structural deep copy of a template."""
    return template.model_copy(deep=True)


# =============================================================================
# Composition Models
# =============================================================================


class CompositionTemplate(BaseModel):
    """A template included in a composition, with optional inclusion conditions."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    template_id: str = Field(..., min_length=1)
    priority: int = 0
    conditions: list[ExtensionCondition] = Field(default_factory=list)


class MergeStrategy(BaseModel):
    """Per-field merge policy."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    rules: RulesStrategy = RulesStrategy.DEEP_MERGE
    arrays: ArrayStrategy = ArrayStrategy.UNIQUE_MERGE
    objects: ObjectStrategy = ObjectStrategy.DEEP_MERGE
    parameters: ParameterStrategy = ParameterStrategy.VALIDATE_MERGE


class ConflictResolution(BaseModel):
    """
    Conflict policy for a composition.

    Attributes:
        default_strategy: Applied to every conflict path not in rule_specific
        rule_specific: Per-path strategy overrides (e.g. "scope.team_id")
        log_conflicts: Emit a log record for each conflict
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    default_strategy: ConflictStrategy = ConflictStrategy.WARN
    rule_specific: dict[str, ConflictStrategy] = Field(default_factory=dict)
    log_conflicts: bool = True

    def strategy_for(self, path: str) -> ConflictStrategy:
        """Strategy governing a conflict at path."""
        return self.rule_specific.get(path, self.default_strategy)


class CompositionMetadata(BaseModel):
    """Identity given to a composed template."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str | None = None
    name: str | None = None
    description: str | None = None
    version: str = "1.0.0"
    author: str | None = None


class CompositionConfig(BaseModel):
    """A declarative composition: a base template plus templates merged on top."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    base_template_id: str = Field(..., min_length=1)
    templates: list[CompositionTemplate] = Field(default_factory=list)
    merge_strategy: MergeStrategy = Field(default_factory=MergeStrategy)
    conflict_resolution: ConflictResolution = Field(default_factory=ConflictResolution)
    metadata: CompositionMetadata = Field(default_factory=CompositionMetadata)


class CompositionConflict(BaseModel):
    """A disagreement between base and overlay values recorded during a merge."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    path: str
    base_value: Any = None
    overlay_value: Any = None
    resolution: str = "overlay_wins"
    type: ConflictType = ConflictType.VALUE


# =============================================================================
# Build Context
# =============================================================================


class BuildUser(BaseModel):
    """The user a build is performed for."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str
    organization_id: str | None = None
    team_id: str | None = None
    permissions: list[str] = Field(default_factory=list)


class BuildMetadata(BaseModel):
    """Provenance of a build."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    build_id: str | None = None
    timestamp: datetime = Field(default_factory=_utcnow)
    version: str = "1.0.0"


# Context paths that differ between otherwise identical builds
VOLATILE_CONTEXT_PATHS = ("metadata.timestamp", "metadata.build_id")


class BuildContext(BaseModel):
    """
    Everything conditions, validation and caching are evaluated against.

    Attributes:
        environment: Target environment name (development, production, ...)
        parameters: Parameter values supplied for the build
        available_templates: Extra template ids known to exist
        user: Requesting user, if any
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    environment: str = "development"
    parameters: dict[str, Any] = Field(default_factory=dict)
    available_templates: list[str] = Field(default_factory=list)
    user: BuildUser | None = None
    metadata: BuildMetadata = Field(default_factory=BuildMetadata)

    def cache_identity(self) -> dict[str, Any]:
        """
        The parts of the context that influence a resolution or validation.

        Context conditions and permission checks can read any field, so this
        is the whole context minus the per-build metadata fields.
        """
        return self.model_dump(
            mode="json",
            exclude={"metadata": {"timestamp", "build_id"}},
        )


# =============================================================================
# Validation Models
# =============================================================================


class ValidationIssue(BaseModel):
    """
    A single validator finding.

    Attributes:
        category: structure, inheritance, config, security, extension,
            custom, permission or performance
        field: Field or path the issue is about
        message: Human-readable description
        severity: info, warning, error or critical
        rule_id: Custom rule that produced the issue, if any
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    category: str
    field: str = ""
    message: str
    severity: Severity = Severity.ERROR
    rule_id: str | None = None


class ValidationPerformance(BaseModel):
    """Cost of a validation run."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    validation_time_ms: float = 0.0
    rules_validated: int = 0
    custom_rules_validated: int = 0


class ValidationResult(BaseModel):
    """Accumulated outcome of validating a template."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    is_valid: bool
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)
    performance: ValidationPerformance = Field(default_factory=ValidationPerformance)

    @property
    def critical(self) -> list[ValidationIssue]:
        """Errors with critical severity."""
        return [e for e in self.errors if e.severity == Severity.CRITICAL]


# =============================================================================
# Extension Lifecycle Models
# =============================================================================


class StateTransition(BaseModel):
    """One entry in an extension's append-only state history."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    from_state: LifecycleState | None = None
    to_state: LifecycleState
    timestamp: datetime = Field(default_factory=_utcnow)
    reason: str = ""
    approved_by: str | None = None


class ExtensionMetrics(BaseModel):
    """Usage metrics of a registered extension."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    installations: int = 0
    active_usage: int = 0
    error_count: int = 0
    error_rate: float = 0.0
    performance_score: float = 100.0
    total_execution_ms: float = 0.0
    last_used: datetime | None = None


class StorageInfo(BaseModel):
    """Where and how an extension record is stored."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    path: str = ""
    checksum: str = ""
    size: int = 0


class ExtensionRegistryEntry(BaseModel):
    """
    Registry record wrapping an extension with its lifecycle state.

    Mutated only by ExtensionManager through governed transitions.
    """

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    extension: TemplateExtension
    state: LifecycleState = LifecycleState.DRAFT
    state_history: list[StateTransition] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    dependents: list[str] = Field(default_factory=list)
    metrics: ExtensionMetrics = Field(default_factory=ExtensionMetrics)
    storage: StorageInfo = Field(default_factory=StorageInfo)
    active: bool = False


# =============================================================================
# Deployment and Marketplace Models
# =============================================================================


class HealthCheckConfig(BaseModel):
    """Health checking performed after each rollout stage."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = True
    timeout_ms: int = Field(default=5000, gt=0)
    retries: int = Field(default=3, ge=0)


class RollbackConfig(BaseModel):
    """
    Rollback triggers of a deployment.

    Attributes:
        enabled: Whether the deployment may be rolled back later
        failure_threshold: Failed stages tolerated before aborting
        max_health_check_failures: Consecutive failed checks before aborting
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = True
    failure_threshold: int = Field(default=1, ge=1)
    max_health_check_failures: int = Field(default=3, ge=1)


class DeploymentConfig(BaseModel):
    """How an approved extension is rolled out."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    strategy: DeploymentStrategy = DeploymentStrategy.IMMEDIATE
    environment: str = "production"
    rollout_percentage: int = Field(default=100, ge=1, le=100)
    step_percentage: int = Field(default=25, ge=1, le=100, description="Gradual stage size")
    canary_percentage: int = Field(default=10, ge=1, le=100, description="Canary stage size")
    stage_delay_ms: int = Field(default=0, ge=0)
    health_check: HealthCheckConfig = Field(default_factory=HealthCheckConfig)
    rollback: RollbackConfig = Field(default_factory=RollbackConfig)


class DeploymentResult(BaseModel):
    """Record of one deployment attempt."""

    model_config = ConfigDict(extra="forbid")

    deployment_id: str
    extension_id: str
    strategy: DeploymentStrategy
    environment: str
    status: DeploymentStatus = DeploymentStatus.IN_PROGRESS
    stages_completed: list[int] = Field(default_factory=list)
    failed_stages: int = 0
    health_check_failures: int = 0
    rollback_enabled: bool = True
    error: str | None = None
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None

    @property
    def succeeded(self) -> bool:
        """True when the rollout completed."""
        return self.status == DeploymentStatus.SUCCEEDED


class MarketplaceEntry(BaseModel):
    """A published extension listing."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    extension_id: str
    name: str
    version: str
    description: str = ""
    publisher: str
    published_at: datetime = Field(default_factory=_utcnow)
    downloads: int = 0
    rating: float = 0.0
    tags: list[str] = Field(default_factory=list)


# =============================================================================
# Version Helpers
# =============================================================================


def is_valid_version(version: str) -> bool:
    """True when version is a semantic version."""
    return bool(SEMVER_PATTERN.match(version or ""))


def _version_key(version: str) -> tuple[int, int, int, tuple[tuple[int, Any], ...] | None]:
    match = SEMVER_PATTERN.match(version)
    if not match:
        msg = f"Invalid semantic version: {version}"
        raise ValueError(msg)
    major, minor, patch, pre, _build = match.groups()
    pre_key = None
    if pre:
        pre_key = tuple(
            (0, int(part)) if part.isdigit() else (1, part) for part in pre.split(".")
        )
    return int(major), int(minor), int(patch), pre_key


def compare_versions(a: str, b: str) -> int:
    """
    Compare two semantic versions.

    Returns -1, 0 or 1. Build metadata is ignored and a pre-release sorts
    before its release.
    """
    ka, kb = _version_key(a), _version_key(b)
    if ka[:3] != kb[:3]:
        return -1 if ka[:3] < kb[:3] else 1
    pa, pb = ka[3], kb[3]
    if pa == pb:
        return 0
    if pa is None:
        return 1
    if pb is None:
        return -1
    return -1 if pa < pb else 1


def next_major(version: str) -> str:
    """First release of the next major version."""
    major = _version_key(version)[0]
    return f"{major + 1}.0.0"


def version_in_range(version: str, compatibility: VersionCompatibility) -> bool:
    """Check version against an inclusive minimum and exclusive maximum."""
    if compatibility.min_parent_version and compare_versions(
        version, compatibility.min_parent_version
    ) < 0:
        return False
    if compatibility.max_parent_version and compare_versions(
        version, compatibility.max_parent_version
    ) >= 0:
        return False
    return True


# =============================================================================
# Loaders
# =============================================================================


def _read_yaml(path: Path | str) -> Any:
    path = Path(path)
    with path.open() as f:
        try:
            return yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise StructuralError(source=str(path), details=[f"invalid YAML: {e}"]) from e


def _validate(model: type[BaseModel], data: Any, source: str) -> Any:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        details = [
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        ]
        raise StructuralError(source=source, details=details) from e


def load_template(path: Path | str) -> Template:
    """
    Load a template from a YAML file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        StructuralError: If the YAML doesn't match the schema
    """
    return _validate(Template, _read_yaml(path), str(path))


def load_templates(path: Path | str) -> list[Template]:
    """
    Load several templates from one YAML file.

    The document may be a list of templates, a mapping with a
    ``templates`` key, or a single template.
    """
    data = _read_yaml(path)
    if isinstance(data, dict):
        data = data["templates"] if "templates" in data else [data]
    if not isinstance(data, list):
        raise StructuralError(source=str(path), details=["expected a list of templates"])
    return [_validate(Template, item, f"{path}[{i}]") for i, item in enumerate(data)]


def load_composition_config(path: Path | str) -> CompositionConfig:
    """Load a composition config from a YAML file."""
    return _validate(CompositionConfig, _read_yaml(path), str(path))


def load_template_from_string(content: str) -> Template:
    """Load a template from a YAML string."""
    return _validate(Template, yaml.safe_load(content), "<string>")


def load_extension_from_string(content: str) -> TemplateExtension:
    """Load an extension from a YAML string."""
    return _validate(TemplateExtension, yaml.safe_load(content), "<string>")
