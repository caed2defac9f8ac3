"""
Template validator.

validate_template() runs every check in order and accumulates findings into
one error list and one warning list; nothing short-circuits, so a single
call reports the complete problem set.

Checks:
    1. Structure: identity fields, version format, inheritance metadata, size
    2. Inheritance: parent existence, chain depth, self-duplication
    3. Configuration: rule lists are lists of non-empty strings, no unknown keys
    4. Security heuristics (warnings): wildcard allows, allow/deny overlap
    5. Extensions: each attached extension passes validate_extension()
    6. Custom rules: registered validators run through the sandbox
    7. Permissions: organization scope and override permission

Results are cached per template id, keyed by a content hash of the template
and the relevant parts of the build context.
"""

import logging
import re
import threading
import time
from typing import Any, Mapping

from rulesmith.composition.patch import parse_rule_path
from rulesmith.errors import StructuralError
from rulesmith.sandbox.engine import Sandbox
from rulesmith.schema import (
    RULE_CATEGORIES,
    BuildContext,
    ConditionOperator,
    CustomValidationRule,
    ExtensionType,
    RuleSet,
    Severity,
    Template,
    TemplateExtension,
    ValidationIssue,
    ValidationPerformance,
    ValidationResult,
    is_valid_version,
)
from rulesmith.store.db import compute_hash
from rulesmith.store.registry import TemplateStore

logger = logging.getLogger(__name__)

MAX_TEMPLATE_BYTES = 1024 * 1024
MAX_CHAIN_DEPTH = 10
# Cached results kept per registered template, oldest evicted first
MAX_CACHED_RESULTS = 64
OVERRIDE_PERMISSION = "template:override"

_WILDCARD = re.compile(r"^\*+$")


class _Findings:
    """Error and warning accumulator for one validation run."""

    def __init__(self) -> None:
        self.errors: list[ValidationIssue] = []
        self.warnings: list[ValidationIssue] = []

    def error(
        self,
        category: str,
        field: str,
        message: str,
        severity: Severity = Severity.ERROR,
        rule_id: str | None = None,
    ) -> None:
        self.errors.append(
            ValidationIssue(
                category=category, field=field, message=message,
                severity=severity, rule_id=rule_id,
            )
        )

    def warning(
        self,
        category: str,
        field: str,
        message: str,
        rule_id: str | None = None,
    ) -> None:
        self.warnings.append(
            ValidationIssue(
                category=category, field=field, message=message,
                severity=Severity.WARNING, rule_id=rule_id,
            )
        )


class TemplateValidator:
    """
    Validates templates, rule configurations and extensions.

    Args:
        templates: Store used to check parent existence
        sandbox: Sandbox for custom rules (a default one is created if omitted)
        enable_cache: Cache results of templates registered in the store
    """

    def __init__(
        self,
        templates: TemplateStore | None = None,
        sandbox: Sandbox | None = None,
        enable_cache: bool = True,
    ) -> None:
        self.templates = templates if templates is not None else TemplateStore()
        self.sandbox = sandbox or Sandbox()
        self.enable_cache = enable_cache
        self._custom_rules: dict[str, CustomValidationRule] = {}
        self._cache: dict[str, dict[str, ValidationResult]] = {}
        self._lock = threading.RLock()
        self._stats = {"validations": 0, "cache_hits": 0}

    # =========================================================================
    # Public API
    # =========================================================================

    def register_custom_rule(self, rule: CustomValidationRule) -> None:
        """
        Register a custom validator.

        Templates reference registered validators by id.

        Raises:
            StructuralError: If the rule has no validator body
        """
        if not rule.validator.strip():
            raise StructuralError(source=f"custom rule {rule.id}", details=["empty validator"])
        with self._lock:
            self._custom_rules[rule.id] = rule
            self._cache.clear()

    def unregister_custom_rule(self, rule_id: str) -> bool:
        """Remove a custom validator. Returns True if it was registered."""
        with self._lock:
            removed = self._custom_rules.pop(rule_id, None) is not None
            if removed:
                self._cache.clear()
            return removed

    def validate_template(
        self,
        template: Template,
        context: BuildContext | None = None,
    ) -> ValidationResult:
        """
        Validate a template.

        Returns:
            ValidationResult with every error and warning found
        """
        context = context or BuildContext()
        key = self._cache_key(template, context)
        if self.enable_cache:
            with self._lock:
                cached = self._cache.get(template.id, {}).get(key)
                if cached is not None:
                    self._stats["cache_hits"] += 1
                    return cached.model_copy(deep=True)

        started = time.perf_counter()
        findings = _Findings()

        self._check_structure(template, findings)
        self._check_inheritance(template, context, findings)
        findings.errors.extend(self._check_configuration(template.rules))
        self._check_security(template.rules, findings)
        self._check_extensions(template, context, findings)
        custom_count = self._check_custom_rules(template, context, findings)
        self._check_permissions(template, context, findings)

        result = ValidationResult(
            is_valid=not findings.errors,
            errors=findings.errors,
            warnings=findings.warnings,
            performance=ValidationPerformance(
                validation_time_ms=(time.perf_counter() - started) * 1000,
                rules_validated=self.count_rules(template.rules),
                custom_rules_validated=custom_count,
            ),
        )

        with self._lock:
            self._stats["validations"] += 1
            if self.enable_cache and self.templates.has(template.id):
                entries = self._cache.setdefault(template.id, {})
                entries[key] = result
                while len(entries) > MAX_CACHED_RESULTS:
                    del entries[next(iter(entries))]
        return result.model_copy(deep=True)

    def validate_configuration(self, config: RuleSet | Mapping[str, Any]) -> ValidationResult:
        """
        Validate a rules configuration.

        Accepts a RuleSet or a raw mapping; unknown top-level keys and
        non-string or empty patterns are errors.
        """
        errors = self._check_configuration(config)
        rules = 0
        if isinstance(config, RuleSet):
            rules = self.count_rules(config)
        elif isinstance(config, Mapping):
            rules = sum(len(v) for v in config.values() if isinstance(v, list))
        return ValidationResult(
            is_valid=not errors,
            errors=errors,
            performance=ValidationPerformance(rules_validated=rules),
        )

    def validate_extension(
        self,
        extension: TemplateExtension,
        context: BuildContext | None = None,
    ) -> bool:
        """True when an extension is structurally valid."""
        return not self.extension_problems(extension)

    def extension_problems(self, extension: TemplateExtension) -> list[str]:
        """Every structural problem of an extension (empty when valid)."""
        problems: list[str] = []
        if not extension.id.strip():
            problems.append("missing id")
        if not extension.name.strip():
            problems.append("missing name")
        if not extension.target_template_id.strip():
            problems.append("missing target template")
        if extension.priority < 0:
            problems.append("priority must be non-negative")
        if not is_valid_version(extension.metadata.version):
            problems.append(f"invalid version {extension.metadata.version}")
        if extension.rules.is_empty() and not extension.remove_rules:
            problems.append("extension changes nothing")
        for path in extension.remove_rules:
            try:
                parse_rule_path(path)
            except StructuralError as e:
                problems.extend(e.details)
        for condition in extension.conditions:
            if condition.operator == ConditionOperator.REGEX:
                try:
                    re.compile(str(condition.value))
                except re.error as e:
                    problems.append(f"invalid condition regex: {e}")
        return problems

    def invalidate(self, template_id: str) -> None:
        """Evict every cached result of a template."""
        with self._lock:
            self._cache.pop(template_id, None)

    def clear_cache(self) -> None:
        """Evict everything."""
        with self._lock:
            self._cache.clear()

    def get_stats(self) -> dict[str, Any]:
        """Cache and usage counters."""
        with self._lock:
            return {
                "cached_templates": len(self._cache),
                "cache_size": sum(len(v) for v in self._cache.values()),
                "custom_rules": len(self._custom_rules),
                **self._stats,
            }

    @staticmethod
    def count_rules(rules: RuleSet) -> int:
        """Number of patterns in a rule set."""
        return rules.total()

    # =========================================================================
    # Checks
    # =========================================================================

    def _cache_key(self, template: Template, context: BuildContext) -> str:
        return compute_hash(template.model_dump(mode="json")) + compute_hash(
            context.cache_identity()
        )

    def _check_structure(self, template: Template, findings: _Findings) -> None:
        if not template.id:
            findings.error("structure", "id", "Template id is required")
        if not template.name:
            findings.error("structure", "name", "Template name is required")
        if not is_valid_version(template.version):
            findings.error(
                "structure", "version",
                f"Invalid semantic version: {template.version!r}",
            )
        if getattr(template, "inheritance", None) is None:
            findings.error("structure", "inheritance", "Inheritance metadata is required")
        size = len(template.model_dump_json().encode("utf-8"))
        if size > MAX_TEMPLATE_BYTES:
            findings.warning(
                "performance", "template",
                f"Template is {size} bytes; large templates slow down resolution",
            )

    def _check_inheritance(
        self,
        template: Template,
        context: BuildContext,
        findings: _Findings,
    ) -> None:
        inheritance = getattr(template, "inheritance", None)
        if inheritance is None:
            return
        parent = inheritance.parent_id
        if parent and parent not in self.templates and parent not in context.available_templates:
            findings.error(
                "inheritance", "inheritance.parent_id",
                f"Parent template not found: {parent}",
            )

        chain = inheritance.chain
        if len(chain) > MAX_CHAIN_DEPTH:
            findings.warning(
                "inheritance", "inheritance.chain",
                f"Inheritance chain depth {len(chain)} exceeds {MAX_CHAIN_DEPTH}",
            )
        duplicates = sorted({tid for tid in chain if chain.count(tid) > 1})
        if template.id in chain:
            duplicates.append(template.id)
        if duplicates:
            findings.error(
                "inheritance", "inheritance.chain",
                f"Circular inheritance: {', '.join(duplicates)} repeated in chain",
                severity=Severity.CRITICAL,
            )

    def _check_configuration(self, config: RuleSet | Mapping[str, Any]) -> list[ValidationIssue]:
        findings = _Findings()
        data = config.model_dump() if isinstance(config, RuleSet) else config
        if not isinstance(data, Mapping):
            findings.error("config", "rules", "Rules configuration must be a mapping")
            return findings.errors

        for key in data:
            if key not in RULE_CATEGORIES:
                findings.error("config", f"rules.{key}", f"Unknown rules key: {key}")

        for category in RULE_CATEGORIES:
            patterns = data.get(category, [])
            if patterns is None:
                continue
            if not isinstance(patterns, list):
                findings.error("config", f"rules.{category}", f"rules.{category} must be a list")
                continue
            for index, pattern in enumerate(patterns):
                if not isinstance(pattern, str):
                    findings.error(
                        "config", f"rules.{category}.{index}",
                        f"Pattern must be a string, got {type(pattern).__name__}",
                    )
                elif not pattern.strip():
                    findings.error("config", f"rules.{category}.{index}", "Pattern is empty")
        return findings.errors

    def _check_security(self, rules: RuleSet, findings: _Findings) -> None:
        for pattern in rules.allow:
            if _WILDCARD.match(pattern):
                findings.warning(
                    "security", "rules.allow",
                    f"Wildcard allow rule '{pattern}' permits everything",
                )
        for pattern in sorted(set(rules.allow) & set(rules.deny)):
            findings.warning(
                "security", "rules",
                f"Pattern '{pattern}' is both allowed and denied",
            )

    def _check_extensions(
        self,
        template: Template,
        context: BuildContext,
        findings: _Findings,
    ) -> None:
        for extension in template.extensions:
            problems = self.extension_problems(extension)
            if problems:
                findings.error(
                    "extension", f"extensions.{extension.id}",
                    f"Invalid extension {extension.id}: {'; '.join(problems)}",
                )

    def _check_custom_rules(
        self,
        template: Template,
        context: BuildContext,
        findings: _Findings,
    ) -> int:
        executed = 0
        for entry in template.custom_validation:
            with self._lock:
                registered = self._custom_rules.get(entry.id)
            if registered is None:
                findings.warning(
                    "custom", f"custom_validation.{entry.id}",
                    f"Custom rule {entry.id} is not registered",
                    rule_id=entry.id,
                )
                continue

            parameters = {**registered.parameters, **entry.parameters}
            sandbox_context = {
                "template": {
                    "id": template.id,
                    "name": template.name,
                    "rules": template.rules.model_dump(),
                    "parameters": [p.model_dump(mode="json") for p in template.parameters],
                },
                "parameters": parameters,
                "environment": context.environment,
            }
            outcome = self.sandbox.execute(registered.validator, sandbox_context)
            executed += 1

            if not outcome.success:
                logger.warning(
                    "Custom rule %s contributed nothing: %s error: %s",
                    entry.id, outcome.error_kind, outcome.error,
                )
                findings.warning(
                    "custom", f"custom_validation.{entry.id}",
                    f"Custom rule {entry.id} could not run ({outcome.error_kind})",
                    rule_id=entry.id,
                )
                continue

            passed, message = self._interpret(outcome.result)
            if passed is None:
                findings.warning(
                    "custom", f"custom_validation.{entry.id}",
                    f"Custom rule {entry.id} returned an unrecognized result",
                    rule_id=entry.id,
                )
                continue
            if passed:
                continue

            severity = entry.severity
            text = message or f"Custom rule {entry.name or entry.id} failed"
            if severity in (Severity.ERROR, Severity.CRITICAL):
                findings.error(
                    registered.category or "custom", f"custom_validation.{entry.id}",
                    text, severity=severity, rule_id=entry.id,
                )
            else:
                findings.warning(
                    registered.category or "custom", f"custom_validation.{entry.id}",
                    text, rule_id=entry.id,
                )
        return executed

    @staticmethod
    def _interpret(result: Any) -> tuple[bool | None, str | None]:
        """Read a custom rule result: a bool or a mapping with is_valid and message."""
        if isinstance(result, bool):
            return result, None
        if isinstance(result, dict):
            flag = result.get("is_valid", result.get("isValid"))
            if isinstance(flag, bool):
                message = result.get("message")
                return flag, str(message) if message is not None else None
        return None, None

    def _check_permissions(
        self,
        template: Template,
        context: BuildContext,
        findings: _Findings,
    ) -> None:
        user = context.user
        if user is None:
            return
        org = template.scope.organization_id
        if org and user.organization_id != org:
            findings.error(
                "permission", "scope.organization_id",
                f"User {user.id} does not belong to organization {org}",
                severity=Severity.CRITICAL,
            )
        inheritance = getattr(template, "inheritance", None)
        if (
            inheritance is not None
            and inheritance.extension_type == ExtensionType.OVERRIDE
            and inheritance.permissions.can_override_rules
            and OVERRIDE_PERMISSION not in user.permissions
        ):
            findings.warning(
                "permission", "inheritance.permissions",
                f"User {user.id} lacks {OVERRIDE_PERMISSION} for an overriding template",
            )
