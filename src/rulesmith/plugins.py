"""
Template plugins.

A plugin is a named fragment of sandboxed Python that either validates a
template or generates rules for it. Plugins run in registration order
within their category, each in its own sandbox execution, and see the
template and build context as plain JSON data:

    context["template"]       id, name, version, rules, parameters, tags
    context["build_context"]  environment, parameters, user
    context["config"]         the plugin's own configuration

Validation plugins return a bool or a mapping with ``errors`` and
``warnings`` lists (strings or {message, field, severity}). Generation
plugins return a mapping with any of ``deny``, ``allow``, ``ask``.

A plugin that fails (sandbox error or malformed output) contributes
nothing; the failure is logged and counted in its metrics.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from rulesmith.composition.patch import apply_rule_patch
from rulesmith.errors import StructuralError
from rulesmith.sandbox.engine import Sandbox
from rulesmith.schema import (
    BuildContext,
    RulePatch,
    RuleSet,
    Severity,
    Template,
    ValidationIssue,
    ValidationPerformance,
    ValidationResult,
    is_valid_version,
)

logger = logging.getLogger(__name__)


class PluginCategory(str, Enum):
    """What a plugin contributes."""

    VALIDATION = "validation"
    GENERATION = "generation"


class PluginState(str, Enum):
    """Whether a plugin takes part in executions."""

    READY = "ready"
    DISABLED = "disabled"


class PluginManifest(BaseModel):
    """Identity and categories of a plugin."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    version: str = "1.0.0"
    description: str = ""
    author: str = ""
    categories: list[PluginCategory] = Field(..., min_length=1)
    permissions: list[str] = Field(default_factory=list)

    @field_validator("version")
    @classmethod
    def _check_version(cls, v: str) -> str:
        if not is_valid_version(v):
            raise ValueError(f"Invalid version: {v}")
        return v


class PluginMetrics(BaseModel):
    """Execution counters of a plugin."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    executions: int = 0
    successes: int = 0
    failures: int = 0
    total_execution_ms: float = 0.0
    avg_execution_ms: float = 0.0
    peak_memory_mb: float = 0.0
    last_execution: datetime | None = None


@dataclass
class RegisteredPlugin:
    """A plugin known to the manager."""

    manifest: PluginManifest
    code: str
    config: dict[str, Any] = field(default_factory=dict)
    state: PluginState = PluginState.READY
    metrics: PluginMetrics = field(default_factory=PluginMetrics)


class TemplatePluginManager:
    """
    Registers and runs sandboxed template plugins.

    Args:
        sandbox: Sandbox used for every plugin execution
        timeout_ms: Per-execution override of the sandbox timeout
    """

    def __init__(self, sandbox: Sandbox, timeout_ms: int | None = None) -> None:
        self.sandbox = sandbox
        self.timeout_ms = timeout_ms
        self._plugins: dict[str, RegisteredPlugin] = {}
        self._lock = threading.Lock()

    # =========================================================================
    # Registry
    # =========================================================================

    def register_plugin(
        self,
        manifest: PluginManifest | dict[str, Any],
        code: str,
        config: dict[str, Any] | None = None,
    ) -> RegisteredPlugin:
        """
        Register a plugin.

        Raises:
            StructuralError: If the manifest is malformed, the id is taken,
                or the code has blocking scanner findings
        """
        if not isinstance(manifest, PluginManifest):
            try:
                manifest = PluginManifest.model_validate(manifest)
            except ValidationError as e:
                raise StructuralError(
                    message="Invalid plugin manifest",
                    source="plugin",
                    details=[
                        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                        for err in e.errors()
                    ],
                ) from e

        scan = self.sandbox.validate_code(code)
        if not scan.is_valid:
            raise StructuralError(
                message=f"Plugin {manifest.id} code rejected: {scan.summary()}",
                source=f"plugin:{manifest.id}",
                details=[i.message for i in scan.blocking_issues],
            )

        with self._lock:
            if manifest.id in self._plugins:
                raise StructuralError(
                    message=f"Plugin already registered: {manifest.id}",
                    source=f"plugin:{manifest.id}",
                )
            plugin = RegisteredPlugin(manifest=manifest, code=code, config=dict(config or {}))
            self._plugins[manifest.id] = plugin

        logger.info(
            "Registered plugin %s (%s)",
            manifest.id,
            ", ".join(c.value for c in manifest.categories),
        )
        return plugin

    def unregister_plugin(self, plugin_id: str) -> bool:
        with self._lock:
            return self._plugins.pop(plugin_id, None) is not None

    def get_plugin(self, plugin_id: str) -> RegisteredPlugin | None:
        with self._lock:
            return self._plugins.get(plugin_id)

    def list_plugins(self, category: PluginCategory | None = None) -> list[RegisteredPlugin]:
        """Plugins in registration order, optionally of one category."""
        with self._lock:
            plugins = list(self._plugins.values())
        if category is not None:
            plugins = [p for p in plugins if category in p.manifest.categories]
        return plugins

    def set_plugin_state(self, plugin_id: str, enabled: bool) -> bool:
        """Enable or disable a plugin; False if it is unknown."""
        with self._lock:
            plugin = self._plugins.get(plugin_id)
            if plugin is None:
                return False
            plugin.state = PluginState.READY if enabled else PluginState.DISABLED
            return True

    def get_plugin_metrics(self, plugin_id: str) -> PluginMetrics | None:
        with self._lock:
            plugin = self._plugins.get(plugin_id)
            return plugin.metrics.model_copy() if plugin else None

    def get_all_metrics(self) -> dict[str, PluginMetrics]:
        with self._lock:
            return {pid: p.metrics.model_copy() for pid, p in self._plugins.items()}

    # =========================================================================
    # Execution
    # =========================================================================

    def execute_validation_plugins(
        self,
        template: Template,
        context: BuildContext | None = None,
        plugin_ids: list[str] | None = None,
    ) -> ValidationResult:
        """Run validation plugins and collect their findings."""
        start = time.perf_counter()
        plugins = self._runnable(PluginCategory.VALIDATION, plugin_ids)
        errors: list[ValidationIssue] = []
        warnings: list[ValidationIssue] = []

        for plugin in plugins:
            output = self._execute(plugin, template, context)
            if output is None:
                continue
            try:
                found_errors, found_warnings = self._read_findings(plugin, output)
            except ValueError as e:
                self._mark_failed(plugin, f"malformed output: {e}")
                continue
            errors.extend(found_errors)
            warnings.extend(found_warnings)

        return ValidationResult(
            is_valid=not errors,
            errors=errors,
            warnings=warnings,
            performance=ValidationPerformance(
                validation_time_ms=(time.perf_counter() - start) * 1000,
                rules_validated=template.rules.total(),
                custom_rules_validated=len(plugins),
            ),
        )

    def execute_generation_plugins(
        self,
        template: Template,
        context: BuildContext | None = None,
        plugin_ids: list[str] | None = None,
    ) -> RuleSet:
        """Run generation plugins and merge what they produce into the rules."""
        rules = template.rules
        for plugin in self._runnable(PluginCategory.GENERATION, plugin_ids):
            output = self._execute(plugin, template, context)
            if output is None:
                continue
            try:
                patch = RulePatch.model_validate(output)
            except ValidationError as e:
                self._mark_failed(plugin, f"malformed output: {e.error_count()} errors")
                continue
            rules = apply_rule_patch(rules, patch)
        return rules

    # =========================================================================
    # Internals
    # =========================================================================

    def _runnable(
        self,
        category: PluginCategory,
        plugin_ids: list[str] | None,
    ) -> list[RegisteredPlugin]:
        return [
            p for p in self.list_plugins(category)
            if p.state == PluginState.READY
            and (plugin_ids is None or p.manifest.id in plugin_ids)
        ]

    def _execute(
        self,
        plugin: RegisteredPlugin,
        template: Template,
        context: BuildContext | None,
    ) -> Any:
        """Run one plugin; None when it failed."""
        build = context or BuildContext()
        payload = {
            "template": template.model_dump(
                mode="json",
                include={"id", "name", "version", "rules", "parameters", "tags"},
            ),
            "build_context": build.model_dump(
                mode="json",
                include={"environment", "parameters", "user"},
            ),
            "config": plugin.config,
        }
        result = self.sandbox.execute(plugin.code, payload, timeout_ms=self.timeout_ms)

        with self._lock:
            metrics = plugin.metrics
            metrics.executions += 1
            metrics.total_execution_ms += result.metrics.execution_time_ms
            metrics.avg_execution_ms = metrics.total_execution_ms / metrics.executions
            metrics.peak_memory_mb = max(metrics.peak_memory_mb, result.metrics.peak_memory_mb)
            metrics.last_execution = datetime.now(UTC)
            if result.success:
                metrics.successes += 1
            else:
                metrics.failures += 1

        if not result.success:
            logger.warning(
                "Plugin %s failed (%s): %s",
                plugin.manifest.id,
                result.error_kind,
                result.error,
            )
            return None
        return result.result

    def _mark_failed(self, plugin: RegisteredPlugin, reason: str) -> None:
        with self._lock:
            plugin.metrics.successes -= 1
            plugin.metrics.failures += 1
        logger.warning("Plugin %s failed: %s", plugin.manifest.id, reason)

    @staticmethod
    def _read_findings(
        plugin: RegisteredPlugin,
        output: Any,
    ) -> tuple[list[ValidationIssue], list[ValidationIssue]]:
        plugin_id = plugin.manifest.id
        if isinstance(output, bool):
            if output:
                return [], []
            return [
                ValidationIssue(
                    category="plugin",
                    message=f"Plugin {plugin_id} rejected the template",
                    rule_id=plugin_id,
                )
            ], []
        if not isinstance(output, dict):
            raise ValueError(f"expected bool or mapping, got {type(output).__name__}")

        def issues(key: str, default: Severity) -> list[ValidationIssue]:
            raw = output.get(key) or []
            if not isinstance(raw, list):
                raise ValueError(f"{key} must be a list")
            found = []
            for item in raw:
                if isinstance(item, str):
                    item = {"message": item}
                if not isinstance(item, dict) or not item.get("message"):
                    raise ValueError(f"{key} entries need a message")
                found.append(
                    ValidationIssue(
                        category="plugin",
                        field=str(item.get("field", "")),
                        message=str(item["message"]),
                        severity=Severity(item.get("severity", default.value)),
                        rule_id=plugin_id,
                    )
                )
            return found

        return issues("errors", Severity.ERROR), issues("warnings", Severity.WARNING)
