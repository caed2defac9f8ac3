"""
Rule engine facade.

RuleEngine wires the components together from one Settings object and is
the entry point most callers need:

    - TemplateStore: registered templates
    - Sandbox: isolated execution of custom validators and plugins
    - TemplateValidator: accumulating template checks
    - TemplateComposer: N-way merges with conflict arbitration
    - ExtensionManager: extension registry and lifecycle
    - InheritanceEngine: chain resolution, with deployed extensions applied
    - TemplatePluginManager: sandboxed validation/generation plugins

Extension state changes notify the inheritance engine, so resolution
caches never serve a template whose deployed extensions have changed.

Usage:
    engine = RuleEngine(Settings())
    engine.register_template(base)
    team = engine.create_inherited_template("base", {"id": "team", "name": "Team"})
    resolved = engine.resolve_template("team")
"""

import logging
from typing import Any, Mapping

from rulesmith import __version__
from rulesmith.composition import TemplateComposer
from rulesmith.config import Settings
from rulesmith.extensions import CancellationToken, ExtensionManager, HealthCheck
from rulesmith.inheritance import InheritanceEngine
from rulesmith.plugins import TemplatePluginManager
from rulesmith.sandbox import CodeValidationResult, Sandbox, SandboxResult
from rulesmith.schema import (
    BuildContext,
    CompositionConfig,
    ConflictResolution,
    DeploymentConfig,
    DeploymentResult,
    ExtensionRegistryEntry,
    ExtensionType,
    LifecycleState,
    MarketplaceEntry,
    MergeStrategy,
    RuleSet,
    Template,
    TemplateExtension,
    ValidationResult,
)
from rulesmith.store import ExtensionDB, ExtensionStore, TemplateStore
from rulesmith.validation import TemplateValidator

logger = logging.getLogger(__name__)


class RuleEngine:
    """
    Facade over every Rulesmith component.

    Attributes:
        settings: Settings the engine was built from
        templates: Template registry
        sandbox: Sandbox shared by the validator and plugins
        validator: Template validator
        composer: Template composer
        extensions: Extension manager
        inheritance: Inheritance engine
        plugins: Template plugin manager
        db: Extension persistence, when configured
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or Settings()
        cache = self.settings.cache.enabled

        self.templates = TemplateStore()
        self.sandbox = Sandbox.from_settings(self.settings.sandbox)
        self.validator = TemplateValidator(self.templates, self.sandbox, enable_cache=cache)
        self.composer = TemplateComposer()

        db_path = self.settings.extensions.db_path
        self.db = ExtensionDB(db_path) if db_path else None
        self.extensions = ExtensionManager(
            self.templates,
            self.validator,
            store=ExtensionStore(),
            db=self.db,
            settings=self.settings.extensions,
            on_change=self._on_extension_change,
        )
        self.inheritance = InheritanceEngine(
            self.templates,
            self.composer,
            self.validator,
            extension_provider=self.extensions.deployed_extensions_for,
            enable_cache=cache,
        )
        self.plugins = TemplatePluginManager(self.sandbox)

        self._rejected_records = self.extensions.load_from_storage()

    def close(self) -> None:
        """Close the extension database, if any."""
        if self.db is not None:
            self.db.close()

    def __enter__(self) -> "RuleEngine":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def _on_extension_change(self, template_id: str) -> None:
        self.inheritance.invalidate(template_id)

    # =========================================================================
    # Registry
    # =========================================================================

    def register_template(self, template: Template, user_id: str | None = None) -> Template:
        return self.inheritance.register_template(template, user_id)

    def get_template(self, template_id: str) -> Template:
        return self.inheritance.get_template(template_id)

    def list_templates(self) -> list[Template]:
        return self.templates.values()

    def create_inherited_template(
        self,
        parent_id: str,
        data: dict[str, Any],
        extension_type: ExtensionType = ExtensionType.EXTEND,
        user_id: str | None = None,
    ) -> Template:
        return self.inheritance.create_inherited_template(parent_id, data, extension_type, user_id)

    def update_inheritance(
        self,
        template_id: str,
        updates: dict[str, Any],
        user_id: str | None = None,
    ) -> Template:
        return self.inheritance.update_inheritance(template_id, updates, user_id)

    def lock_template(self, template_id: str, user_id: str, reason: str | None = None) -> Template:
        return self.inheritance.lock_template(template_id, user_id, reason)

    def unlock_template(self, template_id: str, user_id: str) -> Template:
        return self.inheritance.unlock_template(template_id, user_id)

    def find_child_templates(self, template_id: str) -> list[Template]:
        return self.inheritance.find_child_templates(template_id)

    def get_inheritance_tree(self, template_id: str) -> dict[str, Any]:
        return self.inheritance.get_inheritance_tree(template_id)

    # =========================================================================
    # Resolution and Composition
    # =========================================================================

    def resolve_template(self, template_id: str, context: BuildContext | None = None) -> Template:
        """Resolve a template through its chain with deployed extensions applied."""
        return self.inheritance.resolve_template(template_id, context)

    def compose(
        self,
        template_ids: list[str],
        merge_strategy: MergeStrategy | None = None,
        conflict_resolution: ConflictResolution | None = None,
        context: BuildContext | None = None,
    ) -> Template:
        """Compose registered templates by id."""
        templates = [self.templates.get(tid) for tid in template_ids]
        return self.composer.compose(templates, merge_strategy, conflict_resolution, context)

    def compose_from_config(
        self,
        config: CompositionConfig,
        context: BuildContext | None = None,
    ) -> Template:
        return self.composer.compose_from_config(config, self.templates, context)

    # =========================================================================
    # Validation
    # =========================================================================

    def validate_template(
        self,
        template: Template,
        context: BuildContext | None = None,
    ) -> ValidationResult:
        return self.validator.validate_template(template, context)

    def validate_configuration(self, config: RuleSet | Mapping[str, Any]) -> ValidationResult:
        return self.validator.validate_configuration(config)

    def validate_extension(
        self,
        extension: TemplateExtension,
        context: BuildContext | None = None,
    ) -> bool:
        return self.validator.validate_extension(extension, context)

    # =========================================================================
    # Extension Lifecycle
    # =========================================================================

    def create_extension(
        self,
        template_id: str,
        data: dict[str, Any] | TemplateExtension,
        context: BuildContext | None = None,
        dependencies: list[str] | None = None,
    ) -> ExtensionRegistryEntry:
        return self.extensions.create_extension(template_id, data, context, dependencies)

    def update_extension(
        self,
        extension_id: str,
        updates: dict[str, Any],
        context: BuildContext | None = None,
    ) -> ExtensionRegistryEntry:
        return self.extensions.update_extension(extension_id, updates, context)

    def delete_extension(self, extension_id: str) -> bool:
        return self.extensions.delete_extension(extension_id)

    def transition_extension_state(
        self,
        extension_id: str,
        to_state: LifecycleState | str,
        reason: str = "",
        approved_by: str | None = None,
    ) -> ExtensionRegistryEntry:
        return self.extensions.transition_extension_state(
            extension_id, to_state, reason, approved_by
        )

    def deploy_extension(
        self,
        extension_id: str,
        config: DeploymentConfig | None = None,
        approved_by: str | None = None,
        cancel: CancellationToken | None = None,
        health_check: HealthCheck | None = None,
    ) -> DeploymentResult:
        return self.extensions.deploy_extension(
            extension_id, config, approved_by, cancel, health_check
        )

    def rollback_extension(self, extension_id: str, reason: str = "Rollback") -> ExtensionRegistryEntry:
        return self.extensions.rollback_extension(extension_id, reason)

    def apply_extensions(
        self,
        template: Template,
        context: BuildContext | None = None,
        extension_ids: list[str] | None = None,
    ) -> Template:
        return self.extensions.apply_extensions(template, context, extension_ids)

    def publish_extension(self, extension_id: str, publisher: str) -> MarketplaceEntry:
        return self.extensions.publish_extension(extension_id, publisher)

    # =========================================================================
    # Sandbox
    # =========================================================================

    def execute(
        self,
        code: str,
        context: dict[str, Any] | None = None,
        timeout_ms: int | None = None,
    ) -> SandboxResult:
        return self.sandbox.execute(code, context, timeout_ms)

    def execute_function(
        self,
        function_code: str,
        args: list[Any] | None = None,
        context: dict[str, Any] | None = None,
        timeout_ms: int | None = None,
    ) -> SandboxResult:
        return self.sandbox.execute_function(function_code, args, context, timeout_ms)

    def validate_code(self, code: str) -> CodeValidationResult:
        return self.sandbox.validate_code(code)

    # =========================================================================
    # Health
    # =========================================================================

    def get_system_health(self) -> dict[str, Any]:
        """
        Snapshot of component state.

        Status is "degraded" when persisted extension records were rejected
        on load or sandbox executions are timing out, else "healthy".
        """
        sandbox = self.sandbox.get_stats()
        issues: list[str] = []
        if self._rejected_records:
            issues.append(
                f"{len(self._rejected_records)} extension records failed integrity checks"
            )
        if sandbox["timeouts"]:
            issues.append(f"{sandbox['timeouts']} sandbox executions timed out")

        return {
            "status": "degraded" if issues else "healthy",
            "version": __version__,
            "issues": issues,
            "templates": len(self.templates),
            "extensions": self.extensions.get_stats(),
            "plugins": len(self.plugins.list_plugins()),
            "sandbox": sandbox,
            "validation": self.validator.get_stats(),
            "resolution": self.inheritance.get_cache_stats(),
            "storage": {
                "enabled": self.db is not None,
                "path": str(self.db.db_path) if self.db is not None else None,
                "rejected_records": list(self._rejected_records),
            },
        }
