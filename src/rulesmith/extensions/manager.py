"""
Extension manager.

Owns the extension registry: creation, updates, governed lifecycle
transitions, staged deployment, rollback, dependency tracking, usage
metrics, marketplace publishing and persistence.

Design Principles:
    - Every state change goes through LifecycleMachine; side effects run
      before the new state is committed
    - Entries are replaced wholesale in the store, never mutated in place
    - A failing extension is isolated at apply time and only counts
      against its own metrics
    - Anything that changes what a template resolves to notifies
      on_change(template_id) so resolution caches can be invalidated
"""

import logging
import time
from datetime import UTC, datetime
from typing import Any, Callable

from pydantic import ValidationError

from rulesmith.composition.conditions import evaluate_conditions
from rulesmith.composition.patch import apply_extension, order_extensions
from rulesmith.config import ExtensionSettings
from rulesmith.errors import (
    DeploymentError,
    ExtensionHasDependentsError,
    ExtensionStateError,
    ExtensionTestFailedError,
    InvalidExtensionError,
    MarketplaceDisabledError,
    RulesmithError,
    StructuralError,
)
from rulesmith.extensions.deployment import CancellationToken, Deployer, HealthCheck
from rulesmith.extensions.lifecycle import LifecycleMachine, SideEffect
from rulesmith.schema import (
    BuildContext,
    DeploymentConfig,
    DeploymentResult,
    DeploymentStatus,
    ExtensionMetrics,
    ExtensionRegistryEntry,
    LifecycleState,
    MarketplaceEntry,
    StateTransition,
    StorageInfo,
    Template,
    TemplateExtension,
)
from rulesmith.store.db import ExtensionDB, compute_hash, generate_id
from rulesmith.store.registry import ExtensionStore, TemplateStore
from rulesmith.validation.engine import TemplateValidator

logger = logging.getLogger(__name__)

EDITABLE_STATES = (LifecycleState.DRAFT, LifecycleState.TESTING)
PUBLISHABLE_STATES = (LifecycleState.APPROVED, LifecycleState.DEPLOYED)
IMMUTABLE_FIELDS = ("id", "target_template_id")


class ExtensionManager:
    """
    Registry and lifecycle owner for template extensions.

    Args:
        templates: Template registry used to check extension targets
        validator: Validator used for structural checks and self-tests
        store: Extension registry (a fresh one when omitted)
        db: Optional SQLite persistence
        settings: Manager behavior
        deployer: Stage runner for deployments
        on_change: Called with a template id whenever what it resolves to changes
    """

    def __init__(
        self,
        templates: TemplateStore,
        validator: TemplateValidator,
        store: ExtensionStore | None = None,
        db: ExtensionDB | None = None,
        settings: ExtensionSettings | None = None,
        deployer: Deployer | None = None,
        on_change: Callable[[str], None] | None = None,
    ) -> None:
        self.templates = templates
        self.validator = validator
        self.store = store if store is not None else ExtensionStore()
        self.db = db
        self.settings = settings or ExtensionSettings()
        self.deployer = deployer or Deployer()
        self.on_change = on_change
        self.machine = LifecycleMachine(
            handlers={
                SideEffect.RUN_TESTS: self._run_self_test,
                SideEffect.ACTIVATE: self._activate,
                SideEffect.DEACTIVATE: self._deactivate,
                SideEffect.RETIRE: self._deactivate,
            },
            auto_approval=self.settings.auto_approval,
        )
        self._deployments: dict[str, list[DeploymentResult]] = {}

    # =========================================================================
    # Registry
    # =========================================================================

    def create_extension(
        self,
        template_id: str,
        data: dict[str, Any] | TemplateExtension,
        context: BuildContext | None = None,
        dependencies: list[str] | None = None,
    ) -> ExtensionRegistryEntry:
        """
        Register a new extension in the draft state.

        Raises:
            TemplateNotFoundError: If the target template is unknown
            InvalidExtensionError: If the extension is malformed, duplicated,
                over the per-template limit, or depends on unknown extensions
        """
        self.templates.get(template_id)
        extension = self._build_extension(template_id, data)
        deps = list(dict.fromkeys([*extension.dependencies, *(dependencies or [])]))

        with self.store.lock():
            if self.store.has(extension.id):
                raise InvalidExtensionError(
                    extension_id=extension.id,
                    details=["extension id already registered"],
                )
            live = [
                e for e in self.store.values()
                if e.extension.target_template_id == template_id
                and e.state != LifecycleState.ARCHIVED
            ]
            if len(live) >= self.settings.max_extensions_per_template:
                raise InvalidExtensionError(
                    extension_id=extension.id,
                    details=[
                        f"template {template_id} already has "
                        f"{self.settings.max_extensions_per_template} extensions"
                    ],
                )
            self._check_extension(extension)
            missing = [d for d in deps if not self.store.has(d)]
            if missing:
                raise InvalidExtensionError(
                    extension_id=extension.id,
                    details=[f"unknown dependency: {d}" for d in missing],
                )

            entry = ExtensionRegistryEntry(
                extension=extension,
                state=LifecycleState.DRAFT,
                state_history=[
                    StateTransition(to_state=LifecycleState.DRAFT, reason="Extension created")
                ],
                dependencies=deps,
                storage=self._storage_info(extension),
            )
            self._commit(entry)
            self._link_dependents(extension.id, deps, [])

        logger.info("Created extension %s for template %s", extension.id, template_id)
        return entry.model_copy(deep=True)

    def update_extension(
        self,
        extension_id: str,
        updates: dict[str, Any],
        context: BuildContext | None = None,
    ) -> ExtensionRegistryEntry:
        """
        Change an extension's definition while it is in draft or testing.

        Raises:
            ExtensionStateError: If the extension is past testing
            InvalidExtensionError: If the result is malformed or an
                immutable field is changed
        """
        with self.store.lock():
            entry = self.store.get(extension_id)
            if entry.state not in EDITABLE_STATES:
                raise ExtensionStateError(
                    extension_id=extension_id,
                    state=entry.state.value,
                    operation="update",
                    required=[s.value for s in EDITABLE_STATES],
                )
            current = entry.extension
            changed = [
                f for f in IMMUTABLE_FIELDS
                if f in updates and updates[f] != getattr(current, f)
            ]
            if changed:
                raise InvalidExtensionError(
                    extension_id=extension_id,
                    details=[f"{f} cannot be changed" for f in changed],
                )

            data = current.model_dump()
            data.update(updates)
            metadata = dict(data.get("metadata") or {})
            metadata["updated_at"] = datetime.now(UTC)
            data["metadata"] = metadata
            extension = self._build_extension(current.target_template_id, data)
            self._check_extension(extension)

            deps = list(extension.dependencies)
            missing = [d for d in deps if d != extension_id and not self.store.has(d)]
            if missing or extension_id in deps:
                raise InvalidExtensionError(
                    extension_id=extension_id,
                    details=[f"unknown dependency: {d}" for d in missing]
                    or ["extension cannot depend on itself"],
                )

            updated = entry.model_copy(
                update={
                    "extension": extension,
                    "dependencies": deps,
                    "storage": self._storage_info(extension),
                },
                deep=True,
            )
            self._commit(updated)
            self._link_dependents(extension_id, deps, entry.dependencies)

        logger.info("Updated extension %s", extension_id)
        return updated.model_copy(deep=True)

    def delete_extension(self, extension_id: str) -> bool:
        """
        Remove an extension.

        Raises:
            ExtensionHasDependentsError: If other extensions depend on it
        """
        with self.store.lock():
            entry = self.store.get(extension_id)
            if entry.dependents:
                raise ExtensionHasDependentsError(
                    extension_id=extension_id,
                    dependents=list(entry.dependents),
                )
            self._link_dependents(extension_id, [], entry.dependencies)
            self.store.delete(extension_id)
            if self.db is not None:
                self.db.delete_entry(extension_id)
            self._deployments.pop(extension_id, None)

        logger.info("Deleted extension %s", extension_id)
        if entry.active:
            self._notify(entry.extension.target_template_id)
        return True

    def get_extension(self, extension_id: str) -> ExtensionRegistryEntry:
        """Copy of a registry entry (ExtensionNotFoundError if unknown)."""
        return self.store.get(extension_id).model_copy(deep=True)

    def list_extensions(
        self,
        state: LifecycleState | None = None,
        template_id: str | None = None,
        author: str | None = None,
    ) -> list[ExtensionRegistryEntry]:
        """Entries matching every given filter, in application order."""
        entries = [
            e for e in self.store.values()
            if (state is None or e.state == state)
            and (template_id is None or e.extension.target_template_id == template_id)
            and (author is None or e.extension.metadata.author == author)
        ]
        entries.sort(key=lambda e: (e.extension.priority, e.extension.id))
        return [e.model_copy(deep=True) for e in entries]

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def transition_extension_state(
        self,
        extension_id: str,
        to_state: LifecycleState | str,
        reason: str = "",
        approved_by: str | None = None,
    ) -> ExtensionRegistryEntry:
        """
        Move an extension to another lifecycle state.

        Raises:
            InvalidTransitionError: If the transition is not in the table
            ApprovalRequiredError: If an approver is needed and missing
            ExtensionTestFailedError: If the self-test run on entering
                testing fails
        """
        to_state = LifecycleState(to_state)
        with self.store.lock():
            entry = self.store.get(extension_id)
            updated = self.machine.transition(entry, to_state, reason, approved_by)
            self._commit(updated)

        logger.info(
            "Extension %s: %s -> %s%s",
            extension_id,
            entry.state.value,
            to_state.value,
            f" (approved by {approved_by})" if approved_by else "",
        )
        if entry.active != updated.active:
            self._notify(updated.extension.target_template_id)
        return updated.model_copy(deep=True)

    def deploy_extension(
        self,
        extension_id: str,
        config: DeploymentConfig | None = None,
        approved_by: str | None = None,
        cancel: CancellationToken | None = None,
        health_check: HealthCheck | None = None,
    ) -> DeploymentResult:
        """
        Roll out an approved extension.

        The extension enters the deployed state only if every stage
        completes; a failed or cancelled run leaves it approved.

        Raises:
            ExtensionStateError: If the extension is not approved
            ApprovalRequiredError: If an approver is needed and missing
        """
        config = config or DeploymentConfig()
        entry = self.store.get(extension_id)
        if entry.state != LifecycleState.APPROVED:
            raise ExtensionStateError(
                extension_id=extension_id,
                state=entry.state.value,
                operation="deploy",
                required=[LifecycleState.APPROVED.value],
            )
        self.machine.check(entry, LifecycleState.DEPLOYED, approved_by)

        result = self.deployer.run(entry.extension, config, cancel, health_check)
        if result.succeeded:
            try:
                self.transition_extension_state(
                    extension_id,
                    LifecycleState.DEPLOYED,
                    reason=f"Deployed to {config.environment} ({config.strategy.value})",
                    approved_by=approved_by,
                )
            except RulesmithError as e:
                result.status = DeploymentStatus.FAILED
                result.error = f"Could not commit deployed state: {e.message}"
                logger.warning("Deployment %s of %s: %s", result.deployment_id, extension_id, result.error)

        self._record_deployment(result)
        return result

    def rollback_extension(
        self,
        extension_id: str,
        reason: str = "Rollback",
    ) -> ExtensionRegistryEntry:
        """
        Return a deployed extension to approved.

        Raises:
            ExtensionStateError: If the extension is not deployed
            DeploymentError: If its last deployment disabled rollback
        """
        entry = self.store.get(extension_id)
        if entry.state != LifecycleState.DEPLOYED:
            raise ExtensionStateError(
                extension_id=extension_id,
                state=entry.state.value,
                operation="rollback",
                required=[LifecycleState.DEPLOYED.value],
            )
        last = self._last_successful_deployment(extension_id)
        if last is not None and not last.rollback_enabled:
            raise DeploymentError(
                extension_id=extension_id,
                reason=f"rollback disabled for deployment {last.deployment_id}",
            )

        updated = self.transition_extension_state(
            extension_id, LifecycleState.APPROVED, reason=reason
        )
        if last is not None:
            last.status = DeploymentStatus.ROLLED_BACK
            last.completed_at = datetime.now(UTC)
            if self.db is not None:
                self.db.record_deployment(last)
        logger.info("Rolled back extension %s: %s", extension_id, reason)
        return updated

    def get_deployments(self, extension_id: str) -> list[DeploymentResult]:
        """Deployment attempts of an extension, oldest first."""
        self.store.get(extension_id)
        if self.db is not None:
            return self.db.get_deployments(extension_id)
        return [d.model_copy(deep=True) for d in self._deployments.get(extension_id, [])]

    # =========================================================================
    # Application
    # =========================================================================

    def apply_extensions(
        self,
        template: Template,
        context: BuildContext | None = None,
        extension_ids: list[str] | None = None,
    ) -> Template:
        """
        Apply deployed extensions targeting template, in priority order.

        A failing extension is logged and counted in its metrics; the
        remaining extensions still apply.
        """
        candidates = [
            e.extension for e in self.store.values()
            if e.state == LifecycleState.DEPLOYED
            and e.extension.target_template_id == template.id
            and (extension_ids is None or e.extension.id in extension_ids)
        ]
        for extension in order_extensions(candidates):
            start = time.perf_counter()
            try:
                if not evaluate_conditions(extension.conditions, context):
                    continue
                template = apply_extension(template, extension)
            except (RulesmithError, ValueError) as e:
                logger.warning("Extension %s failed on %s: %s", extension.id, template.id, e)
                self._record_usage(extension.id, time.perf_counter() - start, failed=True)
                continue
            self._record_usage(extension.id, time.perf_counter() - start, failed=False)
        return template

    def deployed_extensions_for(
        self,
        template_id: str,
        context: BuildContext | None = None,
    ) -> list[TemplateExtension]:
        """Deployed extensions targeting template_id, in application order."""
        return order_extensions(
            e.extension for e in self.store.values()
            if e.state == LifecycleState.DEPLOYED
            and e.extension.target_template_id == template_id
        )

    # =========================================================================
    # Marketplace, Dependencies, Metrics
    # =========================================================================

    def publish_extension(self, extension_id: str, publisher: str) -> MarketplaceEntry:
        """
        List an approved or deployed extension in the marketplace.

        Raises:
            MarketplaceDisabledError: If the marketplace is off
            ExtensionStateError: If the extension is not yet approved
        """
        if not self.settings.enable_marketplace:
            raise MarketplaceDisabledError(extension_id=extension_id)
        entry = self.store.get(extension_id)
        if entry.state not in PUBLISHABLE_STATES:
            raise ExtensionStateError(
                extension_id=extension_id,
                state=entry.state.value,
                operation="publish",
                required=[s.value for s in PUBLISHABLE_STATES],
            )
        ext = entry.extension
        listing = MarketplaceEntry(
            extension_id=ext.id,
            name=ext.name,
            version=ext.metadata.version,
            description=ext.metadata.description,
            publisher=publisher,
        )
        if self.db is not None:
            self.db.save_marketplace_entry(listing)
        logger.info("Published extension %s by %s", extension_id, publisher)
        return listing

    def get_dependency_graph(self, extension_id: str) -> dict[str, Any]:
        """
        Dependency tree rooted at an extension.

        Unknown ids are reported with missing=True; a dependency that
        leads back to an ancestor is reported with circular=True.
        """
        self.store.get(extension_id)

        def build(ext_id: str, path: list[str]) -> dict[str, Any]:
            if ext_id in path:
                return {"id": ext_id, "circular": True, "dependencies": []}
            entry = self.store.get_optional(ext_id)
            if entry is None:
                return {"id": ext_id, "missing": True, "dependencies": []}
            return {
                "id": ext_id,
                "name": entry.extension.name,
                "state": entry.state.value,
                "dependencies": [build(d, [*path, ext_id]) for d in entry.dependencies],
            }

        return build(extension_id, [])

    def get_extension_metrics(self, extension_id: str) -> ExtensionMetrics:
        """Copy of an extension's usage metrics."""
        return self.store.get(extension_id).metrics.model_copy()

    def get_stats(self) -> dict[str, Any]:
        """Entry counts by lifecycle state."""
        by_state = {s.value: 0 for s in LifecycleState}
        for entry in self.store.values():
            by_state[entry.state.value] += 1
        return {
            "total": len(self.store),
            "by_state": by_state,
            "persistent": self.db is not None,
        }

    # =========================================================================
    # Persistence
    # =========================================================================

    def load_from_storage(self) -> list[str]:
        """
        Reload the registry from the database.

        Records whose checksum does not verify are skipped.

        Returns:
            Ids of the rejected records
        """
        if self.db is None:
            return []
        entries, rejected = self.db.load_entries()
        with self.store.lock():
            for entry in entries:
                self.store.put(entry.extension.id, entry)
        targets = {e.extension.target_template_id for e in entries if e.active}
        for template_id in sorted(targets):
            self._notify(template_id)
        logger.info("Loaded %d extensions (%d rejected)", len(entries), len(rejected))
        return rejected

    # =========================================================================
    # Internals
    # =========================================================================

    def _build_extension(
        self,
        template_id: str,
        data: dict[str, Any] | TemplateExtension,
    ) -> TemplateExtension:
        if isinstance(data, TemplateExtension):
            if data.target_template_id != template_id:
                raise InvalidExtensionError(
                    extension_id=data.id,
                    details=[f"targets {data.target_template_id}, not {template_id}"],
                )
            return data
        payload = dict(data)
        payload.setdefault("id", generate_id())
        payload.setdefault("target_template_id", template_id)
        if payload["target_template_id"] != template_id:
            raise InvalidExtensionError(
                extension_id=str(payload["id"]),
                details=[f"targets {payload['target_template_id']}, not {template_id}"],
            )
        try:
            return TemplateExtension.model_validate(payload)
        except ValidationError as e:
            raise InvalidExtensionError(
                extension_id=str(payload.get("id", "")),
                details=[
                    f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                    for err in e.errors()
                ],
            ) from e

    def _check_extension(self, extension: TemplateExtension) -> None:
        problems = self.validator.extension_problems(extension)
        if problems:
            raise InvalidExtensionError(extension_id=extension.id, details=problems)

    def _storage_info(self, extension: TemplateExtension) -> StorageInfo:
        body = extension.model_dump_json()
        return StorageInfo(
            path=str(self.db.db_path) if self.db is not None else "memory",
            checksum=compute_hash(body),
            size=len(body.encode("utf-8")),
        )

    def _commit(self, entry: ExtensionRegistryEntry) -> None:
        self.store.put(entry.extension.id, entry)
        if self.db is not None:
            self.db.save_entry(entry)

    def _link_dependents(self, extension_id: str, added: list[str], removed: list[str]) -> None:
        for dep_id in removed:
            if dep_id in added:
                continue
            dep = self.store.get_optional(dep_id)
            if dep is not None and extension_id in dep.dependents:
                self._commit(dep.model_copy(update={
                    "dependents": [d for d in dep.dependents if d != extension_id],
                }))
        for dep_id in added:
            dep = self.store.get_optional(dep_id)
            if dep is not None and extension_id not in dep.dependents:
                self._commit(dep.model_copy(update={
                    "dependents": [*dep.dependents, extension_id],
                }))

    def _run_self_test(self, entry: ExtensionRegistryEntry) -> None:
        """Apply the extension to a synthetic template and validate the result."""
        extension = entry.extension
        errors = list(self.validator.extension_problems(extension))
        if not errors:
            synthetic = Template(
                id=extension.target_template_id,
                name=f"self-test {extension.id}",
            )
            try:
                patched = apply_extension(synthetic, extension)
            except StructuralError as e:
                errors.extend(e.details or [e.message])
            else:
                result = self.validator.validate_configuration(patched.rules)
                errors.extend(issue.message for issue in result.errors)
        if errors:
            raise ExtensionTestFailedError(extension_id=extension.id, errors=errors)

    def _activate(self, entry: ExtensionRegistryEntry) -> dict[str, Any]:
        metrics = entry.metrics.model_copy()
        metrics.installations += 1
        return {"active": True, "metrics": metrics}

    def _deactivate(self, entry: ExtensionRegistryEntry) -> dict[str, Any]:
        return {"active": False}

    def _record_usage(self, extension_id: str, elapsed_s: float, failed: bool) -> None:
        if not self.settings.enable_metrics:
            return

        def bump(entry: ExtensionRegistryEntry) -> ExtensionRegistryEntry:
            metrics = entry.metrics.model_copy()
            if failed:
                metrics.error_count += 1
            else:
                metrics.active_usage += 1
            total = metrics.active_usage + metrics.error_count
            metrics.error_rate = metrics.error_count / total if total else 0.0
            metrics.performance_score = round(100.0 * (1.0 - metrics.error_rate), 2)
            metrics.total_execution_ms += elapsed_s * 1000
            metrics.last_used = datetime.now(UTC)
            return entry.model_copy(update={"metrics": metrics})

        with self.store.lock():
            if not self.store.has(extension_id):
                return
            updated = self.store.update(extension_id, bump)
            if self.db is not None:
                self.db.save_entry(updated)

    def _record_deployment(self, result: DeploymentResult) -> None:
        self._deployments.setdefault(result.extension_id, []).append(result)
        if self.db is not None:
            self.db.record_deployment(result)

    def _last_successful_deployment(self, extension_id: str) -> DeploymentResult | None:
        for result in reversed(self._deployments.get(extension_id, [])):
            if result.status == DeploymentStatus.SUCCEEDED:
                return result
        return None

    def _notify(self, template_id: str) -> None:
        if self.on_change is not None:
            self.on_change(template_id)
