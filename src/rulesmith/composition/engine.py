"""
Template composer.

Merges N templates into one according to a MergeStrategy and a
ConflictResolution policy.

Flow:
    1. Refuse an empty set
    2. Detect parent/extension cycles across the set (before any merge)
    3. Order deterministically: level (base first), then created_at, then id
    4. Seed with the first template and fold each following one in
    5. Arbitrate the recorded conflicts: any path governed by ``error``
       fails the whole composition with every conflict attached

Design Principles:
    - Deterministic: the same set composes identically in any input order
    - Atomic: a failed composition returns nothing, partial results included
    - Accumulating: all conflicts are collected before arbitration
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Iterable, Mapping

from rulesmith.composition.conditions import evaluate_conditions
from rulesmith.composition.merge import (
    ConflictLog,
    merge_keyed,
    merge_parameters,
    merge_rules,
    merge_scope,
)
from rulesmith.errors import (
    ERROR_COMPOSITION_EMPTY,
    CircularReferenceError,
    CompositionError,
    TemplateNotFoundError,
)
from rulesmith.schema import (
    RULE_CATEGORIES,
    BuildContext,
    CompositionConfig,
    CompositionConflict,
    ConflictResolution,
    ConflictStrategy,
    ExtensionCondition,
    MergeStrategy,
    Template,
    clone_template,
    compare_versions,
    version_in_range,
)
from rulesmith.store.registry import TemplateStore

logger = logging.getLogger(__name__)

TemplateSource = TemplateStore | Mapping[str, Template]


@dataclass
class CompositionReport:
    """A composed template together with the conflicts met on the way."""

    template: Template
    conflicts: list[CompositionConflict] = field(default_factory=list)
    order: list[str] = field(default_factory=list)


@dataclass
class CompositionValidation:
    """Pre-flight check of a composition config."""

    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _lookup(source: TemplateSource, template_id: str) -> Template | None:
    if isinstance(source, TemplateStore):
        return source.get_optional(template_id)
    return source.get(template_id)


def merge_order_key(template: Template) -> tuple[int, datetime, str]:
    """Sort key giving the deterministic merge order."""
    return template.level.rank, template.created_at, template.id


def find_cycle(templates: Iterable[Template]) -> list[str] | None:
    """
    Find a reference cycle inside a set of templates.

    Edges run from a template to its parent and to the targets of its
    attached extensions, restricted to members of the set. An extension
    targeting its own template is not an edge.

    Returns:
        The cycle as a list of ids (first id repeated at the end), or None
    """
    members = {t.id: t for t in templates}
    edges: dict[str, list[str]] = {}
    for tid, template in members.items():
        targets = []
        parent = template.inheritance.parent_id
        if parent in members:
            targets.append(parent)
        for ext in template.extensions:
            if ext.target_template_id != tid and ext.target_template_id in members:
                targets.append(ext.target_template_id)
        edges[tid] = targets

    visiting: list[str] = []
    done: set[str] = set()

    def visit(node: str) -> list[str] | None:
        if node in visiting:
            return visiting[visiting.index(node):] + [node]
        if node in done:
            return None
        visiting.append(node)
        for target in edges.get(node, []):
            cycle = visit(target)
            if cycle:
                return cycle
        visiting.pop()
        done.add(node)
        return None

    for tid in sorted(members):
        cycle = visit(tid)
        if cycle:
            return cycle
    return None


class TemplateComposer:
    """
    Composes templates.

    The composer is stateless; one instance may serve concurrent calls.

    Example:
        composer = TemplateComposer()
        merged = composer.compose([base, team], MergeStrategy(), ConflictResolution())
    """

    def compose(
        self,
        templates: Iterable[Template],
        merge_strategy: MergeStrategy | None = None,
        conflict_resolution: ConflictResolution | None = None,
        context: BuildContext | None = None,
        preserve_order: bool = False,
    ) -> Template:
        """
        Merge templates into one.

        Args:
            templates: Templates to merge (at least one)
            merge_strategy: Per-field merge policy
            conflict_resolution: Conflict arbitration policy
            context: Build context (carried for callers; merging is context-free)
            preserve_order: Merge in the given order instead of level order

        Raises:
            CompositionError: On an empty set or an ``error``-governed conflict
            CircularReferenceError: If the set contains a reference cycle
        """
        return self.compose_with_report(
            templates, merge_strategy, conflict_resolution, context, preserve_order
        ).template

    def compose_with_report(
        self,
        templates: Iterable[Template],
        merge_strategy: MergeStrategy | None = None,
        conflict_resolution: ConflictResolution | None = None,
        context: BuildContext | None = None,
        preserve_order: bool = False,
    ) -> CompositionReport:
        """Like compose(), also returning the conflicts and the merge order."""
        templates = list(templates)
        strategy = merge_strategy or MergeStrategy()
        resolution = conflict_resolution or ConflictResolution()

        if not templates:
            raise CompositionError(
                message="No templates to compose",
                code=ERROR_COMPOSITION_EMPTY,
            )

        cycle = find_cycle(templates)
        if cycle:
            raise CircularReferenceError(cycle=cycle)

        ordered = templates if preserve_order else sorted(templates, key=merge_order_key)
        if len(ordered) == 1:
            return CompositionReport(
                template=clone_template(ordered[0]),
                order=[ordered[0].id],
            )

        log = ConflictLog()
        result = ordered[0]
        for overlay in ordered[1:]:
            result = self._merge_pair(result, overlay, strategy, log)

        conflicts = self._arbitrate(log.conflicts, resolution)
        return CompositionReport(
            template=result,
            conflicts=conflicts,
            order=[t.id for t in ordered],
        )

    def compose_from_config(
        self,
        config: CompositionConfig,
        templates: TemplateSource,
        context: BuildContext | None = None,
    ) -> Template:
        """
        Compose the templates named by a CompositionConfig.

        Every configured template must exist, whether or not its conditions
        hold. Those whose conditions fail are skipped, and the rest merge
        with the base in the same level-then-creation order as compose().

        Raises:
            TemplateNotFoundError: If the base or a configured template is missing
        """
        context = context or BuildContext()
        base = _lookup(templates, config.base_template_id)
        if base is None:
            raise TemplateNotFoundError(template_id=config.base_template_id)

        selected = [base]
        for entry in config.templates:
            template = _lookup(templates, entry.template_id)
            if template is None:
                raise TemplateNotFoundError(template_id=entry.template_id)
            if not self.evaluate_conditions(entry.conditions, context):
                logger.info("Skipping %s: conditions not met", entry.template_id)
                continue
            selected.append(template)

        composed = self.compose(
            selected,
            config.merge_strategy,
            config.conflict_resolution,
            context,
        )

        meta = config.metadata
        now = datetime.now(UTC)
        tags = composed.tags if "composed" in composed.tags else [*composed.tags, "composed"]
        return composed.model_copy(update={
            "id": meta.id or f"composed-{base.id}",
            "name": meta.name or f"{base.name} (composed)",
            "description": meta.description
            or f"Composition of {', '.join(t.id for t in selected)}",
            "version": meta.version,
            "tags": tags,
            "is_built_in": False,
            "locked": None,
            "created_at": now,
            "updated_at": now,
        })

    def evaluate_conditions(
        self,
        conditions: Iterable[ExtensionCondition],
        context: BuildContext | None,
    ) -> bool:
        """True when every condition holds against the context."""
        return evaluate_conditions(conditions, context)

    def validate_composition(
        self,
        config: CompositionConfig,
        templates: TemplateSource,
    ) -> CompositionValidation:
        """
        Check a config before composing it.

        Missing templates and cycles are errors; members whose
        compatibility bounds exclude the base version are warnings.
        """
        errors: list[str] = []
        warnings: list[str] = []

        base = _lookup(templates, config.base_template_id)
        if base is None:
            errors.append(f"Base template not found: {config.base_template_id}")

        members: list[Template] = [base] if base else []
        for entry in config.templates:
            template = _lookup(templates, entry.template_id)
            if template is None:
                errors.append(f"Template not found: {entry.template_id}")
                continue
            members.append(template)
            if base and not version_in_range(base.version, template.inheritance.compatibility):
                warnings.append(
                    f"{template.id} may be incompatible with {base.id}@{base.version}"
                )

        cycle = find_cycle(members)
        if cycle:
            errors.append(f"Circular reference: {' -> '.join(cycle)}")

        return CompositionValidation(is_valid=not errors, errors=errors, warnings=warnings)

    def create_composition_diff(self, original: Template, composed: Template) -> dict[str, Any]:
        """
        Describe how a composed template differs from an original.

        Returns:
            Dict with added_rules/removed_rules per category, changed
            top-level fields and the version change
        """
        added: dict[str, list[str]] = {}
        removed: dict[str, list[str]] = {}
        for category in RULE_CATEGORIES:
            before = getattr(original.rules, category)
            after = getattr(composed.rules, category)
            plus = [p for p in after if p not in before]
            minus = [p for p in before if p not in after]
            if plus:
                added[category] = plus
            if minus:
                removed[category] = minus

        ignored = {"rules", "created_at", "updated_at"}
        a = original.model_dump(exclude=ignored)
        b = composed.model_dump(exclude=ignored)
        changed = sorted(k for k in a if a[k] != b[k])

        return {
            "added_rules": added,
            "removed_rules": removed,
            "changed_fields": changed,
            "version_change": compare_versions(composed.version, original.version),
        }

    # =========================================================================
    # Internals
    # =========================================================================

    def _merge_pair(
        self,
        base: Template,
        overlay: Template,
        strategy: MergeStrategy,
        log: ConflictLog,
    ) -> Template:
        """Fold overlay into base. The result takes the overlay's identity."""
        chain = list(base.inheritance.chain)
        if base.id not in chain and base.id != overlay.id:
            chain.append(base.id)
        inheritance = overlay.inheritance.model_copy(update={"chain": chain})

        return overlay.model_copy(update={
            "description": overlay.description or base.description,
            "tags": merge_keyed(base.tags, overlay.tags, lambda t: t, strategy.arrays),
            "compliance": merge_keyed(
                base.compliance, overlay.compliance, lambda c: c, strategy.arrays
            ),
            "parameters": merge_parameters(
                base.parameters, overlay.parameters, strategy.parameters, log
            ),
            "rules": merge_rules(base.rules, overlay.rules, strategy.rules, strategy.arrays),
            "scope": merge_scope(base.scope, overlay.scope, strategy.objects, log),
            "extensions": merge_keyed(
                base.extensions, overlay.extensions, lambda e: e.id, strategy.arrays
            ),
            "custom_validation": merge_keyed(
                base.custom_validation,
                overlay.custom_validation,
                lambda r: r.id,
                strategy.arrays,
            ),
            "inheritance": inheritance,
            "created_at": min(base.created_at, overlay.created_at),
            "updated_at": max(base.updated_at, overlay.updated_at),
        })

    def _arbitrate(
        self,
        conflicts: list[CompositionConflict],
        resolution: ConflictResolution,
    ) -> list[CompositionConflict]:
        """Apply the conflict policy; raise if any conflict is governed by ``error``."""
        if not conflicts:
            return []

        fatal = [c for c in conflicts if resolution.strategy_for(c.path) == ConflictStrategy.ERROR]
        if fatal:
            raise CompositionError(
                conflicts=[c.model_copy(update={"resolution": "error"}) for c in conflicts]
            )

        for conflict in conflicts:
            strategy = resolution.strategy_for(conflict.path)
            if not resolution.log_conflicts or strategy == ConflictStrategy.IGNORE:
                continue
            level = logging.WARNING if strategy == ConflictStrategy.WARN else logging.INFO
            logger.log(
                level,
                "Conflict at %s: %r -> %r (%s, %s)",
                conflict.path,
                conflict.base_value,
                conflict.overlay_value,
                conflict.type.value,
                strategy.value,
            )
        return conflicts
