"""
Inheritance engine.

Resolves a template's ancestor chain and folds it into one template.

Resolution flow:
    1. Walk parent links from the requested template, failing the instant a
       template revisits one already on the walk; version bounds are checked
       at every step
    2. Reverse the walk to root -> leaf order
    3. Fold pairwise with the composer: ``override`` conflict resolution when
       the child declares extension_type override, ``merge`` otherwise
    4. Apply extensions in priority order: those attached to the folded
       template plus those supplied by the extension provider for every
       template on the chain (conditions are honored)
    5. Validate; an invalid result fails the whole resolution

Design Principles:
    - Fail fast: cycles, missing parents and version mismatches raise
    - Memoized: results are cached per (template id, context identity);
      resolutions gated on per-build metadata are never cached
    - Invalidate-on-write: storing a template evicts it and all of its
      descendants before the new value becomes visible
    - Cached results are returned as structural clones
"""

import logging
import threading
from datetime import UTC, datetime
from typing import Any, Callable

from pydantic import ValidationError

from rulesmith.composition.conditions import reads_volatile_context
from rulesmith.composition.engine import TemplateComposer
from rulesmith.composition.patch import apply_extensions
from rulesmith.errors import (
    CircularInheritanceError,
    DuplicateTemplateError,
    InheritanceDeniedError,
    ParentNotFoundError,
    StructuralError,
    TemplateLockedError,
    ValidationFailedError,
    VersionIncompatibleError,
)
from rulesmith.schema import (
    BuildContext,
    ConflictResolution,
    ConflictStrategy,
    ExtensionType,
    InheritanceMetadata,
    MergeStrategy,
    OverridePermissions,
    Template,
    TemplateExtension,
    TemplateLock,
    VersionCompatibility,
    clone_template,
    next_major,
    version_in_range,
)
from rulesmith.store.db import compute_hash
from rulesmith.store.registry import TemplateStore
from rulesmith.validation.engine import TemplateValidator

logger = logging.getLogger(__name__)

ExtensionProvider = Callable[[str, BuildContext], list[TemplateExtension]]

UPDATABLE_INHERITANCE_FIELDS = frozenset({
    "parent_id", "level", "extension_type", "compatibility", "permissions",
})


class InheritanceEngine:
    """
    Registry-backed template inheritance.

    Args:
        templates: The template store (shared with the validator)
        composer: Composer used for the pairwise fold
        validator: Validator run on every resolved template
        extension_provider: Callable returning registry extensions that
            target a template id (the extension manager's deployed set)
        enable_cache: Memoize resolutions
    """

    def __init__(
        self,
        templates: TemplateStore | None = None,
        composer: TemplateComposer | None = None,
        validator: TemplateValidator | None = None,
        extension_provider: ExtensionProvider | None = None,
        enable_cache: bool = True,
    ) -> None:
        self.templates = templates if templates is not None else TemplateStore()
        self.composer = composer or TemplateComposer()
        self.validator = validator or TemplateValidator(self.templates)
        self.extension_provider = extension_provider
        self.enable_cache = enable_cache
        # template id -> context hash -> (resolved template, chain ids)
        self._cache: dict[str, dict[str, tuple[Template, list[str]]]] = {}
        self._lock = threading.RLock()
        self._stats = {"resolutions": 0, "cache_hits": 0}
        self._generation = 0

    # =========================================================================
    # Registry
    # =========================================================================

    def register_template(self, template: Template, user_id: str | None = None) -> Template:
        """
        Register or replace a template.

        Raises:
            TemplateLockedError: If the stored template is locked by someone else
        """
        existing = self.templates.get_optional(template.id)
        if existing is not None and existing.locked and existing.locked.locked_by != user_id:
            raise TemplateLockedError(
                template_id=template.id,
                locked_by=existing.locked.locked_by,
                requested_by=user_id,
            )
        self._store(template)
        logger.debug("Registered template %s@%s", template.id, template.version)
        return template

    def get_template(self, template_id: str) -> Template:
        """Look up a registered template (raises TemplateNotFoundError)."""
        return self.templates.get(template_id)

    def create_inherited_template(
        self,
        parent_id: str,
        data: dict[str, Any],
        extension_type: ExtensionType = ExtensionType.EXTEND,
        user_id: str | None = None,
    ) -> Template:
        """
        Create and register a child of parent_id.

        The child lives one level below its parent, accepts parent versions
        from the parent's current version up to the next major, and gets
        the default override permissions unless data provides them.

        Args:
            parent_id: Template to inherit from
            data: Template fields for the child (id and name required)
            extension_type: Relationship to the parent
            user_id: Creating user

        Raises:
            ParentNotFoundError: If the parent is not registered
            TemplateLockedError: If the parent is locked
            InheritanceDeniedError: On override of a built-in template
            DuplicateTemplateError: If the child id is taken
            StructuralError: If data does not form a valid template
        """
        child_id = str(data.get("id", ""))
        parent = self.templates.get_optional(parent_id)
        if parent is None:
            raise ParentNotFoundError(template_id=child_id, parent_id=parent_id)
        if parent.locked is not None:
            raise TemplateLockedError(
                template_id=parent.id,
                locked_by=parent.locked.locked_by,
                requested_by=user_id,
                message=f"Locked template {parent.id} cannot be inherited from",
            )
        if parent.is_built_in and extension_type == ExtensionType.OVERRIDE:
            raise InheritanceDeniedError(
                template_id=parent.id,
                reason="built-in templates cannot be overridden",
            )
        if child_id and child_id in self.templates:
            raise DuplicateTemplateError(template_id=child_id)

        permissions = data.get("permissions") or OverridePermissions()
        fields = {k: v for k, v in data.items() if k not in ("inheritance", "permissions")}
        fields["inheritance"] = InheritanceMetadata(
            parent_id=parent.id,
            level=parent.level.next_level(),
            extension_type=extension_type,
            chain=[*parent.inheritance.chain, parent.id],
            compatibility=VersionCompatibility(
                min_parent_version=parent.version,
                max_parent_version=next_major(parent.version),
            ),
            permissions=OverridePermissions.model_validate(permissions)
            if isinstance(permissions, dict)
            else permissions,
        )
        fields["is_built_in"] = False
        try:
            child = Template.model_validate(fields)
        except ValidationError as e:
            raise StructuralError(
                source=f"inherited template of {parent_id}",
                details=[f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors()],
            ) from e

        self._store(child)
        logger.info(
            "Created %s template %s inheriting from %s (%s)",
            child.level.value, child.id, parent.id, extension_type.value,
        )
        return child

    def update_inheritance(
        self,
        template_id: str,
        updates: dict[str, Any],
        user_id: str | None = None,
    ) -> Template:
        """
        Change inheritance metadata of a registered template.

        Allowed keys: parent_id, level, extension_type, compatibility,
        permissions. Re-parenting is checked for cycles and the stored
        chains of the template and its descendants are refreshed.

        Raises:
            TemplateLockedError: If locked by someone other than user_id
            StructuralError: On unknown keys or invalid values
            ParentNotFoundError: If the new parent is not registered
            CircularInheritanceError: If re-parenting would create a cycle
        """
        template = self.templates.get(template_id)
        self._check_lock(template, user_id)

        unknown = sorted(set(updates) - UPDATABLE_INHERITANCE_FIELDS)
        if unknown:
            raise StructuralError(
                source="update_inheritance",
                details=[f"cannot update inheritance.{k}" for k in unknown],
            )

        chain = list(template.inheritance.chain)
        if "parent_id" in updates and updates["parent_id"] != template.inheritance.parent_id:
            new_parent = updates["parent_id"]
            chain = self._chain_for_parent(template_id, new_parent) if new_parent else []

        try:
            inheritance = InheritanceMetadata.model_validate({
                **template.inheritance.model_dump(),
                **updates,
                "chain": chain,
            })
        except ValidationError as e:
            raise StructuralError(
                source="update_inheritance",
                details=[f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors()],
            ) from e

        updated = template.model_copy(update={
            "inheritance": inheritance,
            "updated_at": datetime.now(UTC),
        })
        self._store(updated)
        self._refresh_descendant_chains(updated)
        return updated

    def lock_template(
        self,
        template_id: str,
        user_id: str,
        reason: str | None = None,
    ) -> Template:
        """
        Lock a template for user_id.

        Raises:
            TemplateLockedError: If already locked by someone else
        """
        template = self.templates.get(template_id)
        if template.locked and template.locked.locked_by != user_id:
            raise TemplateLockedError(
                template_id=template_id,
                locked_by=template.locked.locked_by,
                requested_by=user_id,
            )
        locked = template.model_copy(update={
            "locked": TemplateLock(locked_by=user_id, reason=reason),
        })
        self._store(locked)
        logger.info("Template %s locked by %s", template_id, user_id)
        return locked

    def unlock_template(self, template_id: str, user_id: str) -> Template:
        """
        Release a lock. Only the holder may unlock.

        Raises:
            TemplateLockedError: If user_id does not hold the lock
        """
        template = self.templates.get(template_id)
        if template.locked is None:
            return template
        self._check_lock(template, user_id)
        unlocked = template.model_copy(update={"locked": None})
        self._store(unlocked)
        logger.info("Template %s unlocked by %s", template_id, user_id)
        return unlocked

    def can_modify_template(self, template_id: str, user_id: str | None) -> bool:
        """True when the template is unlocked or locked by user_id."""
        template = self.templates.get(template_id)
        return template.locked is None or template.locked.locked_by == user_id

    def find_child_templates(self, template_id: str) -> list[Template]:
        """Direct children of a template, ordered by id."""
        return self.templates.children_of(template_id)

    def get_inheritance_tree(self, template_id: str) -> dict[str, Any]:
        """
        Nested description of a template and all of its descendants.

        A template reached twice is reported with ``circular: True`` and
        not expanded again.
        """
        visited: set[str] = set()

        def node(template: Template) -> dict[str, Any]:
            entry: dict[str, Any] = {
                "id": template.id,
                "name": template.name,
                "version": template.version,
                "level": template.level.value,
                "locked": template.locked is not None,
                "children": [],
            }
            if template.id in visited:
                entry["circular"] = True
                return entry
            visited.add(template.id)
            entry["children"] = [node(c) for c in self.find_child_templates(template.id)]
            return entry

        return node(self.templates.get(template_id))

    def create_inheritance_chain(self, template_id: str) -> list[str]:
        """Root-first ids from the root ancestor to template_id."""
        return [t.id for t in self.build_chain(template_id)]

    # =========================================================================
    # Resolution
    # =========================================================================

    def build_chain(self, template_id: str) -> list[Template]:
        """
        Collect a template and its ancestors, root first.

        Raises:
            TemplateNotFoundError: If template_id is not registered
            CircularInheritanceError: If a parent link revisits the walk
            ParentNotFoundError: If a parent is not registered
            VersionIncompatibleError: If a parent is outside the child's bounds
        """
        current = self.templates.get(template_id)
        walk: list[Template] = []
        on_walk: set[str] = set()

        while True:
            if current.id in on_walk:
                raise CircularInheritanceError(
                    template_id=current.id,
                    chain=[t.id for t in walk],
                )
            walk.append(current)
            on_walk.add(current.id)

            parent_id = current.inheritance.parent_id
            if not parent_id:
                break
            parent = self.templates.get_optional(parent_id)
            if parent is None:
                raise ParentNotFoundError(template_id=current.id, parent_id=parent_id)
            compatibility = current.inheritance.compatibility
            if parent.id not in on_walk and not version_in_range(parent.version, compatibility):
                raise VersionIncompatibleError(
                    template_id=current.id,
                    parent_id=parent.id,
                    parent_version=parent.version,
                    min_version=compatibility.min_parent_version,
                    max_version=compatibility.max_parent_version,
                )
            current = parent

        walk.reverse()
        return walk

    def resolve_template(
        self,
        template_id: str,
        context: BuildContext | None = None,
    ) -> Template:
        """
        Resolve a template with its full ancestry and extensions applied.

        Raises:
            TemplateNotFoundError, CircularInheritanceError,
            ParentNotFoundError, VersionIncompatibleError,
            ValidationFailedError
        """
        context = context or BuildContext()
        key = compute_hash(context.cache_identity())
        if self.enable_cache:
            with self._lock:
                hit = self._cache.get(template_id, {}).get(key)
                if hit is not None:
                    self._stats["cache_hits"] += 1
                    return clone_template(hit[0])

        with self._lock:
            generation = self._generation
        chain = self.build_chain(template_id)
        resolved = clone_template(chain[0])
        for child in chain[1:]:
            strategy = (
                ConflictStrategy.OVERRIDE
                if child.inheritance.extension_type == ExtensionType.OVERRIDE
                else ConflictStrategy.MERGE
            )
            resolved = self.composer.compose(
                [resolved, child],
                MergeStrategy(),
                ConflictResolution(default_strategy=strategy, log_conflicts=True),
                context,
                preserve_order=True,
            )

        chain_ids = [t.id for t in chain]
        extensions = self._extensions_for(resolved, chain_ids, context)
        cacheable = not any(reads_volatile_context(e.conditions) for e in extensions)
        resolved, applied = apply_extensions(resolved, extensions, context)
        if applied:
            logger.debug("Applied extensions %s to %s", applied, template_id)

        result = self.validator.validate_template(resolved, context)
        if not result.is_valid:
            raise ValidationFailedError(
                template_id=template_id,
                errors=[e.message for e in result.errors],
                result=result,
            )

        with self._lock:
            self._stats["resolutions"] += 1
            if self.enable_cache and cacheable and generation == self._generation:
                self._cache.setdefault(template_id, {})[key] = (
                    clone_template(resolved),
                    chain_ids,
                )
        return resolved

    def invalidate(self, template_id: str) -> list[str]:
        """
        Evict a template and every template whose chain contains it.

        Returns:
            Ids evicted from the resolution cache
        """
        affected = {template_id} | self._descendant_ids(template_id)
        with self._lock:
            self._generation += 1
            for cached_id, entries in list(self._cache.items()):
                if any(template_id in chain for _, chain in entries.values()):
                    affected.add(cached_id)
            evicted = sorted(tid for tid in affected if self._cache.pop(tid, None) is not None)
        for tid in affected:
            self.validator.invalidate(tid)
        return evicted

    def clear_cache(self) -> None:
        """Evict every cached resolution."""
        with self._lock:
            self._cache.clear()
        self.validator.clear_cache()

    def get_cache_stats(self) -> dict[str, int]:
        """Resolution cache counters."""
        with self._lock:
            return {
                "cached_templates": len(self._cache),
                "cache_size": sum(len(v) for v in self._cache.values()),
                **self._stats,
            }

    # =========================================================================
    # Internals
    # =========================================================================

    def _store(self, template: Template) -> None:
        """Evict caches for template and descendants, then write it."""
        with self._lock:
            self.invalidate(template.id)
            self.templates.put(template.id, template)

    def _check_lock(self, template: Template, user_id: str | None) -> None:
        if template.locked and template.locked.locked_by != user_id:
            raise TemplateLockedError(
                template_id=template.id,
                locked_by=template.locked.locked_by,
                requested_by=user_id,
            )

    def _descendant_ids(self, template_id: str) -> set[str]:
        found: set[str] = set()
        pending = [template_id]
        while pending:
            current = pending.pop()
            for child in self.templates.children_of(current):
                if child.id not in found and child.id != template_id:
                    found.add(child.id)
                    pending.append(child.id)
        return found

    def _chain_for_parent(self, template_id: str, parent_id: str) -> list[str]:
        """Chain a template would have under parent_id; refuses cycles."""
        parent = self.templates.get_optional(parent_id)
        if parent is None:
            raise ParentNotFoundError(template_id=template_id, parent_id=parent_id)
        ancestors: list[str] = []
        seen: set[str] = set()
        current: Template | None = parent
        while current is not None:
            if current.id == template_id or current.id in seen:
                raise CircularInheritanceError(
                    template_id=template_id,
                    chain=list(reversed(ancestors)) + [current.id],
                )
            seen.add(current.id)
            ancestors.append(current.id)
            next_id = current.inheritance.parent_id
            current = self.templates.get_optional(next_id) if next_id else None
        return list(reversed(ancestors))

    def _refresh_descendant_chains(self, template: Template) -> None:
        for child in self.find_child_templates(template.id):
            chain = [*template.inheritance.chain, template.id]
            if child.id in chain:
                continue
            refreshed = child.model_copy(update={
                "inheritance": child.inheritance.model_copy(update={"chain": chain}),
            })
            self._store(refreshed)
            self._refresh_descendant_chains(refreshed)

    def _extensions_for(
        self,
        resolved: Template,
        chain_ids: list[str],
        context: BuildContext,
    ) -> list[TemplateExtension]:
        """Attached extensions targeting the chain plus provider extensions, deduplicated by id."""
        members = set(chain_ids)
        selected: dict[str, TemplateExtension] = {
            ext.id: ext for ext in resolved.extensions if ext.target_template_id in members
        }
        if self.extension_provider is not None:
            for tid in chain_ids:
                for ext in self.extension_provider(tid, context):
                    selected.setdefault(ext.id, ext)
        return list(selected.values())
