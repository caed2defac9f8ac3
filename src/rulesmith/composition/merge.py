"""
Merge primitives used by the composer and by extension application.

Every function takes a base and an overlay and returns the merged value.
Primitive disagreements are appended to a ConflictLog instead of raised,
so a composition can report every conflict at once; the composer decides
afterwards whether the log is fatal.
"""

from typing import Any, Callable, Hashable, Iterable, TypeVar

from rulesmith.schema import (
    RULE_CATEGORIES,
    ArrayStrategy,
    CompositionConflict,
    ConflictType,
    ObjectStrategy,
    ParameterStrategy,
    RuleSet,
    RulesStrategy,
    TemplateParameter,
    TemplateScope,
)

T = TypeVar("T")


class ConflictLog:
    """Ordered collection of conflicts recorded during one composition."""

    def __init__(self) -> None:
        self.conflicts: list[CompositionConflict] = []

    def record(
        self,
        path: str,
        base_value: Any,
        overlay_value: Any,
        conflict_type: ConflictType = ConflictType.VALUE,
    ) -> None:
        """Record a disagreement at path. The overlay value wins unless arbitration fails."""
        self.conflicts.append(
            CompositionConflict(
                path=path,
                base_value=base_value,
                overlay_value=overlay_value,
                resolution="overlay_wins",
                type=conflict_type,
            )
        )

    def __len__(self) -> int:
        return len(self.conflicts)


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def merge_value(base: Any, overlay: Any, path: str, log: ConflictLog) -> Any:
    """
    Structural merge of plain data.

    None on either side yields the other side. Mappings merge key by key,
    lists merge by value keeping first-appearance order, and differing
    primitives are recorded as conflicts with the overlay winning.
    """
    if overlay is None:
        return base
    if base is None:
        return overlay
    if isinstance(base, dict) and isinstance(overlay, dict):
        merged = dict(base)
        for key, value in overlay.items():
            merged[key] = merge_value(base.get(key), value, _join(path, str(key)), log)
        return merged
    if isinstance(base, list) and isinstance(overlay, list):
        merged_list = list(base)
        for item in overlay:
            if item not in merged_list:
                merged_list.append(item)
        return merged_list
    if type(base) is not type(overlay):
        log.record(path, base, overlay, ConflictType.TYPE)
        return overlay
    if base != overlay:
        log.record(path, base, overlay)
    return overlay


def merge_values(base: Any, overlay: Any) -> tuple[Any, list[CompositionConflict]]:
    """
    Merge two plain values and return the conflicts found.

    Example:
        >>> value, conflicts = merge_values({"x": 1}, {"x": 2})
        >>> value, [c.path for c in conflicts]
        ({'x': 2}, ['x'])
    """
    log = ConflictLog()
    return merge_value(base, overlay, "", log), log.conflicts


def merge_keyed(
    base: Iterable[T],
    overlay: Iterable[T],
    key: Callable[[T], Hashable],
    strategy: ArrayStrategy = ArrayStrategy.UNIQUE_MERGE,
) -> list[T]:
    """
    Merge two lists whose items are identified by key.

    unique_merge keeps base order, replaces the value of a duplicate key in
    place and appends keys not yet seen. merge and append concatenate.
    replace returns the overlay.
    """
    base, overlay = list(base), list(overlay)
    if strategy == ArrayStrategy.REPLACE:
        return overlay
    if strategy in (ArrayStrategy.APPEND, ArrayStrategy.MERGE):
        return base + overlay

    merged: dict[Hashable, T] = {}
    for item in base:
        merged[key(item)] = item
    for item in overlay:
        merged[key(item)] = item
    return list(merged.values())


def _identity(value: T) -> T:
    return value


def merge_rules(
    base: RuleSet,
    overlay: RuleSet,
    strategy: RulesStrategy = RulesStrategy.DEEP_MERGE,
    arrays: ArrayStrategy = ArrayStrategy.UNIQUE_MERGE,
) -> RuleSet:
    """Merge two rule sets category by category."""
    if strategy == RulesStrategy.REPLACE:
        return overlay
    merged = {}
    for category in RULE_CATEGORIES:
        b, o = getattr(base, category), getattr(overlay, category)
        if strategy == RulesStrategy.APPEND:
            merged[category] = b + o
        else:
            merged[category] = merge_keyed(b, o, _identity, arrays)
    return RuleSet(**merged)


def merge_parameters(
    base: list[TemplateParameter],
    overlay: list[TemplateParameter],
    strategy: ParameterStrategy,
    log: ConflictLog,
) -> list[TemplateParameter]:
    """
    Merge parameter lists keyed by name.

    validate_merge additionally records a type conflict when a parameter
    keeps its name but changes type.
    """
    if strategy == ParameterStrategy.REPLACE:
        return list(overlay)
    if strategy == ParameterStrategy.VALIDATE_MERGE:
        existing = {p.name: p for p in base}
        for param in overlay:
            previous = existing.get(param.name)
            if previous is not None and previous.type != param.type:
                log.record(
                    f"parameters.{param.name}.type",
                    previous.type.value,
                    param.type.value,
                    ConflictType.TYPE,
                )
    return merge_keyed(base, overlay, lambda p: p.name, ArrayStrategy.UNIQUE_MERGE)


def merge_scope(
    base: TemplateScope,
    overlay: TemplateScope,
    strategy: ObjectStrategy,
    log: ConflictLog,
) -> TemplateScope:
    """Merge scopes field by field, recording differing identifiers."""
    if strategy == ObjectStrategy.REPLACE:
        return overlay
    merged = merge_value(
        base.model_dump(),
        overlay.model_dump(exclude_none=True),
        "scope",
        log,
    )
    return TemplateScope(**merged)
