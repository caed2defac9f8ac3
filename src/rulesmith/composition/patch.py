"""
Extension application: rules patch, then rule-path deletion.

Rule paths:
    deny            clear the whole category
    deny.3          remove the pattern at index 3
    deny:eval(      remove the pattern "eval(" by value

Paths are applied in order, each against the result of the previous one.
"""

import logging
from typing import Iterable

from rulesmith.composition.conditions import evaluate_conditions
from rulesmith.composition.merge import merge_keyed
from rulesmith.errors import StructuralError
from rulesmith.schema import (
    RULE_CATEGORIES,
    ArrayStrategy,
    BuildContext,
    ExtensionType,
    RulePatch,
    RuleSet,
    Template,
    TemplateExtension,
)

logger = logging.getLogger(__name__)


def parse_rule_path(path: str) -> tuple[str, int | str | None]:
    """
    Split a rule path into (category, selector).

    The selector is None for a whole category, an int for an index and a
    str for a value.

    Raises:
        StructuralError: If the category is unknown or the index malformed
    """
    if ":" in path:
        category, value = path.split(":", 1)
        selector: int | str | None = value
    elif "." in path:
        category, index = path.split(".", 1)
        if not index.isdigit():
            raise StructuralError(source="remove_rules", details=[f"bad index in '{path}'"])
        selector = int(index)
    else:
        category, selector = path, None
    if category not in RULE_CATEGORIES:
        raise StructuralError(source="remove_rules", details=[f"unknown category in '{path}'"])
    return category, selector


def remove_rule_paths(rules: RuleSet, paths: Iterable[str]) -> RuleSet:
    """Delete rule paths from a rule set. Missing indices and values are ignored."""
    current = {c: list(getattr(rules, c)) for c in RULE_CATEGORIES}
    for path in paths:
        category, selector = parse_rule_path(path)
        patterns = current[category]
        if selector is None:
            patterns.clear()
        elif isinstance(selector, int):
            if selector < len(patterns):
                del patterns[selector]
        else:
            current[category] = [p for p in patterns if p != selector]
    return RuleSet(**current)


def apply_rule_patch(
    rules: RuleSet,
    patch: RulePatch,
    replace: bool = False,
) -> RuleSet:
    """
    Merge a patch into a rule set.

    Specified categories are unique-merged into the existing ones, or
    replace them when replace is set. Unspecified categories are untouched.
    """
    merged = {}
    for category in RULE_CATEGORIES:
        existing = getattr(rules, category)
        addition = getattr(patch, category)
        if addition is None:
            merged[category] = list(existing)
        elif replace:
            merged[category] = list(addition)
        else:
            merged[category] = merge_keyed(
                existing, addition, lambda p: p, ArrayStrategy.UNIQUE_MERGE
            )
    return RuleSet(**merged)


def apply_extension(template: Template, extension: TemplateExtension) -> Template:
    """Apply one extension's patch and removals to a template."""
    rules = apply_rule_patch(
        template.rules,
        extension.rules,
        replace=extension.type == ExtensionType.OVERRIDE,
    )
    rules = remove_rule_paths(rules, extension.remove_rules)
    return template.model_copy(update={"rules": rules})


def order_extensions(extensions: Iterable[TemplateExtension]) -> list[TemplateExtension]:
    """Sort ascending by priority; ties keep their id order."""
    return sorted(extensions, key=lambda e: (e.priority, e.id))


def apply_extensions(
    template: Template,
    extensions: Iterable[TemplateExtension],
    context: BuildContext | None = None,
) -> tuple[Template, list[str]]:
    """
    Apply extensions in priority order, skipping those whose conditions fail.

    Returns:
        (patched template, ids of the extensions that were applied)
    """
    applied: list[str] = []
    for extension in order_extensions(extensions):
        if not evaluate_conditions(extension.conditions, context):
            logger.debug("Skipping extension %s: conditions not met", extension.id)
            continue
        template = apply_extension(template, extension)
        applied.append(extension.id)
    return template, applied
