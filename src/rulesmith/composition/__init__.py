"""
Template composition.

Components:
    - TemplateComposer: Merges N templates under merge and conflict policies
    - merge: Primitive merge functions and the ConflictLog
    - conditions: Condition evaluation against a BuildContext
    - patch: Extension application (rules patch, then rule-path deletion)
"""

from rulesmith.composition.conditions import (
    evaluate_condition,
    evaluate_conditions,
    reads_volatile_context,
)
from rulesmith.composition.engine import (
    CompositionReport,
    CompositionValidation,
    TemplateComposer,
    find_cycle,
)
from rulesmith.composition.merge import ConflictLog, merge_keyed, merge_values
from rulesmith.composition.patch import (
    apply_extension,
    apply_extensions,
    order_extensions,
    remove_rule_paths,
)

__all__ = [
    "CompositionReport",
    "CompositionValidation",
    "ConflictLog",
    "TemplateComposer",
    "apply_extension",
    "apply_extensions",
    "evaluate_condition",
    "evaluate_conditions",
    "find_cycle",
    "merge_keyed",
    "merge_values",
    "order_extensions",
    "reads_volatile_context",
    "remove_rule_paths",
]
