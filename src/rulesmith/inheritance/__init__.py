"""
Template inheritance.

The InheritanceEngine owns the template registry operations (register,
inherit, lock, re-parent) and resolves templates through their ancestor
chain with caching.
"""

from rulesmith.inheritance.engine import ExtensionProvider, InheritanceEngine

__all__ = ["ExtensionProvider", "InheritanceEngine"]
