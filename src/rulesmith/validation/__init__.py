"""
Template validation.

The validator accumulates structural, inheritance, configuration,
security, extension, custom-rule and permission findings.
"""

from rulesmith.validation.engine import TemplateValidator

__all__ = ["TemplateValidator"]
