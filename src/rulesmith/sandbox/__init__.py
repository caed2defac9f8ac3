"""
Sandbox for untrusted rule and plugin code.

Components:
    - Sandbox: Runs code fragments in isolated, resource-limited child interpreters
    - validate_code: Static scan returning severity-tagged findings
    - SandboxResult: Success value or typed failure (timeout, memory, security,
      runtime, module)
"""

from rulesmith.sandbox.engine import Sandbox, SandboxMetrics, SandboxResult
from rulesmith.sandbox.scanner import CodeIssue, CodeValidationResult, validate_code

__all__ = [
    "CodeIssue",
    "CodeValidationResult",
    "Sandbox",
    "SandboxMetrics",
    "SandboxResult",
    "validate_code",
]
