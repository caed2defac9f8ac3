"""
Rulesmith - Hierarchical security-rule templates with governed extensions.

Rulesmith manages deny/allow/ask rule templates for AI coding assistants.
It provides:
- Multi-level inheritance (base, organization, team, project, user)
- N-way composition with deterministic merges and conflict arbitration
- Extensions with an approval-gated lifecycle and staged deployment
- Custom validators and plugins run in an isolated sandbox

Example usage:
    $ rulesmith validate templates/team.yaml
    $ rulesmith resolve templates/ team-frontend
    $ rulesmith compose templates/ composition.yaml
"""

__version__ = "0.1.0"
__author__ = "Rulesmith Contributors"

from rulesmith.config import Settings
from rulesmith.engine import RuleEngine

__all__ = [
    "__version__",
    "__author__",
    "RuleEngine",
    "Settings",
]
