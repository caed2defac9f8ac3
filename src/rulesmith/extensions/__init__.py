"""
Extension lifecycle management.

Extensions are governed patches on a template. They move through an
explicit state machine (draft, testing, approved, deployed, deprecated,
archived) and only deployed extensions take part in resolution.

Components:
    - LifecycleMachine: Transition table, approval gating, atomic commit
    - Deployer: Immediate, gradual and canary rollouts with health checks
    - ExtensionManager: Registry, dependencies, metrics, persistence
"""

from rulesmith.extensions.deployment import (
    CancellationToken,
    Deployer,
    HealthCheck,
    StageHook,
    plan_stages,
)
from rulesmith.extensions.lifecycle import (
    APPROVAL_REQUIRED,
    TRANSITIONS,
    LifecycleMachine,
    SideEffect,
    allowed_targets,
    is_valid_transition,
    requires_approval,
)
from rulesmith.extensions.manager import ExtensionManager

__all__ = [
    "APPROVAL_REQUIRED",
    "CancellationToken",
    "Deployer",
    "ExtensionManager",
    "HealthCheck",
    "LifecycleMachine",
    "SideEffect",
    "StageHook",
    "TRANSITIONS",
    "allowed_targets",
    "is_valid_transition",
    "plan_stages",
    "requires_approval",
]
