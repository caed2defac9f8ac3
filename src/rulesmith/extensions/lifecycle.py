"""
Extension lifecycle state machine.

The machine is an explicit table mapping (from_state, to_state) to a side
effect. A request is checked against the table and the approval rules
before any side effect runs; the new state and its history record are
committed only after the side effect succeeds.

    draft      -> testing, archived
    testing    -> draft, approved, archived
    approved   -> deployed, deprecated, archived
    deployed   -> deprecated, approved
    deprecated -> archived
    archived   (terminal)

testing -> approved and approved -> deployed require an approver unless
auto-approval is enabled.
"""

from enum import Enum
from typing import Any, Callable, Mapping

from rulesmith.errors import ApprovalRequiredError, InvalidTransitionError
from rulesmith.schema import ExtensionRegistryEntry, LifecycleState, StateTransition


class SideEffect(str, Enum):
    """Side effect run when a transition is taken."""

    NONE = "none"
    RUN_TESTS = "run_tests"
    ACTIVATE = "activate"
    DEACTIVATE = "deactivate"
    RETIRE = "retire"


S = LifecycleState

TRANSITIONS: dict[tuple[LifecycleState, LifecycleState], SideEffect] = {
    (S.DRAFT, S.TESTING): SideEffect.RUN_TESTS,
    (S.DRAFT, S.ARCHIVED): SideEffect.RETIRE,
    (S.TESTING, S.DRAFT): SideEffect.NONE,
    (S.TESTING, S.APPROVED): SideEffect.NONE,
    (S.TESTING, S.ARCHIVED): SideEffect.RETIRE,
    (S.APPROVED, S.DEPLOYED): SideEffect.ACTIVATE,
    (S.APPROVED, S.DEPRECATED): SideEffect.DEACTIVATE,
    (S.APPROVED, S.ARCHIVED): SideEffect.RETIRE,
    (S.DEPLOYED, S.DEPRECATED): SideEffect.DEACTIVATE,
    (S.DEPLOYED, S.APPROVED): SideEffect.DEACTIVATE,
    (S.DEPRECATED, S.ARCHIVED): SideEffect.RETIRE,
}

APPROVAL_REQUIRED = frozenset({
    (S.TESTING, S.APPROVED),
    (S.APPROVED, S.DEPLOYED),
})

# A handler inspects the entry and returns field updates to commit with the state
Handler = Callable[[ExtensionRegistryEntry], Mapping[str, Any] | None]


def allowed_targets(state: LifecycleState) -> list[LifecycleState]:
    """States reachable from state in one transition."""
    return [to for (frm, to) in TRANSITIONS if frm == state]


def is_valid_transition(from_state: LifecycleState, to_state: LifecycleState) -> bool:
    """True when the table has an entry for (from_state, to_state)."""
    return (from_state, to_state) in TRANSITIONS


def requires_approval(from_state: LifecycleState, to_state: LifecycleState) -> bool:
    """True when the transition needs an approver."""
    return (from_state, to_state) in APPROVAL_REQUIRED


class LifecycleMachine:
    """
    Applies governed transitions to registry entries.

    Args:
        handlers: Side-effect implementations; missing ones are no-ops
        auto_approval: Skip approver checks
    """

    def __init__(
        self,
        handlers: Mapping[SideEffect, Handler] | None = None,
        auto_approval: bool = False,
    ) -> None:
        self.handlers = dict(handlers or {})
        self.auto_approval = auto_approval

    def check(
        self,
        entry: ExtensionRegistryEntry,
        to_state: LifecycleState,
        approved_by: str | None = None,
    ) -> SideEffect:
        """
        Check a transition without running it.

        Raises:
            InvalidTransitionError: If the table has no entry
            ApprovalRequiredError: If an approver is needed and missing
        """
        from_state = entry.state
        effect = TRANSITIONS.get((from_state, to_state))
        if effect is None:
            raise InvalidTransitionError(
                extension_id=entry.extension.id,
                from_state=from_state.value,
                to_state=to_state.value,
                allowed=[s.value for s in allowed_targets(from_state)],
            )
        if (
            requires_approval(from_state, to_state)
            and not self.auto_approval
            and not approved_by
        ):
            raise ApprovalRequiredError(
                extension_id=entry.extension.id,
                from_state=from_state.value,
                to_state=to_state.value,
            )
        return effect

    def transition(
        self,
        entry: ExtensionRegistryEntry,
        to_state: LifecycleState,
        reason: str = "",
        approved_by: str | None = None,
    ) -> ExtensionRegistryEntry:
        """
        Run a transition and return the committed entry.

        The input entry is never modified; if the side effect raises, the
        error propagates and nothing is committed.
        """
        effect = self.check(entry, to_state, approved_by)
        handler = self.handlers.get(effect)
        updates = dict(handler(entry) or {}) if handler else {}

        record = StateTransition(
            from_state=entry.state,
            to_state=to_state,
            reason=reason or f"{entry.state.value} -> {to_state.value}",
            approved_by=approved_by,
        )
        updates["state"] = to_state
        updates["state_history"] = [*entry.state_history, record]
        return entry.model_copy(update=updates, deep=True)
