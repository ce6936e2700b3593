"""Phase state machine for a run.

Phases flow: discussion → code_review → apply_changes → testing.
Each edge has its own trigger:
  discussion → code_review      consensus reached
  code_review → apply_changes   explicit authorization (CLI approve, human agree)
  apply_changes → testing       no code change left pending or failed
Forcing a phase outside this graph is only possible through the manual
override on the context store.
"""

from __future__ import annotations

import logging
from typing import Optional

from src.core.exceptions import OrchestrationError
from src.core.models import ChangeStatus, CycleContext, Phase

# Legal transitions: each key maps to the phases it can move to
VALID_TRANSITIONS: dict[Phase, set[Phase]] = {
    Phase.DISCUSSION: {Phase.CODE_REVIEW},
    Phase.CODE_REVIEW: {Phase.APPLY_CHANGES},
    Phase.APPLY_CHANGES: {Phase.TESTING},
    Phase.TESTING: set(),  # Terminal; leaving it requires an override
}


class PhaseRouter:
    """All organic phase changes go through this router."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("conclave.orchestrator.phases")

    def can_transition(self, from_phase: Phase, to_phase: Phase) -> bool:
        return to_phase in VALID_TRANSITIONS.get(from_phase, set())

    def transition(self, context: CycleContext, new_phase: Phase, reason: str) -> CycleContext:
        """Move the context to new_phase.

        Raises:
            OrchestrationError: If the transition is not in the graph.
        """
        if not self.can_transition(context.phase, new_phase):
            raise OrchestrationError(
                f"Invalid phase transition: {context.phase.value} → {new_phase.value}"
            )
        old_phase = context.phase
        context.phase = new_phase
        self.logger.info("Phase %s → %s (%s)", old_phase.value, new_phase.value, reason)
        return context

    def on_consensus(self, context: CycleContext, summary: str = "") -> bool:
        """Advance discussion to code_review. Returns False outside discussion."""
        if context.phase != Phase.DISCUSSION:
            return False
        reason = f"consensus reached: {summary}" if summary else "consensus reached"
        self.transition(context, Phase.CODE_REVIEW, reason)
        context.key_decisions.append(f"Run #{context.run_number}: {reason}")
        return True

    def authorize_changes(self, context: CycleContext, authorized_by: str) -> CycleContext:
        """Explicit go-ahead to apply the reviewed changes.

        Raises:
            OrchestrationError: If the run is not in code_review.
        """
        if context.phase != Phase.CODE_REVIEW:
            raise OrchestrationError(
                f"Changes can only be authorized in code_review (current phase: {context.phase.value})"
            )
        self.transition(context, Phase.APPLY_CHANGES, f"authorized by {authorized_by}")
        context.key_decisions.append(
            f"Run #{context.run_number}: code changes authorized by {authorized_by}"
        )
        return context

    def changes_settled(self, context: CycleContext) -> bool:
        return not any(
            c.status in (ChangeStatus.PENDING, ChangeStatus.FAILED) for c in context.code_changes
        )

    def maybe_start_testing(self, context: CycleContext) -> bool:
        """Advance apply_changes to testing once every change is applied or superseded."""
        if context.phase != Phase.APPLY_CHANGES or not self.changes_settled(context):
            return False
        self.transition(context, Phase.TESTING, "all code changes applied")
        return True
