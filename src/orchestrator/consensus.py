"""Consensus signal tracking.

Signals live on the CycleContext so they survive restarts. Consensus is
re-evaluated only after a turn that actually changed a signal.
"""

from __future__ import annotations

import logging
from typing import Optional

from src.core.models import ConsensusSignal, CycleContext


class ConsensusTracker:
    """Records actor signals and decides whether the agree threshold is met.

    When the current signals were synthesized by a manual override and
    reset_after_override is set, the first organic signal clears them so
    the forced agreement never counts toward a later organic decision.
    """

    def __init__(
        self,
        roster: list[str],
        threshold: int,
        reset_after_override: bool = True,
        logger: Optional[logging.Logger] = None,
    ):
        if threshold < 1 or threshold > len(roster):
            raise ValueError(
                f"Consensus threshold {threshold} must be between 1 and roster size {len(roster)}"
            )
        self.roster = list(roster)
        self.threshold = threshold
        self.reset_after_override = reset_after_override
        self.logger = logger or logging.getLogger("conclave.orchestrator.consensus")

    def record(self, context: CycleContext, actor: str, signal: ConsensusSignal | str) -> bool:
        """Store an actor's signal. Returns True when it differs from the previous one."""
        signal = ConsensusSignal(signal)
        if context.consensus_forced:
            context.consensus_forced = False
            if self.reset_after_override:
                self.logger.info(
                    "Clearing %d override-synthesized signal(s) before organic evaluation",
                    len(context.consensus_signals),
                )
                context.consensus_signals = {}

        previous = context.consensus_signals.get(actor)
        context.consensus_signals[actor] = signal
        changed = previous != signal
        if changed:
            self.logger.debug(
                "%s signal: %s -> %s", actor, previous.value if previous else "none", signal.value,
            )
        return changed

    def agree_count(self, context: CycleContext) -> int:
        return sum(
            1 for name, signal in context.consensus_signals.items()
            if name in self.roster and signal == ConsensusSignal.AGREE
        )

    def is_reached(self, context: CycleContext) -> bool:
        return self.agree_count(context) >= self.threshold

    def summary(self, context: CycleContext) -> str:
        return f"{self.agree_count(context)}/{len(self.roster)} agree (threshold {self.threshold})"
