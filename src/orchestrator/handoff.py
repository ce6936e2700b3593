"""Handoff validation and round-robin fallback.

An actor names who should act next. The request is honoured when the target
is a roster member that still has turns this cycle, or the terminal sentinel.
Anything else falls back to the next non-exhausted roster member after the
current actor, wrapping around the roster.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from src.core.exceptions import HandoffError
from src.core.models import TERMINAL_TARGET


@dataclass
class HandoffDecision:
    """Where control goes after a turn."""

    target: Optional[str]
    requested: str
    fallback: bool = False
    self_pass: bool = False
    terminal: bool = False
    error: Optional[HandoffError] = None


class HandoffValidator:
    """Checks requested targets against the roster and the self-pass cap."""

    def __init__(
        self,
        roster: list[str],
        max_self_passes: int = 3,
        logger: Optional[logging.Logger] = None,
    ):
        if not roster:
            raise ValueError("Roster must name at least one actor")
        self.roster = list(roster)
        self.max_self_passes = max_self_passes
        self.logger = logger or logging.getLogger("conclave.orchestrator.handoff")

    @property
    def valid_targets(self) -> list[str]:
        return [*self.roster, TERMINAL_TARGET]

    def next_in_rotation(
        self,
        current: str,
        exhausted: set[str] | frozenset[str] = frozenset(),
        include_current: bool = True,
    ) -> Optional[str]:
        """First non-exhausted member after current, wrapping. None when nobody is left."""
        n = len(self.roster)
        start = self.roster.index(current) if current in self.roster else -1
        for offset in range(1, n + 1):
            candidate = self.roster[(start + offset) % n]
            if candidate == current and not include_current:
                continue
            if candidate not in exhausted:
                return candidate
        return None

    def resolve(
        self,
        current: str,
        requested: str,
        exhausted: set[str] | frozenset[str] = frozenset(),
        consecutive_self_passes: int = 0,
    ) -> HandoffDecision:
        """Validate a requested handoff, falling back to round robin when it is not allowed.

        consecutive_self_passes is the count before this turn.
        """
        if requested == TERMINAL_TARGET:
            return HandoffDecision(target=TERMINAL_TARGET, requested=requested, terminal=True)

        if requested not in self.roster:
            error = HandoffError(requested, f"not in roster {self.roster}")
            return self._fallback(current, requested, exhausted, error)

        if requested == current:
            if consecutive_self_passes >= self.max_self_passes:
                error = HandoffError(
                    requested,
                    f"self-pass cap of {self.max_self_passes} consecutive turns reached",
                )
                return self._fallback(current, requested, exhausted, error, include_current=False)
            if requested in exhausted:
                error = HandoffError(requested, "actor is exhausted for this cycle")
                return self._fallback(current, requested, exhausted, error)
            return HandoffDecision(target=current, requested=requested, self_pass=True)

        if requested in exhausted:
            error = HandoffError(requested, "actor is exhausted for this cycle")
            return self._fallback(current, requested, exhausted, error)

        return HandoffDecision(target=requested, requested=requested)

    def _fallback(
        self,
        current: str,
        requested: str,
        exhausted: set[str] | frozenset[str],
        error: HandoffError,
        include_current: bool = True,
    ) -> HandoffDecision:
        target = self.next_in_rotation(current, exhausted, include_current=include_current)
        self.logger.warning(
            "%s; falling back to %s", error, target if target is not None else "(no actor available)",
        )
        return HandoffDecision(target=target, requested=requested, fallback=True, error=error)
