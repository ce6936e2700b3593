"""Actor capability protocol.

The cycle controller depends only on this protocol. Concrete actors
(LLM-backed, human, scripted) implement it without a shared base class.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from src.core.models import ActorRequest, ActorResponse, ActorState


@runtime_checkable
class Actor(Protocol):
    """One roster member."""

    name: str
    is_human: bool

    def can_act(self, state: ActorState) -> bool:
        """Actor-specific veto on taking another turn (the turn limiter runs separately)."""
        ...

    def act(self, request: ActorRequest) -> ActorResponse:
        """Produce exactly one action for this turn. May raise; the caller retries."""
        ...

    def record_turn(self, response: ActorResponse) -> None:
        """Called once the controller has applied the turn."""
        ...

    def snapshot_state(self) -> dict[str, Any]:
        """Small JSON-ready dict for status output and debugging."""
        ...


def default_target(request: ActorRequest) -> str:
    """Next available roster member after the requesting actor, wrapping.

    Falls back to the requesting actor when nobody else is available.
    """
    roster = request.roster
    start = roster.index(request.actor) if request.actor in roster else -1
    for offset in range(1, len(roster) + 1):
        name = roster[(start + offset) % len(roster)]
        if name != request.actor and name in request.available_targets:
            return name
    return request.actor
