"""Scripted actor: replays a fixed queue of actions.

Used for simulation mode and for exercising the cycle controller without a
model behind it. Queue items are ActorActions, callables that build one from
the request, or exceptions to raise for that turn.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Callable, Iterable, Optional, Union

from src.agents.actor import default_target
from src.core.models import ActorAction, ActorRequest, ActorResponse, ActorState, ConsensusSignal

ScriptItem = Union[ActorAction, Callable[[ActorRequest], ActorAction], BaseException]


class ScriptedActor:
    """Deterministic actor whose turns are decided up front."""

    is_human = False

    def __init__(
        self,
        name: str,
        script: Optional[Iterable[ScriptItem]] = None,
        default_signal: ConsensusSignal = ConsensusSignal.BUILDING,
        cost_per_turn: float = 0.0,
        tokens_per_turn: int = 0,
        max_turns: Optional[int] = None,
    ):
        self.name = name
        self.default_signal = default_signal
        self.cost_per_turn = cost_per_turn
        self.tokens_per_turn = tokens_per_turn
        self.max_turns = max_turns
        self.logger = logging.getLogger(f"conclave.agent.{name.lower()}")
        self._script: deque[ScriptItem] = deque(script or [])
        self.requests: list[ActorRequest] = []
        self.recorded: list[ActorResponse] = []

    def queue(self, *items: ScriptItem) -> "ScriptedActor":
        self._script.extend(items)
        return self

    @property
    def remaining(self) -> int:
        return len(self._script)

    def can_act(self, state: ActorState) -> bool:
        return self.max_turns is None or state.turns_taken < self.max_turns

    def act(self, request: ActorRequest) -> ActorResponse:
        self.requests.append(request)
        if self._script:
            item = self._script.popleft()
            if isinstance(item, BaseException):
                raise item
            action = item(request) if callable(item) else item
        else:
            # Out of script: keep the discussion moving round the roster.
            action = ActorAction.consensus(
                self.default_signal,
                target_actor=default_target(request),
                reasoning="script exhausted",
            )
        return ActorResponse(
            action=action,
            cost=self.cost_per_turn,
            input_tokens=self.tokens_per_turn,
            model="scripted",
        )

    def record_turn(self, response: ActorResponse) -> None:
        self.recorded.append(response)

    def snapshot_state(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": "scripted",
            "remaining_script": len(self._script),
            "turns_recorded": len(self.recorded),
        }
