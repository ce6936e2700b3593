"""Human roster member driven from the terminal.

The human sees the briefing and the available targets, then either types a
JSON action (file operations, explicit handoff) or plain text. Plain text
becomes feedback: a consensus action whose signal is read from a leading
"agree" / "disagree" / "building" word, defaulting to building.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Optional

import click

from src.agents.actor import default_target
from src.core.exceptions import ResponseParseError
from src.core.models import ActorAction, ActorRequest, ActorResponse, ActorState, ConsensusSignal
from src.llm.response_parser import action_from_dict

_SIGNAL_WORDS = {
    "agree": ConsensusSignal.AGREE,
    "approve": ConsensusSignal.AGREE,
    "approved": ConsensusSignal.AGREE,
    "lgtm": ConsensusSignal.AGREE,
    "disagree": ConsensusSignal.DISAGREE,
    "reject": ConsensusSignal.DISAGREE,
    "building": ConsensusSignal.BUILDING,
}


def parse_human_input(text: str, request: ActorRequest) -> ActorAction:
    """JSON input is a full action; anything else is free-text feedback.

    A JSON action keeps whatever target it names; the controller validates it.

    Raises:
        ResponseParseError: Input starts like JSON but is not a valid action.
    """
    stripped = text.strip()
    fallback_target = default_target(request)

    if stripped.startswith("{"):
        try:
            data = json.loads(stripped)
        except json.JSONDecodeError as e:
            raise ResponseParseError(f"Invalid JSON action: {e}") from e
        return action_from_dict(data, default_target=fallback_target)

    first_word = stripped.split(maxsplit=1)[0].lower().strip(".,:;!") if stripped else ""
    signal = _SIGNAL_WORDS.get(first_word, ConsensusSignal.BUILDING)
    return ActorAction.consensus(
        signal,
        target_actor=fallback_target,
        reasoning=stripped or "(no feedback)",
        decision=f"{request.actor}: {stripped}" if stripped else None,
    )


class HumanActor:
    """Prompts a person for each turn. Free of charge."""

    is_human = True

    def __init__(
        self,
        name: str,
        prompt: Callable[..., str] = click.prompt,
        echo: Callable[[str], None] = click.echo,
    ):
        self.name = name
        self._prompt = prompt
        self._echo = echo
        self.logger = logging.getLogger(f"conclave.agent.{name.lower()}")
        self.turns = 0

    def can_act(self, state: ActorState) -> bool:
        return True

    def act(self, request: ActorRequest) -> ActorResponse:
        self._echo(f"\n=== YOUR TURN, {self.name.upper()} (phase: {request.phase.value}) ===")
        if request.briefing:
            self._echo(request.briefing)
        if request.last_result:
            self._echo(f"Last result: {request.last_result}")
        self._echo(
            "Type a JSON action for file operations, or plain text feedback "
            "(start with 'agree' to approve)."
        )
        self._echo(f"Available targets: {', '.join(request.available_targets)}")

        while True:
            text = self._prompt(">", default="", show_default=False)
            try:
                action = parse_human_input(text, request)
                break
            except ResponseParseError as e:
                self.logger.info("[%s] Unparseable input: %s", self.name, e)
                self._echo(f"Could not use that action ({e}). Try again.")
        self.logger.info("[%s] %s -> %s", self.name, action.kind.value, action.target_actor)
        return ActorResponse(action=action, model="human")

    def record_turn(self, response: ActorResponse) -> None:
        self.turns += 1

    def snapshot_state(self) -> dict[str, Any]:
        return {"name": self.name, "kind": "human", "turns": self.turns}
