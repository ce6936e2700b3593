"""LLM-backed roster member.

Renders the actor request into a chat prompt, asks the configured model for
a single JSON action, and records the call's cost in the ledger.
"""

from __future__ import annotations

import logging
from string import Template
from typing import Any, Optional

from src.agents.actor import default_target
from src.core.config import PromptLoader
from src.core.models import ActorRequest, ActorResponse, ActorState
from src.llm.client import LLMMessage, OpenRouterClient
from src.llm.response_parser import parse_actor_action
from src.llm.token_tracker import CostLedger

DEFAULT_SYSTEM_PROMPT = """You are $name, one member of a small engineering team ($roster).
$persona
The team works in phases: discussion, code_review, apply_changes, testing.
Each turn you take exactly one action and hand off to a teammate.

Respond with ONLY a JSON object, one of:
  {"action": "file_read", "path": "...", "target_actor": "...", "reasoning": "..."}
  {"action": "file_write", "path": "...", "content": "...", "target_actor": "...", "reasoning": "..."}
  {"action": "file_edit", "path": "...", "edits": [{"find": "...", "replace": "..."}], "target_actor": "...", "reasoning": "..."}
  {"action": "consensus", "signal": "agree|building|disagree", "decision": "...", "target_actor": "...", "reasoning": "..."}

Paths must live under the project's allowed directories. Every edit "find"
must match exactly once. Use target_actor "orchestrator-complete" only when
the team's work is finished."""


class LLMActor:
    """Asks a model for the next action.

    Injected dependencies:
        client: OpenRouter client (one request per turn; retries happen outside).
        model: OpenRouter model ID for this actor.
        ledger: Cost ledger that prices and records each call.
    """

    is_human = False

    def __init__(
        self,
        name: str,
        client: OpenRouterClient,
        model: str,
        ledger: Optional[CostLedger] = None,
        prompts: Optional[PromptLoader] = None,
        max_cost: Optional[float] = None,
        persona: str = "",
    ):
        self.name = name
        self.client = client
        self.model = model
        self.ledger = ledger or CostLedger()
        self.prompts = prompts or PromptLoader()
        self.max_cost = max_cost
        self.persona = persona
        self.logger = logging.getLogger(f"conclave.agent.{name.lower()}")
        self._turns = 0
        self._cost = 0.0
        self._tokens = 0

    def can_act(self, state: ActorState) -> bool:
        if self.max_cost is not None and state.total_cost >= self.max_cost:
            self.logger.info("[%s] Cost ceiling $%.4f reached", self.name, self.max_cost)
            return False
        return True

    def build_messages(self, request: ActorRequest) -> list[LLMMessage]:
        template = self.prompts.load("actor_system.txt", default=DEFAULT_SYSTEM_PROMPT)
        system = Template(template).safe_substitute(
            name=self.name, roster=", ".join(request.roster), persona=self.persona,
        )

        parts = [
            request.briefing or "(no briefing)",
            f"Current phase: {request.phase.value}",
            f"Turns left for you this cycle: {request.turn_budget_remaining}",
            f"Available targets: {', '.join(request.available_targets)}",
        ]
        if request.last_result:
            parts.append(f"Result of your previous action: {request.last_result}")
        parts.append("Your action (JSON only):")
        return [
            LLMMessage(role="system", content=system),
            LLMMessage(role="user", content="\n\n".join(parts)),
        ]

    def act(self, request: ActorRequest) -> ActorResponse:
        self.logger.info("[%s] Starting turn (phase=%s)", self.name, request.phase.value)
        response = self.client.complete(
            self.build_messages(request),
            model=self.model,
            response_format={"type": "json_object"},
        )
        # The call is billed whether or not the reply parses.
        record = self.ledger.record(
            actor=self.name,
            model=response.model,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
        )
        action = parse_actor_action(response.content, default_target=default_target(request))
        self.logger.info(
            "[%s] Complete: %s -> %s ($%.4f)",
            self.name, action.kind.value, action.target_actor, record.cost_usd,
        )
        return ActorResponse(
            action=action,
            cost=record.cost_usd,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
            model=response.model,
        )

    def record_turn(self, response: ActorResponse) -> None:
        self._turns += 1
        self._cost += response.cost
        self._tokens += response.tokens_used

    def snapshot_state(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": "llm",
            "model": self.model,
            "turns": self._turns,
            "cost": round(self._cost, 6),
            "tokens": self._tokens,
        }
