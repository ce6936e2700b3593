"""Per-call token cost ledger.

Records (input_tokens, output_tokens, cost) for every actor call, attributed
to the actor and run, and shadow-logs each record to JSONL. Cost is estimated
from per-1k rates when the provider does not report one.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

from src.core.models import CostRecord

logger = logging.getLogger("conclave.llm.token_tracker")


def _empty_totals() -> dict[str, Any]:
    return {
        "total_input_tokens": 0,
        "total_output_tokens": 0,
        "total_tokens": 0,
        "total_cost_usd": 0.0,
        "call_count": 0,
    }


class CostLedger:
    """Accumulates per-call token costs and appends them to a JSONL file.

    Usage:
        ledger = CostLedger(jsonl_path="data/state/cost-ledger.jsonl")
        ledger.set_run(3)
        ledger.record(actor="Alex", model="...", input_tokens=100, output_tokens=200)
    """

    def __init__(
        self,
        jsonl_path: Optional[str | Path] = None,
        cost_per_1k_input: float = 0.001,
        cost_per_1k_output: float = 0.005,
    ):
        self.jsonl_path = Path(jsonl_path) if jsonl_path else None
        self.cost_per_1k_input = cost_per_1k_input
        self.cost_per_1k_output = cost_per_1k_output
        self._run_number: Optional[int] = None
        self._session_totals = _empty_totals()
        self._actor_totals: dict[str, dict[str, Any]] = {}

    def set_run(self, run_number: Optional[int]) -> None:
        """Set the run that subsequent records are attributed to."""
        self._run_number = run_number

    def estimate_cost(self, input_tokens: int, output_tokens: int) -> float:
        return (
            (input_tokens / 1000.0) * self.cost_per_1k_input
            + (output_tokens / 1000.0) * self.cost_per_1k_output
        )

    def record(
        self,
        actor: str,
        model: str,
        input_tokens: int = 0,
        output_tokens: int = 0,
        cost: Optional[float] = None,
    ) -> CostRecord:
        """Record a single call's token usage and cost."""
        if cost is None:
            cost = self.estimate_cost(input_tokens, output_tokens)

        record = CostRecord(
            actor=actor,
            model=model,
            run_number=self._run_number,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            cost_usd=cost,
        )

        for totals in (self._session_totals, self._actor_totals.setdefault(actor, _empty_totals())):
            totals["total_input_tokens"] += input_tokens
            totals["total_output_tokens"] += output_tokens
            totals["total_tokens"] += record.total_tokens
            totals["total_cost_usd"] += cost
            totals["call_count"] += 1

        self._persist_to_jsonl(record)

        logger.debug(
            "Token cost recorded: actor=%s model=%s in=%d out=%d cost=$%.6f",
            actor, model, input_tokens, output_tokens, cost,
        )
        return record

    def get_session_totals(self) -> dict[str, Any]:
        """Return accumulated session-level totals."""
        return dict(self._session_totals)

    def get_actor_totals(self, actor: str) -> dict[str, Any]:
        """Return accumulated totals for a specific actor."""
        return dict(self._actor_totals.get(actor, _empty_totals()))

    def _persist_to_jsonl(self, record: CostRecord) -> None:
        """Append record to the JSONL ledger. The ledger is advisory; write failures only warn."""
        if self.jsonl_path is None:
            return
        try:
            self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.jsonl_path, "a", encoding="utf-8") as f:
                f.write(record.model_dump_json() + "\n")
        except OSError as e:
            logger.warning("Failed to write token cost to JSONL: %s", e)
