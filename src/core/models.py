"""All Pydantic data models for Conclave.

Defines the data contracts used across the cycle controller, the shared
memory cache, the context store and the actors. Every persisted record and
every actor message has a model here.
"""

from __future__ import annotations

import enum
from datetime import UTC, datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator

TERMINAL_TARGET = "orchestrator-complete"


def _now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Phase(str, enum.Enum):
    DISCUSSION = "discussion"
    CODE_REVIEW = "code_review"
    APPLY_CHANGES = "apply_changes"
    TESTING = "testing"


class ConsensusSignal(str, enum.Enum):
    AGREE = "agree"
    BUILDING = "building"
    DISAGREE = "disagree"


class CacheBucket(str, enum.Enum):
    TRANSIENT = "transient"
    DECISION = "decision"
    SENSITIVE = "sensitive"


class ActionKind(str, enum.Enum):
    FILE_READ = "file_read"
    FILE_EDIT = "file_edit"
    FILE_WRITE = "file_write"
    CONSENSUS = "consensus"


class ChangeStatus(str, enum.Enum):
    PENDING = "pending"
    APPLIED = "applied"
    FAILED = "failed"
    SUPERSEDED = "superseded"


class NextActionType(str, enum.Enum):
    CONTINUE_DISCUSSION = "continue_discussion"
    CODE_REVIEW = "code_review"
    APPLY_CHANGES = "apply_changes"
    TESTING = "testing"
    COMPLETE = "complete"


PHASE_ACTIONS: dict[Phase, NextActionType] = {
    Phase.DISCUSSION: NextActionType.CONTINUE_DISCUSSION,
    Phase.CODE_REVIEW: NextActionType.CODE_REVIEW,
    Phase.APPLY_CHANGES: NextActionType.APPLY_CHANGES,
    Phase.TESTING: NextActionType.TESTING,
}


class StopReason(str, enum.Enum):
    TURN_BUDGET = "turn_budget_exhausted"
    ACTORS_EXHAUSTED = "all_actors_exhausted"
    CONSENSUS = "consensus_reached"
    TERMINAL_HANDOFF = "terminal_handoff"
    ERROR_LOOP = "error_loop"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Actor bookkeeping
# ---------------------------------------------------------------------------

class ProductivityCounters(BaseModel):
    """Inputs to the adaptive turn limiter."""
    turns_used: int = 0
    file_reads: int = 0
    file_edits: int = 0
    file_writes: int = 0
    self_passes: int = 0


class LimitDecision(BaseModel):
    should_continue: bool
    reason: str
    turns_remaining: int
    score: float = 0.0


class ActorState(BaseModel):
    """Per-actor counters. Turn counters reset each cycle; cost and tokens accumulate."""
    id: str
    turns_taken: int = 0
    productive_turns: int = 0
    file_reads: int = 0
    file_edits: int = 0
    file_writes: int = 0
    consecutive_self_passes: int = 0
    self_passes: int = 0
    total_cost: float = 0.0
    total_tokens: int = 0

    def reset_turn_counters(self) -> None:
        self.turns_taken = 0
        self.productive_turns = 0
        self.file_reads = 0
        self.file_edits = 0
        self.file_writes = 0
        self.consecutive_self_passes = 0
        self.self_passes = 0

    def counters(self) -> ProductivityCounters:
        return ProductivityCounters(
            turns_used=self.turns_taken,
            file_reads=self.file_reads,
            file_edits=self.file_edits,
            file_writes=self.file_writes,
            self_passes=self.self_passes,
        )


# ---------------------------------------------------------------------------
# Persisted context
# ---------------------------------------------------------------------------

class EditPattern(BaseModel):
    find: str
    replace: str


class CodeChange(BaseModel):
    file: str
    action: str  # "write" or "edit"
    content: str = ""
    edits: list[EditPattern] = Field(default_factory=list)
    status: ChangeStatus = ChangeStatus.PENDING
    actor: str = ""
    error: Optional[str] = None


class HistoryEntry(BaseModel):
    run_number: int
    phase: str  # a Phase value, or "archived" for summarized entries
    summary: str
    cost: float = 0.0
    timestamp: datetime = Field(default_factory=_now)


class NextAction(BaseModel):
    type: NextActionType = NextActionType.CONTINUE_DISCUSSION
    reason: str = ""
    target_actor: str


class CycleContext(BaseModel):
    """Durable state of a run. Loaded at start, mutated per turn, saved per cycle."""
    version: str = "1.0"
    run_number: int = 1
    phase: Phase = Phase.DISCUSSION
    consensus_signals: dict[str, ConsensusSignal] = Field(default_factory=dict)
    consensus_forced: bool = False
    key_decisions: list[str] = Field(default_factory=list)
    code_changes: list[CodeChange] = Field(default_factory=list)
    actor_states: dict[str, ActorState] = Field(default_factory=dict)
    history: list[HistoryEntry] = Field(default_factory=list)
    next_action: NextAction
    total_cost: float = 0.0
    started_at: datetime = Field(default_factory=_now)
    last_updated: datetime = Field(default_factory=_now)

    def state_for(self, actor: str) -> ActorState:
        """Return the actor's state, creating it on first use."""
        if actor not in self.actor_states:
            self.actor_states[actor] = ActorState(id=actor)
        return self.actor_states[actor]

    def pending_changes(self) -> list[CodeChange]:
        return [c for c in self.code_changes if c.status == ChangeStatus.PENDING]


class OverrideRecord(BaseModel):
    """Out-of-band manual escape hatch read at startup."""
    phase: Phase
    reason: str = "Manual override"
    next_action: Optional[NextAction] = None


# ---------------------------------------------------------------------------
# Actor messages
# ---------------------------------------------------------------------------

class ActorAction(BaseModel):
    """One action returned by an actor for a single turn."""
    kind: ActionKind
    target_actor: str
    reasoning: str = ""
    path: Optional[str] = None
    content: Optional[str] = None
    edits: list[EditPattern] = Field(default_factory=list)
    signal: Optional[ConsensusSignal] = None
    decision: Optional[str] = None

    @model_validator(mode="after")
    def _check_payload(self) -> "ActorAction":
        if self.kind in (ActionKind.FILE_READ, ActionKind.FILE_EDIT, ActionKind.FILE_WRITE):
            if not self.path:
                raise ValueError(f"{self.kind.value} requires a path")
        if self.kind == ActionKind.FILE_WRITE and self.content is None:
            raise ValueError("file_write requires content")
        if self.kind == ActionKind.FILE_EDIT and not self.edits:
            raise ValueError("file_edit requires at least one edit")
        if self.kind == ActionKind.CONSENSUS and self.signal is None:
            raise ValueError("consensus requires a signal")
        return self

    @classmethod
    def read(cls, path: str, target_actor: str, reasoning: str = "") -> "ActorAction":
        return cls(kind=ActionKind.FILE_READ, path=path, target_actor=target_actor, reasoning=reasoning)

    @classmethod
    def write(cls, path: str, content: str, target_actor: str, reasoning: str = "") -> "ActorAction":
        return cls(
            kind=ActionKind.FILE_WRITE, path=path, content=content,
            target_actor=target_actor, reasoning=reasoning,
        )

    @classmethod
    def edit(
        cls, path: str, edits: list[EditPattern], target_actor: str, reasoning: str = "",
    ) -> "ActorAction":
        return cls(
            kind=ActionKind.FILE_EDIT, path=path, edits=edits,
            target_actor=target_actor, reasoning=reasoning,
        )

    @classmethod
    def consensus(
        cls,
        signal: ConsensusSignal | str,
        target_actor: str,
        reasoning: str = "",
        decision: Optional[str] = None,
    ) -> "ActorAction":
        return cls(
            kind=ActionKind.CONSENSUS, signal=ConsensusSignal(signal),
            target_actor=target_actor, reasoning=reasoning, decision=decision,
        )


class ActorRequest(BaseModel):
    """Everything an actor sees when asked to take a turn."""
    actor: str
    roster: list[str]
    available_targets: list[str]
    phase: Phase
    briefing: str = ""
    turn_budget_remaining: int = 0
    last_result: Optional[str] = None


class ActorResponse(BaseModel):
    action: ActorAction
    cost: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    model: Optional[str] = None

    @property
    def tokens_used(self) -> int:
        return self.input_tokens + self.output_tokens


class CostRecord(BaseModel):
    """One billed actor call, as written to the cost ledger."""
    actor: str
    model: str
    run_number: Optional[int] = None
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost_usd: float = 0.0
    created_at: datetime = Field(default_factory=_now)


# ---------------------------------------------------------------------------
# Validation / file ops
# ---------------------------------------------------------------------------

class PathValidationResult(BaseModel):
    is_valid: bool
    normalized_path: str
    error: Optional[str] = None


class FileOpResult(BaseModel):
    ok: bool
    path: str
    content: Optional[str] = None
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Shared memory cache
# ---------------------------------------------------------------------------

class CacheEntry(BaseModel):
    key: str
    value: Any = None
    bucket: CacheBucket
    token_count: int
    created_at: float
    last_accessed_at: float
    ttl_seconds: float
    reason: Optional[str] = None  # documentation only, never read by eviction

    def is_expired(self, now: float) -> bool:
        return now - self.created_at > self.ttl_seconds


class StoreResult(BaseModel):
    stored: bool
    key: str
    bucket: CacheBucket
    tokens: int
    evicted: list[str] = Field(default_factory=list)
    reason: Optional[str] = None


# ---------------------------------------------------------------------------
# Resilience
# ---------------------------------------------------------------------------

class CircuitState(BaseModel):
    consecutive_failures: int = 0
    last_failure_time: Optional[float] = None
    is_open: bool = False
    half_open: bool = False


# ---------------------------------------------------------------------------
# Cycle reporting
# ---------------------------------------------------------------------------

class TurnRecord(BaseModel):
    """Ephemeral record of one turn, folded into ActorState and history."""
    actor: str
    kind: Optional[ActionKind] = None
    outcome: str = "ok"  # "ok", "rejected", "failed"
    detail: str = ""
    requested_target: Optional[str] = None
    target: Optional[str] = None
    fallback: bool = False
    productive: bool = False
    signal_changed: bool = False
    cost: float = 0.0
    tokens: int = 0
    error_signature: Optional[str] = None


class CycleReport(BaseModel):
    run_number: int
    context: CycleContext
    stop_reason: StopReason
    failed: bool = False
    error: Optional[str] = None
    turns: int = 0
    turn_records: list[TurnRecord] = Field(default_factory=list)
    phase_before: Phase
    phase_after: Phase
    productive_turns: int = 0
    applied_changes: int = 0
    signal_changes: int = 0
    cost: float = 0.0

    @property
    def made_progress(self) -> bool:
        return (
            self.productive_turns > 0
            or self.applied_changes > 0
            or self.signal_changes > 0
            or self.phase_before != self.phase_after
        )
