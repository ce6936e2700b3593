"""Cycle controller for Conclave.

Runs one bounded cycle of turns against the shared CycleContext:
  gate actor (turn limiter) → ask for one action (resilient executor)
  → apply it (file ops / consensus) → validate the handoff → next actor

The controller is the only component that mutates the context during a
cycle. It stops on the first of: cycle turn budget spent, every actor
exhausted, consensus reached in discussion, terminal handoff, or an error
loop (the same failure repeated back to back).
"""

from __future__ import annotations

import logging
from typing import Optional

from src.agents.actor import Actor
from src.core.config import AppConfig
from src.core.exceptions import CircuitOpenError, FatalError, RetryableError
from src.core.models import (
    PHASE_ACTIONS,
    TERMINAL_TARGET,
    ActionKind,
    ActorAction,
    ActorRequest,
    ActorResponse,
    CacheBucket,
    ChangeStatus,
    CodeChange,
    ConsensusSignal,
    CycleContext,
    CycleReport,
    HistoryEntry,
    LimitDecision,
    NextAction,
    NextActionType,
    Phase,
    StopReason,
    TurnRecord,
)
from src.llm.response_parser import normalize_error_signature
from src.memory.context_store import ContextStore
from src.memory.shared_cache import SharedMemoryCache
from src.orchestrator.consensus import ConsensusTracker
from src.orchestrator.events import EventLog
from src.orchestrator.handoff import HandoffValidator
from src.orchestrator.phases import PhaseRouter
from src.orchestrator.resilience import ResilientExecutor
from src.orchestrator.turn_limits import productivity_summary, should_continue
from src.tools.file_ops import FileOps

_LOGGER_NAME = "conclave.orchestrator.cycle"

RECENT_DECISIONS_KEY = "decisions:recent"
BRIEFING_KEY = "briefing:latest"


class _CycleState:
    """Scratch state for one run_cycle call."""

    def __init__(self) -> None:
        self.exhausted: set[str] = set()
        self.last_results: dict[str, str] = {}
        self.records: list[TurnRecord] = []
        self.error_signatures: list[str] = []
        self.decisions: list[str] = []
        self.applied_changes = 0
        self.signal_changes = 0


class CycleController:
    """Drives one cycle of actor turns.

    Injected dependencies:
        actors: Actor implementations keyed by roster name.
        config: Application configuration (roster, limits, thresholds).
        file_ops: Validator-gated filesystem capability.
        executor: Retry / rate-limit / circuit-breaker wrapper for actor calls.
        cache: Shared memory cache for decisions and briefings.
        store: Context store, used for briefings.
        events: Optional JSONL event sink.
    """

    def __init__(
        self,
        actors: dict[str, Actor],
        config: AppConfig,
        file_ops: FileOps,
        executor: ResilientExecutor,
        cache: SharedMemoryCache,
        store: ContextStore,
        events: Optional[EventLog] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.roster = list(config.orchestrator.roster)
        missing = [name for name in self.roster if name not in actors]
        if missing:
            raise ValueError(f"No actor implementation for roster member(s): {missing}")
        self.actors = actors
        self.file_ops = file_ops
        self.executor = executor
        self.cache = cache
        self.store = store
        self.events = events
        self.logger = logger or logging.getLogger(_LOGGER_NAME)

        orch = config.orchestrator
        self.handoff = HandoffValidator(self.roster, max_self_passes=orch.max_self_passes)
        self.consensus = ConsensusTracker(
            self.roster,
            threshold=orch.resolved_threshold(),
            reset_after_override=orch.reset_signals_after_override,
        )
        self.router = PhaseRouter()
        self.last_report: Optional[CycleReport] = None

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def run_cycle(self, context: CycleContext) -> CycleReport:
        """Run one cycle. Mutates context and returns a report carrying it.

        Raises:
            FatalError: A non-retryable actor failure. The partial report is
                left on ``last_report`` with ``failed`` set.
            CircuitOpenError: The actor dependency's circuit is open.
        """
        orch = self.config.orchestrator
        run_number = context.run_number
        phase_before = context.phase
        cycle = _CycleState()

        self.logger.info("=== Run #%d starting (phase=%s) ===", run_number, context.phase.value)
        for name in self.roster:
            context.state_for(name).reset_turn_counters()

        if context.phase == Phase.APPLY_CHANGES:
            cycle.applied_changes += self._apply_pending(context)
            self._check_testing(context, run_number)

        current: Optional[str] = context.next_action.target_actor
        if current not in self.roster:
            current = self.roster[0]

        stop_reason: Optional[StopReason] = None
        while stop_reason is None:
            if len(cycle.records) >= orch.max_cycle_turns:
                stop_reason = StopReason.TURN_BUDGET
                break

            current, limit = self._select_actor(context, current, cycle.exhausted)
            if current is None:
                stop_reason = StopReason.ACTORS_EXHAUSTED
                break

            try:
                record, stop_reason, next_actor = self._take_turn(context, current, limit, cycle)
            except (FatalError, CircuitOpenError) as e:
                self.logger.error("Run #%d aborted during %s's turn: %s", run_number, current, e)
                cycle.records.append(
                    TurnRecord(actor=current, outcome="failed", detail=str(e)[:500])
                )
                self.last_report = self._report(
                    context, run_number, phase_before, StopReason.FAILED, cycle, error=str(e),
                )
                raise

            cycle.records.append(record)
            self._emit("turn", {"run_number": run_number, **record.model_dump(mode="json")})

            if stop_reason is None and self._is_error_loop(cycle.error_signatures):
                self.logger.warning(
                    "Error loop detected: last %d failures share signature %r",
                    orch.error_loop_threshold, cycle.error_signatures[-1],
                )
                stop_reason = StopReason.ERROR_LOOP
            current = next_actor

        next_target = current if current in self.roster else None
        self._finish_cycle(context, run_number, stop_reason, cycle, next_target)
        report = self._report(context, run_number, phase_before, stop_reason, cycle)
        self._emit("cycle_complete", {
            "run_number": run_number,
            "stop_reason": stop_reason.value,
            "turns": report.turns,
            "productive_turns": report.productive_turns,
            "cost": report.cost,
        })
        self.logger.info(
            "=== Run #%d complete: %s after %d turn(s), $%.4f ===",
            run_number, stop_reason.value, report.turns, report.cost,
        )
        self.last_report = report
        return report

    def _select_actor(
        self,
        context: CycleContext,
        candidate: Optional[str],
        exhausted: set[str],
    ) -> tuple[Optional[str], Optional[LimitDecision]]:
        """Gate candidates until one may act. (None, None) when everyone is exhausted."""
        while candidate is not None:
            if candidate not in exhausted:
                decision = self._gate(context, candidate, exhausted)
                if decision is not None:
                    return candidate, decision
            candidate = self.handoff.next_in_rotation(candidate, exhausted)
        return None, None

    def _gate(
        self,
        context: CycleContext,
        name: str,
        exhausted: set[str],
    ) -> Optional[LimitDecision]:
        """Limiter plus actor veto. A refused actor is marked exhausted and None returned."""
        state = context.state_for(name)
        decision = should_continue(state.counters(), base_limit=self.config.orchestrator.base_turn_limit)
        if decision.should_continue and self.actors[name].can_act(state):
            return decision
        self.logger.info(
            "%s exhausted for this cycle (%s; %s)",
            name, decision.reason, productivity_summary(state.counters()),
        )
        exhausted.add(name)
        return None

    # ------------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------------

    def _take_turn(
        self,
        context: CycleContext,
        name: str,
        limit: LimitDecision,
        cycle: _CycleState,
    ) -> tuple[TurnRecord, Optional[StopReason], Optional[str]]:
        actor = self.actors[name]
        state = context.state_for(name)
        request = ActorRequest(
            actor=name,
            roster=self.roster,
            available_targets=[m for m in self.roster if m not in cycle.exhausted] + [TERMINAL_TARGET],
            phase=context.phase,
            briefing=self._briefing(context),
            turn_budget_remaining=limit.turns_remaining,
            last_result=cycle.last_results.pop(name, None),
        )

        dependency = "human" if actor.is_human else "llm"
        try:
            response: ActorResponse = self.executor.execute(
                lambda: actor.act(request), label=f"{name} turn", dependency=dependency,
            )
        except RetryableError as e:
            # Zero-effect turn: counts toward the budget, nothing else changes.
            state.turns_taken += 1
            signature = normalize_error_signature(str(e))
            cycle.error_signatures.append(signature)
            self.logger.warning("%s's turn failed after retries: %s", name, e)
            next_actor = (
                self.handoff.next_in_rotation(name, cycle.exhausted, include_current=False)
                or self.handoff.next_in_rotation(name, cycle.exhausted)
            )
            record = TurnRecord(
                actor=name, outcome="failed", detail=str(e)[:500],
                target=next_actor, error_signature=signature,
            )
            return record, None, next_actor

        action = response.action
        record = TurnRecord(
            actor=name,
            kind=action.kind,
            requested_target=action.target_actor,
            cost=response.cost,
            tokens=response.tokens_used,
        )
        stop_reason = self._apply_action(context, name, actor.is_human, action, record, cycle)

        state.turns_taken += 1
        if record.productive:
            state.productive_turns += 1
        state.total_cost += response.cost
        state.total_tokens += response.tokens_used
        actor.record_turn(response)

        if stop_reason is not None:
            record.target = action.target_actor if action.target_actor in self.roster else None
            return record, stop_reason, record.target

        requested = action.target_actor
        if requested in self.roster and requested not in cycle.exhausted:
            # A refused target turns into an exhausted-target fallback below.
            self._gate(context, requested, cycle.exhausted)
        decision = self.handoff.resolve(
            name, requested, cycle.exhausted, state.consecutive_self_passes,
        )
        if action.target_actor == name:
            state.self_passes += 1
        state.consecutive_self_passes = state.consecutive_self_passes + 1 if decision.self_pass else 0

        record.target = decision.target
        record.fallback = decision.fallback
        if decision.fallback:
            self._emit("handoff_fallback", {
                "actor": name,
                "requested": decision.requested,
                "target": decision.target,
                "reason": decision.error.reason if decision.error else "",
            })
        if decision.terminal:
            self.logger.info("%s handed off to %s", name, TERMINAL_TARGET)
            return record, StopReason.TERMINAL_HANDOFF, None
        return record, None, decision.target

    def _apply_action(
        self,
        context: CycleContext,
        name: str,
        is_human: bool,
        action: ActorAction,
        record: TurnRecord,
        cycle: _CycleState,
    ) -> Optional[StopReason]:
        if action.kind == ActionKind.FILE_READ:
            result = self.file_ops.read(action.path or "")
            context.state_for(name).file_reads += 1
            if result.ok:
                record.detail = f"read {result.path}"
                cycle.last_results[name] = f"Contents of {result.path}:\n{result.content}"
            else:
                self._reject(name, action, record, cycle, result.error or "read failed")
            return None

        if action.kind in (ActionKind.FILE_WRITE, ActionKind.FILE_EDIT):
            self._apply_change(context, name, action, record, cycle)
            return None

        return self._apply_signal(context, name, is_human, action, record, cycle)

    def _apply_change(
        self,
        context: CycleContext,
        name: str,
        action: ActorAction,
        record: TurnRecord,
        cycle: _CycleState,
    ) -> None:
        error = self._validate_change(action)
        if error is not None:
            self._reject(name, action, record, cycle, error)
            self._emit("validation_rejected", {"actor": name, "path": action.path, "error": error})
            return

        normalized = self.file_ops.validator.validate_path(action.path or "").normalized_path
        change = CodeChange(
            file=normalized,
            action="write" if action.kind == ActionKind.FILE_WRITE else "edit",
            content=action.content or "",
            edits=list(action.edits),
            actor=name,
        )
        self._supersede(context, normalized)
        state = context.state_for(name)

        if context.phase == Phase.CODE_REVIEW:
            context.code_changes.append(change)
            record.detail = f"staged {change.action} of {normalized} for review"
            cycle.last_results[name] = f"Staged {change.action} of {normalized}; applied once changes are authorized."
        else:
            self._execute_change(change)
            context.code_changes.append(change)
            if change.status == ChangeStatus.FAILED:
                self._reject(name, action, record, cycle, change.error or "file operation failed")
                return
            cycle.applied_changes += 1
            record.detail = f"applied {change.action} to {normalized}"
            cycle.last_results[name] = f"Applied {change.action} to {normalized}."
            self._check_testing(context, context.run_number)

        if change.action == "write":
            state.file_writes += 1
        else:
            state.file_edits += 1
        record.productive = True

    def _validate_change(self, action: ActorAction) -> Optional[str]:
        validator = self.file_ops.validator
        result = validator.validate_path(action.path or "")
        if not result.is_valid:
            return result.error
        if action.kind == ActionKind.FILE_WRITE and not validator.validate_file_size(action.content or ""):
            return f"Content for {result.normalized_path} exceeds {validator.max_file_kb}KB limit"
        if action.kind == ActionKind.FILE_EDIT and not validator.validate_operation_count(len(action.edits)):
            return (
                f"Too many edit operations for {result.normalized_path}: "
                f"{len(action.edits)} (max {validator.max_operations})"
            )
        return None

    def _apply_signal(
        self,
        context: CycleContext,
        name: str,
        is_human: bool,
        action: ActorAction,
        record: TurnRecord,
        cycle: _CycleState,
    ) -> Optional[StopReason]:
        signal = action.signal or ConsensusSignal.BUILDING
        changed = self.consensus.record(context, name, signal)
        record.signal_changed = changed
        record.detail = f"signal {signal.value}"
        if changed:
            cycle.signal_changes += 1
        if action.decision:
            context.key_decisions.append(action.decision)
            cycle.decisions.append(action.decision)

        if is_human and signal == ConsensusSignal.AGREE and context.phase == Phase.CODE_REVIEW:
            self.router.authorize_changes(context, name)
            self._emit("phase_transition", {
                "from": Phase.CODE_REVIEW.value,
                "to": Phase.APPLY_CHANGES.value,
                "reason": f"authorized by {name}",
            })
            return None

        if changed and context.phase == Phase.DISCUSSION and self.consensus.is_reached(context):
            summary = self.consensus.summary(context)
            self.logger.info("Consensus reached: %s", summary)
            self.router.on_consensus(context, summary)
            self._emit("consensus_reached", {"run_number": context.run_number, "summary": summary})
            self._emit("phase_transition", {
                "from": Phase.DISCUSSION.value,
                "to": Phase.CODE_REVIEW.value,
                "reason": "consensus reached",
            })
            return StopReason.CONSENSUS
        return None

    def _reject(
        self,
        name: str,
        action: ActorAction,
        record: TurnRecord,
        cycle: _CycleState,
        error: str,
    ) -> None:
        self.logger.info("%s's %s rejected: %s", name, action.kind.value, error)
        record.outcome = "rejected"
        record.detail = error[:500]
        record.error_signature = normalize_error_signature(error)
        cycle.error_signatures.append(record.error_signature)
        cycle.last_results[name] = f"Your {action.kind.value} on {action.path} failed: {error}"

    # ------------------------------------------------------------------
    # Code changes
    # ------------------------------------------------------------------

    def _apply_pending(self, context: CycleContext) -> int:
        """Apply every pending change in order. Returns how many applied."""
        applied = 0
        for change in context.pending_changes():
            self._execute_change(change)
            if change.status == ChangeStatus.APPLIED:
                applied += 1
        if applied:
            self.logger.info("Applied %d pending code change(s)", applied)
        return applied

    def _execute_change(self, change: CodeChange) -> None:
        if change.action == "write":
            result = self.file_ops.write(change.file, change.content)
        else:
            result = self.file_ops.edit(change.file, change.edits)
        if result.ok:
            change.status = ChangeStatus.APPLIED
            change.error = None
        else:
            change.status = ChangeStatus.FAILED
            change.error = result.error
            self.logger.warning("Code change to %s failed: %s", change.file, result.error)

    @staticmethod
    def _supersede(context: CycleContext, file: str) -> None:
        for change in context.code_changes:
            if change.file == file and change.status in (ChangeStatus.PENDING, ChangeStatus.FAILED):
                change.status = ChangeStatus.SUPERSEDED

    def _check_testing(self, context: CycleContext, run_number: int) -> None:
        if self.router.maybe_start_testing(context):
            self._emit("phase_transition", {
                "run_number": run_number,
                "from": Phase.APPLY_CHANGES.value,
                "to": Phase.TESTING.value,
                "reason": "all code changes applied",
            })

    # ------------------------------------------------------------------
    # Cycle end
    # ------------------------------------------------------------------

    def _finish_cycle(
        self,
        context: CycleContext,
        run_number: int,
        stop_reason: StopReason,
        cycle: _CycleState,
        next_target: Optional[str],
    ) -> None:
        cost = sum(r.cost for r in cycle.records)
        productive = sum(1 for r in cycle.records if r.productive)
        context.total_cost += cost
        context.history.append(HistoryEntry(
            run_number=run_number,
            phase=context.phase.value,
            summary=(
                f"Run #{run_number}: {len(cycle.records)} turn(s), {productive} productive, "
                f"stopped on {stop_reason.value}; consensus {self.consensus.summary(context)}"
            ),
            cost=cost,
        ))

        if stop_reason == StopReason.TERMINAL_HANDOFF:
            context.next_action = NextAction(
                type=NextActionType.COMPLETE,
                reason=f"Run #{run_number} handed off to {TERMINAL_TARGET}",
                target_actor=TERMINAL_TARGET,
            )
        else:
            context.next_action = NextAction(
                type=PHASE_ACTIONS[context.phase],
                reason=f"Run #{run_number} stopped on {stop_reason.value}",
                target_actor=next_target or self.roster[0],
            )

        if cycle.decisions:
            self.cache.store(
                f"decisions:run-{run_number}", cycle.decisions, CacheBucket.DECISION,
                reason=f"key decisions from run #{run_number}",
            )
            recent = (self.cache.retrieve(RECENT_DECISIONS_KEY) or []) + cycle.decisions
            self.cache.store(
                RECENT_DECISIONS_KEY,
                recent[-self.config.context.max_key_decisions:],
                CacheBucket.DECISION,
                reason="rolling decision window",
            )

        context.run_number += 1
        self.cache.store(
            BRIEFING_KEY, self.store.generate_briefing(context), CacheBucket.TRANSIENT,
            reason="briefing for the next run",
        )

    def _briefing(self, context: CycleContext) -> str:
        briefing = self.store.generate_briefing(context)
        recent = self.cache.retrieve(RECENT_DECISIONS_KEY)
        if recent:
            lines = "\n".join(f"  - {d}" for d in recent)
            briefing += f"\n\nSHARED MEMORY (recent decisions):\n{lines}"
        return briefing

    def _is_error_loop(self, signatures: list[str]) -> bool:
        threshold = self.config.orchestrator.error_loop_threshold
        if threshold < 1 or len(signatures) < threshold:
            return False
        return len(set(signatures[-threshold:])) == 1

    def _report(
        self,
        context: CycleContext,
        run_number: int,
        phase_before: Phase,
        stop_reason: StopReason,
        cycle: _CycleState,
        error: Optional[str] = None,
    ) -> CycleReport:
        return CycleReport(
            run_number=run_number,
            context=context,
            stop_reason=stop_reason,
            failed=error is not None,
            error=error,
            turns=len(cycle.records),
            turn_records=list(cycle.records),
            phase_before=phase_before,
            phase_after=context.phase,
            productive_turns=sum(1 for r in cycle.records if r.productive),
            applied_changes=cycle.applied_changes,
            signal_changes=cycle.signal_changes,
            cost=sum(r.cost for r in cycle.records),
        )

    def _emit(self, event_type: str, payload: dict) -> None:
        if self.events is not None:
            self.events.emit(event_type, payload)
