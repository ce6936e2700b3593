"""Durable run context: snapshot persistence, summarization, briefings.

The snapshot is a single JSON file holding the CycleContext. It is
summarized before every save so it stays bounded across long runs, and
written atomically so a crash mid-save never leaves a torn file.

The override record is the manual escape hatch: a small YAML/JSON file that
forces the run into a phase with synthesized agreement. It is applied once
through force_transition and then renamed to ``*.applied``.
"""

from __future__ import annotations

import logging
import math
import re
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Iterator, Optional

import yaml
from pydantic import ValidationError as PydanticValidationError

from src.core.config import ContextConfig
from src.core.exceptions import ContextStoreError
from src.core.models import (
    PHASE_ACTIONS,
    TERMINAL_TARGET,
    ChangeStatus,
    ConsensusSignal,
    CycleContext,
    HistoryEntry,
    NextAction,
    NextActionType,
    OverrideRecord,
)
from src.tools.fs import acquire_lockfile, atomic_write_text, release_lockfile

_LOGGER_NAME = "conclave.memory.context_store"

TRUNCATION_MARKER = "\n... (truncated for context size)"
ARCHIVED_PHASE = "archived"
LOCK_FILE = ".conclave.lock"

_ARCHIVE_PATTERN = re.compile(r"^\[Archived (\d+) cycles: runs (\d+)–(\d+)\]$")


class ContextStore:
    """Loads, saves and renders the run's CycleContext.

    Injected dependencies:
        config: File names, state directory and summarization limits.
        logger: Destination for persistence and override records.
    """

    def __init__(
        self,
        config: Optional[ContextConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or ContextConfig()
        self.logger = logger or logging.getLogger(_LOGGER_NAME)

    @property
    def state_dir(self) -> Path:
        return Path(self.config.state_dir)

    @property
    def context_path(self) -> Path:
        return self.config.path_for(self.config.context_file)

    @property
    def override_path(self) -> Path:
        return self.config.path_for(self.config.override_file)

    @property
    def cache_path(self) -> Path:
        return self.config.path_for(self.config.cache_file)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> Optional[CycleContext]:
        """Read the snapshot. Returns None when no snapshot exists (fresh run #1).

        Raises:
            ContextStoreError: The snapshot exists but cannot be parsed.
        """
        path = self.context_path
        if not path.exists():
            return None
        try:
            return CycleContext.model_validate_json(path.read_text(encoding="utf-8"))
        except (PydanticValidationError, ValueError) as e:
            raise ContextStoreError(f"Corrupt context snapshot {path}: {e}") from e

    def save(self, context: CycleContext) -> CycleContext:
        """Summarize, stamp and atomically write the snapshot. Returns what was written."""
        summarized = self.summarize(context)
        summarized.last_updated = datetime.now(UTC)
        atomic_write_text(self.context_path, summarized.model_dump_json(indent=2))
        self.logger.debug(
            "Saved context for run #%d to %s", summarized.run_number, self.context_path,
        )
        return summarized

    def initialize(self, roster: list[str]) -> CycleContext:
        """Fresh context for run #1, targeting the first roster member."""
        context = CycleContext(
            next_action=NextAction(
                type=NextActionType.CONTINUE_DISCUSSION,
                reason="Starting fresh discussion",
                target_actor=roster[0],
            ),
        )
        for name in roster:
            context.state_for(name)
        self.logger.info("Initialized fresh context for run #1")
        return context

    def load_or_initialize(self, roster: list[str]) -> CycleContext:
        context = self.load()
        if context is None:
            return self.initialize(roster)
        for name in roster:
            context.state_for(name)
        self.logger.info("Resuming from run #%d (phase=%s)", context.run_number, context.phase.value)
        return context

    @contextmanager
    def lock(self) -> Iterator[None]:
        """Hold the state directory exclusively for the duration of a run.

        Raises:
            ConcurrentRunError: Another process already holds the lock.
        """
        handle = acquire_lockfile(self.state_dir / LOCK_FILE)
        try:
            yield
        finally:
            release_lockfile(handle)

    # ------------------------------------------------------------------
    # Summarization
    # ------------------------------------------------------------------

    def summarize(self, context: CycleContext) -> CycleContext:
        """Bound history, decisions and code changes. Returns a new context.

        next_action, consensus signals and actor states are carried over
        untouched. Pending changes keep their full content because they
        still have to be applied.
        """
        result = context.model_copy(deep=True)
        result.history = self._summarize_history(result.history)

        if len(result.key_decisions) > self.config.max_key_decisions:
            result.key_decisions = result.key_decisions[-self.config.max_key_decisions:]

        changes = list(result.code_changes)
        while len(changes) > self.config.max_code_changes:
            settled = next(
                (i for i, c in enumerate(changes) if c.status != ChangeStatus.PENDING), None,
            )
            changes.pop(0 if settled is None else settled)

        limit = self.config.max_change_content_chars
        for change in changes:
            if change.status == ChangeStatus.PENDING:
                continue
            if len(change.content) > limit and not change.content.endswith(TRUNCATION_MARKER):
                change.content = change.content[:limit] + TRUNCATION_MARKER
        result.code_changes = changes
        return result

    def _summarize_history(self, history: list[HistoryEntry]) -> list[HistoryEntry]:
        keep = self.config.max_history
        if len(history) <= keep:
            return history
        if len(history) == keep + 1 and history[0].phase == ARCHIVED_PHASE:
            return history

        older, recent = history[:-keep], history[-keep:]
        count = 0
        first_run: Optional[int] = None
        last_run: Optional[int] = None
        for entry in older:
            match = _ARCHIVE_PATTERN.match(entry.summary) if entry.phase == ARCHIVED_PHASE else None
            if match:
                count += int(match.group(1))
                lo, hi = int(match.group(2)), int(match.group(3))
            else:
                count += 1
                lo = hi = entry.run_number
            first_run = lo if first_run is None else min(first_run, lo)
            last_run = hi if last_run is None else max(last_run, hi)

        archived = HistoryEntry(
            run_number=0,
            phase=ARCHIVED_PHASE,
            summary=f"[Archived {count} cycles: runs {first_run}–{last_run}]",
            cost=sum(entry.cost for entry in older),
            timestamp=older[0].timestamp,
        )
        return [archived, *recent]

    def context_health(self, context: CycleContext) -> dict[str, Any]:
        estimated = math.ceil(len(context.model_dump_json()) / 4)
        return {
            "run_number": context.run_number,
            "phase": context.phase.value,
            "history_size": len(context.history),
            "decisions_size": len(context.key_decisions),
            "code_changes": len(context.code_changes),
            "pending_changes": len(context.pending_changes()),
            "estimated_tokens": estimated,
            "needs_summarization": (
                len([h for h in context.history if h.phase != ARCHIVED_PHASE]) > self.config.max_history
                or len(context.key_decisions) > self.config.max_key_decisions
                or len(context.code_changes) > self.config.max_code_changes
            ),
        }

    # ------------------------------------------------------------------
    # Briefing
    # ------------------------------------------------------------------

    def generate_briefing(self, context: CycleContext) -> str:
        """Deterministic plain-text rendering of the run state for actors and humans."""
        last_run = context.history[-1].summary if context.history else "This is the first run"

        if context.key_decisions:
            decisions = "\n".join(f"  {i}. {d}" for i, d in enumerate(context.key_decisions, 1))
        else:
            decisions = "  (None yet)"

        if context.consensus_signals:
            signals = "\n".join(
                f"  - {name}: {signal.value}"
                for name, signal in sorted(context.consensus_signals.items())
            )
            if context.consensus_forced:
                signals += "\n  (signals synthesized by manual override)"
        else:
            signals = "  (No signals yet)"

        if context.actor_states:
            actors = "\n".join(
                f"  - {name}: {state.turns_taken} turns, ${state.total_cost:.4f}"
                for name, state in sorted(context.actor_states.items())
            )
        else:
            actors = "  (No actors processed yet)"

        pending = len(context.pending_changes())
        lines = [
            f"=== ORCHESTRATOR BRIEFING - RUN #{context.run_number} ===",
            "",
            "PREVIOUS RUN:",
            last_run,
            "",
            f"CURRENT PHASE: {context.phase.value}",
            "",
            "KEY DECISIONS SO FAR:",
            decisions,
            "",
            "CONSENSUS STATUS:",
            signals,
            "",
            f"PENDING CODE CHANGES: {pending}",
            "",
            f"NEXT ACTION: {context.next_action.type.value} -> {context.next_action.target_actor}",
            f"Reason: {context.next_action.reason}",
            "",
            "ACTOR STATES:",
            actors,
            "",
            f"TOTAL COST SO FAR: ${context.total_cost:.4f}",
        ]
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Manual override
    # ------------------------------------------------------------------

    def read_override(self) -> Optional[OverrideRecord]:
        """Parse the override record if one is waiting. YAML or JSON."""
        path = self.override_path
        if not path.exists():
            return None
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ContextStoreError(f"Override record {path} must be a mapping")
            return OverrideRecord.model_validate(data)
        except yaml.YAMLError as e:
            raise ContextStoreError(f"Unreadable override record {path}: {e}") from e
        except PydanticValidationError as e:
            raise ContextStoreError(f"Invalid override record {path}: {e}") from e

    def write_override(self, record: OverrideRecord) -> Path:
        """Queue an override for the next run (used by the CLI)."""
        payload = record.model_dump(mode="json", exclude_none=True)
        atomic_write_text(self.override_path, yaml.safe_dump(payload, sort_keys=False))
        return self.override_path

    def force_transition(
        self,
        context: CycleContext,
        override: OverrideRecord,
        roster: list[str],
    ) -> CycleContext:
        """Force the phase and synthesize full agreement. Mutates and returns context."""
        previous = context.phase
        context.phase = override.phase
        context.consensus_signals = {name: ConsensusSignal.AGREE for name in roster}
        context.consensus_forced = True

        if override.next_action is not None:
            target = override.next_action.target_actor
            if target not in roster and target != TERMINAL_TARGET:
                raise ContextStoreError(
                    f"Override targets unknown actor '{target}'; roster is {roster}"
                )
            context.next_action = override.next_action
        else:
            target = context.next_action.target_actor
            if target not in roster:
                target = roster[0]
            context.next_action = NextAction(
                type=PHASE_ACTIONS[override.phase],
                reason=override.reason,
                target_actor=target,
            )

        context.key_decisions.append(
            f"MANUAL OVERRIDE: phase {previous.value} -> {override.phase.value} ({override.reason})"
        )
        self.logger.warning(
            "MANUAL OVERRIDE: forcing phase %s -> %s with synthesized agreement from %d actor(s): %s",
            previous.value, override.phase.value, len(roster), override.reason,
        )
        return context

    def apply_override(self, context: CycleContext, roster: list[str]) -> bool:
        """Apply a waiting override record, if any, and retire its file."""
        override = self.read_override()
        if override is None:
            return False
        self.force_transition(context, override, roster)
        applied = self.override_path.with_name(self.override_path.name + ".applied")
        self.override_path.replace(applied)
        self.logger.info("Override record retired to %s", applied)
        return True

