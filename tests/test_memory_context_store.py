"""Tests for src/memory/context_store.py: snapshot, summarization, briefing, override."""

import json

import pytest
import yaml

from src.core.config import ContextConfig
from src.core.exceptions import ConcurrentRunError, ContextStoreError
from src.core.models import (
    ChangeStatus,
    CodeChange,
    ConsensusSignal,
    CycleContext,
    HistoryEntry,
    NextAction,
    NextActionType,
    OverrideRecord,
    Phase,
)
from src.memory.context_store import ARCHIVED_PHASE, TRUNCATION_MARKER, ContextStore


@pytest.fixture
def store(state_config):
    return ContextStore(state_config)


def history(n: int, start: int = 1, cost: float = 0.01) -> list[HistoryEntry]:
    return [
        HistoryEntry(run_number=i, phase="discussion", summary=f"run {i}", cost=cost)
        for i in range(start, start + n)
    ]


class TestPersistence:
    def test_load_missing_returns_none(self, store):
        assert store.load() is None

    def test_initialize_targets_first_actor(self, store, roster):
        context = store.initialize(roster)
        assert context.run_number == 1
        assert context.phase == Phase.DISCUSSION
        assert context.next_action.target_actor == "Alex"
        assert context.next_action.type == NextActionType.CONTINUE_DISCUSSION
        assert set(context.actor_states) == set(roster)

    def test_save_and_load_round_trip(self, store, roster):
        context = store.initialize(roster)
        context.key_decisions.append("Use SQLite")
        context.consensus_signals["Sam"] = ConsensusSignal.AGREE
        store.save(context)

        loaded = store.load()
        assert loaded.key_decisions == ["Use SQLite"]
        assert loaded.consensus_signals == {"Sam": ConsensusSignal.AGREE}
        assert loaded.next_action == context.next_action

    def test_save_leaves_no_temp_files(self, store, roster):
        store.save(store.initialize(roster))
        assert [p.name for p in store.state_dir.iterdir()] == ["orchestrator-context.json"]

    def test_save_stamps_last_updated(self, store, roster):
        context = store.initialize(roster)
        before = context.last_updated
        saved = store.save(context)
        assert saved.last_updated >= before

    def test_corrupt_snapshot_raises(self, store):
        store.state_dir.mkdir(parents=True)
        store.context_path.write_text("{\"run_number\": ", encoding="utf-8")
        with pytest.raises(ContextStoreError, match="Corrupt context snapshot"):
            store.load()

    def test_load_or_initialize_resumes(self, store, roster):
        context = store.initialize(roster)
        context.run_number = 7
        store.save(context)
        assert store.load_or_initialize(roster).run_number == 7

    def test_load_or_initialize_adds_new_roster_members(self, store, roster):
        store.save(store.initialize(roster[:2]))
        context = store.load_or_initialize(roster)
        assert set(context.actor_states) == set(roster)


class TestLock:
    def test_second_lock_is_rejected(self, store):
        with store.lock():
            with pytest.raises(ConcurrentRunError):
                with store.lock():
                    pass

    def test_lock_is_released(self, store):
        with store.lock():
            pass
        with store.lock():
            pass


class TestSummarize:
    def test_short_history_untouched(self, store, roster):
        context = store.initialize(roster)
        context.history = history(20)
        assert store.summarize(context).history == context.history

    def test_long_history_archived(self, store, roster):
        context = store.initialize(roster)
        context.history = history(25)
        result = store.summarize(context)

        assert len(result.history) == 21
        archived = result.history[0]
        assert archived.phase == ARCHIVED_PHASE
        assert archived.summary == "[Archived 5 cycles: runs 1–5]"
        assert archived.cost == pytest.approx(0.05)
        assert result.history[1].run_number == 6

    def test_archives_merge_across_saves(self, store, roster):
        context = store.initialize(roster)
        context.history = history(25)
        once = store.summarize(context)
        once.history.extend(history(3, start=26))
        twice = store.summarize(once)

        assert len(twice.history) == 21
        assert twice.history[0].summary == "[Archived 8 cycles: runs 1–8]"
        assert twice.history[0].cost == pytest.approx(0.08)

    def test_summarize_is_idempotent(self, store, roster):
        context = store.initialize(roster)
        context.history = history(30)
        once = store.summarize(context)
        assert store.summarize(once).history == once.history

    def test_decisions_capped(self, store, roster):
        context = store.initialize(roster)
        context.key_decisions = [f"d{i}" for i in range(20)]
        assert store.summarize(context).key_decisions == [f"d{i}" for i in range(5, 20)]

    def test_code_changes_capped_and_truncated(self, store, roster):
        context = store.initialize(roster)
        context.code_changes = [
            CodeChange(file=f"src/f{i}.py", action="write", content="y" * 800, status=ChangeStatus.APPLIED)
            for i in range(12)
        ]
        result = store.summarize(context)

        assert [c.file for c in result.code_changes] == [f"src/f{i}.py" for i in range(2, 12)]
        for change in result.code_changes:
            assert change.content == "y" * 500 + TRUNCATION_MARKER

    def test_pending_changes_keep_full_content(self, store, roster):
        context = store.initialize(roster)
        context.code_changes = [CodeChange(file="src/a.py", action="write", content="z" * 900)]
        assert store.summarize(context).code_changes[0].content == "z" * 900

    def test_cap_drops_settled_before_pending(self, store, roster):
        context = store.initialize(roster)
        pending = CodeChange(file="src/keep.py", action="write", content="p")
        settled = [
            CodeChange(file=f"src/s{i}.py", action="write", status=ChangeStatus.APPLIED)
            for i in range(10)
        ]
        context.code_changes = [pending, *settled]
        files = [c.file for c in store.summarize(context).code_changes]
        assert "src/keep.py" in files
        assert "src/s0.py" not in files

    def test_never_touches_live_state(self, store, roster):
        context = store.initialize(roster)
        context.consensus_signals = {"Alex": ConsensusSignal.AGREE}
        context.history = history(40)
        context.key_decisions = [f"d{i}" for i in range(40)]
        result = store.summarize(context)
        assert result.next_action == context.next_action
        assert result.consensus_signals == context.consensus_signals
        assert result.actor_states == context.actor_states

    def test_does_not_mutate_input(self, store, roster):
        context = store.initialize(roster)
        context.history = history(30)
        store.summarize(context)
        assert len(context.history) == 30


class TestContextHealth:
    def test_reports_sizes(self, store, roster):
        context = store.initialize(roster)
        context.key_decisions = [f"d{i}" for i in range(16)]
        health = store.context_health(context)
        assert health["decisions_size"] == 16
        assert health["needs_summarization"] is True
        assert health["estimated_tokens"] > 0


class TestBriefing:
    def test_fresh_briefing(self, store, roster):
        text = store.generate_briefing(store.initialize(roster))
        assert text.startswith("=== ORCHESTRATOR BRIEFING - RUN #1 ===")
        assert "This is the first run" in text
        assert "CURRENT PHASE: discussion" in text
        assert "(None yet)" in text
        assert "(No signals yet)" in text
        assert "NEXT ACTION: continue_discussion -> Alex" in text
        assert "TOTAL COST SO FAR: $0.0000" in text

    def test_briefing_reflects_state(self, store, roster):
        context = store.initialize(roster)
        context.history = history(2)
        context.key_decisions = ["Ship the CLI first"]
        context.consensus_signals = {"Sam": ConsensusSignal.AGREE, "Alex": ConsensusSignal.BUILDING}
        context.actor_states["Sam"].turns_taken = 3
        context.actor_states["Sam"].total_cost = 0.25
        context.total_cost = 0.25

        text = store.generate_briefing(context)
        assert "run 2" in text
        assert "  1. Ship the CLI first" in text
        assert text.index("Alex: building") < text.index("Sam: agree")
        assert "Sam: 3 turns, $0.2500" in text
        assert "TOTAL COST SO FAR: $0.2500" in text

    def test_briefing_is_deterministic(self, store, roster):
        context = store.initialize(roster)
        assert store.generate_briefing(context) == store.generate_briefing(context)


class TestOverride:
    def test_no_record(self, store, roster):
        context = store.initialize(roster)
        assert store.read_override() is None
        assert store.apply_override(context, roster) is False

    def test_force_transition(self, store, roster, caplog):
        context = store.initialize(roster)
        record = OverrideRecord(phase=Phase.CODE_REVIEW, reason="stuck in discussion")

        with caplog.at_level("WARNING", logger="conclave.memory.context_store"):
            store.force_transition(context, record, roster)

        assert context.phase == Phase.CODE_REVIEW
        assert context.consensus_forced is True
        assert context.consensus_signals == {name: ConsensusSignal.AGREE for name in roster}
        assert context.next_action.type == NextActionType.CODE_REVIEW
        assert context.next_action.target_actor == "Alex"
        assert context.key_decisions[-1] == (
            "MANUAL OVERRIDE: phase discussion -> code_review (stuck in discussion)"
        )
        assert "MANUAL OVERRIDE" in caplog.text

    def test_force_transition_uses_explicit_next_action(self, store, roster):
        context = store.initialize(roster)
        record = OverrideRecord(
            phase=Phase.TESTING,
            next_action=NextAction(type=NextActionType.TESTING, reason="verify", target_actor="Jordan"),
        )
        store.force_transition(context, record, roster)
        assert context.next_action.target_actor == "Jordan"

    def test_force_transition_rejects_unknown_target(self, store, roster):
        context = store.initialize(roster)
        record = OverrideRecord(
            phase=Phase.TESTING,
            next_action=NextAction(type=NextActionType.TESTING, target_actor="Nobody"),
        )
        with pytest.raises(ContextStoreError, match="unknown actor"):
            store.force_transition(context, record, roster)

    def test_yaml_record_applied_and_retired(self, store, roster):
        context = store.initialize(roster)
        store.write_override(OverrideRecord(phase=Phase.APPLY_CHANGES, reason="approved offline"))

        assert store.apply_override(context, roster) is True
        assert context.phase == Phase.APPLY_CHANGES
        assert not store.override_path.exists()
        assert store.override_path.with_name("override.yaml.applied").exists()

    def test_json_record_accepted(self, store, roster):
        store.state_dir.mkdir(parents=True)
        store.override_path.write_text(json.dumps({"phase": "testing"}), encoding="utf-8")
        record = store.read_override()
        assert record.phase == Phase.TESTING
        assert record.reason == "Manual override"

    def test_invalid_phase_rejected(self, store):
        store.state_dir.mkdir(parents=True)
        store.override_path.write_text(yaml.safe_dump({"phase": "shipping"}), encoding="utf-8")
        with pytest.raises(ContextStoreError, match="Invalid override record"):
            store.read_override()

    def test_non_mapping_rejected(self, store):
        store.state_dir.mkdir(parents=True)
        store.override_path.write_text("- just\n- a list\n", encoding="utf-8")
        with pytest.raises(ContextStoreError, match="must be a mapping"):
            store.read_override()
