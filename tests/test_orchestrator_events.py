"""Tests for src/orchestrator/events.py."""

import json

from src.orchestrator.events import EventLog


class TestEventLog:
    def test_counts_without_path(self):
        log = EventLog()
        log.emit("turn", {"actor": "Alex"})
        log.emit("turn", {"actor": "Sam"})
        log.emit("phase_transition", {"to": "code_review"})
        assert log.counters == {"turn": 2, "phase_transition": 1}

    def test_writes_jsonl(self, tmp_path):
        path = tmp_path / "events" / "events.jsonl"
        log = EventLog(jsonl_path=path)
        log.emit("turn", {"actor": "Alex"})
        log.emit("cycle_complete", {"stop_reason": "consensus"})

        lines = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
        assert [line["event_type"] for line in lines] == ["turn", "cycle_complete"]
        assert lines[0]["payload"] == {"actor": "Alex"}
        assert "timestamp" in lines[0]

    def test_snapshot_is_sorted(self):
        log = EventLog()
        log.emit("turn", {})
        log.emit("handoff_fallback", {})
        assert list(log.snapshot()["counters"]) == ["handoff_fallback", "turn"]
