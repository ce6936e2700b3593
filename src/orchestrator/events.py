"""JSONL event sink for cycle activity."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Optional


@dataclass
class EventLog:
    """Appends JSONL events and keeps per-type counters.

    With no path the log only counts, which is what tests use.
    """

    jsonl_path: Optional[Path] = None
    counters: dict[str, int] = field(default_factory=dict)

    def emit(self, event_type: str, payload: dict[str, Any]) -> None:
        self.counters[event_type] = self.counters.get(event_type, 0) + 1
        if self.jsonl_path is None:
            return
        record = {
            "timestamp": datetime.now(UTC).isoformat(),
            "event_type": event_type,
            "payload": payload,
        }
        self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
        with self.jsonl_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(record, ensure_ascii=True, default=str) + "\n")

    def snapshot(self) -> dict[str, Any]:
        return {
            "timestamp": datetime.now(UTC).isoformat(),
            "counters": dict(sorted(self.counters.items())),
        }
