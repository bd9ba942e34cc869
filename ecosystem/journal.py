"""
Turf — ecosystem/journal.py
Journal: append-only JSONL record of ecosystem notifications.
=============================================================
Version:     0.2
Stack:       Python 3.11+ | stdlib json | EventBus
Status:      Optional. The engine runs without it.

Architecture notes
------------------
- PASSIVE wildcard subscriber. It never emits events.
- Append-only JSONL. Written lines are never modified or truncated.
- Significance gate (1-5): notifications below JOURNAL_SIGNIFICANCE_MIN are
  dropped. Status changes and effect lifecycle always make it in; routine
  aggregation and decay passes do not by default.

Design Variables
----------------
  JOURNAL_SIGNIFICANCE_MIN   2
"""

from __future__ import annotations

import json
import uuid
from pathlib import Path
from typing import Any, Dict, List

from ecosystem.bus import (
    EVT_EFFECT_ENDED,
    EVT_EFFECT_TRIGGERED,
    EVT_EVENT_RECORDED,
    EVT_REGION_AGGREGATED,
    EVT_REGION_DECAYED,
    EVT_STATUS_CHANGED,
    EVT_TICK_COMPLETED,
    WILDCARD,
    EcosystemEvent,
    EventBus,
)

JOURNAL_SIGNIFICANCE_MIN: int = 2

_SIGNIFICANCE_TABLE: Dict[str, int] = {
    EVT_REGION_DECAYED:    1,
    EVT_EVENT_RECORDED:    1,
    EVT_TICK_COMPLETED:    2,
    EVT_REGION_AGGREGATED: 2,
    EVT_EFFECT_ENDED:      3,
    EVT_EFFECT_TRIGGERED:  4,
    EVT_STATUS_CHANGED:    5,
}


def score_significance(event: EcosystemEvent) -> int:
    """
    Base score from the table, with two overrides:
      - an event_recorded at severity >= 8 counts as 3
      - a tick_completed that did nothing counts as 1
    """
    base = _SIGNIFICANCE_TABLE.get(event.event_key, 1)

    if event.event_key == EVT_EVENT_RECORDED:
        severity = event.data.get("severity", 0)
        if isinstance(severity, int) and severity >= 8:
            base = max(base, 3)

    if event.event_key == EVT_TICK_COMPLETED:
        summary = event.data.get("summary", {})
        if not summary.get("regionsProcessed") and not summary.get("effectsTriggered") \
                and not summary.get("effectsExpired"):
            base = 1

    return base


class JournalInscriber:
    """
    Usage:
        bus = EventBus()
        JournalInscriber(bus, Path("sessions/journal.jsonl"))
    """

    def __init__(
        self,
        bus: EventBus,
        journal_path: Path,
        significance_min: int = JOURNAL_SIGNIFICANCE_MIN,
    ) -> None:
        self.bus = bus
        self.journal_path = journal_path
        self.significance_min = significance_min
        self.journal_path.parent.mkdir(parents=True, exist_ok=True)
        bus.subscribe(WILDCARD, self._on_event)

    def detach(self) -> None:
        self.bus.unsubscribe(WILDCARD, self._on_event)

    def _on_event(self, event: EcosystemEvent) -> None:
        significance = score_significance(event)
        if significance < self.significance_min:
            return
        self._append_jsonl(event, significance)

    def _append_jsonl(self, event: EcosystemEvent, significance: int) -> None:
        entry = {
            "entry_id": str(uuid.uuid4()),
            "significance": significance,
            **event.model_dump(mode="json"),
        }
        with open(self.journal_path, "a", encoding="utf-8") as fh:
            fh.write(json.dumps(entry, ensure_ascii=False) + "\n")


class JournalReader:
    """Read-only query interface for a journal.jsonl file."""

    def __init__(self, journal_path: Path) -> None:
        self.journal_path = journal_path

    def all_entries(self) -> List[Dict[str, Any]]:
        if not self.journal_path.exists():
            return []
        entries = []
        with open(self.journal_path, "r", encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if line:
                    entries.append(json.loads(line))
        return entries

    def by_event_key(self, event_key: str) -> List[Dict[str, Any]]:
        return [e for e in self.all_entries() if e.get("event_key") == event_key]

    def by_region(self, region_id: str) -> List[Dict[str, Any]]:
        return [e for e in self.all_entries() if e.get("region_id") == region_id]

    def status_changes(self) -> List[Dict[str, Any]]:
        return self.by_event_key(EVT_STATUS_CHANGED)
