from datetime import datetime

import pytest

from ecosystem.bus import (
    EVT_EVENT_RECORDED,
    EVT_REGION_DECAYED,
    EVT_STATUS_CHANGED,
    EVT_TICK_COMPLETED,
    EventBus,
)
from ecosystem.journal import JournalInscriber, JournalReader, score_significance

NOW = datetime(2025, 1, 1, 12, 0, 0)


@pytest.fixture
def journal(tmp_path):
    bus = EventBus()
    path = tmp_path / "sessions" / "journal.jsonl"
    inscriber = JournalInscriber(bus, path)
    return bus, inscriber, JournalReader(path)


def test_status_change_is_inscribed(journal):
    bus, _, reader = journal
    bus.publish(EVT_STATUS_CHANGED, NOW, region_id="downtown", previous="stable", current="warzone")

    (entry,) = reader.status_changes()
    assert entry["region_id"] == "downtown"
    assert entry["significance"] == 5
    assert entry["data"]["current"] == "warzone"
    assert entry["entry_id"]


def test_routine_decay_is_dropped(journal):
    bus, _, reader = journal
    bus.publish(EVT_REGION_DECAYED, NOW, region_id="downtown")
    assert reader.all_entries() == []


def test_severe_event_recorded_is_kept(journal):
    bus, _, reader = journal
    bus.publish(EVT_EVENT_RECORDED, NOW, region_id="downtown", severity=3)
    bus.publish(EVT_EVENT_RECORDED, NOW, region_id="downtown", severity=9)
    assert [e["data"]["severity"] for e in reader.by_event_key(EVT_EVENT_RECORDED)] == [9]


def test_idle_tick_is_dropped(journal):
    bus, _, reader = journal
    bus.publish(EVT_TICK_COMPLETED, NOW, worker="decay",
                summary={"regionsProcessed": 0, "effectsTriggered": 0, "effectsExpired": 0})
    bus.publish(EVT_TICK_COMPLETED, NOW, worker="aggregation",
                summary={"regionsProcessed": 2, "effectsTriggered": 0, "effectsExpired": 0})
    assert [e["data"]["worker"] for e in reader.all_entries()] == ["aggregation"]


def test_by_region(journal):
    bus, _, reader = journal
    bus.publish(EVT_STATUS_CHANGED, NOW, region_id="downtown")
    bus.publish(EVT_STATUS_CHANGED, NOW, region_id="parkdale")
    assert len(reader.by_region("parkdale")) == 1


def test_detach_stops_writing(journal):
    bus, inscriber, reader = journal
    inscriber.detach()
    bus.publish(EVT_STATUS_CHANGED, NOW, region_id="downtown")
    assert reader.all_entries() == []


def test_missing_journal_reads_empty(tmp_path):
    assert JournalReader(tmp_path / "nope.jsonl").all_entries() == []


def test_score_unknown_key_is_lowest():
    bus = EventBus()
    event = bus.publish("something_else", NOW)
    assert score_significance(event) == 1
