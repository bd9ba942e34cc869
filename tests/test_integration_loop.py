"""
Turf — tests/test_integration_loop.py
Full ecosystem loop: record, aggregate, trigger, expire, decay, journal.
"""

import pytest

from ecosystem.clock import ManualClock
from ecosystem.data_loader import EcosystemSettings
from ecosystem.journal import JournalReader
from ecosystem.loop import EcosystemLoop
from ecosystem.models import EndReason, RegionStatus


@pytest.fixture
def loop(tmp_path):
    loop = EcosystemLoop(
        settings=EcosystemSettings(),
        clock=ManualClock(),
        database_url=f"sqlite:///{tmp_path / 'turf.db'}",
        journal_path=tmp_path / "sessions" / "journal.jsonl",
    )
    yield loop
    loop.close()


def test_crime_wave_brings_crackdown(loop):
    loop.regions.create_region("downtown")
    for _ in range(3):
        loop.record_event("downtown", "crime_committed", 8)
    loop.record_event("downtown", "crew_battle", 9)

    summary = loop.run_all()

    assert summary.worker == "all"
    assert summary.events_consumed == 4
    assert summary.effects_triggered == 1
    state = loop.reader.get_region_state("downtown")
    assert state.crime_index == 100
    assert state.crew_tension == 20
    assert state.status == RegionStatus.STABLE

    (effect,) = loop.reader.get_active_effects("downtown")
    assert effect.effect_type == "police_crackdown"
    assert effect.duration_minutes == 120
    assert loop.reader.get_combined_modifiers("downtown")["crimeSuccessModifier"] == -0.15


def test_crew_war_is_journaled(loop, tmp_path):
    loop.regions.create_region("downtown")
    for _ in range(3):
        loop.record_event("downtown", "crew_battle", 9)

    loop.run_all()

    assert loop.reader.get_region_state("downtown").status == RegionStatus.WARZONE
    reader = JournalReader(tmp_path / "sessions" / "journal.jsonl")
    (change,) = reader.status_changes()
    assert change["region_id"] == "downtown"
    assert change["data"]["current"] == "warzone"


def test_effects_expire_on_a_later_pass(loop):
    loop.regions.create_region("downtown", crime_index=85)
    loop.run_all()
    loop.clock.advance(minutes=121)

    summary = loop.run_all()

    assert summary.effects_expired == 1
    (ended,) = loop.reader.get_effect_history("downtown")
    assert ended.ended_by == EndReason.EXPIRED
    # still above threshold, but cooling down
    assert summary.effects_triggered == 0


def test_quiet_district_drifts_back(loop):
    loop.regions.create_region("downtown", crime_index=90, police_presence=10, heat_level=20)
    loop.clock.advance(hours=3)

    loop.run_decay()
    state = loop.reader.get_region_state("downtown")

    assert state.crime_index == 89
    assert state.police_presence == 11
    assert state.heat_level == 18


def test_seeded_downtown_reads(loop):
    loop.regions.seed_from_catalog()
    loop.run_triggers()

    state = loop.reader.get_region_state("downtown")
    assert state.status == RegionStatus.GENTRIFYING
    summary = loop.reader.get_region_summary("downtown")
    assert "street_heat" in summary.active_effects
    assert loop.reader.get_region_modifiers("downtown")["property_income"] == pytest.approx(1.2)


def test_summary_dumps_camel_case(loop):
    loop.regions.create_region("downtown")
    dumped = loop.run_all().model_dump(by_alias=True, mode="json")
    for key in ("regionsProcessed", "eventsConsumed", "effectsTriggered", "effectsExpired", "ranAt"):
        assert key in dumped


def test_worker_status_after_manual_runs(loop):
    loop.regions.create_region("downtown")
    loop.run_all()
    status = loop.status()
    assert set(status) == {"aggregation", "decay", "triggers", "expiry"}
    assert status["aggregation"].last_run_at == loop.clock.now()
    assert status["decay"].last_run_at is None
