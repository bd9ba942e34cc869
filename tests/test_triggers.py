from datetime import timedelta

import pytest
from sqlalchemy import select

from ecosystem.bus import EVT_EFFECT_ENDED, EVT_EFFECT_TRIGGERED
from ecosystem.clock import ManualClock
from ecosystem.data_loader import EcosystemSettings, EffectDef
from ecosystem.errors import RegionNotFound, UnknownEffect
from ecosystem.loop import EcosystemLoop
from ecosystem.models import EndReason, Metric, TriggerDirection, TriggeredBy
from ecosystem.store import ActiveEffectRow


def _make_loop(tmp_path, effect_catalog=None, **sections):
    return EcosystemLoop(
        settings=EcosystemSettings(**sections),
        clock=ManualClock(),
        database_url=f"sqlite:///{tmp_path / 'turf.db'}",
        effect_catalog=effect_catalog,
    )


@pytest.fixture
def loop(tmp_path):
    loop = _make_loop(tmp_path)
    yield loop
    loop.close()


def _open_rows(loop, region_id, effect_type):
    with loop.store.session() as session:
        return session.scalars(select(ActiveEffectRow).where(
            ActiveEffectRow.region_id == region_id,
            ActiveEffectRow.effect_type == effect_type,
            ActiveEffectRow.ended_at.is_(None),
        )).all()


def test_threshold_starts_effect_with_catalog_duration(loop):
    loop.regions.create_region("downtown", crime_index=85)
    assert loop.triggers.evaluate_region("downtown") == ["police_crackdown"]

    (effect,) = loop.reader.get_active_effects("downtown")
    assert effect.triggered_by == TriggeredBy.THRESHOLD
    assert effect.trigger_metric == Metric.CRIME_INDEX
    assert effect.trigger_value == 85
    assert effect.expires_at - effect.started_at == timedelta(minutes=120)
    assert effect.modifiers["crimeSuccessModifier"] == -0.15


def test_active_effect_not_started_twice(loop):
    loop.regions.create_region("downtown", crime_index=85)
    loop.triggers.evaluate_region("downtown")
    loop.clock.advance(minutes=10)
    assert loop.triggers.evaluate_region("downtown") == []
    assert len(_open_rows(loop, "downtown", "police_crackdown")) == 1


def test_below_direction_is_inclusive(loop):
    loop.regions.create_region("at", police_presence=20)
    loop.regions.create_region("above", police_presence=21)
    assert loop.triggers.evaluate_region("at") == ["lawless_zone"]
    assert loop.triggers.evaluate_region("above") == []


def test_neutral_region_triggers_nothing(loop):
    loop.regions.create_region("downtown")
    assert loop.triggers.evaluate_region("downtown") == []


def test_several_effects_can_be_active_together(loop):
    loop.regions.create_region("downtown", crime_index=85, police_presence=15, street_activity=80)
    assert loop.triggers.evaluate_region("downtown") == ["police_crackdown", "lawless_zone", "street_heat"]


def test_expiry_sweep_is_idempotent(loop):
    loop.regions.create_region("downtown", crime_index=85)
    loop.triggers.evaluate_region("downtown")
    loop.clock.advance(minutes=121)

    assert loop.triggers.expire_due_effects() == 1
    assert loop.triggers.expire_due_effects() == 0
    assert loop.reader.get_active_effects("downtown") == []
    (ended,) = loop.reader.get_effect_history("downtown")
    assert ended.ended_by == EndReason.EXPIRED
    assert ended.ended_at == loop.clock.now()


def test_effect_not_expired_before_its_time(loop):
    loop.regions.create_region("downtown", crime_index=85)
    loop.triggers.evaluate_region("downtown")
    loop.clock.advance(minutes=119)
    assert loop.triggers.expire_due_effects() == 0
    assert len(loop.reader.get_active_effects("downtown")) == 1


def test_cooldown_blocks_retrigger(loop):
    loop.regions.create_region("downtown", crime_index=85)
    loop.triggers.evaluate_region("downtown")
    loop.clock.advance(minutes=121)
    loop.triggers.expire_due_effects()

    assert loop.triggers.evaluate_region("downtown") == []
    loop.clock.advance(minutes=59)
    assert loop.triggers.evaluate_region("downtown") == []
    loop.clock.advance(minutes=2)
    assert loop.triggers.evaluate_region("downtown") == ["police_crackdown"]


def test_overdue_effect_closed_without_sweep(loop):
    ended = []
    loop.bus.subscribe(EVT_EFFECT_ENDED, ended.append)
    loop.regions.create_region("downtown", crime_index=85)
    loop.triggers.evaluate_region("downtown")
    loop.clock.advance(minutes=125)

    assert loop.triggers.evaluate_region("downtown") == []
    assert _open_rows(loop, "downtown", "police_crackdown") == []
    assert [e.data["ended_by"] for e in ended] == ["expired"]


def test_cancel_effect(loop):
    loop.regions.create_region("downtown", crime_index=85)
    loop.triggers.evaluate_region("downtown")

    assert loop.triggers.cancel_effect("downtown", "police_crackdown", EndReason.COUNTERED) is True
    assert loop.triggers.cancel_effect("downtown", "police_crackdown") is False
    (effect,) = loop.reader.get_effect_history("downtown")
    assert effect.ended_by == EndReason.COUNTERED
    assert loop.reader.is_effect_on_cooldown("downtown", "police_crackdown")
    assert loop.triggers.evaluate_region("downtown") == []


def test_cancel_unknown_region(loop):
    with pytest.raises(RegionNotFound):
        loop.triggers.cancel_effect("atlantis", "police_crackdown")


def test_manual_trigger_ignores_threshold(loop):
    loop.regions.create_region("downtown")
    effect = loop.triggers.trigger_effect("downtown", "economic_boom")
    assert effect.triggered_by == TriggeredBy.ADMIN
    assert effect.trigger_value == 50
    assert effect.duration_minutes == 180
    assert loop.reader.is_effect_active("downtown", "economic_boom")


def test_manual_trigger_duration_override(loop):
    loop.regions.create_region("downtown")
    effect = loop.triggers.trigger_effect("downtown", "street_heat", TriggeredBy.PLAYER, duration_override=15)
    assert effect.triggered_by == TriggeredBy.PLAYER
    assert effect.expires_at == loop.clock.now() + timedelta(minutes=15)


def test_manual_trigger_respects_active_and_cooldown(loop):
    loop.regions.create_region("downtown")
    assert loop.triggers.trigger_effect("downtown", "street_heat") is not None
    assert loop.triggers.trigger_effect("downtown", "street_heat") is None
    loop.triggers.cancel_effect("downtown", "street_heat")
    assert loop.triggers.trigger_effect("downtown", "street_heat") is None
    loop.clock.advance(minutes=45)
    assert loop.triggers.trigger_effect("downtown", "street_heat") is not None


def test_manual_trigger_errors(loop):
    loop.regions.create_region("downtown")
    with pytest.raises(UnknownEffect):
        loop.triggers.trigger_effect("downtown", "alien_invasion")
    with pytest.raises(RegionNotFound):
        loop.triggers.trigger_effect("atlantis", "street_heat")
    with pytest.raises(ValueError):
        loop.triggers.trigger_effect("downtown", "street_heat", duration_override=0)


def test_racing_start_refused_by_storage(loop, monkeypatch):
    loop.regions.create_region("downtown", crime_index=85)
    assert loop.triggers.evaluate_region("downtown") == ["police_crackdown"]

    # A second pass that saw neither the live row nor its end time.
    monkeypatch.setattr(loop.store, "open_effect", lambda session, region_id, effect_type: None)
    monkeypatch.setattr(loop.store, "last_effect_end", lambda session, region_id, effect_type: None)

    assert loop.triggers.evaluate_region("downtown") == []
    monkeypatch.undo()
    assert len(_open_rows(loop, "downtown", "police_crackdown")) == 1


def test_triggered_notification(loop):
    seen = []
    loop.bus.subscribe(EVT_EFFECT_TRIGGERED, seen.append)
    loop.regions.create_region("downtown", crime_index=85)
    loop.triggers.evaluate_region("downtown")
    assert seen[0].data["effect_type"] == "police_crackdown"
    assert seen[0].data["trigger_value"] == 85


def test_inactive_definitions_are_skipped(tmp_path):
    catalog = [
        EffectDef(effect_type="curfew", name="Curfew", trigger_metric=Metric.CRIME_INDEX,
                  trigger_threshold=60, trigger_direction=TriggerDirection.ABOVE, is_active=False),
        EffectDef(effect_type="block_party", name="Block Party", trigger_metric=Metric.STREET_ACTIVITY,
                  trigger_threshold=40, trigger_direction=TriggerDirection.ABOVE),
    ]
    loop = _make_loop(tmp_path, effect_catalog=catalog)
    loop.regions.create_region("downtown", crime_index=90)
    assert loop.triggers.evaluate_region("downtown") == ["block_party"]
    loop.close()


def test_evaluate_all_summary(loop):
    loop.regions.create_region("hot", crime_index=85)
    loop.regions.create_region("calm")
    summary = loop.triggers.evaluate_all()
    assert summary.worker == "triggers"
    assert summary.regions_processed == 2
    assert summary.effects_triggered == 1


def test_evaluate_all_rotates_through_batches(tmp_path):
    loop = _make_loop(tmp_path, aggregation={"region_batch_size": 2})
    for region_id in ("a", "b", "c"):
        loop.regions.create_region(region_id)
    evaluated = []
    real = loop.triggers.evaluate_region

    def spy(region_id):
        evaluated.append(region_id)
        return real(region_id)

    loop.triggers.evaluate_region = spy
    loop.triggers.evaluate_all()
    loop.triggers.evaluate_all()
    assert evaluated == ["a", "b", "c", "a"]
    loop.close()
