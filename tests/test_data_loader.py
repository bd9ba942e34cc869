import pytest
from pydantic import ValidationError

from ecosystem.data_loader import (
    EcosystemSettings,
    clear_caches,
    get_effect_def,
    get_effect_defs,
    get_region_defs,
    get_settings,
)
from ecosystem.models import EventType, Metric, TriggerDirection


@pytest.fixture(autouse=True)
def _fresh_caches():
    clear_caches()
    yield
    clear_caches()


def test_load_default_settings():
    settings = get_settings()
    assert settings.aggregation.interval_seconds == 300
    assert settings.aggregation.event_batch_size == 500
    assert settings.decay.interval_seconds == 3600
    assert settings.decay.baseline == 50
    assert settings.tension.per_conflict == 20
    assert EventType.CREW_BATTLE in settings.tension.conflict_types


def test_missing_settings_file_yields_defaults(tmp_path):
    assert get_settings(tmp_path / "absent.toml") == EcosystemSettings()


def test_partial_settings_override(tmp_path):
    path = tmp_path / "ecosystem.toml"
    path.write_text("[decay]\nmetric_step = 3\n", encoding="utf-8")
    settings = get_settings(path)
    assert settings.decay.metric_step == 3
    assert settings.decay.heat_step == 2
    assert settings.aggregation.event_batch_size == 500


def test_invalid_settings_rejected(tmp_path):
    path = tmp_path / "ecosystem.toml"
    path.write_text("[aggregation]\nevent_batch_size = 0\n", encoding="utf-8")
    with pytest.raises(ValidationError):
        get_settings(path)


def test_load_police_crackdown():
    effect = get_effect_def("police_crackdown")
    assert effect.trigger_metric == Metric.CRIME_INDEX
    assert effect.trigger_threshold == 80
    assert effect.trigger_direction == TriggerDirection.ABOVE
    assert effect.duration_minutes == 120
    assert effect.cooldown_minutes == 60
    assert effect.modifiers["heatGainModifier"] == 2.0


def test_catalog_has_six_effects_in_order():
    types = [e.effect_type for e in get_effect_defs()]
    assert types == [
        "police_crackdown", "lawless_zone", "economic_boom",
        "street_heat", "gang_tensions", "quiet_streets",
    ]


def test_unknown_effect_is_none():
    assert get_effect_def("alien_invasion") is None


def test_trigger_direction_is_inclusive():
    crackdown = get_effect_def("police_crackdown")
    assert crackdown.is_met_by(80)
    assert not crackdown.is_met_by(79)
    lawless = get_effect_def("lawless_zone")
    assert lawless.is_met_by(20)
    assert not lawless.is_met_by(21)


def test_effect_catalog_is_cached():
    assert get_effect_defs() is get_effect_defs()


def test_duplicate_effect_types_rejected(tmp_path):
    entry = (
        '[[effects]]\neffect_type = "x"\nname = "X"\ntrigger_metric = "crime_index"\n'
        'trigger_threshold = 10\ntrigger_direction = "above"\n'
    )
    path = tmp_path / "effects.toml"
    path.write_text(entry + entry, encoding="utf-8")
    with pytest.raises(ValidationError):
        get_effect_defs(path)


def test_bad_trigger_metric_rejected(tmp_path):
    path = tmp_path / "effects.toml"
    path.write_text(
        '[[effects]]\neffect_type = "x"\nname = "X"\ntrigger_metric = "vibes"\n'
        'trigger_threshold = 10\ntrigger_direction = "above"\n',
        encoding="utf-8",
    )
    with pytest.raises(ValidationError):
        get_effect_defs(path)


def test_missing_catalog_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        get_effect_defs(tmp_path / "effects.toml")
    with pytest.raises(FileNotFoundError):
        get_region_defs(tmp_path / "districts.toml")


def test_load_district_catalog():
    regions = {r.id: r for r in get_region_defs()}
    assert len(regions) == 16
    assert regions["financial"].difficulty == 5
    assert regions["downtown"].street_activity == 75
    assert regions["scarborough"].crime_rate == 60
