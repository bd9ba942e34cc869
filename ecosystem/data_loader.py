"""
Turf — ecosystem/data_loader.py
JIT Data Loaders for TOML seed data powered by Pydantic.
=============================================================================================
Version:     0.3
Stack:       Python 3.11+ | Pydantic v2 | tomllib
Status:      Core data validation and loading layer.

Files (under DATA_DIR)
----------------------
  ecosystem.toml   tunables; optional, every key has a default below
  effects.toml     EffectDefinition catalog; required
  districts.toml   static region catalog; required

Design Variables (defaults; override in ecosystem.toml, never hardcode elsewhere)
---------------------------------------------------------------------------------
  AGGREGATION_INTERVAL_SECONDS   300
  EVENT_BATCH_SIZE               500    events folded per region per tick
  REGION_BATCH_SIZE              200    regions visited per worker tick
  TENSION_WINDOW_HOURS           24
  TENSION_HIGH_SEVERITY          7      conflict events at or above this count
  TENSION_PER_CONFLICT           20     crew tension points per counted conflict
  DECAY_INTERVAL_SECONDS         3600
  DECAY_BASELINE                 50
  DECAY_METRIC_STEP              1      crime/police step toward baseline
  DECAY_HEAT_STEP                2
  DECAY_TENSION_STEP             1
  TRIGGER_INTERVAL_SECONDS       300
  EXPIRY_INTERVAL_SECONDS        60
  LOCK_TIMEOUT_SECONDS           2.0
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ecosystem.models import EventType, Metric, METRIC_MAX, METRIC_MIN, ModifierMap, TriggerDirection

# ================================================================================
# DESIGN VARIABLE DEFAULTS
# ================================================================================

DATABASE_URL: str = "sqlite:///sessions/ecosystem.db"

AGGREGATION_INTERVAL_SECONDS: float = 300
EVENT_BATCH_SIZE: int = 500
REGION_BATCH_SIZE: int = 200

TENSION_WINDOW_HOURS: float = 24
TENSION_HIGH_SEVERITY: int = 7
TENSION_PER_CONFLICT: int = 20
TENSION_CONFLICT_TYPES: List[EventType] = [
    EventType.CREW_BATTLE,
    EventType.PLAYER_ATTACKED,
    EventType.TERRITORY_CLAIMED,
    EventType.TERRITORY_LOST,
]
HEAT_CRIMINAL_TYPES: List[EventType] = [
    EventType.CRIME_COMMITTED,
    EventType.HEIST_EXECUTED,
    EventType.PLAYER_ATTACKED,
    EventType.CREW_BATTLE,
]

DECAY_INTERVAL_SECONDS: float = 3600
DECAY_BASELINE: int = 50
DECAY_METRIC_STEP: int = 1
DECAY_HEAT_STEP: int = 2
DECAY_TENSION_STEP: int = 1

TRIGGER_INTERVAL_SECONDS: float = 300
EXPIRY_INTERVAL_SECONDS: float = 60

LOCK_TIMEOUT_SECONDS: float = 2.0

# ================================================================================
# SCHEMAS
# ================================================================================

class StorageSettings(BaseModel):
    model_config = ConfigDict(frozen=True)
    database_url: str = DATABASE_URL


class AggregationSettings(BaseModel):
    model_config = ConfigDict(frozen=True)
    interval_seconds: float = Field(AGGREGATION_INTERVAL_SECONDS, gt=0)
    event_batch_size: int = Field(EVENT_BATCH_SIZE, gt=0)
    region_batch_size: int = Field(REGION_BATCH_SIZE, gt=0)


class TensionSettings(BaseModel):
    model_config = ConfigDict(frozen=True)
    window_hours: float = Field(TENSION_WINDOW_HOURS, gt=0)
    high_severity: int = Field(TENSION_HIGH_SEVERITY, ge=1, le=10)
    per_conflict: int = Field(TENSION_PER_CONFLICT, ge=0, le=METRIC_MAX)
    conflict_types: List[EventType] = Field(default_factory=lambda: list(TENSION_CONFLICT_TYPES))


class HeatSettings(BaseModel):
    model_config = ConfigDict(frozen=True)
    criminal_types: List[EventType] = Field(default_factory=lambda: list(HEAT_CRIMINAL_TYPES))


class DecaySettings(BaseModel):
    model_config = ConfigDict(frozen=True)
    interval_seconds: float = Field(DECAY_INTERVAL_SECONDS, gt=0)
    baseline: int = Field(DECAY_BASELINE, ge=METRIC_MIN, le=METRIC_MAX)
    metric_step: int = Field(DECAY_METRIC_STEP, ge=0)
    heat_step: int = Field(DECAY_HEAT_STEP, ge=0)
    tension_step: int = Field(DECAY_TENSION_STEP, ge=0)


class TriggerSettings(BaseModel):
    model_config = ConfigDict(frozen=True)
    interval_seconds: float = Field(TRIGGER_INTERVAL_SECONDS, gt=0)
    expiry_interval_seconds: float = Field(EXPIRY_INTERVAL_SECONDS, gt=0)


class LockSettings(BaseModel):
    model_config = ConfigDict(frozen=True)
    acquire_timeout_seconds: float = Field(LOCK_TIMEOUT_SECONDS, ge=0)


class EcosystemSettings(BaseModel):
    model_config = ConfigDict(frozen=True)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    aggregation: AggregationSettings = Field(default_factory=AggregationSettings)
    tension: TensionSettings = Field(default_factory=TensionSettings)
    heat: HeatSettings = Field(default_factory=HeatSettings)
    decay: DecaySettings = Field(default_factory=DecaySettings)
    triggers: TriggerSettings = Field(default_factory=TriggerSettings)
    locks: LockSettings = Field(default_factory=LockSettings)


class EffectDef(BaseModel):
    """Catalog rule: trigger condition + gameplay modifiers + duration + cooldown."""
    model_config = ConfigDict(frozen=True)
    effect_type: str
    name: str
    description: str = ""
    trigger_metric: Metric
    trigger_threshold: int = Field(ge=METRIC_MIN, le=METRIC_MAX)
    trigger_direction: TriggerDirection
    modifiers: ModifierMap = Field(default_factory=dict)
    duration_minutes: int = Field(120, gt=0)
    cooldown_minutes: int = Field(60, ge=0)
    icon: Optional[str] = None
    color: Optional[str] = None
    is_active: bool = True

    def is_met_by(self, value: int) -> bool:
        if self.trigger_direction is TriggerDirection.ABOVE:
            return value >= self.trigger_threshold
        return value <= self.trigger_threshold


class EffectCatalogDef(BaseModel):
    model_config = ConfigDict(frozen=True)
    effects: List[EffectDef]

    @field_validator("effects")
    @classmethod
    def _unique_types(cls, effects: List[EffectDef]) -> List[EffectDef]:
        seen = set()
        for effect in effects:
            if effect.effect_type in seen:
                raise ValueError(f"Duplicate effect type in catalog: {effect.effect_type}")
            seen.add(effect.effect_type)
        return effects


class RegionDef(BaseModel):
    """Static baseline attributes of a district. Read-only to the engine."""
    model_config = ConfigDict(frozen=True)
    id: str
    name: str
    description: str = ""
    difficulty: int = Field(3, ge=1, le=5)
    economy_level: int = Field(50, ge=METRIC_MIN, le=METRIC_MAX)
    police_presence: int = Field(50, ge=METRIC_MIN, le=METRIC_MAX)
    crime_rate: int = Field(50, ge=METRIC_MIN, le=METRIC_MAX)
    street_activity: int = Field(50, ge=METRIC_MIN, le=METRIC_MAX)


class RegionCollectionDef(BaseModel):
    model_config = ConfigDict(frozen=True)
    regions: List[RegionDef]

# ================================================================================
# LOADERS & CACHE (JIT)
# ================================================================================

_SETTINGS_CACHE: Dict[Path, EcosystemSettings] = {}
_EFFECT_CACHE: Dict[Path, List[EffectDef]] = {}
_REGION_CACHE: Dict[Path, List[RegionDef]] = {}


DATA_DIR = Path(__file__).parent.parent / "data"


def _read_toml(path: Path) -> dict:
    with open(path, "rb") as f:
        return tomllib.load(f)


def get_settings(path: Optional[Path] = None) -> EcosystemSettings:
    """Loads engine tunables. A missing file yields the design defaults."""
    path = path or DATA_DIR / "ecosystem.toml"
    if path in _SETTINGS_CACHE:
        return _SETTINGS_CACHE[path]

    if not path.exists():
        return EcosystemSettings()

    settings = EcosystemSettings(**_read_toml(path))
    _SETTINGS_CACHE[path] = settings
    return settings


def get_effect_defs(path: Optional[Path] = None) -> List[EffectDef]:
    """Loads the effect catalog in declaration order. Cached per path."""
    path = path or DATA_DIR / "effects.toml"
    if path in _EFFECT_CACHE:
        return _EFFECT_CACHE[path]

    if not path.exists():
        raise FileNotFoundError(f"Effect catalog not found: {path}")

    catalog = EffectCatalogDef(**_read_toml(path))
    _EFFECT_CACHE[path] = catalog.effects
    return catalog.effects


def get_effect_def(effect_type: str, path: Optional[Path] = None) -> Optional[EffectDef]:
    for effect in get_effect_defs(path):
        if effect.effect_type == effect_type:
            return effect
    return None


def get_region_defs(path: Optional[Path] = None) -> List[RegionDef]:
    """Loads the district catalog. Cached per path."""
    path = path or DATA_DIR / "districts.toml"
    if path in _REGION_CACHE:
        return _REGION_CACHE[path]

    if not path.exists():
        raise FileNotFoundError(f"District catalog not found: {path}")

    collection = RegionCollectionDef(**_read_toml(path))
    _REGION_CACHE[path] = collection.regions
    return collection.regions


def clear_caches() -> None:
    _SETTINGS_CACHE.clear()
    _EFFECT_CACHE.clear()
    _REGION_CACHE.clear()
