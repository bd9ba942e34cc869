"""
Turf — ecosystem/models.py
Domain vocabulary: event types, statuses, metrics, and the value records
that cross component boundaries.
==========================================================================
Version:     0.2
Stack:       Python 3.11+ | Pydantic v2
Status:      Canonical. Every other module imports its enums from here.

Architecture notes
------------------
- Records returned to callers are frozen BaseModels. Nothing outside the
  Aggregator and Decay Process writes RegionState, and they write rows,
  never these snapshots.
- Bounded fields carry ge/le validators. Those validators are a read-side
  guard only; every write site clamps before it writes.
- TickSummary serializes with camelCase aliases for operational tooling.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# ============================================================
# BOUNDS
# ============================================================

METRIC_MIN: int = 0
METRIC_MAX: int = 100
DELTA_CAP: int = 50          # max movement of any metric by a single event
SEVERITY_MIN: int = 1
SEVERITY_MAX: int = 10
COUNTER_MAX: int = 2**63 - 1   # largest value a 64-bit INTEGER column holds


# ============================================================
# ENUMERATIONS
# ============================================================

class EventType(enum.StrEnum):
    """Closed set of gameplay occurrences with territorial consequence."""
    CRIME_COMMITTED = "crime_committed"
    PROPERTY_BOUGHT = "property_bought"
    PROPERTY_SOLD = "property_sold"
    CREW_BATTLE = "crew_battle"
    BUSINESS_OPENED = "business_opened"
    BUSINESS_CLOSED = "business_closed"
    PLAYER_ATTACKED = "player_attacked"
    POLICE_RAID = "police_raid"
    TERRITORY_CLAIMED = "territory_claimed"
    TERRITORY_LOST = "territory_lost"
    HEIST_EXECUTED = "heist_executed"
    DRUG_BUST = "drug_bust"
    GENTRIFICATION = "gentrification"
    ECONOMIC_BOOST = "economic_boost"
    ECONOMIC_CRASH = "economic_crash"


class RegionStatus(enum.StrEnum):
    STABLE = "stable"
    VOLATILE = "volatile"
    WARZONE = "warzone"
    GENTRIFYING = "gentrifying"
    DECLINING = "declining"


class Metric(enum.StrEnum):
    """Every bounded RegionState field. Values equal the field names."""
    CRIME_INDEX = "crime_index"
    POLICE_PRESENCE = "police_presence"
    PROPERTY_VALUES = "property_values"
    BUSINESS_HEALTH = "business_health"
    STREET_ACTIVITY = "street_activity"
    HEAT_LEVEL = "heat_level"
    CREW_TENSION = "crew_tension"


# Order matters: delta vectors and numpy folds use this column order.
PRIMARY_METRICS: Tuple[Metric, ...] = (
    Metric.CRIME_INDEX,
    Metric.POLICE_PRESENCE,
    Metric.PROPERTY_VALUES,
    Metric.BUSINESS_HEALTH,
    Metric.STREET_ACTIVITY,
)


class TriggerDirection(enum.StrEnum):
    ABOVE = "above"   # value >= threshold
    BELOW = "below"   # value <= threshold


class TriggeredBy(enum.StrEnum):
    THRESHOLD = "threshold"
    SCHEDULED = "scheduled"
    ADMIN = "admin"
    PLAYER = "player"


class EndReason(enum.StrEnum):
    EXPIRED = "expired"
    ADMIN = "admin"
    COUNTERED = "countered"


ModifierMap = Dict[str, float]


# ============================================================
# DELTA VECTOR
# ============================================================

class DeltaVector(BaseModel):
    """Signed per-metric impact of one event, each component within ±DELTA_CAP."""
    model_config = ConfigDict(frozen=True)

    crime_index: int = Field(0, ge=-DELTA_CAP, le=DELTA_CAP)
    police_presence: int = Field(0, ge=-DELTA_CAP, le=DELTA_CAP)
    property_values: int = Field(0, ge=-DELTA_CAP, le=DELTA_CAP)
    business_health: int = Field(0, ge=-DELTA_CAP, le=DELTA_CAP)
    street_activity: int = Field(0, ge=-DELTA_CAP, le=DELTA_CAP)

    @classmethod
    def from_sequence(cls, values: Sequence[int]) -> "DeltaVector":
        if len(values) != len(PRIMARY_METRICS):
            raise ValueError(f"expected {len(PRIMARY_METRICS)} deltas, got {len(values)}")
        return cls(**{m.value: int(v) for m, v in zip(PRIMARY_METRICS, values)})

    def as_tuple(self) -> Tuple[int, int, int, int, int]:
        return (
            self.crime_index,
            self.police_presence,
            self.property_values,
            self.business_health,
            self.street_activity,
        )


# ============================================================
# REGION STATE  (read-side snapshot)
# ============================================================

class RegionState(BaseModel):
    model_config = ConfigDict(frozen=True)

    region_id: str
    crime_index: int = Field(ge=METRIC_MIN, le=METRIC_MAX)
    police_presence: int = Field(ge=METRIC_MIN, le=METRIC_MAX)
    property_values: int = Field(ge=METRIC_MIN, le=METRIC_MAX)
    business_health: int = Field(ge=METRIC_MIN, le=METRIC_MAX)
    street_activity: int = Field(ge=METRIC_MIN, le=METRIC_MAX)
    heat_level: int = Field(ge=METRIC_MIN, le=METRIC_MAX)
    crew_tension: int = Field(ge=METRIC_MIN, le=METRIC_MAX)
    status: RegionStatus

    # Daily counters are reset by decay; active_businesses is not.
    daily_crime_count: int = Field(0, ge=0)
    daily_transaction_volume: int = Field(0, ge=0)
    active_businesses: int = Field(0, ge=0)

    last_calculated: datetime
    last_status_change: datetime

    def metric(self, metric: Metric) -> int:
        return getattr(self, metric.value)


# ============================================================
# EVENT RECORD  (immutable fact; only `processed` ever flips)
# ============================================================

class EventRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    region_id: str
    event_type: EventType
    severity: int = Field(ge=SEVERITY_MIN, le=SEVERITY_MAX)
    actor_id: Optional[str] = None
    target_id: Optional[str] = None
    crew_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    delta: DeltaVector
    processed: bool = False
    processed_at: Optional[datetime] = None
    created_at: datetime


# ============================================================
# ACTIVE EFFECT
# ============================================================

class ActiveEffect(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    region_id: str
    effect_type: str
    triggered_by: TriggeredBy
    trigger_metric: Optional[Metric] = None
    trigger_value: Optional[int] = None
    modifiers: ModifierMap = Field(default_factory=dict)
    duration_minutes: int
    started_at: datetime
    expires_at: datetime
    ended_at: Optional[datetime] = None
    ended_by: Optional[EndReason] = None

    def is_live(self, now: datetime) -> bool:
        """Not ended and not yet past its expiry."""
        return self.ended_at is None and self.expires_at > now

    def time_remaining_seconds(self, now: datetime) -> float:
        return max(0.0, (self.expires_at - now).total_seconds())


# ============================================================
# TICK SUMMARY  (operational surface)
# ============================================================

class TickSummary(BaseModel):
    """
    Result of one manual or scheduled worker run.

    Serialize with summary.model_dump(by_alias=True, mode="json") to get
    {regionsProcessed, eventsConsumed, effectsTriggered, effectsExpired, ranAt, ...}.
    """
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    worker: str
    regions_processed: int = 0
    events_consumed: int = 0
    effects_triggered: int = 0
    effects_expired: int = 0
    failed: int = 0
    status_changes: List[str] = Field(default_factory=list)
    skipped: bool = False
    ran_at: datetime

    def merged(self, other: "TickSummary", worker: Optional[str] = None) -> "TickSummary":
        """Sum two summaries; ran_at is the earlier of the two."""
        return TickSummary(
            worker=worker or self.worker,
            regions_processed=self.regions_processed + other.regions_processed,
            events_consumed=self.events_consumed + other.events_consumed,
            effects_triggered=self.effects_triggered + other.effects_triggered,
            effects_expired=self.effects_expired + other.effects_expired,
            failed=self.failed + other.failed,
            status_changes=self.status_changes + other.status_changes,
            skipped=self.skipped and other.skipped,
            ran_at=min(self.ran_at, other.ran_at),
        )
