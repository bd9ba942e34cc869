"""
Turf — ecosystem/impact.py
Impact Calculator: (event type, severity) -> DeltaVector.
==========================================================
Version:     0.2
Stack:       Python 3.11+ | Pydantic v2
Status:      Pure. No I/O, no state, no clock.

Each EventType owns one ImpactWeights row: a proportional weight per primary
metric. A component is weight * severity, rounded away from zero, then capped
at ±DELTA_CAP. Adding an EventType without a row fails at import time.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from ecosystem.errors import InvalidEvent
from ecosystem.models import DELTA_CAP, SEVERITY_MAX, SEVERITY_MIN, DeltaVector, EventType


@dataclass(frozen=True)
class ImpactWeights:
    crime: float = 0.0
    police: float = 0.0
    property: float = 0.0
    business: float = 0.0
    activity: float = 0.0


IMPACT_WEIGHTS: Dict[EventType, ImpactWeights] = {
    EventType.CRIME_COMMITTED:   ImpactWeights(crime=2, police=1, activity=1),
    EventType.PROPERTY_BOUGHT:   ImpactWeights(property=1, business=0.5),
    EventType.PROPERTY_SOLD:     ImpactWeights(property=-0.5),
    EventType.CREW_BATTLE:       ImpactWeights(crime=3, police=2, business=-1, activity=-1),
    EventType.BUSINESS_OPENED:   ImpactWeights(business=2, property=1, activity=1),
    EventType.BUSINESS_CLOSED:   ImpactWeights(business=-2, property=-1, activity=-1),
    EventType.PLAYER_ATTACKED:   ImpactWeights(crime=1, police=0.5),
    EventType.POLICE_RAID:       ImpactWeights(police=3, crime=-2),
    EventType.TERRITORY_CLAIMED: ImpactWeights(crime=1, activity=1),
    EventType.TERRITORY_LOST:    ImpactWeights(crime=2, activity=1),
    EventType.HEIST_EXECUTED:    ImpactWeights(crime=4, police=3, business=-1),
    EventType.DRUG_BUST:         ImpactWeights(police=2, crime=-1),
    EventType.GENTRIFICATION:    ImpactWeights(property=2, business=1, crime=-1),
    EventType.ECONOMIC_BOOST:    ImpactWeights(business=2, property=1, activity=1),
    EventType.ECONOMIC_CRASH:    ImpactWeights(business=-3, property=-2, crime=1),
}


def _assert_exhaustive(table: Mapping[EventType, ImpactWeights]) -> None:
    missing = [t.value for t in EventType if t not in table]
    if missing:
        raise RuntimeError(f"Impact weights missing for event types: {missing}")


_assert_exhaustive(IMPACT_WEIGHTS)


def scale_weight(weight: float, severity: int) -> int:
    """weight * severity rounded away from zero, capped at ±DELTA_CAP."""
    raw = math.ceil(abs(weight) * severity)
    capped = min(DELTA_CAP, raw)
    return -capped if weight < 0 else capped


def parse_event_type(value: object) -> EventType:
    """Accepts an EventType or its string value. Unknown types are rejected, never bucketed."""
    if isinstance(value, EventType):
        return value
    try:
        return EventType(str(value))
    except ValueError:
        raise InvalidEvent(f"Unknown event type: {value!r}") from None


def validate_severity(severity: object) -> int:
    if isinstance(severity, bool) or not isinstance(severity, int):
        raise InvalidEvent(f"Severity must be an integer, got {severity!r}")
    if not SEVERITY_MIN <= severity <= SEVERITY_MAX:
        raise InvalidEvent(f"Severity {severity} outside [{SEVERITY_MIN}, {SEVERITY_MAX}]")
    return severity


def calculate_impact(
    event_type: EventType | str,
    severity: int,
    weights: Optional[Mapping[EventType, ImpactWeights]] = None,
) -> DeltaVector:
    """
    Map an event to its per-metric deltas.

    `weights` replaces the default table (balance tuning, tests); it must
    still cover every EventType.
    """
    etype = parse_event_type(event_type)
    sev = validate_severity(severity)
    table = IMPACT_WEIGHTS if weights is None else weights
    if weights is not None:
        _assert_exhaustive(table)

    w = table[etype]
    return DeltaVector(
        crime_index=scale_weight(w.crime, sev),
        police_presence=scale_weight(w.police, sev),
        property_values=scale_weight(w.property, sev),
        business_health=scale_weight(w.business, sev),
        street_activity=scale_weight(w.activity, sev),
    )
