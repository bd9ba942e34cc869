"""
Turf — ecosystem/equilibrium.py
Equilibrium math: clamping, status derivation, baseline pull, tension.
====================================================================
Version:     0.2
Stack:       Python 3.11+ | numpy
Status:      Pure functions. The Aggregator and Decay Process call these at
             every write site; nothing here touches storage.

Status priority (first match wins)
----------------------------------
  warzone      crime >= 70 and tension >= 60
  gentrifying  property >= 65 and business >= 60 and crime <= 40
  declining    business <= 35 and property <= 40
  volatile     crime >= 55 and tension >= 40
  stable       otherwise
"""

from __future__ import annotations

from typing import Callable, Iterable, Sequence, Tuple

import numpy as np

from ecosystem.models import METRIC_MAX, METRIC_MIN, RegionStatus

WARZONE_CRIME_MIN: int = 70
WARZONE_TENSION_MIN: int = 60
GENTRIFYING_PROPERTY_MIN: int = 65
GENTRIFYING_BUSINESS_MIN: int = 60
GENTRIFYING_CRIME_MAX: int = 40
DECLINING_BUSINESS_MAX: int = 35
DECLINING_PROPERTY_MAX: int = 40
VOLATILE_CRIME_MIN: int = 55
VOLATILE_TENSION_MIN: int = 40


def clamp_metric(value: int) -> int:
    return max(METRIC_MIN, min(METRIC_MAX, int(value)))


def apply_deltas(current: Sequence[int], deltas: Sequence[int]) -> Tuple[int, ...]:
    """current + deltas, each component clipped to [METRIC_MIN, METRIC_MAX]."""
    summed = np.asarray(current, dtype=np.int64) + np.asarray(deltas, dtype=np.int64)
    clipped = np.clip(summed, METRIC_MIN, METRIC_MAX)
    return tuple(int(v) for v in clipped)


def fold_deltas(vectors: Iterable[Sequence[int]], width: int = 5) -> Tuple[int, ...]:
    """Column sum of a batch of delta vectors. An empty batch folds to zeros."""
    matrix = np.asarray(list(vectors), dtype=np.int64)
    if matrix.size == 0:
        return (0,) * width
    return tuple(int(v) for v in matrix.sum(axis=0))


# ============================================================
# STATUS
# ============================================================

_StatusRule = Callable[[int, int, int, int, int], bool]

# (crime, police, property, business, tension) -> matches
_STATUS_RULES: Tuple[Tuple[RegionStatus, _StatusRule], ...] = (
    (RegionStatus.WARZONE,
     lambda crime, police, prop, biz, tension:
        crime >= WARZONE_CRIME_MIN and tension >= WARZONE_TENSION_MIN),
    (RegionStatus.GENTRIFYING,
     lambda crime, police, prop, biz, tension:
        prop >= GENTRIFYING_PROPERTY_MIN and biz >= GENTRIFYING_BUSINESS_MIN
        and crime <= GENTRIFYING_CRIME_MAX),
    (RegionStatus.DECLINING,
     lambda crime, police, prop, biz, tension:
        biz <= DECLINING_BUSINESS_MAX and prop <= DECLINING_PROPERTY_MAX),
    (RegionStatus.VOLATILE,
     lambda crime, police, prop, biz, tension:
        crime >= VOLATILE_CRIME_MIN and tension >= VOLATILE_TENSION_MIN),
)
_DEFAULT_STATUS = RegionStatus.STABLE

if {s for s, _ in _STATUS_RULES} | {_DEFAULT_STATUS} != set(RegionStatus):
    raise RuntimeError("Every RegionStatus needs a rule or must be the default")


def derive_status(
    crime_index: int,
    police_presence: int,
    property_values: int,
    business_health: int,
    crew_tension: int,
) -> RegionStatus:
    """Pure function of the metrics; street_activity and heat never influence it."""
    for status, rule in _STATUS_RULES:
        if rule(crime_index, police_presence, property_values, business_health, crew_tension):
            return status
    return _DEFAULT_STATUS


# ============================================================
# DECAY
# ============================================================

def step_toward(value: int, baseline: int, step: int) -> int:
    """Move `value` by at most `step` toward `baseline`, never past it."""
    if value > baseline:
        return max(baseline, value - step)
    if value < baseline:
        return min(baseline, value + step)
    return value


def floor_decrement(value: int, step: int) -> int:
    return max(METRIC_MIN, value - step)


# ============================================================
# TENSION
# ============================================================

def compute_crew_tension(conflict_count: int, per_conflict: int) -> int:
    """Tension from the trailing-window count of high-severity conflicts, capped at METRIC_MAX."""
    return clamp_metric(conflict_count * per_conflict)
