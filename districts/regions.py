"""
Turf — districts/regions.py
RegionRegistry: world setup for the static district catalog.
Creates Region rows and their starting RegionState, once. Regions are never
deleted and their baseline attributes are read-only afterwards.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select

from ecosystem.clock import Clock, SystemClock
from ecosystem.data_loader import RegionDef, get_region_defs
from ecosystem.equilibrium import clamp_metric, derive_status
from ecosystem.errors import RegionNotFound
from ecosystem.models import COUNTER_MAX, Metric, RegionState
from ecosystem.store import RegionRow, RegionStateRow, TerritoryStore, state_from_row

logger = logging.getLogger(__name__)

NEUTRAL_METRIC: int = 50

# difficulty -> starting property_values
PROPERTY_BY_DIFFICULTY: Dict[int, int] = {1: 35, 2: 45, 3: 55, 4: 70, 5: 85}

_STATE_FIELDS = {m.value for m in Metric} | {
    "daily_crime_count", "daily_transaction_volume", "active_businesses",
}


def baseline_property_values(difficulty: int) -> int:
    return PROPERTY_BY_DIFFICULTY.get(difficulty, NEUTRAL_METRIC)


def baseline_metrics(region: RegionDef) -> Dict[str, int]:
    """Starting metrics for a freshly seeded district."""
    return {
        Metric.CRIME_INDEX.value: region.crime_rate,
        Metric.POLICE_PRESENCE.value: region.police_presence,
        Metric.PROPERTY_VALUES.value: baseline_property_values(region.difficulty),
        Metric.BUSINESS_HEALTH.value: region.economy_level,
        Metric.STREET_ACTIVITY.value: region.street_activity,
    }


class RegionRegistry:
    def __init__(self, store: TerritoryStore, clock: Optional[Clock] = None) -> None:
        self.store = store
        self.clock = clock or SystemClock()

    def register(self, regions: Iterable[RegionDef]) -> int:
        """Create missing regions with their baseline state. Returns how many were new."""
        created = 0
        with self.store.transaction() as session:
            now = self.clock.now()
            for region in regions:
                if session.get(RegionRow, region.id) is not None:
                    continue
                session.add(RegionRow(
                    id=region.id,
                    name=region.name,
                    description=region.description,
                    difficulty=region.difficulty,
                    economy_level=region.economy_level,
                    police_presence=region.police_presence,
                    crime_rate=region.crime_rate,
                    street_activity=region.street_activity,
                    created_at=now,
                ))
                session.flush()
                session.add(self._new_state(region.id, baseline_metrics(region), now))
                created += 1
        if created:
            logger.info("Registered %d new regions", created)
        return created

    def seed_from_catalog(self, path: Optional[Path] = None) -> int:
        return self.register(get_region_defs(path))

    def initialize_region_state(self, region_id: str, **overrides: Any) -> RegionState:
        """
        Create the RegionState for an existing region (neutral 50s unless
        overridden). Returns the existing state untouched if one is present.
        """
        _check_fields(overrides)

        with self.store.transaction() as session:
            if session.get(RegionRow, region_id) is None:
                raise RegionNotFound(region_id)
            row = session.get(RegionStateRow, region_id)
            if row is None:
                row = self._new_state(region_id, overrides, self.clock.now())
                session.add(row)
                session.flush()
            return state_from_row(row)

    def create_region(self, region_id: str, name: Optional[str] = None, **overrides: Any) -> RegionState:
        """Ad hoc region with default baseline attributes and a neutral state."""
        _check_fields(overrides)
        with self.store.transaction() as session:
            if session.get(RegionRow, region_id) is None:
                session.add(RegionRow(id=region_id, name=name or region_id, created_at=self.clock.now()))
        return self.initialize_region_state(region_id, **overrides)

    def get_region(self, region_id: str) -> RegionDef:
        with self.store.session() as session:
            row = session.get(RegionRow, region_id)
            if row is None:
                raise RegionNotFound(region_id)
            return _region_def(row)

    def list_regions(self) -> List[RegionDef]:
        with self.store.session() as session:
            return [_region_def(row) for row in session.scalars(select(RegionRow).order_by(RegionRow.id))]

    @staticmethod
    def _new_state(region_id: str, values: Dict[str, Any], now) -> RegionStateRow:
        metrics = {m.value: NEUTRAL_METRIC for m in Metric}
        metrics[Metric.HEAT_LEVEL.value] = 0
        metrics[Metric.CREW_TENSION.value] = 0
        counters = {"daily_crime_count": 0, "daily_transaction_volume": 0, "active_businesses": 0}
        for key, value in values.items():
            if key in metrics:
                metrics[key] = clamp_metric(value)
            else:
                counters[key] = min(COUNTER_MAX, max(0, int(value)))

        status = derive_status(
            metrics[Metric.CRIME_INDEX.value],
            metrics[Metric.POLICE_PRESENCE.value],
            metrics[Metric.PROPERTY_VALUES.value],
            metrics[Metric.BUSINESS_HEALTH.value],
            metrics[Metric.CREW_TENSION.value],
        )
        return RegionStateRow(
            region_id=region_id,
            **metrics,
            **counters,
            status=status,
            last_calculated=now,
            last_status_change=now,
            created_at=now,
            updated_at=now,
        )


def _check_fields(values: Dict[str, Any]) -> None:
    unknown = set(values) - _STATE_FIELDS
    if unknown:
        raise ValueError(f"Unknown RegionState fields: {sorted(unknown)}")


def _region_def(row: RegionRow) -> RegionDef:
    return RegionDef(
        id=row.id,
        name=row.name,
        description=row.description or "",
        difficulty=row.difficulty,
        economy_level=row.economy_level,
        police_presence=row.police_presence,
        crime_rate=row.crime_rate,
        street_activity=row.street_activity,
    )
