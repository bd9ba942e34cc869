"""
Turf — ecosystem/decay.py
Decay Process: first-order pull of every region back toward neutral.
====================================================================
Version:     0.2
Stack:       Python 3.11+ | SQLAlchemy 2.0
Status:      Canonical. The second of the two RegionState writers.

Per due region (last_calculated at least one interval ago), under the same
region lock the Aggregator takes:
  crime_index, police_presence   one step toward DECAY_BASELINE, never past it
  heat_level                     minus DECAY_HEAT_STEP, floored at 0
  crew_tension                   minus DECAY_TENSION_STEP, floored at 0
  daily counters                 reset to 0 (active_businesses is not a daily counter)
  status                         re-derived

A region idle for many intervals still moves one step per run.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import select

from ecosystem.bus import EVT_REGION_DECAYED, EVT_STATUS_CHANGED, EventBus
from ecosystem.clock import Clock, SystemClock
from ecosystem.data_loader import EcosystemSettings
from ecosystem.equilibrium import derive_status, floor_decrement, step_toward
from ecosystem.errors import RegionLocked
from ecosystem.locks import RegionLockManager
from ecosystem.models import RegionState, RegionStatus, TickSummary
from ecosystem.store import RegionStateRow, TerritoryStore, state_from_row

logger = logging.getLogger(__name__)


class DecayProcess:
    def __init__(
        self,
        store: TerritoryStore,
        locks: RegionLockManager,
        settings: EcosystemSettings,
        clock: Optional[Clock] = None,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.store = store
        self.locks = locks
        self.settings = settings
        self.clock = clock or SystemClock()
        self.bus = bus

    @property
    def interval(self) -> timedelta:
        return timedelta(seconds=self.settings.decay.interval_seconds)

    def decay_region(self, region_id: str, force: bool = False) -> Optional[RegionState]:
        """
        Apply one decay step. Returns the new state, or None when the region
        was touched less than one interval ago (unless `force`).
        """
        result = self._decay(region_id, force)
        return None if result is None else result[1]

    def _decay(self, region_id: str, force: bool) -> Optional[Tuple[RegionStatus, RegionState]]:
        cfg = self.settings.decay
        with self.locks.hold(region_id, self.settings.locks.acquire_timeout_seconds):
            with self.store.transaction() as session:
                row = self.store.require_state(session, region_id, for_update=True)
                now = self.clock.now()
                if not force and row.last_calculated > now - self.interval:
                    return None

                previous = row.status
                row.crime_index = step_toward(row.crime_index, cfg.baseline, cfg.metric_step)
                row.police_presence = step_toward(row.police_presence, cfg.baseline, cfg.metric_step)
                row.heat_level = floor_decrement(row.heat_level, cfg.heat_step)
                row.crew_tension = floor_decrement(row.crew_tension, cfg.tension_step)
                row.daily_crime_count = 0
                row.daily_transaction_volume = 0
                row.status = derive_status(
                    row.crime_index, row.police_presence, row.property_values,
                    row.business_health, row.crew_tension,
                )
                if row.status != previous:
                    row.last_status_change = now
                row.last_calculated = now
                row.updated_at = now
                session.flush()
                state = state_from_row(row)

        self._announce(state, previous, now)
        return previous, state

    def decay_all(self) -> TickSummary:
        ran_at = self.clock.now()
        region_ids = self.due_region_ids(ran_at, self.settings.aggregation.region_batch_size)

        processed = failed = 0
        changes: List[str] = []
        for region_id in region_ids:
            try:
                result = self._decay(region_id, force=False)
            except RegionLocked as exc:
                logger.info("%s; decay retries next tick", exc)
                continue
            except Exception:  # noqa: BLE001
                logger.exception("Decay failed for region %s", region_id)
                failed += 1
                continue
            if result is None:
                continue
            previous, state = result
            processed += 1
            if state.status != previous:
                changes.append(region_id)

        return TickSummary(
            worker="decay",
            regions_processed=processed,
            failed=failed,
            status_changes=changes,
            ran_at=ran_at,
        )

    def due_region_ids(self, now: datetime, limit: int) -> List[str]:
        """Regions untouched for at least one interval, stalest first."""
        with self.store.session() as session:
            return list(session.scalars(
                select(RegionStateRow.region_id)
                .where(RegionStateRow.last_calculated <= now - self.interval)
                .order_by(RegionStateRow.last_calculated, RegionStateRow.region_id)
                .limit(limit)
            ))

    def _announce(self, state: RegionState, previous: RegionStatus, now: datetime) -> None:
        logger.debug("Decayed %s: crime=%d police=%d heat=%d tension=%d", state.region_id,
                     state.crime_index, state.police_presence, state.heat_level, state.crew_tension)
        if state.status != previous:
            logger.info("Region %s status %s -> %s", state.region_id, previous, state.status)
        if self.bus is None:
            return
        self.bus.publish(EVT_REGION_DECAYED, now, region_id=state.region_id,
                         state=state.model_dump(mode="json"))
        if state.status != previous:
            self.bus.publish(EVT_STATUS_CHANGED, now, region_id=state.region_id,
                             previous=previous.value, current=state.status.value)
