"""
Turf — ecosystem/aggregator.py
Aggregator: folds unprocessed events into RegionState.
======================================================
Version:     0.3
Stack:       Python 3.11+ | SQLAlchemy 2.0 | numpy
Status:      Canonical. One of exactly two writers of RegionState.

Per region, under the region lock and inside one transaction:
  1. read the state row
  2. select unprocessed events (oldest first, at most EVENT_BATCH_SIZE)
  3. fold their delta vectors, add, clamp
  4. recompute crew tension from the trailing conflict window
  5. raise heat, bump daily counters
  6. re-derive status
  7. write the row and mark the batch processed

Any failure rolls back steps 1-7 together; the batch is retried next tick.
An empty batch returns 0 without writing.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from ecosystem.bus import EVT_REGION_AGGREGATED, EVT_STATUS_CHANGED, EventBus
from ecosystem.clock import Clock, SystemClock
from ecosystem.data_loader import EcosystemSettings
from ecosystem.equilibrium import (
    apply_deltas,
    clamp_metric,
    compute_crew_tension,
    derive_status,
    fold_deltas,
)
from ecosystem.errors import RegionLocked
from ecosystem.locks import RegionLockManager
from ecosystem.models import COUNTER_MAX, EventType, RegionState, RegionStatus, TickSummary
from ecosystem.store import EventRow, TerritoryStore, state_from_row

logger = logging.getLogger(__name__)

_CRIME_COUNTED = (EventType.CRIME_COMMITTED, EventType.HEIST_EXECUTED)


@dataclass(frozen=True)
class AggregationOutcome:
    region_id: str
    events_processed: int
    previous_status: RegionStatus
    state: Optional[RegionState] = None

    @property
    def status_changed(self) -> bool:
        return self.state is not None and self.state.status != self.previous_status


def transaction_amount(metadata: Optional[dict]) -> int:
    """
    Non-negative finite `amount` from event metadata, capped at COUNTER_MAX.
    Anything else (missing, non-numeric, inf, nan) counts as 0.
    """
    if not metadata:
        return 0
    amount = metadata.get("amount")
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        return 0
    if isinstance(amount, float) and not math.isfinite(amount):
        return 0
    return min(COUNTER_MAX, max(0, int(amount)))


def add_capped(counter: int, amount: int) -> int:
    return min(COUNTER_MAX, counter + amount)


class Aggregator:
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

    # ----------------------------------------------------------
    # Public API
    # ----------------------------------------------------------

    def process_region(self, region_id: str) -> int:
        """
        Drain one batch of unprocessed events for a region. Returns the count.

        Raises RegionNotFound, RegionLocked, or StorageUnavailable; in every
        case nothing was written.
        """
        return self._aggregate(region_id).events_processed

    def process_all(self) -> TickSummary:
        """One aggregation tick over regions with pending events."""
        ran_at = self.clock.now()
        region_ids = self.pending_region_ids(self.settings.aggregation.region_batch_size)

        processed = consumed = failed = 0
        changes: List[str] = []
        for region_id in region_ids:
            try:
                outcome = self._aggregate(region_id)
            except RegionLocked as exc:
                logger.info("%s; retrying next tick", exc)
                continue
            except Exception:  # noqa: BLE001
                logger.exception("Aggregation failed for region %s", region_id)
                failed += 1
                continue
            if outcome.events_processed:
                processed += 1
                consumed += outcome.events_processed
            if outcome.status_changed:
                changes.append(region_id)

        return TickSummary(
            worker="aggregation",
            regions_processed=processed,
            events_consumed=consumed,
            failed=failed,
            status_changes=changes,
            ran_at=ran_at,
        )

    def pending_region_ids(self, limit: int) -> List[str]:
        """Regions with unprocessed events, the one waiting longest first."""
        with self.store.session() as session:
            return list(session.scalars(
                select(EventRow.region_id)
                .where(EventRow.processed.is_(False))
                .group_by(EventRow.region_id)
                .order_by(func.min(EventRow.id))
                .limit(limit)
            ))

    # ----------------------------------------------------------
    # Internal
    # ----------------------------------------------------------

    def _aggregate(self, region_id: str) -> AggregationOutcome:
        with self.locks.hold(region_id, self.settings.locks.acquire_timeout_seconds):
            with self.store.transaction() as session:
                row = self.store.require_state(session, region_id, for_update=True)
                previous = row.status
                batch = self._unprocessed(session, region_id)
                if not batch:
                    return AggregationOutcome(region_id, 0, previous)

                now = self.clock.now()
                deltas = fold_deltas(e.delta_vector() for e in batch)
                (row.crime_index, row.police_presence, row.property_values,
                 row.business_health, row.street_activity) = apply_deltas(row.primary_vector(), deltas)

                conflicts = self._count_conflicts(session, region_id, now)
                row.crew_tension = compute_crew_tension(conflicts, self.settings.tension.per_conflict)
                row.heat_level = clamp_metric(row.heat_level + self._heat_gain(batch))

                row.daily_crime_count = add_capped(
                    row.daily_crime_count, sum(1 for e in batch if e.event_type in _CRIME_COUNTED))
                volume = sum(transaction_amount(e.event_metadata) for e in batch)
                row.daily_transaction_volume = add_capped(row.daily_transaction_volume, volume)
                opened = sum(1 for e in batch if e.event_type is EventType.BUSINESS_OPENED)
                closed = sum(1 for e in batch if e.event_type is EventType.BUSINESS_CLOSED)
                row.active_businesses = max(0, row.active_businesses + opened - closed)

                row.status = derive_status(
                    row.crime_index, row.police_presence, row.property_values,
                    row.business_health, row.crew_tension,
                )
                if row.status != previous:
                    row.last_status_change = now
                row.last_calculated = now
                row.updated_at = now

                session.execute(
                    update(EventRow)
                    .where(EventRow.id.in_([e.id for e in batch]))
                    .values(processed=True, processed_at=now)
                )
                session.flush()
                snapshot = state_from_row(row)

        outcome = AggregationOutcome(region_id, len(batch), previous, snapshot)
        self._announce(outcome, now)
        return outcome

    def _unprocessed(self, session: Session, region_id: str) -> Sequence[EventRow]:
        return session.scalars(
            select(EventRow)
            .where(EventRow.region_id == region_id, EventRow.processed.is_(False))
            .order_by(EventRow.id)
            .limit(self.settings.aggregation.event_batch_size)
        ).all()

    def _count_conflicts(self, session: Session, region_id: str, now: datetime) -> int:
        tension = self.settings.tension
        since = now - timedelta(hours=tension.window_hours)
        return session.scalar(
            select(func.count(EventRow.id)).where(
                EventRow.region_id == region_id,
                EventRow.event_type.in_(tension.conflict_types),
                EventRow.severity >= tension.high_severity,
                EventRow.created_at >= since,
                EventRow.created_at <= now,
            )
        ) or 0

    def _heat_gain(self, batch: Sequence[EventRow]) -> int:
        criminal = set(self.settings.heat.criminal_types)
        return sum(e.severity for e in batch if e.event_type in criminal)

    def _announce(self, outcome: AggregationOutcome, now: datetime) -> None:
        state = outcome.state
        logger.debug(
            "Aggregated %d events into %s: crime=%d police=%d property=%d business=%d "
            "activity=%d heat=%d tension=%d",
            outcome.events_processed, outcome.region_id, state.crime_index,
            state.police_presence, state.property_values, state.business_health,
            state.street_activity, state.heat_level, state.crew_tension,
        )
        if outcome.status_changed:
            logger.info("Region %s status %s -> %s", outcome.region_id,
                        outcome.previous_status, state.status)
        if self.bus is None:
            return
        self.bus.publish(
            EVT_REGION_AGGREGATED,
            now,
            region_id=outcome.region_id,
            events_processed=outcome.events_processed,
            state=state.model_dump(mode="json"),
        )
        if outcome.status_changed:
            self.bus.publish(
                EVT_STATUS_CHANGED,
                now,
                region_id=outcome.region_id,
                previous=outcome.previous_status.value,
                current=state.status.value,
            )
