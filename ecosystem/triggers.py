"""
Turf — ecosystem/triggers.py
Threshold Trigger Engine: starts, expires and cancels ActiveEffects.
====================================================================
Version:     0.3
Stack:       Python 3.11+ | SQLAlchemy 2.0 | Pydantic v2
Status:      Canonical.

Architecture notes
------------------
- Reads RegionState without the region lock. A slightly stale read can at
  worst delay a trigger by one tick.
- Each effect start runs in its own transaction. The partial unique index
  on open (region, effect type) rows makes a double start impossible; the
  losing insert rolls back and is reported as "not triggered".
- Cooldown runs from the latest end of that effect type in that region,
  where a row that was never marked ended counts at its expiry.
- An overdue row that the expiry sweep has not reached yet is closed on
  the spot before anything new is considered.
- ExpireDueEffects is idempotent: ended rows are never touched again.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ecosystem.bus import EVT_EFFECT_ENDED, EVT_EFFECT_TRIGGERED, EventBus
from ecosystem.clock import Clock, SystemClock
from ecosystem.data_loader import EcosystemSettings, EffectDef, get_effect_defs
from ecosystem.errors import RegionNotFound, UnknownEffect
from ecosystem.models import ActiveEffect, EndReason, RegionState, TickSummary, TriggeredBy
from ecosystem.store import ActiveEffectRow, TerritoryStore, effect_from_row, state_from_row

logger = logging.getLogger(__name__)


class TriggerEngine:
    def __init__(
        self,
        store: TerritoryStore,
        settings: EcosystemSettings,
        clock: Optional[Clock] = None,
        bus: Optional[EventBus] = None,
        catalog: Optional[List[EffectDef]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock or SystemClock()
        self.bus = bus
        self.catalog = list(catalog) if catalog is not None else list(get_effect_defs())
        self._cursor = 0

    @property
    def active_catalog(self) -> List[EffectDef]:
        return [d for d in self.catalog if d.is_active]

    def effect_def(self, effect_type: str) -> EffectDef:
        for definition in self.catalog:
            if definition.effect_type == effect_type:
                return definition
        raise UnknownEffect(effect_type)

    # ----------------------------------------------------------
    # Threshold evaluation
    # ----------------------------------------------------------

    def evaluate_region(self, region_id: str) -> List[str]:
        """Start every catalog effect whose condition holds and that is free to start."""
        state = self._read_state(region_id)
        triggered: List[str] = []
        for definition in self.active_catalog:
            value = state.metric(definition.trigger_metric)
            if not definition.is_met_by(value):
                continue
            effect = self._start(region_id, definition, TriggeredBy.THRESHOLD, value)
            if effect is not None:
                triggered.append(effect.effect_type)
        return triggered

    def evaluate_all(self) -> TickSummary:
        """Threshold pass over one batch of regions, rotating through all of them."""
        ran_at = self.clock.now()
        region_ids = self._next_batch()

        evaluated = started = failed = 0
        for region_id in region_ids:
            try:
                triggered = self.evaluate_region(region_id)
            except Exception:  # noqa: BLE001
                logger.exception("Threshold evaluation failed for region %s", region_id)
                failed += 1
                continue
            evaluated += 1
            started += len(triggered)

        return TickSummary(
            worker="triggers",
            regions_processed=evaluated,
            effects_triggered=started,
            failed=failed,
            ran_at=ran_at,
        )

    def _next_batch(self) -> List[str]:
        region_ids = self.store.list_region_ids()
        size = self.settings.aggregation.region_batch_size
        if len(region_ids) <= size:
            self._cursor = 0
            return region_ids
        start = self._cursor % len(region_ids)
        batch = (region_ids[start:] + region_ids[:start])[:size]
        self._cursor = (start + size) % len(region_ids)
        return batch

    # ----------------------------------------------------------
    # Manual control
    # ----------------------------------------------------------

    def trigger_effect(
        self,
        region_id: str,
        effect_type: str,
        triggered_by: TriggeredBy = TriggeredBy.ADMIN,
        duration_override: Optional[int] = None,
    ) -> Optional[ActiveEffect]:
        """
        Start an effect regardless of its threshold. Still refused (None) while
        the same effect is live or cooling down.
        """
        definition = self.effect_def(effect_type)
        if duration_override is not None and duration_override <= 0:
            raise ValueError(f"duration_override must be positive, got {duration_override}")
        state = self._read_state(region_id)
        return self._start(
            region_id,
            definition,
            TriggeredBy(triggered_by),
            state.metric(definition.trigger_metric),
            duration_override,
        )

    def cancel_effect(
        self,
        region_id: str,
        effect_type: str,
        ended_by: EndReason = EndReason.ADMIN,
    ) -> bool:
        """End the live effect of this type now. False if none was live."""
        with self.store.transaction() as session:
            if not self.store.region_exists(session, region_id):
                raise RegionNotFound(region_id)
            now = self.clock.now()
            row = self.store.open_effect(session, region_id, effect_type)
            if row is None or row.expires_at <= now:
                return False
            row.ended_at = now
            row.ended_by = EndReason(ended_by)
            session.flush()
            effect = effect_from_row(row)

        logger.info("Cancelled %s in %s (%s)", effect_type, region_id, effect.ended_by)
        self._announce_end(effect, now)
        return True

    # ----------------------------------------------------------
    # Expiry sweep
    # ----------------------------------------------------------

    def expire_due_effects(self) -> int:
        """Mark every overdue, un-ended effect as expired. Returns how many were ended."""
        with self.store.transaction() as session:
            now = self.clock.now()
            rows = session.scalars(
                select(ActiveEffectRow)
                .where(ActiveEffectRow.ended_at.is_(None), ActiveEffectRow.expires_at <= now)
                .order_by(ActiveEffectRow.expires_at, ActiveEffectRow.id)
                .limit(self.settings.aggregation.event_batch_size)
            ).all()
            for row in rows:
                row.ended_at = now
                row.ended_by = EndReason.EXPIRED
            session.flush()
            ended = [effect_from_row(row) for row in rows]

        for effect in ended:
            logger.info("Effect %s expired in %s", effect.effect_type, effect.region_id)
            self._announce_end(effect, now)
        return len(ended)

    def expire_tick(self) -> TickSummary:
        ran_at = self.clock.now()
        return TickSummary(worker="expiry", effects_expired=self.expire_due_effects(), ran_at=ran_at)

    # ----------------------------------------------------------
    # Internal
    # ----------------------------------------------------------

    def _read_state(self, region_id: str) -> RegionState:
        with self.store.session() as session:
            return state_from_row(self.store.require_state(session, region_id))

    def _start(
        self,
        region_id: str,
        definition: EffectDef,
        triggered_by: TriggeredBy,
        trigger_value: int,
        duration_minutes: Optional[int] = None,
    ) -> Optional[ActiveEffect]:
        effect_type = definition.effect_type
        duration = duration_minutes or definition.duration_minutes
        closed: Optional[ActiveEffect] = None
        effect: Optional[ActiveEffect] = None
        try:
            with self.store.transaction() as session:
                now = self.clock.now()
                open_row = self.store.open_effect(session, region_id, effect_type)
                if open_row is not None:
                    if open_row.expires_at > now:
                        return None
                    open_row.ended_at = now
                    open_row.ended_by = EndReason.EXPIRED
                    session.flush()
                    closed = effect_from_row(open_row)

                if not self._cooling_down(session, region_id, definition, now):
                    effect = self._insert(session, region_id, definition, triggered_by,
                                          trigger_value, duration, now)
        except IntegrityError:
            logger.info("Effect %s in %s was started concurrently; skipping", effect_type, region_id)
            return None

        if closed is not None:
            logger.info("Effect %s expired in %s", effect_type, region_id)
            self._announce_end(closed, now)
        if effect is None:
            return None

        logger.info("Effect %s triggered in %s by %s (%s=%d)", effect_type, region_id,
                    triggered_by, definition.trigger_metric, trigger_value)
        if self.bus is not None:
            self.bus.publish(
                EVT_EFFECT_TRIGGERED,
                now,
                region_id=region_id,
                effect_type=effect_type,
                triggered_by=triggered_by.value,
                trigger_metric=definition.trigger_metric.value,
                trigger_value=trigger_value,
                expires_at=effect.expires_at.isoformat(),
                modifiers=dict(effect.modifiers),
            )
        return effect

    @staticmethod
    def _insert(
        session: Session,
        region_id: str,
        definition: EffectDef,
        triggered_by: TriggeredBy,
        trigger_value: int,
        duration: int,
        now: datetime,
    ) -> ActiveEffect:
        row = ActiveEffectRow(
            region_id=region_id,
            effect_type=definition.effect_type,
            triggered_by=triggered_by,
            trigger_metric=definition.trigger_metric,
            trigger_value=trigger_value,
            modifiers=dict(definition.modifiers),
            duration_minutes=duration,
            started_at=now,
            expires_at=now + timedelta(minutes=duration),
        )
        session.add(row)
        session.flush()
        return effect_from_row(row)

    def _cooling_down(self, session: Session, region_id: str, definition: EffectDef, now: datetime) -> bool:
        last_end = self.store.last_effect_end(session, region_id, definition.effect_type)
        if last_end is None:
            return False
        return now < last_end + timedelta(minutes=definition.cooldown_minutes)

    def _announce_end(self, effect: ActiveEffect, now: datetime) -> None:
        if self.bus is None:
            return
        self.bus.publish(
            EVT_EFFECT_ENDED,
            now,
            region_id=effect.region_id,
            effect_type=effect.effect_type,
            ended_by=effect.ended_by.value if effect.ended_by else None,
        )
