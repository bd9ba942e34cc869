"""
Turf — ecosystem/reader.py
State Reader API: everything game handlers and UI read.
=======================================================
Version:     0.2
Stack:       Python 3.11+ | SQLAlchemy 2.0 | Pydantic v2
Status:      Read-only. No method here writes.

Consistency: committed state only, at most one aggregation interval stale.

Combining modifiers
-------------------
get_combined_modifiers() merges the modifier maps of the live effects in
start order (started_at, then id). On an overlapping key the effect that
started LAST wins; keys are never summed or multiplied.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy import func, select

from ecosystem.clock import Clock, SystemClock
from ecosystem.data_loader import EffectDef, get_effect_defs
from ecosystem.errors import UnknownEffect
from ecosystem.models import ActiveEffect, EventRecord, ModifierMap, RegionState
from ecosystem.store import (
    ActiveEffectRow,
    EventRow,
    RegionStateRow,
    TerritoryStore,
    effect_from_row,
    event_from_row,
    state_from_row,
)

SUMMARY_WINDOW_HOURS: int = 24
HISTORY_LIMIT: int = 50
EFFECT_HISTORY_LIMIT: int = 20


class RegionSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: RegionState
    events_last_24h: int
    active_effects: List[str]


def combine_modifiers(effects: List[ActiveEffect]) -> ModifierMap:
    """Later-wins merge. `effects` must already be in start order."""
    combined: ModifierMap = {}
    for effect in effects:
        combined.update(effect.modifiers)
    return combined


def region_modifiers(state: RegionState) -> Dict[str, float]:
    """Baseline gameplay modifiers derived from current metrics, before effects."""
    return {
        "crime_difficulty": round(1.5 - state.police_presence / 100, 2),
        "property_income": round(0.5 + state.property_values / 100, 2),
        "recruitment_ease": round(0.5 + state.street_activity / 100, 2),
        "heat_decay": round(1.5 - state.police_presence / 100, 2),
        "police_response_time": round(0.5 + state.crime_index / 100, 2),
        "crime_payout_bonus": round(state.property_values / 200, 2),
        "shop_price_modifier": round(0.8 + state.property_values / 250, 2),
    }


class RegionReader:
    def __init__(
        self,
        store: TerritoryStore,
        clock: Optional[Clock] = None,
        catalog: Optional[List[EffectDef]] = None,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self._catalog = catalog

    @property
    def catalog(self) -> List[EffectDef]:
        if self._catalog is None:
            self._catalog = list(get_effect_defs())
        return self._catalog

    # ----------------------------------------------------------
    # State
    # ----------------------------------------------------------

    def get_region_state(self, region_id: str) -> RegionState:
        with self.store.session() as session:
            return state_from_row(self.store.require_state(session, region_id))

    def get_all_region_states(self) -> List[RegionState]:
        with self.store.session() as session:
            rows = session.scalars(select(RegionStateRow).order_by(RegionStateRow.region_id))
            return [state_from_row(row) for row in rows]

    def get_region_modifiers(self, region_id: str) -> Dict[str, float]:
        return region_modifiers(self.get_region_state(region_id))

    def get_region_summary(self, region_id: str) -> RegionSummary:
        now = self.clock.now()
        with self.store.session() as session:
            state = state_from_row(self.store.require_state(session, region_id))
            recent = session.scalar(
                select(func.count(EventRow.id)).where(
                    EventRow.region_id == region_id,
                    EventRow.created_at > now - timedelta(hours=SUMMARY_WINDOW_HOURS),
                )
            ) or 0
            live = self._live_effects(session, region_id, now)
        return RegionSummary(
            state=state,
            events_last_24h=recent,
            active_effects=[e.effect_type for e in live],
        )

    # ----------------------------------------------------------
    # Effects
    # ----------------------------------------------------------

    def get_active_effects(self, region_id: str) -> List[ActiveEffect]:
        """Live effects in start order."""
        now = self.clock.now()
        with self.store.session() as session:
            self.store.require_state(session, region_id)
            return self._live_effects(session, region_id, now)

    def get_combined_modifiers(self, region_id: str) -> ModifierMap:
        return combine_modifiers(self.get_active_effects(region_id))

    def get_effect_history(self, region_id: str, limit: int = EFFECT_HISTORY_LIMIT) -> List[ActiveEffect]:
        """Every effect ever started in the region, newest first."""
        with self.store.session() as session:
            self.store.require_state(session, region_id)
            rows = session.scalars(
                select(ActiveEffectRow)
                .where(ActiveEffectRow.region_id == region_id)
                .order_by(ActiveEffectRow.started_at.desc(), ActiveEffectRow.id.desc())
                .limit(limit)
            )
            return [effect_from_row(row) for row in rows]

    def is_effect_active(self, region_id: str, effect_type: str) -> bool:
        now = self.clock.now()
        with self.store.session() as session:
            row = self.store.open_effect(session, region_id, effect_type)
            return row is not None and row.expires_at > now

    def is_effect_on_cooldown(self, region_id: str, effect_type: str) -> bool:
        definition = next((d for d in self.catalog if d.effect_type == effect_type), None)
        if definition is None:
            raise UnknownEffect(effect_type)
        now = self.clock.now()
        with self.store.session() as session:
            last_end = self.store.last_effect_end(session, region_id, effect_type)
        if last_end is None or last_end > now:
            return False
        return now < last_end + timedelta(minutes=definition.cooldown_minutes)

    # ----------------------------------------------------------
    # Events
    # ----------------------------------------------------------

    def get_region_history(self, region_id: str, limit: int = HISTORY_LIMIT) -> List[EventRecord]:
        """Most recent events first, processed or not."""
        if limit <= 0:
            return []
        with self.store.session() as session:
            self.store.require_state(session, region_id)
            rows = session.scalars(
                select(EventRow)
                .where(EventRow.region_id == region_id)
                .order_by(EventRow.created_at.desc(), EventRow.id.desc())
                .limit(limit)
            )
            return [event_from_row(row) for row in rows]

    # ----------------------------------------------------------
    # Internal
    # ----------------------------------------------------------

    @staticmethod
    def _live_effects(session, region_id: str, now: datetime) -> List[ActiveEffect]:
        rows = session.scalars(
            select(ActiveEffectRow)
            .where(
                ActiveEffectRow.region_id == region_id,
                ActiveEffectRow.ended_at.is_(None),
                ActiveEffectRow.expires_at > now,
            )
            .order_by(ActiveEffectRow.started_at, ActiveEffectRow.id)
        )
        return [effect_from_row(row) for row in rows]
