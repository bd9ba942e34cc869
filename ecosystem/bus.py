"""
Turf — ecosystem/bus.py
Notification bus: post-commit fan-out of ecosystem changes.
===========================================================
Version:     0.2
Stack:       Python 3.11+ | Pydantic v2 | bespoke pub-sub
Status:      Canonical. Components emit only after their transaction commits
             and after the region lock is released.

Architecture notes
------------------
- Pass the instance at construction. No global singleton.
- Wildcard key "*" receives every emitted event (used by the Journal).
- A failing handler is logged and emission continues. A subscriber can
  never roll back or stall a committed mutation.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# ============================================================
# CANONICAL EVENT KEYS
# Never use raw strings. Add new keys here only.
# ============================================================

EVT_EVENT_RECORDED   = "ecosystem.event_recorded"
EVT_REGION_AGGREGATED = "ecosystem.region_aggregated"
EVT_STATUS_CHANGED   = "ecosystem.status_changed"
EVT_REGION_DECAYED   = "ecosystem.region_decayed"
EVT_EFFECT_TRIGGERED = "ecosystem.effect_triggered"
EVT_EFFECT_ENDED     = "ecosystem.effect_ended"
EVT_TICK_COMPLETED   = "ecosystem.tick_completed"

WILDCARD = "*"


class EcosystemEvent(BaseModel):
    """Envelope for every notification. `data` stays flat and JSON-safe."""
    event_key: str
    region_id: Optional[str] = None
    occurred_at: datetime
    data: Dict[str, Any] = Field(default_factory=dict)


HandlerFn = Callable[[EcosystemEvent], None]


class EventBus:
    def __init__(self) -> None:
        self._subscribers: Dict[str, List[HandlerFn]] = {}

    def subscribe(self, event_key: str, handler: HandlerFn) -> None:
        self._subscribers.setdefault(event_key, []).append(handler)

    def unsubscribe(self, event_key: str, handler: HandlerFn) -> None:
        if event_key in self._subscribers:
            self._subscribers[event_key] = [
                h for h in self._subscribers[event_key] if h != handler
            ]

    def emit(self, event: EcosystemEvent) -> None:
        targets = (
            self._subscribers.get(event.event_key, [])
            + self._subscribers.get(WILDCARD, [])
        )
        for handler in targets:
            try:
                handler(event)
            except Exception:  # noqa: BLE001
                logger.exception("Handler error on '%s'", event.event_key)

    def publish(
        self,
        event_key: str,
        occurred_at: datetime,
        region_id: Optional[str] = None,
        **data: Any,
    ) -> EcosystemEvent:
        """Build the envelope and emit it. Returns the envelope."""
        event = EcosystemEvent(
            event_key=event_key, region_id=region_id, occurred_at=occurred_at, data=data
        )
        self.emit(event)
        return event
