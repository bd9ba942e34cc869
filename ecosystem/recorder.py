"""
Turf — ecosystem/recorder.py
Event Recorder: the single inbound call from game-action handlers.
=================================================================
Version:     0.2
Stack:       Python 3.11+ | SQLAlchemy 2.0
Status:      Canonical producer path.

Architecture notes
------------------
- Append-only. Never reads or writes RegionState and never takes a region
  lock, so producers never wait on the aggregation pipeline.
- The delta vector is computed here, once, and stored with the event.
- Failures are raised to the caller. A rejected event is never dropped
  into an "unmapped" bucket.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Mapping, Optional

from ecosystem.bus import EVT_EVENT_RECORDED, EventBus
from ecosystem.clock import Clock, SystemClock
from ecosystem.errors import InvalidEvent, RegionNotFound
from ecosystem.impact import ImpactWeights, calculate_impact, parse_event_type, validate_severity
from ecosystem.models import EventType
from ecosystem.store import EventRow, TerritoryStore

logger = logging.getLogger(__name__)


def _validate_metadata(metadata: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    if metadata is None:
        return {}
    if not isinstance(metadata, Mapping):
        raise InvalidEvent(f"Metadata must be a mapping, got {type(metadata).__name__}")
    try:
        json.dumps(dict(metadata), allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise InvalidEvent(f"Metadata is not JSON-serializable: {exc}") from exc
    return dict(metadata)


class EventRecorder:
    """
    Usage (inside a game-action handler, after the action completes):
        recorder.record_event("downtown", "crime_committed", 8, actor_id=player_id)
    """

    def __init__(
        self,
        store: TerritoryStore,
        clock: Optional[Clock] = None,
        bus: Optional[EventBus] = None,
        weights: Optional[Mapping[EventType, ImpactWeights]] = None,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.bus = bus
        self.weights = weights

    def record_event(
        self,
        region_id: str,
        event_type: EventType | str,
        severity: int,
        actor_id: Optional[str] = None,
        target_id: Optional[str] = None,
        crew_id: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> int:
        """
        Validate, compute the delta vector, append. Returns the new event id.

        Raises InvalidEvent, RegionNotFound, or StorageUnavailable.
        """
        etype = parse_event_type(event_type)
        sev = validate_severity(severity)
        meta = _validate_metadata(metadata)
        delta = calculate_impact(etype, sev, self.weights)
        now = self.clock.now()

        with self.store.transaction() as session:
            if not self.store.region_exists(session, region_id):
                raise RegionNotFound(region_id)
            row = EventRow(
                region_id=region_id,
                event_type=etype,
                severity=sev,
                actor_id=actor_id,
                target_id=target_id,
                crew_id=crew_id,
                event_metadata=meta,
                crime_impact=delta.crime_index,
                police_impact=delta.police_presence,
                property_impact=delta.property_values,
                business_impact=delta.business_health,
                activity_impact=delta.street_activity,
                processed=False,
                created_at=now,
            )
            session.add(row)
            session.flush()
            event_id = row.id

        logger.debug("Recorded %s (severity %d) in %s as event %d", etype, sev, region_id, event_id)
        if self.bus is not None:
            self.bus.publish(
                EVT_EVENT_RECORDED,
                now,
                region_id=region_id,
                event_id=event_id,
                event_type=etype.value,
                severity=sev,
                delta=delta.model_dump(),
            )
        return event_id
