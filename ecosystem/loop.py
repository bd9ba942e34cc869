"""
Turf — ecosystem/loop.py
EcosystemLoop: wires store, locks, bus, components and periodic workers.
========================================================================
Version:     0.3
Stack:       Python 3.11+ | SQLAlchemy 2.0 | Pydantic v2
Status:      Integration entry point.

Workers
-------
  aggregation   Aggregator.process_all        aggregation.interval_seconds
  decay         DecayProcess.decay_all        decay.interval_seconds
  triggers      TriggerEngine.evaluate_all    triggers.interval_seconds
  expiry        TriggerEngine.expire_tick     triggers.expiry_interval_seconds

run_all() is the combined pass: expiry, then aggregation, then threshold
evaluation, so a fresh batch can trigger effects in the same call.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from districts.regions import RegionRegistry
from ecosystem.aggregator import Aggregator
from ecosystem.bus import EventBus
from ecosystem.clock import Clock, SystemClock
from ecosystem.data_loader import EcosystemSettings, EffectDef, get_effect_defs, get_settings
from ecosystem.decay import DecayProcess
from ecosystem.journal import JournalInscriber
from ecosystem.locks import RegionLockManager
from ecosystem.models import TickSummary
from ecosystem.reader import RegionReader
from ecosystem.recorder import EventRecorder
from ecosystem.scheduler import PeriodicWorker, WorkerStatus
from ecosystem.store import TerritoryStore
from ecosystem.triggers import TriggerEngine

logger = logging.getLogger(__name__)

WORKER_AGGREGATION = "aggregation"
WORKER_DECAY = "decay"
WORKER_TRIGGERS = "triggers"
WORKER_EXPIRY = "expiry"


class EcosystemLoop:
    """
    Usage:
        loop = EcosystemLoop()
        loop.regions.seed_from_catalog()
        loop.start()
        ...
        loop.record_event("downtown", "crime_committed", 6)
        loop.reader.get_combined_modifiers("downtown")
        ...
        loop.close()
    """

    def __init__(
        self,
        settings: Optional[EcosystemSettings] = None,
        clock: Optional[Clock] = None,
        database_url: Optional[str] = None,
        journal_path: Optional[Path] = None,
        effect_catalog: Optional[List[EffectDef]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self.bus = EventBus()

        self.store = TerritoryStore(database_url or self.settings.storage.database_url)
        self.store.create_schema()
        self.locks = RegionLockManager(self.settings.locks.acquire_timeout_seconds)
        catalog = list(effect_catalog) if effect_catalog is not None else list(get_effect_defs())

        self.regions = RegionRegistry(self.store, self.clock)
        self.recorder = EventRecorder(self.store, self.clock, self.bus)
        self.aggregator = Aggregator(self.store, self.locks, self.settings, self.clock, self.bus)
        self.decay = DecayProcess(self.store, self.locks, self.settings, self.clock, self.bus)
        self.triggers = TriggerEngine(self.store, self.settings, self.clock, self.bus, catalog)
        self.reader = RegionReader(self.store, self.clock, catalog)
        self.journal = JournalInscriber(self.bus, journal_path) if journal_path else None

        self.workers: Dict[str, PeriodicWorker] = {
            WORKER_AGGREGATION: self._worker(
                WORKER_AGGREGATION, self.aggregator.process_all,
                self.settings.aggregation.interval_seconds),
            WORKER_DECAY: self._worker(
                WORKER_DECAY, self.decay.decay_all, self.settings.decay.interval_seconds),
            WORKER_TRIGGERS: self._worker(
                WORKER_TRIGGERS, self.triggers.evaluate_all, self.settings.triggers.interval_seconds),
            WORKER_EXPIRY: self._worker(
                WORKER_EXPIRY, self.triggers.expire_tick,
                self.settings.triggers.expiry_interval_seconds),
        }

    def _worker(self, name: str, job, interval: float) -> PeriodicWorker:
        return PeriodicWorker(name, job, interval, self.clock, self.bus)

    # ----------------------------------------------------------
    # Inbound
    # ----------------------------------------------------------

    def record_event(self, region_id: str, event_type: str, severity: int, **kwargs: Any) -> int:
        return self.recorder.record_event(region_id, event_type, severity, **kwargs)

    # ----------------------------------------------------------
    # Manual entry points (operational tooling)
    # ----------------------------------------------------------

    def run_aggregation(self) -> TickSummary:
        return self.workers[WORKER_AGGREGATION].run_once()

    def run_decay(self) -> TickSummary:
        return self.workers[WORKER_DECAY].run_once()

    def run_triggers(self) -> TickSummary:
        return self.workers[WORKER_TRIGGERS].run_once()

    def run_expiry(self) -> TickSummary:
        return self.workers[WORKER_EXPIRY].run_once()

    def run_all(self) -> TickSummary:
        summary = self.run_expiry()
        summary = summary.merged(self.run_aggregation(), worker="all")
        return summary.merged(self.run_triggers(), worker="all")

    # ----------------------------------------------------------
    # Lifecycle
    # ----------------------------------------------------------

    def start(self) -> None:
        for worker in self.workers.values():
            worker.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        for worker in self.workers.values():
            worker.stop(timeout)

    def status(self) -> Dict[str, WorkerStatus]:
        return {name: worker.status() for name, worker in self.workers.items()}

    def close(self) -> None:
        self.stop()
        if self.journal is not None:
            self.journal.detach()
        self.store.dispose()
