"""
Turf — ecosystem/locks.py
Per-region exclusivity for state mutations.

Aggregation and decay of the same region serialize here; different regions
proceed in parallel. A holder keeps the lock for one read-compute-write cycle
only. Waiting is bounded by a timeout, after which RegionLocked is raised and
the caller retries on its next tick.

In-process only. A horizontally scaled deployment needs a lease with the same
`hold()` contract.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from ecosystem.errors import RegionLocked


class RegionLockManager:
    def __init__(self, timeout: float = 2.0) -> None:
        self.timeout = timeout
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, region_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(region_id)
            if lock is None:
                lock = self._locks[region_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, region_id: str, timeout: Optional[float] = None) -> Iterator[None]:
        wait = self.timeout if timeout is None else timeout
        lock = self._lock_for(region_id)
        acquired = lock.acquire(timeout=wait) if wait > 0 else lock.acquire(blocking=False)
        if not acquired:
            raise RegionLocked(region_id, wait)
        try:
            yield
        finally:
            lock.release()

    def is_held(self, region_id: str) -> bool:
        return self._lock_for(region_id).locked()
