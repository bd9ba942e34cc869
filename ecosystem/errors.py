"""
Turf — ecosystem/errors.py
Error taxonomy shared by producers, periodic workers, and readers.

  RegionNotFound      unknown region id
  RegionLocked        another mutation holds the region; retry next tick
  InvalidEvent        event rejected at ingestion (unknown type, bad severity)
  StorageUnavailable  storage failed mid-operation; the transaction was rolled back
  UnknownEffect       effect type absent from the catalog
"""

from __future__ import annotations


class EcosystemError(Exception):
    """Base class for every error raised by the ecosystem engine."""


class RegionNotFound(EcosystemError):
    def __init__(self, region_id: str) -> None:
        super().__init__(f"Unknown region: {region_id}")
        self.region_id = region_id


class RegionLocked(EcosystemError):
    def __init__(self, region_id: str, timeout: float) -> None:
        super().__init__(f"Region {region_id} is locked by another mutation (waited {timeout}s)")
        self.region_id = region_id
        self.timeout = timeout


class InvalidEvent(EcosystemError):
    pass


class StorageUnavailable(EcosystemError):
    pass


class UnknownEffect(EcosystemError):
    def __init__(self, effect_type: str) -> None:
        super().__init__(f"Unknown effect type: {effect_type}")
        self.effect_type = effect_type
