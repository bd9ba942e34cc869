from datetime import datetime, timedelta

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError

from ecosystem.errors import RegionNotFound, StorageUnavailable
from ecosystem.models import EndReason, RegionStatus, TriggeredBy
from ecosystem.store import ActiveEffectRow, RegionRow, RegionStateRow, TerritoryStore

NOW = datetime(2025, 1, 1, 12, 0, 0)


@pytest.fixture
def store(tmp_path):
    store = TerritoryStore(f"sqlite:///{tmp_path / 'nested' / 'turf.db'}")
    store.create_schema()
    with store.transaction() as session:
        session.add(RegionRow(id="downtown", name="Downtown", created_at=NOW))
    yield store
    store.dispose()


def _state(**overrides):
    values = dict(
        region_id="downtown", status=RegionStatus.STABLE, last_calculated=NOW,
        last_status_change=NOW, created_at=NOW, updated_at=NOW,
    )
    values.update(overrides)
    return RegionStateRow(**values)


def _effect(**overrides):
    values = dict(
        region_id="downtown", effect_type="street_heat", triggered_by=TriggeredBy.ADMIN,
        modifiers={}, duration_minutes=60, started_at=NOW, expires_at=NOW + timedelta(hours=1),
    )
    values.update(overrides)
    return ActiveEffectRow(**values)


@pytest.mark.usefixtures("store")
def test_sqlite_parent_directory_created(tmp_path):
    assert (tmp_path / "nested").is_dir()


def test_in_memory_store_shares_one_database():
    store = TerritoryStore("sqlite://")
    store.create_schema()
    with store.transaction() as session:
        session.add(RegionRow(id="annex", name="Annex", created_at=NOW))
    assert store.list_region_ids() == ["annex"]
    store.dispose()


def test_out_of_range_metric_rejected_by_schema(store):
    with pytest.raises(IntegrityError):
        with store.transaction() as session:
            session.add(_state(crime_index=150))


def test_second_open_effect_rejected_by_schema(store):
    with store.transaction() as session:
        session.add(_effect())
    with pytest.raises(IntegrityError):
        with store.transaction() as session:
            session.add(_effect(started_at=NOW + timedelta(minutes=1)))


def test_ended_effects_do_not_count_as_open(store):
    with store.transaction() as session:
        session.add(_effect(ended_at=NOW, ended_by=EndReason.ADMIN))
        session.add(_effect(ended_at=NOW, ended_by=EndReason.EXPIRED))
        session.add(_effect())


def test_failed_transaction_leaves_nothing_behind(store):
    with pytest.raises(RuntimeError):
        with store.transaction() as session:
            session.add(RegionRow(id="parkdale", name="Parkdale", created_at=NOW))
            session.flush()
            raise RuntimeError("abort")
    assert store.list_region_ids() == ["downtown"]


def test_operational_errors_become_storage_unavailable(store):
    with pytest.raises(StorageUnavailable):
        with store.session():
            raise OperationalError("SELECT 1", {}, Exception("disk I/O error"))


def test_require_state_unknown_region(store):
    with store.session() as session:
        with pytest.raises(RegionNotFound):
            TerritoryStore.require_state(session, "downtown")


def test_last_effect_end_prefers_ended_at(store):
    with store.transaction() as session:
        session.add(_effect(ended_at=NOW + timedelta(minutes=10), ended_by=EndReason.ADMIN))
    with store.session() as session:
        assert store.last_effect_end(session, "downtown", "street_heat") == NOW + timedelta(minutes=10)
        assert store.last_effect_end(session, "downtown", "economic_boom") is None


def test_file_database_runs_in_wal_mode(store):
    with store.session() as session:
        assert session.execute(text("PRAGMA journal_mode")).scalar() == "wal"
