"""
Turf — ecosystem/store.py
Persistence: Event Store, RegionState rows, ActiveEffect rows.
=============================================================
Version:     0.3
Stack:       Python 3.11+ | SQLAlchemy 2.0 (SQLite default)
Status:      Canonical schema.

Architecture notes
------------------
- Bounds are enforced twice: every write site clamps, and CHECK constraints
  reject anything that slips through (the transaction then rolls back).
- At most one non-ended ActiveEffect per (region, effect type): partial
  unique index `uq_active_effects_open`. Two racing evaluation passes cannot
  both insert; the loser gets IntegrityError.
- SQLite runs with explicit BEGIN so that reads inside a transaction belong
  to it and a rollback discards every statement of the batch. Write
  transactions use BEGIN IMMEDIATE, so concurrent writers queue on the busy
  timeout; file databases run in WAL mode so readers never wait on them.
- OperationalError / InterfaceError surface as StorageUnavailable after
  rollback; any other error propagates unchanged, also after rollback.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from ecosystem.errors import RegionNotFound, StorageUnavailable
from ecosystem.models import (
    DELTA_CAP,
    METRIC_MAX,
    METRIC_MIN,
    SEVERITY_MAX,
    SEVERITY_MIN,
    ActiveEffect,
    DeltaVector,
    EndReason,
    EventRecord,
    EventType,
    Metric,
    RegionState,
    RegionStatus,
    TriggeredBy,
)


# Execution option read by the SQLite "begin" listener: DEFERRED or IMMEDIATE.
SQLITE_BEGIN_OPTION = "turf_sqlite_begin"


def _values(enum_cls: Any) -> List[str]:
    return [member.value for member in enum_cls]


def _enum(enum_cls: Any, length: int = 30) -> Enum:
    return Enum(enum_cls, native_enum=False, values_callable=_values, length=length,
                validate_strings=True)


def _bounded(column: str) -> CheckConstraint:
    return CheckConstraint(f"{column} >= {METRIC_MIN} AND {column} <= {METRIC_MAX}",
                           name=f"ck_region_states_{column}")


def _impact(column: str) -> CheckConstraint:
    return CheckConstraint(f"{column} >= -{DELTA_CAP} AND {column} <= {DELTA_CAP}",
                           name=f"ck_district_events_{column}")


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all ecosystem ORM models."""


# ---------------------------------------------------------------------------
# Regions: static, created once at world setup
# ---------------------------------------------------------------------------
class RegionRow(Base):
    __tablename__ = "regions"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    difficulty: Mapped[int] = mapped_column(Integer, default=3)
    economy_level: Mapped[int] = mapped_column(Integer, default=50)
    police_presence: Mapped[int] = mapped_column(Integer, default=50)
    crime_rate: Mapped[int] = mapped_column(Integer, default=50)
    street_activity: Mapped[int] = mapped_column(Integer, default=50)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


# ---------------------------------------------------------------------------
# Region states: one row per region, mutated by Aggregator and Decay only
# ---------------------------------------------------------------------------
class RegionStateRow(Base):
    __tablename__ = "region_states"
    __table_args__ = (
        _bounded("crime_index"),
        _bounded("police_presence"),
        _bounded("property_values"),
        _bounded("business_health"),
        _bounded("street_activity"),
        _bounded("heat_level"),
        _bounded("crew_tension"),
        CheckConstraint("daily_crime_count >= 0", name="ck_region_states_daily_crime_count"),
        CheckConstraint("daily_transaction_volume >= 0", name="ck_region_states_daily_volume"),
        CheckConstraint("active_businesses >= 0", name="ck_region_states_active_businesses"),
        Index("ix_region_states_last_calculated", "last_calculated"),
        Index("ix_region_states_status", "status"),
    )

    region_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("regions.id", ondelete="CASCADE"), primary_key=True
    )
    crime_index: Mapped[int] = mapped_column(Integer, default=50)
    police_presence: Mapped[int] = mapped_column(Integer, default=50)
    property_values: Mapped[int] = mapped_column(Integer, default=50)
    business_health: Mapped[int] = mapped_column(Integer, default=50)
    street_activity: Mapped[int] = mapped_column(Integer, default=50)
    heat_level: Mapped[int] = mapped_column(Integer, default=0)
    crew_tension: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[RegionStatus] = mapped_column(_enum(RegionStatus), default=RegionStatus.STABLE)

    daily_crime_count: Mapped[int] = mapped_column(Integer, default=0)
    daily_transaction_volume: Mapped[int] = mapped_column(Integer, default=0)
    active_businesses: Mapped[int] = mapped_column(Integer, default=0)

    last_calculated: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_status_change: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    def primary_vector(self) -> tuple:
        return (
            self.crime_index,
            self.police_presence,
            self.property_values,
            self.business_health,
            self.street_activity,
        )


# ---------------------------------------------------------------------------
# District events: append-only; only processed/processed_at ever change
# ---------------------------------------------------------------------------
class EventRow(Base):
    __tablename__ = "district_events"
    __table_args__ = (
        CheckConstraint(f"severity >= {SEVERITY_MIN} AND severity <= {SEVERITY_MAX}",
                        name="ck_district_events_severity"),
        _impact("crime_impact"),
        _impact("police_impact"),
        _impact("property_impact"),
        _impact("business_impact"),
        _impact("activity_impact"),
        Index("ix_district_events_unprocessed", "region_id", "processed", "id"),
        Index("ix_district_events_region_created", "region_id", "created_at"),
        Index("ix_district_events_high_severity", "region_id", "created_at",
              sqlite_where=text("severity >= 7"), postgresql_where=text("severity >= 7")),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    region_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("regions.id", ondelete="CASCADE"), nullable=False
    )
    event_type: Mapped[EventType] = mapped_column(_enum(EventType), nullable=False)
    severity: Mapped[int] = mapped_column(Integer, default=1)
    actor_id: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    target_id: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    crew_id: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    event_metadata: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, default=dict)

    crime_impact: Mapped[int] = mapped_column(Integer, default=0)
    police_impact: Mapped[int] = mapped_column(Integer, default=0)
    property_impact: Mapped[int] = mapped_column(Integer, default=0)
    business_impact: Mapped[int] = mapped_column(Integer, default=0)
    activity_impact: Mapped[int] = mapped_column(Integer, default=0)

    processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    def delta_vector(self) -> tuple:
        return (
            self.crime_impact,
            self.police_impact,
            self.property_impact,
            self.business_impact,
            self.activity_impact,
        )


# ---------------------------------------------------------------------------
# Active effects: live and historical instantiations of catalog entries
# ---------------------------------------------------------------------------
class ActiveEffectRow(Base):
    __tablename__ = "active_effects"
    __table_args__ = (
        Index("uq_active_effects_open", "region_id", "effect_type", unique=True,
              sqlite_where=text("ended_at IS NULL"), postgresql_where=text("ended_at IS NULL")),
        Index("ix_active_effects_region_started", "region_id", "started_at"),
        Index("ix_active_effects_expires", "expires_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    region_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("regions.id", ondelete="CASCADE"), nullable=False
    )
    effect_type: Mapped[str] = mapped_column(String(50), nullable=False)
    triggered_by: Mapped[TriggeredBy] = mapped_column(_enum(TriggeredBy), nullable=False)
    trigger_metric: Mapped[Optional[Metric]] = mapped_column(_enum(Metric), default=None)
    trigger_value: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    modifiers: Mapped[Dict[str, float]] = mapped_column(JSON, default=dict)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None)
    ended_by: Mapped[Optional[EndReason]] = mapped_column(_enum(EndReason), default=None)


# ---------------------------------------------------------------------------
# Row -> snapshot converters
# ---------------------------------------------------------------------------
def state_from_row(row: RegionStateRow) -> RegionState:
    return RegionState(
        region_id=row.region_id,
        crime_index=row.crime_index,
        police_presence=row.police_presence,
        property_values=row.property_values,
        business_health=row.business_health,
        street_activity=row.street_activity,
        heat_level=row.heat_level,
        crew_tension=row.crew_tension,
        status=row.status,
        daily_crime_count=row.daily_crime_count,
        daily_transaction_volume=row.daily_transaction_volume,
        active_businesses=row.active_businesses,
        last_calculated=row.last_calculated,
        last_status_change=row.last_status_change,
    )


def event_from_row(row: EventRow) -> EventRecord:
    return EventRecord(
        id=row.id,
        region_id=row.region_id,
        event_type=row.event_type,
        severity=row.severity,
        actor_id=row.actor_id,
        target_id=row.target_id,
        crew_id=row.crew_id,
        metadata=dict(row.event_metadata or {}),
        delta=DeltaVector.from_sequence(row.delta_vector()),
        processed=row.processed,
        processed_at=row.processed_at,
        created_at=row.created_at,
    )


def effect_from_row(row: ActiveEffectRow) -> ActiveEffect:
    return ActiveEffect(
        id=row.id,
        region_id=row.region_id,
        effect_type=row.effect_type,
        triggered_by=row.triggered_by,
        trigger_metric=row.trigger_metric,
        trigger_value=row.trigger_value,
        modifiers=dict(row.modifiers or {}),
        duration_minutes=row.duration_minutes,
        started_at=row.started_at,
        expires_at=row.expires_at,
        ended_at=row.ended_at,
        ended_by=row.ended_by,
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------
def _configure_sqlite(engine: Engine, file_backed: bool) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        # Hand transaction control to SQLAlchemy; see _on_begin.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        if file_backed:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn: Any) -> None:
        # IMMEDIATE takes the write lock up front, so competing writers wait
        # out the busy timeout instead of failing on a lock upgrade.
        mode = conn.get_execution_options().get(SQLITE_BEGIN_OPTION, "DEFERRED")
        conn.exec_driver_sql(f"BEGIN {mode}")


class TerritoryStore:
    """
    Owns the SQLAlchemy engine and session factory.

    Usage:
        store = TerritoryStore("sqlite:///sessions/ecosystem.db")
        store.create_schema()
        with store.transaction() as session:
            ...
    """

    def __init__(self, database_url: str, echo: bool = False) -> None:
        url = make_url(database_url)
        kwargs: Dict[str, Any] = {"echo": echo}
        is_sqlite = url.get_backend_name() == "sqlite"
        if is_sqlite:
            kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
            if url.database in (None, "", ":memory:"):
                kwargs["poolclass"] = StaticPool
            else:
                Path(url.database).parent.mkdir(parents=True, exist_ok=True)

        self.database_url = database_url
        self.engine = create_engine(url, **kwargs)
        if is_sqlite:
            _configure_sqlite(self.engine, file_backed="poolclass" not in kwargs)
        # Same pool and listeners; only the BEGIN mode differs.
        self._write_engine = self.engine.execution_options(**{SQLITE_BEGIN_OPTION: "IMMEDIATE"})
        self._session_factory = sessionmaker(self.engine, expire_on_commit=False)
        self._write_session_factory = sessionmaker(self._write_engine, expire_on_commit=False)

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session(self, write: bool = False) -> Iterator[Session]:
        """Read session by default; `write=True` starts its transaction holding the write lock."""
        factory = self._write_session_factory if write else self._session_factory
        session = factory()
        try:
            yield session
        except (OperationalError, InterfaceError) as exc:
            session.rollback()
            raise StorageUnavailable(f"Storage unavailable: {exc.orig or exc}") from exc
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """A session inside BEGIN ... COMMIT. Any exception rolls the whole block back."""
        with self.session(write=True) as session:
            with session.begin():
                yield session

    # ----------------------------------------------------------
    # Shared lookups
    # ----------------------------------------------------------

    @staticmethod
    def require_state(session: Session, region_id: str, for_update: bool = False) -> RegionStateRow:
        row = session.get(RegionStateRow, region_id, with_for_update=for_update or None)
        if row is None:
            raise RegionNotFound(region_id)
        return row

    @staticmethod
    def region_exists(session: Session, region_id: str) -> bool:
        return session.get(RegionRow, region_id) is not None

    @staticmethod
    def open_effect(session: Session, region_id: str, effect_type: str) -> Optional[ActiveEffectRow]:
        """The non-ended row for (region, type), live or overdue. At most one exists."""
        return session.scalars(
            select(ActiveEffectRow).where(
                ActiveEffectRow.region_id == region_id,
                ActiveEffectRow.effect_type == effect_type,
                ActiveEffectRow.ended_at.is_(None),
            )
        ).first()

    @staticmethod
    def last_effect_end(session: Session, region_id: str, effect_type: str) -> Optional[datetime]:
        """Most recent end of (region, type); an un-ended row counts at its expiry."""
        return session.scalar(
            select(func.max(func.coalesce(ActiveEffectRow.ended_at, ActiveEffectRow.expires_at)))
            .where(
                ActiveEffectRow.region_id == region_id,
                ActiveEffectRow.effect_type == effect_type,
            )
        )

    def list_region_ids(self) -> List[str]:
        with self.session() as session:
            return list(session.scalars(select(RegionRow.id).order_by(RegionRow.id)))
