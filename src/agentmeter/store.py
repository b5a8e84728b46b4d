"""SQLite-backed durable store for finalized usage events.

The usage_events table is an append-only log and the single source of
truth for aggregation. Cumulative counters live in their own table and
are durable state of their own: they are never rebuilt from the log.

The database runs in WAL mode so scans read a consistent snapshot from
their own connection while a single writer keeps appending.
"""

import threading
import time
from pathlib import Path
from typing import Any, Callable, Iterator

import structlog
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Float,
    Index,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    create_engine,
    delete,
    event,
    func,
    insert,
    inspect,
    literal_column,
    select,
    text,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import URL, Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from agentmeter.errors import StoreError
from agentmeter.models import CumulativeCounter, UsageEvent

logger = structlog.get_logger()

metadata = MetaData()

migrations = Table(
    "_migrations",
    metadata,
    Column("version", Integer, primary_key=True),
    Column("description", String, nullable=False),
    Column("applied_at", Integer, nullable=False),
)

usage_events = Table(
    "usage_events",
    metadata,
    Column("id", String, primary_key=True),
    Column("session_id", String, nullable=False),
    Column("agent_type", String, nullable=False),
    Column("tab_id", String, nullable=False),
    Column("start_time", Integer, nullable=False),
    Column("timestamp", Integer, nullable=False),
    Column("duration_ms", Integer, nullable=False),
    Column("output_tokens", Integer),
    Column("tokens_per_second", Float),
    Column("estimated", Boolean, nullable=False),
    Column("status", String, nullable=False),
    Column("input_tokens", Integer, nullable=False, default=0),
    Column("cache_read_input_tokens", Integer, nullable=False, default=0),
    Column("cache_creation_input_tokens", Integer, nullable=False, default=0),
    Column("reasoning_tokens", Integer, nullable=False, default=0),
    Column("cost_usd", Float),
    Column("model", String),
    Column("bytes_observed", Integer, nullable=False, default=0),
    Column("reported_cost_usd", Float),
    Column("calculated_cost_usd", Float),
    Column("billing_mode", String),
    Column("pricing_model", String),
    CheckConstraint("duration_ms >= 0", name="ck_usage_events_duration"),
    CheckConstraint(
        "status IN ('completed', 'cancelled')", name="ck_usage_events_status"
    ),
    Index("idx_usage_events_session_time", "session_id", "timestamp"),
    Index("idx_usage_events_time", "timestamp"),
)

cumulative_counters = Table(
    "cumulative_counters",
    metadata,
    Column("session_id", String, nullable=False),
    Column("tab_id", String, nullable=False),
    Column("input_tokens", Integer, nullable=False, default=0),
    Column("output_tokens", Integer, nullable=False, default=0),
    Column("cache_read_input_tokens", Integer, nullable=False, default=0),
    Column("cache_creation_input_tokens", Integer, nullable=False, default=0),
    Column("reasoning_tokens", Integer, nullable=False, default=0),
    Column("cost_usd", Float, nullable=False, default=0.0),
    Column("cycles", Integer, nullable=False, default=0),
    Column("updated_at", Integer, nullable=False, default=0),
    PrimaryKeyConstraint("session_id", "tab_id"),
)

# columns added to usage_events after its first version
_COST_COLUMNS = (
    "reported_cost_usd",
    "calculated_cost_usd",
    "billing_mode",
    "pricing_model",
)


def _create_tables(*tables: "Table") -> "Callable[[Connection], None]":
    def apply(conn: "Connection") -> "None":
        for table in tables:
            table.create(conn, checkfirst=True)

    return apply


def _add_cost_columns(conn: "Connection") -> "None":
    existing = {c["name"] for c in inspect(conn).get_columns("usage_events")}
    for name in _COST_COLUMNS:
        if name in existing:
            continue
        column_type = usage_events.c[name].type.compile(dialect=conn.dialect)
        conn.execute(text(f"ALTER TABLE usage_events ADD COLUMN {name} {column_type}"))


# each tuple is (version, description, apply)
MIGRATIONS: "list[tuple[int, str, Callable[[Connection], None]]]" = [
    (1, "usage events log", _create_tables(usage_events)),
    (2, "cumulative counters", _create_tables(cumulative_counters)),
    (3, "reported and calculated cost", _add_cost_columns),
]

_EVENT_COLUMNS = tuple(c.name for c in usage_events.columns)

_COUNTER_FIELDS = (
    "input_tokens",
    "output_tokens",
    "cache_read_input_tokens",
    "cache_creation_input_tokens",
    "reasoning_tokens",
    "cost_usd",
    "cycles",
)


def _event_to_row(usage_event: "UsageEvent") -> "dict[str, Any]":
    return {name: getattr(usage_event, name) for name in _EVENT_COLUMNS}


def _row_to_event(row: "Any") -> "UsageEvent":
    values = dict(row._mapping)
    values["estimated"] = bool(values["estimated"])
    return UsageEvent(**values)


def _read_cumulative(
    conn: "Connection",
    session_id: "str",
    tab_id: "str",
) -> "CumulativeCounter":
    query = select(
        *(cumulative_counters.c[f] for f in _COUNTER_FIELDS),
        cumulative_counters.c.updated_at,
    ).where(
        cumulative_counters.c.session_id == session_id,
        cumulative_counters.c.tab_id == tab_id,
    )
    row = conn.execute(query).first()
    if row is None:
        return CumulativeCounter(session_id=session_id, tab_id=tab_id)
    return CumulativeCounter(session_id=session_id, tab_id=tab_id, **row._mapping)


def _create_engine(path: "Path") -> "Engine":
    engine = create_engine(
        URL.create("sqlite", database=str(path)),
        connect_args={"timeout": 5.0, "check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: "Any", _: "Any") -> "None":
        # let SQLAlchemy emit BEGIN itself so reads get a real snapshot
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=FULL")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn: "Connection") -> "None":
        conn.exec_driver_sql("BEGIN")

    return engine


class EventStore:
    """
    EventStore is the append-only, crash-safe record of
    finalized cycles.

    Writes are serialized under a lock, so concurrent finalizations
    never interleave. Every scan uses its own connection and reads
    inside a single transaction, observing a consistent prefix of the
    log without blocking the writer.
    """

    def __init__(self, path: "str | Path") -> "None":
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock: "threading.Lock" = threading.Lock()
        self._engine = _create_engine(self._path)
        try:
            self._migrate()
        except SQLAlchemyError as e:
            self._engine.dispose()
            raise StoreError(f"cannot open event store at {self._path}: {e}") from e

    @property
    def path(self) -> "Path":
        return self._path

    def _migrate(self) -> "None":
        with self._lock:
            with self._engine.begin() as conn:
                migrations.create(conn, checkfirst=True)
                applied = set(conn.execute(select(migrations.c.version)).scalars())

            for version, description, apply in MIGRATIONS:
                if version in applied:
                    continue
                with self._engine.begin() as conn:
                    apply(conn)
                    conn.execute(
                        insert(migrations).values(
                            version=version,
                            description=description,
                            applied_at=int(time.time() * 1000),
                        )
                    )
                logger.info("store_migration_applied", version=version)

    def close(self) -> "None":
        with self._lock:
            self._engine.dispose()

    def append(self, usage_event: "UsageEvent") -> "None":
        """
        durably appends one finalized event.
        """
        try:
            with self._lock, self._engine.begin() as conn:
                conn.execute(insert(usage_events).values(**_event_to_row(usage_event)))
        except SQLAlchemyError as e:
            raise StoreError(f"failed to append event {usage_event.id}: {e}") from e

    def record(self, usage_event: "UsageEvent") -> "CumulativeCounter":
        """
        appends the event and adds its usage to the (session, tab)
        cumulative counter in the same transaction, so a retried
        write can never add to the counter twice. The returned counter
        is read inside that transaction; nothing runs after the commit.
        """
        try:
            with self._lock, self._engine.begin() as conn:
                conn.execute(insert(usage_events).values(**_event_to_row(usage_event)))
                self._add_to_cumulative(conn, usage_event)
                return _read_cumulative(conn, usage_event.session_id, usage_event.tab_id)
        except SQLAlchemyError as e:
            raise StoreError(f"failed to append event {usage_event.id}: {e}") from e

    @staticmethod
    def _add_to_cumulative(conn: "Connection", usage_event: "UsageEvent") -> "None":
        delta = CumulativeCounter(usage_event.session_id, usage_event.tab_id).plus(
            usage_event
        )
        stmt = sqlite_insert(cumulative_counters).values(
            session_id=delta.session_id,
            tab_id=delta.tab_id,
            updated_at=delta.updated_at,
            **{f: getattr(delta, f) for f in _COUNTER_FIELDS},
        )
        set_ = {f: cumulative_counters.c[f] + stmt.excluded[f] for f in _COUNTER_FIELDS}
        set_["updated_at"] = func.max(
            cumulative_counters.c.updated_at, stmt.excluded.updated_at
        )
        conn.execute(
            stmt.on_conflict_do_update(
                index_elements=["session_id", "tab_id"],
                set_=set_,
            )
        )

    def scan(self, since: "int" = 0) -> "Iterator[UsageEvent]":
        """
        yields events with timestamp >= since, oldest first. Each call
        is an independent scan over its own read transaction.
        """
        query = (
            select(usage_events)
            .where(usage_events.c.timestamp >= since)
            .order_by(usage_events.c.timestamp, literal_column("rowid"))
        )
        try:
            with self._engine.connect() as conn, conn.begin():
                for row in conn.execute(query):
                    yield _row_to_event(row)
        except SQLAlchemyError as e:
            raise StoreError(f"event scan failed: {e}") from e

    def get_cumulative(self, session_id: "str", tab_id: "str") -> "CumulativeCounter":
        """
        returns the counter snapshot, all zeros if the pair has
        never been updated or was reset.
        """
        try:
            with self._engine.connect() as conn:
                return _read_cumulative(conn, session_id, tab_id)
        except SQLAlchemyError as e:
            raise StoreError(f"failed to read cumulative counter: {e}") from e

    def reset_cumulative(self, session_id: "str", tab_id: "str") -> "None":
        try:
            with self._lock, self._engine.begin() as conn:
                conn.execute(
                    delete(cumulative_counters).where(
                        cumulative_counters.c.session_id == session_id,
                        cumulative_counters.c.tab_id == tab_id,
                    )
                )
        except SQLAlchemyError as e:
            raise StoreError(f"failed to reset cumulative counter: {e}") from e
