"""PostgreSQL statistics plugin.

One fetch cycle opens a single connection, detects the server version, then
folds ``pg_stat_database``, ``pg_stat_activity`` and ``pg_database`` into one
flat mapping of metric key to absolute value.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

import psycopg
from sqlalchemy import text
from sqlalchemy.engine import Connection, CursorResult, Engine, Row
from sqlalchemy.exc import SQLAlchemyError

from ..config import PostgresSettings
from ..db import create_postgres_engine
from ..errors import (
    HarvestConnectionError,
    QueryError,
    RowScanError,
    VersionParseError,
)
from .base import GraphDefinition, MetricPlugin, MetricSeries, merge_stats

logger = logging.getLogger("harvest.plugins.postgres")

# ref. https://www.postgresql.org/support/versioning/
VERSION_RE = re.compile(r"PostgreSQL (\d+)\.(\d+)(\.(\d+))? ", re.ASCII)

STAT_DATABASE_QUERY = "SELECT * FROM pg_stat_database"
CONNECTIONS_QUERY = (
    "select count(*), state, wait_event is not null from pg_stat_activity "
    "group by state, wait_event is not null"
)
LEGACY_CONNECTIONS_QUERY = (
    "select count(*), state, waiting from pg_stat_activity group by state, waiting"
)
DATABASE_SIZE_QUERY = (
    "select sum(pg_database_size(datname)) as dbsize from pg_database "
    "where has_database_privilege(datname, 'connect')"
)

# pg_stat_activity.wait_event replaced the boolean waiting column in 9.6
WAIT_EVENT_SINCE = (9, 6)

COUNTER_COLUMNS = (
    "xact_commit",
    "xact_rollback",
    "blks_read",
    "blks_hit",
    "tup_returned",
    "tup_fetched",
    "tup_inserted",
    "tup_updated",
    "tup_deleted",
)
OPTIONAL_COLUMNS: Dict[str, Callable[[Any], Any]] = {
    "blk_read_time": float,
    "blk_write_time": float,
    "deadlocks": int,
    "temp_bytes": int,
}

# States graphed by default; reported as zero when no backend is in them.
SEEDED_STATES: Dict[str, float] = {
    "active": 0.0,
    "active_waiting": 0.0,
    "idle": 0.0,
    "idle_in_transaction": 0.0,
    "idle_in_transaction_aborted": 0.0,
}

_STATE_RE = re.compile(r"[^a-zA-Z0-9_-]+")


@dataclass(frozen=True, order=True)
class Version:
    major: int
    minor: int
    patch: int = 0


@dataclass
class DatabaseStats:
    """Instance-wide totals of ``pg_stat_database``.

    Optional counters stay ``None`` until some row reports them, so a column the
    server does not have never shows up as zero.
    """

    xact_commit: int = 0
    xact_rollback: int = 0
    blks_read: int = 0
    blks_hit: int = 0
    tup_returned: int = 0
    tup_fetched: int = 0
    tup_inserted: int = 0
    tup_updated: int = 0
    tup_deleted: int = 0
    blk_read_time: Optional[float] = None
    blk_write_time: Optional[float] = None
    deadlocks: Optional[int] = None
    temp_bytes: Optional[int] = None

    def add(self, other: "DatabaseStats") -> None:
        for name in COUNTER_COLUMNS:
            setattr(self, name, getattr(self, name) + getattr(other, name))
        for name in OPTIONAL_COLUMNS:
            value = getattr(other, name)
            if value is None:
                continue
            current = getattr(self, name)
            setattr(self, name, value if current is None else current + value)

    def to_metrics(self) -> Dict[str, Any]:
        stat: Dict[str, Any] = {name: getattr(self, name) for name in COUNTER_COLUMNS}
        for name in OPTIONAL_COLUMNS:
            value = getattr(self, name)
            if value is not None:
                stat[name] = value
        return stat


def _execute(conn: Connection, query: str, source: str) -> CursorResult:
    try:
        return conn.execute(text(query))
    except SQLAlchemyError as exc:
        logger.error("Failed to select %s. %s", source, exc)
        raise QueryError(f"failed to select {source}: {exc}") from exc


def parse_version(version_str: str) -> Version:
    match = VERSION_RE.search(version_str)
    if match is None:
        raise VersionParseError(f"unrecognized server version {version_str!r}")
    major, minor, _, patch = match.groups()
    try:
        return Version(int(major), int(minor), int(patch) if patch else 0)
    except ValueError as exc:
        raise VersionParseError(str(exc)) from exc


def fetch_version(conn: Connection) -> Version:
    row = _execute(conn, "select version()", "version()").first()
    if row is None or row[0] is None:
        raise VersionParseError("failed to select version()")
    return parse_version(str(row[0]))


def select_connections_query(version: Version) -> str:
    if (version.major, version.minor) >= WAIT_EVENT_SINCE:
        return CONNECTIONS_QUERY
    return LEGACY_CONNECTIONS_QUERY


def normalize_state(state: str, waiting: bool) -> str:
    """Turn a ``pg_stat_activity.state`` label into a metric key."""
    key = _STATE_RE.sub("_", state).rstrip("_")
    if waiting:
        key += "_waiting"
    return key


def _scan_database_row(row: Row) -> DatabaseStats:
    values = row._mapping
    stats = DatabaseStats()
    try:
        for name in COUNTER_COLUMNS:
            value = values.get(name, 0)
            if value is None:
                raise RowScanError(f"NULL in column {name}")
            setattr(stats, name, int(value))
        for name, convert in OPTIONAL_COLUMNS.items():
            value = values.get(name)
            if value is not None:
                setattr(stats, name, convert(value))
    except (TypeError, ValueError) as exc:
        raise RowScanError(str(exc)) from exc
    return stats


def _scan_connection_row(row: Row) -> Tuple[float, str, bool]:
    try:
        count, state, waiting = row
    except ValueError as exc:
        raise RowScanError(str(exc)) from exc
    if count is None or state is None or waiting is None:
        raise RowScanError(f"NULL in row {tuple(row)!r}")
    try:
        return float(count), str(state), bool(waiting)
    except (TypeError, ValueError) as exc:
        raise RowScanError(str(exc)) from exc


def fetch_stat_database(conn: Connection) -> Dict[str, Any]:
    result = _execute(conn, STAT_DATABASE_QUERY, "pg_stat_database")
    total = DatabaseStats()
    for row in result:
        try:
            total.add(_scan_database_row(row))
        except RowScanError as exc:
            logger.warning("Failed to scan. %s", exc)
    return total.to_metrics()


def fetch_connections(conn: Connection, version: Version) -> Dict[str, float]:
    result = _execute(conn, select_connections_query(version), "pg_stat_activity")
    stat = dict(SEEDED_STATES)
    for row in result:
        try:
            count, state, waiting = _scan_connection_row(row)
        except RowScanError as exc:
            logger.warning("Failed to scan %s", exc)
            continue
        # one row per (state, waiting) group, so assignment rather than a sum
        stat[normalize_state(state, waiting)] = count
    return stat


def fetch_database_size(conn: Connection) -> Dict[str, float]:
    result = _execute(conn, DATABASE_SIZE_QUERY, "pg_database_size")
    total_size = 0.0
    for row in result:
        dbsize = row[0]
        try:
            if dbsize is None:
                raise RowScanError("NULL database size")
            total_size += float(dbsize)
        except (RowScanError, TypeError, ValueError) as exc:
            logger.warning("Failed to scan %s", exc)
    return {"total_size": total_size}


class PostgresPlugin(MetricPlugin):
    name = "postgres"
    default_prefix = "postgres"

    def __init__(
        self,
        settings: PostgresSettings,
        engine_factory: Callable[[PostgresSettings], Engine] = create_postgres_engine,
    ) -> None:
        super().__init__(settings.metric_key_prefix)
        self.settings = settings
        self.engine_factory = engine_factory

    def fetch_metrics(self) -> Dict[str, Any]:
        try:
            # a malformed conninfo is rejected while building the engine
            engine = self.engine_factory(self.settings)
        except psycopg.Error as exc:
            logger.error("FetchMetrics: %s", exc)
            raise HarvestConnectionError(str(exc)) from exc

        try:
            try:
                conn = engine.connect()
            except SQLAlchemyError as exc:
                logger.error("FetchMetrics: %s", exc)
                raise HarvestConnectionError(str(exc)) from exc

            with conn:
                try:
                    version = fetch_version(conn)
                except VersionParseError as exc:
                    logger.warning("FetchMetrics: %s", exc)
                    raise
                stat_database = fetch_stat_database(conn)
                connections = fetch_connections(conn, version)
                database_size = fetch_database_size(conn)
        finally:
            engine.dispose()

        return merge_stats(stat_database, connections, database_size)

    def build_graphs(self, label_prefix: str) -> Dict[str, GraphDefinition]:
        return {
            "connections": GraphDefinition(
                label=f"{label_prefix} Connections",
                unit="integer",
                metrics=(
                    MetricSeries("active", "Active", stacked=True),
                    MetricSeries("active_waiting", "Active waiting", stacked=True),
                    MetricSeries("idle", "Idle", stacked=True),
                    MetricSeries("idle_in_transaction", "Idle in transaction", stacked=True),
                    MetricSeries(
                        "idle_in_transaction_aborted",
                        "Idle in transaction (aborted)",
                        stacked=True,
                    ),
                    MetricSeries(
                        "fastpath_function_call", "fast-path function call", stacked=True
                    ),
                    MetricSeries("disabled", "Disabled", stacked=True),
                ),
            ),
            "commits": GraphDefinition(
                label=f"{label_prefix} Commits",
                unit="integer",
                metrics=(
                    MetricSeries("xact_commit", "Xact Commit", diff=True),
                    MetricSeries("xact_rollback", "Xact Rollback", diff=True),
                ),
            ),
            "blocks": GraphDefinition(
                label=f"{label_prefix} Blocks",
                unit="integer",
                metrics=(
                    MetricSeries("blks_read", "Blocks Read", diff=True),
                    MetricSeries("blks_hit", "Blocks Hit", diff=True),
                ),
            ),
            "rows": GraphDefinition(
                label=f"{label_prefix} Rows",
                unit="integer",
                metrics=(
                    MetricSeries("tup_returned", "Returned Rows", diff=True),
                    MetricSeries("tup_fetched", "Fetched Rows", diff=True, stacked=True),
                    MetricSeries("tup_inserted", "Inserted Rows", diff=True, stacked=True),
                    MetricSeries("tup_updated", "Updated Rows", diff=True, stacked=True),
                    MetricSeries("tup_deleted", "Deleted Rows", diff=True, stacked=True),
                ),
            ),
            "size": GraphDefinition(
                label=f"{label_prefix} Data Size",
                unit="integer",
                metrics=(MetricSeries("total_size", "Total Size"),),
            ),
            "deadlocks": GraphDefinition(
                label=f"{label_prefix} Dead Locks",
                unit="integer",
                metrics=(MetricSeries("deadlocks", "Deadlocks", diff=True),),
            ),
            "iotime": GraphDefinition(
                label=f"{label_prefix} Block I/O time",
                unit="float",
                metrics=(
                    MetricSeries("blk_read_time", "Block Read Time (ms)", diff=True),
                    MetricSeries("blk_write_time", "Block Write Time (ms)", diff=True),
                ),
            ),
            "tempfile": GraphDefinition(
                label=f"{label_prefix} Temporary file",
                unit="integer",
                metrics=(
                    MetricSeries("temp_bytes", "Temporary file size (byte)", diff=True),
                ),
            ),
        }
