"""Shared fixtures.

PostgreSQL is emulated with a file-backed SQLite database exposing the few
statistics views and server functions the postgres plugin queries.
"""

from pathlib import Path
from typing import Any, Dict, Optional

import pytest
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool

from harvest.config import PostgresSettings

COUNTER_COLUMNS = [
    "xact_commit",
    "xact_rollback",
    "blks_read",
    "blks_hit",
    "tup_returned",
    "tup_fetched",
    "tup_inserted",
    "tup_updated",
    "tup_deleted",
]
OPTIONAL_COLUMNS = {
    "blk_read_time": "REAL",
    "blk_write_time": "REAL",
    "deadlocks": "INTEGER",
    "temp_bytes": "INTEGER",
}


class FakePostgres:
    """SQLite stand-in for the statistics side of a PostgreSQL server."""

    def __init__(self, path: Path, with_optional_columns: bool = True) -> None:
        self.path = path
        self.version_string: Optional[str] = (
            "PostgreSQL 10.4 on x86_64-pc-linux-gnu, compiled by gcc 6.3.0, 64-bit"
        )
        self.sizes: Dict[str, Any] = {}
        self.connectable: set = set()
        self.opened = 0
        self.closed = 0

        columns = [f"{name} INTEGER" for name in COUNTER_COLUMNS]
        if with_optional_columns:
            columns += [f"{name} {kind}" for name, kind in OPTIONAL_COLUMNS.items()]
        with self._raw_engine().begin() as conn:
            conn.execute(
                text(f"CREATE TABLE pg_stat_database (datname TEXT, {', '.join(columns)})")
            )
            conn.execute(
                text("CREATE TABLE pg_stat_activity (state TEXT, wait_event TEXT, waiting INTEGER)")
            )
            conn.execute(text("CREATE TABLE pg_database (datname TEXT)"))

    def _raw_engine(self) -> Engine:
        engine = create_engine(f"sqlite:///{self.path}", poolclass=NullPool)

        @event.listens_for(engine, "connect")
        def register_functions(dbapi_conn, _record):
            dbapi_conn.create_function("version", 0, lambda: self.version_string)
            dbapi_conn.create_function(
                "pg_database_size", 1, lambda name: self.sizes.get(name)
            )
            dbapi_conn.create_function(
                "has_database_privilege",
                2,
                lambda name, privilege: int(name in self.connectable),
            )

        return engine

    def engine(self, settings: Optional[PostgresSettings] = None) -> Engine:
        """Engine factory handed to ``PostgresPlugin``; counts connections."""
        engine = self._raw_engine()

        @event.listens_for(engine, "checkout")
        def on_checkout(dbapi_conn, record, proxy):
            self.opened += 1

        @event.listens_for(engine, "checkin")
        def on_checkin(dbapi_conn, record):
            self.closed += 1

        return engine

    def add_stat_row(self, **values: Any) -> None:
        row = {name: 0 for name in COUNTER_COLUMNS}
        row.update(values)
        names = ", ".join(row)
        params = ", ".join(f":{name}" for name in row)
        with self._raw_engine().begin() as conn:
            conn.execute(text(f"INSERT INTO pg_stat_database ({names}) VALUES ({params})"), row)

    def add_backend(
        self, state: Optional[str], wait_event: Optional[str] = None, waiting: bool = False
    ) -> None:
        with self._raw_engine().begin() as conn:
            conn.execute(
                text("INSERT INTO pg_stat_activity VALUES (:state, :wait_event, :waiting)"),
                {"state": state, "wait_event": wait_event, "waiting": int(waiting)},
            )

    def add_database(self, name: str, size: Any, connect: bool = True) -> None:
        self.sizes[name] = size
        if connect:
            self.connectable.add(name)
        with self._raw_engine().begin() as conn:
            conn.execute(text("INSERT INTO pg_database VALUES (:name)"), {"name": name})


@pytest.fixture
def fake_postgres(tmp_path: Path) -> FakePostgres:
    return FakePostgres(tmp_path / "postgres.sqlite")


@pytest.fixture
def legacy_postgres(tmp_path: Path) -> FakePostgres:
    """A 9.1-era server: no I/O timing, deadlock or temp file columns."""
    fake = FakePostgres(tmp_path / "legacy.sqlite", with_optional_columns=False)
    fake.version_string = "PostgreSQL 9.1.24 on x86_64-unknown-linux-gnu, compiled by gcc"
    return fake


@pytest.fixture
def postgres_connection(fake_postgres: FakePostgres):
    with fake_postgres.engine().connect() as conn:
        yield conn
