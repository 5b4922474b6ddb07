from __future__ import annotations

import psycopg
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool

from .config import PostgresSettings


def create_postgres_engine(settings: PostgresSettings) -> Engine:
    """Engine that opens exactly one fresh connection per ``connect()``."""

    conninfo = settings.conninfo()
    return create_engine(
        "postgresql+psycopg://",
        creator=lambda: psycopg.connect(conninfo),
        poolclass=NullPool,
        future=True,
    )
