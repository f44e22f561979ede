"""
Storage backend for run history.

SQLite by default. Postgres through psycopg when a DSN is configured
(``DATABASE_URL``) and the driver is installed. Statements are written with
``?`` placeholders and rewritten for Postgres.
"""
from __future__ import annotations

import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence

try:
    import psycopg  # type: ignore
    from psycopg.rows import dict_row  # type: ignore
except ImportError:  # pragma: no cover
    psycopg = None
    dict_row = None

logger = logging.getLogger(__name__)


class DB:
    """One short-lived connection per statement; rows come back as dicts."""

    def __init__(self, sqlite_path: str = "ledgerlink.sqlite3", dsn: Optional[str] = None) -> None:
        self.dsn = os.getenv("DATABASE_URL") if dsn is None else dsn
        self.sqlite_path = sqlite_path
        self.use_postgres = bool(self.dsn) and psycopg is not None
        if self.dsn and psycopg is None:
            logger.warning("DATABASE_URL is set but psycopg is not installed; using SQLite at %s", sqlite_path)

    @property
    def backend(self) -> str:
        return "postgres" if self.use_postgres else "sqlite"

    @contextmanager
    def cursor(self) -> Iterator[Any]:
        """Cursor inside a transaction that commits on success."""
        if self.use_postgres:
            conn = psycopg.connect(self.dsn, row_factory=dict_row)  # type: ignore
        else:
            conn = sqlite3.connect(self.sqlite_path)
            conn.row_factory = sqlite3.Row
        try:
            cur = conn.cursor()
            yield cur
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _sql(self, sql: str) -> str:
        return sql.replace("?", "%s") if self.use_postgres else sql

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a statement and return the affected row count."""
        with self.cursor() as cur:
            cur.execute(self._sql(sql), tuple(params))
            return cur.rowcount

    def query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        with self.cursor() as cur:
            cur.execute(self._sql(sql), tuple(params))
            return [dict(row) for row in cur.fetchall()]

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        with self.cursor() as cur:
            cur.execute(self._sql(sql), tuple(params))
            row = cur.fetchone()
            return dict(row) if row is not None else None
