from __future__ import annotations

import os
import re
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Iterator

from .migrations import apply_migrations
from .migrations_pg import apply_migrations_pg

DEFAULT_DATA_DIR = "/data"

_MIGRATED: set[str] = set()
_MIGRATION_LOCK = threading.Lock()

_INSERT_OR_IGNORE = re.compile(r"\bINSERT\s+OR\s+IGNORE\b", re.IGNORECASE)
# Splits SQL into quoted literals (kept as-is) and the code between them.
_QUOTED = re.compile(r"('(?:[^']|'')*'|\"(?:[^\"]|\"\")*\")")


def get_db_url() -> str | None:
    url = os.environ.get("PF_DB_URL", "").strip()
    return url or None


def is_postgres_url(url: str | None) -> bool:
    return bool(url) and url.split("://", 1)[0] in ("postgres", "postgresql")


def default_state_db_path() -> str:
    return os.path.join(os.environ.get("PF_DATA_DIR", DEFAULT_DATA_DIR), "state.sqlite3")


class DBConn:
    """Thin wrapper so storage code writes one SQL dialect (sqlite, ``?`` params)."""

    def __init__(self, conn: Any, backend: str) -> None:
        self._conn = conn
        self.backend = backend

    def execute(self, sql: str, params: tuple | list | None = None):
        cursor = self._conn.cursor()
        cursor.execute(_normalize_sql(sql, self.backend), params or ())
        return cursor

    def executemany(self, sql: str, seq_of_params):
        cursor = self._conn.cursor()
        cursor.executemany(_normalize_sql(sql, self.backend), seq_of_params)
        return cursor

    @contextmanager
    def transaction(self) -> Iterator["DBConn"]:
        """Run a block holding the write lock; commit on success, roll back on error.

        On sqlite this is ``BEGIN IMMEDIATE``, so two workers can never
        both read the same queue head inside a claim.
        """
        if self.backend == "postgres":
            with self._conn.transaction():
                yield self
            return
        if self._conn.in_transaction:
            self._conn.commit()
        self._conn.execute("BEGIN IMMEDIATE")
        try:
            yield self
        except BaseException:
            self._conn.rollback()
            raise
        self._conn.commit()

    def commit(self) -> None:
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    def close(self) -> None:
        self._conn.close()

    def __getattr__(self, name: str):
        return getattr(self._conn, name)


def connect_db(path: str | None = None) -> DBConn:
    """Open the state database, applying migrations once per database per process.

    ``PF_DB_URL`` pointing at PostgreSQL wins over ``path``; otherwise a
    sqlite file at ``path`` (default ``$PF_DATA_DIR/state.sqlite3``).
    """
    url = get_db_url()
    if is_postgres_url(url):
        return _connect_postgres(url)
    return _connect_sqlite(path or default_state_db_path())


def _connect_postgres(url: str) -> DBConn:
    try:
        import psycopg
    except ImportError as exc:  # pragma: no cover - depends on env
        raise RuntimeError("psycopg is required for PostgreSQL support") from exc
    conn = DBConn(psycopg.connect(url), "postgres")
    _migrate_once(f"postgres:{url}", lambda: apply_migrations_pg(conn))
    return conn


def _connect_sqlite(path: str) -> DBConn:
    path = os.path.abspath(path)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    raw = sqlite3.connect(path, timeout=30)
    for pragma in (
        "journal_mode=WAL",
        "synchronous=NORMAL",
        "busy_timeout=5000",
        "foreign_keys=ON",
    ):
        raw.execute(f"PRAGMA {pragma}")
    _migrate_once(f"sqlite:{path}", lambda: apply_migrations(raw))
    return DBConn(raw, "sqlite")


def _migrate_once(key: str, apply) -> None:
    with _MIGRATION_LOCK:
        if key in _MIGRATED:
            return
        apply()
        _MIGRATED.add(key)


def _normalize_sql(sql: str, backend: str) -> str:
    """Rewrite sqlite-flavoured SQL for psycopg; other backends pass through."""
    if backend != "postgres":
        return sql
    if _INSERT_OR_IGNORE.search(sql):
        sql = _INSERT_OR_IGNORE.sub("INSERT", sql, count=1)
        if "ON CONFLICT" not in sql.upper():
            sql = sql.rstrip().rstrip(";") + " ON CONFLICT DO NOTHING"
    parts = _QUOTED.split(sql)
    # Odd indexes are quoted literals; placeholders only live in code parts.
    return "".join(
        part if index % 2 else part.replace("?", "%s") for index, part in enumerate(parts)
    )
