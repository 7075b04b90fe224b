import sqlite3

from pureflow.db import _normalize_sql
from pureflow.migrations import _get_migrations, apply_migrations


def test_apply_migrations_idempotent(tmp_path):
    db_path = tmp_path / "state.sqlite3"
    conn = sqlite3.connect(str(db_path))
    apply_migrations(conn)
    apply_migrations(conn)

    rows = conn.execute("SELECT version FROM schema_migrations").fetchall()
    versions = [row[0] for row in rows]
    expected = [version for version, _ in _get_migrations()]
    assert sorted(versions) == sorted(expected)
    assert len(versions) == len(set(versions))


def test_topic_is_unique(tmp_path):
    conn = sqlite3.connect(str(tmp_path / "state.sqlite3"))
    apply_migrations(conn)
    conn.execute(
        "INSERT INTO pipeline_jobs (id, topic, target_keywords_json, scheduled_at, created_at, updated_at)"
        " VALUES ('a', 'same', '[]', 'x', 'x', 'x')"
    )
    cursor = conn.execute(
        "INSERT OR IGNORE INTO pipeline_jobs (id, topic, target_keywords_json, scheduled_at, created_at, updated_at)"
        " VALUES ('b', 'same', '[]', 'x', 'x', 'x')"
    )
    assert cursor.rowcount == 0


def test_postgres_sql_normalization():
    sql = "INSERT OR IGNORE INTO settings (key, value) VALUES (?, '?')"
    assert _normalize_sql(sql, "postgres") == (
        "INSERT INTO settings (key, value) VALUES (%s, '?') ON CONFLICT DO NOTHING"
    )
    assert _normalize_sql(sql, "sqlite") == sql
