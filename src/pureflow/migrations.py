from __future__ import annotations

import logging
import sqlite3
from typing import Callable

from .utils import utc_now_iso

Migration = Callable[[sqlite3.Connection], None]


def apply_migrations(conn: sqlite3.Connection) -> None:
    logger = logging.getLogger("pureflow.migrations")
    conn.execute("BEGIN IMMEDIATE")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    try:
        for version, migration in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _migration_initial_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS pipeline_jobs (
            id TEXT PRIMARY KEY,
            topic TEXT NOT NULL UNIQUE,
            target_keywords_json TEXT NOT NULL DEFAULT '[]',
            status TEXT NOT NULL DEFAULT 'scheduled',
            attempts INTEGER NOT NULL DEFAULT 0,
            scheduled_at TEXT NOT NULL,
            last_error TEXT NULL,
            published_article_id TEXT NULL,
            result_json TEXT NULL,
            locked_by TEXT NULL,
            locked_at TEXT NULL,
            started_at TEXT NULL,
            finished_at TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_pipeline_jobs_status_scheduled "
        "ON pipeline_jobs(status, scheduled_at)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_pipeline_jobs_locked ON pipeline_jobs(locked_by, locked_at)"
    )


def _migration_publish_results(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS job_publish_results (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            job_id TEXT NOT NULL REFERENCES pipeline_jobs(id),
            attempt INTEGER NOT NULL,
            target TEXT NOT NULL,
            ok INTEGER NOT NULL,
            external_post_id TEXT NULL,
            url TEXT NULL,
            error TEXT NULL,
            attempted_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_job_publish_results_job "
        "ON job_publish_results(job_id, attempt)"
    )


def _migration_ingest_runs(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS ingest_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            source TEXT NOT NULL,
            processed INTEGER NOT NULL DEFAULT 0,
            ingested INTEGER NOT NULL DEFAULT 0,
            skipped_duplicates INTEGER NOT NULL DEFAULT 0,
            errors_json TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )


def _migration_affiliate_catalog(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS affiliate_products (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            category TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS affiliate_links (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            product_id INTEGER NOT NULL REFERENCES affiliate_products(id),
            original_url TEXT NOT NULL,
            short_code TEXT NOT NULL UNIQUE,
            tracking_params_json TEXT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            ctr_14d REAL NOT NULL DEFAULT 0,
            last_checked_at TEXT NULL,
            deactivated_reason TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_affiliate_links_active_ctr "
        "ON affiliate_links(is_active, ctr_14d)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_affiliate_products_category "
        "ON affiliate_products(category)"
    )


def _migration_link_health(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS link_health_observations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            link_id INTEGER NOT NULL REFERENCES affiliate_links(id),
            checked_at TEXT NOT NULL,
            status_code INTEGER NOT NULL DEFAULT 0,
            is_working INTEGER NOT NULL,
            is_slow INTEGER NOT NULL DEFAULT 0,
            response_time_ms INTEGER NULL,
            consecutive_failures INTEGER NOT NULL DEFAULT 0,
            error_message TEXT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_link_health_link_checked "
        "ON link_health_observations(link_id, checked_at, id)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS link_probe_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            started_at TEXT NOT NULL,
            finished_at TEXT NOT NULL,
            total INTEGER NOT NULL DEFAULT 0,
            working INTEGER NOT NULL DEFAULT 0,
            broken INTEGER NOT NULL DEFAULT 0,
            slow INTEGER NOT NULL DEFAULT 0,
            recently_fixed INTEGER NOT NULL DEFAULT 0,
            aborted INTEGER NOT NULL DEFAULT 0
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS link_alerts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            link_id INTEGER NOT NULL REFERENCES affiliate_links(id),
            alert_type TEXT NOT NULL,
            message TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_link_alerts_link ON link_alerts(link_id, created_at)"
    )


def _migration_link_rotations(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS link_rotations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            link_id INTEGER NOT NULL REFERENCES affiliate_links(id),
            replacement_link_id INTEGER NOT NULL REFERENCES affiliate_links(id),
            replacement_url TEXT NOT NULL,
            category TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_initial_schema", _migration_initial_schema),
        ("002_publish_results", _migration_publish_results),
        ("003_ingest_runs", _migration_ingest_runs),
        ("004_affiliate_catalog", _migration_affiliate_catalog),
        ("005_link_health", _migration_link_health),
        ("006_link_rotations", _migration_link_rotations),
    ]
