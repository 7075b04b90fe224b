from __future__ import annotations

import logging

from .utils import utc_now_iso


def apply_migrations_pg(conn) -> None:
    logger = logging.getLogger("pureflow.migrations")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    conn.commit()
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    for version, migration in _get_migrations():
        if version in applied:
            logger.debug("migration_skipped version=%s", version)
            continue
        try:
            migration(conn)
            conn.execute(
                "INSERT INTO schema_migrations (version, applied_at) VALUES (%s, %s)",
                (version, utc_now_iso()),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        logger.info("migration_applied version=%s", version)


def _bootstrap_schema(conn) -> None:
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
        """
        CREATE TABLE IF NOT EXISTS job_publish_results (
            id BIGSERIAL PRIMARY KEY,
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
        """
        CREATE TABLE IF NOT EXISTS ingest_runs (
            id BIGSERIAL PRIMARY KEY,
            source TEXT NOT NULL,
            processed INTEGER NOT NULL DEFAULT 0,
            ingested INTEGER NOT NULL DEFAULT 0,
            skipped_duplicates INTEGER NOT NULL DEFAULT 0,
            errors_json TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )


def _migrate_affiliate_links(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS affiliate_products (
            id BIGSERIAL PRIMARY KEY,
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
            id BIGSERIAL PRIMARY KEY,
            product_id BIGINT NOT NULL REFERENCES affiliate_products(id),
            original_url TEXT NOT NULL,
            short_code TEXT NOT NULL UNIQUE,
            tracking_params_json TEXT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            ctr_14d DOUBLE PRECISION NOT NULL DEFAULT 0,
            last_checked_at TEXT NULL,
            deactivated_reason TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS link_health_observations (
            id BIGSERIAL PRIMARY KEY,
            link_id BIGINT NOT NULL REFERENCES affiliate_links(id),
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
            id BIGSERIAL PRIMARY KEY,
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
            id BIGSERIAL PRIMARY KEY,
            link_id BIGINT NOT NULL REFERENCES affiliate_links(id),
            alert_type TEXT NOT NULL,
            message TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS link_rotations (
            id BIGSERIAL PRIMARY KEY,
            link_id BIGINT NOT NULL REFERENCES affiliate_links(id),
            replacement_link_id BIGINT NOT NULL REFERENCES affiliate_links(id),
            replacement_url TEXT NOT NULL,
            category TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )


def _get_migrations():
    return [
        ("pg_bootstrap_001", _bootstrap_schema),
        ("pg_affiliate_links_002", _migrate_affiliate_links),
    ]
