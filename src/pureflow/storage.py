from __future__ import annotations

import json
import secrets
import string
import uuid
from typing import Any, Callable, Iterable

from .db import connect_db
from .lifecycle import JobStatus, LinkStatus, ensure_job_transition, ensure_link_transition
from .models import (
    AffiliateLink,
    AffiliateProduct,
    LinkHealthObservation,
    PipelineJob,
    ProbeSummary,
    PublishOutcome,
    RotationSuggestion,
)
from .utils import json_dumps, json_loads_or, utc_now_iso, utc_now_iso_offset

SHORT_CODE_ALPHABET = string.ascii_letters + string.digits
SHORT_CODE_LENGTH = 8
SHORT_CODE_MAX_ATTEMPTS = 10

_JOB_COLUMNS = """
    id, topic, target_keywords_json, status, attempts, scheduled_at, last_error,
    published_article_id, result_json, locked_by, locked_at, started_at, finished_at,
    created_at, updated_at
"""

_LINK_COLUMNS = """
    id, product_id, original_url, short_code, is_active, ctr_14d, tracking_params_json,
    last_checked_at, deactivated_reason, created_at
"""

_OBSERVATION_COLUMNS = """
    id, link_id, checked_at, status_code, is_working, is_slow, response_time_ms,
    consecutive_failures, error_message
"""


class ShortCodeExhaustedError(RuntimeError):
    pass


def init_db(path: str | None = None):
    return connect_db(path)


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    payload = json_dumps(value)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, payload, now),
    )
    conn.commit()


# -- pipeline jobs ---------------------------------------------------------


def topic_exists(conn: Any, topic: str) -> bool:
    cursor = conn.execute("SELECT 1 FROM pipeline_jobs WHERE topic = ?", (topic,))
    return cursor.fetchone() is not None


def enqueue_pipeline_job(
    conn: Any,
    topic: str,
    keywords: Iterable[str],
    scheduled_at: str | None = None,
) -> str | None:
    """Insert a scheduled job; returns ``None`` when the topic is already queued."""
    if topic_exists(conn, topic):
        return None
    job_id = _new_job_id()
    now = utc_now_iso()
    cursor = conn.execute(
        """
        INSERT OR IGNORE INTO pipeline_jobs
            (id, topic, target_keywords_json, status, attempts, scheduled_at, last_error,
             published_article_id, result_json, locked_by, locked_at, started_at,
             finished_at, created_at, updated_at)
        VALUES (?, ?, ?, ?, 0, ?, NULL, NULL, NULL, NULL, NULL, NULL, NULL, ?, ?)
        """,
        (
            job_id,
            topic,
            json_dumps(list(keywords)),
            JobStatus.SCHEDULED.value,
            scheduled_at or now,
            now,
            now,
        ),
    )
    conn.commit()
    if cursor.rowcount != 1:
        return None
    return job_id


def get_job(conn: Any, job_id: str) -> PipelineJob | None:
    cursor = conn.execute(f"SELECT {_JOB_COLUMNS} FROM pipeline_jobs WHERE id = ?", (job_id,))
    row = cursor.fetchone()
    return _row_to_job(row) if row else None


def list_jobs(conn: Any, limit: int = 50, status: str | None = None) -> list[PipelineJob]:
    if status:
        cursor = conn.execute(
            f"""
            SELECT {_JOB_COLUMNS}
            FROM pipeline_jobs
            WHERE status = ?
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (JobStatus(status).value, limit),
        )
    else:
        cursor = conn.execute(
            f"""
            SELECT {_JOB_COLUMNS}
            FROM pipeline_jobs
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (limit,),
        )
    return [_row_to_job(row) for row in cursor.fetchall()]


def count_jobs_by_status(conn: Any, since_iso: str | None = None) -> dict[str, int]:
    counts = {status.value: 0 for status in JobStatus}
    if since_iso:
        cursor = conn.execute(
            """
            SELECT status, COUNT(*) FROM pipeline_jobs
            WHERE updated_at >= ?
            GROUP BY status
            """,
            (since_iso,),
        )
    else:
        cursor = conn.execute("SELECT status, COUNT(*) FROM pipeline_jobs GROUP BY status")
    for status, count in cursor.fetchall():
        counts[str(status)] = int(count or 0)
    return counts


def expire_stale_jobs(conn: Any, lock_timeout_seconds: int) -> list[str]:
    """Fail jobs whose worker held them in ``generating`` past the lock timeout."""
    ensure_job_transition(JobStatus.GENERATING, JobStatus.FAILED)
    cutoff = utc_now_iso_offset(seconds=-lock_timeout_seconds)
    now = utc_now_iso()
    with conn.transaction():
        cursor = conn.execute(
            """
            UPDATE pipeline_jobs
            SET status = ?, last_error = 'stale_lock_expired', finished_at = ?,
                updated_at = ?, locked_by = NULL, locked_at = NULL
            WHERE status = ? AND locked_at IS NOT NULL AND locked_at < ?
            RETURNING id
            """,
            (
                JobStatus.FAILED.value,
                now,
                now,
                JobStatus.GENERATING.value,
                cutoff,
            ),
        )
        expired = [row[0] for row in cursor.fetchall()]
    return expired


def claim_next_job(conn: Any, worker_id: str, now_iso: str | None = None) -> PipelineJob | None:
    """Atomically move the oldest eligible scheduled job to ``generating``.

    The select and the status change are one conditional UPDATE, so two
    concurrent callers can never both receive the same job.
    """
    ensure_job_transition(JobStatus.SCHEDULED, JobStatus.GENERATING)
    now = now_iso or utc_now_iso()
    with conn.transaction():
        cursor = conn.execute(
            f"""
            UPDATE pipeline_jobs
            SET status = ?, attempts = attempts + 1, locked_by = ?, locked_at = ?,
                started_at = ?, finished_at = NULL, updated_at = ?
            WHERE id = (
                SELECT id FROM pipeline_jobs
                WHERE status = ? AND scheduled_at <= ?
                ORDER BY scheduled_at ASC, created_at ASC, id ASC
                LIMIT 1
            )
            AND status = ?
            RETURNING {_JOB_COLUMNS}
            """,
            (
                JobStatus.GENERATING.value,
                worker_id,
                now,
                now,
                now,
                JobStatus.SCHEDULED.value,
                now,
                JobStatus.SCHEDULED.value,
            ),
        )
        rows = cursor.fetchall()
    if not rows:
        return None
    return _row_to_job(rows[0])


def complete_job(
    conn: Any,
    job_id: str,
    published_article_id: str,
    result: dict[str, object] | None = None,
) -> bool:
    ensure_job_transition(JobStatus.GENERATING, JobStatus.PUBLISHED)
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE pipeline_jobs
        SET status = ?, published_article_id = ?, result_json = ?, last_error = NULL,
            finished_at = ?, updated_at = ?, locked_by = NULL, locked_at = NULL
        WHERE id = ? AND status = ?
        """,
        (
            JobStatus.PUBLISHED.value,
            published_article_id,
            json_dumps(result) if result else None,
            now,
            now,
            job_id,
            JobStatus.GENERATING.value,
        ),
    )
    conn.commit()
    return cursor.rowcount == 1


def fail_job(conn: Any, job_id: str, error: str) -> bool:
    ensure_job_transition(JobStatus.GENERATING, JobStatus.FAILED)
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE pipeline_jobs
        SET status = ?, last_error = ?, finished_at = ?, updated_at = ?,
            locked_by = NULL, locked_at = NULL
        WHERE id = ? AND status = ?
        """,
        (JobStatus.FAILED.value, error, now, now, job_id, JobStatus.GENERATING.value),
    )
    conn.commit()
    return cursor.rowcount == 1


def reschedule_job(conn: Any, job_id: str, scheduled_at: str, error: str) -> bool:
    """Hand a job back to the queue after a failed stage (retry strategy only)."""
    ensure_job_transition(JobStatus.GENERATING, JobStatus.SCHEDULED)
    cursor = conn.execute(
        """
        UPDATE pipeline_jobs
        SET status = ?, scheduled_at = ?, last_error = ?, updated_at = ?,
            locked_by = NULL, locked_at = NULL, started_at = NULL
        WHERE id = ? AND status = ?
        """,
        (
            JobStatus.SCHEDULED.value,
            scheduled_at,
            error,
            utc_now_iso(),
            job_id,
            JobStatus.GENERATING.value,
        ),
    )
    conn.commit()
    return cursor.rowcount == 1


def requeue_failed_job(conn: Any, job_id: str, scheduled_at: str | None = None) -> bool:
    """Operator re-enqueue of a failed job. Never called by the worker."""
    ensure_job_transition(JobStatus.FAILED, JobStatus.SCHEDULED, manual=True)
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE pipeline_jobs
        SET status = ?, scheduled_at = ?, finished_at = NULL, updated_at = ?
        WHERE id = ? AND status = ?
        """,
        (
            JobStatus.SCHEDULED.value,
            scheduled_at or now,
            now,
            job_id,
            JobStatus.FAILED.value,
        ),
    )
    conn.commit()
    return cursor.rowcount == 1


def record_publish_result(conn: Any, job_id: str, attempt: int, outcome: PublishOutcome) -> None:
    conn.execute(
        """
        INSERT INTO job_publish_results
            (job_id, attempt, target, ok, external_post_id, url, error, attempted_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            job_id,
            attempt,
            outcome.target,
            1 if outcome.ok else 0,
            outcome.external_post_id,
            outcome.url,
            outcome.error,
            utc_now_iso(),
        ),
    )
    conn.commit()


def list_publish_results(conn: Any, job_id: str) -> list[dict[str, object]]:
    cursor = conn.execute(
        """
        SELECT attempt, target, ok, external_post_id, url, error, attempted_at
        FROM job_publish_results
        WHERE job_id = ?
        ORDER BY attempt ASC, id ASC
        """,
        (job_id,),
    )
    rows = []
    for attempt, target, ok, external_post_id, url, error, attempted_at in cursor.fetchall():
        rows.append(
            {
                "attempt": int(attempt),
                "target": target,
                "ok": bool(ok),
                "external_post_id": external_post_id,
                "url": url,
                "error": error,
                "attempted_at": attempted_at,
            }
        )
    return rows


def record_ingest_run(
    conn: Any,
    source: str,
    processed: int,
    ingested: int,
    skipped_duplicates: int,
    errors: list[str],
) -> None:
    conn.execute(
        """
        INSERT INTO ingest_runs
            (source, processed, ingested, skipped_duplicates, errors_json, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            source,
            processed,
            ingested,
            skipped_duplicates,
            json_dumps(errors) if errors else None,
            utc_now_iso(),
        ),
    )
    conn.commit()


def list_ingest_runs(conn: Any, limit: int = 20) -> list[dict[str, object]]:
    cursor = conn.execute(
        """
        SELECT source, processed, ingested, skipped_duplicates, errors_json, created_at
        FROM ingest_runs
        ORDER BY created_at DESC, id DESC
        LIMIT ?
        """,
        (limit,),
    )
    return [
        {
            "source": source,
            "processed": int(processed),
            "ingested": int(ingested),
            "skipped_duplicates": int(skipped),
            "errors": json_loads_or(errors_json, []),
            "created_at": created_at,
        }
        for source, processed, ingested, skipped, errors_json, created_at in cursor.fetchall()
    ]


# -- affiliate catalog -----------------------------------------------------


def create_product(conn: Any, name: str, category: str | None) -> int:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        INSERT INTO affiliate_products (name, category, created_at, updated_at)
        VALUES (?, ?, ?, ?)
        RETURNING id
        """,
        (name, category, now, now),
    )
    product_id = int(cursor.fetchone()[0])
    conn.commit()
    return product_id


def get_product(conn: Any, product_id: int) -> AffiliateProduct | None:
    cursor = conn.execute(
        "SELECT id, name, category FROM affiliate_products WHERE id = ?", (product_id,)
    )
    row = cursor.fetchone()
    if not row:
        return None
    return AffiliateProduct(id=int(row[0]), name=row[1], category=row[2])


def generate_short_code(length: int = SHORT_CODE_LENGTH) -> str:
    return "".join(secrets.choice(SHORT_CODE_ALPHABET) for _ in range(length))


def short_code_exists(conn: Any, short_code: str) -> bool:
    cursor = conn.execute("SELECT 1 FROM affiliate_links WHERE short_code = ?", (short_code,))
    return cursor.fetchone() is not None


def create_affiliate_link(
    conn: Any,
    product_id: int,
    original_url: str,
    tracking_params: dict[str, object] | None = None,
    short_code_factory: Callable[[], str] = generate_short_code,
) -> AffiliateLink:
    short_code = short_code_factory()
    attempts = 0
    while short_code_exists(conn, short_code):
        attempts += 1
        if attempts >= SHORT_CODE_MAX_ATTEMPTS:
            raise ShortCodeExhaustedError("failed to generate unique short code")
        short_code = short_code_factory()
    now = utc_now_iso()
    cursor = conn.execute(
        f"""
        INSERT INTO affiliate_links
            (product_id, original_url, short_code, tracking_params_json, is_active,
             ctr_14d, last_checked_at, deactivated_reason, created_at, updated_at)
        VALUES (?, ?, ?, ?, 1, 0, NULL, NULL, ?, ?)
        RETURNING {_LINK_COLUMNS}
        """,
        (
            product_id,
            original_url,
            short_code,
            json_dumps(tracking_params or {}),
            now,
            now,
        ),
    )
    row = cursor.fetchone()
    conn.commit()
    return _row_to_link(row)


def get_link(conn: Any, link_id: int) -> AffiliateLink | None:
    cursor = conn.execute(f"SELECT {_LINK_COLUMNS} FROM affiliate_links WHERE id = ?", (link_id,))
    row = cursor.fetchone()
    return _row_to_link(row) if row else None


def list_links(conn: Any, active_only: bool = False) -> list[AffiliateLink]:
    where = "WHERE is_active = 1" if active_only else ""
    cursor = conn.execute(f"SELECT {_LINK_COLUMNS} FROM affiliate_links {where} ORDER BY id ASC")
    return [_row_to_link(row) for row in cursor.fetchall()]


def list_active_links(conn: Any) -> list[AffiliateLink]:
    return list_links(conn, active_only=True)


def update_link_ctr(conn: Any, link_id: int, ctr_14d: float) -> bool:
    cursor = conn.execute(
        "UPDATE affiliate_links SET ctr_14d = ?, updated_at = ? WHERE id = ?",
        (float(ctr_14d), utc_now_iso(), link_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def touch_link_checked(conn: Any, link_id: int, checked_at: str) -> None:
    conn.execute(
        "UPDATE affiliate_links SET last_checked_at = ?, updated_at = ? WHERE id = ?",
        (checked_at, utc_now_iso(), link_id),
    )
    conn.commit()


def deactivate_link(conn: Any, link_id: int, reason: str) -> bool:
    ensure_link_transition(LinkStatus.ACTIVE, LinkStatus.INACTIVE)
    cursor = conn.execute(
        """
        UPDATE affiliate_links
        SET is_active = 0, deactivated_reason = ?, updated_at = ?
        WHERE id = ? AND is_active = 1
        """,
        (reason, utc_now_iso(), link_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def reactivate_link(conn: Any, link_id: int) -> bool:
    """Operator action; the prober and rotator never reactivate a link."""
    ensure_link_transition(LinkStatus.INACTIVE, LinkStatus.ACTIVE, manual=True)
    cursor = conn.execute(
        """
        UPDATE affiliate_links
        SET is_active = 1, deactivated_reason = NULL, updated_at = ?
        WHERE id = ? AND is_active = 0
        """,
        (utc_now_iso(), link_id),
    )
    conn.commit()
    return cursor.rowcount == 1


# -- link health -----------------------------------------------------------


def get_latest_observation(conn: Any, link_id: int) -> LinkHealthObservation | None:
    cursor = conn.execute(
        f"""
        SELECT {_OBSERVATION_COLUMNS}
        FROM link_health_observations
        WHERE link_id = ?
        ORDER BY checked_at DESC, id DESC
        LIMIT 1
        """,
        (link_id,),
    )
    row = cursor.fetchone()
    return _row_to_observation(row) if row else None


def insert_observation(conn: Any, observation: LinkHealthObservation) -> int:
    cursor = conn.execute(
        """
        INSERT INTO link_health_observations
            (link_id, checked_at, status_code, is_working, is_slow, response_time_ms,
             consecutive_failures, error_message)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        RETURNING id
        """,
        (
            observation.link_id,
            observation.checked_at,
            int(observation.status_code),
            1 if observation.is_working else 0,
            1 if observation.is_slow else 0,
            observation.response_time_ms,
            int(observation.consecutive_failures),
            observation.error_message,
        ),
    )
    observation_id = int(cursor.fetchone()[0])
    conn.commit()
    return observation_id


def list_observations(
    conn: Any, link_id: int, limit: int | None = None
) -> list[LinkHealthObservation]:
    """Observations for one link, oldest first."""
    if limit is None:
        cursor = conn.execute(
            f"""
            SELECT {_OBSERVATION_COLUMNS}
            FROM link_health_observations
            WHERE link_id = ?
            ORDER BY checked_at ASC, id ASC
            """,
            (link_id,),
        )
        return [_row_to_observation(row) for row in cursor.fetchall()]
    cursor = conn.execute(
        f"""
        SELECT {_OBSERVATION_COLUMNS}
        FROM link_health_observations
        WHERE link_id = ?
        ORDER BY checked_at DESC, id DESC
        LIMIT ?
        """,
        (link_id, limit),
    )
    return list(reversed([_row_to_observation(row) for row in cursor.fetchall()]))


def record_link_alert(conn: Any, link_id: int, alert_type: str, message: str) -> None:
    conn.execute(
        """
        INSERT INTO link_alerts (link_id, alert_type, message, created_at)
        VALUES (?, ?, ?, ?)
        """,
        (link_id, alert_type, message, utc_now_iso()),
    )
    conn.commit()


def list_link_alerts(conn: Any, link_id: int) -> list[dict[str, object]]:
    cursor = conn.execute(
        """
        SELECT alert_type, message, created_at
        FROM link_alerts
        WHERE link_id = ?
        ORDER BY created_at ASC, id ASC
        """,
        (link_id,),
    )
    return [
        {"alert_type": alert_type, "message": message, "created_at": created_at}
        for alert_type, message, created_at in cursor.fetchall()
    ]


def insert_probe_run(
    conn: Any, started_at: str, finished_at: str, summary: ProbeSummary
) -> None:
    conn.execute(
        """
        INSERT INTO link_probe_runs
            (started_at, finished_at, total, working, broken, slow, recently_fixed, aborted)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            started_at,
            finished_at,
            summary.total,
            summary.working,
            summary.broken,
            summary.slow,
            summary.recently_fixed,
            1 if summary.aborted else 0,
        ),
    )
    conn.commit()


def get_latest_probe_run(conn: Any) -> dict[str, object] | None:
    cursor = conn.execute(
        """
        SELECT started_at, finished_at, total, working, broken, slow, recently_fixed, aborted
        FROM link_probe_runs
        ORDER BY started_at DESC, id DESC
        LIMIT 1
        """
    )
    row = cursor.fetchone()
    if not row:
        return None
    started_at, finished_at, total, working, broken, slow, recently_fixed, aborted = row
    return {
        "started_at": started_at,
        "finished_at": finished_at,
        "total": int(total),
        "working": int(working),
        "broken": int(broken),
        "slow": int(slow),
        "recently_fixed": int(recently_fixed),
        "aborted": bool(aborted),
    }


def list_broken_links(conn: Any, limit: int = 20) -> list[dict[str, object]]:
    cursor = conn.execute(
        """
        SELECT l.id, l.short_code, l.original_url, l.is_active,
               o.consecutive_failures, o.status_code, o.error_message, o.checked_at
        FROM affiliate_links l
        JOIN link_health_observations o ON o.link_id = l.id
        WHERE o.id = (
            SELECT o2.id FROM link_health_observations o2
            WHERE o2.link_id = l.id
            ORDER BY o2.checked_at DESC, o2.id DESC
            LIMIT 1
        )
        AND o.is_working = 0
        ORDER BY o.consecutive_failures DESC, l.id ASC
        LIMIT ?
        """,
        (limit,),
    )
    rows = []
    for (
        link_id,
        short_code,
        original_url,
        is_active,
        consecutive_failures,
        status_code,
        error_message,
        checked_at,
    ) in cursor.fetchall():
        rows.append(
            {
                "id": int(link_id),
                "short_code": short_code,
                "original_url": original_url,
                "is_active": bool(is_active),
                "consecutive_failures": int(consecutive_failures),
                "status_code": int(status_code),
                "last_error": error_message,
                "checked_at": checked_at,
            }
        )
    return rows


def list_slow_links(
    conn: Any, since_iso: str, threshold_ms: int, limit: int = 10
) -> list[dict[str, object]]:
    cursor = conn.execute(
        """
        SELECT l.id, l.short_code, AVG(o.response_time_ms) AS average_response_time
        FROM affiliate_links l
        JOIN link_health_observations o ON o.link_id = l.id
        WHERE o.checked_at >= ?
        AND o.is_working = 1
        AND o.response_time_ms IS NOT NULL
        GROUP BY l.id, l.short_code
        HAVING AVG(o.response_time_ms) > ?
        ORDER BY average_response_time DESC
        LIMIT ?
        """,
        (since_iso, threshold_ms, limit),
    )
    return [
        {
            "id": int(link_id),
            "short_code": short_code,
            "average_response_time": float(average),
        }
        for link_id, short_code, average in cursor.fetchall()
    ]


# -- rotation --------------------------------------------------------------


def list_rotation_candidates(conn: Any, limit: int) -> list[dict[str, object]]:
    cursor = conn.execute(
        """
        SELECT l.id, l.product_id, p.category, l.ctr_14d, l.original_url
        FROM affiliate_links l
        JOIN affiliate_products p ON l.product_id = p.id
        WHERE l.is_active = 1
        ORDER BY l.ctr_14d ASC, COALESCE(l.last_checked_at, '') ASC, l.id ASC
        LIMIT ?
        """,
        (limit,),
    )
    return [
        {
            "id": int(link_id),
            "product_id": int(product_id),
            "category": category,
            "ctr_14d": float(ctr),
            "original_url": original_url,
        }
        for link_id, product_id, category, ctr, original_url in cursor.fetchall()
    ]


def find_replacement_link(
    conn: Any, category: str | None, exclude_link_id: int, min_ctr: float
) -> dict[str, object] | None:
    if category is None:
        return None
    cursor = conn.execute(
        """
        SELECT l.id, l.original_url, l.ctr_14d
        FROM affiliate_links l
        JOIN affiliate_products p ON l.product_id = p.id
        WHERE p.category = ?
        AND l.is_active = 1
        AND l.id != ?
        AND l.ctr_14d > ?
        ORDER BY l.ctr_14d DESC, l.id ASC
        LIMIT 1
        """,
        (category, exclude_link_id, min_ctr),
    )
    row = cursor.fetchone()
    if not row:
        return None
    return {"id": int(row[0]), "original_url": row[1], "ctr_14d": float(row[2])}


def record_link_rotation(conn: Any, suggestion: RotationSuggestion) -> None:
    conn.execute(
        """
        INSERT INTO link_rotations
            (link_id, replacement_link_id, replacement_url, category, created_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (
            suggestion.link_id,
            suggestion.replacement_link_id,
            suggestion.replacement_url,
            suggestion.category,
            utc_now_iso(),
        ),
    )
    conn.commit()


def list_link_rotations(conn: Any, limit: int = 50) -> list[dict[str, object]]:
    cursor = conn.execute(
        """
        SELECT link_id, replacement_link_id, replacement_url, category, created_at
        FROM link_rotations
        ORDER BY created_at DESC, id DESC
        LIMIT ?
        """,
        (limit,),
    )
    return [
        {
            "link_id": int(link_id),
            "replacement_link_id": int(replacement_link_id),
            "replacement_url": replacement_url,
            "category": category,
            "created_at": created_at,
        }
        for link_id, replacement_link_id, replacement_url, category, created_at in cursor.fetchall()
    ]


def _row_to_job(row: tuple) -> PipelineJob:
    (
        job_id,
        topic,
        keywords_json,
        status,
        attempts,
        scheduled_at,
        last_error,
        published_article_id,
        result_json,
        locked_by,
        locked_at,
        started_at,
        finished_at,
        created_at,
        updated_at,
    ) = row
    return PipelineJob(
        id=job_id,
        topic=topic,
        target_keywords=list(json_loads_or(keywords_json, [])),
        status=JobStatus(status),
        attempts=int(attempts),
        scheduled_at=scheduled_at,
        last_error=last_error,
        published_article_id=published_article_id,
        result=json_loads_or(result_json, None),
        locked_by=locked_by,
        locked_at=locked_at,
        started_at=started_at,
        finished_at=finished_at,
        created_at=created_at,
        updated_at=updated_at,
    )


def _row_to_link(row: tuple) -> AffiliateLink:
    (
        link_id,
        product_id,
        original_url,
        short_code,
        is_active,
        ctr_14d,
        tracking_params_json,
        last_checked_at,
        deactivated_reason,
        created_at,
    ) = row
    return AffiliateLink(
        id=int(link_id),
        product_id=int(product_id),
        original_url=original_url,
        short_code=short_code,
        is_active=bool(is_active),
        ctr_14d=float(ctr_14d or 0),
        tracking_params=json_loads_or(tracking_params_json, {}),
        last_checked_at=last_checked_at,
        deactivated_reason=deactivated_reason,
        created_at=created_at,
    )


def _row_to_observation(row: tuple) -> LinkHealthObservation:
    (
        observation_id,
        link_id,
        checked_at,
        status_code,
        is_working,
        is_slow,
        response_time_ms,
        consecutive_failures,
        error_message,
    ) = row
    return LinkHealthObservation(
        id=int(observation_id),
        link_id=int(link_id),
        checked_at=checked_at,
        status_code=int(status_code),
        is_working=bool(is_working),
        is_slow=bool(is_slow),
        response_time_ms=int(response_time_ms) if response_time_ms is not None else None,
        consecutive_failures=int(consecutive_failures),
        error_message=error_message,
    )


def _new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"
