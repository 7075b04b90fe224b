import threading

import pytest

from pureflow.lifecycle import InvalidTransitionError, JobStatus
from pureflow.storage import (
    claim_next_job,
    complete_job,
    count_jobs_by_status,
    enqueue_pipeline_job,
    expire_stale_jobs,
    fail_job,
    get_job,
    init_db,
    list_jobs,
    requeue_failed_job,
    reschedule_job,
)
from pureflow.utils import utc_now_iso_offset


def test_enqueue_and_claim_job(tmp_path):
    db_path = tmp_path / "state.sqlite3"
    conn = init_db(str(db_path))
    conn2 = init_db(str(db_path))

    job_id = enqueue_pipeline_job(conn, "sleep hygiene", ["sleep", "rest"])
    claimed = claim_next_job(conn, "worker-1")

    assert claimed is not None
    assert claimed.id == job_id
    assert claimed.status == JobStatus.GENERATING
    assert claimed.attempts == 1
    assert claimed.locked_by == "worker-1"
    assert claimed.target_keywords == ["sleep", "rest"]

    assert claim_next_job(conn2, "worker-2") is None


def test_claim_picks_oldest_due_job(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    later = enqueue_pipeline_job(conn, "later", [], scheduled_at=utc_now_iso_offset(seconds=-60))
    earlier = enqueue_pipeline_job(conn, "earlier", [], scheduled_at=utc_now_iso_offset(seconds=-600))
    enqueue_pipeline_job(conn, "future", [], scheduled_at=utc_now_iso_offset(seconds=3600))

    first = claim_next_job(conn, "worker-1")
    second = claim_next_job(conn, "worker-1")
    third = claim_next_job(conn, "worker-1")

    assert first.id == earlier
    assert second.id == later
    assert third is None


def test_concurrent_claims_hand_out_single_job_once(tmp_path):
    db_path = str(tmp_path / "state.sqlite3")
    conn = init_db(db_path)
    job_id = enqueue_pipeline_job(conn, "only job", ["one"])
    conn.close()

    workers = 8
    barrier = threading.Barrier(workers)
    claims = []
    errors = []
    lock = threading.Lock()

    def _claim(index: int) -> None:
        local = init_db(db_path)
        try:
            barrier.wait()
            job = claim_next_job(local, f"worker-{index}")
            with lock:
                claims.append(job)
        except Exception as exc:  # noqa: BLE001
            with lock:
                errors.append(exc)
        finally:
            local.close()

    threads = [threading.Thread(target=_claim, args=(i,)) for i in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    won = [job for job in claims if job is not None]
    assert len(won) == 1
    assert won[0].id == job_id

    check = init_db(db_path)
    stored = get_job(check, job_id)
    assert stored.status == JobStatus.GENERATING
    assert stored.attempts == 1


def test_terminal_jobs_are_not_reclaimed(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    published_id = enqueue_pipeline_job(conn, "published topic", [])
    claimed = claim_next_job(conn, "worker-1")
    assert complete_job(conn, claimed.id, "article-1", {"targets": {}, "degraded": False})

    failed_id = enqueue_pipeline_job(conn, "failed topic", [])
    claimed = claim_next_job(conn, "worker-1")
    assert fail_job(conn, claimed.id, "generate: boom")

    assert claim_next_job(conn, "worker-1") is None
    assert get_job(conn, published_id).status == JobStatus.PUBLISHED
    assert get_job(conn, published_id).published_article_id == "article-1"
    assert get_job(conn, failed_id).status == JobStatus.FAILED

    assert not complete_job(conn, failed_id, "article-2")
    assert not fail_job(conn, published_id, "late error")
    assert get_job(conn, failed_id).status == JobStatus.FAILED
    assert get_job(conn, published_id).last_error is None


def test_duplicate_topic_is_not_enqueued(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    first = enqueue_pipeline_job(conn, "sleep hygiene", ["sleep"])
    second = enqueue_pipeline_job(conn, "sleep hygiene", ["rest"])

    assert first is not None
    assert second is None
    assert len(list_jobs(conn, limit=10)) == 1


def test_stale_lock_fails_job(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    job_id = enqueue_pipeline_job(conn, "stuck", [])
    assert claim_next_job(conn, "worker-1") is not None

    conn.execute(
        "UPDATE pipeline_jobs SET locked_at = ? WHERE id = ?",
        (utc_now_iso_offset(seconds=-3600), job_id),
    )
    conn.commit()

    assert expire_stale_jobs(conn, 60) == [job_id]
    job = get_job(conn, job_id)
    assert job.status == JobStatus.FAILED
    assert job.last_error == "stale_lock_expired"
    assert claim_next_job(conn, "worker-2") is None


def test_fresh_lock_is_not_expired(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    job_id = enqueue_pipeline_job(conn, "busy", [])
    claim_next_job(conn, "worker-1")

    assert expire_stale_jobs(conn, 900) == []
    assert get_job(conn, job_id).status == JobStatus.GENERATING


def test_reschedule_returns_job_to_queue(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    job_id = enqueue_pipeline_job(conn, "retry me", [])
    claim_next_job(conn, "worker-1")

    assert reschedule_job(conn, job_id, utc_now_iso_offset(seconds=-1), "generate: timeout")
    job = get_job(conn, job_id)
    assert job.status == JobStatus.SCHEDULED
    assert job.last_error == "generate: timeout"
    assert job.locked_by is None

    again = claim_next_job(conn, "worker-2")
    assert again.id == job_id
    assert again.attempts == 2


def test_requeue_only_applies_to_failed_jobs(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    job_id = enqueue_pipeline_job(conn, "operator", [])
    assert not requeue_failed_job(conn, job_id)

    claim_next_job(conn, "worker-1")
    fail_job(conn, job_id, "optimize: bad response")
    assert requeue_failed_job(conn, job_id)

    job = get_job(conn, job_id)
    assert job.status == JobStatus.SCHEDULED
    assert job.finished_at is None


def test_published_job_cannot_move_back_to_generating():
    from pureflow.lifecycle import ensure_job_transition

    with pytest.raises(InvalidTransitionError):
        ensure_job_transition(JobStatus.PUBLISHED, JobStatus.GENERATING)


def test_count_jobs_by_status(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    enqueue_pipeline_job(conn, "a", [])
    enqueue_pipeline_job(conn, "b", [])
    job = claim_next_job(conn, "worker-1")
    fail_job(conn, job.id, "generate: nope")

    counts = count_jobs_by_status(conn, utc_now_iso_offset(seconds=-7 * 86400))
    assert counts["failed"] == 1
    assert counts["scheduled"] == 1
    assert counts["published"] == 0
