import logging

import pytest

from pureflow.cli import main
from pureflow.lifecycle import JobStatus
from pureflow.storage import (
    claim_next_job,
    deactivate_link,
    fail_job,
    init_db,
    list_jobs,
    list_links,
)


@pytest.fixture(autouse=True)
def _restore_root_logging():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


def _write_csv(tmp_path, body):
    path = tmp_path / "plan.csv"
    path.write_text(body, encoding="utf-8")
    return str(path)


def test_jobs_ingest_from_csv(tmp_path):
    path = _write_csv(
        tmp_path,
        "Title,Status,Keywords,Target Date\n"
        "Sleep hygiene,Planned,\"sleep, rest\",\n"
        "Old idea,Archived,,\n",
    )

    assert main(["jobs", "ingest", path]) == 0
    assert main(["jobs", "ingest", path]) == 0

    jobs = list_jobs(init_db())
    assert [job.topic for job in jobs] == ["Sleep hygiene"]
    assert jobs[0].target_keywords == ["sleep", "rest"]


def test_jobs_ingest_missing_title_column_fails(tmp_path):
    path = _write_csv(tmp_path, "Name,Status\nx,Planned\n")

    assert main(["jobs", "ingest", path]) == 1


def test_jobs_requeue_only_accepts_failed_jobs(tmp_path):
    path = _write_csv(tmp_path, "Title,Status\nRetry me,Planned\n")
    main(["jobs", "ingest", path])
    conn = init_db()
    job = list_jobs(conn)[0]

    assert main(["jobs", "requeue", job.id]) == 1

    claim_next_job(conn, "worker-1")
    fail_job(conn, job.id, "generate: boom")
    assert main(["jobs", "requeue", job.id]) == 0
    assert list_jobs(conn)[0].status is JobStatus.SCHEDULED


def test_links_add_creates_product_and_link():
    assert (
        main(
            [
                "links",
                "add",
                "https://shop.example/melatonin",
                "--product-name",
                "Melatonin",
                "--category",
                "sleep",
                "--ctr",
                "0.05",
            ]
        )
        == 0
    )

    links = list_links(init_db())
    assert len(links) == 1
    assert links[0].original_url == "https://shop.example/melatonin"
    assert links[0].ctr_14d == pytest.approx(0.05)
    assert len(links[0].short_code) == 8


def test_links_add_requires_product():
    assert main(["links", "add", "https://shop.example/x"]) == 1
    assert main(["links", "add", "https://shop.example/x", "--product-id", "42"]) == 1


def test_links_reactivate_and_report():
    main(["links", "add", "https://shop.example/a", "--product-name", "A"])
    conn = init_db()
    link = list_links(conn)[0]

    assert main(["links", "reactivate", str(link.id)]) == 1

    deactivate_link(conn, link.id, "circuit_open:3")
    assert main(["links", "reactivate", str(link.id)]) == 0
    assert list_links(conn, active_only=True)[0].id == link.id
    assert main(["links", "report"]) == 0


def test_db_migrate(tmp_path):
    assert main(["db", "migrate"]) == 0
    assert (tmp_path / "data" / "state.sqlite3").exists()


def test_invalid_config_returns_error(tmp_path):
    config_path = tmp_path / "bad.yml"
    config_path.write_text("links:\n  failure_threshold: nope\n", encoding="utf-8")

    assert main(["--config", str(config_path), "jobs", "list"]) == 1


def test_process_next_refuses_deadline_at_lock_timeout(tmp_path):
    path = _write_csv(tmp_path, "Title,Status\nLong run,Planned\n")
    main(["jobs", "ingest", path])

    assert main(["cron", "process-next", "--deadline", "900"]) == 1

    job = list_jobs(init_db())[0]
    assert job.status is JobStatus.SCHEDULED
    assert job.attempts == 0
