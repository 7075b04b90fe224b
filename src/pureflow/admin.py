from __future__ import annotations

import logging
import os
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from .adapters.http import build_pipeline_services
from .config import ConfigError, get_runtime_config, open_state, set_runtime_config
from .ingest import ingest_rows
from .lifecycle import JobStatus
from .linkhealth import build_checker, get_health_report, probe_all
from .rotation import rotate_underperforming
from .runctx import RunContext
from .storage import (
    count_jobs_by_status,
    get_job,
    get_link,
    list_jobs,
    list_link_alerts,
    list_link_rotations,
    list_observations,
    list_publish_results,
    requeue_failed_job,
)
from .utils import configure_logging, log_event, utc_now_iso_offset
from .worker import process_next

app = FastAPI(title="PureFlow Admin API")


class RuntimeConfigRequest(BaseModel):
    config: dict


class IngestRequest(BaseModel):
    rows: list[dict[str, Any]] = Field(default_factory=list)
    source: str = "api"


@app.get("/")
def root() -> dict[str, str]:
    return {"service": "PureFlow Admin API"}


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


@app.get("/admin/config/runtime")
def runtime_config_get() -> dict[str, object]:
    conn, _ = _open()
    try:
        cfg = get_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    finally:
        conn.close()
    return {"config": cfg}


@app.put("/admin/config/runtime")
def runtime_config_set(payload: RuntimeConfigRequest) -> dict[str, object]:
    conn, _ = _open()
    try:
        set_runtime_config(conn, payload.config)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    finally:
        conn.close()
    return {"status": "ok"}


@app.get("/jobs")
def jobs(limit: int = 20, status: JobStatus | None = None) -> list[dict[str, object]]:
    conn, _ = _open()
    try:
        return [_job_to_dict(job) for job in list_jobs(conn, limit=limit, status=status)]
    finally:
        conn.close()


@app.get("/jobs/stats")
def jobs_stats(days: int = 7) -> dict[str, object]:
    conn, _ = _open()
    since = utc_now_iso_offset(seconds=-days * 86400)
    try:
        return {"since": since, "counts": count_jobs_by_status(conn, since)}
    finally:
        conn.close()


@app.get("/jobs/{job_id}")
def job_detail(job_id: str) -> dict[str, object]:
    conn, _ = _open()
    try:
        job = get_job(conn, job_id)
        if not job:
            raise HTTPException(status_code=404, detail="job_not_found")
        payload = _job_to_dict(job)
        payload["publish_results"] = list_publish_results(conn, job_id)
        return payload
    finally:
        conn.close()


@app.post("/jobs/ingest")
def jobs_ingest(payload: IngestRequest) -> dict[str, object]:
    logger = logging.getLogger("pureflow.admin")
    conn, config = _open()
    try:
        result = ingest_rows(conn, payload.rows, source=payload.source, config=config.ingest)
    finally:
        conn.close()
    log_event(
        logger,
        logging.INFO,
        "jobs_ingested",
        source=payload.source,
        ingested=result.ingested,
        skipped_duplicates=result.skipped_duplicates,
    )
    return asdict(result)


@app.post("/jobs/{job_id}/requeue")
def jobs_requeue(job_id: str) -> dict[str, str]:
    conn, _ = _open()
    try:
        if not get_job(conn, job_id):
            raise HTTPException(status_code=404, detail="job_not_found")
        if not requeue_failed_job(conn, job_id):
            raise HTTPException(status_code=409, detail="job_not_failed")
    finally:
        conn.close()
    log_event(logging.getLogger("pureflow.admin"), logging.INFO, "job_requeued", job_id=job_id)
    return {"status": "ok", "job_id": job_id}


@app.get("/links/health")
def links_health() -> dict[str, object]:
    conn, config = _open()
    try:
        return get_health_report(conn, config)
    finally:
        conn.close()


@app.get("/links/rotations")
def links_rotations(limit: int = 50) -> list[dict[str, object]]:
    conn, _ = _open()
    try:
        return list_link_rotations(conn, limit)
    finally:
        conn.close()


@app.get("/links/{link_id}/observations")
def link_observations(link_id: int, limit: int = 50) -> dict[str, object]:
    conn, _ = _open()
    try:
        link = get_link(conn, link_id)
        if not link:
            raise HTTPException(status_code=404, detail="link_not_found")
        return {
            "link": asdict(link),
            "observations": [asdict(obs) for obs in list_observations(conn, link_id, limit)],
            "alerts": list_link_alerts(conn, link_id),
        }
    finally:
        conn.close()


@app.post("/cron/process-content")
def cron_process_content() -> dict[str, object]:
    conn, config = _open()
    try:
        result = process_next(
            conn,
            build_pipeline_services(config),
            config,
            ctx=RunContext(config.jobs.run_deadline_seconds),
            logger=logging.getLogger("pureflow.worker"),
        )
    finally:
        conn.close()
    payload = asdict(result)
    payload["degraded"] = result.degraded
    return payload


@app.post("/cron/check-links")
def cron_check_links() -> dict[str, object]:
    conn, config = _open()
    try:
        summary = probe_all(
            conn,
            build_checker(config),
            config,
            ctx=RunContext(config.links.run_deadline_seconds),
        )
    finally:
        conn.close()
    return asdict(summary)


@app.post("/cron/rotate-links")
def cron_rotate_links() -> dict[str, object]:
    conn, config = _open()
    try:
        summary = rotate_underperforming(conn, config)
    finally:
        conn.close()
    return asdict(summary)


def serve() -> None:
    import uvicorn

    configure_logging("pureflow.admin")
    uvicorn.run(
        "pureflow.admin:app",
        host=os.environ.get("PF_ADMIN_HOST", "0.0.0.0"),
        port=int(os.environ.get("PF_ADMIN_PORT", "8000")),
        proxy_headers=True,
    )


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("pureflow")
    except Exception:  # noqa: BLE001
        return "unknown"


def _job_to_dict(job) -> dict[str, object]:
    return {
        "id": job.id,
        "topic": job.topic,
        "target_keywords": job.target_keywords,
        "status": job.status.value,
        "attempts": job.attempts,
        "scheduled_at": job.scheduled_at,
        "last_error": job.last_error or "",
        "published_article_id": job.published_article_id,
        "result": job.result or {},
        "started_at": job.started_at or "",
        "finished_at": job.finished_at or "",
        "created_at": job.created_at,
    }


def _open():
    try:
        return open_state()
    except ConfigError as exc:
        log_event(logging.getLogger("pureflow.admin"), logging.ERROR, "config_error", error=str(exc))
        raise HTTPException(status_code=500, detail=str(exc)) from exc
