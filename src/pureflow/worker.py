from __future__ import annotations

import argparse
import logging
import os
import threading
import uuid

from .adapters.base import PipelineServices
from .adapters.http import build_pipeline_services
from .config import Config, ConfigError, open_state
from .lifecycle import JobStatus
from .linkhealth import build_checker, probe_all
from .models import ProcessResult, PublishOutcome
from .pipelines.publish_fanout import external_post_ids, publish_to_targets, summarize_outcomes
from .retry import RetryPolicy, build_retry_policy
from .rotation import rotate_underperforming
from .runctx import RunContext
from .storage import (
    claim_next_job,
    complete_job,
    expire_stale_jobs,
    fail_job,
    record_publish_result,
    reschedule_job,
)
from .utils import configure_logging, log_event, utc_now_iso_offset

TASKS = ("process-next", "probe-links", "rotate-links")


def _setup_logging() -> logging.Logger:
    return configure_logging("pureflow.worker")


def default_worker_id() -> str:
    return f"{os.environ.get('HOSTNAME', 'worker')}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def retry_policy_from_config(config: Config) -> RetryPolicy:
    retry = config.jobs.retry
    return build_retry_policy(
        retry.strategy,
        max_attempts=retry.max_attempts,
        base_delay_seconds=retry.base_delay_seconds,
        max_delay_seconds=retry.max_delay_seconds,
    )


def process_next(
    conn,
    services: PipelineServices,
    config: Config,
    *,
    ctx: RunContext | None = None,
    retry_policy: RetryPolicy | None = None,
    worker_id: str | None = None,
    logger: logging.Logger | None = None,
) -> ProcessResult:
    """Claim the oldest due job and drive it to a terminal state.

    Stages 1-4 (generate, create draft, optimize, finalize draft) are
    required: the first error fails the job, or reschedules it when the
    retry policy grants another attempt. Publishing is best effort per
    target. Adapter errors never propagate out of this function.
    """
    logger = logger or logging.getLogger("pureflow.worker")
    ctx = ctx or RunContext(config.jobs.run_deadline_seconds)
    retry_policy = retry_policy or retry_policy_from_config(config)
    worker_id = worker_id or default_worker_id()
    timeout = config.adapters.timeout_seconds

    for job_id in expire_stale_jobs(conn, config.jobs.lock_timeout_seconds):
        log_event(logger, logging.WARNING, "job_lock_expired", job_id=job_id)

    job = claim_next_job(conn, worker_id)
    if not job:
        log_event(logger, logging.DEBUG, "job_queue_idle")
        return ProcessResult(outcome="idle")
    log_event(
        logger,
        logging.INFO,
        "job_claimed",
        job_id=job.id,
        topic=job.topic,
        attempts=job.attempts,
        worker_id=worker_id,
    )

    stage = "generate"
    try:
        ctx.check()
        generated = services.generator.generate(
            job.topic, list(job.target_keywords), ctx.timeout_for(timeout)
        )
        stage = "create_draft"
        ctx.check()
        article_id = services.draft_store.create_draft(generated, ctx.timeout_for(timeout))
        log_event(logger, logging.INFO, "job_draft_created", job_id=job.id, article_id=article_id)
        stage = "optimize"
        ctx.check()
        optimized = services.optimizer.optimize(
            article_id, list(job.target_keywords), ctx.timeout_for(timeout)
        )
        stage = "finalize_draft"
        ctx.check()
        services.draft_store.update_article(
            article_id,
            {
                "title": optimized.title,
                "content": optimized.body,
                "seo_meta": optimized.seo_meta,
                "suggested_placements": optimized.suggested_placements,
                "published": True,
            },
            ctx.timeout_for(timeout),
        )
    except Exception as exc:  # noqa: BLE001
        return _handle_stage_failure(conn, job, stage, exc, retry_policy, logger)

    outcomes = publish_to_targets(services.targets, article_id, optimized, ctx, timeout, logger)
    for outcome in outcomes:
        record_publish_result(conn, job.id, job.attempts, outcome)

    result = summarize_outcomes(outcomes)
    posts = external_post_ids(outcomes)
    if posts:
        try:
            services.draft_store.update_article(
                article_id, {"external_posts": posts}, ctx.timeout_for(timeout)
            )
        except Exception as exc:  # noqa: BLE001
            result["external_ids_error"] = str(exc)
            log_event(
                logger,
                logging.WARNING,
                "job_external_ids_failed",
                job_id=job.id,
                article_id=article_id,
                error=str(exc),
            )

    if not complete_job(conn, job.id, article_id, result=result):
        log_event(logger, logging.ERROR, "job_complete_failed", job_id=job.id)
        return ProcessResult(
            outcome="lost",
            job_id=job.id,
            attempts=job.attempts,
            published_article_id=article_id,
            publish_outcomes=outcomes,
        )
    log_event(
        logger,
        logging.INFO,
        "job_published",
        job_id=job.id,
        article_id=article_id,
        degraded=result["degraded"],
        failed_targets=_failed_targets(outcomes),
    )
    return ProcessResult(
        outcome="published",
        job_id=job.id,
        status=JobStatus.PUBLISHED,
        attempts=job.attempts,
        published_article_id=article_id,
        publish_outcomes=outcomes,
    )


def _handle_stage_failure(
    conn,
    job,
    stage: str,
    exc: Exception,
    retry_policy: RetryPolicy,
    logger: logging.Logger,
) -> ProcessResult:
    error = f"{stage}: {exc}" if str(exc) else f"{stage}: {exc.__class__.__name__}"
    delay = retry_policy.next_delay(job.attempts)
    if delay is not None:
        reschedule_job(conn, job.id, utc_now_iso_offset(seconds=delay), error)
        log_event(
            logger,
            logging.WARNING,
            "job_retry_scheduled",
            job_id=job.id,
            stage=stage,
            attempts=job.attempts,
            delay_seconds=delay,
            strategy=retry_policy.name,
            error=str(exc),
        )
        return ProcessResult(
            outcome="retry_scheduled",
            job_id=job.id,
            status=JobStatus.SCHEDULED,
            attempts=job.attempts,
            error=error,
        )
    fail_job(conn, job.id, error)
    log_event(
        logger,
        logging.ERROR,
        "job_stage_failed",
        job_id=job.id,
        stage=stage,
        attempts=job.attempts,
        error=str(exc),
    )
    return ProcessResult(
        outcome="failed",
        job_id=job.id,
        status=JobStatus.FAILED,
        attempts=job.attempts,
        error=error,
    )


def _failed_targets(outcomes: list[PublishOutcome]) -> str:
    return ",".join(outcome.target for outcome in outcomes if not outcome.ok)


def run_task(
    task: str,
    *,
    worker_id: str | None = None,
    deadline_seconds: float | None = None,
    config_path: str | None = None,
) -> int:
    logger = _setup_logging()
    try:
        conn, config = open_state(config_path)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    try:
        if task == "process-next":
            # A run must end before its lock can be expired by another worker.
            if deadline_seconds and deadline_seconds >= config.jobs.lock_timeout_seconds:
                log_event(
                    logger,
                    logging.ERROR,
                    "deadline_exceeds_lock_timeout",
                    deadline=deadline_seconds,
                    lock_timeout_seconds=config.jobs.lock_timeout_seconds,
                )
                return 1
            ctx = RunContext(deadline_seconds or config.jobs.run_deadline_seconds)
            result = process_next(
                conn,
                build_pipeline_services(config),
                config,
                ctx=ctx,
                worker_id=worker_id,
                logger=logger,
            )
            return 1 if result.outcome == "failed" else 0
        if task == "probe-links":
            ctx = RunContext(deadline_seconds or config.links.run_deadline_seconds)
            summary = probe_all(conn, build_checker(config), config, ctx=ctx)
            return 1 if summary.aborted else 0
        if task == "rotate-links":
            rotate_underperforming(conn, config)
            return 0
        raise ValueError(f"unsupported task {task}")
    finally:
        conn.close()


def run_with_supervisor(task: str, deadline_seconds: float, **kwargs) -> int:
    """Run ``task`` on a thread and log when it outlives its deadline.

    The deadline is enforced inside the run through ``RunContext``; the
    supervisor only reports a run that failed to stop on its own.
    """
    logger = _setup_logging()
    outcome: dict[str, int] = {}

    def _target() -> None:
        outcome["code"] = run_task(task, deadline_seconds=deadline_seconds, **kwargs)

    thread = threading.Thread(target=_target, name=f"pureflow-{task}", daemon=True)
    thread.start()
    thread.join(timeout=deadline_seconds + 30)
    if thread.is_alive():
        log_event(logger, logging.ERROR, "task_deadline_overrun", task=task, deadline=deadline_seconds)
        return 1
    return outcome.get("code", 1)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pureflow-worker")
    parser.add_argument("--task", choices=TASKS, default="process-next")
    parser.add_argument("--worker-id", default=None)
    parser.add_argument("--config", default=None, help="Path to config.yml")
    parser.add_argument(
        "--deadline",
        type=float,
        default=float(os.environ.get("PF_WORKER_DEADLINE", "0") or 0),
        help="Abort the run after this many seconds (0 uses the configured default)",
    )
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    if args.deadline > 0:
        return run_with_supervisor(
            args.task,
            args.deadline,
            worker_id=args.worker_id,
            config_path=args.config,
        )
    return run_task(args.task, worker_id=args.worker_id, config_path=args.config)


if __name__ == "__main__":
    raise SystemExit(main())
