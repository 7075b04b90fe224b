from __future__ import annotations

import argparse
import logging

from .config import ConfigError, open_state
from .ingest import IngestError, ingest_rows, load_rows_from_csv
from .lifecycle import InvalidTransitionError, JobStatus
from .linkhealth import get_health_report
from .storage import (
    ShortCodeExhaustedError,
    count_jobs_by_status,
    create_affiliate_link,
    create_product,
    get_product,
    list_jobs,
    list_links,
    reactivate_link,
    requeue_failed_job,
    update_link_ctr,
)
from .utils import configure_logging, log_event, utc_now_iso_offset
from .worker import TASKS, run_task


def _setup_logging() -> logging.Logger:
    return configure_logging("pureflow")


def _open_state(args: argparse.Namespace, logger: logging.Logger):
    try:
        return open_state(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return None


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open_state(args, logger)
    if not opened:
        return 1
    conn, config = opened
    conn.close()
    log_event(logger, logging.INFO, "db_migrated", path=config.paths.state_db)
    return 0


def _cmd_jobs_ingest(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open_state(args, logger)
    if not opened:
        return 1
    conn, config = opened
    try:
        rows = load_rows_from_csv(args.path)
    except IngestError as exc:
        log_event(logger, logging.ERROR, "ingest_error", error=str(exc))
        return 1
    result = ingest_rows(
        conn,
        rows,
        source=args.source or args.path,
        config=config.ingest,
        logger=logging.getLogger("pureflow.ingest"),
    )
    log_event(
        logger,
        logging.INFO,
        "jobs_ingested",
        processed=result.processed,
        ingested=result.ingested,
        skipped_duplicates=result.skipped_duplicates,
        skipped_filtered=result.skipped_filtered,
        errors=len(result.errors),
    )
    return 1 if result.errors else 0


def _cmd_jobs_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open_state(args, logger)
    if not opened:
        return 1
    conn, _ = opened
    for job in list_jobs(conn, limit=args.limit, status=args.status):
        log_event(
            logger,
            logging.INFO,
            "job",
            job_id=job.id,
            topic=job.topic,
            status=job.status.value,
            attempts=job.attempts,
            scheduled_at=job.scheduled_at,
            finished_at=job.finished_at,
            published_article_id=job.published_article_id,
            error=job.last_error,
        )
    return 0


def _cmd_jobs_stats(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open_state(args, logger)
    if not opened:
        return 1
    conn, _ = opened
    since = utc_now_iso_offset(seconds=-args.days * 86400)
    counts = count_jobs_by_status(conn, since)
    log_event(logger, logging.INFO, "job_stats", since=since, **counts)
    return 0


def _cmd_jobs_requeue(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open_state(args, logger)
    if not opened:
        return 1
    conn, _ = opened
    if not requeue_failed_job(conn, args.job_id):
        log_event(
            logger,
            logging.ERROR,
            "job_requeue_refused",
            job_id=args.job_id,
            reason=f"job is missing or not {JobStatus.FAILED.value}",
        )
        return 1
    log_event(logger, logging.INFO, "job_requeued", job_id=args.job_id)
    return 0


def _cmd_links_add(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open_state(args, logger)
    if not opened:
        return 1
    conn, _ = opened
    product_id = args.product_id
    if product_id is None:
        if not args.product_name:
            log_event(logger, logging.ERROR, "link_add_failed", error="--product-id or --product-name is required")
            return 1
        product_id = create_product(conn, args.product_name, args.category)
    elif not get_product(conn, product_id):
        log_event(logger, logging.ERROR, "link_add_failed", error=f"unknown product {product_id}")
        return 1
    try:
        link = create_affiliate_link(conn, product_id, args.url)
    except ShortCodeExhaustedError as exc:
        log_event(logger, logging.ERROR, "link_add_failed", error=str(exc))
        return 1
    if args.ctr is not None:
        update_link_ctr(conn, link.id, args.ctr)
    log_event(
        logger,
        logging.INFO,
        "link_added",
        link_id=link.id,
        product_id=product_id,
        short_code=link.short_code,
        url=link.original_url,
    )
    return 0


def _cmd_links_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open_state(args, logger)
    if not opened:
        return 1
    conn, _ = opened
    links = list_links(conn, active_only=args.active_only)
    for link in links:
        log_event(
            logger,
            logging.INFO,
            "link",
            link_id=link.id,
            short_code=link.short_code,
            active=link.is_active,
            ctr_14d=link.ctr_14d,
            last_checked_at=link.last_checked_at,
            deactivated_reason=link.deactivated_reason,
            url=link.original_url,
        )
    log_event(logger, logging.INFO, "links_listed", count=len(links))
    return 0


def _cmd_links_set_ctr(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open_state(args, logger)
    if not opened:
        return 1
    conn, _ = opened
    if not update_link_ctr(conn, args.link_id, args.ctr):
        log_event(logger, logging.ERROR, "link_not_found", link_id=args.link_id)
        return 1
    log_event(logger, logging.INFO, "link_ctr_updated", link_id=args.link_id, ctr_14d=args.ctr)
    return 0


def _cmd_links_reactivate(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open_state(args, logger)
    if not opened:
        return 1
    conn, _ = opened
    try:
        reactivated = reactivate_link(conn, args.link_id)
    except InvalidTransitionError as exc:
        log_event(logger, logging.ERROR, "link_reactivate_refused", link_id=args.link_id, error=str(exc))
        return 1
    if not reactivated:
        log_event(logger, logging.ERROR, "link_reactivate_refused", link_id=args.link_id, reason="not_inactive")
        return 1
    log_event(logger, logging.INFO, "link_reactivated", link_id=args.link_id)
    return 0


def _cmd_links_report(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open_state(args, logger)
    if not opened:
        return 1
    conn, config = opened
    report = get_health_report(conn, config)
    log_event(logger, logging.INFO, "link_health_summary", **report["summary"])
    for link in report["broken_links"]:
        log_event(logger, logging.WARNING, "broken_link", **link)
    for link in report["slow_links"]:
        log_event(logger, logging.INFO, "slow_link", **link)
    return 0


def _cmd_cron(args: argparse.Namespace, logger: logging.Logger) -> int:
    return run_task(
        args.task,
        deadline_seconds=args.deadline or None,
        config_path=args.config,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pureflow", description="PureFlow CLI")
    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Path to config.yml (defaults to PF_CONFIG_PATH or /config/config.yml)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)

    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    jobs_parser = subparsers.add_parser("jobs", help="Pipeline job queue commands")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", required=True)

    jobs_ingest = jobs_subparsers.add_parser("ingest", help="Enqueue planned topics from a CSV export")
    jobs_ingest.add_argument("path", help="CSV file with Title, Status, Keywords, Target Date columns")
    jobs_ingest.add_argument("--source", default=None, help="Label stored with the ingest run")
    jobs_ingest.set_defaults(func=_cmd_jobs_ingest)

    jobs_list = jobs_subparsers.add_parser("list", help="List recent jobs")
    jobs_list.add_argument("--limit", type=int, default=20, help="Number of jobs to show")
    jobs_list.add_argument("--status", choices=[status.value for status in JobStatus], default=None)
    jobs_list.set_defaults(func=_cmd_jobs_list)

    jobs_stats = jobs_subparsers.add_parser("stats", help="Count jobs by status")
    jobs_stats.add_argument("--days", type=int, default=7, help="Only jobs updated in this window")
    jobs_stats.set_defaults(func=_cmd_jobs_stats)

    jobs_requeue = jobs_subparsers.add_parser("requeue", help="Schedule a failed job again")
    jobs_requeue.add_argument("job_id")
    jobs_requeue.set_defaults(func=_cmd_jobs_requeue)

    links_parser = subparsers.add_parser("links", help="Affiliate link commands")
    links_subparsers = links_parser.add_subparsers(dest="links_command", required=True)

    links_add = links_subparsers.add_parser("add", help="Create an affiliate link")
    links_add.add_argument("url", help="Destination URL")
    links_add.add_argument("--product-id", type=int, default=None)
    links_add.add_argument("--product-name", default=None, help="Create a product with this name")
    links_add.add_argument("--category", default=None, help="Category for a new product")
    links_add.add_argument("--ctr", type=float, default=None, help="Initial 14-day CTR")
    links_add.set_defaults(func=_cmd_links_add)

    links_list = links_subparsers.add_parser("list", help="List affiliate links")
    links_list.add_argument("--active-only", action="store_true")
    links_list.set_defaults(func=_cmd_links_list)

    links_ctr = links_subparsers.add_parser("set-ctr", help="Record a link's 14-day CTR")
    links_ctr.add_argument("link_id", type=int)
    links_ctr.add_argument("ctr", type=float)
    links_ctr.set_defaults(func=_cmd_links_set_ctr)

    links_reactivate = links_subparsers.add_parser("reactivate", help="Manually reactivate a link")
    links_reactivate.add_argument("link_id", type=int)
    links_reactivate.set_defaults(func=_cmd_links_reactivate)

    links_report = links_subparsers.add_parser("report", help="Print the link health report")
    links_report.set_defaults(func=_cmd_links_report)

    cron_parser = subparsers.add_parser("cron", help="Scheduler entry points")
    cron_subparsers = cron_parser.add_subparsers(dest="cron_command", required=True)
    for task in TASKS:
        cron_task = cron_subparsers.add_parser(task, help=f"Run {task} once")
        cron_task.add_argument("--deadline", type=float, default=0, help="Run deadline in seconds")
        cron_task.set_defaults(func=_cmd_cron, task=task)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)
