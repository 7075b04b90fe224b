from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from .adapters.base import ReachabilityChecker
from .adapters.reachability import UrllibReachabilityChecker
from .config import Config
from .models import AffiliateLink, LinkHealthObservation, ProbeSummary
from .runctx import RunCancelledError, RunContext
from .storage import (
    deactivate_link,
    get_latest_observation,
    get_latest_probe_run,
    insert_observation,
    insert_probe_run,
    list_active_links,
    list_broken_links,
    list_slow_links,
    record_link_alert,
    touch_link_checked,
)
from .utils import log_event, parse_iso, utc_now_iso, utc_now_iso_offset


@dataclass(frozen=True)
class _Probe:
    link: AffiliateLink
    status_code: int
    response_time_ms: int | None
    error: str | None


@dataclass
class _Tally:
    total: int = 0
    working: int = 0
    broken: int = 0
    slow: int = 0
    recently_fixed: int = 0


def build_checker(config: Config) -> ReachabilityChecker:
    return UrllibReachabilityChecker(user_agent=config.links.user_agent)


def probe_all(
    conn,
    checker: ReachabilityChecker,
    config: Config,
    *,
    ctx: RunContext | None = None,
    logger: logging.Logger | None = None,
) -> ProbeSummary:
    """Check every active link once and apply the consecutive-failure breaker.

    Checks may run ``links.probe_concurrency`` at a time, but observations
    are written from this thread in link order, so each link's history
    stays ordered by ``checked_at``. A cancelled or expired ``ctx`` stops
    the run before the next batch and marks the summary aborted.
    """
    logger = logger or logging.getLogger("pureflow.linkhealth")
    ctx = ctx or RunContext(config.links.run_deadline_seconds)
    settings = config.links
    started_at = utc_now_iso()
    links = list_active_links(conn)
    tally = _Tally()
    deactivated: list[int] = []
    aborted = False
    batch_size = max(1, settings.probe_concurrency)

    log_event(logger, logging.INFO, "link_probe_started", links=len(links), concurrency=batch_size)
    executor = ThreadPoolExecutor(max_workers=batch_size) if batch_size > 1 else None
    try:
        for offset in range(0, len(links), batch_size):
            batch = links[offset : offset + batch_size]
            try:
                ctx.check()
                timeout = ctx.timeout_for(settings.probe_timeout_seconds)
            except RunCancelledError as exc:
                aborted = True
                log_event(
                    logger,
                    logging.WARNING,
                    "link_probe_aborted",
                    remaining=len(links) - offset,
                    error=str(exc),
                )
                break
            if executor is None:
                probes = [_check_link(checker, link, timeout) for link in batch]
            else:
                futures = [executor.submit(_check_link, checker, link, timeout) for link in batch]
                probes = [future.result() for future in futures]
            for probe in probes:
                if _record_probe(conn, probe, config, tally, logger):
                    deactivated.append(probe.link.id)
    finally:
        if executor is not None:
            executor.shutdown(wait=True)

    summary = ProbeSummary(
        total=tally.total,
        working=tally.working,
        broken=tally.broken,
        slow=tally.slow,
        recently_fixed=tally.recently_fixed,
        aborted=aborted,
        deactivated=deactivated,
    )
    insert_probe_run(conn, started_at, utc_now_iso(), summary)
    log_event(
        logger,
        logging.INFO,
        "link_probe_completed",
        total=summary.total,
        working=summary.working,
        broken=summary.broken,
        slow=summary.slow,
        recently_fixed=summary.recently_fixed,
        deactivated=len(deactivated),
        aborted=aborted,
    )
    return summary


def _check_link(checker: ReachabilityChecker, link: AffiliateLink, timeout: float) -> _Probe:
    try:
        result = checker.check(link.original_url, timeout)
    except Exception as exc:  # noqa: BLE001
        return _Probe(link=link, status_code=0, response_time_ms=None, error=str(exc) or exc.__class__.__name__)
    return _Probe(
        link=link,
        status_code=int(result.status_code),
        response_time_ms=int(result.response_time_ms),
        error=None,
    )


def _record_probe(
    conn,
    probe: _Probe,
    config: Config,
    tally: _Tally,
    logger: logging.Logger,
) -> bool:
    """Append the observation for one probe; returns True when the circuit opened."""
    settings = config.links
    link = probe.link
    previous = get_latest_observation(conn, link.id)
    checked_at = utc_now_iso()
    if previous and parse_iso(checked_at) < parse_iso(previous.checked_at):
        checked_at = previous.checked_at

    is_working = probe.error is None and 200 <= probe.status_code < 300
    is_slow = probe.response_time_ms is not None and probe.response_time_ms > settings.slow_threshold_ms
    if is_working:
        consecutive = 0
        error_message = None
    else:
        consecutive = (previous.consecutive_failures if previous else 0) + 1
        error_message = probe.error or f"HTTP {probe.status_code}"

    insert_observation(
        conn,
        LinkHealthObservation(
            id=None,
            link_id=link.id,
            checked_at=checked_at,
            status_code=probe.status_code,
            is_working=is_working,
            is_slow=is_slow,
            response_time_ms=probe.response_time_ms,
            consecutive_failures=consecutive,
            error_message=error_message,
        ),
    )
    touch_link_checked(conn, link.id, checked_at)

    tally.total += 1
    if is_working:
        tally.working += 1
        if is_slow:
            tally.slow += 1
        if previous and not previous.is_working:
            tally.recently_fixed += 1
            log_event(logger, logging.INFO, "link_recovered", link_id=link.id, short_code=link.short_code)
        return False

    tally.broken += 1
    log_event(
        logger,
        logging.WARNING,
        "link_probe_failed",
        link_id=link.id,
        short_code=link.short_code,
        status_code=probe.status_code,
        consecutive_failures=consecutive,
        error=error_message,
    )
    if consecutive < settings.failure_threshold:
        return False
    reason = f"circuit_open:{consecutive}"
    if not deactivate_link(conn, link.id, reason):
        return False
    record_link_alert(
        conn,
        link.id,
        "circuit_open",
        f"Link {link.short_code} deactivated after {consecutive} consecutive failures: {error_message}",
    )
    log_event(
        logger,
        logging.ERROR,
        "link_deactivated",
        link_id=link.id,
        short_code=link.short_code,
        reason=reason,
    )
    return True


def get_health_report(conn, config: Config) -> dict[str, object]:
    settings = config.links
    run = get_latest_probe_run(conn)
    summary = {
        "total": 0,
        "working": 0,
        "broken": 0,
        "slow": 0,
        "recently_fixed": 0,
        "aborted": False,
        "last_run_at": None,
    }
    if run:
        summary.update(
            {
                "total": run["total"],
                "working": run["working"],
                "broken": run["broken"],
                "slow": run["slow"],
                "recently_fixed": run["recently_fixed"],
                "aborted": run["aborted"],
                "last_run_at": run["finished_at"],
            }
        )
    since = utc_now_iso_offset(seconds=-settings.slow_window_days * 86400)
    return {
        "summary": summary,
        "broken_links": list_broken_links(conn, settings.report_broken_limit),
        "slow_links": list_slow_links(
            conn, since, settings.slow_threshold_ms, settings.report_slow_limit
        ),
    }
