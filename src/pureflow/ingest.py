from __future__ import annotations

import csv
import logging
from typing import Any, Iterable, Mapping

from .config import IngestConfig
from .models import IngestResult
from .storage import enqueue_pipeline_job, record_ingest_run
from .utils import isoformat_utc, log_event, parse_datetime, utc_now_iso

TITLE_COLUMN = "Title"
STATUS_COLUMN = "Status"
KEYWORDS_COLUMN = "Keywords"
TARGET_DATE_COLUMN = "Target Date"

DEFAULT_INGEST_CONFIG = IngestConfig(required_status="Planned", keyword_separator=",")


class IngestError(ValueError):
    pass


def split_keywords(value: str | None, separator: str = ",") -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(separator) if item.strip()]


def resolve_scheduled_at(value: Any) -> str:
    if value is None or (isinstance(value, str) and not value.strip()):
        return utc_now_iso()
    parsed = parse_datetime(value)
    if parsed is None:
        raise IngestError(f"invalid {TARGET_DATE_COLUMN} {value!r}")
    return isoformat_utc(parsed)


def ingest_rows(
    conn,
    rows: Iterable[Mapping[str, Any]],
    *,
    source: str = "sheet",
    config: IngestConfig | None = None,
    logger: logging.Logger | None = None,
) -> IngestResult:
    """Turn planned spreadsheet rows into scheduled pipeline jobs.

    Rows without a title, or whose status is not the configured planning
    status, are skipped. Topics already in the queue are counted as
    duplicates. A bad row is reported in ``errors`` and the rest continue.
    """
    config = config or DEFAULT_INGEST_CONFIG
    logger = logger or logging.getLogger("pureflow.ingest")
    processed = 0
    ingested = 0
    skipped_duplicates = 0
    skipped_filtered = 0
    errors: list[str] = []
    job_ids: list[str] = []

    for index, row in enumerate(rows, start=1):
        processed += 1
        title = _cell(row, TITLE_COLUMN)
        if not title or _cell(row, STATUS_COLUMN) != config.required_status:
            skipped_filtered += 1
            continue
        try:
            keywords = split_keywords(_cell(row, KEYWORDS_COLUMN), config.keyword_separator)
            scheduled_at = resolve_scheduled_at(row.get(TARGET_DATE_COLUMN))
            job_id = enqueue_pipeline_job(conn, title, keywords, scheduled_at)
        except Exception as exc:  # noqa: BLE001
            errors.append(f"row {index} ({title}): {exc}")
            log_event(logger, logging.WARNING, "ingest_row_failed", row=index, topic=title, error=str(exc))
            continue
        if job_id is None:
            skipped_duplicates += 1
            log_event(logger, logging.INFO, "ingest_duplicate_topic", row=index, topic=title)
            continue
        ingested += 1
        job_ids.append(job_id)
        log_event(
            logger,
            logging.INFO,
            "ingest_job_created",
            job_id=job_id,
            topic=title,
            scheduled_at=scheduled_at,
        )

    record_ingest_run(conn, source, processed, ingested, skipped_duplicates, errors)
    log_event(
        logger,
        logging.INFO,
        "ingest_completed",
        source=source,
        processed=processed,
        ingested=ingested,
        skipped_duplicates=skipped_duplicates,
        skipped_filtered=skipped_filtered,
        errors=len(errors),
    )
    return IngestResult(
        processed=processed,
        ingested=ingested,
        skipped_duplicates=skipped_duplicates,
        skipped_filtered=skipped_filtered,
        errors=errors,
        job_ids=job_ids,
    )


def load_rows_from_csv(path: str) -> list[dict[str, str]]:
    """Read an exported content-calendar sheet."""
    try:
        with open(path, "r", encoding="utf-8-sig", newline="") as handle:
            reader = csv.DictReader(handle)
            if not reader.fieldnames or TITLE_COLUMN not in reader.fieldnames:
                raise IngestError(f"{path} has no {TITLE_COLUMN!r} column")
            return [dict(row) for row in reader]
    except OSError as exc:
        raise IngestError(f"Unable to read {path}: {exc}") from exc


def _cell(row: Mapping[str, Any], column: str) -> str:
    value = row.get(column)
    if value is None:
        return ""
    return str(value).strip()
