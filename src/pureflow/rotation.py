from __future__ import annotations

import logging

from .config import Config
from .models import RotationSuggestion, RotationSummary
from .storage import (
    deactivate_link,
    find_replacement_link,
    list_rotation_candidates,
    record_link_rotation,
)
from .utils import log_event

ROTATED_REASON = "rotated"


def rotate_underperforming(
    conn,
    config: Config,
    *,
    logger: logging.Logger | None = None,
) -> RotationSummary:
    """Deactivate the weakest active links that have a better sibling.

    Candidates are the lowest-CTR, least recently checked active links.
    A candidate is rotated out only when another active link for a product
    in the same category has a strictly higher CTR. Pages that embed the
    old link are not edited; the replacement is recorded in
    ``link_rotations`` for manual follow-up.
    """
    logger = logger or logging.getLogger("pureflow.rotation")
    candidates = list_rotation_candidates(conn, config.rotation.batch_size)
    suggestions: list[RotationSuggestion] = []
    skipped = 0

    for candidate in candidates:
        replacement = find_replacement_link(
            conn, candidate["category"], candidate["id"], candidate["ctr_14d"]
        )
        if not replacement:
            skipped += 1
            log_event(
                logger,
                logging.DEBUG,
                "rotation_no_replacement",
                link_id=candidate["id"],
                category=candidate["category"],
                ctr_14d=candidate["ctr_14d"],
            )
            continue
        if not deactivate_link(conn, candidate["id"], ROTATED_REASON):
            skipped += 1
            continue
        suggestion = RotationSuggestion(
            link_id=candidate["id"],
            replacement_link_id=replacement["id"],
            replacement_url=replacement["original_url"],
            category=candidate["category"],
        )
        record_link_rotation(conn, suggestion)
        suggestions.append(suggestion)
        log_event(
            logger,
            logging.INFO,
            "link_rotated",
            link_id=candidate["id"],
            replacement_link_id=replacement["id"],
            replacement_url=replacement["original_url"],
            ctr_14d=candidate["ctr_14d"],
            replacement_ctr_14d=replacement["ctr_14d"],
        )

    summary = RotationSummary(
        examined=len(candidates),
        rotated=len(suggestions),
        skipped=skipped,
        suggestions=suggestions,
    )
    log_event(
        logger,
        logging.INFO,
        "rotation_completed",
        examined=summary.examined,
        rotated=summary.rotated,
        skipped=summary.skipped,
    )
    return summary
