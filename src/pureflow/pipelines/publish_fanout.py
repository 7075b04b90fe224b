from __future__ import annotations

import logging
from typing import Iterable

from ..adapters.base import OptimizedContent, PublishTarget
from ..models import PublishOutcome
from ..runctx import RunContext
from ..utils import log_event


def publish_to_targets(
    targets: Iterable[PublishTarget],
    article_id: str,
    content: OptimizedContent,
    ctx: RunContext,
    timeout_seconds: float,
    logger: logging.Logger,
) -> list[PublishOutcome]:
    """Publish to every target in order; one target's failure never skips the next."""
    outcomes: list[PublishOutcome] = []
    for target in targets:
        name = getattr(target, "name", target.__class__.__name__)
        try:
            post = target.publish(article_id, content, ctx.timeout_for(timeout_seconds))
        except Exception as exc:  # noqa: BLE001
            log_event(
                logger,
                logging.WARNING,
                "publish_target_failed",
                article_id=article_id,
                target=name,
                error=str(exc),
            )
            outcomes.append(PublishOutcome(target=name, ok=False, error=str(exc) or exc.__class__.__name__))
            continue
        log_event(
            logger,
            logging.INFO,
            "publish_target_succeeded",
            article_id=article_id,
            target=name,
            external_post_id=post.external_post_id,
        )
        outcomes.append(
            PublishOutcome(
                target=name,
                ok=True,
                external_post_id=post.external_post_id,
                url=post.url,
            )
        )
    return outcomes


def summarize_outcomes(outcomes: list[PublishOutcome]) -> dict[str, object]:
    targets = {}
    for outcome in outcomes:
        if outcome.ok:
            targets[outcome.target] = {
                "ok": True,
                "external_post_id": outcome.external_post_id,
                "url": outcome.url,
            }
        else:
            targets[outcome.target] = {"ok": False, "error": outcome.error}
    return {
        "targets": targets,
        "degraded": any(not outcome.ok for outcome in outcomes),
    }


def external_post_ids(outcomes: list[PublishOutcome]) -> dict[str, str]:
    return {
        outcome.target: outcome.external_post_id
        for outcome in outcomes
        if outcome.ok and outcome.external_post_id
    }
