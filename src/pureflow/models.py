from __future__ import annotations

from dataclasses import dataclass, field

from .lifecycle import JobStatus


@dataclass(frozen=True)
class PipelineJob:
    id: str
    topic: str
    target_keywords: list[str]
    status: JobStatus
    attempts: int
    scheduled_at: str
    last_error: str | None
    published_article_id: str | None
    result: dict[str, object] | None
    locked_by: str | None
    locked_at: str | None
    started_at: str | None
    finished_at: str | None
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class AffiliateProduct:
    id: int
    name: str
    category: str | None


@dataclass(frozen=True)
class AffiliateLink:
    id: int
    product_id: int
    original_url: str
    short_code: str
    is_active: bool
    ctr_14d: float
    tracking_params: dict[str, object]
    last_checked_at: str | None
    deactivated_reason: str | None
    created_at: str


@dataclass(frozen=True)
class LinkHealthObservation:
    id: int | None
    link_id: int
    checked_at: str
    status_code: int
    is_working: bool
    is_slow: bool
    response_time_ms: int | None
    consecutive_failures: int
    error_message: str | None


@dataclass(frozen=True)
class PublishOutcome:
    """Result of one publish target: either ``ok`` with a post ref, or an error."""

    target: str
    ok: bool
    external_post_id: str | None = None
    url: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class ProcessResult:
    outcome: str
    job_id: str | None = None
    status: JobStatus | None = None
    attempts: int = 0
    published_article_id: str | None = None
    error: str | None = None
    publish_outcomes: list[PublishOutcome] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return any(not outcome.ok for outcome in self.publish_outcomes)


@dataclass(frozen=True)
class ProbeSummary:
    total: int
    working: int
    broken: int
    slow: int
    recently_fixed: int
    aborted: bool = False
    deactivated: list[int] = field(default_factory=list)


@dataclass(frozen=True)
class RotationSuggestion:
    link_id: int
    replacement_link_id: int
    replacement_url: str
    category: str | None


@dataclass(frozen=True)
class RotationSummary:
    examined: int
    rotated: int
    skipped: int
    suggestions: list[RotationSuggestion]


@dataclass(frozen=True)
class IngestResult:
    processed: int
    ingested: int
    skipped_duplicates: int
    skipped_filtered: int
    errors: list[str]
    job_ids: list[str]
