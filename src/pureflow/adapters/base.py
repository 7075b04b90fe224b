from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


class AdapterError(RuntimeError):
    pass


class AdapterTimeoutError(AdapterError):
    pass


@dataclass(frozen=True)
class GeneratedContent:
    title: str
    body: str
    excerpt: str


@dataclass(frozen=True)
class OptimizedContent:
    title: str
    body: str
    seo_meta: dict[str, Any] = field(default_factory=dict)
    suggested_placements: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class PublishedPost:
    external_post_id: str
    url: str | None = None


@dataclass(frozen=True)
class CheckResult:
    status_code: int
    response_time_ms: int


class Generator(Protocol):
    def generate(self, topic: str, keywords: list[str], timeout: float) -> GeneratedContent:
        ...


class DraftStore(Protocol):
    def create_draft(self, content: GeneratedContent, timeout: float) -> str:
        ...

    def update_article(self, article_id: str, fields: dict[str, Any], timeout: float) -> None:
        ...


class Optimizer(Protocol):
    def optimize(self, article_id: str, keywords: list[str], timeout: float) -> OptimizedContent:
        ...


class PublishTarget(Protocol):
    name: str

    def publish(self, article_id: str, content: OptimizedContent, timeout: float) -> PublishedPost:
        ...


class ReachabilityChecker(Protocol):
    def check(self, url: str, timeout: float) -> CheckResult:
        ...


@dataclass(frozen=True)
class PipelineServices:
    generator: Generator
    draft_store: DraftStore
    optimizer: Optimizer
    targets: list[PublishTarget]
