from .base import (
    AdapterError,
    AdapterTimeoutError,
    CheckResult,
    DraftStore,
    GeneratedContent,
    Generator,
    OptimizedContent,
    Optimizer,
    PipelineServices,
    PublishedPost,
    PublishTarget,
    ReachabilityChecker,
)

__all__ = [
    "AdapterError",
    "AdapterTimeoutError",
    "CheckResult",
    "DraftStore",
    "GeneratedContent",
    "Generator",
    "OptimizedContent",
    "Optimizer",
    "PipelineServices",
    "PublishedPost",
    "PublishTarget",
    "ReachabilityChecker",
]
