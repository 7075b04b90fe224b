"""Retry strategies for failed pipeline stages.

A strategy answers one question: given the number of attempts a job has
already consumed, how many seconds until it may run again, or ``None``
when the job should be marked failed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


class RetryPolicy(Protocol):
    name: str

    def next_delay(self, attempts: int) -> int | None:
        ...


@dataclass(frozen=True)
class NoRetry:
    name: str = "none"

    def next_delay(self, attempts: int) -> int | None:
        return None


@dataclass(frozen=True)
class FixedBackoff:
    delay_seconds: int
    max_attempts: int
    name: str = "fixed"

    def next_delay(self, attempts: int) -> int | None:
        if attempts >= self.max_attempts:
            return None
        return self.delay_seconds


@dataclass(frozen=True)
class ExponentialBackoff:
    base_delay_seconds: int
    max_delay_seconds: int
    max_attempts: int
    name: str = "exponential"

    def next_delay(self, attempts: int) -> int | None:
        if attempts >= self.max_attempts:
            return None
        delay = self.base_delay_seconds * (2 ** max(attempts - 1, 0))
        return min(delay, self.max_delay_seconds)


def build_retry_policy(
    strategy: str,
    *,
    max_attempts: int,
    base_delay_seconds: int,
    max_delay_seconds: int,
) -> RetryPolicy:
    if strategy == "none":
        return NoRetry()
    if strategy == "fixed":
        return FixedBackoff(delay_seconds=base_delay_seconds, max_attempts=max_attempts)
    if strategy == "exponential":
        return ExponentialBackoff(
            base_delay_seconds=base_delay_seconds,
            max_delay_seconds=max_delay_seconds,
            max_attempts=max_attempts,
        )
    raise ValueError(f"unsupported retry strategy {strategy}")
