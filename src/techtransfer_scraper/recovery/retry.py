"""
Retry decisions and backoff delays for failed jobs.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Callable, Dict, Mapping, Optional

from techtransfer_scraper.protocols import ErrorKind, Job, RetryConfig, ScrapeError

if TYPE_CHECKING:
    from techtransfer_scraper.config.config import RetrySettings


@dataclass(frozen=True)
class RetryDecision:
    """What the orchestrator should do with a failed job."""

    retry: bool
    delay: float = 0.0  # seconds
    reason: str = ""


@dataclass(frozen=True)
class KindRetry:
    """Bounded retries for a kind outside the retryable set."""

    max_retries: int
    backoff_factor: float


class RetryPolicy:
    """
    Exponential backoff with jitter, capped at ``max_delay``.

    delay = min(initial_delay * backoff_factor ** retry_count * load + jitter, max_delay)

    where ``jitter`` is uniform in ``[0, jitter_max]`` and ``load`` is the
    optional system-load factor clamped to ``[1, max_load_factor]``.

    Only transient kinds are retried by default. ``per_kind`` grants a few
    extra attempts to other kinds (a parse failure may be a page caught
    mid-deploy); the job's own ``max_retries`` still caps them.
    """

    def __init__(
        self,
        jitter_max: float = 1.0,
        max_load_factor: float = 2.0,
        rng: Optional[Callable[[float, float], float]] = None,
        per_kind: Optional[Mapping[ErrorKind, KindRetry]] = None,
    ) -> None:
        self.jitter_max = jitter_max
        self.max_load_factor = max_load_factor
        self._uniform = rng or random.uniform
        self.per_kind: Dict[ErrorKind, KindRetry] = dict(per_kind or {})

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryPolicy:
        return cls(
            jitter_max=settings.jitter_max,
            max_load_factor=settings.max_load_factor,
            per_kind={
                kind: KindRetry(s.max_retries, s.backoff_factor) for kind, s in settings.per_kind.items()
            },
        )

    def retry_budget(self, kind: ErrorKind, job: Job) -> int:
        """Retries allowed for ``kind`` on ``job``; 0 means never."""
        if kind.is_retryable:
            return job.retry_config.max_retries
        override = self.per_kind.get(kind)
        if override is None:
            return 0
        return min(override.max_retries, job.retry_config.max_retries)

    def is_retryable(
        self,
        error: ScrapeError,
        job: Job,
        *,
        system_overloaded: bool = False,
        circuit_open: bool = False,
    ) -> bool:
        if system_overloaded or circuit_open:
            return False
        return job.retry_count < self.retry_budget(error.kind, job)

    def compute_delay(self, retry_count: int, config: RetryConfig, system_load: Optional[float] = None) -> float:
        load = 1.0
        if system_load is not None:
            load = min(max(system_load, 1.0), self.max_load_factor)
        exponential = config.initial_delay * (config.backoff_factor ** max(retry_count, 0))
        jitter = self._uniform(0.0, self.jitter_max) if self.jitter_max > 0 else 0.0
        return min(exponential * load + jitter, config.max_delay)

    def decide(
        self,
        error: ScrapeError,
        job: Job,
        *,
        system_load: Optional[float] = None,
        system_overloaded: bool = False,
    ) -> RetryDecision:
        budget = self.retry_budget(error.kind, job)
        if budget == 0:
            return RetryDecision(retry=False, reason=f"non-retryable {error.kind.value}")
        if job.retry_count >= budget:
            return RetryDecision(retry=False, reason="retries exhausted")
        if system_overloaded:
            return RetryDecision(retry=False, reason="system overloaded")

        config = job.retry_config
        override = self.per_kind.get(error.kind)
        if override is not None and not error.kind.is_retryable:
            config = replace(config, backoff_factor=override.backoff_factor)
        delay = self.compute_delay(job.retry_count, config, system_load)
        if error.kind is ErrorKind.RATE_LIMITED and error.retry_after is not None:
            # The server's own hint wins when it asks for longer
            delay = min(max(delay, error.retry_after), config.max_delay)
        return RetryDecision(retry=True, delay=delay, reason=error.kind.value)
