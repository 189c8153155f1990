"""
Job orchestration.

The orchestrator drives one job through its lifecycle::

    pending -> running -> completed
                       -> rate_limited -> pending (republished after wait_ms)
                       -> retrying     -> pending (republished after backoff)
                       -> failed -> dead_lettered

It is the only component that derives new ``Job`` versions. Every outcome is
settled through the broker (republish or dead-letter) before ``process``
returns, so the consumer can acknowledge the delivery afterwards.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlparse
from uuid import uuid4

import psutil
import structlog

from techtransfer_scraper.adapters import create_adapter, derive_page_job
from techtransfer_scraper.config.config import Config
from techtransfer_scraper.crawler.rate_limiter import RateLimiter
from techtransfer_scraper.engines import EnginePool, create_engine
from techtransfer_scraper.observability import gauge, increment
from techtransfer_scraper.protocols import (
    EngineType,
    ErrorKind,
    InstitutionAdapter,
    InstitutionType,
    Job,
    JobStatus,
    RateLimitConfig,
    ResultSink,
    ScrapeError,
    ScrapeOutcome,
    ScrapeResult,
)
from techtransfer_scraper.queue.broker import Broker
from techtransfer_scraper.recovery import (
    CircuitBreaker,
    CircuitBreakerSettings,
    CircuitOpenError,
    DeadLetterArchive,
    ErrorClassifier,
    RetryPolicy,
)
from techtransfer_scraper.sinks import LoggingResultSink

logger = structlog.get_logger(__name__)

# Kinds that say something about our own infrastructure rather than one site
BREAKER_FAILURE_KINDS = frozenset(
    {ErrorKind.NETWORK_TIMEOUT, ErrorKind.NETWORK_ERROR, ErrorKind.SERVICE_ERROR, ErrorKind.INTERNAL_ERROR}
)

# Adapters that supply default selectors when a job brings none
_DEFAULT_SELECTOR_TYPES = frozenset({InstitutionType.US_UNIVERSITY, InstitutionType.INTERNATIONAL_UNIVERSITY})


@dataclass(frozen=True)
class JobOutcome:
    """How ``process`` settled a job."""

    job: Job
    status: JobStatus
    result: Optional[ScrapeResult] = None
    error: Optional[ScrapeError] = None
    delay: Optional[float] = None  # seconds until the republished job becomes visible


def validate_job(job: Job) -> List[str]:
    """Problems that make a job unrunnable; empty when it is fine."""
    problems: List[str] = []
    parsed = urlparse(job.url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        problems.append(f"URL must be absolute http(s): {job.url!r}")
    if not isinstance(job.config.selectors, Mapping):
        problems.append("selectors must be a mapping of field name to selector")
    else:
        for name, selector in job.config.selectors.items():
            if not str(name).strip() or not str(selector).strip():
                problems.append(f"empty selector entry: {name!r}")
        if not job.config.selectors and job.institution_type not in _DEFAULT_SELECTOR_TYPES:
            problems.append("at least one selector is required")
    if job.config.timeout <= 0:
        problems.append("timeout must be positive")
    if job.retry_config.max_retries < 0:
        problems.append("max_retries must not be negative")
    return problems


def cpu_load_factor() -> float:
    """One-minute load average per CPU; 1.0 means fully busy."""
    try:
        load, _, _ = psutil.getloadavg()
    except (AttributeError, OSError):
        return 1.0
    return load / (psutil.cpu_count() or 1)


class ScraperOrchestrator:
    """
    Runs jobs against the adapters and engines under rate limiting, circuit
    breaking and the retry policy.

    Collaborators are injected; anything omitted is built from ``config``.
    """

    def __init__(
        self,
        config: Config,
        broker: Broker,
        *,
        rate_limiter: Optional[RateLimiter] = None,
        pool: Optional[EnginePool] = None,
        adapters: Optional[Mapping[InstitutionType, InstitutionAdapter]] = None,
        breaker: Optional[CircuitBreaker] = None,
        retry_policy: Optional[RetryPolicy] = None,
        classifier: Optional[ErrorClassifier] = None,
        sink: Optional[ResultSink] = None,
        archive: Optional[DeadLetterArchive] = None,
        load_probe: Optional[Callable[[], float]] = None,
    ):
        self.config = config
        self.broker = broker
        self.classifier = classifier or ErrorClassifier()
        self.rate_limiter = rate_limiter or RateLimiter(config.rate_limits.default.to_config())
        self.pool = pool or EnginePool(
            lambda engine_type: create_engine(engine_type, self.config.engines, self.classifier),
            caps={t: config.engines.pool_size(t) for t in EngineType},
            acquire_timeout=config.engine_pool.acquire_timeout,
            health_check_interval=config.engine_pool.health_check_interval,
        )
        self.adapters: Dict[InstitutionType, InstitutionAdapter] = dict(adapters or {})
        self._injected_adapters = frozenset(self.adapters)
        self._build_adapters()
        self.retry_policy = retry_policy or RetryPolicy.from_settings(config.retry)
        self.sink: ResultSink = sink or LoggingResultSink()
        self.archive = archive
        self.load_probe = load_probe

        self._breaker = breaker
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._in_flight = 0
        self._stats: Dict[str, int] = {s.value: 0 for s in JobStatus}
        self._started = False

    # --- lifecycle ---

    async def start(self) -> None:
        if self._started:
            return
        if self.archive is not None:
            await self.archive.initialize()
        self.pool.start()
        self._started = True
        logger.info("Orchestrator started", per_engine_breakers=self.config.circuit_breaker.per_engine)

    async def shutdown(self) -> None:
        """Terminate every engine and close the archive."""
        await self.pool.cleanup_all()
        if self.archive is not None:
            await self.archive.close()
        self._started = False
        logger.info("Orchestrator stopped", stats=self._stats)

    # --- collaborators ---

    def _build_adapters(self) -> None:
        for institution_type in InstitutionType:
            if institution_type not in self._injected_adapters:
                self.adapters[institution_type] = create_adapter(
                    institution_type, self.rate_limiter, self.config, self.classifier
                )

    def _breaker_settings(self) -> CircuitBreakerSettings:
        cb = self.config.circuit_breaker
        return CircuitBreakerSettings(
            error_threshold_percentage=cb.error_threshold_percentage,
            rolling_window_seconds=cb.rolling_window_seconds,
            minimum_calls=cb.minimum_calls,
            reset_timeout_seconds=cb.reset_timeout_seconds,
            call_timeout_seconds=cb.call_timeout_seconds,
        )

    def reconfigure(self, config: Config) -> None:
        """
        Apply reloaded settings to the live orchestrator.

        Adapters, the retry policy and the default rate limit are rebuilt;
        breakers keep their state and take the new thresholds. Per-institution
        limits follow on the next acquire. Engines created from now on use
        the new engine settings.
        """
        per_engine_changed = config.circuit_breaker.per_engine != self.config.circuit_breaker.per_engine
        self.config = config
        self.retry_policy = RetryPolicy.from_settings(config.retry)
        self.rate_limiter.default_config = config.rate_limits.default.to_config()
        self._build_adapters()
        if per_engine_changed:
            self._breakers.clear()
        settings = self._breaker_settings()
        for breaker in self._breakers.values():
            breaker.settings = settings
        logger.info("Orchestrator reconfigured", breakers=len(self._breakers))

    def breaker_for(self, engine_type: EngineType) -> CircuitBreaker:
        if self._breaker is not None:
            return self._breaker
        name = engine_type.value if self.config.circuit_breaker.per_engine else "orchestrator"
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name, self._breaker_settings())
            self._breakers[name] = breaker
        return breaker

    def engine_type_for(self, job: Job) -> EngineType:
        return job.engine_hint or self.config.engine_defaults.for_institution(job.institution_type)

    def rate_limit_for(self, job: Job, adapter: InstitutionAdapter) -> RateLimitConfig:
        base = job.rate_limit_config or self.config.rate_limits.for_institution(
            job.institution_type, job.institution_key
        )
        return adapter.rate_limit_config(job, base)

    # --- processing ---

    async def process(self, job: Job) -> JobOutcome:
        """Run one job to a settled outcome. Never raises for a failing job."""
        with structlog.contextvars.bound_contextvars(
            job_id=job.id,
            correlation_id=uuid4().hex,
            institution_type=job.institution_type.value,
        ):
            outcome = await self._process(job)
        self._stats[outcome.status.value] += 1
        increment(
            "jobs_processed",
            labels={"institution_type": job.institution_type.value, "status": outcome.status.value},
        )
        return outcome

    async def _process(self, job: Job) -> JobOutcome:
        problems = validate_job(job)
        if problems:
            error = self.classifier.make_error(
                ErrorKind.VALIDATION_ERROR, "; ".join(problems), job, metadata={"stage": "pre-execution"}
            )
            logger.warning("Rejected invalid job", problems=problems)
            return await self._finalize_failure(job, error)

        adapter = self.adapters[job.institution_type]
        engine_type = self.engine_type_for(job)
        breaker = self.breaker_for(engine_type)
        key = job.institution_key

        # Admission comes before the token so a short-circuited job never spends one
        try:
            trial = await breaker.admit()
        except CircuitOpenError as e:
            return await self._requeue_for_breaker(job, e)

        rate_config = self.rate_limit_for(job, adapter)
        try:
            decision = await self.rate_limiter.try_acquire(key, rate_config)
        except BaseException:
            await breaker.abandon(trial)
            raise
        if not decision.allowed:
            await breaker.abandon(trial)
            delay = decision.wait_ms / 1000.0
            increment("jobs_rate_limited", labels={"institution_type": job.institution_type.value})
            logger.info("Rate limited, requeueing", institution=key, wait_ms=decision.wait_ms)
            await self.broker.publish(job.with_status(JobStatus.PENDING), delay=delay)
            return JobOutcome(job.with_status(JobStatus.RATE_LIMITED), JobStatus.RATE_LIMITED, delay=delay)

        running = job.with_status(JobStatus.RUNNING, rate_limit_config=rate_config)
        started = time.monotonic()
        self._set_in_flight(+1)
        try:
            result, error = await breaker.call(
                lambda: self._execute(adapter, engine_type, running),
                is_failure=lambda outcome: outcome[1] is not None and outcome[1].kind in BREAKER_FAILURE_KINDS,
                admitted=trial,
            )
        except Exception as e:
            result, error = None, self.classifier.classify(e, running, metadata={"engine": engine_type.value})
        finally:
            self._set_in_flight(-1)

        if error is None and result is not None:
            await self.rate_limiter.report_outcome(key, False)
            return await self._complete(job, result, time.monotonic() - started)

        if error is None:
            error = self.classifier.make_error(
                ErrorKind.INTERNAL_ERROR, "Adapter returned neither a result nor an error", running
            )
        if error.kind is ErrorKind.RATE_LIMITED:
            await self.rate_limiter.report_outcome(key, True)
            error = replace(error, rate_limit_snapshot=self.rate_limiter.snapshot(key))
        else:
            await self.rate_limiter.report_outcome(key, False)
        return await self._handle_failure(job, error)

    async def _execute(self, adapter: InstitutionAdapter, engine_type: EngineType, job: Job) -> ScrapeOutcome:
        async with self.pool.lease(engine_type, job) as engine:
            return await adapter.scrape(job, engine)

    async def _complete(self, job: Job, result: ScrapeResult, duration: float) -> JobOutcome:
        completed = job.with_status(JobStatus.COMPLETED)
        await self.sink.log_success(result)

        for page in result.deferred_pages:
            child = derive_page_job(job, page.page_number)
            await self.broker.publish(child, delay=page.wait_ms / 1000.0)

        logger.info(
            "Job completed",
            success=result.success,
            duration=round(duration, 3),
            pages=result.metadata.get("pages", 1),
            deferred_pages=len(result.deferred_pages),
        )
        return JobOutcome(completed, JobStatus.COMPLETED, result=result)

    async def _handle_failure(self, job: Job, error: ScrapeError) -> JobOutcome:
        increment(
            "jobs_failed",
            labels={"institution_type": job.institution_type.value, "error_kind": error.kind.value},
        )
        system_load = self.load_probe() if self.load_probe is not None else None
        decision = self.retry_policy.decide(error, job, system_load=system_load)
        if not decision.retry:
            logger.warning("Job failed", kind=error.kind.value, reason=decision.reason, error=error.message)
            return await self._finalize_failure(job, error)

        retrying = job.with_status(JobStatus.RETRYING, retry_count=job.retry_count + 1)
        increment("jobs_retried", labels={"institution_type": job.institution_type.value})
        logger.info(
            "Retrying job",
            kind=error.kind.value,
            retry_count=retrying.retry_count,
            max_retries=job.retry_config.max_retries,
            delay=round(decision.delay, 3),
        )
        await self.broker.publish(retrying.with_status(JobStatus.PENDING), delay=decision.delay)
        return JobOutcome(retrying, JobStatus.RETRYING, error=error, delay=decision.delay)

    async def _requeue_for_breaker(self, job: Job, exc: CircuitOpenError) -> JobOutcome:
        """Circuit open: push the job back without counting an attempt against it."""
        error = self.classifier.make_error(
            ErrorKind.SERVICE_ERROR,
            "Circuit breaker open",
            job,
            metadata={"breaker": exc.name, "retry_in": round(exc.retry_in, 3)},
        )
        delay = max(exc.retry_in, 0.0)
        logger.warning("Circuit open, requeueing", breaker=exc.name, delay=round(delay, 3))
        await self.broker.publish(job.with_status(JobStatus.PENDING), delay=delay)
        return JobOutcome(job.with_status(JobStatus.PENDING), JobStatus.PENDING, error=error, delay=delay)

    async def _finalize_failure(self, job: Job, error: ScrapeError) -> JobOutcome:
        failed = job.with_status(JobStatus.FAILED)
        await self.sink.log_error(error)
        await self.broker.publish_dead_letter(failed, error)
        if self.archive is not None:
            await self.archive.record(failed, error)
        increment("jobs_dead_lettered", labels={"institution_type": job.institution_type.value})
        logger.info("Job dead-lettered", kind=error.kind.value, attempts=job.retry_count + 1)
        return JobOutcome(failed.with_status(JobStatus.DEAD_LETTERED), JobStatus.DEAD_LETTERED, error=error)

    def _set_in_flight(self, delta: int) -> None:
        self._in_flight += delta
        gauge("jobs_in_flight", self._in_flight)

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def get_stats(self) -> Dict[str, Any]:
        breakers: List[Tuple[str, CircuitBreaker]] = list(self._breakers.items())
        if self._breaker is not None:
            breakers.append((self._breaker.name, self._breaker))
        return {
            "jobs": dict(self._stats),
            "in_flight": self._in_flight,
            "rate_limiter": self.rate_limiter.get_stats(),
            "pool": self.pool.get_stats(),
            "breakers": {name: b.get_state() for name, b in breakers},
        }
