"""
Core data model and component contracts for the scraping engine.

The value types here cross every boundary in the system: the broker hands
``Job`` snapshots to the orchestrator, engines produce ``RawData``, adapters
enrich it into ``ScrapeResult`` and every failure is reported as an immutable
``ScrapeError``. Jobs and results are frozen; state transitions produce new
copies through ``dataclasses.replace``.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Protocol, Tuple, runtime_checkable
from urllib.parse import urlparse


class InstitutionType(str, Enum):
    """Institution classes served by dedicated adapters and queues."""

    US_UNIVERSITY = "US_UNIVERSITY"
    INTERNATIONAL_UNIVERSITY = "INTERNATIONAL_UNIVERSITY"
    FEDERAL_LAB = "FEDERAL_LAB"


class EngineType(str, Enum):
    """Scraping backends."""

    STATIC = "static"
    RENDER = "render"
    CRAWL = "crawl"


class JobStatus(str, Enum):
    """Job lifecycle states driven by the orchestrator."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    RATE_LIMITED = "rate_limited"
    RETRYING = "retrying"
    DEAD_LETTERED = "dead_lettered"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.DEAD_LETTERED)


class ErrorSeverity(Enum):
    """Error severity levels for structured error handling."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorKind(str, Enum):
    """Failure taxonomy shared by every engine and adapter."""

    NETWORK_TIMEOUT = "NETWORK_TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    RATE_LIMITED = "RATE_LIMITED"
    PARSE_ERROR = "PARSE_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    AUTHORIZATION_ERROR = "AUTHORIZATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    SERVICE_ERROR = "SERVICE_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"

    @property
    def is_retryable(self) -> bool:
        return self in _RETRYABLE_KINDS

    @property
    def status_code(self) -> int:
        """HTTP-like status used only for logging."""
        return _KIND_STATUS_CODES[self]

    @property
    def severity(self) -> ErrorSeverity:
        return _KIND_SEVERITY[self]


_RETRYABLE_KINDS = frozenset(
    {ErrorKind.NETWORK_TIMEOUT, ErrorKind.NETWORK_ERROR, ErrorKind.RATE_LIMITED, ErrorKind.SERVICE_ERROR}
)

_KIND_STATUS_CODES: Dict[ErrorKind, int] = {
    ErrorKind.NETWORK_TIMEOUT: 504,
    ErrorKind.NETWORK_ERROR: 503,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.PARSE_ERROR: 422,
    ErrorKind.VALIDATION_ERROR: 400,
    ErrorKind.AUTHENTICATION_ERROR: 401,
    ErrorKind.AUTHORIZATION_ERROR: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.SERVICE_ERROR: 503,
    ErrorKind.INTERNAL_ERROR: 500,
}

_KIND_SEVERITY: Dict[ErrorKind, ErrorSeverity] = {
    ErrorKind.NETWORK_TIMEOUT: ErrorSeverity.MEDIUM,
    ErrorKind.NETWORK_ERROR: ErrorSeverity.MEDIUM,
    ErrorKind.RATE_LIMITED: ErrorSeverity.LOW,
    ErrorKind.PARSE_ERROR: ErrorSeverity.MEDIUM,
    ErrorKind.VALIDATION_ERROR: ErrorSeverity.LOW,
    ErrorKind.AUTHENTICATION_ERROR: ErrorSeverity.HIGH,
    ErrorKind.AUTHORIZATION_ERROR: ErrorSeverity.HIGH,
    ErrorKind.NOT_FOUND: ErrorSeverity.LOW,
    ErrorKind.SERVICE_ERROR: ErrorSeverity.MEDIUM,
    ErrorKind.INTERNAL_ERROR: ErrorSeverity.CRITICAL,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Job configuration ---


@dataclass(frozen=True)
class RateLimitConfig:
    """Token bucket parameters for one institution."""

    requests_per_second: float = 1.0
    burst_limit: int = 2
    cooldown_period: float = 300.0  # seconds

    def __post_init__(self) -> None:
        if self.requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")
        if self.burst_limit < 1:
            raise ValueError("burst_limit must be at least 1")
        if self.cooldown_period < 0:
            raise ValueError("cooldown_period must not be negative")


@dataclass(frozen=True)
class RetryConfig:
    """Retry budget and backoff curve for one job (delays in seconds)."""

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_factor: float = 2.0


@dataclass(frozen=True)
class PaginationConfig:
    """How multi-page listings are discovered and addressed."""

    enabled: bool = True
    page_param: str = "page"
    max_pages: int = 20
    link_selector: Optional[str] = None
    page_number: Optional[int] = None  # set on per-page child jobs


@dataclass(frozen=True)
class ScrapeConfig:
    """Per-job extraction settings supplied by the config collaborator."""

    selectors: Mapping[str, str] = field(default_factory=dict)
    optional_selectors: Mapping[str, str] = field(default_factory=dict)  # zero matches tolerated
    timeout: float = 30.0
    user_agent: Optional[str] = None
    headers: Mapping[str, str] = field(default_factory=dict)
    pagination: Optional[PaginationConfig] = None
    encoding: Optional[str] = None  # fallback when the response declares no charset


@dataclass(frozen=True)
class ValidationRules:
    required: Tuple[str, ...] = ()
    patterns: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Job:
    """A single scrape request. Only the orchestrator derives new versions of it."""

    id: str
    url: str
    institution_type: InstitutionType
    config: ScrapeConfig = field(default_factory=ScrapeConfig)
    engine_hint: Optional[EngineType] = None
    rate_limit_config: Optional[RateLimitConfig] = None
    retry_config: RetryConfig = field(default_factory=RetryConfig)
    validation_rules: ValidationRules = field(default_factory=ValidationRules)
    status: JobStatus = JobStatus.PENDING
    retry_count: int = 0
    priority: int = 5
    institution_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def institution_key(self) -> str:
        """Key used for per-institution rate limiting."""
        if self.institution_id:
            return self.institution_id
        return (urlparse(self.url).hostname or self.url).lower()

    def with_status(self, status: JobStatus, **changes: Any) -> Job:
        return replace(self, status=status, **changes)

    def snapshot(self) -> Dict[str, Any]:
        """Loggable view of the job with sensitive headers redacted."""
        from techtransfer_scraper.recovery.errors import redact

        return {
            "id": self.id,
            "url": self.url,
            "institution_type": self.institution_type.value,
            "engine_hint": self.engine_hint.value if self.engine_hint else None,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "max_retries": self.retry_config.max_retries,
            "priority": self.priority,
            "institution_key": self.institution_key,
            "selectors": dict(self.config.selectors),
            "headers": redact(dict(self.config.headers)),
        }


# --- Results and errors ---


@dataclass(frozen=True)
class RateLimitSnapshot:
    """Point-in-time copy of one institution's bucket, attached to errors."""

    institution_key: str
    tokens_available: float
    burst_count: int
    burst_limit: int
    requests_per_second: float
    cooldown_until: Optional[float] = None
    in_cooldown: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "institution_key": self.institution_key,
            "tokens_available": round(self.tokens_available, 3),
            "burst_count": self.burst_count,
            "burst_limit": self.burst_limit,
            "requests_per_second": self.requests_per_second,
            "cooldown_until": self.cooldown_until,
            "in_cooldown": self.in_cooldown,
        }


@dataclass(frozen=True)
class PerformanceMetrics:
    """Timing for one scrape; immutable like the result that carries it."""

    started_at: float = 0.0
    finished_at: float = 0.0
    pages_fetched: int = 0
    bytes_received: int = 0
    engine: Optional[str] = None

    @property
    def duration(self) -> float:
        return max(0.0, self.finished_at - self.started_at)


@dataclass(frozen=True)
class ValidationIssue:
    field: str
    rule: str
    message: str


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool = True
    errors: Tuple[ValidationIssue, ...] = ()
    warnings: Tuple[ValidationIssue, ...] = ()


@dataclass(frozen=True)
class RawPage:
    """One fetched document after selector extraction."""

    url: str
    final_url: str
    status: int
    fields: Mapping[str, Any]
    content: str = ""
    content_type: str = "text/html"
    headers: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RawData:
    """Engine output: one or more pages of extracted fields."""

    engine: EngineType
    pages: Tuple[RawPage, ...]
    metrics: PerformanceMetrics = field(default_factory=PerformanceMetrics)
    skipped_urls: Tuple[str, ...] = ()

    @property
    def fields(self) -> Mapping[str, Any]:
        return self.pages[0].fields if self.pages else {}

    @property
    def content(self) -> str:
        return self.pages[0].content if self.pages else ""


@dataclass(frozen=True)
class DeferredPage:
    """A page of a paginated job postponed because its institution had no tokens."""

    page_number: int
    url: str
    wait_ms: int


@dataclass(frozen=True)
class ScrapeResult:
    """Successful (possibly partially valid) outcome of a job."""

    job_id: str
    url: str
    extracted_fields: Mapping[str, Any]
    performance_metrics: PerformanceMetrics
    validation_result: ValidationResult
    success: bool
    items: Tuple[Mapping[str, Any], ...] = ()
    raw_snapshot_ref: Optional[str] = None
    deferred_pages: Tuple[DeferredPage, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def enrich(self, **changes: Any) -> ScrapeResult:
        """Copy-on-enrich: adapters never mutate a result in place."""
        return replace(self, **changes)


@dataclass(frozen=True)
class ScrapeError:
    """Typed failure value returned across engine and adapter boundaries."""

    kind: ErrorKind
    message: str
    job_id: str
    url: str
    retry_attempt: int = 0
    rate_limit_snapshot: Optional[RateLimitSnapshot] = None
    recovery_suggestions: Tuple[str, ...] = ()
    status_code: Optional[int] = None
    retry_after: Optional[float] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def retryable(self) -> bool:
        return self.kind.is_retryable

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "job_id": self.job_id,
            "url": self.url,
            "retry_attempt": self.retry_attempt,
            "status_code": self.status_code if self.status_code is not None else self.kind.status_code,
            "severity": self.kind.severity.value,
            "retryable": self.retryable,
            "retry_after": self.retry_after,
            "rate_limit_snapshot": self.rate_limit_snapshot.to_dict() if self.rate_limit_snapshot else None,
            "recovery_suggestions": list(self.recovery_suggestions),
            "metadata": dict(self.metadata),
            "timestamp": self.timestamp.isoformat(),
        }


ScrapeOutcome = Tuple[Optional[ScrapeResult], Optional[ScrapeError]]
EngineOutcome = Tuple[Optional[RawData], Optional[ScrapeError]]


# --- Component contracts ---


@runtime_checkable
class ScrapeEngine(Protocol):
    """A scraping backend. Implementations never raise from ``scrape``."""

    engine_type: EngineType

    async def initialize(self) -> None:
        ...

    async def scrape(self, job: Job) -> EngineOutcome:
        ...

    async def cleanup(self) -> None:
        ...

    async def is_healthy(self) -> bool:
        ...


@runtime_checkable
class InstitutionAdapter(Protocol):
    """Institution-specific pre-checks and post-processing around an engine."""

    institution_type: InstitutionType

    def rate_limit_config(self, job: Job, base: RateLimitConfig) -> RateLimitConfig:
        ...

    async def scrape(self, job: Job, engine: ScrapeEngine) -> ScrapeOutcome:
        ...


class ResultSink(Protocol):
    """Persistence collaborator: the only two writes the core performs."""

    async def log_success(self, result: ScrapeResult) -> None:
        ...

    async def log_error(self, error: ScrapeError) -> None:
        ...

