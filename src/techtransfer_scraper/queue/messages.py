"""
Broker wire format.

Job messages are camelCase JSON. The pydantic models below validate incoming
bodies and convert to and from the frozen ``Job`` dataclass used internally.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from techtransfer_scraper.protocols import (
    EngineType,
    InstitutionType,
    Job,
    JobStatus,
    PaginationConfig,
    RateLimitConfig,
    RetryConfig,
    ScrapeConfig,
    ScrapeError,
    ValidationRules,
    utcnow,
)
from techtransfer_scraper.recovery.errors import redact


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def dump(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class PaginationMessage(WireModel):
    enabled: bool = True
    page_param: str = "page"
    max_pages: int = Field(default=20, ge=1)
    link_selector: Optional[str] = None
    page_number: Optional[int] = Field(default=None, ge=1)


class ScrapeConfigMessage(WireModel):
    selectors: Dict[str, str] = Field(default_factory=dict)
    optional_selectors: Dict[str, str] = Field(default_factory=dict)
    timeout: float = Field(default=30.0, gt=0)
    user_agent: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    pagination: Optional[PaginationMessage] = None
    encoding: Optional[str] = None


class RateLimitMessage(WireModel):
    requests_per_second: float = Field(gt=0)
    burst_limit: int = Field(ge=1)
    cooldown_period: float = Field(ge=0)


class RetryMessage(WireModel):
    max_retries: int = Field(default=3, ge=0)
    initial_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1)


class ValidationRulesMessage(WireModel):
    required: List[str] = Field(default_factory=list)
    patterns: Dict[str, str] = Field(default_factory=dict)


class JobMessage(WireModel):
    """A job as published on the broker."""

    id: str = Field(min_length=1)
    url: str
    institution_type: InstitutionType
    engine_hint: Optional[EngineType] = None
    config: ScrapeConfigMessage = Field(default_factory=ScrapeConfigMessage)
    rate_limit_config: Optional[RateLimitMessage] = None
    retry_config: RetryMessage = Field(default_factory=RetryMessage)
    retry_count: int = Field(default=0, ge=0)
    validation_rules: ValidationRulesMessage = Field(default_factory=ValidationRulesMessage)
    priority: int = Field(default=5, ge=0, le=255)
    institution_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    def to_job(self) -> Job:
        cfg = self.config
        pagination = None
        if cfg.pagination is not None:
            pagination = PaginationConfig(**cfg.pagination.model_dump())
        rate_limit = None
        if self.rate_limit_config is not None:
            rate_limit = RateLimitConfig(**self.rate_limit_config.model_dump())
        return Job(
            id=self.id,
            url=self.url,
            institution_type=self.institution_type,
            config=ScrapeConfig(
                selectors=dict(cfg.selectors),
                optional_selectors=dict(cfg.optional_selectors),
                timeout=cfg.timeout,
                user_agent=cfg.user_agent,
                headers=dict(cfg.headers),
                pagination=pagination,
                encoding=cfg.encoding,
            ),
            engine_hint=self.engine_hint,
            rate_limit_config=rate_limit,
            retry_config=RetryConfig(**self.retry_config.model_dump()),
            validation_rules=ValidationRules(
                required=tuple(self.validation_rules.required),
                patterns=dict(self.validation_rules.patterns),
            ),
            status=JobStatus.PENDING,
            retry_count=self.retry_count,
            priority=self.priority,
            institution_id=self.institution_id,
            created_at=self.created_at,
        )

    @classmethod
    def from_job(cls, job: Job) -> JobMessage:
        cfg = job.config
        pagination = cfg.pagination
        return cls(
            id=job.id,
            url=job.url,
            institution_type=job.institution_type,
            engine_hint=job.engine_hint,
            config=ScrapeConfigMessage(
                selectors=dict(cfg.selectors),
                optional_selectors=dict(cfg.optional_selectors),
                timeout=cfg.timeout,
                user_agent=cfg.user_agent,
                headers=dict(cfg.headers),
                pagination=(
                    PaginationMessage(
                        enabled=pagination.enabled,
                        page_param=pagination.page_param,
                        max_pages=pagination.max_pages,
                        link_selector=pagination.link_selector,
                        page_number=pagination.page_number,
                    )
                    if pagination is not None
                    else None
                ),
                encoding=cfg.encoding,
            ),
            rate_limit_config=(
                RateLimitMessage(
                    requests_per_second=job.rate_limit_config.requests_per_second,
                    burst_limit=job.rate_limit_config.burst_limit,
                    cooldown_period=job.rate_limit_config.cooldown_period,
                )
                if job.rate_limit_config is not None
                else None
            ),
            retry_config=RetryMessage(
                max_retries=job.retry_config.max_retries,
                initial_delay=job.retry_config.initial_delay,
                max_delay=job.retry_config.max_delay,
                backoff_factor=job.retry_config.backoff_factor,
            ),
            retry_count=job.retry_count,
            validation_rules=ValidationRulesMessage(
                required=list(job.validation_rules.required),
                patterns=dict(job.validation_rules.patterns),
            ),
            priority=job.priority,
            institution_id=job.institution_id,
            created_at=job.created_at,
        )

    def to_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")

    @classmethod
    def from_bytes(cls, body: bytes) -> JobMessage:
        """Raises ``pydantic.ValidationError`` for malformed bodies."""
        return cls.model_validate_json(body)


class DeadLetterMessage(WireModel):
    """Body published to the dead-letter exchange: the job snapshot plus the full error."""

    job: Dict[str, Any]
    error: Dict[str, Any]
    attempts: int = 0
    dead_lettered_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_failure(cls, job: Job, error: ScrapeError) -> DeadLetterMessage:
        payload = JobMessage.from_job(job).dump()
        payload["config"]["headers"] = redact(payload["config"].get("headers", {}))
        return cls(job=payload, error=redact(error.to_dict()), attempts=job.retry_count + 1)

    def to_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")
