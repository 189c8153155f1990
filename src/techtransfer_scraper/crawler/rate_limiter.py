"""
Per-Institution Token Bucket Rate Limiter

Grants or denies requests per institution key without ever sleeping; callers
decide whether to wait, requeue or give up. Tokens refill continuously from
the elapsed time since the last refill, capped at the burst limit. A reported
rate-limit response drains the bucket and starts an institution-wide cooldown.
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, NamedTuple, Optional

import structlog

from techtransfer_scraper.protocols import RateLimitConfig, RateLimitSnapshot

logger = structlog.get_logger(__name__)


@dataclass
class RateLimitState:
    """Bucket state for one institution. Only touched under that key's lock."""

    config: RateLimitConfig
    tokens_available: float
    last_refill_time: float
    cooldown_until: float = 0.0
    burst_count: int = 0
    total_granted: int = 0
    total_denied: int = 0
    rate_limited_reports: int = 0


class RateLimitDecision(NamedTuple):
    allowed: bool
    wait_ms: int


class RateLimiter:
    """
    Token bucket per institution key.

    Features:
    - Continuous refill at ``requests_per_second`` up to ``burst_limit``
    - Institution-wide cooldown after a rate-limited response
    - One lock per key, so unrelated institutions never contend
    - Injectable clock for deterministic tests
    """

    def __init__(
        self,
        default_config: Optional[RateLimitConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_config = default_config or RateLimitConfig()
        self._clock = clock
        self._states: Dict[str, RateLimitState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

        logger.info(
            "Rate limiter initialized",
            default_rps=self.default_config.requests_per_second,
            default_burst=self.default_config.burst_limit,
        )

    def _get_key_lock(self, key: str) -> asyncio.Lock:
        """Get or create lock for an institution key."""
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def _get_state(self, key: str, config: Optional[RateLimitConfig]) -> RateLimitState:
        state = self._states.get(key)
        if state is None:
            effective = config or self.default_config
            # A fresh institution starts with a full bucket
            state = RateLimitState(
                config=effective,
                tokens_available=float(effective.burst_limit),
                last_refill_time=self._clock(),
            )
            self._states[key] = state
            logger.debug("Created rate limit state", institution=key, rps=effective.requests_per_second)
        elif config is not None and config != state.config:
            self._apply_config(key, state, config)
        return state

    def _apply_config(self, key: str, state: RateLimitState, config: RateLimitConfig) -> None:
        self._refill(state, self._clock())
        state.config = config
        state.tokens_available = min(state.tokens_available, float(config.burst_limit))
        state.burst_count = min(state.burst_count, config.burst_limit)
        logger.debug("Updated rate limit config", institution=key, rps=config.requests_per_second)

    def _refill(self, state: RateLimitState, now: float) -> None:
        if now <= state.last_refill_time:
            return
        elapsed = now - state.last_refill_time
        capacity = float(state.config.burst_limit)
        state.tokens_available = min(capacity, state.tokens_available + elapsed * state.config.requests_per_second)
        state.last_refill_time = now
        state.burst_count = min(state.burst_count, int(capacity - state.tokens_available))

    async def configure(self, key: str, config: RateLimitConfig) -> None:
        """Set or replace the bucket parameters for ``key``."""
        async with self._get_key_lock(key):
            self._get_state(key, config)

    async def try_acquire(self, key: str, config: Optional[RateLimitConfig] = None) -> RateLimitDecision:
        """
        Take one token for ``key`` if available.

        Args:
            key: Institution key
            config: Bucket parameters; applied when they differ from the stored ones

        Returns:
            ``(allowed, wait_ms)``; ``wait_ms`` is the time until a token can
            next be granted and is 0 when allowed.
        """
        async with self._get_key_lock(key):
            state = self._get_state(key, config)
            now = self._clock()

            if state.cooldown_until > now:
                state.total_denied += 1
                wait_ms = math.ceil((state.cooldown_until - now) * 1000)
                logger.debug("Institution in cooldown", institution=key, wait_ms=wait_ms)
                return RateLimitDecision(False, wait_ms)

            self._refill(state, now)

            if state.tokens_available >= 1.0:
                state.tokens_available -= 1.0
                state.burst_count = min(state.burst_count + 1, state.config.burst_limit)
                state.total_granted += 1
                return RateLimitDecision(True, 0)

            state.total_denied += 1
            deficit = 1.0 - state.tokens_available
            wait_ms = max(1, math.ceil(deficit / state.config.requests_per_second * 1000))
            return RateLimitDecision(False, wait_ms)

    async def report_outcome(self, key: str, was_rate_limited: bool) -> None:
        """Record the result of a granted request; a rate-limited one starts the cooldown."""
        if not was_rate_limited:
            return

        async with self._get_key_lock(key):
            state = self._get_state(key, None)
            now = self._clock()
            state.tokens_available = 0.0
            state.burst_count = 0
            state.cooldown_until = now + state.config.cooldown_period
            # Refill resumes only once the cooldown is over
            state.last_refill_time = state.cooldown_until
            state.rate_limited_reports += 1
            logger.warning(
                "Institution rate limited, entering cooldown",
                institution=key,
                cooldown_seconds=state.config.cooldown_period,
            )

    def snapshot(self, key: str) -> RateLimitSnapshot:
        """Read-only copy of the bucket for error reports."""
        state = self._states.get(key)
        if state is None:
            config = self.default_config
            return RateLimitSnapshot(
                institution_key=key,
                tokens_available=float(config.burst_limit),
                burst_count=0,
                burst_limit=config.burst_limit,
                requests_per_second=config.requests_per_second,
            )
        now = self._clock()
        in_cooldown = state.cooldown_until > now
        tokens = state.tokens_available
        if not in_cooldown and now > state.last_refill_time:
            tokens = min(
                float(state.config.burst_limit),
                tokens + (now - state.last_refill_time) * state.config.requests_per_second,
            )
        return RateLimitSnapshot(
            institution_key=key,
            tokens_available=tokens,
            burst_count=state.burst_count,
            burst_limit=state.config.burst_limit,
            requests_per_second=state.config.requests_per_second,
            cooldown_until=state.cooldown_until if in_cooldown else None,
            in_cooldown=in_cooldown,
        )

    def is_in_cooldown(self, key: str) -> bool:
        state = self._states.get(key)
        return state is not None and state.cooldown_until > self._clock()

    def cooldown_remaining_ms(self, key: str) -> int:
        state = self._states.get(key)
        if state is None:
            return 0
        return max(0, math.ceil((state.cooldown_until - self._clock()) * 1000))

    async def reset(self, key: str) -> None:
        """Forget all state for ``key``."""
        async with self._get_key_lock(key):
            self._states.pop(key, None)
        logger.info("Reset rate limit state", institution=key)

    def get_stats(self) -> Dict[str, Any]:
        now = self._clock()
        return {
            "institutions": len(self._states),
            "in_cooldown": sorted(k for k, s in self._states.items() if s.cooldown_until > now),
            "per_institution": {
                key: {
                    "granted": s.total_granted,
                    "denied": s.total_denied,
                    "rate_limited_reports": s.rate_limited_reports,
                    "tokens_available": round(s.tokens_available, 3),
                }
                for key, s in self._states.items()
            },
        }
