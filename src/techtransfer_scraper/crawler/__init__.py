"""Network-facing primitives: the per-institution rate limiter and the shared HTTP client."""

from .http_client import FetchResponse, HttpClient, RobotsTxtCache
from .rate_limiter import RateLimitDecision, RateLimiter, RateLimitState

__all__ = [
    "FetchResponse",
    "HttpClient",
    "RateLimitDecision",
    "RateLimitState",
    "RateLimiter",
    "RobotsTxtCache",
]
