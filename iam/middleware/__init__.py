"""Middleware package exports."""

from iam.middleware.correlation_id import CorrelationIdMiddleware
from iam.middleware.logging import LoggingMiddleware
from iam.middleware.rate_limit import RateLimitMiddleware
from iam.middleware.security_headers import SecurityHeadersMiddleware

__all__ = [
    "CorrelationIdMiddleware",
    "LoggingMiddleware",
    "RateLimitMiddleware",
    "SecurityHeadersMiddleware",
]
