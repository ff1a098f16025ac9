"""
Error taxonomy for the budget gateway.

Only QuotaExceeded and upstream errors ever reach the caller of a governed
call. PersistenceError and alert delivery failures are contained by the
gateway, and ConfigurationError is raised at construction time only.
"""

from typing import Optional


class GatewayError(Exception):
    """Base class for all gateway errors."""


class QuotaExceeded(GatewayError):
    """Raised when a ceiling would be breached and no fallback is available."""

    def __init__(self, reason: str, limit=None, retry_after: Optional[float] = None):
        message = f"Quota exceeded: {reason}"
        if retry_after is not None:
            message += f" (retry after {retry_after:.0f}s)"
        super().__init__(message)
        self.reason = reason
        self.limit = limit
        self.retry_after = retry_after


class UpstreamError(GatewayError):
    """Failure reported by the external inference API."""


class UpstreamRateLimited(UpstreamError):
    """The external inference API signaled throttling."""

    def __init__(self, message: str = "Upstream rate limit", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class PersistenceError(GatewayError):
    """Loading or saving gateway state failed."""


class ConfigurationError(GatewayError, ValueError):
    """Invalid quota, cost or cache configuration."""
