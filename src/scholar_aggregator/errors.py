"""Exception hierarchy for the aggregation engine.

Only ``InvalidRequest``, ``ConfigMissing`` and a ``ProviderRateLimited`` with
no cache to fall back on ever reach the caller. Everything else is recovered
per author or treated as a cache miss.
"""

from typing import Optional


class AggregatorError(Exception):
    """Base class for all aggregation errors."""

    #: Seconds a client should wait before retrying, when it makes sense.
    retry_after: Optional[int] = None


class InvalidRequest(AggregatorError):
    """Malformed pagination or query parameters."""


class ConfigMissing(AggregatorError):
    """No provider credential is available, so no external call can be made."""

    def __init__(self, message: str = "Provider API key is not configured", retry_after: int = 300):
        super().__init__(message)
        self.retry_after = retry_after


class CacheCorrupt(AggregatorError):
    """A cache entry could not be read or decoded."""

    def __init__(self, key: str, reason: str):
        super().__init__(f"Corrupt cache entry {key[:8]}...: {reason}")
        self.key = key
        self.reason = reason


class ProviderError(AggregatorError):
    """The external scholarly-search provider failed a request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderRateLimited(ProviderError):
    """The provider answered 429."""

    def __init__(self, message: str = "Provider rate limit exceeded", retry_after: int = 60):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class ProviderUnavailable(ProviderError):
    """Timeout, 5xx, unexpected status or malformed response from the provider."""
