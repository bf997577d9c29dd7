"""asynccaller: rate-limited, concurrency-bounded async calls with retries.

Wrap each outgoing call (e.g. an HTTP request) in ``AsyncCaller.call`` and the
caller smooths bursts with a shared token bucket, caps in-flight work and
retries transient or rate-limited failures with backoff.
"""

from asynccaller.core.async_caller import AsyncCaller
from asynccaller.domain.errors import (
    AsyncCallerError, ClientError, ConfigurationError, ExhaustedError
)
from asynccaller.domain.models.options import RetryOptions, TokenBucketOptions
from asynccaller.infrastructure.resilience.token_bucket import TokenBucket

__version__ = "1.1.0"

__all__ = [
    "AsyncCaller",
    "TokenBucket",
    "TokenBucketOptions",
    "RetryOptions",
    "AsyncCallerError",
    "ConfigurationError",
    "ClientError",
    "ExhaustedError",
]
