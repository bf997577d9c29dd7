"""Configuration value objects for the token bucket and the retry engine.

Both are immutable; validation happens in the components that consume them
(``TokenBucket.validate`` and ``AsyncCaller``) so misconfiguration surfaces
at construction time as a ``ConfigurationError``.
"""

from dataclasses import dataclass, fields
from typing import Any, Mapping, Optional

# Defaults mirror a burst of 10 calls refilled at one call per 100 ms.
DEFAULT_CAPACITY = 10
DEFAULT_FILL_PER_WINDOW = 1
DEFAULT_WINDOW_IN_MS = 100

DEFAULT_MAX_RETRIES = 3
DEFAULT_MIN_DELAY_IN_MS = 1000
DEFAULT_MAX_DELAY_IN_MS = 10000
DEFAULT_BACKOFF_FACTOR = 2

DEFAULT_CONCURRENCY = 5


def _known_fields(cls: type, data: Mapping[str, Any]) -> dict:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names and v is not None}


@dataclass(frozen=True)
class TokenBucketOptions:
    """Rate limit settings.

    Attributes:
        capacity: Maximum number of permits the bucket holds (burst size).
        fill_per_window: Permits added every window.
        window_in_ms: Length of a refill window in milliseconds.
        initial_tokens: Permits available at start. Defaults to ``capacity``;
            a lower value ramps the rate up gradually.
    """
    capacity: int = DEFAULT_CAPACITY
    fill_per_window: int = DEFAULT_FILL_PER_WINDOW
    window_in_ms: float = DEFAULT_WINDOW_IN_MS
    initial_tokens: Optional[int] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "TokenBucketOptions":
        """Builds options from a mapping, ignoring unknown and None values."""
        return cls(**_known_fields(cls, data))


@dataclass(frozen=True)
class RetryOptions:
    """Retry and exponential backoff settings.

    Attributes:
        max_retries: Retries after the first attempt (total attempts = max_retries + 1).
        min_delay_in_ms: Delay before the first retry.
        max_delay_in_ms: Upper bound for any computed backoff delay.
        backoff_factor: Multiplier applied per completed attempt.
    """
    max_retries: int = DEFAULT_MAX_RETRIES
    min_delay_in_ms: float = DEFAULT_MIN_DELAY_IN_MS
    max_delay_in_ms: float = DEFAULT_MAX_DELAY_IN_MS
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "RetryOptions":
        """Builds options from a mapping, ignoring unknown and None values."""
        return cls(**_known_fields(cls, data))
