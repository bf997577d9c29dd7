"""Domain Events related to scheduled calls and the rate limiter.

Emitted by the AsyncCaller as a call moves through its lifecycle.
"""

from dataclasses import dataclass, field
import time
from typing import Optional


@dataclass
class CallEvent:
    """Base class for call lifecycle events."""
    task_id: str


@dataclass
class CallQueued(CallEvent):
    """A call was submitted and is waiting for a concurrency slot."""
    queue_length: int
    timestamp: float = field(default_factory=time.time)


@dataclass
class CallAdmitted(CallEvent):
    """A call obtained a concurrency slot."""
    running_count: int
    concurrency: int
    timestamp: float = field(default_factory=time.time)


@dataclass
class AttemptStarted(CallEvent):
    """A token was acquired and the operation is about to be invoked."""
    attempt_number: int
    timestamp: float = field(default_factory=time.time)


@dataclass
class RetryScheduled(CallEvent):
    """An attempt failed and another one will follow after ``delay_ms``."""
    attempt_number: int
    delay_ms: float
    reason: str  # OutcomeKind value
    timestamp: float = field(default_factory=time.time)


@dataclass
class BucketPaused(CallEvent):
    """The shared token bucket was forced idle by a server directive."""
    delay_ms: float
    timestamp: float = field(default_factory=time.time)


@dataclass
class CallSucceeded(CallEvent):
    """The operation resolved successfully."""
    attempts: int
    latency_ms: float
    timestamp: float = field(default_factory=time.time)


@dataclass
class CallFailed(CallEvent):
    """The call reached a terminal failure (client error or exhaustion)."""
    attempts: int
    state: str  # CallState value
    error_type: str
    error_message: str
    status_code: Optional[int] = None
    timestamp: float = field(default_factory=time.time)
