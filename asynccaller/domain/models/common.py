"""Defines common Value Objects used by the scheduler and the resilience layer."""

import asyncio
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import NewType

# === Core Value Objects ===

TaskId = NewType("TaskId", str)          # Identifier of one submitted call
StatusCode = NewType("StatusCode", int)  # HTTP-like status code
Milliseconds = NewType("Milliseconds", float)

RATE_LIMITED_STATUS = StatusCode(429)
CLIENT_ERROR_RANGE = range(400, 500)
RETRY_AFTER_HEADER = "Retry-After"


class OutcomeKind(str, Enum):
    """Classification of a single attempt's result or error."""
    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    CLIENT_ERROR = "client_error"
    TRANSIENT = "transient"


class CallState(str, Enum):
    """Lifecycle of a submitted call.

    Queued -> Attempting -> (Succeeded | ClientError | Exhausted), or
    Attempting -> Delaying -> Attempting while retries remain.
    """
    QUEUED = "queued"
    ATTEMPTING = "attempting"
    DELAYING = "delaying"
    SUCCEEDED = "succeeded"
    CLIENT_ERROR = "client_error"
    EXHAUSTED = "exhausted"

    @property
    def is_terminal(self) -> bool:
        return self in (CallState.SUCCEEDED, CallState.CLIENT_ERROR, CallState.EXHAUSTED)


def new_task_id() -> TaskId:
    return TaskId(uuid.uuid4().hex[:12])


@dataclass
class CallTask:
    """A submitted call waiting for (or holding) a concurrency slot.

    ``ticket`` is resolved by the scheduler when the task is admitted.
    """
    ticket: asyncio.Future
    task_id: TaskId = field(default_factory=new_task_id)
    state: CallState = CallState.QUEUED
    attempts: int = 0
