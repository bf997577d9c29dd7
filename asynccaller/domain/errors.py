"""Exceptions that cross the asynccaller library boundary.

Rate-limited and transient outcomes are retried internally and never raised
as their own types (see ``OutcomeKind``). What reaches the caller is either
a configuration problem, a client error, or the final error once the attempt
budget is spent.
"""

from typing import Any, Optional


class AsyncCallerError(Exception):
    """Base class for errors raised by asynccaller itself."""


class ConfigurationError(AsyncCallerError, ValueError):
    """Raised at construction time for invalid bucket, retry or concurrency options."""


class ClientError(AsyncCallerError):
    """Raised when an operation resolves with a 4xx (non-429) status.

    The offending result is kept on ``response`` so callers can inspect the
    body or headers.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, response: Any = None):
        self.status_code = status_code
        self.response = response
        super().__init__(message)


class ExhaustedError(AsyncCallerError):
    """Raised when the attempt budget is spent and no concrete error was captured.

    The message is extracted from the last response body when possible.
    """

    def __init__(self, message: str, attempts: int, last_response: Any = None):
        self.attempts = attempts
        self.last_response = last_response
        super().__init__(message)
