"""Delay computation for the retry engine.

Two strategies: exponential backoff capped at ``max_delay_in_ms``, and a
server-directed delay read from a ``Retry-After`` header (delta-seconds or
an HTTP date). The caller forces the shared token bucket idle for a
server-directed delay; the exponential fallback leaves it refilling.
"""

import logging
import re
import time
from collections.abc import Mapping
from email.utils import parsedate_to_datetime
from typing import Any, Optional, Tuple

from asynccaller.domain.interfaces.status import HeaderLookup
from asynccaller.domain.models.common import RETRY_AFTER_HEADER
from asynccaller.domain.models.options import RetryOptions

logger = logging.getLogger(__name__)

# Leading integer of a delta-seconds value; "2.5" and "10s" read as 2 and 10.
LEADING_INTEGER = re.compile(r"[+-]?\d+")


def calculate_default_delay(completed_try_count: int, retry_options: RetryOptions) -> float:
    """Exponential backoff for the retry following attempt ``completed_try_count`` (1-based).

    ``min(min_delay * factor ** (n - 1), max_delay)``, in milliseconds.
    """
    delay = retry_options.min_delay_in_ms * retry_options.backoff_factor ** (completed_try_count - 1)
    return min(delay, retry_options.max_delay_in_ms)


def parse_retry_after(value: Any, now: Optional[float] = None) -> Optional[float]:
    """Converts a Retry-After value to milliseconds.

    Args:
        value: Header value, either delta-seconds or an HTTP date.
        now: Current epoch time in seconds (defaults to ``time.time()``).

    Returns:
        The delay in milliseconds (never negative), or None if unparsable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return max(int(value) * 1000, 0)
        except (ValueError, OverflowError):
            return None
    text = str(value).strip()
    if not text:
        return None
    match = LEADING_INTEGER.match(text)
    if match:
        return max(int(match.group()) * 1000, 0)
    try:
        retry_at = parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError):
        return None
    if retry_at is None:
        return None
    current = time.time() if now is None else now
    return max((retry_at.timestamp() - current) * 1000, 0.0)


class DefaultHeaderLookup(HeaderLookup):
    """Reads headers from accessor-style containers or plain mappings."""

    def get(self, headers: Any, name: str) -> Optional[Any]:
        if headers is None:
            return None
        getter = getattr(headers, "get", None)
        if callable(getter):
            value = getter(name)
        else:
            try:
                value = headers[name]
            except (KeyError, TypeError, IndexError):
                value = None
        if value is None and isinstance(headers, Mapping):
            lowered = name.lower()
            value = next((v for k, v in headers.items() if str(k).lower() == lowered), None)
        return value


class RetryDelayCalculator:
    """Chooses the delay before the next attempt."""

    def __init__(self, retry_options: RetryOptions, header_lookup: Optional[HeaderLookup] = None):
        self.retry_options = retry_options
        self.header_lookup = header_lookup or DefaultHeaderLookup()

    def calculate_default_delay(self, completed_try_count: int) -> float:
        return calculate_default_delay(completed_try_count, self.retry_options)

    def server_directed_delay(self, headers: Any) -> Optional[float]:
        """Returns the Retry-After delay in milliseconds, or None."""
        if headers is None:
            return None
        return parse_retry_after(self.header_lookup.get(headers, RETRY_AFTER_HEADER))

    def calculate_retry_delay(self, completed_try_count: int, headers: Any) -> Tuple[float, bool]:
        """Returns ``(delay_ms, server_directed)``.

        Only a server-directed delay should force the token bucket idle; the
        exponential fallback leaves it refilling.
        """
        delay = self.server_directed_delay(headers)
        if delay is None:
            return self.calculate_default_delay(completed_try_count), False
        return delay, True
