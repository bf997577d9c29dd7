"""Classifies operation outcomes by the status codes they carry.

Results and exceptions from different HTTP libraries expose their status in
different places (``status`` for aiohttp, ``status_code`` for httpx/requests,
often nested under a ``response`` attribute on exceptions). The default
extractor probes all of them; applications with a typed client can plug in
their own ``StatusExtractor``.
"""

import inspect
import json
import logging
import math
from collections.abc import Mapping
from typing import Any, List, Optional

from asynccaller.domain.interfaces.status import StatusExtractor
from asynccaller.domain.models.common import (
    CLIENT_ERROR_RANGE, RATE_LIMITED_STATUS, OutcomeKind
)

logger = logging.getLogger(__name__)

STATUS_FIELD_NAMES = ("status", "status_code")
RESPONSE_FIELD_NAME = "response"
# Body fields checked, in priority order, when building an error message.
ERROR_MESSAGE_FIELDS = ("error", "message", "error_message", "errors")


def _lookup(value: Any, name: str) -> Any:
    if value is None:
        return None
    if isinstance(value, Mapping):
        return value.get(name)
    return getattr(value, name, None)


def _is_status_number(candidate: Any) -> bool:
    if isinstance(candidate, bool) or not isinstance(candidate, (int, float)):
        return False
    return not math.isnan(candidate)


class DefaultStatusExtractor(StatusExtractor):
    """Probes ``status`` / ``status_code`` on a value and on its ``response``."""

    def extract(self, value: Any) -> List[int]:
        nested = _lookup(value, RESPONSE_FIELD_NAME)
        candidates = []
        for name in STATUS_FIELD_NAMES:
            candidates.append(_lookup(value, name))
            candidates.append(_lookup(nested, name))
        return [int(c) for c in candidates if _is_status_number(c)]

    def headers_of(self, value: Any) -> Optional[Any]:
        headers = _lookup(value, "headers")
        if headers is None:
            headers = _lookup(_lookup(value, RESPONSE_FIELD_NAME), "headers")
        return headers


class StatusClassifier:
    """Stateless classification of results and errors into OutcomeKind values."""

    def __init__(self, extractor: Optional[StatusExtractor] = None, verbose: bool = False):
        self.extractor = extractor or DefaultStatusExtractor()
        self._log_level = logging.INFO if verbose else logging.DEBUG

    def status_codes(self, value: Any) -> List[int]:
        return self.extractor.extract(value)

    def headers_of(self, value: Any) -> Optional[Any]:
        return self.extractor.headers_of(value)

    def is_rate_limited(self, value: Any) -> bool:
        if RATE_LIMITED_STATUS in self.status_codes(value):
            logger.log(self._log_level, "AsyncCaller: Too many requests detected.")
            return True
        return False

    def is_client_error(self, value: Any) -> bool:
        for status in self.status_codes(value):
            if status in CLIENT_ERROR_RANGE:
                logger.log(self._log_level, f"AsyncCaller: Client side error detected. Status code: {status}")
                return True
        return False

    def client_error_status(self, value: Any) -> Optional[int]:
        """Returns the first 4xx status on ``value``, if any."""
        return next((s for s in self.status_codes(value) if s in CLIENT_ERROR_RANGE), None)

    def classify(self, value: Any) -> OutcomeKind:
        """Rate limiting is checked first, so a 429 never counts as a client error."""
        if self.is_rate_limited(value):
            return OutcomeKind.RATE_LIMITED
        if self.is_client_error(value):
            return OutcomeKind.CLIENT_ERROR
        return OutcomeKind.SUCCESS


async def extract_error_message(response: Any) -> Optional[str]:
    """Reads an error message out of a response's JSON body.

    ``response.json()`` may be synchronous (httpx, requests) or a coroutine
    (aiohttp). Structured ``error``/``errors`` values are JSON-encoded.

    Returns:
        The message, or None when the body is missing, unparsable or has no
        recognised field.
    """
    try:
        body = response.json()
        if inspect.isawaitable(body):
            body = await body
    except Exception as e:
        logger.debug(f"Could not parse response body for an error message: {e}")
        return None
    if not isinstance(body, Mapping):
        return None

    for name in ERROR_MESSAGE_FIELDS:
        value = body.get(name)
        if not value:
            continue
        if name in ("message", "error_message") or isinstance(value, str):
            return str(value)
        try:
            return json.dumps(value)
        except (TypeError, ValueError):
            return str(value)
    return None
