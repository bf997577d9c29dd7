"""Interfaces for inspecting the outcome of a scheduled operation.

An operation's result or error may be shaped very differently depending on
the networking library behind it. The scheduler only needs two capabilities:
reading status codes and looking up a header by name.
"""

import abc
from typing import Any, List, Optional


class StatusExtractor(abc.ABC):
    """Abstract Base Class for reading status codes off a result or error."""

    @abc.abstractmethod
    def extract(self, value: Any) -> List[int]:
        """Returns every numeric status code found on ``value``.

        Args:
            value: A result returned by, or an exception raised from, an operation.

        Returns:
            The status codes found, in probing order. Empty when none apply.
        """
        pass

    @abc.abstractmethod
    def headers_of(self, value: Any) -> Optional[Any]:
        """Returns the header container attached to ``value``, if any."""
        pass


class HeaderLookup(abc.ABC):
    """Abstract Base Class for reading a single header from a header container."""

    @abc.abstractmethod
    def get(self, headers: Any, name: str) -> Optional[Any]:
        """Returns the value of header ``name`` or None when absent."""
        pass
