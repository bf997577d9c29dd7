"""httpx adapter: runs HTTP requests through an AsyncCaller.

``httpx.Response`` exposes ``status_code`` and case-insensitive ``headers``,
so the default status extractor and header lookup handle it without any
extra glue. This module only counts attempts and collects per-URL results
for the CLI.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import List, Optional, Sequence

import httpx

from asynccaller.core.async_caller import AsyncCaller
from asynccaller.domain.errors import ClientError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 30.0


@dataclass
class FetchResult:
    """Outcome of one URL fetched through the caller."""
    url: str
    status_code: Optional[int] = None
    attempts: int = 0
    elapsed_ms: float = 0.0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class HttpFetcher:
    """Issues HTTP requests via an AsyncCaller and a shared httpx.AsyncClient."""

    def __init__(self, caller: AsyncCaller, client: httpx.AsyncClient, method: str = "GET"):
        self.caller = caller
        self.client = client
        self.method = method.upper()

    async def fetch(self, url: str) -> FetchResult:
        """Fetches ``url``; failures are recorded on the result instead of raised."""
        result = FetchResult(url=url)

        async def send() -> httpx.Response:
            result.attempts += 1
            logger.debug(f"{self.method} {url} (attempt {result.attempts})")
            return await self.client.request(self.method, url)

        started = time.perf_counter()
        try:
            response = await self.caller.call(send)
            result.status_code = response.status_code
        except ClientError as e:
            result.status_code = e.status_code
            result.error = str(e)
        except Exception as e:
            logger.debug(f"Fetching {url} failed: {e}", exc_info=True)
            result.error = f"{type(e).__name__}: {e}"
        result.elapsed_ms = (time.perf_counter() - started) * 1000
        return result

    async def fetch_all(self, urls: Sequence[str]) -> List[FetchResult]:
        """Fetches every URL concurrently, results in input order."""
        return list(await asyncio.gather(*(self.fetch(url) for url in urls)))


async def fetch_urls(
    caller: AsyncCaller,
    urls: Sequence[str],
    method: str = "GET",
    timeout: float = DEFAULT_TIMEOUT_S,
) -> List[FetchResult]:
    """Convenience wrapper owning the httpx client's lifecycle."""
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        return await HttpFetcher(caller, client, method).fetch_all(urls)
