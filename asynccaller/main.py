"""Main entry point for the asynccaller command-line tool.

Sets up the Typer CLI application. Each command builds its own AsyncCaller
from the configuration layer, overridden by command-line options.
"""

import asyncio
import logging
from dataclasses import asdict
from typing import List, Optional

import typer
from typing_extensions import Annotated

from asynccaller.core.async_caller import AsyncCaller
from asynccaller.domain.errors import ConfigurationError
from asynccaller.domain.models.options import RetryOptions
from asynccaller.infrastructure.cli.display import ConsoleDisplay
from asynccaller.infrastructure.config.settings import (
    get_concurrency, get_config, get_retry_options, get_token_bucket_options,
    is_verbose, load_configuration
)
from asynccaller.infrastructure.http.httpx_client import fetch_urls
from asynccaller.infrastructure.monitoring.logger_setup import resolve_log_level, setup_logging
from asynccaller.infrastructure.resilience.retry_delay import calculate_default_delay

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="asynccaller",
    help="Run calls through a rate limiter with bounded concurrency and automatic retries.",
    add_completion=False,
)


def _configure(verbose: bool) -> None:
    load_configuration()
    level = logging.INFO if verbose else resolve_log_level(get_config('logging.level'))
    setup_logging(
        log_level=level,
        log_file=get_config('logging.file'),
        log_format=get_config('logging.format', '%(asctime)s - %(name)s - %(levelname)s - %(message)s'),
    )


def _merge(base, **overrides):
    """Returns ``base`` with the non-None overrides applied."""
    values = {k: v for k, v in overrides.items() if v is not None}
    return type(base).from_mapping({**asdict(base), **values})


# --- CLI Commands ---

@app.command()
def fetch(
    urls: Annotated[List[str], typer.Argument(help="URLs to request.")],
    repeat: Annotated[int, typer.Option("--repeat", "-n", min=1, help="Request every URL this many times.")] = 1,
    method: Annotated[str, typer.Option("--method", "-X", help="HTTP method.")] = "GET",
    concurrency: Annotated[Optional[int], typer.Option(help="Maximum requests in flight.")] = None,
    capacity: Annotated[Optional[int], typer.Option(help="Token bucket capacity (burst size).")] = None,
    fill_per_window: Annotated[Optional[int], typer.Option(help="Tokens added per window.")] = None,
    window_ms: Annotated[Optional[float], typer.Option(help="Refill window in milliseconds.")] = None,
    max_retries: Annotated[Optional[int], typer.Option(help="Retries after the first attempt.")] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Log scheduling and retry decisions.")] = False,
):
    """Request URLs through a rate-limited, retrying AsyncCaller."""
    verbose = verbose or is_verbose()
    _configure(verbose)
    display = ConsoleDisplay()

    try:
        caller = AsyncCaller(
            token_bucket_options=_merge(
                get_token_bucket_options(),
                capacity=capacity, fill_per_window=fill_per_window, window_in_ms=window_ms,
            ),
            retry_options=_merge(get_retry_options(), max_retries=max_retries),
            concurrency=concurrency if concurrency is not None else get_concurrency(),
            verbose=verbose,
        )
    except ConfigurationError as e:
        display.display_error(str(e))
        raise typer.Exit(code=2)

    targets = [url for url in urls for _ in range(repeat)]
    display.display_info(f"Requesting {len(targets)} URL(s) with concurrency {caller.concurrency}...")

    async def run():
        async with caller:
            return await fetch_urls(caller, targets, method=method)

    results = asyncio.run(run())
    display.display_fetch_results(results)
    if not all(r.ok for r in results):
        raise typer.Exit(code=1)


@app.command()
def backoff(
    max_retries: Annotated[Optional[int], typer.Option(help="Retries after the first attempt.")] = None,
    min_delay_ms: Annotated[Optional[float], typer.Option(help="Delay before the first retry.")] = None,
    max_delay_ms: Annotated[Optional[float], typer.Option(help="Upper bound for any delay.")] = None,
    factor: Annotated[Optional[float], typer.Option(help="Backoff multiplier.")] = None,
):
    """Show the exponential backoff schedule for the given retry options."""
    _configure(False)
    options: RetryOptions = _merge(
        get_retry_options(),
        max_retries=max_retries, min_delay_in_ms=min_delay_ms,
        max_delay_in_ms=max_delay_ms, backoff_factor=factor,
    )
    delays = [calculate_default_delay(n, options) for n in range(1, options.max_retries + 1)]
    ConsoleDisplay().display_backoff_schedule(delays)


def cli_entry_point():
    """Function called by the console script declared in pyproject.toml."""
    app()


if __name__ == "__main__":
    cli_entry_point()
