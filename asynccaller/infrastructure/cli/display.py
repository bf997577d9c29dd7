import logging
from typing import List, Optional, Sequence

from rich.box import ROUNDED
from rich.console import Console
from rich.table import Table

from asynccaller.infrastructure.http.httpx_client import FetchResult

logger = logging.getLogger(__name__)


class ConsoleDisplay:
    """Console output for the asynccaller CLI, rendered with rich."""

    def __init__(self, console: Optional[Console] = None):
        self._console = console or Console()

    @property
    def console(self) -> Console:
        """Get the Rich console instance for direct operations."""
        return self._console

    @console.setter
    def console(self, value: Console) -> None:
        self._console = value

    def display_info(self, info_message: str) -> None:
        self.console.print(f"[blue]Info:[/blue] {info_message}")

    def display_error(self, error_message: str) -> None:
        self.console.print(f"[bold red]Error:[/bold red] {error_message}")

    def display_fetch_results(self, results: Sequence[FetchResult]) -> None:
        """Renders one row per fetched URL plus a success summary."""
        table = Table(title="Fetch results", box=ROUNDED, border_style="cyan", show_header=True)
        table.add_column("URL", overflow="fold")
        table.add_column("Status", justify="right")
        table.add_column("Attempts", justify="right")
        table.add_column("Elapsed (ms)", justify="right")
        table.add_column("Error", style="red", overflow="fold")

        for result in results:
            status = str(result.status_code) if result.status_code is not None else "-"
            status_style = "green" if result.ok else "red"
            table.add_row(
                result.url,
                f"[{status_style}]{status}[/{status_style}]",
                str(result.attempts),
                f"{result.elapsed_ms:.0f}",
                result.error or "",
            )
        self.console.print(table)

        succeeded = sum(1 for r in results if r.ok)
        logger.debug(f"Displayed {len(results)} fetch results ({succeeded} ok)")
        self.console.print(f"{succeeded}/{len(results)} succeeded")

    def display_backoff_schedule(self, delays: List[float]) -> None:
        """Renders the delay applied after each failed attempt."""
        table = Table(title="Backoff schedule", box=ROUNDED, border_style="cyan", show_header=True)
        table.add_column("After attempt", justify="right")
        table.add_column("Delay (ms)", justify="right")
        table.add_column("Cumulative (ms)", justify="right")

        total = 0.0
        for attempt, delay in enumerate(delays, start=1):
            total += delay
            table.add_row(str(attempt), f"{delay:.0f}", f"{total:.0f}")
        self.console.print(table)
