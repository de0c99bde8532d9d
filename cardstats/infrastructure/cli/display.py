import logging
from typing import Any, Dict, Iterable, Optional

from rich.box import ROUNDED, SIMPLE
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from cardstats.domain.interfaces.user_interface import UserInterface
from cardstats.domain.models.counts import BatchReport, ItemView

logger = logging.getLogger(__name__)

ERROR_LABEL = "err"

def format_count(value: int) -> str:
    """Renders a count, or 'err' for the failure sentinel."""
    return ERROR_LABEL if value < 0 else str(value)

class ConsoleDisplay(UserInterface):
    """Concrete implementation of UserInterface using the rich library for console output."""

    def __init__(self, console: Optional[Console] = None):
        self._console = console or Console()

    @property
    def console(self) -> Console:
        """Get the Rich console instance for direct operations."""
        return self._console

    def display_items(self, views: Iterable[ItemView], **kwargs: Any) -> None:
        """Renders one row per item: owners, wants, and freshness flags.

        Args:
            views: Items to render.
            **kwargs: title (table title, default "Item counts").
        """
        views = list(views)
        if not views:
            self.display_info("No items to show.")
            return

        table = Table(title=kwargs.get("title", "Item counts"), box=ROUNDED, show_lines=False)
        table.add_column("Item", style="cyan", no_wrap=True)
        table.add_column("Owners", justify="right")
        table.add_column("Wants", justify="right")
        table.add_column("Status")

        for view in views:
            if view.has_error:
                style, status = "red", "fetch failed"
            elif view.is_manually_updated:
                style, status = "green", "manual"
            elif view.is_expired:
                style, status = "dim", "stale"
            else:
                style, status = "", "fresh"
            table.add_row(
                str(view.item_id),
                Text(format_count(view.owners), style=style),
                Text(format_count(view.wants), style=style),
                Text(status, style=style),
            )
        self.console.print(table)

    def display_item(self, view: ItemView, **kwargs: Any) -> None:
        marker = " [green](manual)[/green]" if view.is_manually_updated else ""
        self.console.print(
            f"[cyan]{view.item_id}[/cyan]: owners {format_count(view.owners)}, "
            f"wants {format_count(view.wants)}{marker}"
        )

    def display_report(self, report: BatchReport) -> None:
        summary = (
            f"{report.requested} requested, {report.cache_hits} from cache, "
            f"{report.committed} refreshed, {report.failed} failed"
        )
        if report.dropped:
            summary += f", {report.dropped} dropped"
        if report.cancelled:
            summary += " (cancelled)"
        self.console.print(Panel(Text(summary), title="[bold]Run summary[/bold]", box=SIMPLE, padding=(0, 1)))

    def display_stats(self, stats: Dict[str, Any], **kwargs: Any) -> None:
        """Renders the get-stats payload as two small tables."""
        cache = stats.get("cache", {})
        rate = stats.get("rate_limit", {})

        cache_table = Table(title="Cache", box=SIMPLE, show_header=False)
        cache_table.add_column("Metric", style="bold")
        cache_table.add_column("Value", justify="right")
        cache_table.add_row("Entries", str(cache.get("total", 0)))
        cache_table.add_row("Valid", str(cache.get("valid", 0)))
        cache_table.add_row("Expired", str(cache.get("expired", 0)))
        cache_table.add_row("Errors", str(cache.get("errors", 0)))
        cache_table.add_row("Oldest entry", f"{cache.get('oldest_entry_hours', 0)} h")
        cache_table.add_row("Newest entry", f"{cache.get('newest_entry_minutes', 0)} min")
        memory = stats.get("memory")
        if memory:
            cache_table.add_row("Memory", f"{memory['mb']} MB ({memory['percent_full']}% of limit)")

        rate_table = Table(title="Rate limit", box=SIMPLE, show_header=False)
        rate_table.add_column("Metric", style="bold")
        rate_table.add_column("Value", justify="right")
        rate_table.add_row("Used", f"{rate.get('current', 0)}/{rate.get('max', 0)}")
        rate_table.add_row("Remaining", str(rate.get("remaining", 0)))
        rate_table.add_row("Resets in", f"{rate.get('reset_in_seconds', 0)} s")

        enabled = stats.get("enabled", True)
        state = "[green]enabled[/green]" if enabled else "[yellow]disabled[/yellow]"
        self.console.print(f"Processing is {state}")
        self.console.print(cache_table)
        self.console.print(rate_table)

    def display_error(self, error_message: str, **kwargs: Any) -> None:
        """Displays an error message in a distinct style."""
        self.console.print(f"[bold red]Error:[/bold red] {error_message}")

    def display_info(self, info_message: str, **kwargs: Any) -> None:
        self.console.print(f"[blue]Info:[/blue] {info_message}")

    def display_warning(self, warning_message: str, **kwargs: Any) -> None:
        logger.warning(f"Display warning: {warning_message}")
        self.console.print(f"[bold yellow]Warning:[/bold yellow] {warning_message}")
