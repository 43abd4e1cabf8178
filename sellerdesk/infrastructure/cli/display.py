import json
import logging
from typing import Any, Optional

from rich.box import HEAVY, ROUNDED, SIMPLE
from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from sellerdesk.domain.models.common import QueueStats, RateLimitInfo

logger = logging.getLogger(__name__)


class ConsoleDisplay:
    """Console output for the CLI, rendered with rich."""

    def __init__(self, console: Optional[Console] = None):
        """Initializes the rich Console."""
        self._console = console or Console()

    @property
    def console(self) -> Console:
        """Get the Rich console instance for direct operations."""
        return self._console

    def display_json(self, data: Any, title: Optional[str] = None) -> None:
        """Pretty-prints a JSON-serializable payload.

        Args:
            data: Decoded response body.
            title: Optional panel title (e.g. the endpoint).
        """
        rendered = json.dumps(data, indent=2, ensure_ascii=False, default=str)
        syntax = Syntax(rendered, "json", word_wrap=True)
        if title:
            self.console.print(Panel(syntax, title=f"[bold cyan]{title}[/bold cyan]", box=ROUNDED, border_style="cyan"))
        else:
            self.console.print(syntax)

    def display_error(self, error_message: str, **kwargs: Any) -> None:
        """Displays an error message in a distinct style.

        Args:
            error_message: The error message to display.
        """
        panel = Panel(
            Text(error_message, style="white"),
            title="[bold red]Error[/bold red]",
            border_style="red",
            box=HEAVY,
            padding=(0, 1)
        )
        self.console.print(panel)

    def display_info(self, info_message: str, **kwargs: Any) -> None:
        panel = Panel(
            Text(info_message, style="white"),
            title="[bold blue]Info[/bold blue]",
            border_style="blue",
            box=SIMPLE,
            padding=(0, 1)
        )
        self.console.print(panel)

    def display_success(self, message: str) -> None:
        panel = Panel(
            Text(message, style="white"),
            title="[bold green]Done[/bold green]",
            border_style="green",
            box=SIMPLE,
            padding=(0, 1)
        )
        self.console.print(panel)

    def display_status(self, queue: QueueStats, rate_limit: Optional[RateLimitInfo]) -> None:
        """Shows queue occupancy and the last reported platform quota."""
        table = Table(box=SIMPLE, show_header=False)
        table.add_column("Field", style="dim")
        table.add_column("Value")
        table.add_row("Queued", str(queue.queued))
        table.add_row("In flight", str(queue.in_flight))
        if rate_limit is not None:
            table.add_row("Quota", f"{rate_limit.remaining}/{rate_limit.limit}")
        self.console.print(table)

    def prompt(self, message: str) -> str:
        """Reads one line of input from the user."""
        return self.console.input(f"[bold green]{message}[/bold green] ").strip()
