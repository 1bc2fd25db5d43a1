"""Rich console rendering for the startup banner and sweep summaries."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

if TYPE_CHECKING:
    from .sync import SweepReport

console = Console(stderr=True, soft_wrap=True)


def _flag(enabled: bool) -> str:
    return "[bold bright_green]ENABLED[/bold bright_green]" if enabled else "[dim]disabled[/dim]"


def display_startup_banner(settings: Any, host: str, port: int) -> None:
    """Print the service configuration before the HTTP server starts."""
    table = Table(
        box=box.ROUNDED,
        border_style="bright_blue",
        show_header=True,
        header_style="bold bright_white on bright_blue",
        title="[bold bright_yellow]gvoice-bridge[/bold bright_yellow]",
        padding=(0, 1),
    )
    table.add_column("Setting", style="bold bright_cyan", width=18)
    table.add_column("Value", style="white", overflow="fold")

    table.add_row("Environment", f"[bold bright_green]{settings.environment}[/bold bright_green]")
    table.add_row("Endpoint", f"[bold bright_magenta]http://{host}:{port}[/bold bright_magenta]")
    table.add_row("Backend id", settings.backend_id)
    table.add_row("Web client", settings.browser.base_url)
    table.add_row("Profile dir", f"[dim]{settings.browser.user_data_dir}[/dim]")
    table.add_row("Database", f"[dim]{settings.database.url}[/dim]")
    table.add_row(
        "Inbox sync",
        f"{_flag(settings.sync.enabled)} every {settings.sync.interval_seconds}s "
        f"over {settings.sync.account_count} accounts",
    )
    table.add_row("Campaign guard", _flag(settings.sync.campaign_guard_enabled))
    console.print(table)


def render_sweep_report(report: "SweepReport") -> None:
    """Print one sweep's per-account outcomes; never raises."""
    try:
        if report.skipped:
            console.print(
                Panel.fit(f"reason={report.skipped_reason}", title="Inbox Sync Skipped", border_style="yellow")
            )
            return
        table = Table(box=box.SIMPLE_HEAVY, title="Inbox Sync", title_style="bold cyan")
        table.add_column("Account", justify="right", style="bold")
        table.add_column("Entries", justify="right")
        table.add_column("Written", justify="right", style="green")
        table.add_column("Skipped", justify="right", style="dim")
        table.add_column("Row errors", justify="right", style="red")
        table.add_column("Status")
        for outcome in report.accounts:
            status = Text("ok", style="green") if outcome.ok else Text(outcome.error or "failed", style="red")
            table.add_row(
                str(outcome.account_index),
                str(outcome.entries),
                str(outcome.written),
                str(outcome.skipped),
                str(outcome.row_failures),
                status,
            )
        console.print(table)
    except Exception:
        pass
