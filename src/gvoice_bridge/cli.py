"""Command-line interface for running and inspecting the bridge."""

from __future__ import annotations

import asyncio
import atexit
import sys
from typing import Any, List, Optional

import typer
import uvicorn
from rich.console import Console
from rich.table import Table

from .config import get_settings
from .db import ensure_schema, reset_database_state
from .http import _configure_logging, build_http_app
from .session import BrowserSession, SessionArbiter
from .store import list_inbox_summaries
from .sync import InboxSynchronizer, SweepReport
from .utils import item_id_for_phone, normalize_phone

# aiosqlite uses background threads that can block Python shutdown if not cleaned up.
atexit.register(reset_database_state)

console = Console()


def _run_async(coro: Any) -> Any:
    """Run an async coroutine and dispose database connections afterwards."""
    try:
        return asyncio.run(coro)
    finally:
        reset_database_state()


app = typer.Typer(help="Google Voice web-client bridge: HTTP access and inbox sync.", invoke_without_command=True)


@app.callback()
def _app_callback(ctx: typer.Context) -> None:
    """Default to ``serve-http`` when no subcommand is given."""
    if ctx.invoked_subcommand is None:
        serve_http(host=None, port=None)


@app.command("serve-http")
def serve_http(
    host: Optional[str] = typer.Option(None, help="Host interface. Defaults to HTTP_HOST setting."),
    port: Optional[int] = typer.Option(None, help="Port. Defaults to HTTP_PORT setting."),
) -> None:
    """Run the HTTP service, the automation session and the background inbox sync."""
    settings = get_settings()
    resolved_host = host or settings.http.host
    resolved_port = port or settings.http.port

    if settings.log_rich_enabled:
        from . import rich_logger

        rich_logger.display_startup_banner(settings, resolved_host, resolved_port)

    app_ = build_http_app(settings)
    uvicorn.run(app_, host=resolved_host, port=resolved_port, log_level="info")


async def _sync_once(account: Optional[int]) -> SweepReport:
    settings = get_settings()
    _configure_logging(settings)
    await ensure_schema()
    session = BrowserSession(settings.browser)
    await session.start()
    try:
        synchronizer = InboxSynchronizer(SessionArbiter(session), settings)
        return await synchronizer.sweep(None if account is None else [account])
    finally:
        await session.close()


@app.command("sync-once")
def sync_once(
    account: Optional[int] = typer.Option(None, "--account", help="Only sweep this account index."),
) -> None:
    """Launch a browser session, run one inbox sweep, and exit."""
    settings = get_settings()
    if account is not None and not 0 <= account < settings.sync.account_count:
        console.print(f"[red]--account must be between 0 and {settings.sync.account_count - 1}[/]")
        raise typer.Exit(code=2)
    try:
        report = _run_async(_sync_once(account))
    except Exception as exc:
        console.print(f"[red]Sync failed:[/] {exc}")
        raise typer.Exit(code=1) from exc
    if report.skipped:
        console.print(f"[yellow]Sweep skipped:[/] {report.skipped_reason}")
        return
    console.print(
        f"[green]Sweep finished:[/] {report.rows_written} rows written, "
        f"failed accounts: {report.failed_accounts or 'none'}"
    )
    if report.failed_accounts:
        raise typer.Exit(code=1)


@app.command("normalize")
def normalize(phones: List[str] = typer.Argument(..., help="Raw phone labels to normalize.")) -> None:
    """Print the store key for each raw phone label."""
    for raw in phones:
        sys.stdout.write(f"{raw}\t{normalize_phone(raw)}\n")


@app.command("inboxes")
def inboxes(
    account: Optional[int] = typer.Option(None, "--account", help="Filter by account index."),
    backend_id: Optional[str] = typer.Option(None, "--backend-id", help="Filter by backend id."),
) -> None:
    """List stored inbox summary rows and the item id that opens each conversation."""
    rows = _run_async(list_inbox_summaries(backend_id=backend_id, account_index=account))
    table = Table(title="Inbox summaries")
    table.add_column("Backend")
    table.add_column("Account", justify="right")
    table.add_column("Phone")
    table.add_column("Item id")
    table.add_column("Unread", justify="center")
    table.add_column("Last message")
    table.add_column("Updated (UTC)")
    for row in rows:
        table.add_row(
            row.backend_id,
            str(row.account_index),
            row.phone_number,
            item_id_for_phone(row.phone_number),
            "yes" if row.unread_count else "",
            row.last_message,
            row.updated_at.isoformat(sep=" ", timespec="seconds"),
        )
    console.print(table)
    console.print(f"[dim]{len(rows)} row(s)[/]")


@app.command("migrate")
def migrate() -> None:
    """Create database tables if they do not exist."""
    _run_async(ensure_schema())
    console.print("[green]Database schema ready.[/]")
