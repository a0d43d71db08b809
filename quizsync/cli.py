"""
quizsync command line.

Commands:
- quizsync hub serve     : Run the classroom Hub until Ctrl+C
- quizsync hub stats     : Ask a running Hub for its statistics
"""
from __future__ import annotations

import asyncio
import sys
from typing import Optional

import typer
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from .cache import LocalCache
from .config import get_settings
from .errors import RelayConnectError
from .hub import Hub, local_ip
from .relay_link import RelayLink

console = Console()

app = typer.Typer(
    name="quizsync",
    help="Offline-first classroom response sync",
    no_args_is_help=True,
)

hub_app = typer.Typer(
    name="hub",
    help="Local Hub relay commands",
    no_args_is_help=True,
)
app.add_typer(hub_app)


def configure_logging(level: str) -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format="<green>{time:HH:mm:ss}</green> <level>{level: <7}</level> {message}",
    )


@hub_app.command("serve")
def hub_serve(
    host: Optional[str] = typer.Option(None, "--host", "-H", help="Interface to bind"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port to listen on"),
):
    """
    Run the Local Hub so classroom devices can share answers offline.

    Examples:
        quizsync hub serve
        quizsync hub serve --port 9000
    """
    settings = get_settings()
    port = port or settings.hub_port
    address = f"{local_ip()}:{port}"

    console.print(
        Panel(
            f"WebSocket Server: [bold]ws://{address}[/bold]\n"
            f"Web Interface:    http://{address}/info\n"
            f"Local Access:     http://localhost:{port}/info\n\n"
            f"Share this address with students: [bold cyan]{address}[/bold cyan]\n"
            "[dim]Press Ctrl+C to stop the server[/dim]",
            title="Classroom Local Hub",
            border_style="cyan",
        )
    )

    hub = Hub(settings)
    try:
        asyncio.run(hub.run(host, port))
    except KeyboardInterrupt:
        console.print("[yellow]Hub stopped[/yellow]")


async def _fetch_stats(address: str, timeout_ms: int):
    link = RelayLink(LocalCache())
    await link.connect(address, timeout_ms=timeout_ms)
    try:
        await link.request_stats()
        deadline = asyncio.get_running_loop().time() + timeout_ms / 1000
        while link.last_stats is None and link.is_open:
            if asyncio.get_running_loop().time() > deadline:
                break
            await asyncio.sleep(0.05)
        return link.last_stats
    finally:
        await link.close()


@hub_app.command("stats")
def hub_stats(
    address: str = typer.Argument(..., help="Hub address, e.g. 192.168.1.100:8080"),
):
    """Show connection, user and response counts of a running Hub."""
    settings = get_settings()
    try:
        stats = asyncio.run(_fetch_stats(address, settings.connect_timeout_ms))
    except RelayConnectError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(1)

    if stats is None:
        console.print("[red]Hub did not answer the stats request[/red]")
        raise typer.Exit(1)

    table = Table(title=f"Hub {address}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Connected clients", str(stats.connected_clients))
    table.add_row("Active users", str(stats.active_users))
    table.add_row("Stored responses", str(stats.total_responses))
    table.add_row("Uptime", f"{stats.uptime // 1000}s")
    console.print(table)


def main() -> None:
    """CLI entry point."""
    configure_logging(get_settings().log_level)
    app()


if __name__ == "__main__":
    main()
