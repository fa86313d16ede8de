"""
CLI entrypoint for ssemux.
"""
import asyncio
import json
import sys
from typing import List, Optional

import typer
from loguru import logger
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ssemux.broker.registry import BrokerRegistry
from ssemux.client.binding import open_session
from ssemux.client.session import SessionHandle
from ssemux.shared.config import settings
from ssemux.shared.models import BrokerStats, ConnectionOptions, StreamEvent

app = typer.Typer(help="ssemux: one upstream event stream, many consumers")
console = Console()


def configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


def parse_headers(raw: list[str]) -> dict[str, str]:
    headers = {}
    for item in raw:
        name, sep, value = item.partition(":")
        if not sep or not name.strip():
            raise typer.BadParameter(f"expected Name:Value, got {item!r}", param_hint="--header")
        headers[name.strip()] = value.strip()
    return headers


def render_event(event: StreamEvent) -> str:
    ts = event.received_at.astimezone().strftime("%H:%M:%S")
    data = event.data if isinstance(event.data, str) else json.dumps(event.data)
    if len(data) > 120:
        data = data[:120] + "..."
    return f"[cyan]{ts}[/] [magenta]{escape(event.type)}[/] id={escape(str(event.id))} [green]{escape(data)}[/]"


def render_stats(stats: BrokerStats) -> Table:
    table = Table(title="Broker Stats")
    table.add_column("Field", style="cyan", no_wrap=True)
    table.add_column("Value", style="green")
    for field, value in stats.model_dump().items():
        table.add_row(field, str(value))
    return table


def finished(session: SessionHandle) -> bool:
    return session.status == "closed" or (session.status == "disconnected" and session.error is not None)


@app.callback()
def main(log_level: str = typer.Option(settings.LOG_LEVEL, help="Log level for stderr output")):
    configure_logging(log_level)


@app.command()
def serve(port: int = typer.Option(settings.PORT, help="Port for the demo feed server")):
    """Start the demo feed server using Uvicorn."""
    import uvicorn

    typer.echo(f"Serving demo feed on http://127.0.0.1:{port}/sse/feed")
    uvicorn.run("ssemux.server.main:app", host="0.0.0.0", port=port, log_level=settings.LOG_LEVEL.lower())


@app.command()
def tail(
    url: str = typer.Argument(..., help="Event stream URL"),
    header: Optional[List[str]] = typer.Option(None, "--header", "-H", help="Extra request header, Name:Value"),
    token: Optional[str] = typer.Option(None, help="Bearer token for the Authorization header"),
    max_retries: int = typer.Option(settings.MAX_RETRIES, help="Reconnect attempts before giving up"),
    count: int = typer.Option(0, help="Exit after this many events (0 = no limit)"),
    duration: float = typer.Option(0.0, help="Exit after this many seconds (0 = no limit)"),
):
    """Follow an event stream through a session and print every event."""
    try:
        options = ConnectionOptions(headers=parse_headers(header or []), token=token, max_retries=max_retries)
    except ValidationError as e:
        typer.echo(f"Invalid options: {e}", err=True)
        raise typer.Exit(1)

    try:
        exit_code = asyncio.run(_tail(url, options, count, duration))
    except KeyboardInterrupt:
        exit_code = 0
    raise typer.Exit(exit_code)


async def _tail(url: str, options: ConnectionOptions, count: int, duration: float) -> int:
    registry = BrokerRegistry()
    session = await open_session(url, options, registry=registry, shared=True)
    loop = asyncio.get_running_loop()
    deadline = loop.time() + duration if duration > 0 else None
    printed = 0

    try:
        while not (count and printed >= count):
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                break
            try:
                await session.wait_until(lambda s: s.events_received > printed or finished(s), timeout=remaining)
            except asyncio.TimeoutError:
                break

            fresh = min(session.events_received - printed, len(session.events))
            for event in list(session.events)[len(session.events) - fresh:]:
                console.print(render_event(event))
            printed = session.events_received

            if finished(session):
                if session.error is not None:
                    console.print(f"[red bold]{session.error.name}[/]: {escape(session.error.message)}")
                    return 1
                break
        return 0
    finally:
        stats = session.broker.stats()
        await session.aclose()
        await registry.aclose()
        console.print(render_stats(stats))


if __name__ == "__main__":
    app()
