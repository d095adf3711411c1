"""CLI entry point for termhub."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Iterator

import httpx
import typer
from rich.console import Console
from rich.table import Table

from termhub.config import TermhubConfig

app = typer.Typer(
    name="termhub",
    help="Shared terminal sessions and streamed one-shot queries over HTTP.",
    no_args_is_help=True,
)

console = Console()
err_console = Console(stderr=True)


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _server_url(config_file: str | None, url: str | None) -> str:
    if url:
        return url.rstrip("/")
    return TermhubConfig.load(config_file).client.server_url.rstrip("/")


def _fail(message: str) -> typer.Exit:
    # Server-supplied text may contain brackets; never parse it as markup.
    err_console.print(message, style="red", markup=False, highlight=False)
    return typer.Exit(code=1)


def _request(method: str, url: str, data: dict[str, Any] | None = None) -> Any:
    """Call the running server and return the decoded JSON body."""
    try:
        resp = httpx.request(method, url, json=data, timeout=10.0)
    except httpx.ConnectError:
        raise _fail(f"Cannot connect to termhub server at {url}. Is it running?")
    except httpx.HTTPError as e:
        raise _fail(f"Error: {e}")

    if resp.is_error:
        try:
            detail = resp.json().get("error", resp.text)
        except ValueError:
            detail = resp.text
        raise _fail(f"Server error ({resp.status_code}): {detail}")
    return resp.json()


def iter_sse_events(lines: Iterator[str]) -> Iterator[dict[str, Any]]:
    """Decode ``data:`` lines of an SSE stream into event dicts."""
    for line in lines:
        if not line.startswith("data:"):
            continue
        payload = line[len("data:"):].strip()
        if not payload:
            continue
        try:
            event = json.loads(payload)
        except json.JSONDecodeError:
            continue
        if isinstance(event, dict):
            yield event


# ------------------------------------------------------------------
# Server
# ------------------------------------------------------------------


@app.command()
def serve(
    host: str | None = typer.Option(None, "--host", help="Listen address."),
    port: int | None = typer.Option(None, "--port", "-p", help="Listen port."),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Run the session broker."""
    import uvicorn

    from termhub.server import create_app

    setup_logging(verbose)
    config = TermhubConfig.load(config_file)
    if host:
        config.server.host = host
    if port:
        config.server.port = port

    uvicorn.run(
        create_app(config),
        host=config.server.host,
        port=config.server.port,
        log_level="debug" if verbose else "info",
    )


# ------------------------------------------------------------------
# Sessions
# ------------------------------------------------------------------


@app.command("list")
def list_sessions(
    url: str | None = typer.Option(None, "--url", "-u", help="Server URL."),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """List running sessions, most recently active first."""
    base = _server_url(config_file, url)
    sessions = _request("GET", f"{base}/api/sessions")

    if not sessions:
        console.print("No sessions.")
        return

    table = Table(title="Sessions")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title")
    table.add_column("Directory")
    table.add_column("Created")
    for s in sessions:
        table.add_row(s["id"], s["title"], s["cwd"], s["createdAt"])
    console.print(table)


@app.command()
def new(
    cwd: str | None = typer.Option(
        None, "--cwd", "-d", help="Working directory inside the workspace."
    ),
    title: str | None = typer.Option(None, "--title", "-t", help="Session title."),
    attach: bool = typer.Option(
        False, "--attach", "-a", help="Attach to the session once created."
    ),
    url: str | None = typer.Option(None, "--url", "-u", help="Server URL."),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Start a new shell session."""
    base = _server_url(config_file, url)
    body: dict[str, Any] = {}
    if cwd:
        body["cwd"] = cwd
    if title:
        body["title"] = title

    session = _request("POST", f"{base}/api/sessions", body)
    console.print(f"Created [cyan]{session['id']}[/cyan] ({session['title']})")
    if attach:
        _attach(session["id"], base, config_file)


@app.command()
def rename(
    session_id: str = typer.Argument(help="Session id."),
    title: str = typer.Argument(help="New title."),
    url: str | None = typer.Option(None, "--url", "-u", help="Server URL."),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Rename a session."""
    base = _server_url(config_file, url)
    session = _request("PATCH", f"{base}/api/sessions/{session_id}", {"title": title})
    console.print(f"Renamed [cyan]{session['id']}[/cyan] to {session['title']}")


@app.command()
def kill(
    session_id: str = typer.Argument(help="Session id."),
    url: str | None = typer.Option(None, "--url", "-u", help="Server URL."),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Terminate a session and its process."""
    base = _server_url(config_file, url)
    _request("DELETE", f"{base}/api/sessions/{session_id}")
    console.print(f"Terminated [cyan]{session_id}[/cyan]")


def _attach(session_id: str, base: str, config_file: str | None) -> None:
    from termhub.client.attach import TerminalAttachClient

    # Unknown ids are refused at the handshake; check first for a clear error.
    _request("GET", f"{base}/api/sessions/{session_id}")

    client_config = TermhubConfig.load(config_file).client
    client_config.server_url = base
    console.print(f"Attached to [cyan]{session_id}[/cyan]. Press Ctrl-] to detach.")
    asyncio.run(TerminalAttachClient(session_id, client_config).run())


@app.command()
def attach(
    session_id: str = typer.Argument(help="Session id."),
    url: str | None = typer.Option(None, "--url", "-u", help="Server URL."),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Attach this terminal to a running session."""
    if verbose:
        setup_logging(verbose)
    _attach(session_id, _server_url(config_file, url), config_file)


# ------------------------------------------------------------------
# Queries
# ------------------------------------------------------------------


@app.command()
def ask(
    message: str = typer.Argument(help="Prompt to send."),
    session: str | None = typer.Option(
        None, "--session", "-s", help="Resume token from a previous answer."
    ),
    url: str | None = typer.Option(None, "--url", "-u", help="Server URL."),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Run a one-shot query and stream the answer."""
    base = _server_url(config_file, url)
    body: dict[str, Any] = {"message": message}
    if session:
        body["sessionId"] = session

    token: str | None = None
    failed = False
    try:
        with httpx.Client(timeout=None) as client:
            with client.stream("POST", f"{base}/api/chat", json=body) as resp:
                if resp.is_error:
                    resp.read()
                    try:
                        detail = resp.json().get("error", resp.text)
                    except ValueError:
                        detail = resp.text
                    raise _fail(f"Server error ({resp.status_code}): {detail}")

                for event in iter_sse_events(resp.iter_lines()):
                    kind = event.get("type")
                    if kind == "text":
                        console.print(
                            event.get("content", ""),
                            end="",
                            markup=False,
                            highlight=False,
                        )
                    elif kind == "error":
                        failed = True
                        err_console.print(
                            "\n" + event.get("content", ""),
                            style="red",
                            markup=False,
                            highlight=False,
                        )
                    elif kind == "done":
                        token = event.get("sessionId")
                        break
    except httpx.ConnectError:
        raise _fail(f"Cannot connect to termhub server at {base}. Is it running?")
    except httpx.HTTPError as e:
        raise _fail(f"Error: {e}")

    console.print()
    if token:
        console.print(f"[dim]Resume with --session {token}[/dim]")
    if failed:
        raise typer.Exit(code=1)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
