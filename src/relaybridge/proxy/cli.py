from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ..logging_utils import configure_logging
from .config import ProxyConfig
from .credentials import CredentialSource
from .errors import CredentialError

app = typer.Typer(help="RelayBridge chat-completion proxy")
console = Console()


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind address (overrides config)"),
    port: Optional[int] = typer.Option(None, help="Listen port (overrides config)"),
    streaming_mode: Optional[str] = typer.Option(
        None, "--streaming-mode", help="real (passthrough) or fake (buffered)"
    ),
    log_dir: Optional[Path] = typer.Option(None, help="Directory for the process log"),
):
    """Start the proxy and wait for a worker to attach."""

    import uvicorn

    from .app import create_app
    from .context import ProxyContext

    cfg = ProxyConfig.load()
    if host:
        cfg.host = host
    if port:
        cfg.port = port
    if streaming_mode:
        if streaming_mode not in ("real", "fake"):
            raise typer.BadParameter("streaming mode must be 'real' or 'fake'")
        cfg.streaming_mode = streaming_mode

    log_path = configure_logging(
        "relaybridge",
        level=logging.DEBUG if cfg.debug_mode else logging.INFO,
        log_dir=log_dir,
    )
    console.print(f"[green]Logging to {log_path}[/green]")

    try:
        context = ProxyContext.create(cfg)
    except CredentialError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)

    uvicorn.run(create_app(context), host=cfg.host, port=cfg.port)


@app.command()
def accounts(
    credential_dir: Optional[Path] = typer.Option(
        None, help="Directory holding auth-<n>.json files"
    ),
):
    """List the credentials the proxy would rotate through."""

    cfg = ProxyConfig.load()
    source = CredentialSource(
        credential_dir or cfg.credential_dir, require_any=False
    )
    details = source.account_details()
    if not details:
        console.print("[yellow]No credentials found.[/yellow]")
        raise typer.Exit(code=1)

    table = Table(title=f"Credentials ({source.mode} mode)")
    table.add_column("Index", justify="right")
    table.add_column("Source")
    table.add_column("Start", justify="center")
    start = cfg.initial_auth_index
    if start not in source.available_indices():
        start = source.first_available()
    for entry in details:
        table.add_row(
            str(entry["index"]),
            entry["source"],
            "*" if entry["index"] == start else "",
        )
    console.print(table)


if __name__ == "__main__":  # pragma: no cover
    app()
