from __future__ import annotations

import typer
import uvicorn
from pydantic import ValidationError

from pdev_relay.app import create_app
from pdev_relay.settings import RelaySettings

from .. import console
from ..logging_ import setup_service_logging

app = typer.Typer(help="Browser-driven remote installation relay.")


@app.command("serve")
def serve(
        host: str | None = typer.Option(None, "--host", help="Bind address (default from RELAY_HOST)."),
        port: int | None = typer.Option(None, "--port", help="Bind port (default from RELAY_PORT)."),
        verbose: bool = typer.Option(False, "-v", "--verbose", help="Verbose logs."),
) -> None:
    """Run the relay service until interrupted."""
    try:
        settings = RelaySettings()
    except ValidationError as exc:
        console.err(f"Invalid relay settings: {exc}")
        raise typer.Exit(code=2)
    setup_service_logging("debug" if verbose else settings.log_level)
    if host:
        settings.host = host
    if port:
        settings.port = port

    console.info(f"Relay listening on {settings.host}:{settings.port} (max {settings.max_tunnels} tunnels)")
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        ws_max_size=settings.max_frame_bytes,
        timeout_graceful_shutdown=int(settings.shutdown_grace) + 1,
    )
