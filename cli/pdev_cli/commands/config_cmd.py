from __future__ import annotations

import os
from dataclasses import asdict

import typer

from .. import console
from ..config import config_path, default_config, load_config, save_config

app = typer.Typer(help="Inspect or create the installer config file.")


@app.command("show")
def show() -> None:
    """Print the effective config (file, then PDEV_* environment)."""
    cfg = load_config()
    console.info(f"Config file: {config_path()}")
    for key, value in asdict(cfg).items():
        console.print(f"{key} = {value}")


@app.command("init")
def init(
        path: str | None = typer.Option(None, "--path", help="Where to write the file."),
        force: bool = typer.Option(False, "--force", help="Overwrite an existing file."),
) -> None:
    """Write a config file holding the defaults."""
    target = path or config_path()
    if os.path.exists(target) and not force:
        console.err(f"{target} already exists. Use --force to overwrite.")
        raise typer.Exit(code=1)
    try:
        written = save_config(default_config(), target)
    except OSError as exc:
        console.err(f"Could not write {target}: {exc}")
        raise typer.Exit(code=1)
    console.ok(f"Wrote {written}")
