from __future__ import annotations

import typer

from .commands import audit_cmd, config_cmd, install_cmd, relay_cmd


def _build_app() -> typer.Typer:
    app = typer.Typer(
        name="pdev-install",
        help="PDev Live installer",
        no_args_is_help=True,
    )
    app.command("install")(install_cmd.install)
    app.command("audit")(audit_cmd.audit)
    app.add_typer(config_cmd.app, name="config")
    app.add_typer(relay_cmd.app, name="relay")
    return app


app = _build_app()
