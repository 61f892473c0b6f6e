from __future__ import annotations

import logging

from rich.console import Console
from rich.markup import escape

console = Console()
_log = logging.getLogger("pdev_cli.console")
# transcript goes to the install log file only, never twice to the terminal
_log.propagate = False
_log.addHandler(logging.NullHandler())


def info(msg: str) -> None:
    _log.info(msg)
    console.print(f"[bold cyan]•[/] {escape(msg)}")


def ok(msg: str) -> None:
    _log.info("OK %s", msg)
    console.print(f"[bold green]OK[/] {escape(msg)}")


def warn(msg: str) -> None:
    _log.warning(msg)
    console.print(f"[bold yellow]WARN[/] {escape(msg)}")


def err(msg: str) -> None:
    _log.error(msg)
    console.print(f"[bold red]ERR[/] {escape(msg)}")


def print(*args, **kwargs):
    """Proxy to underlying rich Console.print(). Not mirrored to the log file."""
    console.print(*args, **kwargs)


def rule(title: str = "", **kwargs) -> None:
    if title:
        _log.info("== %s ==", title)
    console.rule(title, **kwargs)
