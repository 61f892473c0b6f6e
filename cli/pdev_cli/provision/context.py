from __future__ import annotations

import os
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

import questionary
from rich.prompt import Confirm

from pdev_core.command import DEFAULT_URL_PREFIX
from pdev_core.credentials import Credentials
from pdev_core.errors import InvalidRequestError
from pdev_core.mode import InstallMode

from ..config import InstallerConfig
from ..runner import HostRunner
from .state import InstallationState

MARKER_NAME = ".pdev-install.json"
ENTRY_FILES = ("server.js", "package.json")
CLIENT_ENTRY_FILES = ("client.sh",)
CLIENT_SCRIPT_NAME = "pdev-live"

_IDENT_RE = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")
_PROCESS_RE = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")


@dataclass(frozen=True)
class InstallOptions:
    dry_run: bool = False
    non_interactive: bool = False
    force: bool = False
    keep_database: bool = False


@dataclass(frozen=True)
class TargetConfig:
    domain: str | None = None
    source_url: str | None = None
    url_prefix: str = DEFAULT_URL_PREFIX
    valid_servers: tuple[str, ...] = ()
    allowed_ips: tuple[str, ...] = ()

    @property
    def base_url(self) -> str:
        if self.domain:
            return f"https://{self.domain}"
        return self.source_url or ""


@dataclass(frozen=True)
class InstallLayout:
    install_dir: Path
    migrations_dir: Path
    migration_marker: Path
    site_file: Path
    site_link: Path
    htpasswd: Path
    cert_dir: Path
    client_script: Path
    client_config: Path
    work_dir: Path

    @property
    def env_file(self) -> Path:
        return self.install_dir / ".env"

    @property
    def marker_file(self) -> Path:
        return self.install_dir / MARKER_NAME

    @property
    def ecosystem_file(self) -> Path:
        return self.install_dir / "ecosystem.config.js"

    @property
    def logs_dir(self) -> Path:
        return self.install_dir / "logs"

    @property
    def node_modules(self) -> Path:
        return self.install_dir / "node_modules"

    def cert_file(self, domain: str) -> Path:
        return self.cert_dir / domain / "fullchain.pem"

    @classmethod
    def from_config(cls, cfg: InstallerConfig, *, install_dir: str | None = None) -> InstallLayout:
        for name in (cfg.db_name, cfg.db_user):
            if not _IDENT_RE.match(name):
                raise InvalidRequestError(f"Invalid database identifier: {name}")
        if not _PROCESS_RE.match(cfg.process_name):
            raise InvalidRequestError(f"Invalid process name: {cfg.process_name}")
        target_dir = Path(install_dir or cfg.install_dir).expanduser()
        if not target_dir.is_absolute():
            raise InvalidRequestError("--install-dir must be an absolute path.")
        if target_dir == Path("/"):
            raise InvalidRequestError("--install-dir cannot be the filesystem root.")
        return cls(
            install_dir=target_dir,
            migrations_dir=Path(cfg.migrations_dir),
            migration_marker=Path(cfg.migration_marker),
            site_file=Path(cfg.nginx_sites_available) / cfg.process_name,
            site_link=Path(cfg.nginx_sites_enabled) / cfg.process_name,
            htpasswd=Path(cfg.htpasswd_path),
            cert_dir=Path(cfg.cert_dir),
            client_script=Path(cfg.client_bin_dir) / CLIENT_SCRIPT_NAME,
            client_config=Path(os.path.expanduser(cfg.client_config_path)),
            work_dir=Path(tempfile.gettempdir()),
        )


class Prompter:
    """Interactive questions; only consulted when the run is interactive."""

    def confirm(self, message: str, *, default: bool = False) -> bool:
        return Confirm.ask(message, default=default)

    def select_mode(self) -> InstallMode:
        choice = questionary.select(
            "What would you like to install?",
            choices=[questionary.Choice(m.label, value=m.value) for m in InstallMode],
        ).ask()
        if not choice:
            raise InvalidRequestError("No installation mode selected.")
        return InstallMode(choice)

    def text(self, message: str) -> str:
        value = questionary.text(message).ask()
        return (value or "").strip()


@dataclass
class PhaseContext:
    mode: InstallMode
    target: TargetConfig
    options: InstallOptions
    config: InstallerConfig
    layout: InstallLayout
    runner: HostRunner
    state: InstallationState
    prompter: Prompter = field(default_factory=Prompter)
    credentials: Credentials | None = None
    force: bool = False
    drop_database_decision: bool | None = None

    def __post_init__(self) -> None:
        self.force = self.force or self.options.force

    @property
    def dry_run(self) -> bool:
        return self.options.dry_run

    @property
    def interactive(self) -> bool:
        return not self.options.non_interactive
