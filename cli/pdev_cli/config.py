from __future__ import annotations

import os
import tomllib
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

import tomli_w
from platformdirs import site_config_dir

from . import console

APP_NAME = "pdev-live"
CONFIG_FILENAME = "installer.toml"
ENV_CONFIG_PATH = "PDEV_CONFIG"
ENV_PREFIX = "PDEV_"

PACKAGE_BASE_URL_DEFAULT = "https://vyxenai.com/pdev/install"
PACKAGE_VERSION_DEFAULT = "1.0.0"


@dataclass
class InstallerConfig:
    install_dir: str = "/opt/pdev-live"
    package_base_url: str = PACKAGE_BASE_URL_DEFAULT
    package_version: str = PACKAGE_VERSION_DEFAULT
    app_port: int = 3016
    process_name: str = "pdev-live"
    db_name: str = "pdev_live"
    db_user: str = "pdev_app"
    migrations_dir: str = "/usr/share/pdev-live/migrations"
    migration_marker: str = "/var/lib/pdev-live/migrations.applied"
    nginx_sites_available: str = "/etc/nginx/sites-available"
    nginx_sites_enabled: str = "/etc/nginx/sites-enabled"
    htpasswd_path: str = "/etc/nginx/.htpasswd"
    proxy_group: str = "www-data"
    cert_dir: str = "/etc/letsencrypt/live"
    client_bin_dir: str = "/usr/local/bin"
    client_config_path: str = "~/.pdev-live-config"

    def package_url(self, kind: str) -> str:
        return f"{self.package_base_url.rstrip('/')}/pdev-{kind}-v{self.package_version}.tar.gz"

    def checksum_url(self, kind: str) -> str:
        return f"{self.package_url(kind)}.sha256"


def config_path() -> str:
    override = os.getenv(ENV_CONFIG_PATH, "").strip()
    if override:
        return override
    return f"{site_config_dir(APP_NAME)}/{CONFIG_FILENAME}"


def default_config() -> InstallerConfig:
    return InstallerConfig()


def from_toml(data: dict[str, Any]) -> InstallerConfig:
    cfg = default_config()
    known = {f.name: f for f in fields(InstallerConfig)}
    for key, value in data.items():
        if key not in known:
            console.warn(f"Ignoring unknown config key: {key}")
            continue
        _assign(cfg, key, value)
    return cfg


def _assign(cfg: InstallerConfig, key: str, value: Any) -> None:
    if key == "app_port":
        try:
            value = int(value)
        except (TypeError, ValueError):
            console.warn(f"Ignoring invalid app_port: {value!r}")
            return
    else:
        value = str(value).strip()
        if not value:
            return
    setattr(cfg, key, value)


def apply_env(cfg: InstallerConfig) -> InstallerConfig:
    for f in fields(InstallerConfig):
        raw = os.getenv(f"{ENV_PREFIX}{f.name.upper()}")
        if raw:
            _assign(cfg, f.name, raw)
    return cfg


def load_config(path: str | None = None) -> InstallerConfig:
    target = path or config_path()
    try:
        with open(target, "rb") as fh:
            data = tomllib.load(fh)
    except FileNotFoundError:
        return apply_env(default_config())
    except tomllib.TOMLDecodeError as exc:
        console.warn(f"Config file {target} is not valid TOML ({exc}); using defaults.")
        return apply_env(default_config())
    return apply_env(from_toml(data))


def save_config(cfg: InstallerConfig, path: str | None = None) -> str:
    target = Path(path or config_path())
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(tomli_w.dumps(asdict(cfg)), encoding="utf-8")
    return str(target)
