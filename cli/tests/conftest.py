from __future__ import annotations

import json
import os
import re
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

import pytest

from pdev_cli.config import InstallerConfig
from pdev_cli.provision import phases, verify
from pdev_cli.provision.context import InstallOptions, PhaseContext, Prompter, TargetConfig
from pdev_cli.provision.fetcher import ExtractedPackage
from pdev_cli.provision.orchestrator import build_context
from pdev_cli.runner import HostRunner
from pdev_core.mode import InstallMode

PROCESS_NAME = "pdev-live"
_SQL_OBJECT_RE = re.compile(r"(CREATE|DROP) (DATABASE|ROLE)(?: IF EXISTS)? (\w+)")


class FakeRunner(HostRunner):
    """Records every command and simulates PostgreSQL, PM2, npm and htpasswd in memory."""

    def __init__(self, dry_run: bool = False) -> None:
        super().__init__(dry_run=dry_run)
        self.calls: list[list[str]] = []
        self.inputs: list[str] = []
        self.databases: set[str] = set()
        self.roles: set[str] = set()
        self.online: set[str] = set()
        self.migrations_run = 0
        self.chowned: list[tuple[str, str | None, str | None]] = []
        self._failures: list[tuple[Callable[[list[str]], bool], int]] = []

    def fail_when(self, predicate: Callable[[list[str]], bool], code: int = 1) -> None:
        self._failures.append((predicate, code))

    def executed(self, *needles: str) -> bool:
        return any(all(n in " ".join(argv) for n in needles) for argv in self.calls)

    def chown(self, path, *, user=None, group=None) -> None:
        if self.dry_run:
            super().chown(path, user=user, group=group)
            return
        self.chowned.append((str(path), user, group))

    def _exec(self, argv, *, cwd, timeout, content=None) -> subprocess.CompletedProcess:
        argv = list(argv)
        self.calls.append(argv)
        if content is not None:
            self.inputs.append(content)
        for predicate, code in self._failures:
            if predicate(argv):
                return subprocess.CompletedProcess(argv, code, "", "injected failure")
        return subprocess.CompletedProcess(argv, 0, self._simulate(argv, cwd, content), "")

    def _simulate(self, argv: list[str], cwd: str | None, content: str | None) -> str:
        if argv == ["node", "--version"]:
            return "v20.11.0"
        if argv == ["psql", "--version"]:
            return "psql (PostgreSQL) 16.2"
        if "psql" in argv:
            return self._psql(argv, content)
        if argv[:2] == ["pm2", "jlist"]:
            return json.dumps([{"name": n, "pm2_env": {"status": "online"}} for n in sorted(self.online)])
        if argv[:2] == ["pm2", "start"]:
            self.online.add(PROCESS_NAME)
        if argv[:2] == ["pm2", "delete"]:
            self.online.discard(argv[2])
        if argv[:2] == ["npm", "install"] and cwd:
            (Path(cwd) / "node_modules").mkdir(exist_ok=True)
        if argv[:1] == ["htpasswd"]:
            Path(argv[4]).write_text(f"{argv[5]}:$2y$05$hash\n", encoding="utf-8")
        return ""

    def _psql(self, argv: list[str], content: str | None) -> str:
        if "-tAc" in argv:
            sql = argv[argv.index("-tAc") + 1]
            if "pg_database" in sql:
                return "1" if any(f"'{db}'" in sql for db in self.databases) else ""
            if "rolsuper" in sql:
                return "f"
            if "pg_roles" in sql:
                return "1" if any(f"'{role}'" in sql for role in self.roles) else ""
            if "COUNT(*)" in sql:
                return str(self.migrations_run)
            if "listen_addresses" in sql:
                return "localhost"
            return ""
        if "-f" in argv:
            self.migrations_run += 1
            return ""
        sql = argv[argv.index("-c") + 1] if "-c" in argv else (content or "")
        match = _SQL_OBJECT_RE.search(sql)
        if match:
            verb, kind, name = match.groups()
            bucket = self.databases if kind == "DATABASE" else self.roles
            if verb == "CREATE":
                bucket.add(name)
            else:
                bucket.discard(name)
        return ""


class ScriptedPrompter(Prompter):
    def __init__(self, answers: list[bool] | None = None) -> None:
        self.answers = list(answers or [])
        self.questions: list[str] = []

    def confirm(self, message: str, *, default: bool = False) -> bool:
        self.questions.append(message)
        if not self.answers:
            raise AssertionError(f"unexpected prompt: {message}")
        return self.answers.pop(0)


def snapshot(root: Path, *, exclude: tuple[Path, ...] = ()) -> dict[str, tuple]:
    """Every path under root with its mode and content (symlinks by target)."""
    state: dict[str, tuple] = {}
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            path = Path(dirpath) / name
            if path in exclude:
                continue
            rel = str(path.relative_to(root))
            if path.is_symlink():
                state[rel] = ("link", os.readlink(path))
            elif path.is_dir():
                state[rel] = ("dir", path.stat().st_mode & 0o777)
            else:
                state[rel] = ("file", path.stat().st_mode & 0o777, path.read_bytes())
    return state


@dataclass
class FakeHost:
    root: Path
    config: InstallerConfig
    runner: FakeRunner
    prompter: ScriptedPrompter = field(default_factory=ScriptedPrompter)
    package_files: dict[str, str] = field(default_factory=dict)

    @property
    def install_dir(self) -> Path:
        return Path(self.config.install_dir)

    @property
    def migration_marker(self) -> Path:
        return Path(self.config.migration_marker)

    def make_package(self) -> ExtractedPackage:
        pkg = Path(tempfile.mkdtemp(prefix="pkg.", dir=self.root.parent))
        for rel, text in self.package_files.items():
            (pkg / rel).parent.mkdir(parents=True, exist_ok=True)
            (pkg / rel).write_text(text, encoding="utf-8")
        return ExtractedPackage(root=pkg, app_root=pkg, flattened=False)

    def context(
            self,
            mode: InstallMode = InstallMode.SOURCE,
            *,
            non_interactive: bool = True,
            dry_run: bool = False,
            force: bool = False,
            keep_database: bool = False,
    ) -> PhaseContext:
        if mode is InstallMode.SOURCE:
            target = TargetConfig(domain="example.com")
        else:
            target = TargetConfig(source_url="https://pdev.example.com")
        self.runner.dry_run = dry_run
        options = InstallOptions(
            dry_run=dry_run,
            non_interactive=non_interactive,
            force=force,
            keep_database=keep_database,
        )
        return build_context(mode, target, options, config=self.config, runner=self.runner, prompter=self.prompter)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch, tmp_path) -> None:
    for key in list(os.environ):
        if key.startswith(("PDEV_", "RELAY_")):
            monkeypatch.delenv(key)
    monkeypatch.setenv("PDEV_CONFIG", str(tmp_path / "no-such-installer.toml"))


@pytest.fixture
def installer_config(tmp_path) -> InstallerConfig:
    root = tmp_path / "host"
    for rel in ("opt", "var/lib/pdev-live", "nginx/sites-available", "nginx/sites-enabled", "bin", "home"):
        (root / rel).mkdir(parents=True)
    migrations = root / "migrations"
    migrations.mkdir()
    (migrations / "001_create_tables.sql").write_text("CREATE TABLE pdev_migrations (name text);\n", encoding="utf-8")
    (migrations / "002_add_sessions.sql").write_text("CREATE TABLE sessions (id serial);\n", encoding="utf-8")
    return InstallerConfig(
        install_dir=str(root / "opt" / "pdev-live"),
        migrations_dir=str(migrations),
        migration_marker=str(root / "var/lib/pdev-live/migrations.applied"),
        nginx_sites_available=str(root / "nginx/sites-available"),
        nginx_sites_enabled=str(root / "nginx/sites-enabled"),
        htpasswd_path=str(root / "nginx/.htpasswd"),
        cert_dir=str(root / "letsencrypt"),
        client_bin_dir=str(root / "bin"),
        client_config_path=str(root / "home/.pdev-live-config"),
    )


@pytest.fixture
def host(tmp_path, monkeypatch, installer_config) -> FakeHost:
    fake = FakeHost(
        root=tmp_path / "host",
        config=installer_config,
        runner=FakeRunner(),
        package_files={
            "server.js": "require('./app');\n",
            "package.json": '{"name": "pdev-live", "version": "1.0.0"}\n',
            "client.sh": "#!/usr/bin/env bash\necho pdev\n",
        },
    )
    monkeypatch.setattr(phases, "check_prerequisites", lambda ctx, undo: "ok")
    monkeypatch.setattr(phases, "_fetch_package", lambda ctx, kind, entry_files: fake.make_package())
    monkeypatch.setattr(phases.time, "sleep", lambda _s: None)
    monkeypatch.setattr(verify, "port_in_use", lambda port: True)
    monkeypatch.setattr(verify, "_get", lambda url, **kwargs: None)
    return fake
