from __future__ import annotations

import json
import os
import re
import shutil
import socket
import subprocess
import tempfile
import time
from pathlib import Path
from typing import Callable

from pdev_core.errors import PhaseError, PreflightError
from pdev_core.mode import InstallMode

from .. import console
from . import fetcher
from .context import CLIENT_ENTRY_FILES, ENTRY_FILES, PhaseContext
from .state import (
    PHASE_CLIENT,
    PHASE_DEPENDENCIES,
    PHASE_FILES,
    PHASE_PROCESS,
    PHASE_PROXY,
    SKIPPED,
    UndoAction,
)
from .templates import CLIENT_CONFIG, ECOSYSTEM, ENV_FILE, NGINX_SITE, render, timestamp

MIN_NODE_MAJOR = 18
MIN_PSQL_MAJOR = 14
MIN_DISK_BYTES = 2 * 1024 ** 3
MIN_MEMORY_BYTES = 1024 ** 3
PROCESS_START_TIMEOUT = 30.0
REQUIRED_TOOLS = ("nginx", "pm2", "npm", "htpasswd")
CLIENT_TOOLS = ("bash", "curl")


# --- probes ---------------------------------------------------------------

def is_root() -> bool:
    return os.geteuid() == 0


def tool_major(ctx: PhaseContext, argv: list[str]) -> int | None:
    res = ctx.runner.probe(argv)
    if res.returncode != 0:
        return None
    match = re.search(r"(\d+)(?:\.\d+)*", f"{res.stdout} {res.stderr}")
    return int(match.group(1)) if match else None


def port_in_use(port: int, host: str = "127.0.0.1") -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(0.5)
        return sock.connect_ex((host, port)) == 0


def available_memory() -> int | None:
    try:
        with open("/proc/meminfo", encoding="utf-8") as fh:
            for line in fh:
                if line.startswith("MemAvailable:"):
                    return int(line.split()[1]) * 1024
    except (OSError, ValueError, IndexError):
        return None
    return None


def nearest_existing(path: Path) -> Path:
    for candidate in (path, *path.parents):
        if candidate.exists():
            return candidate
    return Path("/")


def process_status(ctx: PhaseContext) -> str | None:
    """PM2 status of our process, or None when absent or PM2 is unavailable."""
    res = ctx.runner.probe(["pm2", "jlist"])
    if res.returncode != 0:
        return None
    try:
        procs = json.loads(res.stdout or "[]")
    except json.JSONDecodeError:
        return None
    for proc in procs if isinstance(procs, list) else []:
        if isinstance(proc, dict) and proc.get("name") == ctx.config.process_name:
            return str((proc.get("pm2_env") or {}).get("status") or "unknown")
    return None


def read_marker(path: Path) -> dict | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def _fail(phase: str, res: subprocess.CompletedProcess, message: str) -> None:
    if res.returncode == 0:
        return
    lines = (res.stderr or res.stdout or "").strip().splitlines()
    detail = lines[-1] if lines else f"exit {res.returncode}"
    raise PhaseError(phase, f"{message}: {detail}", timed_out=res.returncode == 124)


# --- detect existing install ----------------------------------------------

def detect_existing(ctx: PhaseContext, undo: list[UndoAction]) -> str:
    layout = ctx.layout
    marker = read_marker(layout.marker_file)
    if ctx.mode is InstallMode.PROJECT:
        marker = None
        found = layout.client_script.exists() or layout.client_config.exists()
        where = str(layout.client_script)
    else:
        status = process_status(ctx)
        found = bool(marker) or status is not None or (layout.install_dir / ENTRY_FILES[0]).exists()
        where = str(layout.install_dir)
    if not found:
        console.ok("No existing installation found.")
        return "none"
    if ctx.force:
        console.warn(f"Existing installation at {where} will be overwritten (--force).")
        return "force-overwrite"
    if marker and (marker.get("mode") != ctx.mode.value or marker.get("version") != ctx.config.package_version):
        console.warn(
            f"Existing {marker.get('mode')} install v{marker.get('version')} differs from requested "
            f"{ctx.mode.value} v{ctx.config.package_version}; continuing, satisfied steps will be skipped."
        )
        return "mismatch"
    if ctx.interactive:
        if ctx.prompter.confirm(f"An installation already exists at {where}. Overwrite it?", default=False):
            ctx.force = True
            return "force-overwrite"
        raise PreflightError("Aborted: existing installation left untouched.")
    raise PreflightError(f"Existing installation found at {where}. Re-run with --force to overwrite.")


# --- prerequisites ---------------------------------------------------------

def check_prerequisites(ctx: PhaseContext, undo: list[UndoAction]) -> str:
    problems: list[str] = []
    if not is_root():
        if ctx.dry_run:
            console.warn("Not running as root; a real install will require sudo.")
        else:
            problems.append("Must run as root (use sudo).")

    disk_root = nearest_existing(ctx.layout.install_dir)
    free = shutil.disk_usage(disk_root).free
    if free < MIN_DISK_BYTES:
        problems.append(f"Insufficient disk space under {disk_root}: {free // 1024 ** 2} MiB free, 2048 MiB required.")

    if ctx.mode is InstallMode.PROJECT:
        for tool in CLIENT_TOOLS:
            if shutil.which(tool) is None:
                problems.append(f"Required tool not found: {tool}")
        return _report_prerequisites(problems)

    node = tool_major(ctx, ["node", "--version"])
    if node is None or node < MIN_NODE_MAJOR:
        problems.append(f"Node.js >= {MIN_NODE_MAJOR} required (found: {node or 'none'}).")
    pg = tool_major(ctx, ["psql", "--version"])
    if pg is None or pg < MIN_PSQL_MAJOR:
        problems.append(f"PostgreSQL client >= {MIN_PSQL_MAJOR} required (found: {pg or 'none'}).")
    for tool in REQUIRED_TOOLS:
        if shutil.which(tool) is None:
            problems.append(f"Required tool not found: {tool}")

    memory = available_memory()
    if memory is not None and memory < MIN_MEMORY_BYTES:
        console.warn(f"Low available memory: {memory // 1024 ** 2} MiB (1024 MiB recommended).")

    port = ctx.config.app_port
    if port_in_use(port):
        if process_status(ctx) == "online":
            console.info(f"Port {port} is served by the existing {ctx.config.process_name} process.")
        else:
            problems.append(f"Port {port} is already in use by another process.")

    cert = ctx.layout.cert_file(ctx.target.domain or "")
    if not cert.exists():
        if ctx.interactive and not problems:
            if not ctx.prompter.confirm(f"TLS certificate {cert} not found. Continue anyway?", default=False):
                problems.append("TLS certificate missing.")
        elif ctx.interactive or ctx.dry_run:
            console.warn(f"TLS certificate not found: {cert}")
        else:
            problems.append(f"TLS certificate not found: {cert} (issue it with certbot first).")

    return _report_prerequisites(problems)


def _report_prerequisites(problems: list[str]) -> str:
    if problems:
        for problem in problems:
            console.err(problem)
        raise PreflightError("; ".join(problems))
    console.ok("Prerequisites satisfied.")
    return "ok"


# --- application files -----------------------------------------------------

def _fetch_package(ctx: PhaseContext, kind: str, entry_files: tuple[str, ...]) -> fetcher.ExtractedPackage:
    download_dir = Path(tempfile.mkdtemp(prefix="pdev-download.", dir=ctx.layout.work_dir))
    try:
        archive = fetcher.fetch(ctx.config.package_url(kind), ctx.config.checksum_url(kind), download_dir)
        return fetcher.extract(archive, entry_files)
    finally:
        shutil.rmtree(download_dir, ignore_errors=True)


def install_files(ctx: PhaseContext, undo: list[UndoAction]) -> str:
    layout, runner, cfg = ctx.layout, ctx.runner, ctx.config
    marker = read_marker(layout.marker_file)
    if (
        not ctx.force
        and marker
        and marker.get("mode") == ctx.mode.value
        and marker.get("version") == cfg.package_version
        and layout.env_file.exists()
    ):
        console.ok(f"Application v{cfg.package_version} already installed in {layout.install_dir}.")
        return SKIPPED

    if ctx.dry_run:
        console.info(f"[dry-run] download {cfg.package_url('source')} and verify its checksum")
        package = None
    else:
        package = _fetch_package(ctx, "source", ENTRY_FILES)

    try:
        install_dir = layout.install_dir
        if install_dir.exists():
            backup = install_dir.with_name(f"{install_dir.name}.bak-{time.strftime('%Y%m%d%H%M%S')}")
            console.warn(f"Backing up existing {install_dir} to {backup}")
            runner.move(install_dir, backup)

            def restore(backup=backup) -> None:
                runner.remove_tree(install_dir)
                runner.move(backup, install_dir)

            undo.append(UndoAction(f"restore {install_dir} from backup", restore))
        else:
            undo.append(UndoAction(f"remove {install_dir}", lambda: runner.remove_tree(install_dir)))

        runner.make_dirs(install_dir, mode=0o750)
        runner.copy_tree(package.app_root if package else "<verified package>", install_dir)
    finally:
        if package:
            package.cleanup()

    runner.make_dirs(layout.logs_dir, mode=0o750)
    runner.write_file(
        layout.ecosystem_file,
        render(
            ECOSYSTEM,
            version=cfg.package_version,
            process_name=cfg.process_name,
            install_dir=install_dir,
            port=cfg.app_port,
        ),
        mode=0o640,
    )

    creds = ctx.credentials
    undo.append(UndoAction(f"erase {layout.env_file}", lambda: runner.secure_erase(layout.env_file)))
    runner.write_file(
        layout.env_file,
        render(
            ENV_FILE,
            version=cfg.package_version,
            generated_at=timestamp(),
            port=cfg.app_port,
            base_url=ctx.target.base_url,
            url_prefix=ctx.target.url_prefix,
            install_dir=install_dir,
            http_user=creds.http_user,
            http_password=creds.http_password,
            db_name=cfg.db_name,
            db_user=cfg.db_user,
            db_password=creds.db_password,
            admin_key=creds.admin_key,
            valid_servers=",".join(ctx.target.valid_servers),
            allowed_ips=",".join(ctx.target.allowed_ips),
        ),
        mode=0o600,
        log_label=f"{layout.env_file} (secrets)",
    )
    runner.chmod(install_dir, 0o750)
    runner.write_file(
        layout.marker_file,
        json.dumps(
            {"mode": ctx.mode.value, "version": cfg.package_version, "installed_at": timestamp()},
            indent=2,
        ),
        mode=0o644,
    )

    if not ctx.dry_run:
        missing = [name for name in ENTRY_FILES if not (install_dir / name).is_file()]
        if missing:
            raise PhaseError(PHASE_FILES, f"Install directory is missing {', '.join(missing)}")
        if layout.env_file.stat().st_mode & 0o777 != 0o600:
            raise PhaseError(PHASE_FILES, f"{layout.env_file} permissions are not 600")
    console.ok(f"Application files installed in {install_dir}.")
    return "ok"


def install_dependencies(ctx: PhaseContext, undo: list[UndoAction]) -> str:
    layout, runner = ctx.layout, ctx.runner
    had_modules = layout.node_modules.exists()
    if not had_modules:
        undo.append(UndoAction(f"remove {layout.node_modules}", lambda: runner.remove_tree(layout.node_modules)))
    res = runner.run(
        ["npm", "install", "--omit=dev", "--no-audit", "--no-fund"],
        cwd=str(layout.install_dir),
        timeout=600,
    )
    _fail(PHASE_DEPENDENCIES, res, "npm install failed")
    if not ctx.dry_run and not layout.node_modules.is_dir():
        raise PhaseError(PHASE_DEPENDENCIES, "node_modules was not created")
    console.ok("Dependencies installed.")
    return "ok"


# --- reverse proxy ---------------------------------------------------------

def configure_proxy(ctx: PhaseContext, undo: list[UndoAction]) -> str:
    layout, runner, cfg = ctx.layout, ctx.runner, ctx.config
    site = render(
        NGINX_SITE,
        version=cfg.package_version,
        process_name=cfg.process_name.replace("-", "_"),
        port=cfg.app_port,
        domain=ctx.target.domain,
        cert_dir=layout.cert_dir,
        url_prefix=ctx.target.url_prefix.rstrip("/"),
        htpasswd=layout.htpasswd,
    )
    current = layout.site_file.read_text(encoding="utf-8") if layout.site_file.exists() else None
    if current == site and layout.site_link.exists() and layout.htpasswd.exists() and not ctx.force:
        console.ok("Reverse proxy already configured.")
        return SKIPPED

    def reload_proxy() -> None:
        runner.run(["nginx", "-s", "reload"])

    def restore_site(previous=current) -> None:
        runner.remove_file(layout.site_link)
        if previous is None:
            runner.remove_file(layout.site_file)
        else:
            runner.write_file(layout.site_file, previous, mode=0o644)

    # registered first so it runs last: reload after files are gone
    undo.append(UndoAction("reload nginx", reload_proxy, ignore_errors=True))
    undo.append(UndoAction(f"remove {layout.site_file}", restore_site))
    runner.write_file(layout.site_file, site, mode=0o644)

    undo.append(UndoAction(f"erase {layout.htpasswd}", lambda: runner.secure_erase(layout.htpasswd)))
    creds = ctx.credentials
    res = runner.run_input(
        ["htpasswd", "-i", "-c", "-B", str(layout.htpasswd), creds.http_user],
        f"{creds.http_password}\n",
        log_label=f"write basic-auth store {layout.htpasswd}",
    )
    _fail(PHASE_PROXY, res, "Failed to write basic-auth store")
    runner.chmod(layout.htpasswd, 0o640)
    runner.chown(layout.htpasswd, user="root", group=cfg.proxy_group)

    runner.symlink(layout.site_file, layout.site_link)
    _fail(PHASE_PROXY, runner.run(["nginx", "-t"]), "nginx configuration test failed")
    _fail(PHASE_PROXY, runner.run(["nginx", "-s", "reload"]), "nginx reload failed")
    console.ok(f"Reverse proxy configured for {ctx.target.domain}.")
    return "ok"


# --- supervised process ----------------------------------------------------

def start_process(ctx: PhaseContext, undo: list[UndoAction]) -> str:
    runner, name = ctx.runner, ctx.config.process_name
    status = process_status(ctx)
    if status == "online" and not ctx.force:
        console.ok(f"Process {name} already online.")
        return SKIPPED
    if status is not None:
        runner.run(["pm2", "delete", name])

    def stop() -> None:
        runner.run(["pm2", "delete", name])
        runner.run(["pm2", "save", "--force"])

    undo.append(UndoAction(f"stop process {name}", stop, ignore_errors=True))
    res = runner.run(
        ["pm2", "start", str(ctx.layout.ecosystem_file)],
        cwd=str(ctx.layout.install_dir),
        timeout=120,
    )
    _fail(PHASE_PROCESS, res, f"Failed to start {name}")
    _fail(PHASE_PROCESS, runner.run(["pm2", "save"]), "pm2 save failed")
    startup = runner.run(["pm2", "startup", "systemd", "-u", "root", "--hp", "/root"])
    if startup.returncode != 0:
        console.warn("Could not enable start on boot; run `pm2 startup` manually.")

    if not ctx.dry_run:
        wait_for_online(ctx)
    console.ok(f"Process {name} is online.")
    return "ok"


def wait_for_online(ctx: PhaseContext, timeout: float = PROCESS_START_TIMEOUT) -> None:
    deadline = time.monotonic() + timeout
    status = None
    while time.monotonic() < deadline:
        status = process_status(ctx)
        if status == "online":
            return
        if status == "errored":
            break
        time.sleep(1.0)
    raise PhaseError(
        PHASE_PROCESS,
        f"Process {ctx.config.process_name} did not come online (status: {status or 'missing'}).",
        timed_out=status != "errored",
    )


# --- client-only -----------------------------------------------------------

def install_client(ctx: PhaseContext, undo: list[UndoAction]) -> str:
    layout, runner, cfg = ctx.layout, ctx.runner, ctx.config
    if ctx.dry_run:
        console.info(f"[dry-run] download {cfg.package_url('client')} and verify its checksum")
        package = None
    else:
        package = _fetch_package(ctx, "client", CLIENT_ENTRY_FILES)
    try:
        script = (package.app_root / CLIENT_ENTRY_FILES[0]).read_text(encoding="utf-8") if package else ""
    finally:
        if package:
            package.cleanup()

    previous_script = layout.client_script.read_text(encoding="utf-8") if layout.client_script.exists() else None
    previous_config = layout.client_config.read_text(encoding="utf-8") if layout.client_config.exists() else None

    def restore(path: Path, previous: str | None, mode: int) -> Callable[[], None]:
        def action() -> None:
            if previous is None:
                runner.remove_file(path)
            else:
                runner.write_file(path, previous, mode=mode)
        return action

    undo.append(UndoAction(f"remove {layout.client_script}", restore(layout.client_script, previous_script, 0o755)))
    runner.write_file(layout.client_script, script, mode=0o755)

    source = ctx.target.source_url.rstrip("/")
    undo.append(UndoAction(f"remove {layout.client_config}", restore(layout.client_config, previous_config, 0o600)))
    runner.write_file(
        layout.client_config,
        render(
            CLIENT_CONFIG,
            version=cfg.package_version,
            generated_at=timestamp(),
            live_url=f"{source}/api",
            base_url=source,
        ),
        mode=0o600,
    )
    if not ctx.dry_run and not os.access(layout.client_script, os.X_OK):
        raise PhaseError(PHASE_CLIENT, f"{layout.client_script} is not executable")
    console.ok(f"Client installed: {layout.client_script} -> {source}")
    return "ok"


def write_client_config(ctx: PhaseContext) -> None:
    """After a full-stack install, point the local client at the new server."""
    base = f"{ctx.target.base_url}{ctx.target.url_prefix}"
    ctx.runner.write_file(
        ctx.layout.client_config,
        render(
            CLIENT_CONFIG,
            version=ctx.config.package_version,
            generated_at=timestamp(),
            live_url=f"{base}/api",
            base_url=base,
        ),
        mode=0o600,
    )
