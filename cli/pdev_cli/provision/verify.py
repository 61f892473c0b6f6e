from __future__ import annotations

import datetime as dt
import grp
import os
from dataclasses import dataclass, field
from pathlib import Path

import httpx
from cryptography import x509

from pdev_core.mode import InstallMode

from .. import console
from .context import PhaseContext
from .database import query_scalar
from .phases import port_in_use, process_status

PASS = "pass"
WARN = "warn"
FAIL = "fail"

HTTP_TIMEOUT = 10.0
CERT_RENEW_DAYS = 30
MIN_ADMIN_KEY = 32


@dataclass
class Check:
    name: str
    status: str
    detail: str = ""
    hard_gate: bool = False


@dataclass
class VerificationReport:
    title: str
    checks: list[Check] = field(default_factory=list)

    def add(self, name: str, status: str, detail: str = "", *, hard_gate: bool = False) -> Check:
        check = Check(name=name, status=status, detail=detail, hard_gate=hard_gate)
        self.checks.append(check)
        return check

    def count(self, status: str) -> int:
        return sum(1 for c in self.checks if c.status == status)

    @property
    def hard_failures(self) -> list[Check]:
        return [c for c in self.checks if c.hard_gate and c.status == FAIL]

    @property
    def passed(self) -> bool:
        return not self.hard_failures

    def print(self) -> None:
        console.rule(self.title)
        for c in self.checks:
            text = f"{c.name}: {c.detail}" if c.detail else c.name
            if c.status == PASS:
                console.ok(text)
            elif c.status == WARN:
                console.warn(text)
            else:
                console.err(f"{text}{' [hard gate]' if c.hard_gate else ''}")
        console.info(f"{self.count(PASS)} passed, {self.count(WARN)} warnings, {self.count(FAIL)} failed")


def _mode_bits(path: Path) -> int:
    return path.stat().st_mode & 0o777


def _read_env(path: Path) -> dict[str, str]:
    values: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        values[key.strip()] = value.strip()
    return values


def _get(url: str, **kwargs) -> httpx.Response | None:
    try:
        return httpx.get(url, timeout=HTTP_TIMEOUT, follow_redirects=False, **kwargs)
    except httpx.HTTPError:
        return None


def _public_url(ctx: PhaseContext) -> str:
    return f"https://{ctx.target.domain}{ctx.target.url_prefix.rstrip('/')}/"


# --- verify ----------------------------------------------------------------

def verify(ctx: PhaseContext) -> VerificationReport:
    if ctx.mode is InstallMode.PROJECT:
        return _verify_client(ctx)
    report = VerificationReport("Post-install verification")
    _hard_gates(ctx, report)

    port = ctx.config.app_port
    resp = _get(f"http://127.0.0.1:{port}/health")
    if resp is not None and resp.status_code == 200:
        report.add("Local health endpoint", PASS, "HTTP 200")
        try:
            body = resp.json()
        except ValueError:
            body = {}
        db = body.get("database") if isinstance(body, dict) else None
        db_status = db.get("status") if isinstance(db, dict) else None
        if db_status == "healthy":
            report.add("Database health", PASS, "healthy")
        else:
            report.add("Database health", WARN, f"reported as {db_status or 'unknown'}")
    else:
        report.add("Local health endpoint", WARN, f"HTTP {resp.status_code}" if resp is not None else "unreachable")

    public = _get(_public_url(ctx))
    if public is not None and public.status_code < 500:
        report.add("HTTPS endpoint", PASS, f"{_public_url(ctx)} answered HTTP {public.status_code}")
    else:
        report.add("HTTPS endpoint", WARN, f"{_public_url(ctx)} not reachable yet (DNS or certificate?)")
    return report


def _hard_gates(ctx: PhaseContext, report: VerificationReport) -> None:
    status = process_status(ctx)
    report.add(
        f"Process {ctx.config.process_name}",
        PASS if status == "online" else FAIL,
        status or "not registered with pm2",
        hard_gate=True,
    )
    port = ctx.config.app_port
    bound = port_in_use(port)
    report.add(f"Port {port}", PASS if bound else FAIL, "bound" if bound else "nothing listening", hard_gate=True)


def _verify_client(ctx: PhaseContext) -> VerificationReport:
    report = VerificationReport("Client verification")
    script, config = ctx.layout.client_script, ctx.layout.client_config
    report.add(
        "Client script",
        PASS if os.access(script, os.X_OK) else FAIL,
        str(script),
        hard_gate=True,
    )
    report.add("Client config", PASS if config.is_file() else FAIL, str(config), hard_gate=True)
    source = (ctx.target.source_url or "").rstrip("/")
    resp = _get(f"{source}/health")
    if resp is not None and resp.status_code < 500:
        report.add("Source server", PASS, f"{source} answered HTTP {resp.status_code}")
    else:
        report.add("Source server", WARN, f"{source} is not reachable from this host")
    return report


# --- audit -----------------------------------------------------------------

def audit(ctx: PhaseContext) -> VerificationReport:
    if ctx.mode is InstallMode.PROJECT:
        report = VerificationReport("Security audit (client)")
        config = ctx.layout.client_config
        if config.is_file():
            bits = _mode_bits(config)
            report.add("Client config permissions", PASS if bits == 0o600 else FAIL, f"{bits:o}")
        else:
            report.add("Client config permissions", FAIL, f"{config} not found")
        return report

    report = VerificationReport("Security audit")
    layout = ctx.layout
    _hard_gates(ctx, report)
    _audit_permissions(ctx, report)
    _audit_env(layout.env_file, report)
    _audit_certificate(layout.cert_file(ctx.target.domain or ""), report)
    _audit_proxy(ctx, report)
    _audit_database(ctx, report)
    _audit_host(ctx, report)
    return report


def _audit_permissions(ctx: PhaseContext, report: VerificationReport) -> None:
    layout = ctx.layout
    if layout.env_file.is_file():
        bits = _mode_bits(layout.env_file)
        report.add("Secret file permissions", PASS if bits == 0o600 else FAIL, f"{layout.env_file} is {bits:o}")
    else:
        report.add("Secret file permissions", FAIL, f"{layout.env_file} not found")

    if layout.htpasswd.is_file():
        st = layout.htpasswd.stat()
        bits = st.st_mode & 0o777
        try:
            group = grp.getgrgid(st.st_gid).gr_name
        except KeyError:
            group = str(st.st_gid)
        ok = bits in (0o640, 0o644) and group == ctx.config.proxy_group
        report.add(
            "Proxy auth file",
            PASS if ok else WARN,
            f"{bits:o} group {group} (expected 640 group {ctx.config.proxy_group})",
        )
    else:
        report.add("Proxy auth file", FAIL, f"{layout.htpasswd} not found")

    if layout.install_dir.is_dir():
        bits = _mode_bits(layout.install_dir)
        report.add("Install directory permissions", PASS if bits == 0o750 else WARN, f"{bits:o}")


def _audit_env(path: Path, report: VerificationReport) -> None:
    if not path.is_file():
        return
    env = _read_env(path)
    node_env = env.get("NODE_ENV", "")
    report.add("NODE_ENV", PASS if node_env == "production" else WARN, node_env or "unset")
    key_len = len(env.get("PDEV_ADMIN_KEY", ""))
    report.add("Admin key length", PASS if key_len >= MIN_ADMIN_KEY else FAIL, f"{key_len} chars")
    base = env.get("PDEV_BASE_URL", "")
    report.add("Base URL uses HTTPS", PASS if base.startswith("https://") else FAIL, base or "unset")
    auth = env.get("PDEV_HTTP_AUTH", "").lower() == "true"
    report.add("Application basic auth", PASS if auth else WARN, "enabled" if auth else "disabled")


def _audit_certificate(cert_path: Path, report: VerificationReport) -> None:
    if not cert_path.is_file():
        report.add("TLS certificate", FAIL, f"{cert_path} not found")
        return
    try:
        cert = x509.load_pem_x509_certificate(cert_path.read_bytes())
    except (OSError, ValueError) as exc:
        report.add("TLS certificate", FAIL, f"unreadable: {exc}")
        return
    remaining = cert.not_valid_after_utc - dt.datetime.now(dt.timezone.utc)
    if remaining.total_seconds() <= 0:
        report.add("TLS certificate", FAIL, "expired")
    elif remaining.days < CERT_RENEW_DAYS:
        report.add("TLS certificate", WARN, f"expires in {remaining.days} days")
    else:
        report.add("TLS certificate", PASS, f"valid for {remaining.days} days")


def _audit_proxy(ctx: PhaseContext, report: VerificationReport) -> None:
    runner, site = ctx.runner, ctx.layout.site_file
    active = runner.probe(["systemctl", "is-active", "nginx"])
    report.add("nginx running", PASS if active.returncode == 0 else FAIL, (active.stdout or "").strip())
    syntax = runner.probe(["nginx", "-t"])
    report.add("nginx configuration", PASS if syntax.returncode == 0 else FAIL)
    if site.is_file():
        text = site.read_text(encoding="utf-8")
        for needle, label in (
                ("Strict-Transport-Security", "HSTS header"),
                ("X-Frame-Options", "X-Frame-Options header"),
                ("auth_basic ", "Basic auth in proxy"),
        ):
            report.add(label, PASS if needle in text else WARN)

    resp = _get(_public_url(ctx))
    if resp is None:
        report.add("Unauthenticated probe", WARN, "endpoint unreachable")
    else:
        report.add(
            "Unauthenticated probe",
            PASS if resp.status_code == 401 else FAIL,
            f"HTTP {resp.status_code} (expected 401)",
        )


def _audit_database(ctx: PhaseContext, report: VerificationReport) -> None:
    superuser = query_scalar(ctx, f"SELECT rolsuper FROM pg_roles WHERE rolname = '{ctx.config.db_user}'")
    if superuser is None or superuser == "":
        report.add("Database role", WARN, "could not query pg_roles")
    else:
        report.add("Database role is not superuser", PASS if superuser == "f" else FAIL, ctx.config.db_user)
    listen = query_scalar(ctx, "SHOW listen_addresses")
    if listen is not None:
        local_only = listen in ("localhost", "127.0.0.1", "::1", "localhost,127.0.0.1")
        report.add("PostgreSQL listens on localhost only", PASS if local_only else WARN, listen)


def _audit_host(ctx: PhaseContext, report: VerificationReport) -> None:
    ufw = ctx.runner.probe(["ufw", "status"])
    active = ufw.returncode == 0 and "Status: active" in (ufw.stdout or "")
    report.add("Firewall", PASS if active else WARN, "ufw active" if active else "ufw inactive or missing")
    f2b = ctx.runner.probe(["systemctl", "is-active", "fail2ban"])
    report.add("fail2ban", PASS if f2b.returncode == 0 else WARN, (f2b.stdout or "").strip() or "inactive")
