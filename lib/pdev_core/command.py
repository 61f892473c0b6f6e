from __future__ import annotations

import ipaddress
import re
import shlex
import urllib.parse
from dataclasses import dataclass

from .errors import InvalidRequestError
from .mode import InstallMode

DEFAULT_URL_PREFIX = "/pdev"

_LABEL = r"[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
_DOMAIN_RE = re.compile(rf"^(?=.{{4,253}}$)(?:{_LABEL}\.)+[a-zA-Z]{{2,63}}$")
_HOST_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9.-]*$")
_USERNAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_-]{0,31}$")
_URL_PREFIX_RE = re.compile(r"^/?[a-zA-Z0-9/_-]+$")
_SERVER_NAME_RE = re.compile(r"^[a-zA-Z0-9._-]{1,64}$")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")


def strip_control(value: str) -> str:
    return _CONTROL_RE.sub("", value)


def shell_arg(value: str) -> str:
    return shlex.quote(strip_control(str(value)))


def validate_domain(raw: str) -> str:
    value = strip_control(raw or "").strip().lower().rstrip(".")
    if not _DOMAIN_RE.match(value):
        raise InvalidRequestError(f"Invalid domain: {value or '<empty>'}")
    return value


def validate_host(raw: str) -> str:
    """Hostname or IPv4 literal accepted as an SSH target (no ports, no paths)."""
    value = strip_control(raw or "").strip()
    if not value or len(value) > 253 or not _HOST_RE.match(value):
        raise InvalidRequestError("Invalid host")
    return value


def validate_port(raw: int | str) -> int:
    try:
        port = int(raw)
    except (TypeError, ValueError):
        raise InvalidRequestError("Invalid port") from None
    if not 1 <= port <= 65535:
        raise InvalidRequestError("Invalid port")
    return port


def validate_username(raw: str) -> str:
    value = (raw or "").strip()
    if not _USERNAME_RE.match(value):
        raise InvalidRequestError("Invalid username")
    return value


def validate_source_url(raw: str, *, require_https: bool = False) -> str:
    value = strip_control(raw or "").strip()
    parsed = urllib.parse.urlsplit(value)
    allowed = {"https"} if require_https else {"http", "https"}
    if parsed.scheme not in allowed:
        expected = "https://" if require_https else "http(s)://"
        raise InvalidRequestError(f"Source URL must start with {expected}")
    if parsed.username or parsed.password or not parsed.hostname:
        raise InvalidRequestError("Invalid source URL")
    validate_domain(parsed.hostname)
    if any(ch.isspace() for ch in value):
        raise InvalidRequestError("Invalid source URL")
    return value.rstrip("/")


def validate_url_prefix(raw: str) -> str:
    value = (raw or "").strip()
    if not _URL_PREFIX_RE.match(value) or ".." in value:
        raise InvalidRequestError("Invalid URL prefix")
    return "/" + value.strip("/")


def parse_server_list(raw: str | list[str] | None) -> tuple[str, ...]:
    items = _split_list(raw)
    for item in items:
        if not _SERVER_NAME_RE.match(item):
            raise InvalidRequestError(f"Invalid server name: {item}")
    return items


def parse_ip_list(raw: str | list[str] | None) -> tuple[str, ...]:
    items = _split_list(raw)
    out = []
    for item in items:
        try:
            out.append(str(ipaddress.ip_network(item, strict=False)))
        except ValueError:
            raise InvalidRequestError(f"Invalid IP address: {item}") from None
    return tuple(out)


def _split_list(raw: str | list[str] | None) -> tuple[str, ...]:
    if not raw:
        return ()
    parts = raw if isinstance(raw, list) else str(raw).split(",")
    return tuple(p.strip() for p in parts if str(p).strip())


@dataclass(frozen=True)
class InstallCommand:
    """Non-interactive, forced installer invocation built only from validated fields."""

    mode: InstallMode
    domain: str | None = None
    source_url: str | None = None
    url_prefix: str | None = None
    http_user: str | None = None
    http_password: str | None = None
    valid_servers: tuple[str, ...] = ()
    allowed_ips: tuple[str, ...] = ()

    @classmethod
    def build(
            cls,
            mode: InstallMode | str,
            *,
            domain: str | None = None,
            source_url: str | None = None,
            url_prefix: str | None = None,
            http_user: str | None = None,
            http_password: str | None = None,
            valid_servers: str | list[str] | None = None,
            allowed_ips: str | list[str] | None = None,
    ) -> InstallCommand:
        try:
            mode = InstallMode(mode)
        except ValueError:
            raise InvalidRequestError("Invalid mode") from None
        if mode is InstallMode.PROJECT:
            if not source_url:
                raise InvalidRequestError("Project mode requires sourceUrl")
            return cls(mode=mode, source_url=validate_source_url(source_url, require_https=True))
        if not domain:
            raise InvalidRequestError("Source mode requires domain")
        if http_user:
            http_user = validate_username(http_user)
        if http_password is not None and not strip_control(http_password):
            http_password = None
        return cls(
            mode=mode,
            domain=validate_domain(domain),
            url_prefix=validate_url_prefix(url_prefix) if url_prefix else None,
            http_user=http_user or None,
            http_password=strip_control(http_password) if http_password else None,
            valid_servers=parse_server_list(valid_servers),
            allowed_ips=parse_ip_list(allowed_ips),
        )

    def argv(self) -> list[str]:
        args = ["install", "--non-interactive", "--force", "--mode", self.mode.value]
        if self.mode is InstallMode.PROJECT:
            return [*args, "--source-url", self.source_url]
        args += ["--domain", self.domain]
        if self.url_prefix:
            args += ["--url-prefix", self.url_prefix]
        if self.http_user:
            args += ["--http-user", self.http_user]
        if self.http_password:
            args += ["--http-password", self.http_password]
        if self.valid_servers:
            args += ["--valid-servers", ",".join(self.valid_servers)]
        if self.allowed_ips:
            args += ["--allowed-ips", ",".join(self.allowed_ips)]
        return args

    def render(self, bootstrap_url: str) -> str:
        """Shell line run on the target: fetch the bootstrapper and hand it the arguments."""
        bootstrap = validate_source_url(bootstrap_url, require_https=True)
        quoted = " ".join(shell_arg(arg) for arg in self.argv())
        return f"curl -fsSL {shell_arg(bootstrap)} | sudo bash -s -- {quoted}"

    def describe(self) -> str:
        target = self.domain if self.mode is InstallMode.SOURCE else self.source_url
        return f"{self.mode.value} install for {target}"
