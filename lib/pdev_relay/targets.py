"""Validation of the tunnel auth frame and the SSH target it names."""

from __future__ import annotations

import asyncio
import ipaddress
import json
import socket
from dataclasses import dataclass, field
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from pdev_core.command import InstallCommand, validate_host, validate_port, validate_username
from pdev_core.errors import ConnectivityError, InvalidRequestError

MIN_PRIVATE_KEY_LENGTH = 100
_BLOCKED_NAMES = {"localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback"}


class WizardConfig(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    auth_user: str | None = Field(None, alias="authUser")
    auth_password: str | None = Field(None, alias="authPassword")
    valid_servers: str | list[str] | None = Field(None, alias="validServers")
    allowed_ips: str | list[str] | None = Field(None, alias="allowedIps")


class AuthFrame(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    type: Literal["auth"]
    host: str
    port: int | str = 22
    username: str
    auth_method: str = Field(alias="authMethod")
    password: str | None = None
    private_key: str | None = Field(None, alias="privateKey")
    mode: str
    domain: str | None = None
    source_url: str | None = Field(None, alias="sourceUrl")
    url_prefix: str | None = Field(None, alias="urlPrefix")
    config: WizardConfig | None = None


@dataclass(frozen=True)
class SshTarget:
    host: str
    address: str
    port: int
    username: str
    password: str | None = field(default=None, repr=False)
    private_key: str | None = field(default=None, repr=False)


@dataclass(frozen=True)
class TunnelRequest:
    target: SshTarget
    command: InstallCommand


def is_internal_address(raw: str) -> bool:
    ip = ipaddress.ip_address(raw.split("%", 1)[0])
    if ip.version == 6 and ip.ipv4_mapped:
        ip = ip.ipv4_mapped
    return (
            ip.is_private
            or ip.is_loopback
            or ip.is_link_local
            or ip.is_reserved
            or ip.is_multicast
            or ip.is_unspecified
            or not ip.is_global
    )


def parse_auth_frame(raw: str) -> tuple[AuthFrame, InstallCommand]:
    """Structural and syntactic checks. Performs no network access."""
    try:
        data = json.loads(raw)
    except ValueError:
        raise InvalidRequestError("Invalid JSON") from None
    if not isinstance(data, dict) or data.get("type") != "auth":
        raise InvalidRequestError("Expected auth message")
    try:
        frame = AuthFrame.model_validate(data)
    except ValidationError as exc:
        fields = sorted({str(err["loc"][0]) for err in exc.errors() if err.get("loc")})
        raise InvalidRequestError(f"Invalid auth message: {', '.join(fields) or 'malformed'}") from None

    problems: list[str] = []
    checks = (
        (validate_host, frame.host),
        (validate_port, frame.port),
        (validate_username, frame.username),
        (_check_auth_material, frame),
    )
    for check, value in checks:
        try:
            check(value)
        except InvalidRequestError as exc:
            problems.append(str(exc))
    command = None
    try:
        cfg = frame.config or WizardConfig()
        command = InstallCommand.build(
            frame.mode,
            domain=frame.domain,
            source_url=frame.source_url,
            url_prefix=frame.url_prefix,
            http_user=cfg.auth_user,
            http_password=cfg.auth_password,
            valid_servers=cfg.valid_servers,
            allowed_ips=cfg.allowed_ips,
        )
    except InvalidRequestError as exc:
        problems.append(str(exc))
    if problems:
        raise InvalidRequestError(", ".join(problems))
    return frame, command


def _check_auth_material(frame: AuthFrame) -> None:
    if frame.auth_method == "password":
        if not frame.password:
            raise InvalidRequestError("Password required")
    elif frame.auth_method == "privateKey":
        if not frame.private_key or len(frame.private_key) < MIN_PRIVATE_KEY_LENGTH:
            raise InvalidRequestError("Private key required")
    else:
        raise InvalidRequestError("Invalid auth method")


async def resolve_public(host: str, port: int) -> str:
    """Return an address for `host` after checking that no resolution is internal."""
    name = host.lower().rstrip(".")
    if name in _BLOCKED_NAMES or name.endswith(".localhost"):
        raise InvalidRequestError("Internal hosts not allowed")
    try:
        ipaddress.ip_address(name)
    except ValueError:
        pass
    else:
        if is_internal_address(name):
            raise InvalidRequestError("Internal hosts not allowed")
        return name

    try:
        infos = await asyncio.to_thread(socket.getaddrinfo, name, port, type=socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError):
        raise ConnectivityError("Host not found") from None
    addresses = [info[4][0] for info in infos]
    if not addresses:
        raise ConnectivityError("Host not found")
    if any(is_internal_address(addr) for addr in addresses):
        raise InvalidRequestError("Internal hosts not allowed")
    return addresses[0]


async def build_request(raw: str) -> TunnelRequest:
    frame, command = parse_auth_frame(raw)
    port = validate_port(frame.port)
    address = await resolve_public(frame.host.strip(), port)
    target = SshTarget(
        host=frame.host.strip(),
        address=address,
        port=port,
        username=frame.username.strip(),
        password=frame.password if frame.auth_method == "password" else None,
        private_key=frame.private_key if frame.auth_method == "privateKey" else None,
    )
    return TunnelRequest(target=target, command=command)

