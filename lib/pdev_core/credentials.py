from __future__ import annotations

import secrets
import string
from dataclasses import dataclass, field

from .errors import InvalidRequestError

DB_PASSWORD_LENGTH = 32
ADMIN_KEY_LENGTH = 48
HTTP_PASSWORD_LENGTH = 24
DEFAULT_HTTP_USER = "admin"

# Shell, SQL and config-file metacharacters never allowed in a secret.
UNSAFE_CHARS = frozenset("'\"`$\\;&|<>(){}[]*?!#~%=,:/+ \t\r\n\x00")
_ALPHABET = string.ascii_letters + string.digits + "-_."


def strip_unsafe(value: str) -> str:
    return "".join(ch for ch in value if ch not in UNSAFE_CHARS and ch.isprintable())


def generate_secret(length: int) -> str:
    if length <= 0:
        raise ValueError("length must be positive")
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def accept_secret(value: str, *, name: str, min_length: int = 12) -> str:
    """Validate an operator-supplied secret instead of silently rewriting it."""
    cleaned = strip_unsafe(value)
    if cleaned != value:
        raise InvalidRequestError(f"{name} contains characters that are not allowed.")
    if len(cleaned) < min_length:
        raise InvalidRequestError(f"{name} must be at least {min_length} characters.")
    return cleaned


@dataclass(frozen=True)
class Credentials:
    db_password: str
    admin_key: str
    http_user: str = DEFAULT_HTTP_USER
    http_password: str = field(default="", repr=False)

    def __repr__(self) -> str:
        return f"Credentials(http_user={self.http_user!r}, secrets=<redacted>)"

    __str__ = __repr__


def generate_credentials(
        *,
        db_password: str | None = None,
        admin_key: str | None = None,
        http_user: str | None = None,
        http_password: str | None = None,
) -> Credentials:
    """Generate the bundle once; supplied values are validated and kept."""
    user = (http_user or DEFAULT_HTTP_USER).strip()
    if not user or strip_unsafe(user) != user:
        raise InvalidRequestError("HTTP user contains characters that are not allowed.")
    return Credentials(
        db_password=accept_secret(db_password, name="DB password")
        if db_password else generate_secret(DB_PASSWORD_LENGTH),
        admin_key=accept_secret(admin_key, name="Admin key", min_length=32)
        if admin_key else generate_secret(ADMIN_KEY_LENGTH),
        http_user=user,
        http_password=accept_secret(http_password, name="HTTP password")
        if http_password else generate_secret(HTTP_PASSWORD_LENGTH),
    )
