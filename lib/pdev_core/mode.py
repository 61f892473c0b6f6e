from __future__ import annotations

from enum import Enum
from typing import Callable

from .errors import InvalidRequestError


class InstallMode(str, Enum):
    SOURCE = "source"
    PROJECT = "project"

    @property
    def label(self) -> str:
        if self is InstallMode.SOURCE:
            return "Full stack (database, proxy, supervised server)"
        return "Client only (report to an existing server)"


def select_mode(
        *,
        domain: str | None,
        source_url: str | None,
        mode: str | InstallMode | None = None,
        prompt: Callable[[], InstallMode] | None = None,
) -> InstallMode:
    """Pick the provisioning mode from whichever target flag was supplied.

    `--domain` means a full-stack install, `--source-url` means client only.
    An explicit mode must agree with the supplied target. With no target at
    all, `prompt` is asked; without a prompt the call fails.
    """
    if isinstance(mode, InstallMode):
        mode = mode.value
    try:
        explicit = InstallMode(mode.lower()) if mode else None
    except ValueError:
        raise InvalidRequestError(f"Unknown mode: {mode} (expected source or project).") from None
    if domain and source_url:
        raise InvalidRequestError("Use either --domain or --source-url, not both.")
    if domain:
        inferred = InstallMode.SOURCE
    elif source_url:
        inferred = InstallMode.PROJECT
    else:
        inferred = None

    if explicit and inferred and explicit is not inferred:
        flag = "--domain" if inferred is InstallMode.SOURCE else "--source-url"
        raise InvalidRequestError(f"--mode {explicit.value} conflicts with {flag}.")
    if inferred:
        return inferred
    if explicit:
        return explicit
    if prompt is None:
        raise InvalidRequestError("Missing target: pass --domain or --source-url.")
    return prompt()
