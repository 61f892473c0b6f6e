from __future__ import annotations


class InstallError(Exception):
    """Base provisioning error."""


class PreflightError(InstallError):
    """Missing dependency, insufficient resources or port conflict. Nothing was mutated."""


class IntegrityError(InstallError):
    """Package failed checksum, content-type, traversal or symlink validation."""


class InvalidRequestError(InstallError):
    """Rejected argument or relay auth frame."""


class PhaseError(InstallError):
    def __init__(self, phase: str, message: str, *, timed_out: bool = False) -> None:
        super().__init__(message)
        self.phase = phase
        self.timed_out = timed_out


class TokenError(InstallError):
    def __init__(self, reason: str) -> None:
        super().__init__(f"Install token rejected: {reason}")
        self.reason = reason


class RelayBusyError(InstallError):
    """Concurrent tunnel ceiling reached or relay shutting down."""


class ConnectivityError(InstallError):
    """Target host unreachable or credentials rejected.

    The message is always one of a fixed set of sanitized strings.
    """
