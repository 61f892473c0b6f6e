from .command import InstallCommand
from .credentials import Credentials, generate_credentials
from .errors import (
    ConnectivityError,
    InstallError,
    IntegrityError,
    InvalidRequestError,
    PhaseError,
    PreflightError,
    RelayBusyError,
    TokenError,
)
from .mode import InstallMode, select_mode

__version__ = "1.0.0"

__all__ = [
    "InstallCommand",
    "Credentials",
    "generate_credentials",
    "ConnectivityError",
    "InstallError",
    "IntegrityError",
    "InvalidRequestError",
    "PhaseError",
    "PreflightError",
    "RelayBusyError",
    "TokenError",
    "InstallMode",
    "select_mode",
]
