"""Relay settings loaded from RELAY_* environment variables."""

from __future__ import annotations

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ALLOWED_BOOTSTRAP_URLS = (
    "https://vyxenai.com/pdev/install/pdl-installer.sh",
    "https://walletsnack.com/pdev/install/pdl-installer.sh",
)


class RelaySettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="RELAY_", extra="ignore")

    host: str = "0.0.0.0"
    port: int = Field(3078, ge=1, le=65535)

    # Tokens
    token_ttl: int = 15 * 60
    rate_limit: int = 10  # token requests per window per address
    rate_window: int = 60
    prune_interval: int = 5 * 60

    # Tunnels
    max_tunnels: int = 5
    session_timeout: float = 10 * 60
    connect_timeout: float = 30
    shutdown_grace: float = 5.0
    max_frame_bytes: int = 64 * 1024

    bootstrap_url: str = ALLOWED_BOOTSTRAP_URLS[0]
    # only enable behind a reverse proxy that overwrites X-Forwarded-For
    trust_forwarded_for: bool = False
    accept_unknown_hosts: bool = True

    log_level: str = "info"

    @field_validator("bootstrap_url")
    @classmethod
    def _allow_listed(cls, value: str) -> str:
        if value not in ALLOWED_BOOTSTRAP_URLS:
            raise ValueError(f"bootstrap_url must be one of: {', '.join(ALLOWED_BOOTSTRAP_URLS)}")
        return value
