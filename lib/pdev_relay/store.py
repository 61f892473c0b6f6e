from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable

from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage
from limits.strategies import FixedWindowRateLimiter

from pdev_core.errors import RelayBusyError, TokenError

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32


@dataclass(frozen=True)
class IssuedToken:
    value: str
    ip: str
    expires_at: float


class MemoryRelayStore:
    """In-process token map, rate-limit counters and tunnel slot count.

    Every method that touches shared state is async and takes one lock, so a
    networked backend can replace this class without changing relay logic.
    """

    def __init__(
            self,
            *,
            token_ttl: int = 900,
            rate_limit: int = 10,
            rate_window: int = 60,
            max_tunnels: int = 5,
            clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.token_ttl = token_ttl
        self.max_tunnels = max_tunnels
        self._clock = clock
        self._tokens: dict[str, IssuedToken] = {}
        self._active = 0
        self._lock = asyncio.Lock()
        self._limiter = FixedWindowRateLimiter(MemoryStorage())
        self._limit = RateLimitItemPerSecond(rate_limit, rate_window)

    @property
    def active_tunnels(self) -> int:
        return self._active

    async def allow_mint(self, ip: str) -> bool:
        async with self._lock:
            return self._limiter.hit(self._limit, "install-token", ip)

    async def issue(self, ip: str) -> IssuedToken:
        token = IssuedToken(
            value=secrets.token_hex(TOKEN_BYTES),
            ip=ip,
            expires_at=self._clock() + self.token_ttl,
        )
        async with self._lock:
            self._tokens[token.value] = token
        logger.info("token issued for %s", ip)
        return token

    async def admit(self, token: str, ip: str) -> None:
        """Validate and consume `token` for `ip`, reserving one tunnel slot.

        Raises TokenError or RelayBusyError. On success the token is gone and
        the caller owns a slot it must give back with `release()`.
        """
        async with self._lock:
            entry = self._tokens.get(token or "")
            if entry is None:
                raise TokenError("unknown or already used")
            if entry.expires_at <= self._clock():
                del self._tokens[token]
                raise TokenError("expired")
            if entry.ip != ip:
                raise TokenError("address mismatch")
            # capacity is checked before the token is spent so the caller can retry
            if self._active >= self.max_tunnels:
                raise RelayBusyError(f"Tunnel limit reached ({self.max_tunnels})")
            del self._tokens[token]
            self._active += 1

    async def release(self) -> None:
        async with self._lock:
            self._active = max(0, self._active - 1)

    async def prune(self) -> int:
        now = self._clock()
        async with self._lock:
            expired = [k for k, v in self._tokens.items() if v.expires_at <= now]
            for key in expired:
                del self._tokens[key]
        if expired:
            logger.info("pruned %d expired token(s)", len(expired))
        return len(expired)

    async def pending_tokens(self) -> int:
        async with self._lock:
            return len(self._tokens)
