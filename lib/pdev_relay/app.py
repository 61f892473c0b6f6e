"""FastAPI relay: install-token minting and the browser-to-SSH tunnel."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, WebSocket
from starlette.requests import HTTPConnection

from pdev_core import __version__
from pdev_core.errors import RelayBusyError, TokenError

from .settings import RelaySettings
from .shell import ParamikoConnector
from .store import MemoryRelayStore
from .tunnel import CLOSE_GOING_AWAY, CLOSE_POLICY, TunnelSession

logger = logging.getLogger(__name__)

SERVICE_NAME = "pdev-installer"
CLOSE_TRY_AGAIN = 1013


class Relay:
    def __init__(
            self,
            settings: RelaySettings,
            *,
            store: MemoryRelayStore | None = None,
            connector: ParamikoConnector | None = None,
    ) -> None:
        self.settings = settings
        self.store = store or MemoryRelayStore(
            token_ttl=settings.token_ttl,
            rate_limit=settings.rate_limit,
            rate_window=settings.rate_window,
            max_tunnels=settings.max_tunnels,
        )
        self.connector = connector or ParamikoConnector(
            connect_timeout=settings.connect_timeout,
            accept_unknown_hosts=settings.accept_unknown_hosts,
        )
        self.sessions: set[TunnelSession] = set()
        self.shutting_down = False

    def client_ip(self, conn: HTTPConnection) -> str:
        ip = ""
        if self.settings.trust_forwarded_for:
            ip = conn.headers.get("x-forwarded-for", "").split(",")[0].strip()
        if not ip and conn.client is not None:
            ip = conn.client.host
        if ip.startswith("::ffff:"):
            ip = ip[len("::ffff:"):]
        return ip or "unknown"

    async def prune_forever(self) -> None:
        while True:
            await asyncio.sleep(self.settings.prune_interval)
            await self.store.prune()

    async def shutdown(self) -> None:
        self.shutting_down = True
        sessions = list(self.sessions)
        if not sessions:
            return
        logger.info("closing %d open tunnel(s)", len(sessions))
        for session in sessions:
            await session.notify_shutdown()
        try:
            await asyncio.wait_for(
                asyncio.gather(*(s.done.wait() for s in sessions)),
                timeout=self.settings.shutdown_grace,
            )
        except TimeoutError:
            logger.warning("tunnels still open after %ss; forcing close", self.settings.shutdown_grace)
        for session in sessions:
            if not session.done.is_set():
                session.force_close()


def create_app(
        settings: RelaySettings | None = None,
        *,
        store: MemoryRelayStore | None = None,
        connector: ParamikoConnector | None = None,
) -> FastAPI:
    relay = Relay(settings or RelaySettings(), store=store, connector=connector)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        prune_task = asyncio.create_task(relay.prune_forever())
        yield
        prune_task.cancel()
        await relay.shutdown()

    app = FastAPI(
        title="PDev Live install relay",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.relay = relay

    @app.get("/health")
    async def health() -> dict:
        return {
            "status": "shutting_down" if relay.shutting_down else "ok",
            "service": SERVICE_NAME,
            "version": __version__,
            "activeTunnels": relay.store.active_tunnels,
            "maxTunnels": relay.store.max_tunnels,
        }

    @app.post("/install/token")
    async def mint_token(request: Request) -> dict:
        if relay.shutting_down:
            raise HTTPException(status_code=503, detail="Service shutting down")
        ip = relay.client_ip(request)
        if not await relay.store.allow_mint(ip):
            logger.warning("token rate limit hit for %s", ip)
            raise HTTPException(status_code=429, detail="Too many attempts")
        token = await relay.store.issue(ip)
        return {"token": token.value, "expiresInSeconds": relay.store.token_ttl}

    @app.websocket("/tunnel")
    async def tunnel(websocket: WebSocket, token: str = "") -> None:
        if relay.shutting_down:
            await websocket.close(code=CLOSE_GOING_AWAY)
            return
        ip = relay.client_ip(websocket)
        try:
            await relay.store.admit(token, ip)
        except TokenError as exc:
            logger.warning("tunnel refused for %s: %s", ip, exc.reason)
            await websocket.close(code=CLOSE_POLICY)
            return
        except RelayBusyError as exc:
            logger.warning("tunnel refused for %s: %s", ip, exc)
            await websocket.close(code=CLOSE_TRY_AGAIN)
            return

        session = TunnelSession(websocket, relay)
        relay.sessions.add(session)
        await session.run()

    return app
