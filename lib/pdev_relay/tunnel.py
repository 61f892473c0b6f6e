from __future__ import annotations

import asyncio
import codecs
import logging
import secrets
from typing import TYPE_CHECKING, Any

from fastapi import WebSocket, WebSocketDisconnect

from pdev_core.errors import ConnectivityError, InvalidRequestError

from .shell import RemoteProcess
from .targets import build_request

if TYPE_CHECKING:
    from .app import Relay

logger = logging.getLogger(__name__)

CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_POLICY = 1008
CLOSE_TOO_BIG = 1009
CLOSE_ERROR = 1011

CONNECTED_BANNER = "\r\n\x1b[32mSSH connected\x1b[0m\r\n\x1b[33mStarting installation...\x1b[0m\r\n\r\n"


class TunnelSession:
    """One browser socket bridged to one remote installer run."""

    def __init__(self, websocket: WebSocket, relay: Relay) -> None:
        self.websocket = websocket
        self.relay = relay
        self.settings = relay.settings
        self.id = secrets.token_hex(4)
        self.done = asyncio.Event()
        self._process: RemoteProcess | None = None
        self._socket_closed = False
        self._released = False

    async def run(self) -> None:
        try:
            await self.websocket.accept()
            logger.info("tunnel %s opened", self.id)
            await asyncio.wait_for(self._drive(), timeout=self.settings.session_timeout)
        except TimeoutError:
            logger.warning("tunnel %s hit the session timeout", self.id)
            await self.fail("Installation timed out")
        except WebSocketDisconnect:
            logger.info("tunnel %s: client disconnected", self.id)
        finally:
            await self.cleanup()

    async def _drive(self) -> None:
        raw = await self._receive_auth()
        if raw is None:
            return
        try:
            request = await build_request(raw)
        except InvalidRequestError as exc:
            await self.fail(str(exc), code=CLOSE_POLICY)
            return
        except ConnectivityError as exc:
            await self.fail(str(exc))
            return

        command = request.command.render(self.settings.bootstrap_url)
        logger.info("tunnel %s: %s via %s", self.id, request.command.describe(), request.target.host)
        try:
            self._process = await self._open(request.target, command)
        except ConnectivityError as exc:
            await self.fail(str(exc))
            return

        await self.send({"type": "output", "data": CONNECTED_BANNER})
        try:
            code = await self._pump()
        except ConnectivityError as exc:
            await self.fail(str(exc))
            return
        if code is None:
            logger.info("tunnel %s: client left while the installer was running", self.id)
            return
        if code == 0:
            logger.info("tunnel %s: installation succeeded", self.id)
            await self.send({"type": "success", "message": "Installation completed!"})
            await self.close(CLOSE_NORMAL)
        else:
            logger.warning("tunnel %s: installation exited with %s", self.id, code)
            await self.fail(f"Installation failed with code {code}")

    async def _receive_auth(self) -> str | None:
        message = await self.websocket.receive()
        if message["type"] == "websocket.disconnect":
            return None
        text = message.get("text")
        if text is None:
            text = (message.get("bytes") or b"").decode("utf-8", errors="replace")
        if len(text.encode("utf-8")) > self.settings.max_frame_bytes:
            await self.fail("Message too large", code=CLOSE_TOO_BIG)
            return None
        return text

    async def _open(self, target, command: str) -> RemoteProcess:
        opening = asyncio.ensure_future(asyncio.to_thread(self.relay.connector.open, target, command))
        try:
            return await asyncio.shield(opening)
        except asyncio.CancelledError:
            # the connect thread cannot be interrupted; close whatever it yields
            opening.add_done_callback(_close_late)
            raise

    async def _pump(self) -> int | None:
        reader = asyncio.create_task(self._stream_output())
        watcher = asyncio.create_task(self._watch_client())
        try:
            done, _ = await asyncio.wait({reader, watcher}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (reader, watcher):
                if not task.done():
                    task.cancel()
        if reader in done:
            return reader.result()
        return None

    async def _stream_output(self) -> int:
        process = self._process
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                chunk = await asyncio.to_thread(process.read)
                if not chunk:
                    break
                text = decoder.decode(chunk)
                if text:
                    await self.send({"type": "output", "data": text})
            tail = decoder.decode(b"", final=True)
            if tail:
                await self.send({"type": "output", "data": tail})
            return await asyncio.to_thread(process.exit_status)
        except OSError as exc:
            logger.warning("tunnel %s: channel error (%s)", self.id, type(exc).__name__)
            raise ConnectivityError("Connection failed") from None

    async def _watch_client(self) -> None:
        while True:
            message = await self.websocket.receive()
            if message["type"] == "websocket.disconnect":
                return
            await self.send({"type": "error", "message": "Already authenticated"})

    async def send(self, frame: dict[str, Any]) -> None:
        if self._socket_closed:
            return
        try:
            await self.websocket.send_json(frame)
        except (WebSocketDisconnect, RuntimeError, OSError):
            self._socket_closed = True

    async def fail(self, message: str, *, code: int = CLOSE_ERROR) -> None:
        await self.send({"type": "error", "message": message})
        await self.close(code)

    async def close(self, code: int) -> None:
        if self._socket_closed:
            return
        self._socket_closed = True
        try:
            await self.websocket.close(code=code)
        except (RuntimeError, OSError):
            logger.debug("tunnel %s: socket already closed", self.id)

    async def notify_shutdown(self) -> None:
        await self.fail("Server shutting down", code=CLOSE_GOING_AWAY)

    def force_close(self) -> None:
        if self._process is not None:
            self._process.close()

    async def cleanup(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            if self._process is not None:
                try:
                    await asyncio.to_thread(self._process.close)
                except Exception:
                    logger.warning("tunnel %s: closing the ssh session failed", self.id, exc_info=True)
            await self.close(CLOSE_NORMAL)
        finally:
            self.relay.sessions.discard(self)
            await self.relay.store.release()
            self.done.set()
            logger.info("tunnel %s closed", self.id)


def _close_late(future: asyncio.Future) -> None:
    if future.cancelled() or future.exception() is not None:
        return
    future.result().close()
