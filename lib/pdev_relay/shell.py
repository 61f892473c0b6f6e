from __future__ import annotations

import errno
import io
import logging
import socket
import threading

import paramiko

from pdev_core.errors import ConnectivityError

from .targets import SshTarget

logger = logging.getLogger(__name__)

READ_CHUNK = 32 * 1024
KEEPALIVE_SECONDS = 10
_KEY_TYPES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


def safe_error_message(exc: BaseException) -> str:
    """Map a connection failure to a fixed message. Raw error text never leaves the relay."""
    if isinstance(exc, paramiko.AuthenticationException):
        return "Authentication failed"
    if isinstance(exc, paramiko.ssh_exception.NoValidConnectionsError):
        return "Connection refused"
    if isinstance(exc, socket.gaierror):
        return "Host not found"
    if isinstance(exc, (TimeoutError, socket.timeout)):
        return "Connection timed out"
    if isinstance(exc, ConnectionRefusedError):
        return "Connection refused"
    if isinstance(exc, OSError) and exc.errno in (errno.EHOSTUNREACH, errno.ENETUNREACH):
        return "Host unreachable"
    return "Connection failed"


def load_private_key(text: str) -> paramiko.PKey:
    for key_type in _KEY_TYPES:
        try:
            return key_type.from_private_key(io.StringIO(text))
        except (paramiko.SSHException, ValueError):
            continue
    raise ConnectivityError("Authentication failed")


class RemoteProcess:
    """A command running on the target under a pty. Blocking API, call from a worker thread."""

    def __init__(self, client: paramiko.SSHClient, channel: paramiko.Channel) -> None:
        self._client = client
        self._channel = channel
        self._closed = False
        self._lock = threading.Lock()

    def read(self) -> bytes:
        """Next chunk of combined output; b"" once the command has finished."""
        return self._channel.recv(READ_CHUNK)

    def exit_status(self) -> int:
        return self._channel.recv_exit_status()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        try:
            self._channel.close()
        finally:
            self._client.close()


class ParamikoConnector:
    def __init__(self, *, connect_timeout: float = 30, accept_unknown_hosts: bool = True) -> None:
        self.connect_timeout = connect_timeout
        self.accept_unknown_hosts = accept_unknown_hosts

    def open(self, target: SshTarget, command: str) -> RemoteProcess:
        client = paramiko.SSHClient()
        client.load_system_host_keys()
        if self.accept_unknown_hosts:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        else:
            client.set_missing_host_key_policy(paramiko.RejectPolicy())
        try:
            pkey = load_private_key(target.private_key) if target.private_key else None
            client.connect(
                hostname=target.address,
                port=target.port,
                username=target.username,
                password=target.password,
                pkey=pkey,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                look_for_keys=False,
                allow_agent=False,
            )
            transport = client.get_transport()
            transport.set_keepalive(KEEPALIVE_SECONDS)
            channel = transport.open_session(timeout=self.connect_timeout)
            channel.get_pty(term="xterm-256color", width=120, height=40)
            channel.set_combine_stderr(True)
            channel.exec_command(command)
        except ConnectivityError:
            client.close()
            raise
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            message = safe_error_message(exc)
            logger.warning("ssh to %s:%s failed: %s (%s)", target.host, target.port, message, type(exc).__name__)
            raise ConnectivityError(message) from None
        logger.info("ssh session opened to %s:%s as %s", target.host, target.port, target.username)
        return RemoteProcess(client, channel)
