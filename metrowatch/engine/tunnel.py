"""Tunnel manager.

Remote roots run the bundler on another machine; a tunnel forwards the
bundler's ports to localhost for the length of a session. Local roots
never need one.
"""
from __future__ import annotations

import asyncio
import functools
import logging

from . import roots
from .collaborators import Prompter
from .config import SupervisorConfig
from .errors import TunnelSetupError
from .models import TunnelBehavior
from .subscriptions import Disposable

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024
# Upper bound on waiting for listeners to finish closing.
_CLOSE_TIMEOUT = 2.0


async def _pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    try:
        while True:
            data = await reader.read(_CHUNK_SIZE)
            if not data:
                break
            writer.write(data)
            await writer.drain()
    except (ConnectionError, OSError):
        pass
    finally:
        writer.close()


class PortForwarder(Disposable):
    """TCP forwarder from local ports to a remote host.

    *ports* is a list of (local_port, remote_port) pairs.
    """

    def __init__(
        self,
        remote_host: str,
        ports: list[tuple[int, int]],
        bind_host: str = "127.0.0.1",
    ) -> None:
        super().__init__(self._close)
        self._remote_host = remote_host
        self._ports = ports
        self._bind_host = bind_host
        self._servers: list[asyncio.AbstractServer] = []
        self._closing: list[asyncio.AbstractServer] = []
        self._connections: set[asyncio.Task] = set()

    @property
    def remote_host(self) -> str:
        return self._remote_host

    @property
    def ports(self) -> list[tuple[int, int]]:
        return list(self._ports)

    @property
    def bound_ports(self) -> list[int]:
        """Local ports actually listening (differs from ports when 0 was asked)."""
        return [
            sock.getsockname()[1]
            for server in self._servers
            for sock in (server.sockets or ())
        ]

    async def open(self) -> None:
        """Bind every local port. Raises OSError if any bind fails."""
        for local_port, remote_port in self._ports:
            server = await asyncio.start_server(
                functools.partial(self._handle, remote_port),
                self._bind_host,
                local_port,
            )
            self._servers.append(server)
            logger.info(
                "Tunnel open: %s:%d -> %s:%d",
                self._bind_host, local_port, self._remote_host, remote_port,
            )

    async def _handle(
        self,
        remote_port: int,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._connections.add(task)
        try:
            try:
                remote_reader, remote_writer = await asyncio.open_connection(
                    self._remote_host, remote_port,
                )
            except OSError as exc:
                logger.warning(
                    "Tunnel could not reach %s:%d: %s",
                    self._remote_host, remote_port, exc,
                )
                return
            await asyncio.gather(
                _pipe(reader, remote_writer),
                _pipe(remote_reader, writer),
            )
        finally:
            writer.close()
            if task is not None:
                self._connections.discard(task)

    def _close(self) -> None:
        for server in self._servers:
            server.close()
        self._closing.extend(self._servers)
        self._servers.clear()
        for task in list(self._connections):
            task.cancel()
        logger.info("Tunnel to %s closed", self._remote_host)

    async def wait_closed(self) -> None:
        """Wait until a disposed forwarder has let go of its ports and connections."""
        connections = list(self._connections)
        if connections:
            await asyncio.gather(*connections, return_exceptions=True)
        servers, self._closing = self._closing, []
        for server in servers:
            try:
                await asyncio.wait_for(server.wait_closed(), _CLOSE_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning("Tunnel listener on %s did not close in time", self._bind_host)

    async def aclose(self) -> None:
        self.dispose()
        await self.wait_closed()


class TunnelManager:
    """Opens a tunnel for a root according to a TunnelBehavior."""

    def __init__(self, config: SupervisorConfig, prompter: Prompter) -> None:
        self._config = config
        self._prompter = prompter

    async def open_tunnel(self, root: str, behavior: TunnelBehavior) -> Disposable:
        """Return the open tunnel, or a no-op handle when none is wanted."""
        if not roots.is_remote(root):
            logger.debug("No tunnel needed for local root %s", root)
            return Disposable()
        if behavior is TunnelBehavior.NEVER:
            logger.info("Tunnel skipped for %s (behavior=%s)", root, behavior.value)
            return Disposable()

        ports = list(self._config.tunnel_ports)
        if behavior is TunnelBehavior.ASK:
            accepted = await self._prompter.confirm_tunnel(root, ports)
            if not accepted:
                logger.info("User declined tunnel for %s", root)
                return Disposable()

        host = self._config.tunnel_host or roots.get_hostname(root).rpartition("@")[2]
        forwarder = PortForwarder(host, [(port, port) for port in ports])
        try:
            await forwarder.open()
        except OSError as exc:
            await forwarder.aclose()
            raise TunnelSetupError(root, str(exc)) from exc
        return forwarder
