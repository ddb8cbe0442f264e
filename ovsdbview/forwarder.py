"""Local listener that relays byte streams into the last hop of an SSH chain."""

from __future__ import annotations

import asyncio
import logging
import os
import secrets
import socket
import tempfile
from typing import Any, Protocol

import asyncssh

from .errors import NetworkError
from .models import ForwarderKind, RemoteAddress

LOG = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024


class ChannelOpener(Protocol):
    """Subset of `asyncssh.SSHClientConnection` the forwarder relies on."""

    async def open_connection(self, host: str, port: int) -> tuple[Any, Any]: ...

    async def open_unix_connection(self, path: str) -> tuple[Any, Any]: ...


def unix_sockets_supported() -> bool:
    """Whether this platform can bind local domain sockets."""

    return hasattr(socket, "AF_UNIX")


class Forwarder:
    """Accepts local connections and maps each one to its own remote channel."""

    def __init__(self, hop: ChannelOpener, remote: RemoteAddress, kind: ForwarderKind) -> None:
        if kind is ForwarderKind.AUTO:
            raise ValueError("Resolve AUTO to tcp or unix before creating a forwarder")
        self._hop = hop
        self._remote = remote
        self._kind = kind
        self._server: asyncio.AbstractServer | None = None
        self._socket_path: str | None = None
        self._local_endpoint: str | None = None
        self._relays: set[asyncio.Task[None]] = set()
        self._closed = False

    @property
    def kind(self) -> ForwarderKind:
        return self._kind

    @property
    def local_endpoint(self) -> str:
        """Connection string the RPC client should dial."""

        if self._local_endpoint is None:
            raise RuntimeError("Forwarder has not been started")
        return self._local_endpoint

    @property
    def active_relays(self) -> int:
        return len(self._relays)

    @property
    def is_serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    async def start(self) -> str:
        """Bind an ephemeral local address and start accepting connections."""

        try:
            if self._kind is ForwarderKind.UNIX:
                path = os.path.join(tempfile.gettempdir(), f"ovsdbview-tunnel-{secrets.token_hex(8)}.sock")
                self._server = await asyncio.start_unix_server(self._handle_client, path=path)
                self._socket_path = path
                self._local_endpoint = f"unix:{path}"
            else:
                self._server = await asyncio.start_server(self._handle_client, host="127.0.0.1", port=0)
                port = self._server.sockets[0].getsockname()[1]
                self._local_endpoint = f"tcp:127.0.0.1:{port}"
        except OSError as exc:
            raise NetworkError(f"Failed to bind local {self._kind.value} forwarder: {exc}") from exc
        LOG.debug(
            "Forwarder listening",
            extra={"local": self._local_endpoint, "remote": str(self._remote)},
        )
        return self._local_endpoint

    async def close(self) -> None:
        """Stop listening and tear down every relayed channel."""

        if self._closed:
            return
        self._closed = True
        if self._server is not None:
            self._server.close()
        relays = tuple(self._relays)
        for task in relays:
            task.cancel()
        if relays:
            await asyncio.gather(*relays, return_exceptions=True)
        self._relays.clear()
        if self._socket_path is not None:
            try:
                os.unlink(self._socket_path)
            except FileNotFoundError:
                pass
            except OSError as exc:
                LOG.warning("Failed to remove forwarder socket %s: %s", self._socket_path, exc)
        LOG.debug("Forwarder closed", extra={"local": self._local_endpoint})

    async def _open_remote(self) -> tuple[Any, Any]:
        if self._remote.is_unix:
            return await self._hop.open_unix_connection(self._remote.path)
        return await self._hop.open_connection(self._remote.host, self._remote.port)

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if self._closed or task is None:
            await _close_writer(writer)
            return
        self._relays.add(task)
        try:
            try:
                remote_reader, remote_writer = await self._open_remote()
            except (OSError, asyncssh.Error) as exc:
                LOG.warning("Failed to open channel to %s: %s", self._remote, exc)
                return
            LOG.debug("Relay opened", extra={"local": self._local_endpoint, "remote": str(self._remote)})
            try:
                await _relay(reader, writer, remote_reader, remote_writer)
            finally:
                await _close_writer(remote_writer)
                LOG.debug("Relay closed", extra={"local": self._local_endpoint, "remote": str(self._remote)})
        except asyncio.CancelledError:
            pass
        except Exception:
            LOG.exception("Relay to %s failed", self._remote)
        finally:
            await _close_writer(writer)
            self._relays.discard(task)


async def _relay(local_reader: Any, local_writer: Any, remote_reader: Any, remote_writer: Any) -> None:
    """Copy both directions until either side finishes, then stop the other."""

    upstream = asyncio.ensure_future(_pipe(local_reader, remote_writer))
    downstream = asyncio.ensure_future(_pipe(remote_reader, local_writer))
    try:
        await asyncio.wait({upstream, downstream}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (upstream, downstream):
            task.cancel()
        await asyncio.gather(upstream, downstream, return_exceptions=True)


async def _pipe(reader: Any, writer: Any) -> None:
    try:
        while True:
            data = await reader.read(_CHUNK_SIZE)
            if not data:
                return
            writer.write(data)
            await writer.drain()
    except (OSError, asyncssh.Error) as exc:
        LOG.debug("Relay stream ended: %s", exc)


async def _close_writer(writer: Any) -> None:
    try:
        writer.close()
        wait_closed = getattr(writer, "wait_closed", None)
        if wait_closed is not None:
            await wait_closed()
    except (OSError, asyncssh.Error):
        pass


__all__ = ["ChannelOpener", "Forwarder", "unix_sockets_supported"]
