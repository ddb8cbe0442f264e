"""Multi-hop SSH chain establishment built on AsyncSSH.

A chain is dialed hop by hop: the first hop is a plain TCP connection and
every later hop is opened as a direct-tcpip channel inside the previous
hop's connection (AsyncSSH's ``tunnel=`` option). Once the final hop has
authenticated, a `Forwarder` is bound locally so an ordinary socket client
can reach the remote OVSDB endpoint through the chain.

Failure anywhere closes every hop that was already open, newest first,
before the error reaches the caller.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import asyncssh

from .config import AppConfig
from .errors import AuthenticationError, HostKeyError, NetworkError, RequestTimeout
from .forwarder import Forwarder, unix_sockets_supported
from .models import ForwarderKind, JumpHost, RemoteAddress, TunnelSpec

LOG = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TunnelOptions:
    """Connection knobs applied to every hop of a chain."""

    hop_timeout: float = 10.0
    known_hosts: str | None = None
    keepalive_interval: float = 0.0

    @classmethod
    def from_config(cls, config: AppConfig) -> "TunnelOptions":
        return cls(
            hop_timeout=config.hop_timeout,
            known_hosts=config.known_hosts,
            keepalive_interval=config.keepalive_interval,
        )


@dataclass(slots=True)
class TunnelChain:
    """Ordered, live SSH hops; the last one reaches the OVSDB host."""

    hops: list[tuple[JumpHost, Any]] = field(default_factory=list)

    @property
    def final(self) -> Any:
        if not self.hops:
            raise RuntimeError("Tunnel chain has no established hops")
        return self.hops[-1][1]

    @property
    def last_connection(self) -> Any | None:
        return self.hops[-1][1] if self.hops else None

    def __len__(self) -> int:
        return len(self.hops)

    async def close(self) -> None:
        """Close hops in reverse order; safe to call more than once."""

        while self.hops:
            hop, conn = self.hops.pop()
            try:
                conn.close()
                await conn.wait_closed()
            except (OSError, asyncssh.Error) as exc:
                LOG.warning("Error while closing SSH hop %s: %s", hop.label, exc)
            LOG.debug("Closed SSH hop", extra={"hop": hop.label})


@dataclass(slots=True)
class Tunnel:
    """Live chain plus the forwarder bound in front of it."""

    chain: TunnelChain
    forwarder: Forwarder
    closed: bool = False

    @property
    def local_endpoint(self) -> str:
        return self.forwarder.local_endpoint

    async def close(self) -> None:
        """Stop the forwarder first, then the hops it was relaying through."""

        if self.closed:
            return
        self.closed = True
        try:
            await self.forwarder.close()
        finally:
            await self.chain.close()


def resolve_forwarder_kind(kind: ForwarderKind, remote: RemoteAddress) -> ForwarderKind:
    """Pick the concrete local listener type for a tunnel."""

    if kind is ForwarderKind.UNIX:
        if not unix_sockets_supported():
            raise NetworkError("Local domain sockets are not supported on this platform")
        return ForwarderKind.UNIX
    if kind is ForwarderKind.AUTO and remote.is_unix and unix_sockets_supported():
        return ForwarderKind.UNIX
    return ForwarderKind.TCP


async def build_chain(spec: TunnelSpec, options: TunnelOptions | None = None) -> TunnelChain:
    """Authenticate every hop of ``spec`` in order and return the live chain."""

    options = options or TunnelOptions()
    key = _load_key(spec.key_file)
    chain = TunnelChain()
    try:
        for hop in spec.hops():
            conn = await _dial_hop(hop, key, chain.last_connection, options)
            chain.hops.append((hop, conn))
            LOG.debug("SSH hop established", extra={"hop": hop.label, "depth": len(chain)})
    except BaseException:
        await chain.close()
        raise
    return chain


async def open_tunnel(
    spec: TunnelSpec,
    remote: RemoteAddress,
    options: TunnelOptions | None = None,
) -> Tunnel:
    """Build the chain for ``spec`` and start a forwarder to ``remote``."""

    kind = resolve_forwarder_kind(spec.forwarder_kind, remote)
    chain = await build_chain(spec, options)
    forwarder = Forwarder(chain.final, remote, kind)
    try:
        await forwarder.start()
    except BaseException:
        await forwarder.close()
        await chain.close()
        raise
    LOG.info(
        "Tunnel ready",
        extra={"hops": len(chain), "local": forwarder.local_endpoint, "remote": str(remote)},
    )
    return Tunnel(chain=chain, forwarder=forwarder)


def _load_key(path: str) -> Any:
    if not path:
        raise AuthenticationError("No private key file configured for SSH tunnel")
    try:
        return asyncssh.read_private_key(path)
    except (OSError, asyncssh.KeyImportError) as exc:
        raise AuthenticationError(f"Failed to load private key '{path}': {exc}") from exc


async def _dial_hop(hop: JumpHost, key: Any, through: Any | None, options: TunnelOptions) -> Any:
    kwargs: dict[str, Any] = {
        "username": hop.user,
        "client_keys": [key],
        "known_hosts": options.known_hosts,
    }
    if through is not None:
        kwargs["tunnel"] = through
    if options.keepalive_interval:
        kwargs["keepalive_interval"] = options.keepalive_interval
    try:
        return await asyncio.wait_for(
            asyncssh.connect(hop.host, hop.port, **kwargs),
            timeout=options.hop_timeout,
        )
    except asyncssh.HostKeyNotVerifiable as exc:
        raise HostKeyError(f"Host key for {hop.label} could not be verified: {exc}", hop=hop.label) from exc
    except asyncssh.PermissionDenied as exc:
        raise AuthenticationError(f"Authentication failed for {hop.label}: {exc}", hop=hop.label) from exc
    except asyncio.TimeoutError as exc:
        raise RequestTimeout(
            f"Timed out after {options.hop_timeout}s connecting to {hop.label}", hop=hop.label
        ) from exc
    except (OSError, asyncssh.Error) as exc:
        raise NetworkError(f"Failed to connect to {hop.label}: {exc}", hop=hop.label) from exc


__all__ = [
    "Tunnel",
    "TunnelChain",
    "TunnelOptions",
    "build_chain",
    "open_tunnel",
    "resolve_forwarder_kind",
]
