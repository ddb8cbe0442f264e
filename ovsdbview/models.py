"""Runtime descriptions of OVSDB endpoints and the SSH hops used to reach them."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

DEFAULT_SSH_PORT = 22


class ForwarderKind(str, Enum):
    """Kind of local listener a tunnel exposes to the RPC client."""

    TCP = "tcp"
    UNIX = "unix"
    AUTO = "auto"


@dataclass(frozen=True, slots=True)
class RemoteAddress:
    """Parsed `tcp:host:port` or `unix:/path` endpoint."""

    scheme: str
    host: str | None = None
    port: int | None = None
    path: str | None = None

    @property
    def is_unix(self) -> bool:
        return self.scheme == "unix"

    def __str__(self) -> str:
        if self.is_unix:
            return f"unix:{self.path}"
        host = f"[{self.host}]" if self.host and ":" in self.host else self.host
        return f"tcp:{host}:{self.port}"


def parse_address(value: str) -> RemoteAddress:
    """Parse an OVSDB connection string into a `RemoteAddress`."""

    scheme, sep, rest = value.strip().partition(":")
    if not sep or not rest:
        raise ValueError(f"Endpoint '{value}' must look like tcp:host:port or unix:/path")
    if scheme == "unix":
        return RemoteAddress(scheme="unix", path=rest)
    if scheme != "tcp":
        raise ValueError(f"Unsupported endpoint type: {value}")
    host, sep, port_text = rest.rpartition(":")
    if not sep or not host:
        raise ValueError(f"Endpoint '{value}' is missing a host or port")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        port = int(port_text)
    except ValueError:
        raise ValueError(f"Endpoint '{value}' has an invalid port '{port_text}'") from None
    if not 0 < port < 65536:
        raise ValueError(f"Endpoint '{value}' has an out of range port {port}")
    return RemoteAddress(scheme="tcp", host=host, port=port)


@dataclass(frozen=True, slots=True)
class JumpHost:
    """One SSH hop: where to dial and who to authenticate as."""

    host: str
    port: int = DEFAULT_SSH_PORT
    user: str | None = None

    @property
    def label(self) -> str:
        prefix = f"{self.user}@" if self.user else ""
        return f"{prefix}{self.host}:{self.port}"


def parse_jump_host(value: str, *, default_user: str | None = None) -> JumpHost:
    """Parse `user@host:port`, `host:port`, or `host`."""

    text = value.strip()
    user, sep, rest = text.rpartition("@")
    if not sep:
        user, rest = "", text
    host, sep, port_text = rest.rpartition(":")
    port = DEFAULT_SSH_PORT
    if sep and port_text.isdigit():
        port = int(port_text) or DEFAULT_SSH_PORT
    else:
        host = rest
    if not host:
        raise ValueError(f"Jump host '{value}' is missing a host name")
    return JumpHost(host=host, port=port, user=user or default_user)


@dataclass(frozen=True, slots=True)
class TunnelSpec:
    """SSH route to an endpoint: optional jump hosts, then the primary host."""

    ssh_host: str
    ssh_user: str
    key_file: str
    ssh_port: int = DEFAULT_SSH_PORT
    jump_hosts: tuple[JumpHost, ...] = ()
    forwarder_kind: ForwarderKind = ForwarderKind.TCP

    @property
    def primary(self) -> JumpHost:
        return JumpHost(host=self.ssh_host, port=self.ssh_port, user=self.ssh_user)

    def hops(self) -> tuple[JumpHost, ...]:
        """Hops in dial order; each one is reached through the previous one."""

        jumps = tuple(
            hop if hop.user else JumpHost(host=hop.host, port=hop.port, user=self.ssh_user)
            for hop in self.jump_hosts
        )
        return (*jumps, self.primary)


@dataclass(frozen=True, slots=True)
class EndpointSpec:
    """Endpoint the RPC client should reach, optionally through a tunnel."""

    address: str
    tunnel: TunnelSpec | None = None

    @property
    def remote(self) -> RemoteAddress:
        return parse_address(self.address)


__all__ = [
    "DEFAULT_SSH_PORT",
    "EndpointSpec",
    "ForwarderKind",
    "JumpHost",
    "RemoteAddress",
    "TunnelSpec",
    "parse_address",
    "parse_jump_host",
]
