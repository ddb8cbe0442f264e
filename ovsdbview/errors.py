"""Error taxonomy shared by the tunnel, RPC, query, and history layers."""

from __future__ import annotations


class OvsdbViewError(RuntimeError):
    """Base class for every failure surfaced by ovsdbview."""

    def __init__(
        self,
        message: str,
        *,
        endpoint: str | None = None,
        hop: str | None = None,
        database: str | None = None,
        table: str | None = None,
    ) -> None:
        super().__init__(message)
        self.endpoint = endpoint
        self.hop = hop
        self.database = database
        self.table = table


class AuthenticationError(OvsdbViewError):
    """Credentials or key material were rejected by an SSH hop."""


class HostKeyError(AuthenticationError):
    """An SSH hop presented a host key that could not be verified."""


class NetworkError(OvsdbViewError):
    """Dial, timeout, or reset on a hop or on the RPC transport."""


class ConnectionRefused(NetworkError):
    """The RPC endpoint refused the connection."""


class RequestTimeout(NetworkError):
    """A hop or an RPC round-trip did not complete in time."""


class ProtocolError(OvsdbViewError):
    """Malformed schema document, row data, or RPC envelope."""


class NotFoundError(OvsdbViewError):
    """Unknown database, table, or history index."""


class SchemaNotFound(NotFoundError):
    """The server does not serve the requested database."""


class TableNotFound(NotFoundError):
    """The database schema has no table with the requested name."""


class ConcurrencyError(OvsdbViewError):
    """Operation attempted against a session or client after disconnect."""


class ConnectionClosed(ConcurrencyError):
    """The transport closed while a request was outstanding."""


class PersistenceError(OvsdbViewError):
    """The history store could not durably record a change."""


__all__ = [
    "AuthenticationError",
    "ConcurrencyError",
    "ConnectionClosed",
    "ConnectionRefused",
    "HostKeyError",
    "NetworkError",
    "NotFoundError",
    "OvsdbViewError",
    "PersistenceError",
    "ProtocolError",
    "RequestTimeout",
    "SchemaNotFound",
    "TableNotFound",
]
