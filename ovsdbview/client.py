"""OVSDB management protocol client over a direct or tunneled socket."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .errors import ConnectionRefused, NetworkError, ProtocolError, RequestTimeout, SchemaNotFound
from .jsonrpc import JsonRpcConnection, NotificationHandler, RemoteError
from .models import parse_address
from .schema import DatabaseSchema, parse_schema
from .tunnel import Tunnel

LOG = logging.getLogger(__name__)


class OvsdbClient:
    """Speaks JSON-RPC to one ovsdb-server and owns the tunnel behind it."""

    def __init__(
        self,
        connection: JsonRpcConnection,
        *,
        endpoint: str,
        tunnel: Tunnel | None = None,
    ) -> None:
        self._connection = connection
        self._endpoint = endpoint
        self._tunnel = tunnel
        self._closed = False

    @classmethod
    async def connect(
        cls,
        endpoint: str,
        *,
        tunnel: Tunnel | None = None,
        connect_timeout: float = 10.0,
        request_timeout: float | None = 30.0,
        on_notification: NotificationHandler | None = None,
    ) -> OvsdbClient:
        """Dial ``endpoint`` directly, or the tunnel's forwarder when given.

        The client takes ownership of ``tunnel``: it is closed here if the
        dial fails, and by `disconnect` otherwise.
        """

        target = tunnel.local_endpoint if tunnel is not None else endpoint
        try:
            address = parse_address(target)
            try:
                if address.is_unix:
                    opening = asyncio.open_unix_connection(address.path)
                else:
                    opening = asyncio.open_connection(address.host, address.port)
                reader, writer = await asyncio.wait_for(opening, timeout=connect_timeout)
            except asyncio.TimeoutError as exc:
                raise RequestTimeout(f"Timed out connecting to {endpoint}", endpoint=endpoint) from exc
            except (ConnectionRefusedError, FileNotFoundError) as exc:
                raise ConnectionRefused(f"Connection to {endpoint} refused: {exc}", endpoint=endpoint) from exc
            except OSError as exc:
                raise NetworkError(f"Failed to connect to {endpoint}: {exc}", endpoint=endpoint) from exc
        except BaseException:
            if tunnel is not None:
                await tunnel.close()
            raise
        connection = JsonRpcConnection(
            reader,
            writer,
            name=endpoint,
            request_timeout=request_timeout,
            on_notification=on_notification,
        )
        connection.start()
        LOG.debug("Connected to OVSDB", extra={"endpoint": endpoint, "via": target})
        return cls(connection, endpoint=endpoint, tunnel=tunnel)

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def tunnel(self) -> Tunnel | None:
        return self._tunnel

    @property
    def closed(self) -> bool:
        return self._closed

    async def list_dbs(self) -> list[str]:
        """Names of the databases this server serves, in server order."""

        result = await self._connection.call("list_dbs", [])
        if not isinstance(result, list) or not all(isinstance(name, str) for name in result):
            raise ProtocolError(f"list_dbs returned {result!r}", endpoint=self._endpoint)
        return result

    async def get_schema(self, database: str) -> DatabaseSchema:
        """Fetch and parse the schema of ``database``."""

        try:
            document = await self._connection.call("get_schema", [database])
        except RemoteError as exc:
            if exc.tag == "unknown database":
                raise SchemaNotFound(
                    f"Database '{database}' not found on {self._endpoint}",
                    endpoint=self._endpoint,
                    database=database,
                ) from exc
            raise
        return parse_schema(document)

    async def transact(self, database: str, *operations: dict[str, Any]) -> list[Any]:
        """Run one `transact` request and return its per-operation results."""

        try:
            result = await self._connection.call("transact", [database, *operations])
        except RemoteError as exc:
            if exc.tag == "unknown database":
                raise SchemaNotFound(
                    f"Database '{database}' not found on {self._endpoint}",
                    endpoint=self._endpoint,
                    database=database,
                ) from exc
            raise
        if not isinstance(result, list):
            raise ProtocolError(f"transact returned {result!r}", endpoint=self._endpoint, database=database)
        return result

    async def disconnect(self) -> None:
        """Close the RPC transport, then the forwarder and hops behind it."""

        if self._closed:
            return
        self._closed = True
        try:
            await self._connection.close()
        finally:
            if self._tunnel is not None:
                await self._tunnel.close()
        LOG.debug("Disconnected from OVSDB", extra={"endpoint": self._endpoint})


__all__ = ["OvsdbClient"]
