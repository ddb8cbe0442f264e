"""Connection coordinator: sessions, schema caching, and history recording."""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Coroutine, Sequence, TypeVar

from .client import OvsdbClient
from .config import AppConfig, ConnectRequest, EndpointConfig, normalize_endpoints
from .errors import ConcurrencyError, NotFoundError, OvsdbViewError, PersistenceError, SchemaNotFound
from .history import HistoryRecord, HistoryRegistry, MemoryHistoryStore, record_connection
from .models import EndpointSpec
from .schema import DatabaseSchema
from .tables import Row, TableQueryEngine
from .tunnel import TunnelOptions, open_tunnel

LOG = logging.getLogger(__name__)

T = TypeVar("T")

_session_ids = itertools.count(1)


@dataclass(slots=True)
class EndpointLink:
    """One connected endpoint: its spec, RPC client, and served databases."""

    spec: EndpointSpec
    client: OvsdbClient
    databases: tuple[str, ...] = ()
    schemas: dict[str, DatabaseSchema] = field(default_factory=dict)

    @property
    def tunneled(self) -> bool:
        return self.client.tunnel is not None


@dataclass(slots=True)
class ConnectionSession:
    """Everything one connect call owns until it is disconnected."""

    links: list[EndpointLink]
    database: str
    schemas: dict[str, DatabaseSchema] = field(default_factory=dict)
    connected_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))
    session_id: int = field(default_factory=lambda: next(_session_ids))
    closed: bool = False

    @property
    def endpoints(self) -> tuple[str, ...]:
        return tuple(link.spec.address for link in self.links)

    def link_for(self, database: str | None = None, endpoint: int | None = None) -> EndpointLink:
        """Pick the endpoint to ask: explicit index, else the first serving ``database``."""

        if self.closed:
            raise ConcurrencyError(f"Session {self.session_id} is disconnected")
        if endpoint is not None:
            if not 0 <= endpoint < len(self.links):
                raise NotFoundError(f"Session {self.session_id} has no endpoint {endpoint}")
            return self.links[endpoint]
        if database is None:
            return self.links[0]
        for link in self.links:
            if database in link.databases:
                return link
        raise SchemaNotFound(f"No connected endpoint serves database '{database}'", database=database)

    def schema_cache(self, link: EndpointLink, database: str) -> dict[str, DatabaseSchema]:
        """Session-wide cache for the first link serving ``database``, else the link's own."""

        primary = next((candidate for candidate in self.links if database in candidate.databases), None)
        return self.schemas if link is primary else link.schemas


class SessionManager:
    """Synchronous facade that runs every OVSDB session on a private event loop."""

    def __init__(
        self,
        *,
        config: AppConfig | None = None,
        history: HistoryRegistry | None = None,
    ) -> None:
        self._config = config or AppConfig()
        self._history = history or HistoryRegistry(MemoryHistoryStore())
        self._sessions: dict[int, ConnectionSession] = {}
        self._sessions_lock = threading.Lock()
        self._loop = asyncio.new_event_loop()
        self._loop_thread = threading.Thread(
            target=self._loop.run_forever,
            name="ovsdbview-session-loop",
            daemon=True,
        )
        self._loop_thread.start()
        self._stopped = False

    @property
    def config(self) -> AppConfig:
        return self._config

    @property
    def history_registry(self) -> HistoryRegistry:
        return self._history

    @property
    def sessions(self) -> tuple[ConnectionSession, ...]:
        with self._sessions_lock:
            return tuple(self._sessions.values())

    def connect(
        self,
        request: ConnectRequest | Sequence[EndpointConfig],
        database: str | None = None,
    ) -> ConnectionSession:
        """Connect every endpoint of ``request`` or none of them."""

        if isinstance(request, ConnectRequest):
            entries, target = request.endpoints, database or request.database
        else:
            entries, target = list(request), database or self._config.default_database
        endpoints = normalize_endpoints(entries)
        if not endpoints:
            raise ValueError("No endpoints provided")
        specs = [entry.to_spec() for entry in endpoints]
        session = self._run(self._connect(specs, target))
        with self._sessions_lock:
            self._sessions[session.session_id] = session
        try:
            self._history.append(record_connection(endpoints))
        except (PersistenceError, OSError) as exc:
            LOG.warning("Connected, but failed to record connection history: %s", exc)
        return session

    def disconnect(self, session: ConnectionSession) -> None:
        """Tear down every endpoint of ``session``; repeated calls are no-ops."""

        with self._sessions_lock:
            self._sessions.pop(session.session_id, None)
        if session.closed:
            return
        session.closed = True
        self._run(self._close_links(session.links))
        LOG.info("Session disconnected", extra={"session": session.session_id})

    def list_dbs(self, session: ConnectionSession, *, endpoint: int | None = None) -> list[str]:
        link = session.link_for(endpoint=endpoint)
        return self._run(link.client.list_dbs())

    def get_schema(
        self,
        session: ConnectionSession,
        database: str | None = None,
        *,
        refresh: bool = False,
        endpoint: int | None = None,
    ) -> DatabaseSchema:
        """Schema for ``database`` as served by the chosen endpoint, fetched once unless refreshed."""

        name = database or session.database
        link = session.link_for(name, endpoint)
        cache = session.schema_cache(link, name)
        cached = cache.get(name)
        if cached is not None and not refresh:
            return cached
        schema = self._run(link.client.get_schema(name))
        cache[name] = schema
        LOG.debug("Cached schema", extra={"session": session.session_id, "database": name})
        return schema

    def select_database(self, session: ConnectionSession, database: str) -> DatabaseSchema:
        """Make ``database`` the session's current database."""

        schema = self.get_schema(session, database)
        session.database = database
        return schema

    def get_table(
        self,
        session: ConnectionSession,
        database: str | None,
        table: str,
        *,
        endpoint: int | None = None,
    ) -> list[Row]:
        """Read one table; failures leave the session and its schema cache intact."""

        name = database or session.database
        schema = self.get_schema(session, name, endpoint=endpoint)
        link = session.link_for(name, endpoint)
        engine = TableQueryEngine(link.client)
        return self._run(engine.get_table(schema, table))

    def history(self) -> list[HistoryRecord]:
        return self._history.list()

    def delete_history(self, index: int) -> None:
        self._history.delete(index)

    def shutdown(self) -> None:
        """Disconnect every open session and stop the background loop."""

        for session in self.sessions:
            try:
                self.disconnect(session)
            except OvsdbViewError as exc:
                LOG.warning("Error while closing session %d: %s", session.session_id, exc)
        self._stopped = True
        if not self._loop.is_running():
            return
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._loop_thread.join(timeout=1)

    def __enter__(self) -> SessionManager:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    def _run(self, coro: Coroutine[Any, Any, T]) -> T:
        if self._stopped:
            coro.close()
            raise ConcurrencyError("Session manager has been shut down")
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return future.result()

    async def _connect(self, specs: Sequence[EndpointSpec], database: str) -> ConnectionSession:
        links: list[EndpointLink] = []
        try:
            for spec in specs:
                links.append(await self._open_link(spec))
            session = ConnectionSession(links=links, database=database)
            link = session.link_for(database)
            session.schemas[database] = await link.client.get_schema(database)
        except BaseException:
            await self._close_links(links)
            raise
        LOG.info(
            "Session connected",
            extra={"session": session.session_id, "endpoints": session.endpoints, "database": database},
        )
        return session

    async def _open_link(self, spec: EndpointSpec) -> EndpointLink:
        options = TunnelOptions.from_config(self._config)
        try:
            tunnel = None
            if spec.tunnel is not None:
                tunnel = await open_tunnel(spec.tunnel, spec.remote, options)
            client = await OvsdbClient.connect(
                spec.address,
                tunnel=tunnel,
                connect_timeout=self._config.hop_timeout,
                request_timeout=self._config.request_timeout,
            )
            try:
                databases = await client.list_dbs()
            except BaseException:
                await client.disconnect()
                raise
        except OvsdbViewError as exc:
            _name_endpoint(exc, spec.address)
            raise
        return EndpointLink(spec=spec, client=client, databases=tuple(databases))

    async def _close_links(self, links: Sequence[EndpointLink]) -> None:
        for link in reversed(links):
            try:
                await link.client.disconnect()
            except OvsdbViewError as exc:
                LOG.warning("Error while disconnecting %s: %s", link.spec.address, exc)


def _name_endpoint(exc: OvsdbViewError, endpoint: str) -> None:
    exc.endpoint = endpoint
    if endpoint not in str(exc):
        exc.args = (f"{endpoint}: {exc}",)


__all__ = ["ConnectionSession", "EndpointLink", "SessionManager"]
