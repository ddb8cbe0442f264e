"""Shared fakes: an in-process ovsdb-server and a scripted SSH layer."""

from __future__ import annotations

import asyncio
import copy
import json
import threading
import time
from typing import Any, Callable, Iterator

import pytest

from ovsdbview import tunnel as tunnel_module
from ovsdbview.jsonrpc import JsonStreamParser

FAKE_KEY = object()

OVS_SCHEMA: dict[str, Any] = {
    "name": "Open_vSwitch",
    "version": "8.3.0",
    "cksum": "3781850481 26690",
    "tables": {
        "Open_vSwitch": {
            "columns": {
                "bridges": {
                    "type": {
                        "key": {"type": "uuid", "refTable": "Bridge"},
                        "min": 0,
                        "max": "unlimited",
                    }
                },
                "ovs_version": {"type": {"key": "string", "min": 0, "max": 1}},
            },
            "isRoot": True,
            "maxRows": 1,
        },
        "Bridge": {
            "columns": {
                "datapath_id": {"type": {"key": "string", "min": 0, "max": 1}, "ephemeral": True},
                "external_ids": {
                    "type": {"key": "string", "value": "string", "min": 0, "max": "unlimited"}
                },
                "name": {"type": "string", "mutable": False},
                "protocols": {
                    "type": {
                        "key": {
                            "type": "string",
                            "enum": ["set", ["OpenFlow10", "OpenFlow13", "OpenFlow15"]],
                        },
                        "min": 0,
                        "max": "unlimited",
                    }
                },
                "stp_enable": {"type": "boolean"},
            },
            "indexes": [["name"]],
            "isRoot": True,
        },
    },
}

BRIDGE_ROW: dict[str, Any] = {
    "_uuid": ["uuid", "5f8b1d3e-0000-4000-8000-000000000001"],
    "_version": ["uuid", "5f8b1d3e-0000-4000-8000-0000000000aa"],
    "datapath_id": ["set", []],
    "external_ids": ["map", [["bridge-id", "br-int"], ["owner", "ovn"]]],
    "name": "br-int",
    "protocols": "OpenFlow13",
    "stp_enable": False,
}


def wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        time.sleep(0.01)


class FakeOvsdbServer:
    """Minimal ovsdb-server on its own loop thread."""

    def __init__(
        self,
        schemas: dict[str, dict[str, Any]] | None = None,
        rows: dict[tuple[str, str], list[dict[str, Any]]] | None = None,
    ) -> None:
        self.schemas = schemas if schemas is not None else {"Open_vSwitch": copy.deepcopy(OVS_SCHEMA)}
        self.rows = rows if rows is not None else {("Open_vSwitch", "Bridge"): [copy.deepcopy(BRIDGE_ROW)]}
        self.requests: list[dict[str, Any]] = []
        self.hold: set[str] = set()
        self.send_updates = False
        self.echo_first = False
        self.accepted = 0
        self.active = 0
        self._writers: set[asyncio.StreamWriter] = set()
        self._server: asyncio.AbstractServer | None = None
        self._port: int | None = None
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._loop.run_forever, name="fake-ovsdb", daemon=True)

    @property
    def endpoint(self) -> str:
        return f"tcp:127.0.0.1:{self._port}"

    @property
    def port(self) -> int:
        assert self._port is not None
        return self._port

    def methods(self) -> list[str]:
        return [request["method"] for request in list(self.requests) if "method" in request]

    def start(self) -> FakeOvsdbServer:
        self._thread.start()
        asyncio.run_coroutine_threadsafe(self._start(), self._loop).result(timeout=5)
        return self

    def stop(self) -> None:
        asyncio.run_coroutine_threadsafe(self._stop(), self._loop).result(timeout=5)
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=5)

    async def _start(self) -> None:
        self._server = await asyncio.start_server(self._handle, host="127.0.0.1", port=0)
        self._port = self._server.sockets[0].getsockname()[1]

    async def _stop(self) -> None:
        if self._server is not None:
            self._server.close()
        for writer in list(self._writers):
            writer.close()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.accepted += 1
        self.active += 1
        self._writers.add(writer)
        parser = JsonStreamParser()
        try:
            if self.echo_first:
                writer.write(json.dumps({"method": "echo", "params": ["hello"], "id": "echo"}).encode())
                await writer.drain()
            while True:
                data = await reader.read(65536)
                if not data:
                    break
                for message in parser.feed(data):
                    self.requests.append(message)
                    reply = self._reply(message)
                    if reply is None:
                        continue
                    if self.send_updates:
                        writer.write(json.dumps({"method": "update", "params": [None, {}], "id": None}).encode())
                    writer.write(json.dumps(reply).encode())
                    await writer.drain()
        except OSError:
            pass
        finally:
            self.active -= 1
            self._writers.discard(writer)
            writer.close()

    def _reply(self, message: dict[str, Any]) -> dict[str, Any] | None:
        method = message.get("method")
        request_id = message.get("id")
        if method is None or method in self.hold:
            return None
        params = message.get("params") or []
        if method == "list_dbs":
            return _result(request_id, list(self.schemas))
        if method == "get_schema":
            schema = self.schemas.get(params[0])
            if schema is None:
                return _error(request_id, "unknown database", f"{params[0]} is not a valid database name")
            return _result(request_id, schema)
        if method == "transact":
            database, *operations = params
            schema = self.schemas.get(database)
            if schema is None:
                return _error(request_id, "unknown database", f"{database} is not a valid database name")
            results = []
            for operation in operations:
                table = operation.get("table")
                if table not in schema["tables"]:
                    results.append({"error": "unknown table", "details": f"No table named {table}."})
                    break
                results.append({"rows": copy.deepcopy(self.rows.get((database, table), []))})
            return _result(request_id, results)
        if method == "echo":
            return _result(request_id, params)
        return _error(request_id, "unknown method", method)


def _result(request_id: Any, result: Any) -> dict[str, Any]:
    return {"id": request_id, "result": result, "error": None}


def _error(request_id: Any, tag: str, details: str) -> dict[str, Any]:
    return {"id": request_id, "result": None, "error": {"error": tag, "details": details}}


class FakeSSHConnection:
    """Stands in for `asyncssh.SSHClientConnection`."""

    def __init__(self, ssh: FakeSSH, host: str, port: int, options: dict[str, Any]) -> None:
        self.ssh = ssh
        self.host = host
        self.port = port
        self.options = options
        self.channels: list[tuple[str, Any]] = []
        self.closed = False

    async def open_connection(self, host: str, port: int) -> tuple[Any, Any]:
        self.channels.append(("tcp", (host, port)))
        return await asyncio.open_connection(host, port)

    async def open_unix_connection(self, path: str) -> tuple[Any, Any]:
        self.channels.append(("unix", path))
        host, port = self.ssh.unix_targets[path]
        return await asyncio.open_connection(host, port)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.ssh.closed.append(self.host)

    async def wait_closed(self) -> None:
        return None


class FakeSSH:
    """Replacement for `asyncssh.connect` that records every hop."""

    def __init__(self) -> None:
        self.connections: list[FakeSSHConnection] = []
        self.closed: list[str] = []
        self.failures: dict[str, BaseException] = {}
        self.stall: set[str] = set()
        self.unix_targets: dict[str, tuple[str, int]] = {}
        self.key_error: BaseException | None = None
        self.key_paths: list[str] = []

    async def connect(self, host: str, port: int = 22, **options: Any) -> FakeSSHConnection:
        if host in self.stall:
            await asyncio.sleep(60)
        failure = self.failures.get(host)
        if failure is not None:
            raise failure
        conn = FakeSSHConnection(self, host, port, options)
        self.connections.append(conn)
        return conn

    def read_private_key(self, path: str) -> Any:
        self.key_paths.append(path)
        if self.key_error is not None:
            raise self.key_error
        return FAKE_KEY

    @property
    def hosts(self) -> list[str]:
        return [conn.host for conn in self.connections]

    @property
    def open_connections(self) -> list[FakeSSHConnection]:
        return [conn for conn in self.connections if not conn.closed]


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def fake_ssh(monkeypatch: pytest.MonkeyPatch) -> FakeSSH:
    ssh = FakeSSH()
    monkeypatch.setattr(tunnel_module.asyncssh, "connect", ssh.connect)
    monkeypatch.setattr(tunnel_module.asyncssh, "read_private_key", ssh.read_private_key)
    return ssh


@pytest.fixture
def ovsdb_server() -> Iterator[FakeOvsdbServer]:
    server = FakeOvsdbServer().start()
    yield server
    server.stop()


@pytest.fixture
def second_ovsdb_server() -> Iterator[FakeOvsdbServer]:
    second_row = dict(copy.deepcopy(BRIDGE_ROW), name="br-ex", protocols=["set", []])
    server = FakeOvsdbServer(rows={("Open_vSwitch", "Bridge"): [second_row]}).start()
    yield server
    server.stop()
