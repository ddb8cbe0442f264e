"""Tests for JSON-RPC framing and request correlation."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable

import pytest

from ovsdbview.errors import ConnectionClosed, ProtocolError, RequestTimeout
from ovsdbview.jsonrpc import JsonRpcConnection, JsonStreamParser, RemoteError

Script = Callable[[asyncio.StreamReader, asyncio.StreamWriter], Awaitable[None]]


def test_parser_splits_concatenated_messages() -> None:
    parser = JsonStreamParser()

    messages = parser.feed(b'{"id":1,"result":[]} {"id":2,"result":["a"]}\n[1,2]')

    assert messages == [{"id": 1, "result": []}, {"id": 2, "result": ["a"]}, [1, 2]]


def test_parser_ignores_brackets_inside_strings() -> None:
    parser = JsonStreamParser()
    payload = json.dumps({"details": 'brace } and "quote" [', "id": 3}).encode()

    assert parser.feed(payload[:10]) == []
    assert parser.feed(payload[10:]) == [{"details": 'brace } and "quote" [', "id": 3}]


def test_parser_handles_split_multibyte_characters() -> None:
    parser = JsonStreamParser()
    payload = json.dumps({"name": "brück"}, ensure_ascii=False).encode("utf-8")
    split = payload.index("ü".encode("utf-8")) + 1

    assert parser.feed(payload[:split]) == []
    assert parser.feed(payload[split:]) == [{"name": "brück"}]


def test_parser_rejects_junk_between_messages() -> None:
    parser = JsonStreamParser()

    with pytest.raises(ProtocolError):
        parser.feed(b'{"id":1} garbage')


async def _serve(script: Script) -> tuple[asyncio.AbstractServer, int]:
    server = await asyncio.start_server(script, host="127.0.0.1", port=0)
    return server, server.sockets[0].getsockname()[1]


async def _connect(port: int, **kwargs: Any) -> JsonRpcConnection:
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    connection = JsonRpcConnection(reader, writer, name="test", **kwargs)
    connection.start()
    return connection


async def _read_messages(reader: asyncio.StreamReader, parser: JsonStreamParser, count: int) -> list[Any]:
    messages: list[Any] = []
    while len(messages) < count:
        data = await reader.read(65536)
        if not data:
            break
        messages.extend(parser.feed(data))
    return messages


@pytest.mark.anyio
async def test_out_of_order_responses_reach_their_callers() -> None:
    async def script(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        requests = await _read_messages(reader, JsonStreamParser(), 2)
        for request in reversed(requests):
            writer.write(json.dumps({"id": request["id"], "result": request["method"], "error": None}).encode())
        await writer.drain()
        await reader.read()
        writer.close()

    server, port = await _serve(script)
    connection = await _connect(port)
    try:
        first, second = await asyncio.gather(
            connection.call("list_dbs", []),
            connection.call("get_schema", ["Open_vSwitch"]),
        )
        assert (first, second) == ("list_dbs", "get_schema")
    finally:
        await connection.close()
        server.close()


@pytest.mark.anyio
async def test_error_response_raises_remote_error() -> None:
    async def script(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        (request,) = await _read_messages(reader, JsonStreamParser(), 1)
        error = {"error": "unknown database", "details": "nope is not a valid database name"}
        writer.write(json.dumps({"id": request["id"], "result": None, "error": error}).encode())
        await writer.drain()
        await reader.read()
        writer.close()

    server, port = await _serve(script)
    connection = await _connect(port)
    try:
        with pytest.raises(RemoteError) as excinfo:
            await connection.call("get_schema", ["nope"])
        assert excinfo.value.tag == "unknown database"
        assert excinfo.value.method == "get_schema"
        assert "not a valid database" in str(excinfo.value)
    finally:
        await connection.close()
        server.close()


@pytest.mark.anyio
async def test_echo_is_answered_and_notifications_are_delivered() -> None:
    replies: list[Any] = []

    async def script(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        parser = JsonStreamParser()
        writer.write(b'{"method":"echo","params":["ping"],"id":"echo"}')
        writer.write(b'{"method":"update","params":["mon",{}],"id":null}')
        await writer.drain()
        messages = await _read_messages(reader, parser, 2)
        replies.extend(messages)
        request = next(message for message in messages if "method" in message)
        writer.write(json.dumps({"id": request["id"], "result": ["Open_vSwitch"], "error": None}).encode())
        await writer.drain()
        await reader.read()
        writer.close()

    notifications: list[tuple[str, Any]] = []
    server, port = await _serve(script)
    connection = await _connect(port, on_notification=lambda method, params: notifications.append((method, params)))
    try:
        result = await connection.call("list_dbs", [])
        assert result == ["Open_vSwitch"]
        assert {"result": ["ping"], "error": None, "id": "echo"} in replies
        assert notifications == [("update", ["mon", {}])]
    finally:
        await connection.close()
        server.close()


@pytest.mark.anyio
async def test_request_timeout() -> None:
    async def script(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        await reader.read()
        writer.close()

    server, port = await _serve(script)
    connection = await _connect(port)
    try:
        with pytest.raises(RequestTimeout):
            await connection.call("list_dbs", [], timeout=0.05)
        assert connection.pending_requests == 0
    finally:
        await connection.close()
        server.close()


@pytest.mark.anyio
async def test_close_fails_outstanding_requests() -> None:
    received = asyncio.Event()

    async def script(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        await _read_messages(reader, JsonStreamParser(), 1)
        received.set()
        await reader.read()
        writer.close()

    server, port = await _serve(script)
    connection = await _connect(port)
    try:
        pending = asyncio.ensure_future(connection.call("transact", ["Open_vSwitch"]))
        await asyncio.wait_for(received.wait(), timeout=2)
        await connection.close()
        with pytest.raises(ConnectionClosed):
            await pending
        with pytest.raises(ConnectionClosed):
            await connection.call("list_dbs", [])
    finally:
        await connection.close()
        server.close()


@pytest.mark.anyio
async def test_server_disconnect_fails_outstanding_requests() -> None:
    async def script(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        await _read_messages(reader, JsonStreamParser(), 1)
        writer.close()

    server, port = await _serve(script)
    connection = await _connect(port)
    try:
        with pytest.raises(ConnectionClosed):
            await connection.call("list_dbs", [], timeout=2)
        assert connection.closed
    finally:
        await connection.close()
        server.close()


@pytest.mark.anyio
async def test_malformed_stream_fails_outstanding_requests() -> None:
    async def script(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        await _read_messages(reader, JsonStreamParser(), 1)
        writer.write(b"not json")
        await writer.drain()
        await reader.read()
        writer.close()

    server, port = await _serve(script)
    connection = await _connect(port)
    try:
        with pytest.raises(ConnectionClosed):
            await connection.call("list_dbs", [], timeout=2)
    finally:
        await connection.close()
        server.close()
