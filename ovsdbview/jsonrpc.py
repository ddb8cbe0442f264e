"""JSON-RPC 1.0 over a byte stream, as spoken by ovsdb-server.

OVSDB peers send JSON objects back to back with no length prefix or
delimiter, so the reader splits the stream by tracking bracket depth
outside of string literals. Requests carry integer ids from a shared
counter; responses are matched to their pending request by id, and
server-originated messages (``echo`` requests, ``update`` notifications)
may arrive at any point in between.
"""

from __future__ import annotations

import asyncio
import codecs
import itertools
import json
import logging
import threading
from typing import Any, Callable

from .errors import ConnectionClosed, ProtocolError, RequestTimeout

LOG = logging.getLogger(__name__)

_READ_SIZE = 64 * 1024

NotificationHandler = Callable[[str, Any], None]


class RemoteError(ProtocolError):
    """The server answered a request with a JSON-RPC error."""

    def __init__(self, method: str, error: Any) -> None:
        if isinstance(error, dict):
            tag = str(error.get("error", "unknown error"))
            details = error.get("details")
        else:
            tag = str(error)
            details = None
        message = f"{method} failed: {tag}"
        if details:
            message = f"{message} ({details})"
        super().__init__(message)
        self.method = method
        self.tag = tag
        self.details = details


class JsonStreamParser:
    """Splits a byte stream of concatenated JSON objects into messages."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""
        self._pos = 0
        self._start: int | None = None
        self._depth = 0
        self._in_string = False
        self._escaped = False

    def feed(self, data: bytes) -> list[Any]:
        """Consume ``data`` and return every message it completes."""

        try:
            self._buffer += self._decoder.decode(data)
        except UnicodeDecodeError as exc:
            raise ProtocolError(f"Invalid UTF-8 in JSON-RPC stream: {exc}") from exc
        messages: list[Any] = []
        buffer = self._buffer
        pos = self._pos
        while pos < len(buffer):
            char = buffer[pos]
            if self._start is None:
                if char in "{[":
                    self._start = pos
                    self._depth = 1
                elif not char.isspace():
                    raise ProtocolError(f"Unexpected {char!r} between JSON-RPC messages")
            elif self._in_string:
                if self._escaped:
                    self._escaped = False
                elif char == "\\":
                    self._escaped = True
                elif char == '"':
                    self._in_string = False
            elif char == '"':
                self._in_string = True
            elif char in "{[":
                self._depth += 1
            elif char in "}]":
                self._depth -= 1
                if self._depth == 0:
                    text = buffer[self._start : pos + 1]
                    try:
                        messages.append(json.loads(text))
                    except json.JSONDecodeError as exc:
                        raise ProtocolError(f"Malformed JSON-RPC message: {exc}") from exc
                    self._start = None
            pos += 1
        if self._start is None:
            self._buffer = ""
            self._pos = 0
        else:
            self._buffer = buffer[self._start :]
            self._pos = pos - self._start
            self._start = 0
        return messages


class JsonRpcConnection:
    """Correlates requests and responses over one reader/writer pair."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        name: str = "ovsdb",
        request_timeout: float | None = 30.0,
        on_notification: NotificationHandler | None = None,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._name = name
        self._request_timeout = request_timeout
        self._on_notification = on_notification
        self._ids = itertools.count(1)
        self._id_lock = threading.Lock()
        self._write_lock = asyncio.Lock()
        self._pending: dict[int, tuple[str, asyncio.Future[Any]]] = {}
        self._parser = JsonStreamParser()
        self._reader_task: asyncio.Task[None] | None = None
        self._closed = False
        self._shut_down = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_requests(self) -> int:
        return len(self._pending)

    def start(self) -> None:
        """Begin dispatching incoming messages on the running loop."""

        if self._reader_task is None:
            self._reader_task = asyncio.get_running_loop().create_task(self._read_loop())

    def next_id(self) -> int:
        with self._id_lock:
            return next(self._ids)

    async def call(self, method: str, params: list[Any], *, timeout: float | None = None) -> Any:
        """Send a request and wait for its correlated response."""

        if self._closed:
            raise ConnectionClosed(f"Connection to {self._name} is closed")
        request_id = self.next_id()
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = (method, future)
        wait = self._request_timeout if timeout is None else timeout
        try:
            await self._send({"method": method, "params": params, "id": request_id})
            return await asyncio.wait_for(future, timeout=wait)
        except asyncio.TimeoutError as exc:
            raise RequestTimeout(f"{method} to {self._name} timed out after {wait}s") from exc
        finally:
            self._pending.pop(request_id, None)

    async def close(self) -> None:
        """Close the transport and fail every outstanding request."""

        if self._shut_down:
            return
        self._shut_down = True
        self._closed = True
        self._fail_pending(ConnectionClosed(f"Connection to {self._name} closed"))
        try:
            self._writer.close()
            await self._writer.wait_closed()
        except OSError:
            pass
        task = self._reader_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _send(self, message: dict[str, Any]) -> None:
        data = json.dumps(message, separators=(",", ":")).encode("utf-8")
        async with self._write_lock:
            if self._closed:
                raise ConnectionClosed(f"Connection to {self._name} is closed")
            try:
                self._writer.write(data)
                await self._writer.drain()
            except OSError as exc:
                self._closed = True
                raise ConnectionClosed(f"Failed to write to {self._name}: {exc}") from exc

    async def _read_loop(self) -> None:
        reason = "server closed the connection"
        try:
            while True:
                data = await self._reader.read(_READ_SIZE)
                if not data:
                    break
                for message in self._parser.feed(data):
                    await self._dispatch(message)
        except ProtocolError as exc:
            reason = str(exc)
            LOG.warning("Dropping connection to %s: %s", self._name, exc)
        except ConnectionClosed:
            reason = "connection closed while replying to the server"
        except OSError as exc:
            reason = str(exc)
        finally:
            self._closed = True
            self._fail_pending(ConnectionClosed(f"Connection to {self._name} lost: {reason}"))

    async def _dispatch(self, message: Any) -> None:
        if not isinstance(message, dict):
            raise ProtocolError(f"JSON-RPC message must be an object, got {type(message).__name__}")
        method = message.get("method")
        if method is not None:
            await self._handle_server_message(str(method), message)
            return
        request_id = message.get("id")
        entry = self._pending.get(request_id) if isinstance(request_id, int) else None
        if entry is None:
            LOG.debug("Ignoring response for unknown request id %r from %s", request_id, self._name)
            return
        pending_method, future = entry
        if future.done():
            return
        error = message.get("error")
        if error is not None:
            future.set_exception(RemoteError(pending_method, error))
        elif "result" not in message:
            future.set_exception(ProtocolError(f"Response {request_id} from {self._name} has no result"))
        else:
            future.set_result(message["result"])

    async def _handle_server_message(self, method: str, message: dict[str, Any]) -> None:
        request_id = message.get("id")
        params = message.get("params")
        if method == "echo" and request_id is not None:
            await self._send({"result": params if params is not None else [], "error": None, "id": request_id})
            return
        if self._on_notification is not None:
            self._on_notification(method, params)
        else:
            LOG.debug("Ignoring %s notification from %s", method, self._name)

    def _fail_pending(self, error: Exception) -> None:
        for _, future in self._pending.values():
            if not future.done():
                future.set_exception(error)


__all__ = ["JsonRpcConnection", "JsonStreamParser", "NotificationHandler", "RemoteError"]
