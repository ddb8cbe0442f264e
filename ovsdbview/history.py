"""Versioned connection history with migration of the legacy flat shape.

Version 2 records hold a list of endpoint descriptors. Records written
before multi-endpoint support (no version tag, or version 1) kept a single
endpoint in flat fields; `upgrade` lifts those into a one-element
``endpoints`` list. Records are identified by position only.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .config import EndpointConfig, TunnelConfig
from .errors import NotFoundError, PersistenceError, ProtocolError
from .models import DEFAULT_SSH_PORT, ForwarderKind

LOG = logging.getLogger(__name__)

CURRENT_VERSION = 2

_LEGACY_FIELDS = ("host", "port", "user", "key_file", "endpoint", "jump_hosts", "local_forwarder_type")


class HistoryRecord(BaseModel):
    """One remembered connect; legacy flat fields exist only for migration."""

    model_config = ConfigDict(populate_by_name=True)

    version: int = 0
    timestamp: int = 0
    endpoints: list[EndpointConfig] = Field(default_factory=list)

    host: str | None = None
    port: int | None = None
    user: str | None = None
    key_file: str | None = Field(default=None, alias="keyFile")
    endpoint: str | None = None
    jump_hosts: list[str] | None = Field(default=None, alias="jumpHosts")
    local_forwarder_type: str | None = Field(default=None, alias="localForwarderType")

    @field_validator("endpoints", mode="before")
    @classmethod
    def _null_endpoints(cls, value: object) -> object:
        return [] if value is None else value

    def to_wire(self) -> dict[str, Any]:
        """Current-version payload; legacy fields are never written."""

        return {
            "version": self.version,
            "timestamp": self.timestamp,
            "endpoints": [entry.model_dump(by_alias=True, exclude_none=True) for entry in self.endpoints],
        }


def _tag_untagged(record: HistoryRecord) -> HistoryRecord:
    """Version 0 records share the version 1 flat shape and only lack the tag."""

    return record.model_copy(update={"version": record.version + 1})


def _from_flat_fields(record: HistoryRecord) -> HistoryRecord:
    """Version 1: move the flat single endpoint into ``endpoints``."""

    endpoints = list(record.endpoints)
    if not endpoints and record.endpoint:
        tunnel = None
        if record.host:
            tunnel = TunnelConfig(
                host=record.host,
                port=record.port or DEFAULT_SSH_PORT,
                user=record.user or "",
                key_file=record.key_file or "",
                jump_hosts=list(record.jump_hosts or []),
                local_forwarder_type=record.local_forwarder_type or ForwarderKind.TCP.value,
            )
        endpoints = [EndpointConfig(endpoint=record.endpoint, tunnel=tunnel)]
    cleared = {name: None for name in _LEGACY_FIELDS}
    return record.model_copy(update={**cleared, "endpoints": endpoints, "version": record.version + 1})


_UPGRADES: Mapping[int, Callable[[HistoryRecord], HistoryRecord]] = {
    0: _tag_untagged,
    1: _from_flat_fields,
}


def upgrade(record: HistoryRecord) -> HistoryRecord:
    """Bring ``record`` to `CURRENT_VERSION`; pure and idempotent."""

    if record.version >= CURRENT_VERSION:
        return record
    current = record
    while current.version < CURRENT_VERSION:
        step = _UPGRADES.get(current.version)
        if step is None:
            raise ProtocolError(f"No upgrade path from history record version {current.version}")
        current = step(current)
    return current


def record_connection(endpoints: Sequence[EndpointConfig], *, timestamp: int | None = None) -> HistoryRecord:
    """Build a current-version record for a successful connect."""

    return HistoryRecord(
        version=CURRENT_VERSION,
        timestamp=int(time.time()) if timestamp is None else timestamp,
        endpoints=[entry.model_copy(deep=True) for entry in endpoints],
    )


class HistoryStore(Protocol):
    """Ordered durable storage addressed by position."""

    def read_all(self) -> list[Any]:
        """Return every stored payload in order."""

    def append(self, payload: dict[str, Any]) -> None:
        """Durably add ``payload`` at the end."""

    def delete(self, index: int) -> None:
        """Durably remove the payload at ``index``."""

    def replace_all(self, payloads: list[dict[str, Any]]) -> None:
        """Durably replace the stored payloads."""


class MemoryHistoryStore:
    """Store backed by a list (testing and ephemeral sessions)."""

    def __init__(self, payloads: Sequence[Any] | None = None) -> None:
        self.payloads: list[Any] = list(payloads or [])

    def read_all(self) -> list[Any]:
        return list(self.payloads)

    def append(self, payload: dict[str, Any]) -> None:
        self.payloads.append(payload)

    def delete(self, index: int) -> None:
        del self.payloads[index]

    def replace_all(self, payloads: list[dict[str, Any]]) -> None:
        self.payloads = list(payloads)


class JsonFileHistoryStore:
    """Store persisted as a JSON array, rewritten atomically on each change."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def read_all(self) -> list[Any]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise PersistenceError(f"Failed to read history file {self._path}: {exc}") from exc
        if not raw.strip():
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise PersistenceError(f"History file {self._path} is not valid JSON: {exc}") from exc
        if not isinstance(data, list):
            raise PersistenceError(f"History file {self._path} must contain a JSON array")
        return data

    def append(self, payload: dict[str, Any]) -> None:
        payloads = self.read_all()
        payloads.append(payload)
        self._write(payloads)

    def delete(self, index: int) -> None:
        payloads = self.read_all()
        del payloads[index]
        self._write(payloads)

    def replace_all(self, payloads: list[dict[str, Any]]) -> None:
        self._write(payloads)

    def _write(self, payloads: list[Any]) -> None:
        tmp_path = self._path.with_name(f"{self._path.name}.tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(payloads, indent=2), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as exc:
            raise PersistenceError(f"Failed to write history file {self._path}: {exc}") from exc


class HistoryRegistry:
    """Single-writer, positionally indexed list of `HistoryRecord` entries."""

    def __init__(self, store: HistoryStore) -> None:
        self._store = store
        self._lock = threading.Lock()
        self._records = self._load()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def append(self, record: HistoryRecord) -> int:
        """Persist ``record`` and return its position.

        The in-memory list only changes once the store has accepted the
        write, so a failed write leaves the registry as it was.
        """

        current = upgrade(record)
        with self._lock:
            self._store.append(current.to_wire())
            self._records.append(current)
            return len(self._records) - 1

    def list(self) -> list[HistoryRecord]:
        """Every record in order, always in the current shape."""

        with self._lock:
            return [upgrade(record) for record in self._records]

    def delete(self, index: int) -> None:
        """Remove the record at ``index``; later records shift down by one."""

        with self._lock:
            if not 0 <= index < len(self._records):
                raise NotFoundError(f"No history entry at index {index}")
            self._store.delete(index)
            del self._records[index]

    def _load(self) -> list[HistoryRecord]:
        payloads = self._store.read_all()
        records: list[HistoryRecord] = []
        discarded = migrated = False
        for position, payload in enumerate(payloads):
            try:
                stored = HistoryRecord.model_validate(payload)
                current = upgrade(stored)
            except (ValidationError, ProtocolError) as exc:
                LOG.warning("Discarding unreadable history entry %d: %s", position, exc)
                discarded = True
                continue
            migrated = migrated or current is not stored
            records.append(current)
        if discarded or migrated:
            LOG.info("Migrating connection history to version %d", CURRENT_VERSION)
            try:
                self._store.replace_all([record.to_wire() for record in records])
            except PersistenceError as exc:
                if discarded:
                    raise
                LOG.warning("Could not rewrite migrated history: %s", exc)
        return records


__all__ = [
    "CURRENT_VERSION",
    "HistoryRecord",
    "HistoryRegistry",
    "HistoryStore",
    "JsonFileHistoryStore",
    "MemoryHistoryStore",
    "record_connection",
    "upgrade",
]
