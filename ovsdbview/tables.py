"""Generic, schema-driven table reads.

Rows are decoded column by column according to the column's declared
shape. Sets always come back as lists (the wire collapses one-element sets
to a bare atom), maps come back as ordered ``[key, value]`` pairs, and
references stay as UUID strings.
"""

from __future__ import annotations

import logging
from typing import Any

from .client import OvsdbClient
from .errors import ProtocolError, TableNotFound
from .jsonrpc import RemoteError
from .schema import AtomicColumn, AtomicType, BaseType, ColumnSchema, DatabaseSchema, MapColumn, SetColumn, TableSchema

LOG = logging.getLogger(__name__)

Row = dict[str, Any]


class TableQueryEngine:
    """Reads whole tables through an `OvsdbClient` using a cached schema."""

    def __init__(self, client: OvsdbClient) -> None:
        self._client = client

    async def get_table(self, schema: DatabaseSchema, table_name: str) -> list[Row]:
        """Select every row of ``table_name`` and decode it."""

        table = schema.table(table_name)
        operation = {"op": "select", "table": table_name, "where": []}
        try:
            results = await self._client.transact(schema.name, operation)
        except RemoteError as exc:
            raise ProtocolError(
                f"Reading table '{table_name}' failed: {exc}", database=schema.name, table=table_name
            ) from exc
        if not results or not isinstance(results[0], dict):
            raise ProtocolError(
                f"select on '{table_name}' returned {results!r}", database=schema.name, table=table_name
            )
        outcome = results[0]
        if outcome.get("error"):
            error = outcome["error"]
            details = outcome.get("details")
            message = f"select on '{table_name}' failed: {error}" + (f" ({details})" if details else "")
            if error == "unknown table":
                raise TableNotFound(message, database=schema.name, table=table_name)
            raise ProtocolError(message, database=schema.name, table=table_name)
        rows = outcome.get("rows")
        if not isinstance(rows, list):
            raise ProtocolError(
                f"select on '{table_name}' returned no rows array", database=schema.name, table=table_name
            )
        decoded = [decode_row(table, row) for row in rows]
        LOG.debug("Fetched table", extra={"database": schema.name, "table": table_name, "rows": len(decoded)})
        return decoded


def decode_row(table: TableSchema, row: Any) -> Row:
    """Decode one wire row, keyed in the table's presentation order."""

    if not isinstance(row, dict):
        raise ProtocolError(f"Row of '{table.name}' is not an object: {row!r}", table=table.name)
    unknown = [name for name in row if name not in table.columns]
    if unknown:
        raise ProtocolError(
            f"Row of '{table.name}' has unknown column(s) {', '.join(unknown)}", table=table.name
        )
    decoded: Row = {}
    for name in table.column_order():
        if name in row:
            decoded[name] = decode_value(table.columns[name], row[name], table=table.name)
    return decoded


def decode_value(column: ColumnSchema, wire: Any, *, table: str | None = None) -> Any:
    """Decode ``wire`` according to the shape declared for ``column``."""

    shape = column.type
    try:
        if isinstance(shape, AtomicColumn):
            return _decode_atom(shape.base, wire)
        if isinstance(shape, SetColumn):
            if _is_tagged(wire, "set"):
                return [_decode_atom(shape.base, item) for item in wire[1]]
            return [_decode_atom(shape.base, wire)]
        if isinstance(shape, MapColumn):
            if not _is_tagged(wire, "map"):
                raise ValueError(f"expected a map, got {wire!r}")
            pairs: list[list[Any]] = []
            for pair in wire[1]:
                if not isinstance(pair, list) or len(pair) != 2:
                    raise ValueError(f"invalid map pair {pair!r}")
                pairs.append([_decode_atom(shape.key, pair[0]), _decode_atom(shape.value, pair[1])])
            return pairs
    except ValueError as exc:
        raise ProtocolError(f"Column '{column.name}': {exc}", table=table) from exc
    raise TypeError(f"Unhandled column shape {shape!r}")


def _is_tagged(wire: Any, tag: str) -> bool:
    return isinstance(wire, list) and len(wire) == 2 and wire[0] == tag and isinstance(wire[1], list)


def _decode_atom(base: BaseType, wire: Any) -> Any:
    kind = base.type
    if kind is AtomicType.UUID:
        if (
            isinstance(wire, list)
            and len(wire) == 2
            and wire[0] in ("uuid", "named-uuid")
            and isinstance(wire[1], str)
        ):
            return wire[1]
        raise ValueError(f"expected a uuid, got {wire!r}")
    if kind is AtomicType.BOOLEAN:
        if isinstance(wire, bool):
            return wire
        raise ValueError(f"expected a boolean, got {wire!r}")
    if kind is AtomicType.INTEGER:
        if isinstance(wire, int) and not isinstance(wire, bool):
            return wire
        raise ValueError(f"expected an integer, got {wire!r}")
    if kind is AtomicType.REAL:
        if isinstance(wire, (int, float)) and not isinstance(wire, bool):
            return float(wire)
        raise ValueError(f"expected a real, got {wire!r}")
    if kind is AtomicType.STRING:
        if isinstance(wire, str):
            return wire
        raise ValueError(f"expected a string, got {wire!r}")
    raise TypeError(f"Unhandled atomic type {kind!r}")


__all__ = ["Row", "TableQueryEngine", "decode_row", "decode_value"]
