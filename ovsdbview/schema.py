"""Typed model of OVSDB schema documents (RFC 7047 section 3.2).

Column types are parsed into exactly one of three shapes so row decoding
never has to guess from the data:

* `AtomicColumn` - exactly one value (``min == max == 1``)
* `SetColumn` - zero or more values of one base type
* `MapColumn` - key/value pairs

Each shape carries `BaseType` entries, which may restrict values to an
enumerated domain or reference rows of another table.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Union

from .errors import ProtocolError, TableNotFound

IMPLICIT_COLUMNS = ("_uuid", "_version")


class AtomicType(str, Enum):
    """Atomic value types defined by the OVSDB protocol."""

    INTEGER = "integer"
    REAL = "real"
    BOOLEAN = "boolean"
    STRING = "string"
    UUID = "uuid"


@dataclass(frozen=True, slots=True)
class BaseType:
    """Atomic type plus optional enum domain or table reference."""

    type: AtomicType
    enum: tuple[Any, ...] | None = None
    ref_table: str | None = None
    ref_type: str | None = None

    @property
    def is_reference(self) -> bool:
        return self.type is AtomicType.UUID and self.ref_table is not None

    def describe(self) -> str:
        text = self.type.value
        if self.ref_table:
            text = f"{text}->{self.ref_table}"
        if self.enum is not None:
            text = f"{text}{{{','.join(str(value) for value in self.enum)}}}"
        return text


@dataclass(frozen=True, slots=True)
class AtomicColumn:
    base: BaseType

    def describe(self) -> str:
        return self.base.describe()


@dataclass(frozen=True, slots=True)
class SetColumn:
    base: BaseType
    min: int = 0
    max: int | None = None

    def describe(self) -> str:
        return f"set<{self.base.describe()}>"


@dataclass(frozen=True, slots=True)
class MapColumn:
    key: BaseType
    value: BaseType
    min: int = 0
    max: int | None = None

    def describe(self) -> str:
        return f"map<{self.key.describe()},{self.value.describe()}>"


ColumnType = Union[AtomicColumn, SetColumn, MapColumn]


@dataclass(frozen=True, slots=True)
class ColumnSchema:
    """One column and its decoded type shape."""

    name: str
    type: ColumnType
    mutable: bool = True
    ephemeral: bool = False

    @property
    def domain(self) -> tuple[Any, ...] | None:
        """Enumerated values allowed for the column's atoms, if restricted."""

        if isinstance(self.type, MapColumn):
            return self.type.key.enum
        return self.type.base.enum

    def describe(self) -> str:
        return self.type.describe()


@dataclass(frozen=True, slots=True)
class TableSchema:
    """Columns, indexes, and root flag for one table."""

    name: str
    columns: Mapping[str, ColumnSchema]
    indexes: tuple[tuple[str, ...], ...] = ()
    is_root: bool = False
    max_rows: int | None = None

    def column_order(self) -> tuple[str, ...]:
        """Presentation order: first index group, then the rest as declared."""

        leading: list[str] = []
        if self.indexes:
            for name in self.indexes[0]:
                if name in self.columns and name not in leading:
                    leading.append(name)
        rest = [name for name in self.columns if name not in leading]
        return (*leading, *rest)

    def describe(self) -> dict[str, Any]:
        return {
            "columns": {name: column.describe() for name, column in self.columns.items()},
            "indexes": [list(index) for index in self.indexes],
            "isRoot": self.is_root,
        }


@dataclass(frozen=True, slots=True)
class DatabaseSchema:
    """A parsed `get_schema` reply."""

    name: str
    version: str
    tables: Mapping[str, TableSchema] = field(default_factory=dict)
    cksum: str | None = None

    @property
    def table_names(self) -> tuple[str, ...]:
        return tuple(self.tables)

    def table(self, name: str) -> TableSchema:
        try:
            return self.tables[name]
        except KeyError:
            raise TableNotFound(
                f"Table '{name}' not found in database '{self.name}'",
                database=self.name,
                table=name,
            ) from None

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "tables": {name: table.describe() for name, table in self.tables.items()},
        }


def parse_schema(document: Any) -> DatabaseSchema:
    """Parse a schema document, raising `ProtocolError` on structural problems."""

    if not isinstance(document, dict):
        raise ProtocolError("Schema document must be a JSON object")
    name = document.get("name")
    if not isinstance(name, str) or not name:
        raise ProtocolError("Schema document is missing a database name")
    version = document.get("version", "")
    if not isinstance(version, str):
        raise ProtocolError(f"Schema '{name}' has a non-string version", database=name)
    tables_doc = document.get("tables")
    if not isinstance(tables_doc, dict):
        raise ProtocolError(f"Schema '{name}' is missing its tables object", database=name)
    cksum = document.get("cksum")
    tables = {
        table_name: _parse_table(name, table_name, table_doc)
        for table_name, table_doc in tables_doc.items()
    }
    return DatabaseSchema(
        name=name,
        version=version,
        tables=tables,
        cksum=cksum if isinstance(cksum, str) else None,
    )


def _parse_table(database: str, name: str, document: Any) -> TableSchema:
    def fail(message: str) -> ProtocolError:
        return ProtocolError(f"Table '{name}': {message}", database=database, table=name)

    if not isinstance(document, dict):
        raise fail("definition must be an object")
    columns_doc = document.get("columns")
    if not isinstance(columns_doc, dict) or not columns_doc:
        raise fail("columns must be a non-empty object")
    columns: dict[str, ColumnSchema] = {}
    for column_name, column_doc in columns_doc.items():
        if column_name in IMPLICIT_COLUMNS:
            raise fail(f"column name '{column_name}' is reserved")
        try:
            columns[column_name] = _parse_column(column_name, column_doc)
        except ProtocolError as exc:
            raise fail(str(exc)) from exc
    uuid_base = BaseType(type=AtomicType.UUID)
    for implicit in IMPLICIT_COLUMNS:
        columns[implicit] = ColumnSchema(name=implicit, type=AtomicColumn(uuid_base), mutable=False)

    indexes: list[tuple[str, ...]] = []
    for index in document.get("indexes", []):
        if not isinstance(index, list) or not index or not all(isinstance(col, str) for col in index):
            raise fail(f"invalid index {index!r}")
        missing = [col for col in index if col not in columns]
        if missing:
            raise fail(f"index refers to unknown column(s) {', '.join(missing)}")
        indexes.append(tuple(index))

    is_root = document.get("isRoot", False)
    max_rows = document.get("maxRows")
    if not isinstance(is_root, bool):
        raise fail("isRoot must be a boolean")
    if max_rows is not None and (not isinstance(max_rows, int) or isinstance(max_rows, bool) or max_rows < 1):
        raise fail("maxRows must be a positive integer")
    return TableSchema(
        name=name,
        columns=columns,
        indexes=tuple(indexes),
        is_root=is_root,
        max_rows=max_rows,
    )


def _parse_column(name: str, document: Any) -> ColumnSchema:
    if not isinstance(document, dict) or "type" not in document:
        raise ProtocolError(f"column '{name}' has no type")
    mutable = document.get("mutable", True)
    ephemeral = document.get("ephemeral", False)
    if not isinstance(mutable, bool) or not isinstance(ephemeral, bool):
        raise ProtocolError(f"column '{name}' has non-boolean flags")
    return ColumnSchema(
        name=name,
        type=parse_column_type(document["type"]),
        mutable=mutable,
        ephemeral=ephemeral,
    )


def parse_column_type(document: Any) -> ColumnType:
    """Parse a `<type>` into its atomic, set, or map shape."""

    if isinstance(document, str):
        return AtomicColumn(_parse_base(document))
    if not isinstance(document, dict) or "key" not in document:
        raise ProtocolError(f"invalid column type {document!r}")
    key = _parse_base(document["key"])
    value = _parse_base(document["value"]) if "value" in document else None
    minimum = document.get("min", 1)
    maximum = document.get("max", 1)
    if not isinstance(minimum, int) or isinstance(minimum, bool) or minimum not in (0, 1):
        raise ProtocolError(f"invalid min {minimum!r}")
    if maximum == "unlimited":
        maximum = None
    elif not isinstance(maximum, int) or isinstance(maximum, bool) or maximum < max(minimum, 1):
        raise ProtocolError(f"invalid max {maximum!r}")
    if value is not None:
        return MapColumn(key=key, value=value, min=minimum, max=maximum)
    if minimum == 1 and maximum == 1:
        return AtomicColumn(key)
    return SetColumn(base=key, min=minimum, max=maximum)


def _parse_base(document: Any) -> BaseType:
    if isinstance(document, str):
        return BaseType(type=_atomic(document))
    if not isinstance(document, dict) or "type" not in document:
        raise ProtocolError(f"invalid base type {document!r}")
    atomic = _atomic(document["type"])
    enum = None
    if "enum" in document:
        enum = _parse_enum(document["enum"])
    ref_table = document.get("refTable")
    ref_type = document.get("refType")
    if ref_table is not None:
        if atomic is not AtomicType.UUID or not isinstance(ref_table, str):
            raise ProtocolError(f"refTable is only valid on uuid types, got {document!r}")
        ref_type = ref_type if isinstance(ref_type, str) else "strong"
    return BaseType(type=atomic, enum=enum, ref_table=ref_table, ref_type=ref_type if ref_table else None)


def _parse_enum(value: Any) -> tuple[Any, ...]:
    if isinstance(value, list) and len(value) == 2 and value[0] == "set":
        if not isinstance(value[1], list):
            raise ProtocolError(f"invalid enum {value!r}")
        return tuple(value[1])
    if isinstance(value, (list, dict)):
        raise ProtocolError(f"invalid enum {value!r}")
    return (value,)


def _atomic(value: Any) -> AtomicType:
    try:
        return AtomicType(value)
    except ValueError:
        raise ProtocolError(f"unknown atomic type {value!r}") from None


__all__ = [
    "AtomicColumn",
    "AtomicType",
    "BaseType",
    "ColumnSchema",
    "ColumnType",
    "DatabaseSchema",
    "IMPLICIT_COLUMNS",
    "MapColumn",
    "SetColumn",
    "TableSchema",
    "parse_column_type",
    "parse_schema",
]
