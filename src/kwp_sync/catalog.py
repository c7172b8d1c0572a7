"""Live MSSQL catalog introspection."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from .errors import CatalogError

LOGGER = logging.getLogger("kwp_sync.catalog")

DEFAULT_SCHEMA = "dbo"
ROWVERSION_TYPES = frozenset({"timestamp", "rowversion"})
RESERVED_COLUMNS = frozenset({"rowguid", "msrepl_tran_version"})
UNICODE_TEXT_TYPES = frozenset({"nchar", "nvarchar", "sysname"})
LARGE_OBJECT_TYPES = frozenset({"text", "ntext", "image", "xml"})
FIXED_SIZE_TEXT_TYPES = frozenset({"uniqueidentifier"})

_NAME_PART = r"(?:\[((?:[^\]]|\]\])+)\]|([^.\[\]]+))"
QUALIFIED_NAME = re.compile(rf"{_NAME_PART}\.{_NAME_PART}")
SINGLE_NAME = re.compile(_NAME_PART)

COLUMNS_SQL = text(
    """
    SELECT
      c.column_id,
      c.name AS column_name,
      ty.name AS data_type,
      c.max_length,
      c.precision,
      c.scale,
      c.is_nullable,
      c.is_identity,
      c.is_computed,
      ic.seed_value,
      ic.increment_value,
      cc.definition AS computed_definition,
      cc.is_persisted,
      dc.definition AS default_definition
    FROM sys.columns c
    JOIN sys.types ty ON c.user_type_id = ty.user_type_id
    LEFT JOIN sys.identity_columns ic
      ON c.object_id = ic.object_id AND c.column_id = ic.column_id
    LEFT JOIN sys.computed_columns cc
      ON c.object_id = cc.object_id AND c.column_id = cc.column_id
    LEFT JOIN sys.default_constraints dc
      ON c.default_object_id = dc.object_id
    WHERE c.object_id = OBJECT_ID(:qualified_name)
    ORDER BY c.column_id
    """
)

TABLES_SQL = text(
    """
    SELECT s.name AS schema_name, t.name AS table_name
    FROM sys.tables t
    JOIN sys.schemas s ON t.schema_id = s.schema_id
    ORDER BY s.name, t.name
    """
)

TABLE_EXISTS_SQL = text(
    """
    SELECT 1
    FROM sys.tables t
    JOIN sys.schemas s ON t.schema_id = s.schema_id
    WHERE s.name = :schema AND t.name = :table
    """
)

ROW_COUNT_SQL = text(
    """
    SELECT SUM(p.row_count) AS row_count
    FROM sys.tables t
    JOIN sys.schemas s ON t.schema_id = s.schema_id
    JOIN sys.dm_db_partition_stats p ON t.object_id = p.object_id
    WHERE s.name = :schema AND t.name = :table AND p.index_id IN (0, 1)
    """
)


def quote_ident(name: str) -> str:
    return f"[{str(name).replace(']', ']]')}]"


def _unquote(bracketed: Optional[str], bare: Optional[str]) -> str:
    if bracketed is not None:
        return bracketed.replace("]]", "]")
    return bare.strip()


def split_table_name(table_name: str) -> Tuple[str, str]:
    """Split ``schema.table``; the schema defaults to dbo.

    Bracketed parts may contain dots and ``]]`` escapes, so the output of
    :func:`qualify` splits back into its original parts.
    """
    cleaned = table_name.strip()
    match = QUALIFIED_NAME.fullmatch(cleaned)
    if match:
        return _unquote(match.group(1), match.group(2)), _unquote(match.group(3), match.group(4))
    match = SINGLE_NAME.fullmatch(cleaned)
    if match:
        return DEFAULT_SCHEMA, _unquote(match.group(1), match.group(2))
    schema, _, table = cleaned.partition(".")
    return schema.strip("[]"), table.strip("[]")


def qualify(schema: str, table: str) -> str:
    return f"{quote_ident(schema)}.{quote_ident(table)}"


@dataclass(frozen=True)
class ColumnMeta:
    """Metadata for one column as reported by the live catalog."""

    name: str
    native_type: str
    max_length: Optional[int] = None
    precision: Optional[int] = None
    scale: Optional[int] = None
    is_nullable: bool = True
    is_identity: bool = False
    is_computed: bool = False
    default_expression: Optional[str] = None
    identity_seed: Optional[int] = None
    identity_increment: Optional[int] = None
    computed_definition: Optional[str] = None
    is_persisted: bool = False
    ordinal: int = 0

    @property
    def is_rowversion(self) -> bool:
        return self.native_type in ROWVERSION_TYPES

    @property
    def is_reserved(self) -> bool:
        return self.name.lower() in RESERVED_COLUMNS

    @property
    def is_insertable(self) -> bool:
        return not (
            self.is_identity or self.is_computed or self.is_rowversion or self.is_reserved
        )

    @property
    def is_copyable(self) -> bool:
        """Columns the bulk copier transfers; identity values are preserved."""
        return not (self.is_computed or self.is_rowversion)

    @property
    def is_required(self) -> bool:
        return (
            not self.is_nullable
            and self.default_expression is None
            and self.is_insertable
        )


@dataclass(frozen=True)
class TableMetadata:
    schema: str
    name: str
    columns: Tuple[ColumnMeta, ...]

    @property
    def qualified_name(self) -> str:
        return qualify(self.schema, self.name)

    @property
    def display_name(self) -> str:
        return f"{self.schema}.{self.name}"

    def column(self, name: str) -> Optional[ColumnMeta]:
        lowered = name.lower()
        for column in self.columns:
            if column.name.lower() == lowered:
                return column
        return None

    def has_column(self, name: str) -> bool:
        return self.column(name) is not None

    @property
    def insertable_columns(self) -> Tuple[ColumnMeta, ...]:
        return tuple(column for column in self.columns if column.is_insertable)

    @property
    def required_columns(self) -> Tuple[ColumnMeta, ...]:
        return tuple(column for column in self.columns if column.is_required)

    @property
    def has_identity(self) -> bool:
        return any(column.is_identity for column in self.columns)


def _optional_int(value: Any) -> Optional[int]:
    return None if value is None else int(value)


def column_from_row(row: Mapping[str, Any]) -> ColumnMeta:
    """Build a :class:`ColumnMeta` from one ``sys.columns`` result row."""
    native_type = str(row["data_type"]).lower()
    max_length = _optional_int(row.get("max_length"))
    # sys.columns reports byte sizes; LOB types report a 16 byte pointer.
    if native_type in LARGE_OBJECT_TYPES:
        max_length = -1
    elif native_type in FIXED_SIZE_TEXT_TYPES:
        max_length = None
    elif native_type in UNICODE_TEXT_TYPES and max_length is not None and max_length > 0:
        max_length //= 2
    return ColumnMeta(
        name=row["column_name"],
        native_type=native_type,
        max_length=max_length,
        precision=_optional_int(row.get("precision")),
        scale=_optional_int(row.get("scale")),
        is_nullable=bool(row.get("is_nullable")),
        is_identity=bool(row.get("is_identity")),
        is_computed=bool(row.get("is_computed")),
        default_expression=row.get("default_definition"),
        identity_seed=_optional_int(row.get("seed_value")),
        identity_increment=_optional_int(row.get("increment_value")),
        computed_definition=row.get("computed_definition"),
        is_persisted=bool(row.get("is_persisted")),
        ordinal=int(row.get("column_id") or 0),
    )


class MetadataCatalog:
    """Load and cache table metadata from one database.

    Snapshots are cached per qualified table name for the lifetime of the
    catalog object and never invalidated; create a new catalog to observe
    schema changes.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._cache: Dict[str, TableMetadata] = {}

    async def get_columns(self, table_name: str) -> TableMetadata:
        schema, table = split_table_name(table_name)
        key = f"{schema}.{table}".lower()
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        async with self._engine.connect() as conn:
            result = await conn.execute(
                COLUMNS_SQL, {"qualified_name": qualify(schema, table)}
            )
            rows = result.mappings().all()
        if not rows:
            raise CatalogError(f"Table {schema}.{table} does not exist or has no columns")

        metadata = TableMetadata(
            schema=schema,
            name=table,
            columns=tuple(column_from_row(row) for row in rows),
        )
        LOGGER.debug("Loaded %s columns for %s", len(metadata.columns), key)
        self._cache[key] = metadata
        return metadata

    def cached_tables(self) -> List[str]:
        return sorted(self._cache)


async def list_tables(
    engine: AsyncEngine, table_filter: Optional[str] = None
) -> List[Tuple[str, str]]:
    """Return ``(schema, table)`` pairs, optionally filtered by a regex."""
    async with engine.connect() as conn:
        result = await conn.execute(TABLES_SQL)
        rows = result.mappings().all()
    tables = [(row["schema_name"], row["table_name"]) for row in rows]
    if table_filter:
        pattern = re.compile(table_filter, re.IGNORECASE)
        tables = [item for item in tables if pattern.search(f"{item[0]}.{item[1]}")]
    return tables


async def table_exists(conn: AsyncConnection, schema: str, table: str) -> bool:
    result = await conn.execute(TABLE_EXISTS_SQL, {"schema": schema, "table": table})
    return result.first() is not None


async def table_row_count(
    conn: AsyncConnection, schema: str, table: str
) -> Optional[int]:
    result = await conn.execute(ROW_COUNT_SQL, {"schema": schema, "table": table})
    value = result.scalar()
    return None if value is None else int(value)
