"""Stream whole MSSQL tables from one database into another."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import (Any, AsyncIterator, Awaitable, Callable, List, Optional,
                    Sequence)

from rich.console import Console
from sqlalchemy import bindparam, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from .catalog import (MetadataCatalog, TableMetadata, list_tables, qualify,
                      quote_ident, split_table_name, table_exists,
                      table_row_count)
from .coercion import bind_type, ddl_type
from .engines import wait_for_engine
from .errors import CopyError, SyncError
from .models import DEFAULT_CLONE_BATCH_SIZE, CloneConfig, DatabaseConfig

LOGGER = logging.getLogger("kwp_sync.copier")

STATUS_COPIED = "copied"
STATUS_SKIPPED = "skipped"
STATUS_SCHEMA_ONLY = "schema-only"
STATUS_FAILED = "failed"

Row = Sequence[Any]

# CREATE SCHEMA must run in its own batch.
CREATE_SCHEMA_SQL = text(
    "DECLARE @stmt nvarchar(max) = N'CREATE SCHEMA ' + QUOTENAME(:schema); "
    "IF SCHEMA_ID(:schema) IS NULL EXEC(@stmt);"
)


@dataclass(frozen=True)
class CopyOptions:
    batch_size: int = DEFAULT_CLONE_BATCH_SIZE
    schema_only: bool = False
    compare_counts: bool = True
    truncate_existing: bool = False
    drop_existing_tables: bool = False
    continue_on_error: bool = False
    table_filter: Optional[str] = None

    @classmethod
    def from_config(cls, config: CloneConfig) -> "CopyOptions":
        return cls(
            batch_size=config.batch_size,
            schema_only=config.schema_only,
            compare_counts=config.compare_counts,
            truncate_existing=config.truncate_existing,
            drop_existing_tables=config.drop_existing_tables,
            continue_on_error=config.continue_on_error,
            table_filter=config.table_filter,
        )


@dataclass(frozen=True)
class TableCopyResult:
    table: str
    status: str
    rows: int = 0
    created: bool = False
    error: Optional[str] = None


@dataclass
class CloneSummary:
    results: List[TableCopyResult] = field(default_factory=list)

    def _with_status(self, status: str) -> List[TableCopyResult]:
        return [result for result in self.results if result.status == status]

    @property
    def copied(self) -> List[TableCopyResult]:
        return self._with_status(STATUS_COPIED)

    @property
    def skipped(self) -> List[TableCopyResult]:
        return self._with_status(STATUS_SKIPPED)

    @property
    def failed(self) -> List[TableCopyResult]:
        return self._with_status(STATUS_FAILED)

    @property
    def total_rows(self) -> int:
        return sum(result.rows for result in self.results)


async def pump_batches(
    rows: AsyncIterator[Row],
    batch_size: int,
    flush: Callable[[List[Row]], Awaitable[None]],
) -> int:
    """Move ``rows`` to ``flush`` in batches of ``batch_size``.

    The reader runs as a separate task and hands batches over a one-slot
    queue. After each full batch it waits for the flush to be acknowledged,
    so at most one batch is held while one flush is in flight. Returns the
    number of rows flushed.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be positive")

    stop_token = object()
    channel: asyncio.Queue = asyncio.Queue(maxsize=1)
    acks: asyncio.Queue = asyncio.Queue()
    read_error: Optional[BaseException] = None

    async def read_rows() -> None:
        nonlocal read_error
        batch: List[Row] = []
        try:
            async for row in rows:
                batch.append(row)
                if len(batch) >= batch_size:
                    await channel.put(batch)
                    batch = []
                    await acks.get()
            if batch:
                await channel.put(batch)
        except Exception as exc:
            read_error = exc
        finally:
            aclose = getattr(rows, "aclose", None)
            if aclose is not None:
                await aclose()
        await channel.put(stop_token)

    reader = asyncio.create_task(read_rows())
    flushed = 0
    try:
        while True:
            batch = await channel.get()
            if batch is stop_token:
                break
            await flush(batch)
            flushed += len(batch)
            acks.put_nowait(None)
    finally:
        if not reader.done():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader
        else:
            await reader

    if read_error is not None:
        raise read_error
    return flushed


def create_table_sql(metadata: TableMetadata) -> str:
    definitions = []
    for column in metadata.columns:
        name = quote_ident(column.name)
        if column.is_computed:
            persisted = " PERSISTED" if column.is_persisted else ""
            definitions.append(f"{name} AS {column.computed_definition}{persisted}")
            continue
        identity = ""
        if column.is_identity:
            seed = 1 if column.identity_seed is None else column.identity_seed
            increment = 1 if column.identity_increment is None else column.identity_increment
            identity = f" IDENTITY({seed},{increment})"
        nullable = "NULL" if column.is_nullable else "NOT NULL"
        definitions.append(f"{name} {ddl_type(column)}{identity} {nullable}")
    body = ",\n  ".join(definitions)
    return f"CREATE TABLE {metadata.qualified_name} (\n  {body}\n)"


class BulkTableCopier:
    """Copy tables between two engines with bounded memory."""

    def __init__(
        self,
        source: AsyncEngine,
        target: AsyncEngine,
        options: Optional[CopyOptions] = None,
        source_catalog: Optional[MetadataCatalog] = None,
    ) -> None:
        self._source = source
        self._target = target
        self._options = options or CopyOptions()
        self._catalog = source_catalog or MetadataCatalog(source)

    async def copy_database(self, console: Optional[Console] = None) -> CloneSummary:
        tables = await list_tables(self._source, self._options.table_filter)
        LOGGER.info("Tables to clone: %s", len(tables))
        summary = CloneSummary()
        active_console = console or Console()
        with active_console.status("Cloning tables...") as status:
            for index, (schema, table) in enumerate(tables, start=1):
                name = f"{schema}.{table}"
                status.update(f"[{index}/{len(tables)}] {name}")
                try:
                    result = await self.copy_table(qualify(schema, table))
                except SyncError as exc:
                    LOGGER.error("%s", exc)
                    summary.results.append(
                        TableCopyResult(table=name, status=STATUS_FAILED, error=str(exc))
                    )
                    if not self._options.continue_on_error:
                        break
                    continue
                summary.results.append(result)

        LOGGER.info(
            "Clone finished: %s copied, %s skipped, %s failed, %s rows",
            len(summary.copied),
            len(summary.skipped),
            len(summary.failed),
            summary.total_rows,
        )
        return summary

    async def copy_table(self, table_name: str) -> TableCopyResult:
        schema, table = split_table_name(table_name)
        display = f"{schema}.{table}"
        metadata = await self._catalog.get_columns(qualify(schema, table))
        try:
            async with self._target.connect() as conn:
                return await self._copy_into(conn, metadata)
        except SQLAlchemyError as exc:
            raise CopyError(display, str(exc)) from exc

    async def _copy_into(self, conn: AsyncConnection, metadata: TableMetadata) -> TableCopyResult:
        options = self._options
        schema, table = metadata.schema, metadata.name
        display = metadata.display_name

        exists = await table_exists(conn, schema, table)
        if exists and options.drop_existing_tables:
            LOGGER.info("Dropping existing %s", display)
            await conn.execute(text(f"DROP TABLE {metadata.qualified_name}"))
            exists = False

        created = False
        if not exists:
            LOGGER.info("Creating %s", display)
            await conn.execute(CREATE_SCHEMA_SQL, {"schema": schema})
            await conn.execute(text(create_table_sql(metadata)))
            created = True
        await conn.commit()

        if options.schema_only:
            return TableCopyResult(table=display, status=STATUS_SCHEMA_ONLY, created=created)

        if exists and options.compare_counts:
            async with self._source.connect() as source_conn:
                source_count = await table_row_count(source_conn, schema, table)
            target_count = await table_row_count(conn, schema, table)
            if source_count is not None and source_count == target_count:
                LOGGER.info("Skipping %s (row counts match: %s)", display, source_count)
                return TableCopyResult(table=display, status=STATUS_SKIPPED)

        if exists and options.truncate_existing:
            LOGGER.info("Truncating %s", display)
            await conn.execute(text(f"TRUNCATE TABLE {metadata.qualified_name}"))
            await conn.commit()

        rows = await self._copy_rows(conn, metadata)
        LOGGER.info("Copied %s rows into %s", rows, display)
        return TableCopyResult(table=display, status=STATUS_COPIED, rows=rows, created=created)

    async def _source_rows(self, select: str) -> AsyncIterator[Row]:
        async with self._source.connect() as conn:
            result = await conn.stream(text(select))
            async for row in result:
                yield tuple(row)

    async def _copy_rows(self, conn: AsyncConnection, metadata: TableMetadata) -> int:
        columns = [column for column in metadata.columns if column.is_copyable]
        if not columns:
            return 0

        column_list = ", ".join(quote_ident(column.name) for column in columns)
        keys = [f"c{index}" for index in range(len(columns))]
        insert = text(
            f"INSERT INTO {metadata.qualified_name} ({column_list}) "
            f"VALUES ({', '.join(':' + key for key in keys)})"
        ).bindparams(
            *[bindparam(key, type_=bind_type(column)) for key, column in zip(keys, columns)]
        )
        select = f"SELECT {column_list} FROM {qualify(metadata.schema, metadata.name)}"

        async def flush(batch: List[Row]) -> None:
            await conn.execute(insert, [dict(zip(keys, row)) for row in batch])
            await conn.commit()
            LOGGER.debug("Flushed %s rows into %s", len(batch), metadata.display_name)

        identity = any(column.is_identity for column in columns)
        identity_on = False
        try:
            if identity:
                await conn.execute(text(f"SET IDENTITY_INSERT {metadata.qualified_name} ON"))
                identity_on = True
            return await pump_batches(self._source_rows(select), self._options.batch_size, flush)
        except Exception:
            await conn.rollback()
            raise
        finally:
            if identity_on:
                await conn.execute(text(f"SET IDENTITY_INSERT {metadata.qualified_name} OFF"))
                await conn.commit()


async def ensure_target_database(config: CloneConfig) -> None:
    """Wait for the target server, then drop and/or create the target database."""
    engine = await wait_for_engine(
        config.target_master_url,
        config.target.connect_timeout,
        label="target server",
        isolation_level="AUTOCOMMIT",
    )
    database = quote_ident(config.target_database)
    try:
        async with engine.connect() as conn:
            if config.drop_target:
                LOGGER.info("Dropping target database %s", config.target_database)
                await conn.execute(
                    text(
                        "IF DB_ID(:name) IS NOT NULL "
                        "BEGIN "
                        f"ALTER DATABASE {database} SET SINGLE_USER WITH ROLLBACK IMMEDIATE; "
                        f"DROP DATABASE {database}; "
                        "END"
                    ),
                    {"name": config.target_database},
                )
            await conn.execute(
                text(f"IF DB_ID(:name) IS NULL CREATE DATABASE {database}"),
                {"name": config.target_database},
            )
    finally:
        await engine.dispose()


async def run_clone(
    source: DatabaseConfig,
    config: CloneConfig,
    console: Optional[Console] = None,
) -> CloneSummary:
    await ensure_target_database(config)
    source_engine = await wait_for_engine(source.url, source.connect_timeout, label="source database")
    try:
        target_engine = await wait_for_engine(
            config.target.url,
            config.target.connect_timeout,
            label="target database",
            fast_executemany=True,
        )
        try:
            copier = BulkTableCopier(source_engine, target_engine, CopyOptions.from_config(config))
            summary = await copier.copy_database(console=console)
        finally:
            await target_engine.dispose()
    finally:
        await source_engine.dispose()
    LOGGER.info("Clone completed into %s", config.target_database)
    return summary
