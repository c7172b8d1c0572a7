from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, List

import pytest
from sqlalchemy.exc import DBAPIError

from kwp_sync import copier as copier_module
from kwp_sync.catalog import TableMetadata, qualify, split_table_name
from kwp_sync.copier import (STATUS_COPIED, STATUS_FAILED, STATUS_SCHEMA_ONLY,
                             STATUS_SKIPPED, BulkTableCopier, CopyOptions,
                             create_table_sql, pump_batches, run_clone)
from kwp_sync.errors import CopyError
from kwp_sync.models import CloneConfig, DatabaseConfig

from conftest import StaticCatalog, col


async def counted_rows(total: int, pulled: List[int]):
    for index in range(total):
        pulled[0] += 1
        yield (index,)
        await asyncio.sleep(0)


class TestPumpBatches:
    async def test_batches_and_memory_bound(self):
        pulled = [0]
        flushed_sizes: List[int] = []
        flushed_total = [0]

        async def flush(batch):
            # Rows read so far never exceed what has been flushed plus this batch.
            assert pulled[0] <= flushed_total[0] + len(batch)
            await asyncio.sleep(0)
            flushed_sizes.append(len(batch))
            flushed_total[0] += len(batch)

        count = await pump_batches(counted_rows(2500, pulled), 1000, flush)

        assert count == 2500
        assert flushed_sizes == [1000, 1000, 500]

    async def test_exact_multiple_has_no_empty_flush(self):
        sizes: List[int] = []

        async def flush(batch):
            sizes.append(len(batch))

        assert await pump_batches(counted_rows(2000, [0]), 1000, flush) == 2000
        assert sizes == [1000, 1000]

    async def test_empty_source(self):
        async def flush(batch):
            raise AssertionError("nothing to flush")

        assert await pump_batches(counted_rows(0, [0]), 10, flush) == 0

    async def test_flush_error_stops_reader(self):
        pulled = [0]

        async def flush(batch):
            raise RuntimeError("target down")

        with pytest.raises(RuntimeError, match="target down"):
            await pump_batches(counted_rows(10_000, pulled), 100, flush)
        assert pulled[0] <= 200

    async def test_reader_error_is_raised(self):
        async def broken():
            yield (1,)
            raise ValueError("cursor lost")

        async def flush(batch):
            pass

        with pytest.raises(ValueError, match="cursor lost"):
            await pump_batches(broken(), 10, flush)

    async def test_batch_size_must_be_positive(self):
        with pytest.raises(ValueError):
            await pump_batches(counted_rows(1, [0]), 0, None)


def orders_table() -> TableMetadata:
    return TableMetadata(
        schema="sales",
        name="Orders",
        columns=(
            col("Id", "int", is_nullable=False, is_identity=True, identity_seed=100, identity_increment=5),
            col("Kunde", max_length=40),
            col("Betrag", "decimal", precision=10, scale=2, is_nullable=False),
            col("Brutto", "decimal", precision=10, scale=2, is_computed=True,
                computed_definition="([Betrag]*(1.19))", is_persisted=True),
            col("Version", "rowversion", is_nullable=False),
        ),
    )


class TestCreateTableSql:
    def test_identity_computed_and_nullability(self):
        sql = create_table_sql(orders_table())
        assert sql.startswith("CREATE TABLE [sales].[Orders] (")
        assert "[Id] int IDENTITY(100,5) NOT NULL" in sql
        assert "[Kunde] nvarchar(40) NULL" in sql
        assert "[Betrag] decimal(10,2) NOT NULL" in sql
        assert "[Brutto] AS ([Betrag]*(1.19)) PERSISTED" in sql
        assert "[Version] rowversion NOT NULL" in sql


class RecordingConnection:
    def __init__(self, rows=None) -> None:
        self.statements: List[Any] = []
        self.commits = 0
        self.rollbacks = 0
        self._rows = rows or []

    async def execute(self, statement, params=None):
        self.statements.append((str(statement), params))

    async def commit(self):
        self.commits += 1

    async def rollback(self):
        self.rollbacks += 1

    async def stream(self, statement):
        self.statements.append((str(statement), None))
        rows = self._rows

        class Result:
            async def __aiter__(self):
                for row in rows:
                    yield row

        return Result()

    def executed(self, prefix: str) -> List[Any]:
        return [params for sql, params in self.statements if sql.startswith(prefix)]


class RecordingEngine:
    def __init__(self, rows=None) -> None:
        self.connection = RecordingConnection(rows)

    @asynccontextmanager
    async def connect(self):
        yield self.connection


@pytest.fixture
def tables(monkeypatch):
    state = {"exists": False, "counts": {}}

    async def table_exists(conn, schema, table):
        return state["exists"]

    async def table_row_count(conn, schema, table):
        return state["counts"].get(id(conn))

    monkeypatch.setattr(copier_module, "table_exists", table_exists)
    monkeypatch.setattr(copier_module, "table_row_count", table_row_count)
    return state


def make_copier(source, target, **options) -> BulkTableCopier:
    return BulkTableCopier(
        source,
        target,
        CopyOptions(**options),
        source_catalog=StaticCatalog(orders_table()),
    )


class TestCopyTable:
    async def test_creates_table_and_copies_in_batches(self, tables):
        source = RecordingEngine(rows=[(i, f"K{i}", i) for i in range(2500)])
        target = RecordingEngine()

        result = await make_copier(source, target, batch_size=1000).copy_table("sales.Orders")

        assert result.status == STATUS_COPIED
        assert result.created
        assert result.rows == 2500
        conn = target.connection
        assert len(conn.executed("CREATE TABLE")) == 1
        inserts = conn.executed("INSERT INTO")
        assert [len(batch) for batch in inserts] == [1000, 1000, 500]
        assert inserts[0][0] == {"c0": 0, "c1": "K0", "c2": 0}
        sql = [statement for statement, _ in conn.statements]
        assert sql.index("SET IDENTITY_INSERT [sales].[Orders] ON") < sql.index(
            "SET IDENTITY_INSERT [sales].[Orders] OFF"
        )
        select = source.connection.statements[0][0]
        assert select == "SELECT [Id], [Kunde], [Betrag] FROM [sales].[Orders]"

    async def test_missing_schema_is_created_through_a_variable(self, tables):
        target = RecordingEngine()

        await make_copier(RecordingEngine(), target, schema_only=True).copy_table(
            qualify("sales", "Orders")
        )

        statements = target.connection.statements
        schema_sql, params = statements[0]
        assert schema_sql.startswith(
            "DECLARE @stmt nvarchar(max) = N'CREATE SCHEMA ' + QUOTENAME(:schema)"
        )
        assert schema_sql.endswith("EXEC(@stmt);")
        assert "EXEC('" not in schema_sql
        assert params == {"schema": "sales"}
        assert statements[1][0].startswith("CREATE TABLE [sales].[Orders]")

    async def test_equal_counts_skip_copy(self, tables):
        source = RecordingEngine(rows=[(1, "A", 1)])
        target = RecordingEngine()
        tables["exists"] = True
        tables["counts"] = {id(source.connection): 1, id(target.connection): 1}

        result = await make_copier(source, target).copy_table("sales.Orders")

        assert result.status == STATUS_SKIPPED
        assert target.connection.executed("INSERT INTO") == []
        assert target.connection.executed("CREATE TABLE") == []
        assert source.connection.executed("SELECT") == []

    async def test_different_counts_truncate_and_copy(self, tables):
        source = RecordingEngine(rows=[(1, "A", 1), (2, "B", 2)])
        target = RecordingEngine()
        tables["exists"] = True
        tables["counts"] = {id(source.connection): 2, id(target.connection): 1}

        result = await make_copier(source, target, truncate_existing=True).copy_table(
            "sales.Orders"
        )

        assert result.status == STATUS_COPIED
        assert result.rows == 2
        assert len(target.connection.executed("TRUNCATE TABLE [sales].[Orders]")) == 1

    async def test_drop_existing_recreates(self, tables):
        tables["exists"] = True
        target = RecordingEngine()

        result = await make_copier(
            RecordingEngine(), target, drop_existing_tables=True, schema_only=True
        ).copy_table("sales.Orders")

        assert result.status == STATUS_SCHEMA_ONLY
        assert result.created
        assert len(target.connection.executed("DROP TABLE [sales].[Orders]")) == 1
        assert len(target.connection.executed("CREATE TABLE")) == 1
        assert target.connection.executed("INSERT INTO") == []

    async def test_flush_failure_turns_identity_insert_off(self, tables):
        source = RecordingEngine(rows=[(1, "A", 1)])
        target = RecordingEngine()

        async def failing_execute(statement, params=None):
            target.connection.statements.append((str(statement), params))
            if str(statement).startswith("INSERT INTO"):
                raise DBAPIError("INSERT", params, Exception("constraint violated"))

        target.connection.execute = failing_execute

        with pytest.raises(CopyError) as excinfo:
            await make_copier(source, target).copy_table("sales.Orders")

        assert excinfo.value.table == "sales.Orders"
        assert target.connection.rollbacks == 1
        sql = [statement for statement, _ in target.connection.statements]
        assert sql[-1] == "SET IDENTITY_INSERT [sales].[Orders] OFF"


class TestCopyDatabase:
    @pytest.fixture
    def listed(self, monkeypatch):
        async def list_tables(engine, table_filter=None):
            return [("dbo", "A"), ("dbo", "B"), ("dbo", "C")]

        monkeypatch.setattr(copier_module, "list_tables", list_tables)

    def scripted(self, outcomes, **options):
        copier = BulkTableCopier(object(), object(), CopyOptions(**options), source_catalog=object())
        calls: List[str] = []

        async def copy_table(name):
            key = ".".join(split_table_name(name))
            calls.append(key)
            outcome = outcomes[key]
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        copier.copy_table = copy_table
        return copier, calls

    async def test_stops_on_first_failure(self, listed):
        copier, calls = self.scripted(
            {
                "dbo.A": copier_module.TableCopyResult("dbo.A", STATUS_COPIED, rows=3),
                "dbo.B": CopyError("dbo.B", "boom"),
                "dbo.C": copier_module.TableCopyResult("dbo.C", STATUS_COPIED),
            }
        )

        summary = await copier.copy_database()

        assert calls == ["dbo.A", "dbo.B"]
        assert [result.status for result in summary.results] == [STATUS_COPIED, STATUS_FAILED]
        assert summary.total_rows == 3

    async def test_continue_on_error(self, listed):
        copier, calls = self.scripted(
            {
                "dbo.A": CopyError("dbo.A", "boom"),
                "dbo.B": copier_module.TableCopyResult("dbo.B", STATUS_SKIPPED),
                "dbo.C": copier_module.TableCopyResult("dbo.C", STATUS_COPIED, rows=7),
            },
            continue_on_error=True,
        )

        summary = await copier.copy_database()

        assert calls == ["dbo.A", "dbo.B", "dbo.C"]
        assert len(summary.failed) == 1
        assert "boom" in summary.failed[0].error
        assert len(summary.skipped) == 1
        assert summary.total_rows == 7

    async def test_dotted_table_names_reach_the_catalog_intact(self, monkeypatch, tables):
        dotted = TableMetadata(schema="dbo", name="Log.2024", columns=(col("Id", "int"),))
        catalog = StaticCatalog(dotted)

        async def list_tables(engine, table_filter=None):
            return [("dbo", "Log.2024")]

        monkeypatch.setattr(copier_module, "list_tables", list_tables)
        copier = BulkTableCopier(
            RecordingEngine(),
            RecordingEngine(),
            CopyOptions(schema_only=True),
            source_catalog=catalog,
        )

        summary = await copier.copy_database()

        assert catalog.requests == ["dbo.Log.2024"]
        assert [result.status for result in summary.results] == [STATUS_SCHEMA_ONLY]
        assert summary.results[0].table == "dbo.Log.2024"


class DisposableEngine:
    def __init__(self) -> None:
        self.disposed = False

    async def dispose(self) -> None:
        self.disposed = True


class TestRunClone:
    async def test_target_engine_uses_fast_executemany(self, monkeypatch):
        opened = []

        async def wait_for_engine(url, timeout, label="database", **options):
            opened.append((url, options))
            return DisposableEngine()

        async def ensure_target_database(config):
            return None

        async def copy_database(self, console=None):
            return copier_module.CloneSummary()

        monkeypatch.setattr(copier_module, "wait_for_engine", wait_for_engine)
        monkeypatch.setattr(copier_module, "ensure_target_database", ensure_target_database)
        monkeypatch.setattr(BulkTableCopier, "copy_database", copy_database)
        config = CloneConfig(
            target=DatabaseConfig(url="mssql+aioodbc://sa:x@localhost/KWP_CLONE"),
            target_master_url="mssql+aioodbc://sa:x@localhost/master",
            target_database="KWP_CLONE",
        )

        await run_clone(DatabaseConfig(url="mssql+aioodbc://u:p@erp/KWP"), config)

        options = dict(opened)
        assert options["mssql+aioodbc://sa:x@localhost/KWP_CLONE"] == {"fast_executemany": True}
        assert options["mssql+aioodbc://u:p@erp/KWP"] == {}
