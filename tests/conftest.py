"""Shared fixtures and in-memory fakes for the unit tests."""

from __future__ import annotations

import copy
from typing import Any, Dict, List, Mapping, Optional

import pytest

from kwp_sync.catalog import ColumnMeta, TableMetadata, split_table_name
from kwp_sync.erp import load_erp_schema
from kwp_sync.errors import CatalogError
from kwp_sync.models import InsertConfig


def col(name: str, native_type: str = "nvarchar", **kwargs: Any) -> ColumnMeta:
    return ColumnMeta(name=name, native_type=native_type, **kwargs)


def location_table() -> TableMetadata:
    return TableMetadata(
        schema="dbo",
        name="adrOrte",
        columns=(
            col("OrtID", "int", is_nullable=False),
            col("PLZ", max_length=10, is_nullable=False),
            col("Ort", max_length=50, is_nullable=False),
            col("Land", max_length=5),
            col("OrtTyp", "int"),
        ),
    )


def address_table(id_length: int = 24) -> TableMetadata:
    return TableMetadata(
        schema="dbo",
        name="adrAdressen",
        columns=(
            col("AdrNrGes", max_length=id_length, is_nullable=False),
            col("Name", max_length=80, is_nullable=False),
            col("Vorname", max_length=50),
            col("Strasse", max_length=80),
            col("Ort", "int", is_nullable=False),
            col("RechnungsMail", max_length=120),
            col("Land", max_length=5),
            col("rowguid", "uniqueidentifier", is_nullable=False, default_expression="(newid())"),
        ),
    )


def project_table() -> TableMetadata:
    return TableMetadata(
        schema="dbo",
        name="Projekt",
        columns=(
            col("LfdNr", "int", is_nullable=False, is_identity=True),
            col("ProjNr", max_length=20, is_nullable=False),
            col("ProjBezeichnung", max_length=100),
            col("ProjAdr", max_length=24, is_nullable=False),
            col("RechAdr", max_length=24, is_nullable=False),
            col("BauHrAdr", max_length=24, is_nullable=False),
            col("AbtNr", "int"),
            col("SachBearb", max_length=10),
            col("AuftragStatus", "int"),
            col("AuftragsSumme", "numeric", precision=18, scale=2),
            col("Beginn", "datetime"),
            col("CreateDate", "datetime", is_nullable=False),
            col("EditDate", "datetime"),
            col("EroeffDatum", "datetime"),
            col("AuftragsDatum", "datetime"),
            col("Kennung", "timestamp", is_nullable=False),
        ),
    )


class StaticCatalog:
    """Catalog stand-in serving fixed table snapshots."""

    def __init__(self, *tables: TableMetadata) -> None:
        self._tables = {table.display_name.lower(): table for table in tables}
        self.requests: List[str] = []

    async def get_columns(self, table_name: str) -> TableMetadata:
        schema, table = split_table_name(table_name)
        self.requests.append(f"{schema}.{table}")
        try:
            return self._tables[f"{schema}.{table}".lower()]
        except KeyError:
            raise CatalogError(f"Table {schema}.{table} does not exist") from None


class FakeErpRepository:
    """In-memory version of ErpRepository."""

    def __init__(self) -> None:
        self.locations: List[Dict[str, Any]] = []
        self.addresses: Dict[str, Dict[str, Any]] = {}
        self.projects: Dict[str, Dict[str, Any]] = {}
        self.inserts: List[str] = []

    async def find_location_id(self, postal_code: str, city: str) -> Optional[int]:
        for row in self.locations:
            if row["PLZ"] == postal_code and row["Ort"] == city:
                return row["OrtID"]
        return None

    async def next_location_id(self) -> int:
        return max((row["OrtID"] for row in self.locations), default=0) + 1

    async def address_exists(self, address_id: str) -> bool:
        return address_id in self.addresses

    async def address_ids_with_prefix(self, prefix: str) -> List[str]:
        return [key for key in self.addresses if key.upper().startswith(prefix.upper())]

    async def project_exists(self, projnr: str) -> bool:
        return projnr in self.projects

    async def insert_row(self, metadata: TableMetadata, values: Mapping[str, Any]) -> None:
        row = dict(values)
        self.inserts.append(metadata.name)
        if metadata.name == "adrOrte":
            self.locations.append(row)
        elif metadata.name == "adrAdressen":
            self.addresses[row["AdrNrGes"]] = row
        elif metadata.name == "Projekt":
            self.projects[row["ProjNr"]] = row
        else:
            raise AssertionError(f"unexpected table {metadata.name}")

    async def find_template_projnr(self, template_projnr: Optional[str]) -> Optional[str]:
        if template_projnr:
            return template_projnr if template_projnr in self.projects else None
        if not self.projects:
            return None
        latest = max(
            self.projects.values(), key=lambda row: (row.get("CreateDate"), row["ProjNr"])
        )
        return latest["ProjNr"]

    async def clone_project(
        self, metadata: TableMetadata, template_projnr: str, overrides: Mapping[str, Any]
    ) -> int:
        template = self.projects.get(template_projnr)
        if template is None:
            return 0
        row = {
            column.name: template.get(column.name)
            for column in metadata.insertable_columns
        }
        row.update(copy.deepcopy(dict(overrides)))
        self.inserts.append(metadata.name)
        self.projects[row["ProjNr"]] = row
        return 1


@pytest.fixture
def erp():
    return load_erp_schema()


@pytest.fixture
def catalog() -> StaticCatalog:
    return StaticCatalog(location_table(), address_table(), project_table())


@pytest.fixture
def repository() -> FakeErpRepository:
    return FakeErpRepository()


@pytest.fixture
def insert_config() -> InsertConfig:
    return InsertConfig()
