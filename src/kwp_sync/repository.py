"""SQL access to the ERP tables used by the insert workflows."""

from __future__ import annotations

import logging
from typing import Any, List, Mapping, Optional

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncConnection

from .catalog import TableMetadata, qualify, quote_ident
from .coercion import bind_type
from .erp import ErpSchema

LOGGER = logging.getLogger("kwp_sync.repository")


def escape_like(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace("%", "\\%")
        .replace("_", "\\_")
        .replace("[", "\\[")
    )


class ErpRepository:
    """Parameterised statements against one open connection.

    The connection's transaction is owned by the caller.
    """

    def __init__(self, conn: AsyncConnection, erp: ErpSchema) -> None:
        self._conn = conn
        self._erp = erp

    def _table(self, name: str) -> str:
        return qualify(self._erp.schema, name)

    async def find_location_id(self, postal_code: str, city: str) -> Optional[int]:
        loc = self._erp.location
        result = await self._conn.execute(
            text(
                f"SELECT TOP 1 {quote_ident(loc.id)} FROM {self._table(loc.table)} "
                f"WHERE {quote_ident(loc.postal_code)} = :plz AND {quote_ident(loc.city)} = :ort "
                f"ORDER BY {quote_ident(loc.id)}"
            ),
            {"plz": postal_code, "ort": city},
        )
        value = result.scalar()
        return None if value is None else int(value)

    async def next_location_id(self) -> int:
        # Range stays locked until the caller's transaction ends.
        loc = self._erp.location
        result = await self._conn.execute(
            text(
                f"SELECT ISNULL(MAX({quote_ident(loc.id)}), 0) + 1 "
                f"FROM {self._table(loc.table)} WITH (UPDLOCK, HOLDLOCK)"
            )
        )
        return int(result.scalar_one())

    async def address_exists(self, address_id: str) -> bool:
        adr = self._erp.address
        result = await self._conn.execute(
            text(
                f"SELECT 1 FROM {self._table(adr.table)} WHERE {quote_ident(adr.id)} = :id"
            ),
            {"id": address_id},
        )
        return result.first() is not None

    async def address_ids_with_prefix(self, prefix: str) -> List[str]:
        adr = self._erp.address
        result = await self._conn.execute(
            text(
                f"SELECT {quote_ident(adr.id)} FROM {self._table(adr.table)} "
                "WITH (UPDLOCK, HOLDLOCK) "
                f"WHERE {quote_ident(adr.id)} LIKE :pattern ESCAPE '\\'"
            ),
            {"pattern": escape_like(prefix) + "%"},
        )
        return [str(value) for value in result.scalars().all()]

    async def project_exists(self, projnr: str) -> bool:
        proj = self._erp.project
        result = await self._conn.execute(
            text(
                f"SELECT 1 FROM {self._table(proj.table)} WHERE {quote_ident(proj.number)} = :projnr"
            ),
            {"projnr": projnr},
        )
        return result.first() is not None

    async def insert_row(self, metadata: TableMetadata, values: Mapping[str, Any]) -> None:
        """Insert one row; ``values`` keys are column names of ``metadata``."""
        columns = []
        params = {}
        binds = []
        for index, (name, value) in enumerate(values.items()):
            column = metadata.column(name)
            if column is None:
                raise KeyError(f"{metadata.display_name} has no column {name}")
            key = f"p{index}"
            columns.append(column)
            params[key] = value
            binds.append(bindparam(key, type_=bind_type(column)))

        column_list = ", ".join(quote_ident(column.name) for column in columns)
        placeholders = ", ".join(f":p{index}" for index in range(len(columns)))
        stmt = text(
            f"INSERT INTO {metadata.qualified_name} ({column_list}) VALUES ({placeholders})"
        ).bindparams(*binds)
        await self._conn.execute(stmt, params)
        LOGGER.debug("Inserted row into %s (%s columns)", metadata.display_name, len(columns))

    async def find_template_projnr(self, template_projnr: Optional[str]) -> Optional[str]:
        proj = self._erp.project
        if template_projnr:
            result = await self._conn.execute(
                text(
                    f"SELECT {quote_ident(proj.number)} FROM {self._table(proj.table)} "
                    f"WHERE {quote_ident(proj.number)} = :projnr"
                ),
                {"projnr": template_projnr},
            )
        else:
            result = await self._conn.execute(
                text(
                    f"SELECT TOP 1 {quote_ident(proj.number)} FROM {self._table(proj.table)} "
                    f"ORDER BY {quote_ident(proj.created)} DESC, {quote_ident(proj.number)} DESC"
                )
            )
        value = result.scalar()
        return None if value is None else str(value)

    async def clone_project(
        self,
        metadata: TableMetadata,
        template_projnr: str,
        overrides: Mapping[str, Any],
    ) -> int:
        """Copy the template row, replacing the ``overrides`` columns."""
        lowered = {name.lower(): value for name, value in overrides.items()}
        target_columns = []
        select_items = []
        params = {"template": template_projnr}
        binds = []
        for column in metadata.insertable_columns:
            target_columns.append(quote_ident(column.name))
            if column.name.lower() in lowered:
                key = f"o{len(binds)}"
                params[key] = lowered[column.name.lower()]
                binds.append(bindparam(key, type_=bind_type(column)))
                select_items.append(f":{key}")
            else:
                select_items.append(quote_ident(column.name))

        number = quote_ident(self._erp.project.number)
        stmt = text(
            f"INSERT INTO {metadata.qualified_name} ({', '.join(target_columns)}) "
            f"SELECT {', '.join(select_items)} FROM {metadata.qualified_name} "
            f"WHERE {number} = :template"
        ).bindparams(*binds)
        result = await self._conn.execute(stmt, params)
        return result.rowcount
