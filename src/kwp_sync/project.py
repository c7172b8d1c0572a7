"""Insert queued projects into the ERP ``Projekt`` table."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from .address import AddressResolutionWorkflow
from .catalog import TableMetadata
from .coercion import coerce_value, is_empty
from .erp import ROLE_BILLING, ROLE_PRIMARY, ROLE_SITE, ErpSchema, load_erp_schema
from .errors import (AddressReferenceMismatchError, CoercionError,
                     MissingRequiredFieldError, TemplateNotFoundError)
from .mapper import PayloadMapper
from .models import STRATEGY_TEMPLATE, InsertConfig
from .payloads import (parse_primary_address, parse_project_payload,
                       project_extra_keys, role_address, role_payload)
from .repository import ErpRepository

LOGGER = logging.getLogger("kwp_sync.project")

STATUS_INSERTED = "inserted"
STATUS_EXISTS = "exists"
PROJECT_LABEL = "projekt"


@dataclass(frozen=True)
class InsertResult:
    status: str
    projnr: str
    strategy: Optional[str] = None
    addresses: Dict[str, str] = field(default_factory=dict)


def _payload_value(payload: Mapping[str, Any], name: str) -> Any:
    lowered = name.lower()
    for key, value in payload.items():
        if key.lower() == lowered:
            return value
    return None


class ProjectInsertWorkflow:
    """Validate a project payload, resolve its addresses and insert it."""

    def __init__(
        self,
        repository,
        catalog,
        addresses: AddressResolutionWorkflow,
        config: InsertConfig,
        erp: Optional[ErpSchema] = None,
        mapper: Optional[PayloadMapper] = None,
    ) -> None:
        self._repository = repository
        self._catalog = catalog
        self._addresses = addresses
        self._config = config
        self._erp = erp or load_erp_schema()
        self._mapper = mapper or PayloadMapper()

    async def insert(self, raw: Mapping[str, Any]) -> InsertResult:
        payload = parse_project_payload(raw)
        table = self._erp.project
        metadata = await self._catalog.get_columns(self._erp.qualified(table.table))

        projnr = self._project_number(raw, metadata)
        if await self._repository.project_exists(projnr):
            LOGGER.info("Project %s already exists, nothing to do", projnr)
            return InsertResult(status=STATUS_EXISTS, projnr=projnr)

        primary = parse_primary_address(raw, payload)
        template = self._config.strategy == STRATEGY_TEMPLATE
        references = tuple(table.references.values())
        deferred = references + table.timestamps
        if template:
            # The template row supplies every column the payload leaves out.
            deferred += tuple(column.name for column in metadata.required_columns)
        row = self._mapper.map(
            raw,
            metadata,
            allowed_extra_keys=project_extra_keys(),
            label=PROJECT_LABEL,
            deferred_columns=deferred,
        )

        # Every address object is checked before the first address is written.
        await self._addresses.check_fields(primary.address, ROLE_PRIMARY)
        for role in (ROLE_BILLING, ROLE_SITE):
            sent = role_payload(payload, role)
            if sent is not None:
                await self._addresses.check_fields(sent, role)

        resolved: Dict[str, str] = {}
        resolved[ROLE_PRIMARY] = await self._addresses.resolve(primary.address, ROLE_PRIMARY)
        for role in (ROLE_BILLING, ROLE_SITE):
            own = role_address(payload, role)
            if own is None:
                resolved[role] = resolved[ROLE_PRIMARY]
            else:
                resolved[role] = await self._addresses.resolve(own, role)

        for role, address_id in resolved.items():
            column = self._column_name(metadata, table.references[role])
            supplied = row.get(column)
            if not is_empty(supplied) and str(supplied).strip() != address_id:
                raise AddressReferenceMismatchError(column, str(supplied).strip(), address_id)
            row[column] = address_id

        now = datetime.now()
        for name in table.timestamps:
            column = metadata.column(name)
            if column is not None and row.get(column.name) is None:
                row[column.name] = now

        if template:
            await self._insert_from_template(metadata, projnr, row)
        else:
            self._mapper.check_required(row, metadata, label=PROJECT_LABEL)
            await self._repository.insert_row(metadata, row)

        LOGGER.info(
            "Inserted project %s (%s, addresses %s)",
            projnr,
            self._config.strategy,
            ", ".join(f"{role}={value}" for role, value in resolved.items()),
        )
        return InsertResult(
            status=STATUS_INSERTED,
            projnr=projnr,
            strategy=self._config.strategy,
            addresses=resolved,
        )

    def _project_number(self, raw: Mapping[str, Any], metadata: TableMetadata) -> str:
        name = self._erp.project.number
        value = _payload_value(raw, name)
        if is_empty(value):
            raise MissingRequiredFieldError(PROJECT_LABEL, [name])
        column = metadata.column(name)
        if column is None:
            return str(value).strip()
        try:
            return str(coerce_value(str(value).strip(), column))
        except CoercionError as exc:
            raise exc.tagged(name, PROJECT_LABEL) from exc

    @staticmethod
    def _column_name(metadata: TableMetadata, name: str) -> str:
        column = metadata.column(name)
        return column.name if column is not None else name

    async def _insert_from_template(
        self, metadata: TableMetadata, projnr: str, row: Dict[str, Any]
    ) -> None:
        table = self._erp.project
        template = await self._repository.find_template_projnr(self._config.template_projnr)
        if template is None:
            wanted = self._config.template_projnr or "most recent project"
            raise TemplateNotFoundError(f"No template project found ({wanted})")

        override_names = (
            (table.number, table.display_name, table.department, table.case_owner, table.status)
            + tuple(table.references.values())
            + table.timestamps
        )
        overrides: Dict[str, Any] = {}
        for name in override_names:
            column = metadata.column(name)
            if column is None:
                continue
            if column.name.lower() == table.number.lower():
                overrides[column.name] = projnr
            elif row.get(column.name) is not None:
                overrides[column.name] = row[column.name]

        ignored = sorted(
            name for name, value in row.items() if value is not None and name not in overrides
        )
        if ignored:
            LOGGER.warning(
                "Template insert of %s keeps the template values of %s",
                projnr,
                ", ".join(ignored),
            )

        inserted = await self._repository.clone_project(metadata, template, overrides)
        if not inserted:
            raise TemplateNotFoundError(f"Template project {template} disappeared during insert")
        LOGGER.debug("Cloned project %s from template %s", projnr, template)


async def insert_project(
    engine: AsyncEngine,
    catalog,
    payload: Mapping[str, Any],
    config: InsertConfig,
    erp: Optional[ErpSchema] = None,
) -> InsertResult:
    """Run one project insert as a single transaction.

    The transaction commits only when the whole workflow succeeds. On any
    error it is rolled back and the original exception is re-raised.
    """
    erp = erp or load_erp_schema()
    async with engine.connect() as conn:
        trans = await conn.begin()
        try:
            repository = ErpRepository(conn, erp)
            addresses = AddressResolutionWorkflow(repository, catalog, config, erp=erp)
            workflow = ProjectInsertWorkflow(repository, catalog, addresses, config, erp=erp)
            result = await workflow.insert(payload)
            await trans.commit()
            return result
        except Exception:
            try:
                await trans.rollback()
            except Exception:
                LOGGER.warning("Rollback failed", exc_info=True)
            raise
