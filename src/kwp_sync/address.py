"""Resolve payload addresses to ERP address ids, creating rows on demand."""

from __future__ import annotations

import logging
import re
import unicodedata
from typing import Any, Dict, Iterable, List, Optional

from .catalog import TableMetadata
from .coercion import is_empty
from .erp import ErpSchema, load_erp_schema
from .errors import AddressTooLongError, MissingAddressFieldError
from .mapper import PayloadMapper
from .models import InsertConfig
from .payloads import AddressPayload

LOGGER = logging.getLogger("kwp_sync.address")

FALLBACK_BASE = "ADR"
TRANSLITERATIONS = (
    ("Ä", "AE"),
    ("Ö", "OE"),
    ("Ü", "UE"),
    ("ẞ", "SS"),
    ("ß", "SS"),
    ("&", " UND "),
)
LEGAL_FORM_TOKENS = frozenset(
    {
        "GMBH",
        "MBH",
        "KG",
        "AG",
        "UG",
        "OHG",
        "GBR",
        "EK",
        "EV",
        "SE",
        "CO",
        "KGAA",
        "HAFTUNGSBESCHRAENKT",
        "LTD",
        "INC",
    }
)
TOKEN_SPLIT = re.compile(r"[^A-Z0-9]+")


def address_base_tokens(name: Optional[str]) -> List[str]:
    """Split a company or person name into upper-case ASCII id tokens.

    >>> address_base_tokens("Müller & Söhne GmbH & Co. KG")
    ['MUELLER', 'UND', 'SOEHNE']
    """
    value = (name or "").upper()
    for source, target in TRANSLITERATIONS:
        value = value.replace(source, target)
    value = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    tokens = [
        token
        for token in TOKEN_SPLIT.split(value)
        if token and token not in LEGAL_FORM_TOKENS
    ]
    # "& Co." leaves a dangling conjunction once the legal form is dropped.
    while tokens and tokens[-1] == "UND":
        tokens.pop()
    while tokens and tokens[0] == "UND":
        tokens.pop(0)
    return tokens or [FALLBACK_BASE]


def build_address_id(base: str, suffix: str, counter: Optional[int] = None) -> str:
    prefix = f"{base}{suffix}"
    if counter is None:
        return prefix
    return f"{prefix}_{counter}"


def next_counter(prefix: str, existing_ids: Iterable[str]) -> Optional[int]:
    """Return the counter for a new id under ``prefix``.

    ``None`` means the bare prefix is still free. The bare prefix itself
    counts as number 1, so the first collision yields ``PREFIX_2``.
    """
    wanted = prefix.upper()
    highest = 0
    for candidate in existing_ids:
        upper = candidate.strip().upper()
        if upper == wanted:
            highest = max(highest, 1)
        elif upper.startswith(wanted + "_"):
            tail = upper[len(wanted) + 1:]
            if tail.isdigit():
                highest = max(highest, int(tail))
    if highest == 0:
        return None
    return highest + 1


class AddressResolutionWorkflow:
    """Find or create the address row for one payload address.

    All statements run through ``repository`` and therefore inside the
    caller's transaction.
    """

    def __init__(
        self,
        repository,
        catalog,
        config: InsertConfig,
        erp: Optional[ErpSchema] = None,
        mapper: Optional[PayloadMapper] = None,
    ) -> None:
        self._repository = repository
        self._catalog = catalog
        self._config = config
        self._erp = erp or load_erp_schema()
        self._mapper = mapper or PayloadMapper()

    async def _address_metadata(self) -> TableMetadata:
        return await self._catalog.get_columns(self._erp.qualified(self._erp.address.table))

    async def _location_metadata(self) -> TableMetadata:
        return await self._catalog.get_columns(self._erp.qualified(self._erp.location.table))

    def _id_length(self, metadata: TableMetadata) -> int:
        column = metadata.column(self._erp.address.id)
        if column is not None and column.max_length is not None and column.max_length > 0:
            return column.max_length
        return self._config.default_address_id_length

    async def check_fields(self, address: AddressPayload, role: str) -> None:
        """Reject unknown or invalid address keys, even when no row is written."""
        metadata = await self._address_metadata()
        self._mapper.map(
            address.address_columns(self._erp.address),
            metadata,
            label=f"{role} address",
            deferred_columns=tuple(column.name for column in metadata.columns),
        )

    async def resolve(self, address: AddressPayload, role: str) -> str:
        await self.check_fields(address, role)
        metadata = await self._address_metadata()
        max_length = self._id_length(metadata)

        address_id = address.explicit_id
        if address_id is not None:
            if len(address_id) > max_length:
                raise AddressTooLongError(address_id, max_length)
        else:
            address_id = await self.generate_id(address.name, role, max_length)

        if await self._repository.address_exists(address_id):
            LOGGER.debug("Reusing %s address %s", role, address_id)
            return address_id

        table = self._erp.address
        values: Dict[str, Any] = address.address_columns(table)
        values[table.id] = address_id
        row = self._mapper.map(
            values,
            metadata,
            label=f"{role} address",
            deferred_columns=(table.location,),
        )
        column = metadata.column(table.location)
        row[column.name if column is not None else table.location] = await self.resolve_location(
            address, role
        )
        await self._repository.insert_row(metadata, row)
        LOGGER.info("Created %s address %s", role, address_id)
        return address_id

    async def generate_id(self, name: Optional[str], role: str, max_length: int) -> str:
        """Derive a fresh id from ``name``, shortening the base until it fits."""
        suffix = self._erp.roles[role].suffix
        budget = max_length - len(suffix)
        if budget < 1:
            raise AddressTooLongError(suffix, max_length)

        base = "_".join(address_base_tokens(name))
        base = base[:budget].rstrip("_") or FALLBACK_BASE[:budget]
        while True:
            prefix = build_address_id(base, suffix)
            existing = await self._repository.address_ids_with_prefix(prefix)
            candidate = build_address_id(base, suffix, next_counter(prefix, existing))
            if len(candidate) <= max_length:
                return candidate
            # The counter is never cut; shrink the base and re-derive it.
            overflow = len(candidate) - max_length
            shorter = base[: len(base) - overflow].rstrip("_")
            if not shorter:
                raise AddressTooLongError(candidate, max_length)
            base = shorter

    async def resolve_location(self, address: AddressPayload, role: str) -> int:
        if is_empty(address.plz):
            raise MissingAddressFieldError(role, "plz")
        if is_empty(address.ort):
            raise MissingAddressFieldError(role, "ort")
        postal_code = address.plz.strip()
        city = address.ort.strip()

        existing = await self._repository.find_location_id(postal_code, city)
        if existing is not None:
            return existing

        table = self._erp.location
        metadata = await self._location_metadata()
        location_id = await self._repository.next_location_id()
        values: Dict[str, Any] = {
            table.id: location_id,
            table.postal_code: postal_code,
            table.city: city,
        }
        if not is_empty(address.land) and metadata.has_column(table.country):
            values[table.country] = address.land
        if metadata.has_column(table.type):
            values[table.type] = table.default_type
        row = self._mapper.map(values, metadata, label=f"{role} location")
        await self._repository.insert_row(metadata, row)
        LOGGER.info("Created location %s (%s %s)", location_id, postal_code, city)
        return location_id
