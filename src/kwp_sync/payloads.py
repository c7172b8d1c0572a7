"""Queue payload models and shape parsing."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from .coercion import is_empty
from .erp import ROLE_BILLING, ROLE_PRIMARY, ROLE_SITE, AddressTable
from .errors import (AmbiguousPayloadError, MissingRequiredFieldError,
                     PayloadValidationError)

# Root-level keys that describe the primary address when no ``adresse``
# object is sent (the flat shape used by the Supabase ``projekt`` table).
FLAT_ADDRESS_KEYS = ("name", "vorname", "strasse", "plz", "ort", "rechnungsmail", "AdrNrGes", "land")
ROLE_PAYLOAD_KEYS = {
    ROLE_PRIMARY: "adresse",
    ROLE_BILLING: "rechnungAdresse",
    ROLE_SITE: "bauherrAdresse",
}


class AddressPayload(BaseModel):
    name: Optional[str] = None
    vorname: Optional[str] = None
    strasse: Optional[str] = None
    plz: Optional[str] = None
    ort: Optional[str] = None
    rechnungsmail: Optional[str] = None
    land: Optional[str] = None
    AdrNrGes: Optional[str] = None

    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    @property
    def explicit_id(self) -> Optional[str]:
        if is_empty(self.AdrNrGes):
            return None
        return self.AdrNrGes.strip()

    def address_columns(self, table: AddressTable) -> Dict[str, Any]:
        """Column values for the address row, excluding id and location."""
        values: Dict[str, Any] = {
            table.name: self.name,
            table.first_name: self.vorname,
            table.street: self.strasse,
            table.email: self.rechnungsmail,
        }
        if self.land is not None:
            values[table.country] = self.land
        for key, value in (self.model_extra or {}).items():
            if key != "sameAsAdresse":
                values[key] = value
        return {key: value for key, value in values.items() if value is not None}


class RoleAddressPayload(AddressPayload):
    sameAsAdresse: bool = True


class ProjectPayload(BaseModel):
    projnr: Optional[str] = None
    adresse: Optional[AddressPayload] = None
    rechnungAdresse: Optional[RoleAddressPayload] = None
    bauherrAdresse: Optional[RoleAddressPayload] = None

    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)


@dataclass(frozen=True)
class FlatAddress:
    """Primary address given as root-level payload fields."""

    address: AddressPayload


@dataclass(frozen=True)
class NestedAddress:
    """Primary address given as the ``adresse`` sub-object."""

    address: AddressPayload


PrimaryAddress = Union[FlatAddress, NestedAddress]


def parse_project_payload(raw: Mapping[str, Any]) -> ProjectPayload:
    if not isinstance(raw, Mapping):
        raise PayloadValidationError(
            f"Project payload must be an object, got {type(raw).__name__}"
        )
    try:
        return ProjectPayload.model_validate(dict(raw))
    except PydanticValidationError as exc:
        raise PayloadValidationError(f"Invalid project payload: {exc}") from exc


def flat_address_fields(raw: Mapping[str, Any]) -> Dict[str, Any]:
    lookup = {key.lower(): key for key in FLAT_ADDRESS_KEYS}
    found: Dict[str, Any] = {}
    for key, value in raw.items():
        canonical = lookup.get(key.lower())
        if canonical is not None and not is_empty(value):
            found[canonical] = value
    return found


def parse_primary_address(raw: Mapping[str, Any], payload: ProjectPayload) -> PrimaryAddress:
    """Decide between the flat and nested primary address shapes.

    Exactly one shape must be present.
    """
    flat = flat_address_fields(raw)
    nested = payload.adresse
    if flat and nested is not None:
        raise AmbiguousPayloadError(
            "Primary address given both as root-level fields "
            f"({', '.join(sorted(flat))}) and as 'adresse' object"
        )
    if nested is not None:
        return NestedAddress(nested)
    if flat:
        try:
            return FlatAddress(AddressPayload.model_validate(flat))
        except PydanticValidationError as exc:
            raise PayloadValidationError(f"Invalid root-level address: {exc}") from exc
    raise MissingRequiredFieldError("projekt", ["adresse"])


def role_payload(payload: ProjectPayload, role: str) -> Optional[RoleAddressPayload]:
    """Return the role's address object as sent, inheriting or not."""
    if role == ROLE_BILLING:
        return payload.rechnungAdresse
    if role == ROLE_SITE:
        return payload.bauherrAdresse
    raise ValueError(f"Role {role} has no inheritable address")


def role_address(payload: ProjectPayload, role: str) -> Optional[RoleAddressPayload]:
    """Return the role's own address, or ``None`` when it inherits the primary one."""
    candidate = role_payload(payload, role)
    if candidate is None or candidate.sameAsAdresse:
        return None
    return candidate


def project_extra_keys() -> tuple:
    """Payload keys that are not columns of the project table."""
    return tuple(ROLE_PAYLOAD_KEYS.values()) + FLAT_ADDRESS_KEYS
