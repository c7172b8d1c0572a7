"""Names of the ERP tables and columns touched by the insert workflows."""

from __future__ import annotations

from dataclasses import dataclass
from importlib import resources
from typing import Any, Dict, Tuple

import yaml

from .models import DEFAULT_ERP_SCHEMA_RESOURCE

ROLE_PRIMARY = "primary"
ROLE_BILLING = "billing"
ROLE_SITE = "site"
ROLES: Tuple[str, ...] = (ROLE_PRIMARY, ROLE_BILLING, ROLE_SITE)


@dataclass(frozen=True)
class LocationTable:
    table: str
    id: str
    postal_code: str
    city: str
    country: str
    type: str
    default_type: Any = 0


@dataclass(frozen=True)
class AddressTable:
    table: str
    id: str
    name: str
    first_name: str
    street: str
    location: str
    email: str
    country: str


@dataclass(frozen=True)
class ProjectTable:
    table: str
    number: str
    display_name: str
    department: str
    case_owner: str
    status: str
    order_sum: str
    start_date: str
    created: str
    references: Dict[str, str]
    timestamps: Tuple[str, ...]


@dataclass(frozen=True)
class RoleSpec:
    name: str
    suffix: str


@dataclass(frozen=True)
class ErpSchema:
    schema: str
    location: LocationTable
    address: AddressTable
    project: ProjectTable
    roles: Dict[str, RoleSpec]

    def qualified(self, table: str) -> str:
        return f"{self.schema}.{table}"


def parse_erp_schema(data: Dict[str, Any]) -> ErpSchema:
    project = dict(data["project"])
    references = dict(project.pop("references"))
    timestamps = tuple(project.pop("timestamps", ()))
    missing_roles = [role for role in ROLES if role not in references]
    if missing_roles:
        raise ValueError(f"project.references lacks roles: {', '.join(missing_roles)}")
    return ErpSchema(
        schema=data.get("schema", "dbo"),
        location=LocationTable(**data["location"]),
        address=AddressTable(**data["address"]),
        project=ProjectTable(references=references, timestamps=timestamps, **project),
        roles={
            name: RoleSpec(name=name, **data["roles"][name]) for name in ROLES
        },
    )


def load_erp_schema(resource: str = DEFAULT_ERP_SCHEMA_RESOURCE) -> ErpSchema:
    with (
        resources.files("kwp_sync")
        .joinpath(resource)
        .open("r", encoding="utf-8") as fh
    ):
        return parse_erp_schema(yaml.safe_load(fh))
