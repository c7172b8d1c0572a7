"""Error kinds raised by the sync core."""

from __future__ import annotations

from typing import Iterable, Optional


class SyncError(Exception):
    """Base exception for all kwp-sync failures."""


class CatalogError(SyncError):
    """Raised when table or column metadata cannot be loaded."""


class CopyError(SyncError):
    """Raised when a table copy aborts."""

    def __init__(self, table: str, message: str) -> None:
        super().__init__(f"Copy of {table} failed: {message}")
        self.table = table


class ValidationError(SyncError):
    """Base class for payload validation failures."""


class UnknownFieldError(ValidationError):
    """Raised when a payload key does not match any column of the target table."""

    def __init__(self, label: str, key: str) -> None:
        super().__init__(f"{label}: unknown field '{key}'")
        self.label = label
        self.key = key


class NotInsertableError(ValidationError):
    """Raised when a payload addresses an identity, computed or reserved column."""

    def __init__(self, label: str, key: str, column: str) -> None:
        super().__init__(f"{label}: column '{column}' (field '{key}') is not insertable")
        self.label = label
        self.key = key
        self.column = column


class MissingRequiredFieldError(ValidationError):
    """Raised when required fields are absent after mapping."""

    def __init__(self, label: str, fields: Iterable[str]) -> None:
        self.label = label
        self.fields = tuple(fields)
        super().__init__(
            f"{label}: missing required field(s): {', '.join(self.fields)}"
        )


class CoercionError(ValidationError):
    """Raised when a value cannot be converted for its column."""

    def __init__(self, field: str, detail: str, label: Optional[str] = None) -> None:
        self.field = field
        self.detail = detail
        self.label = label
        prefix = f"{label}: " if label else ""
        super().__init__(f"{prefix}field '{field}' {detail}")

    def tagged(self, field: str, label: str) -> "CoercionError":
        """Return a copy of this error attributed to ``field`` within ``label``."""
        return type(self)(field, self.detail, label=label)


class ValueTooLongError(CoercionError):
    """Raised when a string exceeds the declared column length."""


class NotANumberError(CoercionError):
    """Raised when a numeric column receives something that is not a finite number."""


class AmbiguousPayloadError(ValidationError):
    """Raised when two mutually exclusive payload shapes are supplied together."""


class MissingAddressFieldError(ValidationError):
    """Raised when postal code or city is missing for a new location."""

    def __init__(self, role: str, field: str) -> None:
        super().__init__(f"{role} address: '{field}' is required to create a location")
        self.role = role
        self.field = field


class AddressTooLongError(ValidationError):
    """Raised when a supplied or generated address id exceeds the column length."""

    def __init__(self, address_id: str, max_length: int) -> None:
        super().__init__(
            f"Address id '{address_id}' exceeds the maximum length of {max_length}"
        )
        self.address_id = address_id
        self.max_length = max_length


class PayloadValidationError(ValidationError):
    """Raised when the queue payload does not match the expected shape."""


class AddressReferenceMismatchError(SyncError):
    """Raised when an explicit address reference disagrees with the resolved key."""

    def __init__(self, column: str, supplied: str, resolved: str) -> None:
        super().__init__(
            f"{column}: payload references '{supplied}' but the address resolved to '{resolved}'"
        )
        self.column = column
        self.supplied = supplied
        self.resolved = resolved


class TemplateNotFoundError(SyncError):
    """Raised when no template project row is available for cloning."""


class SupabaseError(SyncError):
    """Raised when the Supabase REST API rejects a request."""


class ResourceNotFoundError(SupabaseError):
    """Raised when the Supabase REST API returns HTTP 404."""
