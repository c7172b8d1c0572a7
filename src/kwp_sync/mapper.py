"""Map untyped payloads onto a table's columns using live metadata."""

from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping, Optional

from .catalog import TableMetadata
from .coercion import coerce_value
from .errors import (AmbiguousPayloadError, CoercionError,
                     MissingRequiredFieldError, NotInsertableError,
                     UnknownFieldError)


class PayloadMapper:
    """Turn a key/value payload into a validated column -> value map.

    Mapping is a pure function of the payload and the table snapshot: the
    payload is not modified and no I/O happens here.
    """

    def map(
        self,
        payload: Mapping[str, Any],
        metadata: TableMetadata,
        allowed_extra_keys: Iterable[str] = (),
        label: Optional[str] = None,
        deferred_columns: Iterable[str] = (),
    ) -> Dict[str, Any]:
        label = label or metadata.display_name
        extras = {key.lower() for key in allowed_extra_keys}
        row: Dict[str, Any] = {}
        sources: Dict[str, str] = {}

        for key, raw in payload.items():
            if key.lower() in extras:
                continue
            column = metadata.column(key)
            if column is None:
                raise UnknownFieldError(label, key)
            if not column.is_insertable:
                raise NotInsertableError(label, key, column.name)
            if column.name in sources:
                raise AmbiguousPayloadError(
                    f"{label}: fields '{sources[column.name]}' and '{key}' both map to column '{column.name}'"
                )
            try:
                row[column.name] = coerce_value(raw, column)
            except CoercionError as exc:
                raise exc.tagged(key, label) from exc
            sources[column.name] = key

        self.check_required(row, metadata, label=label, deferred_columns=deferred_columns)
        return row

    @staticmethod
    def check_required(
        row: Mapping[str, Any],
        metadata: TableMetadata,
        label: Optional[str] = None,
        deferred_columns: Iterable[str] = (),
    ) -> None:
        """Raise if a NOT NULL column without default has no value in ``row``."""
        deferred = {name.lower() for name in deferred_columns}
        present = {name.lower() for name, value in row.items() if value is not None}
        missing = [
            column.name
            for column in metadata.required_columns
            if column.name.lower() not in present and column.name.lower() not in deferred
        ]
        if missing:
            raise MissingRequiredFieldError(label or metadata.display_name, missing)
