"""Convert raw payload values into MSSQL-native Python values."""

from __future__ import annotations

import math
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from typing import Any

from dateutil import parser as dtparse
from sqlalchemy.dialects import mssql
from sqlalchemy.types import TypeEngine

from .catalog import ColumnMeta
from .errors import NotANumberError, ValueTooLongError

STRING_TYPES = frozenset(
    {"char", "varchar", "nchar", "nvarchar", "text", "ntext", "xml", "uniqueidentifier", "sysname"}
)
INTEGER_TYPES = frozenset({"tinyint", "smallint", "int", "bigint"})
DECIMAL_TYPES = frozenset({"decimal", "numeric", "money", "smallmoney"})
FLOAT_TYPES = frozenset({"float", "real"})
TEMPORAL_TYPES = frozenset(
    {"date", "datetime", "datetime2", "smalldatetime", "datetimeoffset", "time"}
)

TRUE_STRINGS = frozenset({"true", "1", "yes", "ja", "on"})
FALSE_STRINGS = frozenset({"false", "0", "no", "nein", "off"})


def is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _to_decimal(raw: Any, column: ColumnMeta) -> Decimal:
    if isinstance(raw, bool):
        raise NotANumberError(column.name, "expects a number, got a boolean")
    if isinstance(raw, Decimal):
        value = raw
    elif isinstance(raw, int):
        value = Decimal(raw)
    elif isinstance(raw, float):
        value = Decimal(str(raw))
    elif isinstance(raw, str):
        cleaned = raw.strip()
        if "," in cleaned and "." not in cleaned:
            cleaned = cleaned.replace(",", ".")
        try:
            value = Decimal(cleaned)
        except InvalidOperation:
            raise NotANumberError(column.name, f"is not a number: {raw!r}") from None
    else:
        raise NotANumberError(column.name, f"is not a number: {raw!r}")

    if not value.is_finite():
        raise NotANumberError(column.name, f"is not a finite number: {raw!r}")
    return value


def _to_bit(raw: Any, column: ColumnMeta) -> int:
    if isinstance(raw, bool):
        return int(raw)
    if isinstance(raw, str):
        lowered = raw.strip().lower()
        if lowered in TRUE_STRINGS:
            return 1
        if lowered in FALSE_STRINGS:
            return 0
    if isinstance(raw, (int, float, Decimal)):
        return 0 if _to_decimal(raw, column) == 0 else 1
    raise NotANumberError(column.name, f"expects a boolean or number, got {raw!r}")


def _to_text(raw: Any, column: ColumnMeta) -> str:
    if isinstance(raw, str):
        value = raw
    elif isinstance(raw, bool):
        value = "1" if raw else "0"
    else:
        value = str(raw)

    limit = column.max_length
    if limit is not None and limit > 0 and len(value) > limit:
        raise ValueTooLongError(
            column.name, f"exceeds maximum length {limit} ({len(value)} characters)"
        )
    return value


def _to_temporal(raw: Any, native_type: str) -> Any:
    if not isinstance(raw, str):
        return raw
    try:
        parsed = dtparse.isoparse(raw.strip())
    except ValueError:
        try:
            parsed = dtparse.parse(raw.strip(), dayfirst=True)
        except (ValueError, OverflowError):
            return raw
    if native_type == "date":
        return parsed.date()
    if native_type == "time":
        return parsed.time()
    return parsed


def coerce_value(raw: Any, column: ColumnMeta) -> Any:
    """Convert ``raw`` into the value bound for ``column``.

    Empty values always map to ``None``; NOT NULL enforcement happens in the
    payload mapper. Strings are never truncated.
    """
    if is_empty(raw):
        return None

    native_type = column.native_type
    if native_type in STRING_TYPES:
        return _to_text(raw, column)

    if native_type in INTEGER_TYPES:
        value = _to_decimal(raw, column)
        if value != value.to_integral_value():
            raise NotANumberError(column.name, f"expects an integer, got {raw!r}")
        return int(value)

    if native_type in DECIMAL_TYPES:
        return _to_decimal(raw, column)

    if native_type in FLOAT_TYPES:
        value = float(_to_decimal(raw, column))
        if not math.isfinite(value):
            raise NotANumberError(column.name, f"is not a finite number: {raw!r}")
        return value

    if native_type == "bit":
        return _to_bit(raw, column)

    if native_type in TEMPORAL_TYPES:
        return _to_temporal(raw, native_type)

    return raw


def _length(column: ColumnMeta):
    if column.max_length is None or column.max_length < 0:
        return None
    return column.max_length


def bind_type(column: ColumnMeta) -> TypeEngine:
    """Return the SQLAlchemy type used to bind parameters for ``column``."""
    native_type = column.native_type
    precision = column.precision
    scale = column.scale
    fractional = 7 if scale is None else scale

    if native_type == "bigint":
        return mssql.BIGINT()
    if native_type == "int":
        return mssql.INTEGER()
    if native_type == "smallint":
        return mssql.SMALLINT()
    if native_type == "tinyint":
        return mssql.TINYINT()
    if native_type == "bit":
        return mssql.BIT()
    if native_type in ("decimal", "numeric"):
        return mssql.DECIMAL(precision=precision or 18, scale=scale or 0)
    if native_type == "float":
        return mssql.FLOAT()
    if native_type == "real":
        return mssql.REAL()
    if native_type == "money":
        return mssql.MONEY()
    if native_type == "smallmoney":
        return mssql.SMALLMONEY()
    if native_type == "uniqueidentifier":
        return mssql.UNIQUEIDENTIFIER()
    if native_type == "date":
        return mssql.DATE()
    if native_type == "datetime":
        return mssql.DATETIME()
    if native_type == "smalldatetime":
        return mssql.SMALLDATETIME()
    if native_type == "datetime2":
        return mssql.DATETIME2(precision=fractional)
    if native_type == "datetimeoffset":
        return mssql.DATETIMEOFFSET(precision=fractional)
    if native_type == "time":
        return mssql.TIME(precision=fractional)
    if native_type == "varchar":
        return mssql.VARCHAR(_length(column))
    if native_type in ("nvarchar", "sysname"):
        return mssql.NVARCHAR(_length(column))
    if native_type == "char":
        return mssql.CHAR(_length(column))
    if native_type == "nchar":
        return mssql.NCHAR(_length(column))
    if native_type == "text":
        return mssql.VARCHAR(None)
    if native_type == "ntext":
        return mssql.NVARCHAR(None)
    if native_type == "xml":
        return mssql.XML()
    if native_type == "binary":
        return mssql.BINARY(_length(column))
    if native_type == "varbinary":
        return mssql.VARBINARY(_length(column))
    if native_type == "image":
        return mssql.VARBINARY(None)
    return mssql.NVARCHAR(None)


def ddl_type(column: ColumnMeta) -> str:
    """Render the column type for a CREATE TABLE statement."""
    native_type = column.native_type
    if native_type in ("nvarchar", "nchar", "varchar", "char", "varbinary", "binary"):
        if column.max_length is None or column.max_length == -1:
            return f"{native_type}(MAX)"
        return f"{native_type}({column.max_length})"
    if native_type in ("decimal", "numeric"):
        return f"{native_type}({column.precision},{column.scale or 0})"
    if native_type in ("datetime2", "datetimeoffset", "time"):
        return f"{native_type}({7 if column.scale is None else column.scale})"
    return native_type


def isoformat(value: Any) -> Any:
    """Serialise temporal and decimal values for JSON transport."""
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return value
