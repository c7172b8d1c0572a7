"""Project sync between the ERP and the Supabase ``projekt`` table."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncEngine

from .catalog import ColumnMeta, quote_ident
from .coercion import bind_type, coerce_value, ddl_type, is_empty, isoformat
from .errors import CoercionError
from .models import DEFAULT_PROJECT_TABLE, DEFAULT_PULL_BATCH_SIZE
from .supabase import SupabaseClient

LOGGER = logging.getLogger("kwp_sync.sync")

DEFAULT_STATUS = "Auftrag nicht vergeben"
STATUS_LABELS = {
    (12, 99, 8): "Auftrag eingegangen",
    (5, 99, 1): "Bauvorh. wird nicht ausgeführt",
    (6, 99, 2): "Bauvorh. neu ausgeschrieben",
    (7, 99, 3): "Bauvorhmit Ersatzangebot",
    (3, 99, 1): "Auftrag abgeschlossen",
    (3, 99, 9): "Auftrag abgeschlossen",
    (0, 99, 0): "Auftrag noch nicht vergeben",
    (12, 99, 7): "Auftrag zugesagt",
    (99, 1, 8): "Kostensammler",
    (4, 99, 1): "Auftrag nicht erhalten",
    (8, 99, 4): "Auftragsvergabe zurückgestellt",
    (9, 99, 5): "Auftrag nicht erhalten, zu teuer",
    (10, 99, 6): "Auftrag nicht erhalten, sonstige Gründe",
}

PULL_SQL = text(
    """
    SELECT
      p.ProjNr, p.ProjBezeichnung, p.ProjAdr, p.RechAdr, p.BauHrAdr,
      p.AbtNr, p.SachBearb, p.AuftragsSumme, p.Beginn,
      p.AAuftragStatus, p.BAuftragStatus, p.AuftragStatus,
      CONCAT(pa.Name, ' ', pa.Vorname, ', ', pa.Strasse, ', ', po.PLZ, ' ', po.Ort) AS ProjInfos,
      CONCAT(ra.Name, ' ', ra.Vorname, ', ', ra.Strasse, ', ', ro.PLZ, ' ', ro.Ort) AS RechInfos,
      CONCAT(ba.Name, ' ', ba.Vorname, ', ', ba.Strasse, ', ', bo.PLZ, ' ', bo.Ort) AS BauHrInfos,
      pa.Vorname, pa.Name, pa.Strasse, po.Ort, po.PLZ, pa.RechnungsMail
    FROM dbo.Projekt p
    LEFT JOIN dbo.adrAdressen pa ON p.ProjAdr = pa.AdrNrGes
    LEFT JOIN dbo.adrOrte po ON pa.Ort = po.OrtID
    LEFT JOIN dbo.adrAdressen ra ON p.RechAdr = ra.AdrNrGes
    LEFT JOIN dbo.adrOrte ro ON ra.Ort = ro.OrtID
    LEFT JOIN dbo.adrAdressen ba ON p.BauHrAdr = ba.AdrNrGes
    LEFT JOIN dbo.adrOrte bo ON ba.Ort = bo.OrtID
    WHERE p.ProjNr IS NOT NULL
    ORDER BY p.ProjNr
    """
)

PULL_FIELDS = {
    "projbezeichnung": "ProjBezeichnung",
    "projadr": "ProjAdr",
    "rechadr": "RechAdr",
    "bauhradr": "BauHrAdr",
    "abtnr": "AbtNr",
    "sachbearb": "SachBearb",
    "auftragssumme": "AuftragsSumme",
    "projinfos": "ProjInfos",
    "rechinfos": "RechInfos",
    "bauhrinfos": "BauHrInfos",
    "vorname": "Vorname",
    "name": "Name",
    "strasse": "Strasse",
    "ort": "Ort",
    "plz": "PLZ",
    "rechnungsmail": "RechnungsMail",
}

PUSH_TABLE = "#tmp_proj"
PUSH_COLUMNS = (
    ColumnMeta(name="ProjNr", native_type="nvarchar", max_length=50, is_nullable=False),
    ColumnMeta(name="ProjBezeichnung", native_type="nvarchar", max_length=255),
    ColumnMeta(name="ProjAdr", native_type="nvarchar", max_length=50),
    ColumnMeta(name="RechAdr", native_type="nvarchar", max_length=50),
    ColumnMeta(name="BauHrAdr", native_type="nvarchar", max_length=50),
    ColumnMeta(name="AbtNr", native_type="int"),
    ColumnMeta(name="SachBearb", native_type="nvarchar", max_length=50),
    ColumnMeta(name="AuftragsSumme", native_type="numeric", precision=18, scale=2),
    ColumnMeta(name="Beginn", native_type="datetimeoffset", scale=7),
)


def map_status(a: Any, b: Any, c: Any) -> str:
    """Translate the three ERP order status codes into the CRM label."""
    try:
        key = (int(a), int(b), int(c))
    except (TypeError, ValueError):
        return DEFAULT_STATUS
    return STATUS_LABELS.get(key, DEFAULT_STATUS)


def build_pull_row(record: Mapping[str, Any]) -> Dict[str, Any]:
    row: Dict[str, Any] = {
        "projnr": str(record["ProjNr"]).strip(),
        "statusse": map_status(
            record.get("AAuftragStatus"),
            record.get("BAuftragStatus"),
            record.get("AuftragStatus"),
        ),
        "beginn": isoformat(record.get("Beginn")),
    }
    for field, column in PULL_FIELDS.items():
        row[field] = isoformat(record.get(column))
    return row


async def pull_projects(
    engine: AsyncEngine,
    supabase: SupabaseClient,
    table: str = DEFAULT_PROJECT_TABLE,
    batch_size: int = DEFAULT_PULL_BATCH_SIZE,
) -> int:
    """Upsert every ERP project into Supabase, ``batch_size`` rows per request."""
    total = 0
    async with engine.connect() as conn:
        result = await conn.stream(PULL_SQL)
        async for partition in result.mappings().partitions(batch_size):
            chunk = [build_pull_row(record) for record in partition]
            await supabase.upsert(table, chunk, on_conflict="projnr")
            total += len(chunk)
            LOGGER.debug("Pulled %s projects so far", total)
    LOGGER.info("Pulled %s projects into %s", total, table)
    return total


def normalize_push_row(item: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    """Coerce one CRM row onto the push columns; ``None`` when it has no projnr."""
    lowered = {str(key).lower(): value for key, value in item.items()}
    if is_empty(lowered.get("projnr")):
        return None
    projnr = str(lowered["projnr"]).strip()
    row: Dict[str, Any] = {}
    for column in PUSH_COLUMNS:
        raw = lowered.get(column.name.lower())
        try:
            row[column.name] = coerce_value(raw, column)
        except CoercionError as exc:
            raise exc.tagged(column.name.lower(), f"push row {projnr}") from exc
    row["ProjNr"] = projnr
    return row


def _push_statements():
    names = [column.name for column in PUSH_COLUMNS]
    definitions = ",\n  ".join(
        f"{quote_ident(column.name)} {ddl_type(column)} "
        f"{'PRIMARY KEY' if column.name == 'ProjNr' else 'NULL'}"
        for column in PUSH_COLUMNS
    )
    create = text(
        f"IF OBJECT_ID('tempdb..{PUSH_TABLE}') IS NOT NULL DROP TABLE {PUSH_TABLE};\n"
        f"CREATE TABLE {PUSH_TABLE} (\n  {definitions}\n)"
    )
    insert = text(
        f"INSERT INTO {PUSH_TABLE} ({', '.join(quote_ident(name) for name in names)}) "
        f"VALUES ({', '.join(':' + name for name in names)})"
    ).bindparams(*[bindparam(column.name, type_=bind_type(column)) for column in PUSH_COLUMNS])
    updates = ",\n      ".join(
        f"{quote_ident(name)} = s.{quote_ident(name)}" for name in names if name != "ProjNr"
    )
    merge = text(
        f"""
        MERGE dbo.Projekt AS t
        USING {PUSH_TABLE} AS s ON t.ProjNr = s.ProjNr
        WHEN MATCHED THEN UPDATE SET
          {updates}
        WHEN NOT MATCHED THEN INSERT ({', '.join(quote_ident(name) for name in names)})
        VALUES ({', '.join('s.' + quote_ident(name) for name in names)});
        """
    )
    drop = text(f"DROP TABLE {PUSH_TABLE}")
    return create, insert, merge, drop


async def push_projects(engine: AsyncEngine, items: Iterable[Mapping[str, Any]]) -> int:
    """Merge CRM project rows into ``Projekt`` (update matched, insert new)."""
    rows: Dict[str, Dict[str, Any]] = {}
    for item in items:
        row = normalize_push_row(item)
        if row is None:
            LOGGER.debug("Skipping push row without projnr")
            continue
        # The temp table keys on ProjNr; the last row for a project wins.
        rows[row["ProjNr"]] = row
    if not rows:
        return 0

    create, insert, merge, drop = _push_statements()
    batch: List[Dict[str, Any]] = list(rows.values())
    async with engine.begin() as conn:
        await conn.execute(create)
        await conn.execute(insert, batch)
        await conn.execute(merge)
        await conn.execute(drop)
    LOGGER.info("Pushed %s projects into Projekt", len(batch))
    return len(batch)
