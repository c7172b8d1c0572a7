"""Configuration loading for kwp-sync."""

from __future__ import annotations

import os
import re
from typing import Optional

from dotenv import load_dotenv
from sqlalchemy.engine import URL

from .models import (DEFAULT_CLONE_BATCH_SIZE, DEFAULT_DB_CONNECT_TIMEOUT,
                     DEFAULT_ODBC_DRIVER, DEFAULT_QUEUE_PAGE_SIZE,
                     DEFAULT_QUEUE_POLL_INTERVAL, DEFAULT_QUEUE_TABLE,
                     INSERT_STRATEGIES, STRATEGY_DIRECT, CloneConfig,
                     DatabaseConfig, InsertConfig, QueueConfig,
                     SupabaseConfig, SyncConfig)


class ConfigError(RuntimeError):
    """Raised when the environment does not describe a usable configuration."""


def _int(value: Optional[str], default: int) -> int:
    try:
        return int(value) if value is not None else default
    except ValueError:
        return default


def _float(value: Optional[str], default: float) -> float:
    try:
        return float(value) if value is not None else default
    except ValueError:
        return default


def _flag(value: Optional[str], default: bool) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _require(*names: str) -> None:
    missing = [name for name in names if not os.getenv(name)]
    if missing:
        raise ConfigError(f"Missing env vars: {', '.join(missing)}")


def mssql_url(
    server: str,
    database: str,
    user: str,
    password: str,
    port: Optional[int] = None,
    driver: str = DEFAULT_ODBC_DRIVER,
) -> str:
    """Compose an ``mssql+aioodbc`` URL.

    ``server`` may carry a named instance (``HOST\\INSTANCE``); doubled
    backslashes from shell escaping are collapsed.
    """
    host = re.sub(r"\\\\+", r"\\", server)
    url = URL.create(
        "mssql+aioodbc",
        username=user,
        password=password,
        host=host,
        port=port,
        database=database,
        query={
            "driver": driver,
            "Encrypt": "no",
            "TrustServerCertificate": "yes",
        },
    )
    return url.render_as_string(hide_password=False)


def _port(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if not raw:
        return None
    port = _int(raw, -1)
    if port <= 0:
        raise ConfigError(f"Invalid {name} value: {raw}")
    return port


def load_database_config() -> DatabaseConfig:
    _require("MSSQL_SERVER", "MSSQL_DB", "MSSQL_USER", "MSSQL_PASS")
    url = mssql_url(
        os.environ["MSSQL_SERVER"],
        os.environ["MSSQL_DB"],
        os.environ["MSSQL_USER"],
        os.environ["MSSQL_PASS"],
        port=_port("MSSQL_PORT"),
        driver=os.getenv("MSSQL_ODBC_DRIVER", DEFAULT_ODBC_DRIVER),
    )
    return DatabaseConfig(
        url=url,
        connect_timeout=_float(
            os.getenv("DATABASE_CONNECT_TIMEOUT"), DEFAULT_DB_CONNECT_TIMEOUT
        ),
    )


def load_supabase_config() -> Optional[SupabaseConfig]:
    url = os.getenv("SUPA_URL")
    key = os.getenv("SUPA_SERVICE_KEY")
    if not (url and key):
        return None
    return SupabaseConfig(url=url.rstrip("/"), service_key=key)


def load_clone_config() -> Optional[CloneConfig]:
    password = os.getenv("MSSQL_DOCKER_SA_PASSWORD")
    if not password:
        return None
    server = os.getenv("MSSQL_TARGET_SERVER", "127.0.0.1")
    port = _port("MSSQL_DOCKER_PORT") or 1433
    user = os.getenv("MSSQL_TARGET_USER", "sa")
    database = os.getenv("MSSQL_TARGET_DB") or f"{os.getenv('MSSQL_DB', 'KWP')}_CLONE"
    driver = os.getenv("MSSQL_ODBC_DRIVER", DEFAULT_ODBC_DRIVER)
    table_filter = os.getenv("CLONE_TABLE_FILTER") or None
    return CloneConfig(
        target=DatabaseConfig(
            url=mssql_url(server, database, user, password, port=port, driver=driver),
            connect_timeout=_float(
                os.getenv("DATABASE_CONNECT_TIMEOUT"), DEFAULT_DB_CONNECT_TIMEOUT
            ),
        ),
        target_master_url=mssql_url(
            server, "master", user, password, port=port, driver=driver
        ),
        target_database=database,
        drop_target=_flag(os.getenv("MSSQL_TARGET_DROP"), True),
        batch_size=max(1, _int(os.getenv("CLONE_BATCH_SIZE"), DEFAULT_CLONE_BATCH_SIZE)),
        schema_only=_flag(os.getenv("CLONE_SCHEMA_ONLY"), False),
        table_filter=table_filter,
        compare_counts=_flag(os.getenv("CLONE_COMPARE_COUNTS"), True),
        truncate_existing=_flag(os.getenv("CLONE_TRUNCATE_EXISTING"), False),
        drop_existing_tables=_flag(os.getenv("CLONE_DROP_EXISTING_TABLES"), False),
        continue_on_error=_flag(os.getenv("CLONE_CONTINUE_ON_ERROR"), False),
    )


def load_insert_config() -> InsertConfig:
    strategy = os.getenv("PROJECT_INSERT_STRATEGY", STRATEGY_DIRECT).strip().lower()
    if strategy not in INSERT_STRATEGIES:
        raise ConfigError(
            f"PROJECT_INSERT_STRATEGY must be one of {', '.join(INSERT_STRATEGIES)}"
        )
    return InsertConfig(
        strategy=strategy,
        template_projnr=os.getenv("PROJECT_TEMPLATE_PROJNR") or None,
    )


def load_config() -> SyncConfig:
    """Load the full configuration from the environment (and ``.env``)."""
    load_dotenv()
    return SyncConfig(
        database=load_database_config(),
        supabase=load_supabase_config(),
        queue=QueueConfig(
            table=os.getenv("QUEUE_TABLE", DEFAULT_QUEUE_TABLE),
            page_size=max(1, _int(os.getenv("QUEUE_PAGE_SIZE"), DEFAULT_QUEUE_PAGE_SIZE)),
            poll_interval=max(
                0.5, _float(os.getenv("QUEUE_POLL_INTERVAL"), DEFAULT_QUEUE_POLL_INTERVAL)
            ),
        ),
        insert=load_insert_config(),
        clone=load_clone_config(),
    )
