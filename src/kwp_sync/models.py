from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

DEFAULT_ODBC_DRIVER = "ODBC Driver 18 for SQL Server"
DEFAULT_DB_CONNECT_TIMEOUT = 60.0
DEFAULT_SUPABASE_TIMEOUT = 30.0
DEFAULT_SUPABASE_MAX_RETRIES = 3
DEFAULT_SUPABASE_BACKOFF_FACTOR = 1.0
DEFAULT_SUPABASE_BACKOFF_MAX = 30.0
DEFAULT_QUEUE_TABLE = "projekt_queue"
DEFAULT_QUEUE_PAGE_SIZE = 25
DEFAULT_QUEUE_POLL_INTERVAL = 10.0
DEFAULT_PROJECT_TABLE = "projekt"
DEFAULT_PULL_BATCH_SIZE = 500
DEFAULT_CLONE_BATCH_SIZE = 1000
DEFAULT_ADDRESS_ID_LENGTH = 24
DEFAULT_ERP_SCHEMA_RESOURCE = "erp_schema.yaml"

STRATEGY_DIRECT = "direct"
STRATEGY_TEMPLATE = "template"
INSERT_STRATEGIES = (STRATEGY_DIRECT, STRATEGY_TEMPLATE)


@dataclass(frozen=True)
class DatabaseConfig:
    url: str
    connect_timeout: float = DEFAULT_DB_CONNECT_TIMEOUT


@dataclass(frozen=True)
class SupabaseConfig:
    url: str
    service_key: str
    timeout: float = DEFAULT_SUPABASE_TIMEOUT
    max_retries: int = DEFAULT_SUPABASE_MAX_RETRIES
    backoff_factor: float = DEFAULT_SUPABASE_BACKOFF_FACTOR
    backoff_max: float = DEFAULT_SUPABASE_BACKOFF_MAX
    project_table: str = DEFAULT_PROJECT_TABLE
    pull_batch_size: int = DEFAULT_PULL_BATCH_SIZE


@dataclass(frozen=True)
class QueueConfig:
    table: str = DEFAULT_QUEUE_TABLE
    page_size: int = DEFAULT_QUEUE_PAGE_SIZE
    poll_interval: float = DEFAULT_QUEUE_POLL_INTERVAL


@dataclass(frozen=True)
class InsertConfig:
    strategy: str = STRATEGY_DIRECT
    template_projnr: Optional[str] = None
    default_address_id_length: int = DEFAULT_ADDRESS_ID_LENGTH


@dataclass(frozen=True)
class CloneConfig:
    target: DatabaseConfig
    target_master_url: str
    target_database: str
    drop_target: bool = True
    batch_size: int = DEFAULT_CLONE_BATCH_SIZE
    schema_only: bool = False
    table_filter: Optional[str] = None
    compare_counts: bool = True
    truncate_existing: bool = False
    drop_existing_tables: bool = False
    continue_on_error: bool = False


@dataclass(frozen=True)
class SyncConfig:
    database: DatabaseConfig
    supabase: Optional[SupabaseConfig]
    queue: QueueConfig
    insert: InsertConfig
    clone: Optional[CloneConfig]
