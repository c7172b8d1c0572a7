"""Consume the Supabase project queue and insert projects into the ERP."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncEngine

from .erp import ErpSchema, load_erp_schema
from .errors import PayloadValidationError, SyncError
from .models import InsertConfig, QueueConfig
from .project import STATUS_EXISTS, InsertResult, insert_project
from .supabase import SupabaseClient

LOGGER = logging.getLogger("kwp_sync.queue")

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_DONE = "done"
STATUS_ERROR = "error"
MAX_ERROR_LENGTH = 2000


class QueueItem(BaseModel):
    id: Any
    status: str = STATUS_PENDING
    payload: Any = None
    attempt_count: int = 0
    processed_at: Optional[str] = None
    error: Optional[str] = None
    created_at: Optional[str] = None

    model_config = ConfigDict(extra="allow")

    def payload_object(self) -> Dict[str, Any]:
        payload = self.payload
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError as exc:
                raise PayloadValidationError(f"Queue item {self.id}: payload is not JSON") from exc
        if not isinstance(payload, dict):
            raise PayloadValidationError(f"Queue item {self.id}: payload must be an object")
        return payload


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class QueueRepository:
    """Status transitions of queue rows stored in Supabase."""

    def __init__(self, client: SupabaseClient, config: QueueConfig) -> None:
        self._client = client
        self._config = config

    async def fetch_pending(self, limit: Optional[int] = None) -> List[QueueItem]:
        rows = await self._client.select(
            self._config.table,
            filters={"status": f"eq.{STATUS_PENDING}"},
            order="created_at.asc",
            limit=limit or self._config.page_size,
        )
        return [QueueItem.model_validate(row) for row in rows]

    async def mark_processing(self, item: QueueItem) -> bool:
        """Claim ``item``; returns ``False`` when another worker got it first."""
        updated = await self._client.update(
            self._config.table,
            {"status": STATUS_PROCESSING, "attempt_count": item.attempt_count + 1},
            {"id": f"eq.{item.id}", "status": f"eq.{STATUS_PENDING}"},
        )
        return bool(updated)

    async def mark_done(self, item: QueueItem) -> None:
        await self._client.update(
            self._config.table,
            {"status": STATUS_DONE, "processed_at": _now(), "error": None},
            {"id": f"eq.{item.id}"},
        )

    async def mark_error(self, item: QueueItem, message: str) -> None:
        await self._client.update(
            self._config.table,
            {"status": STATUS_ERROR, "processed_at": _now(), "error": message[:MAX_ERROR_LENGTH]},
            {"id": f"eq.{item.id}"},
        )


@dataclass
class ConsumerStats:
    fetched: int = 0
    inserted: int = 0
    existing: int = 0
    failed: int = 0
    skipped: int = 0


InsertFn = Callable[..., Awaitable[InsertResult]]


class QueueConsumer:
    """Process pending queue items one at a time.

    Each item is its own unit of work; a failing item is marked ``error``
    and the loop carries on with the next one.
    """

    def __init__(
        self,
        queue: QueueRepository,
        engine: AsyncEngine,
        catalog,
        config: InsertConfig,
        erp: Optional[ErpSchema] = None,
        insert: InsertFn = insert_project,
    ) -> None:
        self._queue = queue
        self._engine = engine
        self._catalog = catalog
        self._config = config
        self._erp = erp or load_erp_schema()
        self._insert = insert

    async def _write_status(self, item: QueueItem, write: Awaitable[None]) -> None:
        try:
            await write
        except SyncError as exc:
            LOGGER.error("Could not record status of queue item %s: %s", item.id, exc)

    async def run_once(self) -> ConsumerStats:
        stats = ConsumerStats()
        items = await self._queue.fetch_pending()
        stats.fetched = len(items)
        for item in items:
            try:
                claimed = await self._queue.mark_processing(item)
            except SyncError as exc:
                LOGGER.error("Could not claim queue item %s: %s", item.id, exc)
                stats.skipped += 1
                continue
            if not claimed:
                LOGGER.debug("Queue item %s claimed elsewhere", item.id)
                stats.skipped += 1
                continue
            try:
                result = await self._insert(
                    self._engine,
                    self._catalog,
                    item.payload_object(),
                    self._config,
                    erp=self._erp,
                )
            except SyncError as exc:
                LOGGER.warning("Queue item %s rejected: %s", item.id, exc)
                await self._write_status(item, self._queue.mark_error(item, str(exc)))
                stats.failed += 1
                continue
            except Exception as exc:
                LOGGER.exception("Queue item %s failed", item.id)
                await self._write_status(
                    item, self._queue.mark_error(item, f"{type(exc).__name__}: {exc}")
                )
                stats.failed += 1
                continue

            await self._write_status(item, self._queue.mark_done(item))
            if result.status == STATUS_EXISTS:
                stats.existing += 1
            else:
                stats.inserted += 1

        if stats.fetched:
            LOGGER.info(
                "Queue batch: %s inserted, %s existing, %s failed, %s skipped",
                stats.inserted,
                stats.existing,
                stats.failed,
                stats.skipped,
            )
        return stats

    async def run_forever(self, poll_interval: float) -> None:
        """Poll until cancelled.

        Sleeps when no item could be processed, including when Supabase is
        unreachable.
        """
        while True:
            try:
                stats = await self.run_once()
            except SyncError as exc:
                LOGGER.error("Queue poll failed: %s", exc)
                await asyncio.sleep(poll_interval)
                continue
            if stats.skipped == stats.fetched:
                await asyncio.sleep(poll_interval)
