from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from .catalog import MetadataCatalog
from .models import DatabaseConfig

LOGGER = logging.getLogger("kwp_sync.db")


async def wait_for_engine(
    url: str,
    connect_timeout: float,
    label: str = "database",
    **engine_options,
) -> AsyncEngine:
    """Create an engine and retry ``SELECT 1`` until the server answers."""
    deadline = time.time() + connect_timeout
    attempts = 0
    while True:
        attempts += 1
        engine = create_async_engine(url, **engine_options)
        try:
            LOGGER.info("Connecting to %s (attempt %s)", label, attempts)
            async with engine.connect() as connection:
                await connection.execute(text("SELECT 1"))
            LOGGER.info("Connected to %s", label)
            return engine
        except DBAPIError as exc:
            await engine.dispose()
            if time.time() >= deadline:
                raise RuntimeError(f"Connection to {label} timed out") from exc
            LOGGER.warning("%s not ready yet (%s), retrying...", label.capitalize(), exc)
            await asyncio.sleep(min(2 * attempts, 10))


class DatabaseSession:
    """Own one SQLAlchemy engine and the metadata catalog built on it."""

    def __init__(self, config: DatabaseConfig, label: str = "database") -> None:
        self._config = config
        self._label = label
        self._engine: Optional[AsyncEngine] = None
        self._catalog: Optional[MetadataCatalog] = None

    async def open(self) -> AsyncEngine:
        if self._engine is not None:
            return self._engine
        self._engine = await wait_for_engine(
            self._config.url,
            self._config.connect_timeout,
            label=self._label,
        )
        self._catalog = MetadataCatalog(self._engine)
        return self._engine

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Engine not initialised; call open()")
        return self._engine

    @property
    def catalog(self) -> MetadataCatalog:
        if self._catalog is None:
            raise RuntimeError("Catalog not initialised; call open() first")
        return self._catalog

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._catalog = None

    async def __aenter__(self) -> "DatabaseSession":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.dispose()
