"""Async PostgREST client for the Supabase side of the sync."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx

from .coercion import isoformat
from .errors import ResourceNotFoundError, SupabaseError
from .models import SupabaseConfig

LOGGER = logging.getLogger("kwp_sync.supabase")

RETRYABLE_STATUS = frozenset({408, 429})
PREVIEW_LENGTH = 500


def _json_default(value: Any) -> Any:
    converted = isoformat(value)
    if converted is value:
        return str(value)
    return converted


class _Backoff:
    """Exponential wait times between ``base`` and ``ceiling`` seconds."""

    def __init__(self, factor: float, ceiling: Optional[float]) -> None:
        self.base = max(factor, 0.0) or 1.0
        self.ceiling = ceiling if ceiling and ceiling > 0 else float("inf")
        self._current = self.base

    def next_wait(self) -> float:
        wait = min(self._current, self.ceiling)
        self._current = max(min(max(self._current, self.base) * 2, self.ceiling), self.base)
        return wait


class SupabaseClient:
    """Async HTTP client with retry and backoff logic for Supabase REST."""

    def __init__(
        self,
        config: SupabaseConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._headers = {
            "Accept": "application/json",
            "apikey": config.service_key,
            "Authorization": f"Bearer {config.service_key}",
        }

    async def __aenter__(self) -> "SupabaseClient":
        self._client = httpx.AsyncClient(
            timeout=self._config.timeout, transport=self._transport
        )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def select(
        self,
        table: str,
        filters: Optional[Mapping[str, str]] = None,
        order: Optional[str] = None,
        limit: Optional[int] = None,
        columns: str = "*",
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"select": columns}
        params.update(filters or {})
        if order:
            params["order"] = order
        if limit is not None:
            params["limit"] = str(limit)
        payload = await self._request("GET", table, params=params)
        if not isinstance(payload, list):
            raise SupabaseError(f"Select on {table} returned unexpected payload")
        return payload

    async def update(
        self,
        table: str,
        values: Mapping[str, Any],
        filters: Mapping[str, str],
    ) -> List[Dict[str, Any]]:
        if not filters:
            raise ValueError("Refusing to update without a filter")
        payload = await self._request(
            "PATCH",
            table,
            params=dict(filters),
            body=dict(values),
            prefer="return=representation",
        )
        return payload if isinstance(payload, list) else []

    async def upsert(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        on_conflict: str,
    ) -> None:
        if not rows:
            return
        await self._request(
            "POST",
            table,
            params={"on_conflict": on_conflict},
            body=[dict(row) for row in rows],
            prefer="resolution=merge-duplicates,return=minimal",
        )

    def _build_request(
        self,
        method: str,
        table: str,
        params: Optional[Mapping[str, Any]],
        body: Any,
        prefer: Optional[str],
    ) -> httpx.Request:
        headers = dict(self._headers)
        content = None
        if body is not None:
            headers["Content-Type"] = "application/json"
            content = json.dumps(body, default=_json_default)
        if prefer:
            headers["Prefer"] = prefer
        return self._client.build_request(
            method,
            f"{self._config.url.rstrip('/')}/rest/v1/{table}",
            headers=headers,
            params=dict(params or {}),
            content=content,
        )

    async def _request(
        self,
        method: str,
        table: str,
        params: Optional[Mapping[str, Any]] = None,
        body: Any = None,
        prefer: Optional[str] = None,
    ) -> Any:
        if self._client is None:
            raise RuntimeError("HTTP client is not ready")

        request = self._build_request(method, table, params, body, prefer)
        target = f"{method} {request.url.path}"
        max_attempts = max(1, self._config.max_retries + 1)
        backoff = _Backoff(self._config.backoff_factor, self._config.backoff_max)

        for attempt in range(1, max_attempts + 1):
            last_attempt = attempt == max_attempts
            LOGGER.debug("%s (attempt %s/%s)", target, attempt, max_attempts)
            try:
                response = await self._client.send(request)
            except httpx.RequestError as exc:
                if last_attempt:
                    raise SupabaseError(f"Network error for {target}: {exc}") from exc
                reason = f"network error ({exc})"
            else:
                status_code = response.status_code
                if status_code < 400:
                    return response.json() if response.content else None

                preview = response.text[:PREVIEW_LENGTH]
                if status_code == 404:
                    LOGGER.warning("Resource not found at %s (preview: %s)", target, preview)
                    raise ResourceNotFoundError(f"{table} not found: {preview}")
                if last_attempt or not (status_code >= 500 or status_code in RETRYABLE_STATUS):
                    LOGGER.error("HTTP %s for %s; response preview: %s", status_code, target, preview)
                    message = f"HTTP {status_code} for {target}"
                    if preview:
                        message += f"; response preview: {preview}"
                    raise SupabaseError(message)
                reason = f"HTTP {status_code}"

            wait_time = backoff.next_wait()
            LOGGER.warning(
                "%s for %s (attempt %s/%s). Retrying in %.1fs",
                reason,
                target,
                attempt,
                max_attempts,
                wait_time,
            )
            await asyncio.sleep(wait_time)

        raise SupabaseError(f"{target} failed after {max_attempts} attempts")
