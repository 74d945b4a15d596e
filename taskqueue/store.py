from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp

from taskqueue.models import Task

log = logging.getLogger(__name__)


class StoreWriteError(RuntimeError):
    pass


class TaskStoreClient:
    """Task queue access over the PostgREST HTTP interface.

    ``claim`` is the only coordination point between workers: a conditional
    ``UPDATE ... WHERE id = ? AND status = 'pending'`` whose affected row count
    decides the winner.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        table: str = "ai_tasks",
        schema: str = "public",
        timeout_s: float = 10.0,
        finalize_attempts: int = 3,
        finalize_backoff_s: float = 1.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._endpoint = f"{base_url.rstrip('/')}/rest/v1/{table}"
        self._api_key = api_key
        self._schema = schema
        self._timeout_s = timeout_s
        self._finalize_attempts = max(1, finalize_attempts)
        self._finalize_backoff_s = finalize_backoff_s
        self._http_session = session
        self._owns_session = session is None

    @property
    def endpoint(self) -> str:
        return self._endpoint

    async def _get_http_session(self) -> aiohttp.ClientSession:
        if self._http_session is None or self._http_session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout_s)
            self._http_session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._http_session

    async def close(self) -> None:
        if self._http_session is not None and self._owns_session:
            await self._http_session.close()
        self._http_session = None

    def _headers(self, *, prefer: str | None = None) -> dict[str, str]:
        headers = {
            "apikey": self._api_key,
            "Authorization": f"Bearer {self._api_key}",
            "Accept-Profile": self._schema,
            "Content-Profile": self._schema,
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _request(
        self,
        method: str,
        params: dict[str, str],
        payload: dict[str, Any] | None = None,
        *,
        prefer: str | None = None,
    ) -> list[dict[str, Any]]:
        session = await self._get_http_session()
        try:
            async with session.request(
                method,
                self._endpoint,
                params=params,
                json=payload,
                headers=self._headers(prefer=prefer),
            ) as resp:
                text = await resp.text()
                if resp.status >= 400:
                    raise StoreWriteError(f"Store {method} {resp.status}: {text[:500]}")
                if not text.strip():
                    return []
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise StoreWriteError(f"Store {method} failed: {type(exc).__name__}: {exc}") from exc
        if isinstance(data, dict):
            return [data]
        if not isinstance(data, list):
            return []
        return [row for row in data if isinstance(row, dict)]

    async def claim(self, task_id: str) -> bool:
        """Move ``task_id`` from pending to processing; ``True`` only for the winner."""
        try:
            rows = await self._request(
                "PATCH",
                {"id": f"eq.{task_id}", "status": "eq.pending"},
                {"status": "processing"},
                prefer="return=representation",
            )
        except StoreWriteError as exc:
            log.warning("Claim of task %s failed: %s", task_id, exc)
            return False
        if len(rows) != 1:
            log.debug("Task %s already claimed or gone (%d rows)", task_id, len(rows))
            return False
        log.info("Claimed task %s", task_id)
        return True

    async def list_pending(self, *, limit: int = 1) -> list[Task]:
        rows = await self._request(
            "GET",
            {
                "select": "id,prompt,status,response",
                "status": "eq.pending",
                "limit": str(max(1, limit)),
            },
        )
        tasks: list[Task] = []
        for row in rows:
            task = Task.from_record(row)
            if task is not None:
                tasks.append(task)
        return tasks

    async def finalize(self, task: Task) -> None:
        if not task.is_terminal:
            raise ValueError(f"Task {task.id} is not terminal: {task.status}")
        payload = {"status": task.status, "response": task.response}
        last_error: StoreWriteError | None = None
        for attempt in range(1, self._finalize_attempts + 1):
            try:
                await self._request(
                    "PATCH",
                    {"id": f"eq.{task.id}"},
                    payload,
                    prefer="return=minimal",
                )
            except StoreWriteError as exc:
                last_error = exc
                log.warning(
                    "Finalize of task %s failed (attempt %d/%d): %s",
                    task.id,
                    attempt,
                    self._finalize_attempts,
                    exc,
                )
                if attempt < self._finalize_attempts:
                    await asyncio.sleep(self._finalize_backoff_s * 2 ** (attempt - 1))
                continue
            log.info("Task %s finalized as %s", task.id, task.status)
            return
        assert last_error is not None
        raise last_error
