"""Prompt logging: an asyncio batch writer in front of a SQLite store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from contextlib import suppress
from threading import Lock
from types import TracebackType
from typing import Any

from relaygate.logging import get_logger
from relaygate.models import PromptLogEntry

logger = get_logger(__name__)


class PromptLogStore:
    """Append-only prompt log backed by SQLite."""

    def __init__(self, db_path: str) -> None:
        conn = sqlite3.connect(db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        self.conn = conn
        self._lock = Lock()
        self._closed = False
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS prompts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    provider TEXT NOT NULL,
                    model TEXT,
                    endpoint TEXT NOT NULL,
                    prompt TEXT NOT NULL,
                    response TEXT NOT NULL,
                    request_id TEXT
                )
                """
            )
            self.conn.commit()

    def append_many(self, entries: list[PromptLogEntry]) -> None:
        rows = [
            (
                entry.timestamp.isoformat(),
                entry.provider,
                entry.model,
                entry.endpoint,
                json.dumps(entry.prompt, default=str),
                entry.response,
                entry.request_id,
            )
            for entry in entries
        ]
        with self._lock:
            self.conn.executemany(
                """
                INSERT INTO prompts
                    (timestamp, provider, model, endpoint, prompt, response, request_id)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
            self.conn.commit()

    def query(self, limit: int = 100) -> list[PromptLogEntry]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM prompts ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [
            PromptLogEntry(
                timestamp=row["timestamp"],
                provider=row["provider"],
                model=row["model"],
                endpoint=row["endpoint"],
                prompt=json.loads(row["prompt"]),
                response=row["response"],
                request_id=row["request_id"],
            )
            for row in rows
        ]

    def count(self) -> int:
        with self._lock:
            row = self.conn.execute("SELECT COUNT(*) FROM prompts").fetchone()
        return int(row[0])

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self.conn.close()
            self._closed = True

    def __enter__(self) -> PromptLogStore:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


class PromptLogQueue:
    """Buffers prompt entries and flushes them in batches off the request path."""

    def __init__(
        self,
        store: PromptLogStore,
        *,
        batch_size: int = 25,
        flush_interval: float = 5.0,
        max_pending: int | None = None,
    ) -> None:
        self.store = store
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        # Backlog kept across failed flushes; the oldest entries go first.
        self.max_pending = max_pending if max_pending is not None else batch_size
        self._pending: list[PromptLogEntry] = []
        self._task: asyncio.Task[Any] | None = None
        self._wake = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name="prompt-log-flusher"
        )
        logger.info("prompt_log_started", batch_size=self.batch_size)

    def enqueue(self, entry: PromptLogEntry) -> None:
        self._pending.append(entry)
        if len(self._pending) >= self.batch_size:
            self._wake.set()

    async def flush(self) -> int:
        """Write every pending entry; return how many were written."""
        batch, self._pending = self._pending, []
        if not batch:
            return 0
        try:
            await asyncio.to_thread(self.store.append_many, batch)
        except Exception as exc:
            logger.error("prompt_log_flush_failed", error=str(exc), entries=len(batch))
            retained = batch + self._pending
            dropped = len(retained) - self.max_pending
            if dropped > 0:
                logger.warning("prompt_log_entries_dropped", count=dropped)
                retained = retained[dropped:]
            self._pending = retained
            return 0
        return len(batch)

    async def _run(self) -> None:
        while True:
            with suppress(TimeoutError):
                await asyncio.wait_for(self._wake.wait(), timeout=self.flush_interval)
            self._wake.clear()
            await self.flush()

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        await self.flush()
        self.store.close()
