"""Request queue admitting proxied requests while upstream keys are free."""

from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any

from relaygate.context import RequestContext
from relaygate.logging import get_logger

logger = get_logger(__name__)


@dataclass
class QueueEntry:
    """A request waiting for its turn in a partition."""

    context: RequestContext
    partition: str
    ticket: asyncio.Future[None]
    enqueued_at: float = field(default_factory=time.time)


class RequestQueue:
    """Per-partition waiting lists drained by a dispatcher task.

    ``fair`` mode admits the oldest request first (by arrival time), ``random``
    picks uniformly. A partition is only drained while ``capacity`` reports an
    available upstream key for it.
    """

    def __init__(
        self,
        mode: str,
        capacity: Callable[[str], int],
        *,
        max_retries: int = 3,
        poll_interval: float = 0.05,
        rng: random.Random | None = None,
    ) -> None:
        self.mode = mode
        self.capacity = capacity
        self.max_retries = max_retries
        self.poll_interval = poll_interval
        self._rng = rng or random.Random()
        self._waiting: dict[str, list[QueueEntry]] = {}
        self._task: asyncio.Task[Any] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name="request-queue-dispatcher"
        )
        logger.info("request_queue_started", mode=self.mode)

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        for entries in self._waiting.values():
            for entry in entries:
                if not entry.ticket.done():
                    entry.ticket.cancel()
        self._waiting.clear()

    def enqueue(self, context: RequestContext, partition: str) -> QueueEntry:
        ticket: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        entry = QueueEntry(context=context, partition=partition, ticket=ticket)
        self._waiting.setdefault(partition, []).append(entry)
        return entry

    async def wait_turn(self, context: RequestContext, partition: str) -> None:
        """Block until the dispatcher admits this request."""
        entry = self.enqueue(context, partition)
        try:
            await entry.ticket
        except asyncio.CancelledError:
            self._discard(entry)
            raise

    def _discard(self, entry: QueueEntry) -> None:
        entries = self._waiting.get(entry.partition, [])
        if entry in entries:
            entries.remove(entry)

    def requeue(self, context: RequestContext) -> bool:
        """Count a retry; return False once the retry budget is spent."""
        context.retry_count += 1
        allowed = context.retry_count <= self.max_retries
        if not allowed:
            logger.warning(
                "request_retries_exhausted",
                request_id=context.request_id,
                retry_count=context.retry_count,
            )
        return allowed

    def _select(self, entries: list[QueueEntry]) -> QueueEntry:
        if self.mode == "random":
            return self._rng.choice(entries)
        return min(entries, key=lambda entry: entry.context.arrival_timestamp)

    def dispatch_once(self) -> int:
        """Admit at most one request per partition; return how many were admitted."""
        admitted = 0
        for partition, entries in self._waiting.items():
            live = [entry for entry in entries if not entry.ticket.done()]
            entries[:] = live
            if not live or self.capacity(partition) <= 0:
                continue
            entry = self._select(live)
            entries.remove(entry)
            entry.ticket.set_result(None)
            admitted += 1
        return admitted

    async def _run(self) -> None:
        while True:
            self.dispatch_once()
            await asyncio.sleep(self.poll_interval)

    def stats(self) -> dict[str, dict[str, Any]]:
        now = time.time()
        summary: dict[str, dict[str, Any]] = {}
        for partition, entries in self._waiting.items():
            waits = [now - entry.enqueued_at for entry in entries]
            summary[partition] = {
                "waiting": len(entries),
                "oldest_wait_seconds": round(max(waits), 3) if waits else 0.0,
            }
        return summary
