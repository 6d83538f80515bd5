"""Prompt log store and batch writer tests."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from structlog.testing import capture_logs

from relaygate.models import PromptLogEntry
from relaygate.prompt_log import PromptLogQueue, PromptLogStore


def _entry(index: int = 0) -> PromptLogEntry:
    return PromptLogEntry(
        provider="openai",
        model="gpt-4o",
        endpoint="/v1/chat/completions",
        prompt=[{"role": "user", "content": f"question {index}"}],
        response=f"answer {index}",
        request_id=f"rid-{index}",
    )


def test_store_round_trips_entries(tmp_path: Path) -> None:
    with PromptLogStore(str(tmp_path / "prompts.db")) as store:
        store.append_many([_entry(1), _entry(2)])
        assert store.count() == 2
        latest = store.query(limit=1)
    assert latest[0].response == "answer 2"
    assert latest[0].prompt == [{"role": "user", "content": "question 2"}]


@pytest.mark.asyncio
async def test_queue_flushes_pending_entries(tmp_path: Path) -> None:
    store = PromptLogStore(str(tmp_path / "prompts.db"))
    queue = PromptLogQueue(store, batch_size=10, flush_interval=60)
    queue.enqueue(_entry(1))
    queue.enqueue(_entry(2))
    assert queue.pending == 2

    assert await queue.flush() == 2
    assert queue.pending == 0
    assert store.count() == 2
    store.close()


@pytest.mark.asyncio
async def test_full_batch_wakes_flusher(tmp_path: Path) -> None:
    store = PromptLogStore(str(tmp_path / "prompts.db"))
    queue = PromptLogQueue(store, batch_size=2, flush_interval=60)
    queue.start()
    assert queue.running

    queue.enqueue(_entry(1))
    queue.enqueue(_entry(2))
    for _ in range(50):
        if store.count() == 2:
            break
        await asyncio.sleep(0.02)
    assert store.count() == 2
    await queue.stop()
    assert not queue.running


@pytest.mark.asyncio
async def test_stop_flushes_remaining_entries(tmp_path: Path) -> None:
    path = str(tmp_path / "prompts.db")
    queue = PromptLogQueue(PromptLogStore(path), batch_size=100, flush_interval=60)
    queue.start()
    queue.enqueue(_entry(1))
    await queue.stop()

    with PromptLogStore(path) as store:
        assert store.count() == 1


@pytest.mark.asyncio
async def test_failed_flush_keeps_entries(tmp_path: Path) -> None:
    store = PromptLogStore(str(tmp_path / "prompts.db"))
    queue = PromptLogQueue(store)
    queue.enqueue(_entry(1))

    def broken(entries) -> None:
        raise OSError("disk full")

    store.append_many = broken  # type: ignore[method-assign]
    assert await queue.flush() == 0
    assert queue.pending == 1
    store.close()


class UnwritableStore:
    def append_many(self, entries) -> None:
        raise OSError("read-only file system")

    def close(self) -> None:
        pass


@pytest.mark.asyncio
async def test_failing_store_backlog_is_bounded() -> None:
    queue = PromptLogQueue(UnwritableStore())  # type: ignore[arg-type]

    with capture_logs() as logs:
        for index in range(1000):
            queue.enqueue(_entry(index))
            await queue.flush()

    assert queue.pending <= queue.batch_size
    assert queue._pending[-1].request_id == "rid-999"
    failures = [entry for entry in logs if entry["event"] == "prompt_log_flush_failed"]
    assert max(entry["entries"] for entry in failures) <= queue.batch_size
    dropped = [entry for entry in logs if entry["event"] == "prompt_log_entries_dropped"]
    assert sum(entry["count"] for entry in dropped) == 1000 - queue.pending


@pytest.mark.asyncio
async def test_backlog_cap_drops_oldest_entries() -> None:
    queue = PromptLogQueue(UnwritableStore(), max_pending=3)  # type: ignore[arg-type]
    for index in range(5):
        queue.enqueue(_entry(index))

    assert await queue.flush() == 0
    assert [entry.request_id for entry in queue._pending] == ["rid-2", "rid-3", "rid-4"]
