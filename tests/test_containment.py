"""Crash containment tests."""

from __future__ import annotations

import asyncio
import sys
import threading

import pytest
from structlog.testing import capture_logs

from relaygate.containment import CrashContainment, FaultEvent


@pytest.fixture()
async def containment():
    guard = CrashContainment()
    guard.install()
    yield guard
    await guard.uninstall()


def _faults(logs: list[dict]) -> list[dict]:
    return [
        entry
        for entry in logs
        if entry["event"] in {"uncaught_exception", "unhandled_rejection"}
    ]


@pytest.mark.asyncio
async def test_unretrieved_task_exception_is_logged(containment: CrashContainment) -> None:
    loop = asyncio.get_running_loop()
    with capture_logs() as logs:
        loop.call_exception_handler(
            {
                "message": "Task exception was never retrieved",
                "exception": RuntimeError("lost in the background"),
                "future": loop.create_future(),
            }
        )
        await containment.flush()

    faults = _faults(logs)
    assert len(faults) == 1
    assert faults[0]["event"] == "unhandled_rejection"
    assert faults[0]["error"] == "lost in the background"
    assert "RuntimeError" in faults[0]["stack"]
    assert faults[0]["hint"] == "Please report this error trace."


@pytest.mark.asyncio
async def test_failing_callback_is_logged(containment: CrashContainment) -> None:
    loop = asyncio.get_running_loop()

    def explode() -> None:
        raise ValueError("callback failed")

    with capture_logs() as logs:
        loop.call_soon(explode)
        await asyncio.sleep(0.01)
        await containment.flush()

    faults = _faults(logs)
    assert faults[0]["event"] == "uncaught_exception"
    assert faults[0]["error_type"] == "ValueError"


@pytest.mark.asyncio
async def test_thread_exception_is_logged(containment: CrashContainment) -> None:
    def worker() -> None:
        raise KeyError("worker crashed")

    with capture_logs() as logs:
        thread = threading.Thread(target=worker, name="crashy-worker")
        thread.start()
        thread.join()
        await asyncio.sleep(0.05)
        await containment.flush()

    faults = _faults(logs)
    assert len(faults) == 1
    assert faults[0]["event"] == "uncaught_exception"
    assert faults[0]["detail"] == "thread crashy-worker"


@pytest.mark.asyncio
async def test_excepthook_is_logged(containment: CrashContainment) -> None:
    error = RuntimeError("top level")
    with capture_logs() as logs:
        sys.excepthook(RuntimeError, error, None)
        await containment.flush()
    assert _faults(logs)[0]["error"] == "top level"


@pytest.mark.asyncio
async def test_loop_keeps_running_after_fault(containment: CrashContainment) -> None:
    async def doomed() -> None:
        raise RuntimeError("doomed")

    with capture_logs():
        task = asyncio.create_task(doomed())
        await asyncio.sleep(0)
        del task
        await asyncio.sleep(0.01)
        await containment.flush()

    assert await asyncio.sleep(0, result="still alive") == "still alive"
    assert containment.installed


@pytest.mark.asyncio
async def test_uninstall_restores_hooks() -> None:
    previous_excepthook = sys.excepthook
    previous_threading_hook = threading.excepthook
    loop = asyncio.get_running_loop()
    previous_handler = loop.get_exception_handler()

    guard = CrashContainment()
    guard.install()
    assert sys.excepthook is not previous_excepthook
    await guard.uninstall()

    assert sys.excepthook is previous_excepthook
    assert threading.excepthook is previous_threading_hook
    assert loop.get_exception_handler() is previous_handler
    assert not guard.installed


def test_report_without_install_logs_directly() -> None:
    with capture_logs() as logs:
        CrashContainment().report(FaultEvent("uncaught_exception", ValueError("early")))
    assert _faults(logs)[0]["error"] == "early"
