"""Process-wide crash containment.

Once the gateway is listening, unexpected faults are logged instead of
taking the process down:

- exceptions reaching the event loop's exception handler (task exceptions
  that were never retrieved, failing callbacks),
- exceptions escaping worker threads (``threading.excepthook``),
- uncaught exceptions reported through ``sys.excepthook``.

Hooks only enqueue a ``FaultEvent``; a supervisor task drains the queue and
logs each event with its stack trace. This is a safety net: the request that
triggered the fault may never get a response. An uncaught exception on the
main thread still ends the interpreter after being logged.
"""

from __future__ import annotations

import asyncio
import contextlib
import sys
import threading
import traceback
from dataclasses import dataclass
from types import TracebackType
from typing import Any, Literal

from relaygate.logging import get_logger

logger = get_logger(__name__)

FaultKind = Literal["uncaught_exception", "unhandled_rejection"]


@dataclass(frozen=True)
class FaultEvent:
    """An unexpected fault observed outside any request's error handling."""

    kind: FaultKind
    error: BaseException | None
    detail: str | None = None


def _stack(error: BaseException | None) -> str | None:
    if error is None:
        return None
    return "".join(traceback.format_exception(error))


def log_fault(event: FaultEvent) -> None:
    logger.error(
        event.kind,
        error=str(event.error) if event.error is not None else None,
        error_type=type(event.error).__name__ if event.error is not None else None,
        detail=event.detail,
        stack=_stack(event.error),
        hint="Please report this error trace.",
    )


class CrashContainment:
    """Install fault hooks and supervise the events they report."""

    def __init__(self) -> None:
        self._loop: asyncio.AbstractEventLoop | None = None
        self._faults: asyncio.Queue[FaultEvent] | None = None
        self._supervisor: asyncio.Task[Any] | None = None
        self._previous_loop_handler: Any = None
        self._previous_excepthook: Any = None
        self._previous_threading_hook: Any = None

    @property
    def installed(self) -> bool:
        return self._loop is not None

    def install(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        if self.installed:
            return
        loop = loop or asyncio.get_running_loop()
        self._loop = loop
        self._faults = asyncio.Queue()

        self._previous_loop_handler = loop.get_exception_handler()
        loop.set_exception_handler(self._on_loop_exception)
        self._previous_excepthook = sys.excepthook
        sys.excepthook = self._on_uncaught
        self._previous_threading_hook = threading.excepthook
        threading.excepthook = self._on_thread_exception

        self._supervisor = loop.create_task(self._supervise(), name="crash-containment")
        logger.info("crash_containment_installed")

    def report(self, event: FaultEvent) -> None:
        """Hand an event to the supervisor from any thread."""
        if self._loop is None or self._faults is None or self._loop.is_closed():
            log_fault(event)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._faults.put_nowait(event)
        else:
            self._loop.call_soon_threadsafe(self._faults.put_nowait, event)

    def _on_loop_exception(
        self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]
    ) -> None:
        error = context.get("exception")
        kind: FaultKind = (
            "unhandled_rejection"
            if "future" in context or "task" in context
            else "uncaught_exception"
        )
        self.report(FaultEvent(kind, error, context.get("message")))

    def _on_uncaught(
        self,
        exc_type: type[BaseException],
        exc: BaseException,
        tb: TracebackType | None,
    ) -> None:
        self.report(FaultEvent("uncaught_exception", exc))

    def _on_thread_exception(self, args: threading.ExceptHookArgs) -> None:
        if issubclass(args.exc_type, SystemExit):
            return
        thread_name = args.thread.name if args.thread is not None else "unknown"
        self.report(
            FaultEvent("uncaught_exception", args.exc_value, f"thread {thread_name}")
        )

    async def _supervise(self) -> None:
        assert self._faults is not None
        while True:
            event = await self._faults.get()
            try:
                log_fault(event)
            finally:
                self._faults.task_done()

    async def flush(self) -> None:
        """Wait until every reported event has been logged."""
        if self._faults is not None:
            await self._faults.join()

    async def uninstall(self) -> None:
        if self._loop is None:
            return
        await self.flush()
        self._loop.set_exception_handler(self._previous_loop_handler)
        sys.excepthook = self._previous_excepthook
        threading.excepthook = self._previous_threading_hook
        if self._supervisor is not None:
            self._supervisor.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._supervisor
        self._loop = None
        self._faults = None
        self._supervisor = None
