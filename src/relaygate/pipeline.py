"""Ordered filter chain run in front of every route.

The chain is a pure ASGI middleware holding an explicit list of stages.
Each stage returns an ``Outcome``: ``Continue`` hands the request to the
next stage, ``ShortCircuit`` answers immediately and ``Fail`` routes the
error to the fault boundary. Once every stage has continued, the wrapped
application (the route dispatcher) runs with the buffered body replayed.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar

from starlette.datastructures import Headers, MutableHeaders
from starlette.requests import ClientDisconnect
from starlette.responses import Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from relaygate.logging import clear_logging_context, get_logger

if TYPE_CHECKING:
    from relaygate.access_log import AccessLogger
    from relaygate.context import RequestContext
    from relaygate.faults import FaultBoundary

logger = get_logger(__name__)


@dataclass(frozen=True)
class Continue:
    """Pass control to the next stage."""


@dataclass(frozen=True)
class ShortCircuit:
    """Answer with ``response`` and skip every later stage."""

    response: Response


@dataclass(frozen=True)
class Fail:
    """Abort with ``error``; the fault boundary renders the response."""

    error: Exception


Outcome = Continue | ShortCircuit | Fail

CONTINUE = Continue()


def resolve_client_ip(scope: Scope, headers: Headers, *, trust_proxy: bool) -> str | None:
    """Return the client IP, honouring X-Forwarded-For only when trusted."""
    if trust_proxy:
        forwarded = headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip() or None
        real_ip = headers.get("x-real-ip")
        if real_ip:
            return real_ip.strip()
    client = scope.get("client")
    return client[0] if client else None


@dataclass
class FilterContext:
    """Request view shared by the stages of one request."""

    scope: Scope
    receive: Receive
    headers: Headers
    client_ip: str | None
    request_context: RequestContext | None = None
    body: bytes | None = None
    parsed_body: Any = None

    @classmethod
    def from_scope(cls, scope: Scope, receive: Receive, *, trust_proxy: bool) -> FilterContext:
        headers = Headers(scope=scope)
        return cls(
            scope=scope,
            receive=receive,
            headers=headers,
            client_ip=resolve_client_ip(scope, headers, trust_proxy=trust_proxy),
        )

    @property
    def method(self) -> str:
        return str(self.scope.get("method", "GET")).upper()

    @property
    def path(self) -> str:
        return str(self.scope.get("path", ""))

    @property
    def remote_addr(self) -> str | None:
        """Socket peer address; forwarded headers never feed this value."""
        client = self.scope.get("client")
        return client[0] if client else None

    @property
    def state(self) -> dict[str, Any]:
        return self.scope.setdefault("state", {})

    def downstream_receive(self) -> Receive:
        """Return a receive callable replaying the buffered body once."""
        if self.body is None:
            return self.receive
        body = self.body
        delivered = False

        async def receive() -> Message:
            nonlocal delivered
            if not delivered:
                delivered = True
                return {"type": "http.request", "body": body, "more_body": False}
            return await self.receive()

        return receive


class FilterStage(ABC):
    """One step of the filter chain."""

    name: ClassVar[str]

    @abstractmethod
    async def process(self, ctx: FilterContext) -> Outcome: ...

    def response_headers(self, ctx: FilterContext) -> Mapping[str, str]:
        """Headers added to every response, including short-circuits and errors."""
        return {}


class AccessFilterChain:
    """ASGI middleware running the filter stages in order."""

    def __init__(
        self,
        app: ASGIApp,
        *,
        stages: Sequence[FilterStage],
        access_log: AccessLogger,
        fault_boundary: FaultBoundary,
        trust_proxy: bool = True,
    ) -> None:
        self.app = app
        self.stages = tuple(stages)
        self.access_log = access_log
        self.fault_boundary = fault_boundary
        self.trust_proxy = trust_proxy

    async def run_stages(self, ctx: FilterContext) -> Outcome:
        for stage in self.stages:
            outcome = await stage.process(ctx)
            if not isinstance(outcome, Continue):
                return outcome
        return CONTINUE

    def _decorate(self, ctx: FilterContext, message: Message) -> None:
        headers = MutableHeaders(scope=message)
        for stage in self.stages:
            for key, value in stage.response_headers(ctx).items():
                if key not in headers:
                    headers[key] = value

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        ctx = FilterContext.from_scope(scope, receive, trust_proxy=self.trust_proxy)
        started = time.perf_counter()
        status_code: int | None = None

        async def send_wrapper(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
                self._decorate(ctx, message)
            await send(message)

        try:
            outcome = await self.run_stages(ctx)
            if isinstance(outcome, ShortCircuit):
                await outcome.response(scope, ctx.downstream_receive(), send_wrapper)
            elif isinstance(outcome, Fail):
                response = self.fault_boundary.render(outcome.error, ctx)
                await response(scope, ctx.downstream_receive(), send_wrapper)
            else:
                await self.app(scope, ctx.downstream_receive(), send_wrapper)
        except ClientDisconnect:
            logger.info("client_disconnected", method=ctx.method, path=ctx.path)
        except Exception as exc:
            if status_code is not None:
                self.fault_boundary.report_after_start(exc, ctx)
            else:
                response = self.fault_boundary.render(exc, ctx)
                await response(scope, receive, send_wrapper)
        finally:
            duration_ms = int((time.perf_counter() - started) * 1000)
            self.access_log.record(ctx, status_code, duration_ms)
            clear_logging_context()
