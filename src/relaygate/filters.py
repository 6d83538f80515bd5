"""Filter stages making up the default chain."""

from __future__ import annotations

import json
import time
import uuid
from collections.abc import Mapping
from typing import Any
from urllib.parse import parse_qsl

from starlette.middleware.cors import CORSMiddleware
from starlette.requests import ClientDisconnect
from starlette.responses import Response
from starlette.types import Receive, Scope, Send

from relaygate.context import REQUEST_CONTEXT_KEY, RequestContext
from relaygate.exceptions import MalformedBody, PayloadTooLarge
from relaygate.logging import bind_request_id
from relaygate.origin import OriginPolicy
from relaygate.pipeline import CONTINUE, Fail, FilterContext, FilterStage, Outcome, ShortCircuit

# Maximum request body size (10MB) for JSON and form payloads
MAX_BODY_BYTES = 10 * 1024 * 1024
HEALTH_PATH = "/health"


class RequestContextInitializer(FilterStage):
    """Attach arrival time and retry counter before anything else runs."""

    name = "request_context"

    async def process(self, ctx: FilterContext) -> Outcome:
        request_id = ctx.headers.get("x-request-id") or uuid.uuid4().hex
        ctx.request_context = RequestContext(
            arrival_timestamp=time.time(),
            request_id=request_id,
            retry_count=0,
            client_ip=ctx.client_ip,
        )
        ctx.state[REQUEST_CONTEXT_KEY] = ctx.request_context
        bind_request_id(request_id)
        return CONTINUE

    def response_headers(self, ctx: FilterContext) -> Mapping[str, str]:
        if ctx.request_context is None:
            return {}
        return {"X-Request-ID": ctx.request_context.request_id}


class HealthCheckStage(FilterStage):
    """Answer the health probe without touching later stages."""

    name = "health"

    def __init__(self, path: str = HEALTH_PATH) -> None:
        self.path = path

    async def process(self, ctx: FilterContext) -> Outcome:
        if ctx.path == self.path and ctx.method in {"GET", "HEAD"}:
            return ShortCircuit(Response(status_code=200))
        return CONTINUE


async def _policy_only(scope: Scope, receive: Receive, send: Send) -> None:
    raise RuntimeError("CORS policy holder is not mounted as an application")


class CorsStage(FilterStage):
    """Permissive cross-origin policy backed by Starlette's CORSMiddleware."""

    name = "cors"

    def __init__(self) -> None:
        self.policy = CORSMiddleware(
            _policy_only,
            allow_origins=["*"],
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @staticmethod
    def is_preflight(ctx: FilterContext) -> bool:
        return (
            ctx.method == "OPTIONS"
            and "origin" in ctx.headers
            and "access-control-request-method" in ctx.headers
        )

    async def process(self, ctx: FilterContext) -> Outcome:
        if self.is_preflight(ctx):
            return ShortCircuit(self.policy.preflight_response(request_headers=ctx.headers))
        return CONTINUE

    def response_headers(self, ctx: FilterContext) -> Mapping[str, str]:
        return self.policy.simple_headers


def _media_type(content_type: str) -> str:
    return content_type.split(";", 1)[0].strip().lower()


def _parse_form(body: bytes) -> dict[str, Any]:
    parsed: dict[str, Any] = {}
    for key, value in parse_qsl(body.decode("utf-8", "replace"), keep_blank_values=True):
        if key in parsed:
            existing = parsed[key]
            parsed[key] = [*existing, value] if isinstance(existing, list) else [existing, value]
        else:
            parsed[key] = value
    return parsed


class BodyParsingStage(FilterStage):
    """Buffer and parse JSON / form bodies up to a fixed ceiling."""

    name = "body"

    def __init__(self, limit: int = MAX_BODY_BYTES) -> None:
        self.limit = limit

    async def _read(self, ctx: FilterContext) -> bytes | None:
        chunks: list[bytes] = []
        size = 0
        more_body = True
        while more_body:
            message = await ctx.receive()
            if message["type"] == "http.disconnect":
                raise ClientDisconnect()
            chunk = message.get("body", b"")
            size += len(chunk)
            if size > self.limit:
                return None
            chunks.append(chunk)
            more_body = message.get("more_body", False)
        return b"".join(chunks)

    async def process(self, ctx: FilterContext) -> Outcome:
        declared = ctx.headers.get("content-length")
        if declared is not None:
            try:
                declared_size = int(declared)
            except ValueError:
                return Fail(MalformedBody("Invalid Content-Length header"))
            if declared_size > self.limit:
                return Fail(PayloadTooLarge())

        body = await self._read(ctx)
        if body is None:
            return Fail(PayloadTooLarge())
        ctx.body = body
        if not body:
            return CONTINUE

        media_type = _media_type(ctx.headers.get("content-type", ""))
        if media_type == "application/json" or media_type.endswith("+json"):
            try:
                ctx.parsed_body = json.loads(body)
            except (UnicodeDecodeError, json.JSONDecodeError):
                return Fail(MalformedBody("Malformed JSON body"))
        elif media_type == "application/x-www-form-urlencoded":
            ctx.parsed_body = _parse_form(body)
        ctx.state["parsed_body"] = ctx.parsed_body
        return CONTINUE


class OriginCheckStage(FilterStage):
    """Reject requests whose origin the policy disallows."""

    name = "origin"

    def __init__(self, policy: OriginPolicy) -> None:
        self.policy = policy

    async def process(self, ctx: FilterContext) -> Outcome:
        rejection = await self.policy.check(ctx)
        if rejection is not None:
            return ShortCircuit(rejection)
        return CONTINUE


def default_stages(origin_policy: OriginPolicy) -> list[FilterStage]:
    """Return the stages in their fixed order."""
    return [
        RequestContextInitializer(),
        HealthCheckStage(),
        CorsStage(),
        BodyParsingStage(),
        OriginCheckStage(origin_policy),
    ]
