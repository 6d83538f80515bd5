"""Proxy routes forwarding prompts to upstream providers, mounted under /proxy."""

from __future__ import annotations

import json
import secrets
from typing import Any

import httpx
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from relaygate.admin import bearer_token
from relaygate.context import get_request_context
from relaygate.exceptions import Forbidden, GatewayError, MalformedBody, Unauthorized, UpstreamError
from relaygate.logging import get_logger
from relaygate.models import PromptLogEntry, User

logger = get_logger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
OPENAI_MODELS = ("gpt-4o", "gpt-4o-mini", "gpt-4-turbo", "gpt-3.5-turbo")
UPSTREAM_PATHS = {
    "openai": "/v1/chat/completions",
    "anthropic": "/v1/messages",
}


async def authorize_client(request: Request) -> User | None:
    """Apply the configured gatekeeper to a proxy request."""
    state = request.app.state
    mode = state.config.gatekeeper
    if mode == "none":
        return None

    presented = request.headers.get("x-api-key") or bearer_token(
        request.headers.get("authorization")
    )
    if mode == "proxy_key":
        expected = state.config.proxy_key or ""
        if not presented or not secrets.compare_digest(presented, expected):
            raise Unauthorized("Invalid proxy key")
        return None

    store = state.user_store
    if store is None:
        raise GatewayError("User store unavailable", status_code=503)
    if not presented:
        raise Unauthorized("Missing user token")
    client_ip = get_request_context(request).client_ip
    user = await store.authenticate(presented, client_ip)
    if user is None:
        raise Forbidden("Invalid or disabled user token")
    return user


router = APIRouter(tags=["proxy"])


def _upstream_headers(provider: str, secret: str) -> dict[str, str]:
    if provider == "anthropic":
        return {"x-api-key": secret, "anthropic-version": ANTHROPIC_VERSION}
    return {"Authorization": f"Bearer {secret}"}


def _decode(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {"error": response.text or "Upstream returned a non-JSON response"}


def _completion_text(provider: str, body: Any) -> str:
    try:
        if provider == "anthropic":
            return str(body["content"][0]["text"])
        return str(body["choices"][0]["message"]["content"])
    except (KeyError, IndexError, TypeError):
        return json.dumps(body, default=str)


async def _read_payload(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError as exc:
        raise MalformedBody("Request body must be a JSON object") from exc
    if not isinstance(payload, dict):
        raise MalformedBody("Request body must be a JSON object")
    if payload.get("stream"):
        raise GatewayError("Streaming responses are not supported by this proxy")
    return payload


async def forward(request: Request, provider: str, user: User | None) -> JSONResponse:
    """Queue, forward and log one prompt for ``provider``."""
    state = request.app.state
    context = get_request_context(request)
    payload = await _read_payload(request)
    path = UPSTREAM_PATHS[provider]
    base_url = state.config.anthropic_url if provider == "anthropic" else state.config.openai_url
    queue = state.request_queue

    while True:
        if queue is not None:
            await queue.wait_turn(context, provider)
        key = state.key_pool.get(provider)
        try:
            upstream = await state.upstream_client.post(
                f"{base_url}{path}",
                json=payload,
                headers=_upstream_headers(provider, key.secret),
            )
        except httpx.HTTPError as exc:
            raise UpstreamError(
                f"{provider} request failed: {exc.__class__.__name__}"
            ) from exc

        if upstream.status_code == 429:
            state.key_pool.mark_rate_limited(key)
            if queue is not None and queue.requeue(context):
                logger.info(
                    "request_requeued",
                    provider=provider,
                    retry_count=context.retry_count,
                )
                continue
        elif upstream.status_code == 401:
            state.key_pool.disable(key)
        break

    body = _decode(upstream)
    if upstream.status_code < 400:
        if state.prompt_log is not None:
            state.prompt_log.enqueue(
                PromptLogEntry(
                    provider=provider,
                    model=payload.get("model"),
                    endpoint=path,
                    prompt=payload.get("messages", payload.get("prompt")),
                    response=_completion_text(provider, body),
                    request_id=context.request_id,
                )
            )
        if user is not None and state.user_store is not None:
            await state.user_store.increment_prompt_count(user.token)
    return JSONResponse(body, status_code=upstream.status_code)


@router.get("/kobold/api/v1/model")
async def kobold_model() -> JSONResponse:
    """Polled by Kobold clients; answered without auth or logging."""
    return JSONResponse({"result": "relaygate"})


@router.get("/openai/v1/models")
async def openai_models(
    request: Request, user: User | None = Depends(authorize_client)
) -> JSONResponse:
    available = request.app.state.key_pool.count("openai") > 0
    return JSONResponse(
        {
            "object": "list",
            "data": [
                {"id": model, "object": "model", "owned_by": "openai"}
                for model in (OPENAI_MODELS if available else ())
            ],
        }
    )


@router.post("/openai/v1/chat/completions")
async def openai_chat_completions(
    request: Request, user: User | None = Depends(authorize_client)
) -> JSONResponse:
    return await forward(request, "openai", user)


@router.post("/anthropic/v1/messages")
async def anthropic_messages(
    request: Request, user: User | None = Depends(authorize_client)
) -> JSONResponse:
    return await forward(request, "anthropic", user)
