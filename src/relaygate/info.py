"""Informational root page."""

from __future__ import annotations

import html
import json
import time
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse, JSONResponse, Response

from relaygate.keys import PROVIDERS

router = APIRouter(tags=["info"])


def collect_info(request: Request) -> dict[str, Any]:
    """Gather build, uptime and subsystem status for display."""
    state = request.app.state
    config = state.config
    base_url = str(request.base_url).rstrip("/")
    queue = state.request_queue
    return {
        "build": str(state.build_info),
        "uptime_seconds": int(time.time() - state.started_at),
        "gatekeeper": config.gatekeeper,
        "endpoints": {
            provider: f"{base_url}/proxy/{provider}"
            for provider in PROVIDERS
            if state.key_pool.count(provider)
        },
        "keys": {
            provider: {
                "total": state.key_pool.count(provider),
                "available": state.key_pool.available(provider),
            }
            for provider in PROVIDERS
        },
        "queue": {"mode": config.queue_mode, "partitions": queue.stats() if queue else {}},
        "prompt_logging": state.prompt_log is not None,
    }


@router.get("/", include_in_schema=False)
async def info_page(request: Request, format: str = "html") -> Response:
    info = collect_info(request)
    if format == "json":
        return JSONResponse(info)
    body = html.escape(json.dumps(info, indent=2))
    title = html.escape(request.app.title)
    return HTMLResponse(
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\">"
        f"<title>{title}</title></head><body>"
        f"<h1>{title}</h1><pre>{body}</pre></body></html>"
    )
