"""FastAPI application factory for RelayGate.

The application is the route dispatcher wrapped by the filter chain:

    GET  /health   health probe (answered by the chain itself)
    GET  /         informational page
    *    /admin/*  administrative routes
    *    /proxy/*  upstream proxy routes

Every other path answers ``404 {"error": "Not found"}``.
"""

from __future__ import annotations

import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from relaygate import __version__
from relaygate.access_log import AccessLogger
from relaygate.build_info import BuildInfo
from relaygate.config import GatewayConfig
from relaygate.faults import FaultBoundary
from relaygate.filters import default_stages
from relaygate.keys import KeyPool
from relaygate.origin import BlockedOriginPolicy, OriginPolicy
from relaygate.pipeline import AccessFilterChain
from relaygate.prompt_log import PromptLogQueue
from relaygate.queue import RequestQueue
from relaygate.routes import mount_routes
from relaygate.users import UserStore

UPSTREAM_TIMEOUT = httpx.Timeout(120.0, connect=10.0)


def create_app(
    config: GatewayConfig,
    *,
    build_info: BuildInfo,
    key_pool: KeyPool,
    user_store: UserStore | None = None,
    prompt_log: PromptLogQueue | None = None,
    request_queue: RequestQueue | None = None,
    upstream_client: httpx.AsyncClient | None = None,
    origin_policy: OriginPolicy | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Subsystems that startup skipped are passed as ``None`` and stay ``None``
    on ``app.state``; routes check before using them.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await app.state.upstream_client.aclose()

    app = FastAPI(
        title="RelayGate",
        version=__version__,
        description="HTTP front end for an LLM reverse-proxy gateway",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )

    # Store components in app state
    app.state.config = config
    app.state.build_info = build_info
    app.state.key_pool = key_pool
    app.state.user_store = user_store
    app.state.prompt_log = prompt_log
    app.state.request_queue = request_queue
    app.state.upstream_client = upstream_client or httpx.AsyncClient(timeout=UPSTREAM_TIMEOUT)
    app.state.started_at = time.time()

    fault_boundary = FaultBoundary()
    fault_boundary.install(app)
    mount_routes(app)

    policy = origin_policy or BlockedOriginPolicy(
        config.blocked_origins,
        message=config.block_message,
        redirect=config.block_redirect,
    )
    app.add_middleware(
        AccessFilterChain,
        stages=default_stages(policy),
        access_log=AccessLogger(),
        fault_boundary=fault_boundary,
        trust_proxy=config.trust_proxy,
    )
    return app
