"""Ordered startup of the gateway.

The orchestrator moves through a fixed sequence of states and never binds
the listener before every enabled subsystem is ready:

    INIT -> BUILD_INFO_RESOLVED -> CONFIG_VALIDATED -> KEY_POOL_READY
         -> [AUTH_STORE_READY] -> [PROMPT_LOG_RUNNING] -> [QUEUE_RUNNING]
         -> LISTENING

Bracketed states are skipped when the subsystem is disabled. Any failure
moves to FAILED_STARTUP, tears down what was started and raises
``StartupError``.
"""

from __future__ import annotations

import asyncio
import inspect
import os
import platform
from collections.abc import Callable
from enum import StrEnum
from typing import Any, Protocol

import httpx
import uvicorn
from fastapi import FastAPI
from redis.asyncio import Redis

from relaygate.build_info import BuildInfo, BuildInfoResolver
from relaygate.config import GatewayConfig, assert_config_is_valid
from relaygate.containment import CrashContainment
from relaygate.exceptions import StartupError
from relaygate.keys import KeyPool
from relaygate.logging import get_logger
from relaygate.main import create_app
from relaygate.prompt_log import PromptLogQueue, PromptLogStore
from relaygate.queue import RequestQueue
from relaygate.users import UserStore

logger = get_logger(__name__)

LISTENER_POLL_INTERVAL = 0.05


class StartupState(StrEnum):
    INIT = "init"
    BUILD_INFO_RESOLVED = "build_info_resolved"
    CONFIG_VALIDATED = "config_validated"
    KEY_POOL_READY = "key_pool_ready"
    AUTH_STORE_READY = "auth_store_ready"
    PROMPT_LOG_RUNNING = "prompt_log_running"
    QUEUE_RUNNING = "queue_running"
    LISTENING = "listening"
    FAILED_STARTUP = "failed_startup"


_SEQUENCE = [state for state in StartupState if state is not StartupState.FAILED_STARTUP]


class Listener(Protocol):
    async def start(self) -> None: ...

    async def wait_closed(self) -> None: ...

    async def stop(self) -> None: ...


ListenerFactory = Callable[[FastAPI, GatewayConfig], Listener]


class UvicornListener:
    """Run uvicorn as a task and report once the socket is bound."""

    def __init__(self, app: FastAPI, config: GatewayConfig) -> None:
        self.config = config
        self.server = uvicorn.Server(
            uvicorn.Config(
                app,
                host=config.host,
                port=config.port,
                proxy_headers=config.trust_proxy,
                forwarded_allow_ips="*" if config.trust_proxy else None,
                log_config=None,
                access_log=False,
                lifespan="on",
            )
        )
        self._task: asyncio.Task[Any] | None = None

    async def start(self) -> None:
        self._task = asyncio.create_task(self.server.serve(), name="uvicorn-server")
        while not self.server.started:
            if self._task.done():
                error = None if self._task.cancelled() else self._task.exception()
                raise StartupError(
                    f"Listener failed to bind {self.config.host}:{self.config.port}"
                ) from error
            await asyncio.sleep(LISTENER_POLL_INTERVAL)

    async def wait_closed(self) -> None:
        if self._task is not None:
            await self._task

    async def stop(self) -> None:
        self.server.should_exit = True
        await self.wait_closed()


class StartupOrchestrator:
    """Bring subsystems up in order, then bind the listener."""

    def __init__(
        self,
        config: GatewayConfig,
        *,
        resolver: BuildInfoResolver | None = None,
        listener_factory: ListenerFactory = UvicornListener,
        redis: Redis | Any | None = None,
        upstream_client: httpx.AsyncClient | None = None,
        containment: CrashContainment | None = None,
    ) -> None:
        self.config = config
        self.resolver = resolver or BuildInfoResolver(probe_timeout=config.build_probe_timeout)
        self.listener_factory = listener_factory
        self.redis = redis
        self.upstream_client = upstream_client
        self.containment = containment or CrashContainment()
        self.state = StartupState.INIT
        self.history: list[StartupState] = [StartupState.INIT]
        self.build_info: BuildInfo | None = None
        self.key_pool: KeyPool | None = None
        self.user_store: UserStore | None = None
        self.prompt_log: PromptLogQueue | None = None
        self.request_queue: RequestQueue | None = None
        self.app: FastAPI | None = None
        self.listener: Listener | None = None

    def _advance(self, state: StartupState) -> None:
        if self.state is StartupState.FAILED_STARTUP:
            raise StartupError("Startup already failed")
        if _SEQUENCE.index(state) <= _SEQUENCE.index(self.state):
            raise RuntimeError(f"Illegal startup transition {self.state} -> {state}")
        self.state = state
        self.history.append(state)
        logger.debug("startup_state_changed", state=state.value)

    def _fail(self) -> None:
        self.state = StartupState.FAILED_STARTUP
        self.history.append(StartupState.FAILED_STARTUP)

    def _redis_client(self) -> Redis | Any | None:
        if self.redis is None and self.config.uses_redis:
            self.redis = Redis.from_url(self.config.redis_url, decode_responses=True)
        return self.redis

    async def start(self) -> FastAPI:
        """Run the startup sequence and return the listening application."""
        config = self.config
        logger.info("server_starting", pid=os.getpid())
        try:
            self.build_info = await self.resolver.resolve()
            self._advance(StartupState.BUILD_INFO_RESOLVED)

            logger.info("checking_config")
            await assert_config_is_valid(config, redis=self._redis_client())
            self._advance(StartupState.CONFIG_VALIDATED)

            self.key_pool = KeyPool(config)
            self.key_pool.init()
            self._advance(StartupState.KEY_POOL_READY)

            if config.gatekeeper == "user_token":
                backend = self.redis if config.user_store == "redis" else None
                self.user_store = UserStore(backend)
                await self.user_store.init()
                self._advance(StartupState.AUTH_STORE_READY)

            if config.prompt_logging:
                logger.info("starting_prompt_logging", path=config.prompt_log_path)
                self.prompt_log = PromptLogQueue(PromptLogStore(config.prompt_log_path))
                self.prompt_log.start()
                self._advance(StartupState.PROMPT_LOG_RUNNING)

            if config.queue_mode != "none":
                self.request_queue = RequestQueue(
                    config.queue_mode,
                    self.key_pool.available,
                    max_retries=config.max_retries,
                )
                self.request_queue.start()
                self._advance(StartupState.QUEUE_RUNNING)

            self.app = create_app(
                config,
                build_info=self.build_info,
                key_pool=self.key_pool,
                user_store=self.user_store,
                prompt_log=self.prompt_log,
                request_queue=self.request_queue,
                upstream_client=self.upstream_client,
            )
            self.listener = self.listener_factory(self.app, config)
            await self.listener.start()
            self._advance(StartupState.LISTENING)
        except Exception as exc:
            failed_at = self.state
            self._fail()
            logger.error("startup_failed", state=failed_at.value, error=str(exc))
            await self._teardown()
            if isinstance(exc, StartupError):
                raise
            raise StartupError(str(exc)) from exc

        logger.info("now_listening", host=config.host, port=config.port)
        self.containment.install()
        logger.info(
            "startup_complete",
            build=str(self.build_info),
            environment=config.environment,
            python=platform.python_version(),
        )
        return self.app

    async def serve(self) -> None:
        """Start, then block until the listener shuts down."""
        await self.start()
        assert self.listener is not None
        try:
            await self.listener.wait_closed()
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        await self.containment.uninstall()
        await self._teardown()
        logger.info("server_stopped")

    async def _teardown(self) -> None:
        if self.request_queue is not None:
            await self.request_queue.stop()
        if self.prompt_log is not None:
            await self.prompt_log.stop()
        if self.redis is not None:
            close = getattr(self.redis, "aclose", None) or getattr(self.redis, "close", None)
            if close is not None:
                result = close()
                if inspect.isawaitable(result):
                    await result
