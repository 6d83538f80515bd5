"""pytest fixtures for RelayGate."""

from __future__ import annotations

import json
import sys
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from relaygate.build_info import BuildInfo
from relaygate.config import GatewayConfig
from relaygate.keys import KeyPool
from relaygate.main import create_app


class FakeRedis:
    """Minimal async Redis stub for tests."""

    def __init__(self, *, reachable: bool = True) -> None:
        self.reachable = reachable
        self._data: dict[str, str] = {}
        self._hashes: dict[str, dict[str, str]] = {}
        self.closed = False

    async def ping(self) -> bool:
        if not self.reachable:
            raise ConnectionError("Connection refused")
        return True

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def hset(self, name: str, key: str, value: str) -> int:
        bucket = self._hashes.setdefault(name, {})
        created = 0 if key in bucket else 1
        bucket[key] = value
        return created

    async def hgetall(self, name: str) -> dict[str, str]:
        return dict(self._hashes.get(name, {}))

    async def aclose(self) -> None:
        self.closed = True


class FakeUpstream:
    """Scripted upstream provider behind an httpx MockTransport."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.scripted: list[httpx.Response | Exception] = []

    def script(self, *responses: httpx.Response | Exception) -> None:
        self.scripted.extend(responses)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.scripted:
            item = self.scripted.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        if request.url.path == "/v1/messages":
            return httpx.Response(
                200, json={"content": [{"type": "text", "text": "Hello from Claude"}]}
            )
        return httpx.Response(
            200,
            json={"choices": [{"message": {"role": "assistant", "content": "Hello from GPT"}}]},
        )

    def last_json(self) -> Any:
        return json.loads(self.requests[-1].content)


TEST_BUILD = BuildInfo("abc1234 (main@acme/relaygate)", source="git")


@pytest.fixture()
def build_info() -> BuildInfo:
    return TEST_BUILD


@pytest.fixture()
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture()
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture()
def config() -> GatewayConfig:
    return GatewayConfig(
        openai_keys=("sk-openai-test",),
        anthropic_keys=("sk-ant-test",),
        admin_key="admin-secret",
        queue_mode="none",
    )


@pytest.fixture()
def key_pool(config: GatewayConfig) -> KeyPool:
    pool = KeyPool(config)
    pool.init()
    return pool


@pytest.fixture()
def upstream_client(upstream: FakeUpstream) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(upstream.handle))


@pytest.fixture()
def app(
    config: GatewayConfig,
    build_info: BuildInfo,
    key_pool: KeyPool,
    upstream_client: httpx.AsyncClient,
) -> FastAPI:
    return create_app(
        config,
        build_info=build_info,
        key_pool=key_pool,
        upstream_client=upstream_client,
    )


@pytest.fixture()
def client(app: FastAPI) -> TestClient:
    return TestClient(app)


@pytest.fixture()
async def async_client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client
