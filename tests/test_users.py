"""User token store tests."""

from __future__ import annotations

import pytest

from relaygate.users import MAX_IPS_PER_USER, UserStore


@pytest.mark.asyncio
async def test_create_and_authenticate() -> None:
    store = UserStore()
    await store.init()
    user = await store.create_user(note="friend")

    assert store.ready
    assert len(user.token) >= 24
    authenticated = await store.authenticate(user.token, "198.51.100.4")
    assert authenticated is user
    assert user.ip == ["198.51.100.4"]
    assert await store.authenticate("nope", "198.51.100.4") is None


@pytest.mark.asyncio
async def test_disabled_user_rejected() -> None:
    store = UserStore()
    user = await store.create_user()
    disabled = await store.disable_user(user.token, reason="abuse")

    assert disabled is not None
    assert disabled.is_disabled
    assert disabled.disabled_reason == "abuse"
    assert await store.authenticate(user.token, None) is None
    assert await store.disable_user("missing") is None


@pytest.mark.asyncio
async def test_ip_history_is_bounded() -> None:
    store = UserStore()
    user = await store.create_user()
    for index in range(MAX_IPS_PER_USER + 5):
        await store.authenticate(user.token, f"10.0.0.{index}")
    assert len(user.ip) == MAX_IPS_PER_USER
    assert user.ip[-1] == f"10.0.0.{MAX_IPS_PER_USER + 4}"


@pytest.mark.asyncio
async def test_prompt_count_increments() -> None:
    store = UserStore()
    user = await store.create_user()
    await store.increment_prompt_count(user.token)
    await store.increment_prompt_count(user.token)
    await store.increment_prompt_count("missing")
    assert store.get_user(user.token).prompt_count == 2


@pytest.mark.asyncio
async def test_redis_backend_persists_across_instances(fake_redis) -> None:
    store = UserStore(fake_redis)
    await store.init()
    user = await store.create_user(note="persisted")
    await store.increment_prompt_count(user.token)

    reloaded = UserStore(fake_redis)
    await reloaded.init()
    restored = reloaded.get_user(user.token)
    assert restored is not None
    assert restored.note == "persisted"
    assert restored.prompt_count == 1
    assert [item.token for item in reloaded.list_users()] == [user.token]
