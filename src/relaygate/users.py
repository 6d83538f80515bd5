"""User token store for the ``user_token`` gatekeeper, memory or Redis backed."""

from __future__ import annotations

import secrets
from datetime import UTC, datetime
from typing import Any

from redis.asyncio import Redis

from relaygate.logging import get_logger
from relaygate.models import User

logger = get_logger(__name__)

MAX_IPS_PER_USER = 20


class UserStore:
    """Issue, look up and revoke user tokens.

    Users are always served from memory. With a Redis client the store loads
    every user on ``init`` and writes each change through.
    """

    def __init__(self, redis: Redis | Any | None = None, key: str = "relaygate:users") -> None:
        self.redis = redis
        self.key = key
        self._users: dict[str, User] = {}
        self._ready = False

    @property
    def ready(self) -> bool:
        return self._ready

    async def init(self) -> None:
        """Load persisted users."""
        if self.redis is not None:
            await self.redis.ping()
            stored = await self.redis.hgetall(self.key)
            for token, raw in stored.items():
                user = User.model_validate_json(raw)
                self._users[str(token)] = user
        self._ready = True
        logger.info(
            "user_store_initialized",
            backend="redis" if self.redis is not None else "memory",
            users=len(self._users),
        )

    async def _persist(self, user: User) -> None:
        if self.redis is None:
            return
        await self.redis.hset(self.key, user.token, user.model_dump_json())

    async def create_user(self, note: str | None = None) -> User:
        user = User(token=secrets.token_urlsafe(24), note=note)
        self._users[user.token] = user
        await self._persist(user)
        logger.info("user_created")
        return user

    def get_user(self, token: str) -> User | None:
        return self._users.get(token)

    def list_users(self) -> list[User]:
        return sorted(self._users.values(), key=lambda user: user.created_at)

    async def authenticate(self, token: str, ip: str | None) -> User | None:
        """Return the active user for ``token``, recording the client IP."""
        user = self._users.get(token)
        if user is None or user.is_disabled:
            return None
        if ip and ip not in user.ip:
            user.ip = [*user.ip, ip][-MAX_IPS_PER_USER:]
            await self._persist(user)
        return user

    async def increment_prompt_count(self, token: str) -> None:
        user = self._users.get(token)
        if user is None:
            return
        user.prompt_count += 1
        await self._persist(user)

    async def disable_user(self, token: str, reason: str | None = None) -> User | None:
        user = self._users.get(token)
        if user is None:
            return None
        user.disabled_at = datetime.now(UTC)
        user.disabled_reason = reason
        await self._persist(user)
        logger.info("user_disabled", reason=reason)
        return user
