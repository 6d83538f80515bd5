"""Upstream API key pool."""

from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass
from threading import Lock

from relaygate.config import GatewayConfig
from relaygate.exceptions import NoKeysAvailable
from relaygate.logging import get_logger
from relaygate.models import KeySummary

logger = get_logger(__name__)

PROVIDERS = ("openai", "anthropic")
DEFAULT_RATE_LIMIT_SECONDS = 10.0


@dataclass
class UpstreamKey:
    """One upstream credential and its usage state."""

    provider: str
    secret: str
    disabled: bool = False
    last_used: float | None = None
    rate_limited_until: float = 0.0
    prompt_count: int = 0

    @property
    def hash(self) -> str:
        digest = hashlib.sha256(f"{self.provider}:{self.secret}".encode()).hexdigest()
        return f"{self.provider}-{digest[:8]}"

    def is_rate_limited(self, now: float) -> bool:
        return self.rate_limited_until > now


class KeyPool:
    """Hands out upstream keys, least recently used first."""

    def __init__(self, config: GatewayConfig) -> None:
        self.config = config
        self._keys: list[UpstreamKey] = []
        self._lock = Lock()
        self._ready = False

    @property
    def ready(self) -> bool:
        return self._ready

    def init(self) -> None:
        """Load keys from configuration."""
        configured = {
            "openai": self.config.openai_keys,
            "anthropic": self.config.anthropic_keys,
        }
        with self._lock:
            self._keys = [
                UpstreamKey(provider=provider, secret=secret)
                for provider, secrets in configured.items()
                for secret in dict.fromkeys(secrets)
            ]
            self._ready = True
        logger.info(
            "key_pool_initialized",
            **{provider: self.count(provider) for provider in PROVIDERS},
        )

    def count(self, provider: str) -> int:
        with self._lock:
            return sum(1 for key in self._keys if key.provider == provider)

    def available(self, provider: str) -> int:
        """Return how many keys could serve ``provider`` right now."""
        now = time.time()
        with self._lock:
            return sum(
                1
                for key in self._keys
                if key.provider == provider
                and not key.disabled
                and not key.is_rate_limited(now)
            )

    def get(self, provider: str) -> UpstreamKey:
        now = time.time()
        with self._lock:
            candidates = [
                key
                for key in self._keys
                if key.provider == provider
                and not key.disabled
                and not key.is_rate_limited(now)
            ]
            if not candidates:
                raise NoKeysAvailable(provider)
            key = min(candidates, key=lambda item: item.last_used or 0.0)
            key.last_used = now
            key.prompt_count += 1
            return key

    def mark_rate_limited(
        self, key: UpstreamKey, seconds: float = DEFAULT_RATE_LIMIT_SECONDS
    ) -> None:
        with self._lock:
            key.rate_limited_until = time.time() + seconds
        logger.warning("key_rate_limited", key=key.hash, seconds=seconds)

    def disable(self, key: UpstreamKey) -> None:
        with self._lock:
            key.disabled = True
        logger.warning("key_disabled", key=key.hash)

    def summary(self) -> list[KeySummary]:
        now = time.time()
        with self._lock:
            return [
                KeySummary(
                    provider=key.provider,
                    hash=key.hash,
                    disabled=key.disabled,
                    rate_limited=key.is_rate_limited(now),
                    last_used=key.last_used,
                    prompt_count=key.prompt_count,
                )
                for key in self._keys
            ]
