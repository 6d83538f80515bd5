"""Environment-driven configuration and startup validation."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from relaygate.exceptions import ConfigError
from relaygate.logging import get_logger

logger = get_logger(__name__)

GATEKEEPER_MODES = frozenset({"none", "proxy_key", "user_token"})
QUEUE_MODES = frozenset({"fair", "random", "none"})
USER_STORE_BACKENDS = frozenset({"memory", "redis"})

DEFAULT_BLOCK_MESSAGE = (
    "This proxy does not accept requests from your client's origin."
)
_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class GatewayConfig:
    """Resolved gateway settings."""

    host: str = "0.0.0.0"  # nosec B104
    port: int = 7860
    log_level: str = "INFO"
    gatekeeper: str = "none"
    proxy_key: str | None = None
    admin_key: str | None = None
    openai_keys: tuple[str, ...] = ()
    anthropic_keys: tuple[str, ...] = ()
    openai_url: str = "https://api.openai.com"
    anthropic_url: str = "https://api.anthropic.com"
    queue_mode: str = "fair"
    max_retries: int = 3
    prompt_logging: bool = False
    prompt_log_path: str = "./prompts.db"
    user_store: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    trust_proxy: bool = True
    blocked_origins: tuple[str, ...] = ()
    block_message: str = DEFAULT_BLOCK_MESSAGE
    block_redirect: str | None = None
    build_probe_timeout: float | None = None
    environment: str = "development"

    @property
    def uses_redis(self) -> bool:
        return self.gatekeeper == "user_token" and self.user_store == "redis"


def _get(environ: Mapping[str, str], name: str, default: str = "") -> str:
    return environ.get(f"RELAYGATE_{name}", default).strip()


def _get_optional(environ: Mapping[str, str], name: str) -> str | None:
    return _get(environ, name) or None


def _get_bool(environ: Mapping[str, str], name: str, default: bool) -> bool:
    raw = _get(environ, name)
    if not raw:
        return default
    return raw.lower() in _TRUTHY


def _get_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = _get(environ, name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"RELAYGATE_{name} must be an integer, got {raw!r}") from exc


def _get_float(environ: Mapping[str, str], name: str) -> float | None:
    raw = _get(environ, name)
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"RELAYGATE_{name} must be a number, got {raw!r}") from exc


def _get_list(environ: Mapping[str, str], name: str) -> tuple[str, ...]:
    raw = _get(environ, name)
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def load_config(environ: Mapping[str, str] | None = None) -> GatewayConfig:
    """Build a GatewayConfig from RELAYGATE_* environment variables."""
    env = os.environ if environ is None else environ
    return GatewayConfig(
        host=_get(env, "HOST", "0.0.0.0"),  # nosec B104
        port=_get_int(env, "PORT", 7860),
        log_level=_get(env, "LOG_LEVEL", "INFO"),
        gatekeeper=_get(env, "GATEKEEPER", "none").lower(),
        proxy_key=_get_optional(env, "PROXY_KEY"),
        admin_key=_get_optional(env, "ADMIN_KEY"),
        openai_keys=_get_list(env, "OPENAI_KEYS"),
        anthropic_keys=_get_list(env, "ANTHROPIC_KEYS"),
        openai_url=_get(env, "OPENAI_URL", "https://api.openai.com").rstrip("/"),
        anthropic_url=_get(env, "ANTHROPIC_URL", "https://api.anthropic.com").rstrip("/"),
        queue_mode=_get(env, "QUEUE_MODE", "fair").lower(),
        max_retries=_get_int(env, "MAX_RETRIES", 3),
        prompt_logging=_get_bool(env, "PROMPT_LOGGING", False),
        prompt_log_path=_get(env, "PROMPT_LOG_PATH", "./prompts.db"),
        user_store=_get(env, "USER_STORE", "memory").lower(),
        redis_url=_get(env, "REDIS_URL", "redis://localhost:6379/0"),
        trust_proxy=_get_bool(env, "TRUST_PROXY", True),
        blocked_origins=tuple(
            origin.lower() for origin in _get_list(env, "BLOCKED_ORIGINS")
        ),
        block_message=_get(env, "BLOCK_MESSAGE") or DEFAULT_BLOCK_MESSAGE,
        block_redirect=_get_optional(env, "BLOCK_REDIRECT"),
        build_probe_timeout=_get_float(env, "BUILD_PROBE_TIMEOUT"),
        environment=_get(env, "ENV", "development").lower(),
    )


def _collect_issues(config: GatewayConfig) -> list[str]:
    issues: list[str] = []
    if config.gatekeeper not in GATEKEEPER_MODES:
        issues.append(
            f"RELAYGATE_GATEKEEPER must be one of {sorted(GATEKEEPER_MODES)}"
        )
    if config.queue_mode not in QUEUE_MODES:
        issues.append(f"RELAYGATE_QUEUE_MODE must be one of {sorted(QUEUE_MODES)}")
    if config.user_store not in USER_STORE_BACKENDS:
        issues.append(
            f"RELAYGATE_USER_STORE must be one of {sorted(USER_STORE_BACKENDS)}"
        )
    if not 0 < config.port < 65536:
        issues.append("RELAYGATE_PORT must be between 1 and 65535")
    if config.max_retries < 0:
        issues.append("RELAYGATE_MAX_RETRIES must not be negative")
    if config.gatekeeper == "proxy_key" and not config.proxy_key:
        issues.append("RELAYGATE_PROXY_KEY is required when RELAYGATE_GATEKEEPER=proxy_key")
    if config.gatekeeper == "user_token" and not config.admin_key:
        issues.append("RELAYGATE_ADMIN_KEY is required when RELAYGATE_GATEKEEPER=user_token")
    if config.build_probe_timeout is not None and config.build_probe_timeout <= 0:
        issues.append("RELAYGATE_BUILD_PROBE_TIMEOUT must be positive")
    if config.prompt_logging:
        directory = Path(config.prompt_log_path).expanduser().resolve().parent
        if not directory.is_dir() or not os.access(directory, os.W_OK):
            issues.append(f"prompt log directory is not writable: {directory}")
    return issues


async def assert_config_is_valid(config: GatewayConfig, *, redis: Any | None = None) -> None:
    """Validate settings and reachable dependencies, raising ConfigError on failure."""
    issues = _collect_issues(config)

    if config.uses_redis and not issues:
        if redis is None:
            issues.append("Redis client required for RELAYGATE_USER_STORE=redis")
        else:
            try:
                await redis.ping()
            except Exception as exc:
                issues.append(f"Redis unreachable at {config.redis_url}: {exc}")

    if issues:
        raise ConfigError("Invalid configuration: " + "; ".join(issues))

    if not config.openai_keys and not config.anthropic_keys:
        logger.warning("no_upstream_keys_configured")
    if config.gatekeeper == "none":
        logger.warning("gatekeeper_disabled", hint="Anyone can use this proxy.")
