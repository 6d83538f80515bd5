"""RelayGate CLI entrypoint.

Usage:
    python -m relaygate                  # Start the gateway
    python -m relaygate --build-info     # Print the resolved build identifier
    python -m relaygate --check-config   # Validate configuration and exit
    python -m relaygate --version        # Print version
    python -m relaygate --help           # Show help
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import sys

from redis.asyncio import Redis

from relaygate.build_info import BuildInfoResolver
from relaygate.config import GatewayConfig, assert_config_is_valid, load_config
from relaygate.exceptions import ConfigError, StartupError
from relaygate.logging import configure_logging


def print_banner() -> None:
    """Print the RelayGate banner."""
    banner = r"""
 ____      _              ____       _
|  _ \ ___| | __ _ _   _ / ___| __ _| |_ ___
| |_) / _ \ |/ _` | | | | |  _ / _` | __/ _ \
|  _ <  __/ | (_| | |_| | |_| | (_| | ||  __/
|_| \_\___|_|\__,_|\__, |\____|\__,_|\__\___|
                   |___/   LLM reverse-proxy gateway
"""
    print(banner)


async def check_config(config: GatewayConfig) -> int:
    """Validate ``config`` the way startup does; return an exit code."""
    redis = Redis.from_url(config.redis_url, decode_responses=True) if config.uses_redis else None
    try:
        await assert_config_is_valid(config, redis=redis)
    except ConfigError as exc:
        print(f"Configuration invalid: {exc}")
        return 1
    finally:
        if redis is not None:
            await redis.aclose()
    print("Configuration OK")
    return 0


async def print_build_info(config: GatewayConfig) -> int:
    resolver = BuildInfoResolver(probe_timeout=config.build_probe_timeout)
    print(await resolver.resolve())
    return 0


def main() -> None:
    """CLI entrypoint."""
    from relaygate import __version__
    from relaygate.startup import StartupOrchestrator

    parser = argparse.ArgumentParser(
        prog="relaygate",
        description="RelayGate: HTTP front end for an LLM reverse-proxy gateway",
    )
    parser.add_argument(
        "--version", "-v", action="version", version=f"RelayGate {__version__}"
    )
    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument(
        "--build-info",
        action="store_true",
        help="Print the resolved build identifier and exit",
    )
    mode_group.add_argument(
        "--check-config",
        action="store_true",
        help="Validate configuration and exit (status 1 when invalid)",
    )
    parser.add_argument(
        "--host", default=None, help="Host to bind to (default: RELAYGATE_HOST or 0.0.0.0)"
    )
    parser.add_argument(
        "--port", type=int, default=None, help="Port to bind to (default: RELAYGATE_PORT or 7860)"
    )

    args = parser.parse_args()

    try:
        config = load_config()
    except ConfigError as exc:
        print(f"Configuration invalid: {exc}")
        sys.exit(1)
    overrides = {
        name: value
        for name, value in (("host", args.host), ("port", args.port))
        if value is not None
    }
    if overrides:
        config = dataclasses.replace(config, **overrides)

    configure_logging(config.log_level)

    if args.build_info:
        sys.exit(asyncio.run(print_build_info(config)))
    elif args.check_config:
        sys.exit(asyncio.run(check_config(config)))
    else:
        print_banner()
        try:
            asyncio.run(StartupOrchestrator(config).serve())
        except StartupError as exc:
            print(f"Startup failed: {exc}")
            sys.exit(1)


if __name__ == "__main__":
    main()
