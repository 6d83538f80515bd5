"""Per-request access logging with header redaction."""

from __future__ import annotations

from collections.abc import Iterable

from relaygate.logging import get_logger
from relaygate.pipeline import FilterContext
from relaygate.redaction import redact_headers

logger = get_logger("relaygate.access")

# High-frequency, low-value paths excluded from request auto-logging.
QUIET_PATHS = frozenset({"/health", "/proxy/kobold/api/v1/model"})


class AccessLogger:
    """Emit one structured record per request once the response is sent."""

    def __init__(self, quiet_paths: Iterable[str] = QUIET_PATHS) -> None:
        self.quiet_paths = frozenset(quiet_paths)

    def is_quiet(self, path: str) -> bool:
        return path in self.quiet_paths

    def record(self, ctx: FilterContext, status_code: int | None, duration_ms: int) -> None:
        if self.is_quiet(ctx.path):
            return

        context = ctx.request_context
        fields = {
            "method": ctx.method,
            "path": ctx.path,
            "status": status_code,
            "duration_ms": duration_ms,
            "remote_addr": ctx.remote_addr,
            "retry_count": context.retry_count if context else None,
            "headers": redact_headers(ctx.headers.raw),
        }
        if status_code is None:
            # The client went away before a response was sent.
            logger.warning("request_completed", **fields)
        elif status_code >= 500:
            logger.error("request_completed", **fields)
        elif status_code >= 400:
            logger.warning("request_completed", **fields)
        else:
            logger.info("request_completed", **fields)
