"""Per-request bookkeeping shared with the request queue."""

from __future__ import annotations

from dataclasses import dataclass

from starlette.requests import Request

REQUEST_CONTEXT_KEY = "request_context"


@dataclass
class RequestContext:
    """Mutable per-request record created once at ingress.

    ``retry_count`` is only changed by the request queue when it requeues a
    request after an upstream rate limit.
    """

    arrival_timestamp: float
    request_id: str
    retry_count: int = 0
    client_ip: str | None = None


def get_request_context(request: Request) -> RequestContext:
    """Return the context attached by the filter chain."""
    context = request.scope.get("state", {}).get(REQUEST_CONTEXT_KEY)
    if not isinstance(context, RequestContext):
        raise RuntimeError("Request context missing; is the filter chain installed?")
    return context
