"""Origin policy consulted by the filter chain before dispatch."""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING, Protocol

from starlette.responses import JSONResponse, RedirectResponse, Response

from relaygate.config import DEFAULT_BLOCK_MESSAGE
from relaygate.logging import get_logger

if TYPE_CHECKING:
    from relaygate.pipeline import FilterContext

logger = get_logger(__name__)


class OriginPolicy(Protocol):
    """Decides whether a request's origin may reach the routes."""

    async def check(self, ctx: FilterContext) -> Response | None:
        """Return a rejection response, or None to let the request through."""
        ...


class AllowAllOrigins:
    """Policy that never rejects."""

    async def check(self, ctx: FilterContext) -> Response | None:
        return None


class BlockedOriginPolicy:
    """Reject requests whose Origin or Referer contains a blocked substring."""

    def __init__(
        self,
        blocked: Iterable[str],
        *,
        message: str = DEFAULT_BLOCK_MESSAGE,
        redirect: str | None = None,
    ) -> None:
        self.blocked = tuple(item.lower() for item in blocked if item)
        self.message = message
        self.redirect = redirect

    def is_blocked(self, origin: str | None) -> bool:
        if not origin or not self.blocked:
            return False
        lowered = origin.lower()
        return any(item in lowered for item in self.blocked)

    async def check(self, ctx: FilterContext) -> Response | None:
        origin = ctx.headers.get("origin") or ctx.headers.get("referer")
        if not self.is_blocked(origin):
            return None

        logger.warning("origin_blocked", origin=origin, path=ctx.path)
        accepts_html = "text/html" in ctx.headers.get("accept", "")
        if self.redirect and accepts_html:
            return RedirectResponse(self.redirect, status_code=302)
        return JSONResponse({"error": self.message}, status_code=403)
