"""Static mounting of the route groups behind the filter chain."""

from __future__ import annotations

from fastapi import APIRouter, FastAPI

from relaygate import admin, info, proxy

ADMIN_PREFIX = "/admin"
PROXY_PREFIX = "/proxy"


def mount_routes(
    app: FastAPI,
    *,
    info_router: APIRouter = info.router,
    admin_router: APIRouter = admin.router,
    proxy_router: APIRouter = proxy.router,
) -> None:
    """Mount the info page unprefixed and the admin / proxy groups by prefix."""
    app.include_router(info_router)
    app.include_router(admin_router, prefix=ADMIN_PREFIX)
    app.include_router(proxy_router, prefix=PROXY_PREFIX)
