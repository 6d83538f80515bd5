"""Administrative routes, mounted under /admin."""

from __future__ import annotations

import secrets

from fastapi import APIRouter, Body, Depends, Header, Request
from fastapi.responses import JSONResponse

from relaygate.exceptions import Forbidden, GatewayError, Unauthorized
from relaygate.models import CreateUserRequest, DisableUserRequest
from relaygate.users import UserStore

BODY_NONE = Body(default=None)


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


def require_admin(
    request: Request,
    x_api_key: str | None = Header(None, alias="X-API-Key"),
    authorization: str | None = Header(None, alias="Authorization"),
) -> None:
    expected = request.app.state.config.admin_key
    if not expected:
        raise Forbidden("Admin routes are disabled (set RELAYGATE_ADMIN_KEY)")
    presented = x_api_key or bearer_token(authorization)
    if not presented or not secrets.compare_digest(presented, expected):
        raise Unauthorized("Invalid admin key")


router = APIRouter(tags=["admin"], dependencies=[Depends(require_admin)])


def _user_store(request: Request) -> UserStore:
    store = request.app.state.user_store
    if store is None:
        raise GatewayError("User token gatekeeper is not enabled", status_code=409)
    return store


@router.get("/keys")
async def list_keys(request: Request) -> JSONResponse:
    """Summarize the key pool without exposing secrets."""
    keys = request.app.state.key_pool.summary()
    return JSONResponse({"keys": [key.model_dump(mode="json") for key in keys]})


@router.get("/users")
async def list_users(request: Request) -> JSONResponse:
    users = _user_store(request).list_users()
    return JSONResponse({"users": [user.model_dump(mode="json") for user in users]})


@router.post("/users", status_code=201)
async def create_user(
    request: Request, payload: CreateUserRequest | None = BODY_NONE
) -> JSONResponse:
    """Issue a new user token."""
    user = await _user_store(request).create_user(note=payload.note if payload else None)
    return JSONResponse(user.model_dump(mode="json"), status_code=201)


@router.get("/users/{token}")
async def get_user(request: Request, token: str) -> JSONResponse:
    user = _user_store(request).get_user(token)
    if user is None:
        raise GatewayError("User not found", status_code=404)
    return JSONResponse(user.model_dump(mode="json"))


@router.post("/users/{token}/disable")
async def disable_user(
    request: Request, token: str, payload: DisableUserRequest | None = BODY_NONE
) -> JSONResponse:
    """Revoke a user token."""
    user = await _user_store(request).disable_user(
        token, reason=payload.reason if payload else None
    )
    if user is None:
        raise GatewayError("User not found", status_code=404)
    return JSONResponse(user.model_dump(mode="json"))
