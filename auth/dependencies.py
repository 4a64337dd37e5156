"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

A request is authenticated in two steps:
  1. JWT -- from the "access_token" cookie (browser) or an
     Authorization: Bearer <token> header (API clients).
  2. Session -- the token's "sid" claim (the session fingerprint of the
     login that issued it) must be the user's ACTIVE device row. A valid JWT
     whose session was terminated by a newer login, a reset or an admin is
     rejected with 401 "session_terminated". Request headers play no part in
     this check, so replaying a stale token with another browser's
     User-Agent does not revive it.

try_get_token_session() is the soft variant (JWT only, returns None on failure).
get_current_user() performs both steps and raises HTTP 401 on failure.
require_admin() wraps get_current_user() and raises HTTP 403 if not admin.

Client IP: the socket peer (request.client.host). Behind a reverse proxy,
uvicorn rewrites it from X-Forwarded-For for trusted proxies only
(PROXY_HEADERS / FORWARDED_ALLOW_IPS, see main.py serve). Forwarding headers
are never read here.

Layer rule: no imports from api/ or mailer/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import asyncio
from typing import NamedTuple

from fastapi import HTTPException, Request

from auth.fingerprint import DeviceInfo
from auth.models import STATUS_ACTIVE, User
from auth.tokens import decode_access_token


class TokenSession(NamedTuple):
    user: User
    session_fingerprint: str


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def request_device(request: Request) -> DeviceInfo:
    """Fingerprints and classification of the caller's browser/IP."""
    return DeviceInfo.from_request(request.headers.get("User-Agent", ""), client_ip(request))


def _token_from_request(request: Request) -> str | None:
    token: str | None = request.cookies.get("access_token")
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


async def try_get_token_session(request: Request) -> TokenSession | None:
    """Return the user and session named by a valid JWT, or None. No session check."""
    token = _token_from_request(request)
    if not token:
        return None
    payload = decode_access_token(token)
    if not payload:
        return None
    user_store = request.app.state.user_store
    user = await asyncio.to_thread(user_store.get_by_id, payload["user_id"])
    if user is None:
        return None
    return TokenSession(user, payload["sid"])


async def get_current_user(request: Request) -> User:
    """Require a valid JWT AND the session it was issued for to be the active one.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...

    The caller's DeviceInfo (IP and User-Agent, for audit) is left on
    request.state.device and the token's session fingerprint on
    request.state.session_fingerprint for routes that act on the session
    (heartbeat).
    """
    found = await try_get_token_session(request)
    if found is None or found.user.status != STATUS_ACTIVE:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )

    user, session_fingerprint = found
    device = request_device(request)
    request.state.device = device
    request.state.session_fingerprint = session_fingerprint
    service = request.app.state.auth_service
    valid = await service.check_session_valid(user.id, session_fingerprint, device.ip_address, device.user_agent)
    if not valid:
        raise HTTPException(
            status_code=401,
            detail={
                "code": "session_terminated",
                "message": "Your session has ended because your account signed in elsewhere.",
            },
        )
    return user


async def require_admin(request: Request) -> User:
    """Require admin role. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin.

    Use as a FastAPI dependency:
        @router.post("/admin-only")
        async def route(user: User = Depends(require_admin)): ...
    """
    user = await get_current_user(request)
    if not user.is_admin:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return user
