"""
api/routes/v1/admin.py -- User, session and audit administration (admin only).

Routes:
  POST   /api/v1/admin/users                        -- create user, email temp password
  GET    /api/v1/admin/users                        -- list users
  GET    /api/v1/admin/users/{id}                   -- user detail + active session count
  PATCH  /api/v1/admin/users/{id}                   -- change status
  DELETE /api/v1/admin/users/{id}                   -- delete user and their devices
  POST   /api/v1/admin/users/{id}/reset-password    -- issue new temp password
  DELETE /api/v1/admin/users/{id}/sessions          -- terminate all sessions
  POST   /api/v1/admin/users/{id}/session-limit     -- sweep down to N sessions
  GET    /api/v1/admin/devices                      -- all devices + summary
  DELETE /api/v1/admin/devices/{id}                 -- terminate one device
  GET    /api/v1/admin/audit-logs                   -- newest first, filterable

Every route depends on require_admin, which also enforces the single active
session of the admin account itself.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from api.models import (
    AdminPasswordResetResponse,
    AuditEntryOut,
    DeviceListResponse,
    SessionLimitRequest,
    TerminatedResponse,
    UserCreate,
    UserCreatedResponse,
    UserDetail,
    UserStatusPatch,
)
from auth.dependencies import require_admin
from auth.models import ALL_SESSIONS, User
from auth.service import AuthService

router = APIRouter()


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _origin(request: Request) -> tuple[str, str]:
    device = request.state.device
    return device.ip_address, device.user_agent


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@router.post("/admin/users", response_model=UserCreatedResponse, status_code=201)
async def create_user(
    request: Request,
    body: UserCreate,
    admin: User = Depends(require_admin),
) -> UserCreatedResponse:
    """Create an account. The generated temporary password is returned once."""
    ip, ua = _origin(request)
    created = await _service(request).create_user(body.email, body.name, body.role.value, admin.id, ip, ua)
    return UserCreatedResponse(**created)


@router.get("/admin/users", response_model=list[UserDetail])
async def list_users(request: Request, admin: User = Depends(require_admin)) -> list[UserDetail]:
    return [UserDetail(**u) for u in await _service(request).list_users()]


@router.get("/admin/users/{user_id}", response_model=UserDetail)
async def get_user(request: Request, user_id: int, admin: User = Depends(require_admin)) -> UserDetail:
    return UserDetail(**await _service(request).get_user(user_id))


@router.patch("/admin/users/{user_id}", response_model=UserDetail)
async def update_user_status(
    request: Request,
    user_id: int,
    body: UserStatusPatch,
    admin: User = Depends(require_admin),
) -> UserDetail:
    """Change account status. Suspending ends every session of the user."""
    ip, ua = _origin(request)
    updated = await _service(request).update_user_status(user_id, body.status.value, admin.id, ip, ua)
    return UserDetail(**updated)


@router.delete("/admin/users/{user_id}", status_code=204)
async def delete_user(request: Request, user_id: int, admin: User = Depends(require_admin)) -> Response:
    ip, ua = _origin(request)
    await _service(request).delete_user(user_id, admin.id, ip, ua)
    return Response(status_code=204)


@router.post("/admin/users/{user_id}/reset-password", response_model=AdminPasswordResetResponse)
async def admin_reset_password(
    request: Request,
    user_id: int,
    admin: User = Depends(require_admin),
) -> AdminPasswordResetResponse:
    ip, ua = _origin(request)
    result = await _service(request).admin_reset_password(user_id, admin.id, ip, ua)
    return AdminPasswordResetResponse(**result)


# ---------------------------------------------------------------------------
# Sessions and devices
# ---------------------------------------------------------------------------


@router.delete("/admin/users/{user_id}/sessions", response_model=TerminatedResponse)
async def terminate_user_sessions(
    request: Request,
    user_id: int,
    admin: User = Depends(require_admin),
) -> TerminatedResponse:
    ip, ua = _origin(request)
    count = await _service(request).terminate_session(user_id, ALL_SESSIONS, admin.id, ip, ua)
    return TerminatedResponse(terminated=count)


@router.post("/admin/users/{user_id}/session-limit", response_model=TerminatedResponse)
async def enforce_session_limit(
    request: Request,
    user_id: int,
    body: SessionLimitRequest,
    admin: User = Depends(require_admin),
) -> TerminatedResponse:
    ip, ua = _origin(request)
    count = await _service(request).enforce_session_limit(user_id, body.max_sessions, admin.id, ip, ua)
    return TerminatedResponse(terminated=count)


@router.get("/admin/devices", response_model=DeviceListResponse)
async def list_devices(request: Request, admin: User = Depends(require_admin)) -> DeviceListResponse:
    return DeviceListResponse(**await _service(request).list_devices())


@router.delete("/admin/devices/{device_id}", status_code=204)
async def terminate_device(request: Request, device_id: int, admin: User = Depends(require_admin)) -> Response:
    ip, ua = _origin(request)
    await _service(request).terminate_device(device_id, admin.id, ip, ua)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


@router.get("/admin/audit-logs", response_model=list[AuditEntryOut])
async def list_audit_logs(
    request: Request,
    limit: int = Query(default=100, ge=1, le=500),
    action: Optional[str] = Query(default=None, max_length=64),
    user_id: Optional[int] = Query(default=None),
    admin: User = Depends(require_admin),
) -> list[AuditEntryOut]:
    entries = await _service(request).list_audit_entries(limit=limit, action=action, user_id=user_id)
    return [AuditEntryOut.from_entry(e) for e in entries]
