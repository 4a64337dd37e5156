"""
api/routes/v1/auth.py -- Login, session and password lifecycle endpoints.

Routes:
  POST /api/v1/auth/login              -- password login; sets JWT cookie
  POST /api/v1/auth/logout             -- ends this session, clears cookie
  GET  /api/v1/auth/me                 -- current user (requires active session)
  POST /api/v1/auth/change-password    -- replace temporary password
  POST /api/v1/auth/forgot-password    -- email a 6-digit reset code
  POST /api/v1/auth/resend-code        -- re-issue the code (max 2 resends)
  POST /api/v1/auth/verify-reset-code  -- exchange code for verification token
  POST /api/v1/auth/reset-password     -- set new password with the token
  POST /api/v1/auth/check-session      -- is this browser's session still active?
  POST /api/v1/auth/heartbeat          -- refresh last_active of this session

Security:
  [H2] login and the reset endpoints are rate-limited per client IP.
  [C1] unknown email and wrong password share one error code and timing.
  [M5] Cache-Control: no-store on login and token responses.
  Forgot-password and resend answer identically for unknown emails.

Services raise AuthError subclasses; api/main.py maps them to the error
envelope, so handlers here never translate errors by hand.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    ChangePasswordRequest,
    EmailRequest,
    ErrorDetail,
    ErrorResponse,
    LoginRequest,
    LoginResponse,
    MeResponse,
    OkResponse,
    ResetPasswordRequest,
    SessionCheckResponse,
    UserOut,
    VerifyCodeRequest,
    VerifyCodeResponse,
)
from auth.dependencies import get_current_user, request_device, try_get_token_session
from auth.errors import AccountDisabled, InvalidCredentials
from auth.models import User
from auth.service import AuthService
from auth.tokens import create_access_token, set_auth_cookie
from core.config import get_settings

_settings = get_settings()

# Auth policy:
# - login, forgot-password, resend-code, verify-reset-code, reset-password:
#       public + rate-limited
# - logout, check-session: public -- they work with whatever token is present
# - me, change-password, heartbeat: requires an active session (get_current_user)
router = APIRouter()

_LOGIN_ERRORS = {
    InvalidCredentials.code: (InvalidCredentials.status_code, InvalidCredentials.message),
    AccountDisabled.code: (AccountDisabled.status_code, AccountDisabled.message),
}


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


# ---------------------------------------------------------------------------
# Login / logout
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
async def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set JWT cookie.

    A successful login terminates every other session of the account.
    """
    device = request_device(request)
    result = await _service(request).login(body.email, body.password, device)
    if not result.success:
        status_code, message = _LOGIN_ERRORS.get(result.error, (401, InvalidCredentials.message))
        resp = JSONResponse(
            status_code=status_code,
            content=ErrorResponse(error=ErrorDetail(code=result.error or "invalid_credentials", message=message)).model_dump(),
        )
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp

    user = result.user
    token = create_access_token(user["id"], user["email"], user["role"], result.session_fingerprint)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=_settings.token_expire_seconds,
            user=UserOut(**user),
            requires_password_reset=result.requires_password_reset,
            terminated_sessions=result.terminated_sessions,
        ).model_dump(),
    )
    set_auth_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/logout")
async def logout(request: Request) -> JSONResponse:
    """End the session this token was issued for (if any) and clear the JWT cookie."""
    found = await try_get_token_session(request)
    if found is not None:
        device = request_device(request)
        await _service(request).logout(found.user.id, found.session_fingerprint, device.ip_address, device.user_agent)
    resp = JSONResponse(content=OkResponse(message="Logged out.").model_dump())
    resp.delete_cookie("access_token")
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
async def me(current_user: User = Depends(get_current_user)) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    return MeResponse(user=UserOut(**current_user.projection()), requires_password_reset=current_user.is_first_login)


@router.post("/auth/change-password", response_model=OkResponse)
async def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
) -> OkResponse:
    """Replace the current (usually temporary) password. Sessions stay active."""
    device = request.state.device
    await _service(request).change_password_from_temporary(
        current_user.id, body.current_password, body.new_password, device.ip_address, device.user_agent
    )
    return OkResponse(message="Password changed successfully.")


@router.post("/auth/heartbeat", response_model=OkResponse)
async def heartbeat(request: Request, current_user: User = Depends(get_current_user)) -> OkResponse:
    device = request.state.device
    await _service(request).heartbeat(
        current_user.id, request.state.session_fingerprint, device.ip_address, device.user_agent
    )
    return OkResponse()


@router.post("/auth/check-session", response_model=SessionCheckResponse)
async def check_session(request: Request) -> SessionCheckResponse:
    """Report whether this token's session is still the account's active one.

    Always 200 so a polling client can tell "signed in elsewhere" apart from
    transport errors.
    """
    found = await try_get_token_session(request)
    if found is None:
        return SessionCheckResponse(valid=False, reason="unauthenticated")
    device = request_device(request)
    valid = await _service(request).check_session_valid(
        found.user.id, found.session_fingerprint, device.ip_address, device.user_agent
    )
    return SessionCheckResponse(valid=valid, reason=None if valid else "session_terminated")


# ---------------------------------------------------------------------------
# Password reset (public)
# ---------------------------------------------------------------------------


@limiter.limit(_settings.reset_rate_limit)
@router.post("/auth/forgot-password", response_model=OkResponse)
async def forgot_password(request: Request, body: EmailRequest) -> OkResponse:
    device = request_device(request)
    await _service(request).request_password_reset(body.email, device.ip_address, device.user_agent)
    return OkResponse(message="If an account exists for this email, a verification code has been sent.")


@limiter.limit(_settings.reset_rate_limit)
@router.post("/auth/resend-code", response_model=OkResponse)
async def resend_code(request: Request, body: EmailRequest) -> OkResponse:
    device = request_device(request)
    await _service(request).resend_reset_code(body.email, device.ip_address, device.user_agent)
    return OkResponse(message="If a reset is in progress, a new verification code has been sent.")


@limiter.limit(_settings.reset_rate_limit)
@router.post("/auth/verify-reset-code", response_model=VerifyCodeResponse)
async def verify_reset_code(request: Request, body: VerifyCodeRequest) -> JSONResponse:
    device = request_device(request)
    token = await _service(request).verify_reset_code(body.email, body.code, device.ip_address, device.user_agent)
    resp = JSONResponse(
        content=VerifyCodeResponse(
            verification_token=token,
            expires_in=_settings.verification_token_ttl_minutes * 60,
        ).model_dump()
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@limiter.limit(_settings.reset_rate_limit)
@router.post("/auth/reset-password", response_model=OkResponse)
async def reset_password(request: Request, body: ResetPasswordRequest) -> OkResponse:
    """Set a new password. Every session of the account is terminated."""
    device = request_device(request)
    await _service(request).reset_password(
        body.email, body.verification_token, body.new_password, device.ip_address, device.user_agent
    )
    return OkResponse(message="Password reset successfully. Please sign in with your new password.")
