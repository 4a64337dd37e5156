"""
API request and response models for SessionGuard REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import AuditEntry

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

_Email = Annotated[str, Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)]
# Length only -- the strength policy is enforced server-side in auth.passwords
# so that clients get the specific weak_password reason.
_Password = Annotated[str, Field(min_length=1, max_length=256)]


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class StatusEnum(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    PENDING_PASSWORD_RESET = "PENDING_PASSWORD_RESET"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class _EmailBody(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: _Email

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value: Any) -> str:
        """Lower-case before the pattern check so lookups are case-insensitive."""
        return str(value).strip().lower()


class LoginRequest(_EmailBody):
    """Request body for POST /api/v1/auth/login."""

    password: _Password


class EmailRequest(_EmailBody):
    """Request body for POST /auth/forgot-password and /auth/resend-code."""


class VerifyCodeRequest(_EmailBody):
    code: str = Field(pattern=r"^\d{6}$", description="6-digit code from the reset email.")


class ResetPasswordRequest(_EmailBody):
    verification_token: str = Field(min_length=1, max_length=256)
    new_password: _Password


class ChangePasswordRequest(BaseModel):
    current_password: _Password
    new_password: _Password


class UserCreate(_EmailBody):
    """Request body for POST /api/v1/admin/users. No password -- one is generated."""

    name: Optional[str] = Field(default=None, max_length=255)
    role: RoleEnum = RoleEnum.USER


class UserStatusPatch(BaseModel):
    """Request body for PATCH /api/v1/admin/users/{id}."""

    status: StatusEnum


class SessionLimitRequest(BaseModel):
    max_sessions: int = Field(default=1, ge=1, le=100)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserOut(BaseModel):
    """Public projection of a user -- never carries the password hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: Optional[str] = None
    role: str
    status: str
    last_login: Optional[str] = None


class UserDetail(UserOut):
    is_first_login: bool
    created_at: Optional[str] = None
    created_by: Optional[int] = None
    active_sessions: Optional[int] = None


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserOut
    requires_password_reset: bool
    terminated_sessions: int = 0


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: UserOut
    requires_password_reset: bool


class OkResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    ok: bool = True
    message: Optional[str] = None


class VerifyCodeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    verification_token: str
    expires_in: int


class SessionCheckResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    valid: bool
    reason: Optional[str] = None


class TerminatedResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    terminated: int


class UserCreatedResponse(BaseModel):
    """The temporary password is returned ONCE, here, and never again."""

    model_config = ConfigDict(frozen=True)

    user: UserOut
    temporary_password: str
    email_sent: bool


class AdminPasswordResetResponse(UserCreatedResponse):
    sessions_terminated: int


class DeviceRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: int
    user_email: Optional[str] = None
    device_name: Optional[str] = None
    device_type: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    ip_address: Optional[str] = None
    is_active: bool
    last_active: Optional[str] = None
    created_at: Optional[str] = None


class DeviceSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int
    active: int
    inactive: int
    users_with_active_session: int
    by_type: dict[str, int]


class DeviceListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    devices: list[DeviceRow]
    summary: DeviceSummary


class AuditEntryOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    actor_id: Optional[int] = None
    action: str
    details: dict[str, Any]
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: str

    @classmethod
    def from_entry(cls, entry: AuditEntry) -> "AuditEntryOut":
        return cls(
            id=entry.id,
            actor_id=entry.actor_id,
            action=entry.action,
            details=entry.details,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            created_at=entry.created_at or "",
        )


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    database: str = "ok"
