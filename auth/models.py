"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, almost zero logic). Stores and
services do the work; these types only own the domain shape.

The password-reset challenge is modelled as a closed set of three variants
(NoChallenge, CodeIssued, TokenIssued) instead of loose nullable fields on
User. The store persists it as (reset_state, reset_digest, reset_expires_at,
reset_attempts, reset_failures) columns and maps rows back into exactly one variant, so a
"leftover code while a token is also present" state cannot be represented.

Layer rule: no imports from api/ or mailer/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union

# ---------------------------------------------------------------------------
# Enumerations (plain string constants -- stored as-is in the DB)
# ---------------------------------------------------------------------------

ROLE_USER = "USER"
ROLE_ADMIN = "ADMIN"
ROLES = (ROLE_USER, ROLE_ADMIN)

STATUS_ACTIVE = "ACTIVE"
STATUS_SUSPENDED = "SUSPENDED"
STATUS_PENDING_PASSWORD_RESET = "PENDING_PASSWORD_RESET"
STATUSES = (STATUS_ACTIVE, STATUS_SUSPENDED, STATUS_PENDING_PASSWORD_RESET)

# Email kinds understood by the mailer package.
EMAIL_WELCOME = "welcome"
EMAIL_PASSWORD_RESET_CODE = "password-reset-code"

# Sentinel accepted by terminate_session() to end every session of a user.
ALL_SESSIONS = "all"


# ---------------------------------------------------------------------------
# Password reset challenge (closed variant set)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NoChallenge:
    """No reset in progress."""

    state = "none"


@dataclass(frozen=True)
class CodeIssued:
    """A 6-digit code was emailed. `digest` is HMAC-SHA256 of the code.

    attempts counts resends: 0 for the first code, 1 and 2 for the resends.
    failures counts wrong guesses against any code of this request; it
    carries over a resend so resending does not buy more guesses.
    """

    digest: str
    expires_at: datetime
    attempts: int = 0
    failures: int = 0

    state = "code"


@dataclass(frozen=True)
class TokenIssued:
    """The code was verified and swapped for a single-use verification token."""

    digest: str
    expires_at: datetime

    state = "token"


ResetChallenge = Union[NoChallenge, CodeIssued, TokenIssued]


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


@dataclass
class User:
    """An account known to the authority.

    hashed_password is None only for accounts that have not yet been issued a
    password. is_first_login marks that the current password is an
    admin-issued temporary one and must be changed.
    """

    email: str
    role: str = ROLE_USER
    id: int | None = None
    name: str | None = None
    hashed_password: str | None = None
    status: str = STATUS_ACTIVE
    is_first_login: bool = True
    last_login: str | None = None
    created_at: str | None = None
    created_by: int | None = None
    reset: ResetChallenge = field(default_factory=NoChallenge)

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def projection(self) -> dict[str, Any]:
        """Stable public view of the user. Never contains the password hash."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "status": self.status,
            "last_login": self.last_login,
        }


@dataclass
class Device:
    """One login instance (browser process + IP) of a user.

    session_fingerprint is the identity key: a second login with the same
    fingerprint overwrites this row instead of creating a new one.
    """

    user_id: int
    session_fingerprint: str
    device_fingerprint: str = ""
    id: int | None = None
    device_name: str | None = None
    device_type: str | None = None
    browser: str | None = None
    os: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    is_active: bool = True
    last_active: str | None = None
    created_at: str | None = None


@dataclass
class AuditEntry:
    """Immutable audit record. actor_id is None for system actions."""

    action: str
    id: int | None = None
    actor_id: int | None = None
    details: dict[str, Any] = field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: str | None = None


@dataclass
class LoginResult:
    """Outcome of AuthService.login().

    On failure only `error` is set (an AuthError code) so the caller can show
    one uniform message for unknown email and wrong password.
    """

    success: bool
    user: dict[str, Any] | None = None
    requires_password_reset: bool = False
    error: str | None = None
    session_fingerprint: str | None = None
    terminated_sessions: int = 0
