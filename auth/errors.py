"""
auth/errors.py -- Typed error taxonomy for the credential and session core.

Every error carries a stable machine-readable `code` and the HTTP status the
API layer should answer with. Services raise these; api/main.py has a single
exception handler that turns any AuthError into the standard error envelope,
so route handlers never translate errors by hand.

Messages are written to be safe for end users. InvalidCredentials is raised
for unknown email, missing password and wrong password alike -- the message
never says which one it was.

Layer rule: no imports from api/ or mailer/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for all expected failures of the auth core."""

    code = "auth_error"
    status_code = 400
    message = "Request could not be completed."

    def __init__(self, message: str | None = None, *, detail: str | None = None) -> None:
        self.message = message or self.message
        self.detail = detail
        super().__init__(self.message)


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    status_code = 401
    message = "Invalid email or password."


class AccountDisabled(AuthError):
    code = "account_disabled"
    status_code = 403
    message = "Account is disabled."


class InvalidOrExpired(AuthError):
    """Reset code or verification token is wrong, consumed, or past its expiry."""

    code = "invalid_or_expired"
    status_code = 400
    message = "Invalid or expired code."


class RateLimited(AuthError):
    code = "rate_limited"
    status_code = 429
    message = "Maximum resend attempts reached. Please try again later."


class WeakPassword(AuthError):
    code = "weak_password"
    status_code = 400
    message = "Password does not meet the password policy."


class NotFound(AuthError):
    """Admin-facing only -- never raised on paths that would leak account existence."""

    code = "not_found"
    status_code = 404
    message = "Not found."


class Conflict(AuthError):
    code = "conflict"
    status_code = 409
    message = "Resource already exists."


class InternalError(AuthError):
    """Store or transport failure. The underlying exception is logged, not exposed."""

    code = "internal_error"
    status_code = 500
    message = "An unexpected error occurred."


class Timeout(AuthError):
    """An outbound call (email transport) exceeded its explicit timeout."""

    code = "timeout"
    status_code = 504
    message = "Upstream service timed out."
