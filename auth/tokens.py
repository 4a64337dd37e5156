"""
auth/tokens.py -- JWT access tokens, keyed secret digests, and the auth cookie.

Security design decisions:
  JWT: python-jose with HS256. Tokens carry user_id, email (sub), role,
       the session fingerprint of the login that issued them (sid) and
       expiry. A valid JWT is necessary but NOT sufficient: every
       authenticated request checks that the sid row is still ACTIVE, so a
       token issued to a session that was later terminated stops working
       immediately, whatever headers accompany it (single-session
       enforcement). Verification returns None on any failure -- the route
       layer turns that into a 401.

  Secret digests: reset codes and verification tokens are persisted as
       HMAC-SHA256(SECRET_KEY, raw). A database leak alone does not reveal a
       usable code or token, and the deterministic digest still allows a
       direct equality check. Comparisons go through hmac.compare_digest.

  SECRET_KEY: sourced from core.config.get_settings(); validated at startup
       (>= 32 chars, required outside DEBUG) [M6].

Layer rule: no imports from api/ or mailer/.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from core.config import get_settings

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

RESET_CODE_DIGITS = 6


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(
    user_id: int, email: str, role: str, session_fingerprint: str, expire_seconds: int = 0
) -> str:
    """Encode a signed JWT with user identity, its session and configurable expiry.

    Args:
        user_id:        Numeric user ID stored in the DB.
        email:          Email stored as the JWT subject claim.
        role:           User role ("USER" or "ADMIN").
        session_fingerprint: The device row this login activated ("sid").
                        The token is honoured only while that row is active.
        expire_seconds: Token lifetime in seconds. If 0 (default), uses
                        Settings.token_expire_seconds.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    expire = datetime.now(timezone.utc) + timedelta(seconds=duration)
    payload = {
        "sub": email,
        "user_id": user_id,
        "role": role,
        "sid": session_fingerprint,
        "exp": expire,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure."""
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
        if "user_id" not in payload or "role" not in payload or not payload.get("sid"):
            return None
        return payload
    except JWTError:
        return None


# ---------------------------------------------------------------------------
# Reset secrets
# ---------------------------------------------------------------------------


def generate_reset_code() -> str:
    """Return a uniformly random 6-digit code (leading zeros allowed)."""
    return f"{secrets.randbelow(10**RESET_CODE_DIGITS):0{RESET_CODE_DIGITS}d}"


def generate_verification_token() -> str:
    """Return an opaque single-use token. 256 bits of entropy, URL-safe."""
    return secrets.token_urlsafe(32)


def hash_secret(raw: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw) as a hex string."""
    return hmac.new(
        _settings.secret_key.encode(),
        raw.encode(),
        hashlib.sha256,
    ).hexdigest()


def secret_matches(raw: str, digest: str) -> bool:
    """Constant-time check of a raw code/token against its stored digest."""
    return hmac.compare_digest(hash_secret(raw), digest)


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Write the JWT access token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the JWT expiry so both expire together.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    response.set_cookie(
        "access_token",
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=duration,
    )
