"""
auth/passwords.py -- Credential store: password hashing, verification,
temporary passwords, and the server-side password policy.

Security design decisions:
  Hashing: bcrypt used directly (no passlib wrapper) with the cost factor from
       Settings.bcrypt_rounds (never below 12). The cost is embedded in the
       hash string, so raising it later still verifies older hashes.

  Verification: any bcrypt failure (malformed hash, wrong type) is reported
       as a plain mismatch. Callers turn every mismatch into the same
       InvalidCredentials error, so nothing reveals which of email/password
       was wrong.

  Timing: equalize_timing() runs one bcrypt check against _DUMMY_HASH. Login
       calls it whenever it rejects a request without a real hash comparison,
       so an unknown email costs the same as a wrong password [C1].

  Temporary passwords: secrets.choice over an alphabet without the visually
       ambiguous 0/O/1/l/I. Every secret in the system comes from `secrets`.

  Policy: enforced here, on the server, regardless of what the client checks:
       at least 8 characters with upper case, lower case, a digit and a symbol.

Layer rule: no imports from api/ or mailer/.
"""

from __future__ import annotations

import re
import secrets
import string

import bcrypt

from auth.errors import WeakPassword
from auth.models import User
from auth.store import UserStore
from core.config import get_settings

_settings = get_settings()

TEMP_PASSWORD_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz23456789"
MIN_PASSWORD_LENGTH = 8
# bcrypt silently truncates after 72 bytes; reject instead of truncating.
MAX_PASSWORD_BYTES = 72


def hash_password(plain: str, rounds: int | None = None) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    cost = rounds if rounds is not None else _settings.bcrypt_rounds
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=cost)).decode("utf-8")


def verify_password(plain: str, hashed: str | None) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("sessionguard_timing_dummy")


def equalize_timing(plain: str) -> None:
    """Burn one bcrypt comparison so rejected logins take a constant time."""
    verify_password(plain, _DUMMY_HASH)


def generate_temporary_password(length: int | None = None) -> str:
    """Generate an admin-issued temporary password.

    Guaranteed to contain at least one upper-case letter, one lower-case
    letter and one digit so it is accepted by a typical login form. Drawn
    until that holds; with 12 characters the first draw almost always does.
    """
    size = length or _settings.temp_password_length
    while True:
        candidate = "".join(secrets.choice(TEMP_PASSWORD_ALPHABET) for _ in range(size))
        if (
            any(c.isupper() for c in candidate)
            and any(c.islower() for c in candidate)
            and any(c.isdigit() for c in candidate)
        ):
            return candidate


def password_policy_error(pw: str) -> str | None:
    """Return an error string if the password violates the policy, else None."""
    if len(pw) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
    if len(pw.encode("utf-8")) > MAX_PASSWORD_BYTES:
        return f"Password must be at most {MAX_PASSWORD_BYTES} bytes"
    if not re.search(r"[A-Z]", pw):
        return "Password must contain at least one uppercase letter"
    if not re.search(r"[a-z]", pw):
        return "Password must contain at least one lowercase letter"
    if not re.search(r"[0-9]", pw):
        return "Password must contain at least one digit"
    if not any(c in string.punctuation for c in pw):
        return "Password must contain at least one symbol"
    return None


def validate_password_strength(pw: str) -> None:
    """Raise WeakPassword with a user-facing reason if the policy is not met."""
    err = password_policy_error(pw)
    if err:
        raise WeakPassword(err)


# ---------------------------------------------------------------------------
# User authentication (constant-time) [C1]
# ---------------------------------------------------------------------------


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Check an email/password pair with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown email or no password issued yet: bcrypt against _DUMMY_HASH
    - Wrong password: bcrypt against the real hash

    Account status is NOT checked here. Returns the User on a password
    match, None on any failure.
    """
    user = store.get_by_email(email)
    if user is None or not user.hashed_password:
        # do NOT return early before running bcrypt [C1]
        equalize_timing(password)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user
