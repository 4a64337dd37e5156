"""
auth/reset.py -- Self-service password reset: code challenge, then token.

State machine carried on the user row (auth.models.ResetChallenge):

    NoChallenge --request_reset--> CodeIssued(attempts=0)
    CodeIssued  --resend_code----> CodeIssued(attempts+1)      [max 2 resends]
    CodeIssued  --verify_code----> TokenIssued                 [code consumed]
    CodeIssued  --wrong code-----> CodeIssued(failures+1), or NoChallenge
                                   once max_reset_code_failures (5) is reached
    TokenIssued --reset_password-> NoChallenge + new password + all sessions off

A secret is valid while now < expires_at. Codes live RESET_CODE_TTL_MINUTES
(10), tokens VERIFICATION_TOKEN_TTL_MINUTES (15).

Account enumeration: request_reset and resend_code answer {"ok": True} for
unknown emails and store nothing. verify_code and reset_password fail with
the same InvalidOrExpired whether the email, the secret or the expiry was
wrong.

Replay: the transitions out of CodeIssued and TokenIssued are
compare-and-swap updates on the stored digest, so of two concurrent
requests carrying the same code (or token) exactly one wins.

Every public method is async; store and bcrypt work runs in a worker thread.

Layer rule: no imports from api/ or mailer/.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from auth import audit
from auth.audit import AuditSink
from auth.errors import InvalidOrExpired, RateLimited
from auth.models import EMAIL_PASSWORD_RESET_CODE, CodeIssued, TokenIssued, User
from auth.passwords import hash_password, validate_password_strength
from auth.store import UserStore
from auth.tokens import (
    RESET_CODE_DIGITS,
    generate_reset_code,
    generate_verification_token,
    hash_secret,
    secret_matches,
)
from core.config import Settings, get_settings

logger = logging.getLogger("sessionguard.reset")

_CODE_RE = re.compile(rf"^\d{{{RESET_CODE_DIGITS}}}$")
_OK: dict[str, Any] = {"ok": True}


class EmailPort(Protocol):
    def notify(
        self,
        kind: str,
        recipient: str,
        template_data: dict[str, Any],
        secret_field: str | None = None,
    ) -> bool: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PasswordResetFlow:
    def __init__(
        self,
        store: UserStore,
        mailer: EmailPort,
        audit_sink: AuditSink,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._mailer = mailer
        self._audit = audit_sink
        self._settings = settings or get_settings()
        self._clock = clock

    @property
    def code_ttl(self) -> timedelta:
        return timedelta(minutes=self._settings.reset_code_ttl_minutes)

    @property
    def token_ttl(self) -> timedelta:
        return timedelta(minutes=self._settings.verification_token_ttl_minutes)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _send_code(self, user: User, code: str) -> bool:
        return await asyncio.to_thread(
            self._mailer.notify,
            EMAIL_PASSWORD_RESET_CODE,
            user.email,
            {
                "name": user.name,
                "code": code,
                "valid_minutes": self._settings.reset_code_ttl_minutes,
                "max_resends": self._settings.max_reset_resends,
            },
            "code",
        )

    async def _record(self, actor_id: int | None, action: str, details: dict, ip: str | None, ua: str | None) -> None:
        await asyncio.to_thread(self._audit.record, actor_id, action, details, ip, ua)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def request_reset(
        self, email: str, ip_address: str | None = None, user_agent: str | None = None
    ) -> dict[str, Any]:
        """Issue a fresh code for a known email. Always ok-shaped."""
        user = await asyncio.to_thread(self._store.get_by_email, email)
        if user is None:
            logger.info("Password reset requested for unknown email")
            return dict(_OK)

        code = generate_reset_code()
        challenge = CodeIssued(digest=hash_secret(code), expires_at=self._clock() + self.code_ttl, attempts=0)
        await asyncio.to_thread(self._store.set_reset_challenge, user.id, challenge)
        delivered = await self._send_code(user, code)

        logger.info("Reset code issued for user %s (delivered=%s)", user.id, delivered)
        await self._record(
            user.id, audit.PASSWORD_RESET_REQUESTED, {"attempts": 0, "email_delivered": delivered}, ip_address, user_agent
        )
        return dict(_OK)

    async def resend_code(
        self, email: str, ip_address: str | None = None, user_agent: str | None = None
    ) -> dict[str, Any]:
        """Replace the outstanding code with a new one.

        Raises RateLimited once max_reset_resends resends were used. Unknown
        emails and accounts without an outstanding code get the ok shape.
        """
        user = await asyncio.to_thread(self._store.get_by_email, email)
        if user is None or not isinstance(user.reset, CodeIssued):
            return dict(_OK)

        current = user.reset
        if current.attempts >= self._settings.max_reset_resends:
            logger.info("Resend limit reached for user %s", user.id)
            raise RateLimited()

        code = generate_reset_code()
        replacement = CodeIssued(
            digest=hash_secret(code),
            expires_at=self._clock() + self.code_ttl,
            attempts=current.attempts + 1,
            failures=current.failures,
        )
        swapped = await asyncio.to_thread(self._store.swap_reset_challenge, user.id, current, replacement)
        if not swapped:
            # A concurrent resend or verification already moved the challenge on.
            logger.info("Resend for user %s lost a race; nothing sent", user.id)
            return dict(_OK)

        delivered = await self._send_code(user, code)
        logger.info("Reset code re-issued for user %s (attempt %d)", user.id, replacement.attempts)
        await self._record(
            user.id,
            audit.PASSWORD_RESET_CODE_RESENT,
            {"attempts": replacement.attempts, "email_delivered": delivered},
            ip_address,
            user_agent,
        )
        return dict(_OK)

    async def verify_code(
        self, email: str, code: str, ip_address: str | None = None, user_agent: str | None = None
    ) -> str:
        """Exchange a valid code for a single-use verification token.

        Every wrong guess is counted against the outstanding code. After
        max_reset_code_failures wrong guesses the code is voided, so even the
        right code is refused until a new reset is requested.
        """
        if not code or not _CODE_RE.match(code):
            raise InvalidOrExpired("Invalid verification code format.")

        user = await asyncio.to_thread(self._store.get_by_email, email)
        if user is None or not isinstance(user.reset, CodeIssued):
            raise InvalidOrExpired()
        current = user.reset
        now = self._clock()
        if now >= current.expires_at:
            raise InvalidOrExpired()
        if not secret_matches(code, current.digest):
            await self._reject_code(user, current, ip_address, user_agent)
            raise InvalidOrExpired()

        token = generate_verification_token()
        replacement = TokenIssued(digest=hash_secret(token), expires_at=now + self.token_ttl)
        swapped = await asyncio.to_thread(self._store.swap_reset_challenge, user.id, current, replacement)
        if not swapped:
            raise InvalidOrExpired()

        logger.info("Reset code verified for user %s", user.id)
        await self._record(user.id, audit.PASSWORD_RESET_CODE_VERIFIED, {}, ip_address, user_agent)
        return token

    async def _reject_code(
        self, user: User, current: CodeIssued, ip_address: str | None, user_agent: str | None
    ) -> None:
        limit = self._settings.max_reset_code_failures
        failures = await asyncio.to_thread(self._store.record_reset_failure, user.id, current.digest, limit)
        if failures is None:
            return
        voided = failures >= limit
        if voided:
            logger.warning("Reset code for user %s voided after %d wrong guesses", user.id, failures)
        else:
            logger.info("Wrong reset code for user %s (%d/%d)", user.id, failures, limit)
        await self._record(
            user.id, audit.PASSWORD_RESET_CODE_REJECTED, {"failures": failures, "voided": voided}, ip_address, user_agent
        )

    async def reset_password(
        self,
        email: str,
        token: str,
        new_password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> dict[str, Any]:
        """Consume the verification token and set the new password.

        Every session of the user is deactivated in the same transaction.
        """
        user = await asyncio.to_thread(self._store.get_by_email, email)
        if user is None or not token or not isinstance(user.reset, TokenIssued):
            raise InvalidOrExpired("Invalid or expired verification token.")
        current = user.reset
        if self._clock() >= current.expires_at or not secret_matches(token, current.digest):
            raise InvalidOrExpired("Invalid or expired verification token.")

        validate_password_strength(new_password)

        hashed = await asyncio.to_thread(hash_password, new_password)
        terminated = await asyncio.to_thread(
            self._store.complete_password_reset, user.id, current.digest, hashed, self._clock().isoformat()
        )
        if terminated is None:
            raise InvalidOrExpired("Invalid or expired verification token.")

        logger.info("Password reset completed for user %s; %d session(s) terminated", user.id, terminated)
        await self._record(
            user.id, audit.PASSWORD_RESET_COMPLETED, {"sessions_terminated": terminated}, ip_address, user_agent
        )
        return dict(_OK)
