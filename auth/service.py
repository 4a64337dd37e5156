"""
auth/service.py -- AuthService: the authentication orchestrator.

Composes the Credential Store (auth.passwords), the Device Registry, the
Password Reset Flow, the Audit Log and the email port into the public
operations the HTTP layer and the CLI call.

Login control flow:
  1. unknown email / no password issued    -> invalid_credentials
  2. status != ACTIVE                      -> account_disabled
  3. wrong password                        -> invalid_credentials
  4. requires_password_reset = is_first_login
  5. DeviceRegistry.login  (deactivate all, activate this one, one transaction)
  6. stamp last_login
  7. audit SESSIONS_TERMINATED (if any) and USER_LOGIN
  8. return the user projection

Credential and status failures come back as LoginResult(success=False,
error=<code>) so the route can answer uniformly. Store failures raise
InternalError. Every other operation raises typed AuthError subclasses.

Audit and email are invoked at the end of a transition, after the state
change has been committed; neither can roll it back.

Every public method is async. Store and bcrypt calls run via
asyncio.to_thread so the event loop never blocks on I/O or hashing.

Layer rule: no imports from api/ or mailer/.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth import audit
from auth.audit import AuditLog
from auth.devices import DeviceRegistry
from auth.errors import AccountDisabled, Conflict, InternalError, InvalidCredentials, NotFound, WeakPassword
from auth.fingerprint import DeviceInfo, short
from auth.models import (
    ALL_SESSIONS,
    EMAIL_WELCOME,
    ROLE_USER,
    ROLES,
    STATUS_ACTIVE,
    STATUSES,
    AuditEntry,
    Device,
    LoginResult,
    User,
)
from auth.passwords import (
    authenticate_user,
    equalize_timing,
    generate_temporary_password,
    hash_password,
    validate_password_strength,
    verify_password,
)
from auth.reset import EmailPort, PasswordResetFlow
from auth.store import UserStore
from core.config import Settings, get_settings

logger = logging.getLogger("sessionguard.auth")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthService:
    def __init__(
        self,
        store: UserStore,
        registry: DeviceRegistry,
        reset_flow: PasswordResetFlow,
        mailer: EmailPort,
        audit_log: AuditLog,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._registry = registry
        self._reset = reset_flow
        self._mailer = mailer
        self._audit = audit_log
        self._settings = settings or get_settings()
        self._clock = clock

    async def _record(
        self,
        actor_id: int | None,
        action: str,
        details: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        await asyncio.to_thread(self._audit.record, actor_id, action, details, ip_address, user_agent)

    async def _require_user(self, user_id: int) -> User:
        user = await asyncio.to_thread(self._store.get_by_id, user_id)
        if user is None:
            raise NotFound("User not found.")
        return user

    async def _guard_last_admin(self, target: User) -> None:
        """[M4] Refuse to disable or delete the last active admin."""
        if target.is_admin and target.status == STATUS_ACTIVE:
            if await asyncio.to_thread(self._store.count_active_admins) <= 1:
                raise Conflict("Cannot disable or delete the last active admin account.")

    # ------------------------------------------------------------------
    # Login / session lifecycle
    # ------------------------------------------------------------------

    async def login(self, email: str, password: str, device: DeviceInfo) -> LoginResult:
        try:
            user = await asyncio.to_thread(self._store.get_by_email, email)
        except SQLAlchemyError as exc:
            logger.exception("User lookup failed during login")
            raise InternalError() from exc

        if user is None or not user.hashed_password:
            await asyncio.to_thread(equalize_timing, password)
            logger.info("Login rejected: unknown email or no password issued")
            return LoginResult(success=False, error=InvalidCredentials.code)

        if user.status != STATUS_ACTIVE:
            logger.info("Login rejected for user %s: status %s", user.id, user.status)
            return LoginResult(success=False, error=AccountDisabled.code)

        if not await asyncio.to_thread(verify_password, password, user.hashed_password):
            logger.info("Login rejected for user %s: wrong password", user.id)
            return LoginResult(success=False, error=InvalidCredentials.code)

        row, terminated = await asyncio.to_thread(self._registry.login, user.id, device)
        try:
            user.last_login = await asyncio.to_thread(
                self._store.update_last_login, user.id, self._clock().isoformat()
            )
        except SQLAlchemyError as exc:
            logger.exception("Could not stamp last_login for user %s", user.id)
            await asyncio.to_thread(self._registry.fail_closed, user.id)
            raise InternalError() from exc

        if terminated:
            await self._record(
                user.id,
                audit.SESSIONS_TERMINATED,
                {"count": terminated, "reason": "new_login", "new_session": short(row.session_fingerprint)},
                device.ip_address,
                device.user_agent,
            )
        await self._record(
            user.id,
            audit.USER_LOGIN,
            {
                "session": short(row.session_fingerprint),
                "device_type": row.device_type,
                "browser": row.browser,
                "os": row.os,
                "requires_password_reset": user.is_first_login,
            },
            device.ip_address,
            device.user_agent,
        )
        logger.info("User %s logged in (first_login=%s)", user.id, user.is_first_login)
        return LoginResult(
            success=True,
            user=user.projection(),
            requires_password_reset=user.is_first_login,
            session_fingerprint=row.session_fingerprint,
            terminated_sessions=terminated,
        )

    async def logout(
        self, user_id: int, session_fingerprint: str, ip_address: str | None = None, user_agent: str | None = None
    ) -> int:
        """End the caller's own session. Idempotent."""
        try:
            count = await asyncio.to_thread(self._registry.terminate, user_id, session_fingerprint)
        except NotFound:
            count = 0
        await self._record(
            user_id, audit.USER_LOGOUT, {"session": short(session_fingerprint)}, ip_address, user_agent
        )
        return count

    async def terminate_session(
        self,
        user_id: int,
        target: str,
        actor_id: int | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> int:
        """Deactivate one session (fingerprint) or every session ("all") of a user."""
        await self._require_user(user_id)
        count = await asyncio.to_thread(self._registry.terminate, user_id, target)
        await self._record(
            actor_id if actor_id is not None else user_id,
            audit.SESSION_TERMINATED,
            {
                "target_user_id": user_id,
                "target": ALL_SESSIONS if target == ALL_SESSIONS else short(target),
                "count": count,
            },
            ip_address,
            user_agent,
        )
        return count

    async def check_session_valid(
        self,
        user_id: int,
        session_fingerprint: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> bool:
        valid = await asyncio.to_thread(self._registry.is_session_valid, user_id, session_fingerprint)
        if not valid:
            logger.info("Session check failed for user %s (%s)", user_id, short(session_fingerprint or ""))
            await self._record(
                user_id,
                audit.SESSION_CHECK_FAILED,
                {"session": short(session_fingerprint or "")},
                ip_address,
                user_agent,
            )
        return valid

    async def heartbeat(
        self,
        user_id: int,
        session_fingerprint: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> bool:
        alive = await asyncio.to_thread(self._registry.heartbeat, user_id, session_fingerprint, ip_address)
        if not alive:
            await self._record(
                user_id,
                audit.SESSION_CHECK_FAILED,
                {"session": short(session_fingerprint or ""), "source": "heartbeat"},
                ip_address,
                user_agent,
            )
        return alive

    async def enforce_session_limit(
        self,
        user_id: int,
        max_sessions: int | None = None,
        actor_id: int | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> int:
        """Keep the N most recent sessions; returns how many were terminated."""
        limit = max_sessions if max_sessions is not None else self._settings.max_active_sessions
        await self._require_user(user_id)
        removed = await asyncio.to_thread(self._registry.enforce_session_limit, user_id, limit)
        if removed:
            await self._record(
                actor_id if actor_id is not None else user_id,
                audit.SESSION_LIMIT_ENFORCED,
                {
                    "target_user_id": user_id,
                    "max_sessions": limit,
                    "terminated": len(removed),
                    "sessions": [short(d.session_fingerprint) for d in removed],
                },
                ip_address,
                user_agent,
            )
        return len(removed)

    # ------------------------------------------------------------------
    # Password lifecycle
    # ------------------------------------------------------------------

    async def change_password_from_temporary(
        self,
        user_id: int,
        current_password: str,
        new_password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> dict[str, Any]:
        """Replace the (temporary) password. Sessions are left untouched."""
        user = await asyncio.to_thread(self._store.get_by_id, user_id)
        if user is None:
            raise InvalidCredentials()
        if await asyncio.to_thread(authenticate_user, self._store, user.email, current_password) is None:
            raise InvalidCredentials("Current password is incorrect.")
        validate_password_strength(new_password)
        if new_password == current_password:
            raise WeakPassword("New password must be different from the current password.")

        hashed = await asyncio.to_thread(hash_password, new_password)
        await asyncio.to_thread(self._store.set_password, user.id, hashed, is_first_login=False)
        logger.info("User %s changed password (was_first_login=%s)", user.id, user.is_first_login)
        await self._record(
            user.id,
            audit.PASSWORD_CHANGED,
            {"was_first_login": user.is_first_login},
            ip_address,
            user_agent,
        )
        return {"ok": True}

    async def request_password_reset(self, email: str, ip_address: str | None = None, user_agent: str | None = None):
        return await self._reset.request_reset(email, ip_address, user_agent)

    async def resend_reset_code(self, email: str, ip_address: str | None = None, user_agent: str | None = None):
        return await self._reset.resend_code(email, ip_address, user_agent)

    async def verify_reset_code(
        self, email: str, code: str, ip_address: str | None = None, user_agent: str | None = None
    ) -> str:
        return await self._reset.verify_code(email, code, ip_address, user_agent)

    async def reset_password(
        self,
        email: str,
        token: str,
        new_password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ):
        return await self._reset.reset_password(email, token, new_password, ip_address, user_agent)

    # ------------------------------------------------------------------
    # Admin operations
    # ------------------------------------------------------------------

    async def create_user(
        self,
        email: str,
        name: str | None = None,
        role: str = ROLE_USER,
        actor_id: int | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> dict[str, Any]:
        """Create an account with a temporary password and email it to the user.

        The temporary password is also returned to the caller once.
        """
        if role not in ROLES:
            raise ValueError(f"Unknown role: {role!r}")
        if await asyncio.to_thread(self._store.get_by_email, email) is not None:
            raise Conflict("User already exists.")

        temp_password = generate_temporary_password(self._settings.temp_password_length)
        hashed = await asyncio.to_thread(hash_password, temp_password)
        new_user = User(
            email=email,
            name=name,
            role=role,
            hashed_password=hashed,
            status=STATUS_ACTIVE,
            is_first_login=True,
            created_by=actor_id,
        )
        try:
            user_id = await asyncio.to_thread(self._store.create_user, new_user)
        except IntegrityError as exc:
            raise Conflict("User already exists.") from exc
        user = await self._require_user(user_id)

        delivered = await asyncio.to_thread(
            self._mailer.notify,
            EMAIL_WELCOME,
            user.email,
            {
                "name": user.name,
                "email": user.email,
                "temp_password": temp_password,
                "login_url": self._settings.app_base_url,
            },
            "temp_password",
        )
        logger.info("User %s created with role %s by %s", user.id, role, actor_id)
        await self._record(
            actor_id,
            audit.USER_CREATED,
            {"target_user_id": user.id, "email": user.email, "role": role, "email_delivered": delivered},
            ip_address,
            user_agent,
        )
        return {"user": user.projection(), "temporary_password": temp_password, "email_sent": delivered}

    async def list_users(self) -> list[dict[str, Any]]:
        users = await asyncio.to_thread(self._store.list_users)
        return [
            {**u.projection(), "is_first_login": u.is_first_login, "created_at": u.created_at} for u in users
        ]

    async def get_user(self, user_id: int) -> dict[str, Any]:
        user = await self._require_user(user_id)
        active = await asyncio.to_thread(self._registry.count_active, user_id)
        return {
            **user.projection(),
            "is_first_login": user.is_first_login,
            "created_at": user.created_at,
            "created_by": user.created_by,
            "active_sessions": active,
        }

    async def update_user_status(
        self,
        user_id: int,
        status: str,
        actor_id: int,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> dict[str, Any]:
        """Change account status. Any non-ACTIVE status ends every session."""
        if status not in STATUSES:
            raise ValueError(f"Unknown status: {status!r}")
        if user_id == actor_id and status != STATUS_ACTIVE:
            raise Conflict("You cannot change the status of your own account.")
        user = await self._require_user(user_id)
        if status != STATUS_ACTIVE:
            await self._guard_last_admin(user)

        terminated = await asyncio.to_thread(
            self._store.set_status,
            user_id,
            status,
            end_sessions=status != STATUS_ACTIVE,
            now=self._clock().isoformat(),
        )
        if terminated is None:
            raise NotFound("User not found.")
        logger.info("User %s status %s -> %s by %s", user_id, user.status, status, actor_id)
        await self._record(
            actor_id,
            audit.USER_STATUS_UPDATED,
            {
                "target_user_id": user_id,
                "old_status": user.status,
                "new_status": status,
                "sessions_terminated": terminated,
            },
            ip_address,
            user_agent,
        )
        return await self.get_user(user_id)

    async def admin_reset_password(
        self,
        user_id: int,
        actor_id: int,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> dict[str, Any]:
        """Issue a new temporary password and end every session of the user."""
        user = await self._require_user(user_id)
        temp_password = generate_temporary_password(self._settings.temp_password_length)
        hashed = await asyncio.to_thread(hash_password, temp_password)
        terminated = await asyncio.to_thread(
            self._store.set_password_ending_sessions,
            user_id,
            hashed,
            is_first_login=True,
            now=self._clock().isoformat(),
        )
        if terminated is None:
            raise NotFound("User not found.")

        delivered = await asyncio.to_thread(
            self._mailer.notify,
            EMAIL_WELCOME,
            user.email,
            {
                "name": user.name,
                "email": user.email,
                "temp_password": temp_password,
                "login_url": self._settings.app_base_url,
            },
            "temp_password",
        )
        logger.info("Admin %s reset password of user %s", actor_id, user_id)
        await self._record(
            actor_id,
            audit.PASSWORD_RESET_BY_ADMIN,
            {"target_user_id": user_id, "sessions_terminated": terminated, "email_delivered": delivered},
            ip_address,
            user_agent,
        )
        return {
            "user": user.projection(),
            "temporary_password": temp_password,
            "email_sent": delivered,
            "sessions_terminated": terminated,
        }

    async def delete_user(
        self,
        user_id: int,
        actor_id: int,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        if user_id == actor_id:
            raise Conflict("You cannot delete your own account.")
        user = await self._require_user(user_id)
        await self._guard_last_admin(user)
        await asyncio.to_thread(self._store.delete_user, user_id)
        logger.info("User %s deleted by %s", user_id, actor_id)
        await self._record(
            actor_id,
            audit.USER_DELETED,
            {"target_user_id": user_id, "email": user.email, "name": user.name, "role": user.role},
            ip_address,
            user_agent,
        )

    async def list_devices(self) -> dict[str, Any]:
        """All device rows with owner email, plus summary counts."""
        devices: list[Device] = await asyncio.to_thread(self._registry.list_devices)
        users = {u.id: u for u in await asyncio.to_thread(self._store.list_users)}
        active = [d for d in devices if d.is_active]
        by_type = Counter(d.device_type or "unknown" for d in devices)
        return {
            "devices": [
                {
                    "id": d.id,
                    "user_id": d.user_id,
                    "user_email": users[d.user_id].email if d.user_id in users else None,
                    "device_name": d.device_name,
                    "device_type": d.device_type,
                    "browser": d.browser,
                    "os": d.os,
                    "ip_address": d.ip_address,
                    "is_active": d.is_active,
                    "last_active": d.last_active,
                    "created_at": d.created_at,
                }
                for d in devices
            ],
            "summary": {
                "total": len(devices),
                "active": len(active),
                "inactive": len(devices) - len(active),
                "users_with_active_session": len({d.user_id for d in active}),
                "by_type": dict(by_type),
            },
        }

    async def terminate_device(
        self,
        device_id: int,
        actor_id: int,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        device = await asyncio.to_thread(self._registry.terminate_device, device_id)
        await self._record(
            actor_id,
            audit.DEVICE_TERMINATED_BY_ADMIN,
            {"device_id": device_id, "target_user_id": device.user_id, "device_name": device.device_name},
            ip_address,
            user_agent,
        )

    async def list_audit_entries(
        self, limit: int = 100, action: str | None = None, user_id: int | None = None
    ) -> list[AuditEntry]:
        return await asyncio.to_thread(self._audit.list_entries, limit, action, user_id)
