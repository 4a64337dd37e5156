"""
auth/audit.py -- Append-only audit trail of security-relevant transitions.

AuditSink is the port the services depend on; AuditLog is the store-backed
implementation. Services call record() at the END of a transition, after the
state change has committed. A failing audit write is logged and swallowed
there: the transition already happened and must not be reported as failed.

Action tags are plain string constants stored as-is in audit_logs.action.

Layer rule: no imports from api/ or mailer/.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from sqlalchemy.exc import SQLAlchemyError

from auth.models import AuditEntry
from auth.store import UserStore

logger = logging.getLogger("sessionguard.audit")

USER_LOGIN = "USER_LOGIN"
USER_LOGOUT = "USER_LOGOUT"
SESSIONS_TERMINATED = "SESSIONS_TERMINATED"
SESSION_TERMINATED = "SESSION_TERMINATED"
SESSION_LIMIT_ENFORCED = "SESSION_LIMIT_ENFORCED"
SESSION_CHECK_FAILED = "SESSION_CHECK_FAILED"
PASSWORD_CHANGED = "PASSWORD_CHANGED"
PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"
PASSWORD_RESET_CODE_RESENT = "PASSWORD_RESET_CODE_RESENT"
PASSWORD_RESET_CODE_VERIFIED = "PASSWORD_RESET_CODE_VERIFIED"
PASSWORD_RESET_CODE_REJECTED = "PASSWORD_RESET_CODE_REJECTED"
PASSWORD_RESET_COMPLETED = "PASSWORD_RESET_COMPLETED"
PASSWORD_RESET_BY_ADMIN = "PASSWORD_RESET_BY_ADMIN"
USER_CREATED = "USER_CREATED"
USER_STATUS_UPDATED = "USER_STATUS_UPDATED"
USER_DELETED = "USER_DELETED"
DEVICE_TERMINATED_BY_ADMIN = "DEVICE_TERMINATED_BY_ADMIN"


class AuditSink(Protocol):
    def record(
        self,
        actor_id: int | None,
        action: str,
        details: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None: ...


class AuditLog:
    """Store-backed AuditSink."""

    def __init__(self, store: UserStore) -> None:
        self._store = store

    def record(
        self,
        actor_id: int | None,
        action: str,
        details: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        entry = AuditEntry(
            action=action,
            actor_id=actor_id,
            details=details or {},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        try:
            self._store.append_audit(entry)
        except SQLAlchemyError:
            logger.exception("Failed to write audit entry %s for actor %s", action, actor_id)

    def list_entries(
        self,
        limit: int = 100,
        action: str | None = None,
        user_id: int | None = None,
    ) -> list[AuditEntry]:
        """Newest first. limit is clamped to 1..500."""
        limit = max(1, min(limit, 500))
        return self._store.list_audit(limit=limit, action=action, actor_id=user_id)
