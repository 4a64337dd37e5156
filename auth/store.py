"""
auth/store.py -- SQLAlchemy Core persistence layer for users, device
sessions and the audit trail.

Pattern: Repository + Data Mapper. UserStore is the repository;
_row_to_user / _row_to_device / _row_to_audit are the mappers. Services never
touch SQL directly, and the store never makes policy decisions -- it exposes
the primitive state transitions and keeps each one atomic.

Security:
  All queries use bound parameters. No f-strings in SQL.

Concurrency:
  activate_session() and trim_active_sessions() run inside one transaction
  whose FIRST statement bumps users.session_version. That write takes the
  per-user serialization point (a RESERVED lock on SQLite, a row lock on
  PostgreSQL), so two concurrent logins for the same user can never both see
  "no active sessions" and both end up active. Everything after the bump --
  deactivate all, upsert the new row -- commits or rolls back as a unit.

  complete_password_reset() and swap_reset_challenge() are compare-and-swap
  updates: the WHERE clause includes the expected challenge digest, so a
  replayed code or token matches zero rows.

  set_password_ending_sessions() and set_status(end_sessions=True) write the
  account change and deactivate every session in one transaction: either
  both happen or neither does.

Audit table:
  audit_logs.actor_id deliberately has no foreign key. Deleting a user must
  not rewrite or drop audit rows -- the trail is append-only.

Layer rule: no imports from api/ or mailer/.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import (
    AuditEntry,
    CodeIssued,
    Device,
    NoChallenge,
    ResetChallenge,
    STATUS_ACTIVE,
    STATUS_PENDING_PASSWORD_RESET,
    TokenIssued,
    User,
)

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'sessionguard_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(255)),
    Column("hashed_password", Text),  # NULL until an admin issues a password
    Column("role", String(16), nullable=False, server_default="USER"),
    Column("status", String(32), nullable=False, server_default="ACTIVE"),
    Column("is_first_login", Integer, nullable=False, server_default="1"),
    Column("last_login", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("created_by", Integer),
    # Reset challenge: "none" | "code" | "token" (see auth.models)
    Column("reset_state", String(8), nullable=False, server_default="none"),
    Column("reset_digest", String(64)),  # HMAC-SHA256 hex of code or token
    Column("reset_expires_at", String(32)),
    Column("reset_attempts", Integer, nullable=False, server_default="0"),
    Column("reset_failures", Integer, nullable=False, server_default="0"),  # wrong code guesses
    # Bumped at the start of every session transition -- serialization point.
    Column("session_version", Integer, nullable=False, server_default="0"),
)

_devices = Table(
    "devices",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("session_fingerprint", String(64), nullable=False, unique=True),
    Column("device_fingerprint", String(64), nullable=False, server_default=""),
    Column("device_name", String(255)),
    Column("device_type", String(16)),
    Column("browser", String(128)),
    Column("os", String(128)),
    Column("ip_address", String(45)),  # fits IPv6
    Column("user_agent", Text),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("last_active", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Index("idx_devices_user_active", "user_id", "is_active"),
)

_audit_logs = Table(
    "audit_logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("actor_id", Integer),  # no FK -- see module docstring
    Column("action", String(64), nullable=False),
    Column("details", Text),  # JSON object
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("created_at", String(32), nullable=False),
    Index("idx_audit_logs_action", "action"),
    Index("idx_audit_logs_actor_id", "actor_id"),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign-key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. foreign_keys=ON is required for the
    devices.user_id ON DELETE CASCADE to fire.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _challenge_columns(challenge: ResetChallenge) -> dict:
    if isinstance(challenge, CodeIssued):
        return {
            "reset_state": CodeIssued.state,
            "reset_digest": challenge.digest,
            "reset_expires_at": challenge.expires_at.isoformat(),
            "reset_attempts": challenge.attempts,
            "reset_failures": challenge.failures,
        }
    if isinstance(challenge, TokenIssued):
        return {
            "reset_state": TokenIssued.state,
            "reset_digest": challenge.digest,
            "reset_expires_at": challenge.expires_at.isoformat(),
            "reset_attempts": 0,
            "reset_failures": 0,
        }
    return {
        "reset_state": NoChallenge.state,
        "reset_digest": None,
        "reset_expires_at": None,
        "reset_attempts": 0,
        "reset_failures": 0,
    }


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User, Device and AuditEntry entities.

    Usage:
        store = UserStore("sqlite:///auth.db")
        uid = store.create_user(User(email="a@x.com", hashed_password=hash_password("...")))
        device, terminated = store.activate_session(Device(user_id=uid, session_fingerprint=fp))
        store.close()

    The process entrypoint (FastAPI lifespan or CLI) owns the instance and is
    the only place that calls close().
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            # Concurrent writers wait on the lock instead of failing at once.
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = 30
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        """Return True if at least one user record exists."""
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Callers treat that as a Conflict -- a concurrent request may have
        created the same account between the existence check and the insert.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=_normalize_email(user.email),
                    name=user.name,
                    hashed_password=user.hashed_password,
                    role=user.role,
                    status=user.status,
                    is_first_login=1 if user.is_first_login else 0,
                    created_at=_now_iso(),
                    created_by=user.created_by,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == _normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users, newest first. Admin-only operation."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.created_at.desc(), _users.c.id.desc())).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable profile fields on an existing user.

        Accepted fields: name, role, status, is_first_login, hashed_password.
        Returns True if a row was updated, False if user_id was not found.
        """
        if "is_first_login" in fields:
            fields["is_first_login"] = 1 if fields["is_first_login"] else 0
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def count_active_admins(self) -> int:
        """Return the number of ACTIVE admin users."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_users)
                .where((_users.c.role == "ADMIN") & (_users.c.status == STATUS_ACTIVE))
            ).scalar()
        return result or 0

    def delete_user(self, user_id: int) -> bool:
        """Permanently delete a user and every device row it owns.

        Devices are deleted explicitly in the same transaction so the cascade
        does not depend on the backend's foreign-key settings. Audit rows are
        left untouched.
        """
        with self.engine.begin() as conn:
            conn.execute(_devices.delete().where(_devices.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    def update_last_login(self, user_id: int, now: str | None = None) -> str:
        """Stamp last_login for the given user and return the stored value."""
        stamp = now or _now_iso()
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=stamp))
            conn.commit()
        return stamp

    def set_password(
        self,
        user_id: int,
        hashed_password: str,
        *,
        is_first_login: bool,
        status: str | None = None,
    ) -> bool:
        """Replace the password hash and clear any reset challenge."""
        values = {
            "hashed_password": hashed_password,
            "is_first_login": 1 if is_first_login else 0,
            **_challenge_columns(NoChallenge()),
        }
        if status is not None:
            values["status"] = status
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    def set_password_ending_sessions(
        self,
        user_id: int,
        hashed_password: str,
        *,
        is_first_login: bool,
        now: str | None = None,
    ) -> int | None:
        """set_password() and deactivate every session of the user, in one transaction.

        Returns the number of sessions deactivated, or None if the user does
        not exist. A failure leaves both the old password and the old
        sessions in place.
        """
        values = {
            "hashed_password": hashed_password,
            "is_first_login": 1 if is_first_login else 0,
            **_challenge_columns(NoChallenge()),
        }
        with self.engine.begin() as conn:
            return self._update_ending_sessions(conn, user_id, values, now or _now_iso())

    def set_status(self, user_id: int, status: str, *, end_sessions: bool, now: str | None = None) -> int | None:
        """Change account status, optionally deactivating every session in the same transaction.

        Returns the number of sessions deactivated (0 when end_sessions is
        False), or None if the user does not exist.
        """
        with self.engine.begin() as conn:
            if end_sessions:
                return self._update_ending_sessions(conn, user_id, {"status": status}, now or _now_iso())
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(status=status))
            return 0 if result.rowcount else None

    @staticmethod
    def _update_ending_sessions(conn, user_id: int, values: dict, stamp: str) -> int | None:
        result = conn.execute(
            _users.update()
            .where(_users.c.id == user_id)
            .values(session_version=_users.c.session_version + 1, **values)
        )
        if result.rowcount == 0:
            return None
        deactivated = conn.execute(
            _devices.update()
            .where((_devices.c.user_id == user_id) & (_devices.c.is_active == 1))
            .values(is_active=0, last_active=stamp)
        )
        return deactivated.rowcount

    # ------------------------------------------------------------------
    # Reset challenge
    # ------------------------------------------------------------------

    def set_reset_challenge(self, user_id: int, challenge: ResetChallenge) -> None:
        """Unconditionally replace the user's reset challenge."""
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(**_challenge_columns(challenge)))
            conn.commit()

    def swap_reset_challenge(
        self,
        user_id: int,
        expected: ResetChallenge,
        replacement: ResetChallenge,
    ) -> bool:
        """Compare-and-swap the reset challenge.

        Succeeds only if the stored state and digest still equal `expected`
        (and, for codes, the attempt counter). Two concurrent verifications
        of the same code therefore yield exactly one token.
        """
        cond = (_users.c.id == user_id) & (_users.c.reset_state == expected.state)
        if isinstance(expected, (CodeIssued, TokenIssued)):
            cond = cond & (_users.c.reset_digest == expected.digest)
        if isinstance(expected, CodeIssued):
            cond = cond & (_users.c.reset_attempts == expected.attempts)
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(cond).values(**_challenge_columns(replacement)))
            conn.commit()
        return result.rowcount > 0

    def record_reset_failure(self, user_id: int, code_digest: str, max_failures: int) -> int | None:
        """Count one wrong guess against the outstanding code.

        The increment is a single UPDATE, so concurrent wrong guesses are all
        counted. When the count reaches `max_failures` the challenge is
        cleared in the same transaction and the code can no longer be used.

        Returns the new failure count, or None when `code_digest` is no longer
        the user's outstanding code.
        """
        cond = (
            (_users.c.id == user_id)
            & (_users.c.reset_state == CodeIssued.state)
            & (_users.c.reset_digest == code_digest)
        )
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(cond).values(reset_failures=_users.c.reset_failures + 1))
            if result.rowcount == 0:
                return None
            failures = conn.execute(select(_users.c.reset_failures).where(_users.c.id == user_id)).scalar()
            if failures >= max_failures:
                conn.execute(_users.update().where(cond).values(**_challenge_columns(NoChallenge())))
        return failures

    def complete_password_reset(
        self,
        user_id: int,
        token_digest: str,
        hashed_password: str,
        now: str | None = None,
    ) -> int | None:
        """Consume a verification token, write the new password, end all sessions.

        One transaction:
          1. compare-and-swap on (reset_state='token', reset_digest) -- sets the
             new hash, clears the challenge and is_first_login, lifts a
             PENDING_PASSWORD_RESET status back to ACTIVE, bumps session_version;
          2. deactivate every device row of the user.

        Returns the number of sessions deactivated, or None when the token was
        already consumed or replaced (zero rows matched in step 1).
        """
        stamp = now or _now_iso()
        with self.engine.begin() as conn:
            row = conn.execute(select(_users.c.status).where(_users.c.id == user_id)).fetchone()
            if row is None:
                return None
            values = {
                "hashed_password": hashed_password,
                "is_first_login": 0,
                "session_version": _users.c.session_version + 1,
                **_challenge_columns(NoChallenge()),
            }
            if row.status == STATUS_PENDING_PASSWORD_RESET:
                values["status"] = STATUS_ACTIVE
            result = conn.execute(
                _users.update()
                .where(
                    (_users.c.id == user_id)
                    & (_users.c.reset_state == TokenIssued.state)
                    & (_users.c.reset_digest == token_digest)
                )
                .values(**values)
            )
            if result.rowcount == 0:
                return None
            deactivated = conn.execute(
                _devices.update()
                .where((_devices.c.user_id == user_id) & (_devices.c.is_active == 1))
                .values(is_active=0, last_active=stamp)
            )
            return deactivated.rowcount

    # ------------------------------------------------------------------
    # Device sessions
    # ------------------------------------------------------------------

    def activate_session(self, device: Device, now: str | None = None) -> tuple[Device, int]:
        """Deactivate all of the user's sessions, then upsert `device` as active.

        Returns (stored device, number of OTHER sessions that were active and
        got deactivated). A re-login from the same session fingerprint is not
        counted as a termination.

        Collisions on session_fingerprint overwrite the existing row, including
        its owner: the fingerprint belongs to whoever logged in last.
        """
        stamp = now or _now_iso()
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == device.user_id)
                .values(session_version=_users.c.session_version + 1)
            )
            terminated = conn.execute(
                _devices.update()
                .where(
                    (_devices.c.user_id == device.user_id)
                    & (_devices.c.is_active == 1)
                    & (_devices.c.session_fingerprint != device.session_fingerprint)
                )
                .values(is_active=0, last_active=stamp)
            ).rowcount

            values = {
                "user_id": device.user_id,
                "device_fingerprint": device.device_fingerprint,
                "device_name": device.device_name,
                "device_type": device.device_type,
                "browser": device.browser,
                "os": device.os,
                "ip_address": device.ip_address,
                "user_agent": device.user_agent,
                "is_active": 1,
                "last_active": stamp,
            }
            existing = conn.execute(
                select(_devices.c.id).where(_devices.c.session_fingerprint == device.session_fingerprint)
            ).fetchone()
            if existing is not None:
                conn.execute(_devices.update().where(_devices.c.id == existing.id).values(**values))
                device_id = existing.id
            else:
                result = conn.execute(
                    _devices.insert().values(
                        session_fingerprint=device.session_fingerprint,
                        created_at=stamp,
                        **values,
                    )
                )
                device_id = result.inserted_primary_key[0]
            row = conn.execute(_devices.select().where(_devices.c.id == device_id)).fetchone()
        return _row_to_device(row), terminated

    def deactivate_all(self, user_id: int, now: str | None = None) -> int:
        """Set every active session of the user inactive. Returns the count."""
        stamp = now or _now_iso()
        with self.engine.begin() as conn:
            conn.execute(
                _users.update().where(_users.c.id == user_id).values(session_version=_users.c.session_version + 1)
            )
            result = conn.execute(
                _devices.update()
                .where((_devices.c.user_id == user_id) & (_devices.c.is_active == 1))
                .values(is_active=0, last_active=stamp)
            )
        return result.rowcount

    def deactivate_session(self, user_id: int, session_fingerprint: str, now: str | None = None) -> bool:
        """Deactivate one session of the user. False if no such row for that user."""
        stamp = now or _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _devices.update()
                .where((_devices.c.user_id == user_id) & (_devices.c.session_fingerprint == session_fingerprint))
                .values(is_active=0, last_active=stamp)
            )
            conn.commit()
        return result.rowcount > 0

    def deactivate_device(self, device_id: int, now: str | None = None) -> Device | None:
        """Deactivate a device row by primary key and return it (None if absent)."""
        stamp = now or _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                _devices.update().where(_devices.c.id == device_id).values(is_active=0, last_active=stamp)
            )
            if result.rowcount == 0:
                return None
            row = conn.execute(_devices.select().where(_devices.c.id == device_id)).fetchone()
        return _row_to_device(row)

    def trim_active_sessions(self, user_id: int, keep: int, now: str | None = None) -> list[Device]:
        """Keep the `keep` most recently active sessions, deactivate the rest.

        Runs under the same per-user serialization point as activate_session().
        Returns the deactivated rows (oldest first).
        """
        stamp = now or _now_iso()
        with self.engine.begin() as conn:
            conn.execute(
                _users.update().where(_users.c.id == user_id).values(session_version=_users.c.session_version + 1)
            )
            rows = conn.execute(
                _devices.select()
                .where((_devices.c.user_id == user_id) & (_devices.c.is_active == 1))
                .order_by(_devices.c.last_active.desc(), _devices.c.id.desc())
            ).fetchall()
            surplus = list(reversed(rows[keep:]))
            if surplus:
                conn.execute(
                    _devices.update()
                    .where(_devices.c.id.in_([r.id for r in surplus]))
                    .values(is_active=0, last_active=stamp)
                )
        return [_row_to_device(r) for r in surplus]

    def touch_session(
        self,
        user_id: int,
        session_fingerprint: str,
        now: str | None = None,
        ip_address: str | None = None,
    ) -> bool:
        """Refresh last_active of an ACTIVE session. No-op (False) otherwise."""
        values: dict = {"last_active": now or _now_iso()}
        if ip_address:
            values["ip_address"] = ip_address
        with self.engine.connect() as conn:
            result = conn.execute(
                _devices.update()
                .where(
                    (_devices.c.user_id == user_id)
                    & (_devices.c.session_fingerprint == session_fingerprint)
                    & (_devices.c.is_active == 1)
                )
                .values(**values)
            )
            conn.commit()
        return result.rowcount > 0

    def get_active_session(self, user_id: int, session_fingerprint: str) -> Device | None:
        """Return the ACTIVE row with this exact fingerprint for this user, else None."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _devices.select().where(
                    (_devices.c.user_id == user_id)
                    & (_devices.c.session_fingerprint == session_fingerprint)
                    & (_devices.c.is_active == 1)
                )
            ).fetchone()
        return _row_to_device(row) if row is not None else None

    def get_device(self, device_id: int) -> Device | None:
        with self.engine.connect() as conn:
            row = conn.execute(_devices.select().where(_devices.c.id == device_id)).fetchone()
        return _row_to_device(row) if row is not None else None

    def list_devices(self, user_id: int | None = None) -> list[Device]:
        """Return device rows (optionally for one user), most recently active first."""
        query = _devices.select().order_by(_devices.c.last_active.desc(), _devices.c.id.desc())
        if user_id is not None:
            query = query.where(_devices.c.user_id == user_id)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_device(r) for r in rows]

    def count_active_sessions(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_devices)
                .where((_devices.c.user_id == user_id) & (_devices.c.is_active == 1))
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Audit trail (append-only)
    # ------------------------------------------------------------------

    def append_audit(self, entry: AuditEntry) -> int:
        """Insert an audit row. There is deliberately no update or delete."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _audit_logs.insert().values(
                    actor_id=entry.actor_id,
                    action=entry.action,
                    details=json.dumps(entry.details or {}, default=str),
                    ip_address=entry.ip_address,
                    user_agent=entry.user_agent,
                    created_at=entry.created_at or _now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def list_audit(
        self,
        limit: int = 100,
        action: str | None = None,
        actor_id: int | None = None,
    ) -> list[AuditEntry]:
        """Return audit rows newest first, optionally filtered."""
        query = _audit_logs.select().order_by(_audit_logs.c.id.desc()).limit(limit)
        if action is not None:
            query = query.where(_audit_logs.c.action == action)
        if actor_id is not None:
            query = query.where(_audit_logs.c.actor_id == actor_id)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_audit(r) for r in rows]

    def ping(self) -> bool:
        """Cheap connectivity probe for the health endpoint."""
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_challenge(row) -> ResetChallenge:
    if row.reset_state == CodeIssued.state and row.reset_digest and row.reset_expires_at:
        return CodeIssued(
            digest=row.reset_digest,
            expires_at=datetime.fromisoformat(row.reset_expires_at),
            attempts=row.reset_attempts or 0,
            failures=row.reset_failures or 0,
        )
    if row.reset_state == TokenIssued.state and row.reset_digest and row.reset_expires_at:
        return TokenIssued(
            digest=row.reset_digest,
            expires_at=datetime.fromisoformat(row.reset_expires_at),
        )
    return NoChallenge()


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        hashed_password=row.hashed_password,
        role=row.role,
        status=row.status,
        is_first_login=bool(row.is_first_login),
        last_login=row.last_login,
        created_at=row.created_at,
        created_by=row.created_by,
        reset=_row_to_challenge(row),
    )


def _row_to_device(row) -> Device:
    return Device(
        id=row.id,
        user_id=row.user_id,
        session_fingerprint=row.session_fingerprint,
        device_fingerprint=row.device_fingerprint,
        device_name=row.device_name,
        device_type=row.device_type,
        browser=row.browser,
        os=row.os,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        is_active=bool(row.is_active),
        last_active=row.last_active,
        created_at=row.created_at,
    )


def _row_to_audit(row) -> AuditEntry:
    try:
        details = json.loads(row.details) if row.details else {}
    except ValueError:
        details = {"raw": row.details}
    return AuditEntry(
        id=row.id,
        actor_id=row.actor_id,
        action=row.action,
        details=details,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        created_at=row.created_at,
    )
