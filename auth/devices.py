"""
auth/devices.py -- Device Registry: the session state machine over device rows.

Row states: ACTIVE / INACTIVE (devices.is_active). Transitions:

  login       deactivate every active row of the user, upsert the caller's
              row (keyed by session fingerprint) as active. One transaction.
  heartbeat   refresh last_active of the caller's row if it is active.
  terminate   one row (fingerprint or device id) or all rows -> inactive.
  sweep       keep the N most recently active rows, deactivate the rest.

Invariant: at most one active row per user after any login.

Serialization is two-level. An in-process lock (striped by user id) orders
logins arriving at this worker; the store transaction (opened by the
session_version bump) orders logins across workers and processes. Either one
alone is enough for its scope.

Methods here are blocking. AuthService calls them through asyncio.to_thread.

Layer rule: no imports from api/ or mailer/.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError

from auth.errors import InternalError, NotFound
from auth.fingerprint import DeviceInfo, short
from auth.models import ALL_SESSIONS, Device
from auth.store import UserStore

logger = logging.getLogger("sessionguard.devices")

# Users share a fixed pool of locks. Two users on one stripe only wait for
# each other; the pool never grows.
LOCK_STRIPES = 64


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeviceRegistry:
    def __init__(self, store: UserStore, clock: Callable[[], datetime] = _utcnow) -> None:
        self._store = store
        self._clock = clock
        self._locks = tuple(threading.Lock() for _ in range(LOCK_STRIPES))

    def _lock_for(self, user_id: int) -> threading.Lock:
        return self._locks[user_id % LOCK_STRIPES]

    def _now(self) -> str:
        return self._clock().isoformat()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def login(self, user_id: int, info: DeviceInfo) -> tuple[Device, int]:
        """Make `info` the one active session of the user.

        Returns (active device row, number of other sessions terminated).
        On a store failure every session of the user is deactivated on a best
        effort basis and InternalError is raised.
        """
        cls = info.classification
        device = Device(
            user_id=user_id,
            session_fingerprint=info.session_fingerprint,
            device_fingerprint=info.device_fingerprint,
            device_name=cls.device_name,
            device_type=cls.device_type,
            browser=cls.browser,
            os=cls.os,
            ip_address=info.ip_address,
            user_agent=info.user_agent,
        )
        with self._lock_for(user_id):
            try:
                stored, terminated = self._store.activate_session(device, now=self._now())
            except SQLAlchemyError as exc:
                logger.exception("Session activation failed for user %s", user_id)
                self.fail_closed(user_id)
                raise InternalError("Could not establish the session.") from exc

        logger.info(
            "Session %s active for user %s (%s, %s); %d other session(s) terminated",
            short(stored.session_fingerprint),
            user_id,
            stored.device_type,
            stored.browser,
            terminated,
        )
        return stored, terminated

    def fail_closed(self, user_id: int) -> None:
        try:
            self._store.deactivate_all(user_id, now=self._now())
        except SQLAlchemyError:
            logger.exception("Fallback deactivation also failed for user %s", user_id)

    def heartbeat(self, user_id: int, session_fingerprint: str, ip_address: str | None = None) -> bool:
        """Refresh last_active. Returns False if the session is not active."""
        return self._store.touch_session(user_id, session_fingerprint, now=self._now(), ip_address=ip_address)

    def terminate(self, user_id: int, target: str) -> int:
        """Deactivate one session (by fingerprint) or ALL_SESSIONS of a user.

        Returns the number of rows deactivated. A fingerprint the user does
        not own raises NotFound.
        """
        if target == ALL_SESSIONS:
            with self._lock_for(user_id):
                count = self._store.deactivate_all(user_id, now=self._now())
            logger.info("Terminated all %d session(s) of user %s", count, user_id)
            return count
        if not self._store.deactivate_session(user_id, target, now=self._now()):
            raise NotFound("Session not found.")
        logger.info("Terminated session %s of user %s", short(target), user_id)
        return 1

    def terminate_device(self, device_id: int) -> Device:
        device = self._store.deactivate_device(device_id, now=self._now())
        if device is None:
            raise NotFound("Device not found.")
        logger.info("Terminated device %s of user %s", device_id, device.user_id)
        return device

    def enforce_session_limit(self, user_id: int, max_sessions: int) -> list[Device]:
        """Deactivate all but the `max_sessions` most recently active rows."""
        if max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")
        with self._lock_for(user_id):
            removed = self._store.trim_active_sessions(user_id, keep=max_sessions, now=self._now())
        if removed:
            logger.info(
                "Session limit %d for user %s: deactivated %d session(s)", max_sessions, user_id, len(removed)
            )
        return removed

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_session_valid(self, user_id: int, session_fingerprint: str) -> bool:
        """True only for an exact-fingerprint row of this user that is active."""
        if not session_fingerprint:
            return False
        return self._store.get_active_session(user_id, session_fingerprint) is not None

    def list_devices(self, user_id: int | None = None) -> list[Device]:
        return self._store.list_devices(user_id)

    def count_active(self, user_id: int) -> int:
        return self._store.count_active_sessions(user_id)
