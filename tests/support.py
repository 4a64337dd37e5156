"""
tests/support.py -- Test doubles, constants and seed helpers shared by the
test modules. Fixtures live in conftest.py.
"""

from __future__ import annotations

import os
import re
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

os.environ.setdefault("DEBUG", "true")

from sqlalchemy import event
from sqlalchemy.exc import OperationalError

from auth.fingerprint import DeviceInfo
from auth.models import ROLE_USER, STATUS_ACTIVE, User
from auth.passwords import hash_password
from auth.store import UserStore, _devices
from mailer.templates import RenderedEmail

# Known-good password that satisfies the policy.
PASSWORD = "Corr3ct-Horse"

CHROME_WIN = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
FIREFOX_MAC = "Mozilla/5.0 (Macintosh; Intel Mac OS X 14.2; rv:121.0) Gecko/20100101 Firefox/121.0"
IPHONE = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_2 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.2 Mobile/15E148 Safari/604.1"
)


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class Clock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@dataclass
class FakeMailer:
    """EmailPort double. notify() returns `delivered` and records every call."""

    delivered: bool = True
    sent: list[tuple[str, str, dict[str, Any]]] = field(default_factory=list)

    def notify(self, kind: str, recipient: str, template_data: dict[str, Any], secret_field: str | None = None) -> bool:
        self.sent.append((kind, recipient, dict(template_data)))
        return self.delivered

    def last(self, kind: str) -> dict[str, Any]:
        for sent_kind, _recipient, data in reversed(self.sent):
            if sent_kind == kind:
                return data
        raise AssertionError(f"no {kind} email was sent")


class RecordingTransport:
    """EmailTransport double for the HTTP tests -- keeps the rendered messages."""

    def __init__(self) -> None:
        self.messages: list[tuple[str, RenderedEmail]] = []

    def deliver(self, recipient: str, message: RenderedEmail) -> None:
        self.messages.append((recipient, message))

    def last_code(self, recipient: str) -> str:
        for to, message in reversed(self.messages):
            if to == recipient:
                match = re.search(r"verification code is: (\d{6})", message.text)
                if match:
                    return match.group(1)
        raise AssertionError(f"no reset code sent to {recipient}")

    def last_temp_password(self, recipient: str) -> str:
        for to, message in reversed(self.messages):
            if to == recipient:
                match = re.search(r"Temporary password: (\S+)", message.text)
                if match:
                    return match.group(1)
        raise AssertionError(f"no welcome email sent to {recipient}")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_user(
    store: UserStore,
    email: str,
    password: str | None = PASSWORD,
    role: str = ROLE_USER,
    status: str = STATUS_ACTIVE,
    is_first_login: bool = False,
    name: str | None = None,
) -> int:
    """Insert a user directly. bcrypt cost 4 keeps the suite fast; verify()
    reads the cost from the hash, so login still works."""
    return store.create_user(
        User(
            email=email,
            name=name,
            role=role,
            status=status,
            is_first_login=is_first_login,
            hashed_password=hash_password(password, rounds=4) if password else None,
        )
    )


def device(user_agent: str = CHROME_WIN, ip: str = "203.0.113.10") -> DeviceInfo:
    return DeviceInfo.from_request(user_agent, ip)


def insert_active_rows(store: UserStore, user_id: int, count: int, clock: Clock) -> None:
    """Seed several simultaneously active rows, one minute apart (oldest first).

    Login never produces this state; it stands in for rows left over from
    before a stricter session policy.
    """
    with store.engine.begin() as conn:
        for i in range(count):
            stamp = (clock() + timedelta(minutes=i)).isoformat()
            conn.execute(
                _devices.insert().values(
                    user_id=user_id,
                    session_fingerprint=f"{i:064d}",
                    device_fingerprint="",
                    is_active=1,
                    last_active=stamp,
                    created_at=stamp,
                )
            )


@contextmanager
def failing_writes(store: UserStore, table: str) -> Iterator[None]:
    """Make every UPDATE of `table` on this store raise OperationalError."""

    def fail(conn, cursor, statement, parameters, context, executemany):
        if statement.lstrip().upper().startswith(f"UPDATE {table.upper()}"):
            raise OperationalError(statement, parameters, Exception("disk I/O error"))

    event.listen(store.engine, "before_cursor_execute", fail)
    try:
        yield
    finally:
        event.remove(store.engine, "before_cursor_execute", fail)
