"""Unit tests for auth/service.py -- AuthService orchestration.

Covers:
- login: single session across browsers, error codes and their order,
  first-login flag, last_login stamp, audit entries, fail closed
- logout, heartbeat and check_session_valid (with SESSION_CHECK_FAILED audit)
- change_password_from_temporary
- admin operations: create, status change, last-admin guard, delete,
  admin password reset, device listing, session limit, audit listing
- admin password reset and suspension change nothing if ending sessions fails
"""

import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from auth import audit
from auth.errors import Conflict, InternalError, InvalidCredentials, NotFound, WeakPassword
from auth.models import (
    ALL_SESSIONS,
    EMAIL_WELCOME,
    ROLE_ADMIN,
    STATUS_ACTIVE,
    STATUS_PENDING_PASSWORD_RESET,
    STATUS_SUSPENDED,
)
from auth.passwords import authenticate_user
from tests.support import (
    CHROME_WIN,
    FIREFOX_MAC,
    IPHONE,
    PASSWORD,
    device,
    failing_writes,
    insert_active_rows,
    make_user,
)

EMAIL = "alice@example.com"
NEW_PASSWORD = "N3w-Passw0rd!"


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def uid(store):
    return make_user(store, EMAIL, name="Alice")


@pytest.fixture
def admin_id(store):
    return make_user(store, "admin@example.com", role=ROLE_ADMIN, name="Admin")


class TestLogin:
    def test_second_browser_terminates_first(self, services, uid):
        """Sign in on Chrome, then on Firefox: Chrome's session is over."""
        chrome, firefox = device(CHROME_WIN), device(FIREFOX_MAC)
        first = run(services.service.login(EMAIL, PASSWORD, chrome))
        assert first.success
        assert first.terminated_sessions == 0
        assert run(services.service.check_session_valid(uid, chrome.session_fingerprint))

        second = run(services.service.login(EMAIL, PASSWORD, firefox))
        assert second.success
        assert second.terminated_sessions == 1
        assert second.session_fingerprint == firefox.session_fingerprint
        assert run(services.service.check_session_valid(uid, firefox.session_fingerprint))
        assert not run(services.service.check_session_valid(uid, chrome.session_fingerprint))

        (terminated,) = services.audit.list_entries(action=audit.SESSIONS_TERMINATED)
        assert terminated.details["count"] == 1
        assert terminated.details["reason"] == "new_login"

    def test_success_result(self, services, uid):
        result = run(services.service.login(EMAIL, PASSWORD, device()))
        assert result.error is None
        assert result.user["id"] == uid
        assert result.user["email"] == EMAIL
        assert "hashed_password" not in result.user
        assert result.user["last_login"] == services.clock().isoformat()
        assert services.store.get_by_id(uid).last_login == services.clock().isoformat()
        assert result.requires_password_reset is False

    def test_email_is_case_insensitive(self, services, uid):
        assert run(services.service.login("ALICE@example.com", PASSWORD, device())).success

    def test_first_login_requires_password_reset(self, services):
        make_user(services.store, "new@example.com", is_first_login=True)
        result = run(services.service.login("new@example.com", PASSWORD, device()))
        assert result.success
        assert result.requires_password_reset is True

    def test_unknown_email_and_wrong_password_share_a_code(self, services, uid):
        unknown = run(services.service.login("ghost@example.com", PASSWORD, device()))
        wrong = run(services.service.login(EMAIL, "Wr0ng-Horse!", device()))
        assert (unknown.success, unknown.error) == (False, "invalid_credentials")
        assert (wrong.success, wrong.error) == (False, "invalid_credentials")
        assert unknown.user is None and wrong.user is None

    def test_account_without_password(self, services):
        make_user(services.store, "nopw@example.com", password=None)
        result = run(services.service.login("nopw@example.com", "", device()))
        assert result.error == "invalid_credentials"

    @pytest.mark.parametrize("status", [STATUS_SUSPENDED, STATUS_PENDING_PASSWORD_RESET])
    def test_non_active_account_is_disabled(self, services, status):
        uid = make_user(services.store, "off@example.com", status=status)
        result = run(services.service.login("off@example.com", PASSWORD, device()))
        assert result.error == "account_disabled"
        assert services.store.count_active_sessions(uid) == 0

    def test_status_checked_before_password(self, services):
        make_user(services.store, "off@example.com", status=STATUS_SUSPENDED)
        result = run(services.service.login("off@example.com", "Wr0ng-Horse!", device()))
        assert result.error == "account_disabled"

    def test_failed_login_leaves_sessions_alone(self, services, uid):
        run(services.service.login(EMAIL, PASSWORD, device(CHROME_WIN)))
        run(services.service.login(EMAIL, "Wr0ng-Horse!", device(FIREFOX_MAC)))
        assert services.store.count_active_sessions(uid) == 1

    def test_login_is_audited(self, services, uid):
        run(services.service.login(EMAIL, PASSWORD, device(IPHONE, ip="198.51.100.5")))
        (entry,) = services.audit.list_entries(action=audit.USER_LOGIN)
        assert entry.actor_id == uid
        assert entry.ip_address == "198.51.100.5"
        assert entry.user_agent == IPHONE
        assert entry.details["device_type"] == "mobile"
        assert services.audit.list_entries(action=audit.SESSIONS_TERMINATED) == []

    def test_last_login_failure_fails_closed(self, services, uid, monkeypatch):
        def broken(*args, **kwargs):
            raise OperationalError("UPDATE users", {}, Exception("disk I/O error"))

        monkeypatch.setattr(services.store, "update_last_login", broken)
        with pytest.raises(InternalError):
            run(services.service.login(EMAIL, PASSWORD, device()))
        assert services.store.count_active_sessions(uid) == 0


class TestSessionLifecycle:
    def test_logout_is_idempotent(self, services, uid):
        info = device()
        run(services.service.login(EMAIL, PASSWORD, info))
        assert run(services.service.logout(uid, info.session_fingerprint)) == 1
        assert run(services.service.logout(uid, info.session_fingerprint)) == 1
        assert run(services.service.logout(uid, "f" * 64)) == 0
        assert not run(services.service.check_session_valid(uid, info.session_fingerprint))
        assert len(services.audit.list_entries(action=audit.USER_LOGOUT)) == 3

    def test_failed_check_is_audited(self, services, uid):
        assert not run(services.service.check_session_valid(uid, "f" * 64, "203.0.113.1", CHROME_WIN))
        (entry,) = services.audit.list_entries(action=audit.SESSION_CHECK_FAILED)
        assert entry.actor_id == uid
        assert entry.ip_address == "203.0.113.1"

    def test_successful_check_is_not_audited(self, services, uid):
        info = device()
        run(services.service.login(EMAIL, PASSWORD, info))
        assert run(services.service.check_session_valid(uid, info.session_fingerprint))
        assert services.audit.list_entries(action=audit.SESSION_CHECK_FAILED) == []

    def test_heartbeat(self, services, uid):
        info = device()
        run(services.service.login(EMAIL, PASSWORD, info))
        services.clock.advance(minutes=1)
        assert run(services.service.heartbeat(uid, info.session_fingerprint)) is True
        run(services.service.login(EMAIL, PASSWORD, device(FIREFOX_MAC)))
        assert run(services.service.heartbeat(uid, info.session_fingerprint)) is False

    def test_terminate_all(self, services, uid, admin_id):
        run(services.service.login(EMAIL, PASSWORD, device()))
        assert run(services.service.terminate_session(uid, ALL_SESSIONS, actor_id=admin_id)) == 1
        (entry,) = services.audit.list_entries(action=audit.SESSION_TERMINATED)
        assert entry.actor_id == admin_id
        assert entry.details["target_user_id"] == uid
        assert entry.details["target"] == ALL_SESSIONS

    def test_terminate_unknown_user(self, services):
        with pytest.raises(NotFound):
            run(services.service.terminate_session(4242, ALL_SESSIONS))

    def test_enforce_session_limit_defaults_to_one(self, services, uid):
        insert_active_rows(services.store, uid, 3, services.clock)
        assert run(services.service.enforce_session_limit(uid)) == 2
        assert services.store.count_active_sessions(uid) == 1
        (entry,) = services.audit.list_entries(action=audit.SESSION_LIMIT_ENFORCED)
        assert entry.details["max_sessions"] == 1
        assert entry.details["terminated"] == 2


class TestChangePassword:
    def test_replaces_temporary_password(self, services):
        uid = make_user(services.store, "new@example.com", is_first_login=True)
        info = device()
        run(services.service.login("new@example.com", PASSWORD, info))

        assert run(services.service.change_password_from_temporary(uid, PASSWORD, NEW_PASSWORD)) == {"ok": True}

        user = services.store.get_by_id(uid)
        assert user.is_first_login is False
        assert authenticate_user(services.store, "new@example.com", NEW_PASSWORD) is not None
        # The session that changed the password stays signed in.
        assert run(services.service.check_session_valid(uid, info.session_fingerprint))
        (entry,) = services.audit.list_entries(action=audit.PASSWORD_CHANGED)
        assert entry.details == {"was_first_login": True}

    def test_wrong_current_password(self, services, uid):
        with pytest.raises(InvalidCredentials):
            run(services.service.change_password_from_temporary(uid, "Wr0ng-Horse!", NEW_PASSWORD))

    def test_weak_new_password(self, services, uid):
        with pytest.raises(WeakPassword):
            run(services.service.change_password_from_temporary(uid, PASSWORD, "password"))

    def test_same_password_rejected(self, services, uid):
        with pytest.raises(WeakPassword):
            run(services.service.change_password_from_temporary(uid, PASSWORD, PASSWORD))


class TestAdminUsers:
    def test_create_user(self, services, admin_id):
        created = run(services.service.create_user("Bob@Example.com", "Bob", "USER", actor_id=admin_id))
        temp = created["temporary_password"]
        assert created["email_sent"] is True
        assert created["user"]["email"] == "bob@example.com"

        kind, recipient, data = services.mailer.sent[-1]
        assert (kind, recipient) == (EMAIL_WELCOME, "bob@example.com")
        assert data["temp_password"] == temp

        bob = services.store.get_by_email("bob@example.com")
        assert bob.is_first_login is True
        assert bob.created_by == admin_id
        assert bob.hashed_password != temp

        login = run(services.service.login("bob@example.com", temp, device()))
        assert login.success and login.requires_password_reset

    def test_create_reports_undelivered_email(self, services, admin_id):
        services.mailer.delivered = False
        created = run(services.service.create_user("bob@example.com", actor_id=admin_id))
        assert created["email_sent"] is False
        (entry,) = services.audit.list_entries(action=audit.USER_CREATED)
        assert entry.details["email_delivered"] is False

    def test_duplicate_email(self, services, uid):
        with pytest.raises(Conflict):
            run(services.service.create_user(EMAIL.upper()))

    def test_unknown_role(self, services):
        with pytest.raises(ValueError):
            run(services.service.create_user("x@example.com", role="ROOT"))

    def test_get_user_counts_sessions(self, services, uid):
        run(services.service.login(EMAIL, PASSWORD, device()))
        detail = run(services.service.get_user(uid))
        assert detail["active_sessions"] == 1
        assert detail["email"] == EMAIL
        with pytest.raises(NotFound):
            run(services.service.get_user(4242))

    def test_list_users(self, services, uid, admin_id):
        emails = {u["email"] for u in run(services.service.list_users())}
        assert emails == {EMAIL, "admin@example.com"}

    def test_suspend_ends_sessions_and_blocks_login(self, services, uid, admin_id):
        info = device()
        run(services.service.login(EMAIL, PASSWORD, info))
        detail = run(services.service.update_user_status(uid, STATUS_SUSPENDED, admin_id))
        assert detail["status"] == STATUS_SUSPENDED
        assert detail["active_sessions"] == 0
        assert run(services.service.login(EMAIL, PASSWORD, info)).error == "account_disabled"

        (entry,) = services.audit.list_entries(action=audit.USER_STATUS_UPDATED)
        assert entry.details["old_status"] == STATUS_ACTIVE
        assert entry.details["sessions_terminated"] == 1

    def test_reactivate(self, services, uid, admin_id):
        run(services.service.update_user_status(uid, STATUS_SUSPENDED, admin_id))
        run(services.service.update_user_status(uid, STATUS_ACTIVE, admin_id))
        assert run(services.service.login(EMAIL, PASSWORD, device())).success

    def test_cannot_suspend_self(self, services, admin_id):
        with pytest.raises(Conflict):
            run(services.service.update_user_status(admin_id, STATUS_SUSPENDED, admin_id))

    def test_last_active_admin_is_protected(self, services, admin_id):
        other = make_user(services.store, "former@example.com", role=ROLE_ADMIN, status=STATUS_SUSPENDED)
        with pytest.raises(Conflict):
            run(services.service.update_user_status(admin_id, STATUS_SUSPENDED, other))
        with pytest.raises(Conflict):
            run(services.service.delete_user(admin_id, other))

    def test_unknown_status(self, services, uid, admin_id):
        with pytest.raises(ValueError):
            run(services.service.update_user_status(uid, "BANNED", admin_id))

    def test_delete_user(self, services, uid, admin_id):
        run(services.service.login(EMAIL, PASSWORD, device()))
        run(services.service.delete_user(uid, admin_id))
        assert services.store.get_by_id(uid) is None
        assert services.store.list_devices(uid) == []
        # The user's own history survives the deletion.
        assert services.audit.list_entries(action=audit.USER_LOGIN, user_id=uid)
        (entry,) = services.audit.list_entries(action=audit.USER_DELETED)
        assert entry.details["email"] == EMAIL

    def test_cannot_delete_self(self, services, admin_id):
        with pytest.raises(Conflict):
            run(services.service.delete_user(admin_id, admin_id))

    def test_delete_unknown(self, services, admin_id):
        with pytest.raises(NotFound):
            run(services.service.delete_user(4242, admin_id))

    def test_admin_reset_password(self, services, uid, admin_id):
        run(services.service.login(EMAIL, PASSWORD, device()))
        result = run(services.service.admin_reset_password(uid, admin_id))
        assert result["sessions_terminated"] == 1
        assert result["email_sent"] is True
        assert services.mailer.last(EMAIL_WELCOME)["temp_password"] == result["temporary_password"]

        login = run(services.service.login(EMAIL, result["temporary_password"], device()))
        assert login.success and login.requires_password_reset
        assert not run(services.service.login(EMAIL, PASSWORD, device())).success

    def test_admin_reset_keeps_old_password_when_session_end_fails(self, services, uid, admin_id):
        run(services.service.login(EMAIL, PASSWORD, device()))
        with failing_writes(services.store, "devices"), pytest.raises(OperationalError):
            run(services.service.admin_reset_password(uid, admin_id))
        assert services.store.count_active_sessions(uid) == 1
        assert authenticate_user(services.store, EMAIL, PASSWORD) is not None
        assert services.mailer.sent == []

    def test_suspend_keeps_status_when_session_end_fails(self, services, uid, admin_id):
        run(services.service.login(EMAIL, PASSWORD, device()))
        with failing_writes(services.store, "devices"), pytest.raises(OperationalError):
            run(services.service.update_user_status(uid, STATUS_SUSPENDED, admin_id))
        assert services.store.get_by_id(uid).status == STATUS_ACTIVE
        assert services.store.count_active_sessions(uid) == 1


class TestAdminDevices:
    def test_list_devices_summary(self, services, uid, admin_id):
        run(services.service.login(EMAIL, PASSWORD, device(CHROME_WIN)))
        run(services.service.login(EMAIL, PASSWORD, device(IPHONE)))
        run(services.service.login("admin@example.com", PASSWORD, device(FIREFOX_MAC)))

        listing = run(services.service.list_devices())
        summary = listing["summary"]
        assert summary == {
            "total": 3,
            "active": 2,
            "inactive": 1,
            "users_with_active_session": 2,
            "by_type": {"desktop": 2, "mobile": 1},
        }
        owners = {d["user_email"] for d in listing["devices"]}
        assert owners == {EMAIL, "admin@example.com"}

    def test_terminate_device(self, services, uid, admin_id):
        info = device()
        run(services.service.login(EMAIL, PASSWORD, info))
        (row,) = services.store.list_devices(uid)
        run(services.service.terminate_device(row.id, admin_id))
        assert not run(services.service.check_session_valid(uid, info.session_fingerprint))
        (entry,) = services.audit.list_entries(action=audit.DEVICE_TERMINATED_BY_ADMIN)
        assert entry.details["target_user_id"] == uid
        with pytest.raises(NotFound):
            run(services.service.terminate_device(row.id + 100, admin_id))

    def test_list_audit_entries_newest_first(self, services, uid):
        run(services.service.login(EMAIL, PASSWORD, device(CHROME_WIN)))
        run(services.service.login(EMAIL, PASSWORD, device(FIREFOX_MAC)))
        actions = [e.action for e in run(services.service.list_audit_entries(limit=3))]
        assert actions == [audit.USER_LOGIN, audit.SESSIONS_TERMINATED, audit.USER_LOGIN]
