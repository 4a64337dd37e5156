"""Unit tests for auth/reset.py -- self-service password reset.

Covers:
- request_reset stores a code challenge and emails the code; unknown emails
  get the same answer and nothing is stored or sent
- code expiry boundary: valid at 9:59, invalid at exactly 10:00
- five wrong codes void the challenge, so the right code is then refused;
  resends do not restore guesses
- resend limit (two resends) and the attempt counter in the audit trail
- a resent code replaces the previous one
- verification tokens are single use, and concurrent verifications of one
  code produce exactly one token
- reset_password checks the token before the password policy, ends every
  session and lifts PENDING_PASSWORD_RESET
"""

import asyncio
from datetime import timedelta

import pytest

from auth import audit
from auth.errors import InvalidOrExpired, RateLimited, WeakPassword
from auth.models import (
    EMAIL_PASSWORD_RESET_CODE,
    STATUS_ACTIVE,
    STATUS_PENDING_PASSWORD_RESET,
    CodeIssued,
    NoChallenge,
    TokenIssued,
)
from auth.passwords import authenticate_user
from tests.support import insert_active_rows, make_user

NEW_PASSWORD = "N3w-Passw0rd!"
EMAIL = "alice@example.com"


def run(coro):
    return asyncio.run(coro)


def _last_code(mailer):
    return mailer.last(EMAIL_PASSWORD_RESET_CODE)["code"]


def _actions(services, action):
    return services.audit.list_entries(action=action)


@pytest.fixture
def uid(store):
    return make_user(store, EMAIL, name="Alice")


class TestRequestReset:
    def test_issues_code_challenge(self, services, uid):
        assert run(services.reset.request_reset(EMAIL)) == {"ok": True}
        challenge = services.store.get_by_id(uid).reset
        assert isinstance(challenge, CodeIssued)
        assert challenge.attempts == 0
        assert challenge.expires_at == services.clock() + timedelta(minutes=10)

    def test_code_is_emailed_and_stored_as_digest(self, services, uid):
        run(services.reset.request_reset(EMAIL))
        kind, recipient, data = services.mailer.sent[-1]
        assert (kind, recipient) == (EMAIL_PASSWORD_RESET_CODE, EMAIL)
        assert len(data["code"]) == 6 and data["code"].isdigit()
        assert data["valid_minutes"] == 10
        assert data["max_resends"] == 2
        assert services.store.get_by_id(uid).reset.digest != data["code"]

    def test_unknown_email_same_answer_nothing_stored(self, services, uid):
        assert run(services.reset.request_reset("ghost@example.com")) == {"ok": True}
        assert services.mailer.sent == []
        assert _actions(services, audit.PASSWORD_RESET_REQUESTED) == []

    def test_email_failure_still_ok(self, services, uid):
        services.mailer.delivered = False
        assert run(services.reset.request_reset(EMAIL)) == {"ok": True}
        (entry,) = _actions(services, audit.PASSWORD_RESET_REQUESTED)
        assert entry.details == {"attempts": 0, "email_delivered": False}

    def test_new_request_replaces_old_code(self, services, uid):
        run(services.reset.request_reset(EMAIL))
        first = _last_code(services.mailer)
        run(services.reset.request_reset(EMAIL))
        second = _last_code(services.mailer)
        if first != second:
            with pytest.raises(InvalidOrExpired):
                run(services.reset.verify_code(EMAIL, first))
        assert run(services.reset.verify_code(EMAIL, second))


class TestVerifyCode:
    def test_valid_code_returns_token(self, services, uid):
        run(services.reset.request_reset(EMAIL))
        token = run(services.reset.verify_code(EMAIL, _last_code(services.mailer)))
        assert len(token) >= 32
        challenge = services.store.get_by_id(uid).reset
        assert isinstance(challenge, TokenIssued)
        assert challenge.expires_at == services.clock() + timedelta(minutes=15)
        assert len(_actions(services, audit.PASSWORD_RESET_CODE_VERIFIED)) == 1

    def test_valid_one_second_before_expiry(self, services, uid):
        run(services.reset.request_reset(EMAIL))
        services.clock.advance(minutes=9, seconds=59)
        assert run(services.reset.verify_code(EMAIL, _last_code(services.mailer)))

    def test_invalid_at_expiry(self, services, uid):
        run(services.reset.request_reset(EMAIL))
        services.clock.advance(minutes=10)
        with pytest.raises(InvalidOrExpired):
            run(services.reset.verify_code(EMAIL, _last_code(services.mailer)))

    def test_wrong_code(self, services, uid):
        run(services.reset.request_reset(EMAIL))
        code = _last_code(services.mailer)
        wrong = f"{(int(code) + 1) % 1_000_000:06d}"
        with pytest.raises(InvalidOrExpired):
            run(services.reset.verify_code(EMAIL, wrong))
        assert isinstance(services.store.get_by_id(uid).reset, CodeIssued)

    @pytest.mark.parametrize("bad", ["", "12345", "1234567", "12a456", " 123456"])
    def test_malformed_code(self, services, uid, bad):
        run(services.reset.request_reset(EMAIL))
        with pytest.raises(InvalidOrExpired):
            run(services.reset.verify_code(EMAIL, bad))

    def test_unknown_email_and_no_challenge_look_the_same(self, services, uid):
        with pytest.raises(InvalidOrExpired):
            run(services.reset.verify_code("ghost@example.com", "123456"))
        with pytest.raises(InvalidOrExpired):
            run(services.reset.verify_code(EMAIL, "123456"))

    def test_code_is_single_use(self, services, uid):
        run(services.reset.request_reset(EMAIL))
        code = _last_code(services.mailer)
        run(services.reset.verify_code(EMAIL, code))
        with pytest.raises(InvalidOrExpired):
            run(services.reset.verify_code(EMAIL, code))

    def test_concurrent_verifications_yield_one_token(self, services, uid):
        run(services.reset.request_reset(EMAIL))
        code = _last_code(services.mailer)

        async def race():
            return await asyncio.gather(
                services.reset.verify_code(EMAIL, code),
                services.reset.verify_code(EMAIL, code),
                return_exceptions=True,
            )

        results = run(race())
        tokens = [r for r in results if isinstance(r, str)]
        failures = [r for r in results if isinstance(r, InvalidOrExpired)]
        assert len(tokens) == 1
        assert len(failures) == 1


class TestWrongCodeLimit:
    def _wrong(self, code, k=1):
        return f"{(int(code) + k) % 1_000_000:06d}"

    def _guess_wrong(self, services, code, times):
        for k in range(1, times + 1):
            with pytest.raises(InvalidOrExpired):
                run(services.reset.verify_code(EMAIL, self._wrong(code, k)))

    def test_wrong_guesses_are_counted(self, services, uid):
        run(services.reset.request_reset(EMAIL))
        code = _last_code(services.mailer)
        self._guess_wrong(services, code, 4)
        assert services.store.get_by_id(uid).reset.failures == 4
        assert run(services.reset.verify_code(EMAIL, code))

    def test_right_code_refused_after_the_limit(self, services, uid):
        run(services.reset.request_reset(EMAIL))
        code = _last_code(services.mailer)
        self._guess_wrong(services, code, 5)

        assert services.store.get_by_id(uid).reset == NoChallenge()
        with pytest.raises(InvalidOrExpired):
            run(services.reset.verify_code(EMAIL, code))
        rejected = _actions(services, audit.PASSWORD_RESET_CODE_REJECTED)
        assert [e.details for e in rejected][0] == {"failures": 5, "voided": True}
        assert len(rejected) == 5

    def test_resend_does_not_restore_guesses(self, services, uid):
        run(services.reset.request_reset(EMAIL))
        self._guess_wrong(services, _last_code(services.mailer), 3)
        run(services.reset.resend_code(EMAIL))
        assert services.store.get_by_id(uid).reset.failures == 3

        code = _last_code(services.mailer)
        self._guess_wrong(services, code, 2)
        with pytest.raises(InvalidOrExpired):
            run(services.reset.verify_code(EMAIL, code))

    def test_concurrent_wrong_guesses_are_all_counted(self, services, uid):
        run(services.reset.request_reset(EMAIL))
        code = _last_code(services.mailer)

        async def burst():
            return await asyncio.gather(
                *(services.reset.verify_code(EMAIL, self._wrong(code, k)) for k in range(1, 6)),
                return_exceptions=True,
            )

        results = run(burst())
        assert all(isinstance(r, InvalidOrExpired) for r in results)
        assert services.store.get_by_id(uid).reset == NoChallenge()
        with pytest.raises(InvalidOrExpired):
            run(services.reset.verify_code(EMAIL, code))

    def test_malformed_codes_are_not_counted(self, services, uid):
        run(services.reset.request_reset(EMAIL))
        for _ in range(6):
            with pytest.raises(InvalidOrExpired):
                run(services.reset.verify_code(EMAIL, "12a456"))
        assert services.store.get_by_id(uid).reset.failures == 0


class TestResendCode:
    def test_two_resends_then_rate_limited(self, services, uid):
        run(services.reset.request_reset(EMAIL))
        run(services.reset.resend_code(EMAIL))
        run(services.reset.resend_code(EMAIL))
        with pytest.raises(RateLimited):
            run(services.reset.resend_code(EMAIL))

        assert services.store.get_by_id(uid).reset.attempts == 2
        assert len(services.mailer.sent) == 3
        requested = _actions(services, audit.PASSWORD_RESET_REQUESTED)
        resent = _actions(services, audit.PASSWORD_RESET_CODE_RESENT)
        assert [e.details["attempts"] for e in requested] == [0]
        assert [e.details["attempts"] for e in reversed(resent)] == [1, 2]

    def test_resend_replaces_code_and_expiry(self, services, uid):
        run(services.reset.request_reset(EMAIL))
        first = _last_code(services.mailer)
        services.clock.advance(minutes=8)
        run(services.reset.resend_code(EMAIL))
        second = _last_code(services.mailer)
        assert services.store.get_by_id(uid).reset.expires_at == services.clock() + timedelta(minutes=10)
        if first != second:
            with pytest.raises(InvalidOrExpired):
                run(services.reset.verify_code(EMAIL, first))
        # Still valid past the first code's expiry.
        services.clock.advance(minutes=5)
        assert run(services.reset.verify_code(EMAIL, second))

    def test_without_outstanding_code_is_silent(self, services, uid):
        assert run(services.reset.resend_code(EMAIL)) == {"ok": True}
        assert run(services.reset.resend_code("ghost@example.com")) == {"ok": True}
        assert services.mailer.sent == []
        assert services.store.get_by_id(uid).reset == NoChallenge()


class TestResetPassword:
    def _token(self, services):
        run(services.reset.request_reset(EMAIL))
        return run(services.reset.verify_code(EMAIL, _last_code(services.mailer)))

    def test_sets_password_and_ends_every_session(self, services, uid):
        insert_active_rows(services.store, uid, 2, services.clock)
        token = self._token(services)

        assert run(services.reset.reset_password(EMAIL, token, NEW_PASSWORD)) == {"ok": True}

        assert services.store.count_active_sessions(uid) == 0
        assert authenticate_user(services.store, EMAIL, NEW_PASSWORD) is not None
        assert services.store.get_by_id(uid).reset == NoChallenge()
        (entry,) = _actions(services, audit.PASSWORD_RESET_COMPLETED)
        assert entry.details == {"sessions_terminated": 2}

    def test_token_is_single_use(self, services, uid):
        token = self._token(services)
        run(services.reset.reset_password(EMAIL, token, NEW_PASSWORD))
        with pytest.raises(InvalidOrExpired):
            run(services.reset.reset_password(EMAIL, token, "An0ther-Passw0rd"))

    def test_token_expires(self, services, uid):
        token = self._token(services)
        services.clock.advance(minutes=15)
        with pytest.raises(InvalidOrExpired):
            run(services.reset.reset_password(EMAIL, token, NEW_PASSWORD))

    def test_wrong_token_reported_before_weak_password(self, services, uid):
        self._token(services)
        with pytest.raises(InvalidOrExpired):
            run(services.reset.reset_password(EMAIL, "not-the-token", "weak"))

    def test_weak_password_keeps_token_usable(self, services, uid):
        token = self._token(services)
        with pytest.raises(WeakPassword):
            run(services.reset.reset_password(EMAIL, token, "weak"))
        assert run(services.reset.reset_password(EMAIL, token, NEW_PASSWORD)) == {"ok": True}

    def test_pending_reset_status_becomes_active(self, services):
        uid = make_user(services.store, EMAIL, status=STATUS_PENDING_PASSWORD_RESET, is_first_login=True)
        token = self._token(services)
        run(services.reset.reset_password(EMAIL, token, NEW_PASSWORD))
        user = services.store.get_by_id(uid)
        assert user.status == STATUS_ACTIVE
        assert user.is_first_login is False

    def test_code_cannot_be_used_as_token(self, services, uid):
        run(services.reset.request_reset(EMAIL))
        with pytest.raises(InvalidOrExpired):
            run(services.reset.reset_password(EMAIL, _last_code(services.mailer), NEW_PASSWORD))
