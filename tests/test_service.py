"""Unit tests for auth/service.py -- AuthService flows against a real in-memory store.

Covers:
- registration: unverified account, verification mail, duplicate email, mail outage tolerated
- email verification: single use, wrong token, resend rules
- login: check order (unknown -> locked -> inactive -> unverified -> password)
- lockout after five failures, 423 even with the right password, expiry after 30 minutes
- tokens: refresh, access-only authentication, token_version invalidation
- refresh refuses an untyped token and a session past its stored expiry
- logout / logout-all (idempotent), session cap
- password reset by OTP: identical answer for unknown emails, single use, expiry
- change-password: wrong current password, all tokens revoked
- admin operations: update guards, unlock, global revocation
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from auth.errors import (
    AuthenticationError,
    DuplicateEmailError,
    EmailNotVerifiedError,
    InvalidTokenError,
    LockedError,
    MailDeliveryError,
    NotFoundError,
    ValidationError,
)
from auth.models import Account, ActivityType, Role
from auth.service import RESET_REQUESTED_MESSAGE, AuthService
from auth.store import AccountStore
from tests.fakes import NEW_PASSWORD, TEST_SECRET_KEY, USER_EMAIL, USER_PASSWORD, FakeClock, FakeMailer


class TestRegister:
    def test_creates_unverified_user(self, service: AuthService, mailer: FakeMailer) -> None:
        account = service.register("New@Example.com", USER_PASSWORD, "New")
        assert account.email == "new@example.com"
        assert account.role == Role.USER
        assert account.is_email_verified is False
        assert mailer.subjects_to("new@example.com") == ["Verify your email address"]
        token = mailer.verification_tokens["new@example.com"]
        assert f"token={token}" in mailer.sent[0]["text"]

    def test_duplicate_email(self, service: AuthService) -> None:
        service.register(USER_EMAIL, USER_PASSWORD)
        with pytest.raises(DuplicateEmailError):
            service.register(USER_EMAIL.upper(), USER_PASSWORD)

    def test_weak_password(self, service: AuthService, store: AccountStore) -> None:
        with pytest.raises(ValidationError):
            service.register(USER_EMAIL, "weakpass")
        assert store.get_by_email(USER_EMAIL) is None

    def test_invalid_email(self, service: AuthService) -> None:
        with pytest.raises(ValidationError):
            service.register("not-an-email", USER_PASSWORD)

    def test_name_too_long(self, service: AuthService) -> None:
        with pytest.raises(ValidationError):
            service.register(USER_EMAIL, USER_PASSWORD, "x" * 51)

    def test_mail_outage_keeps_account(self, service: AuthService, mailer: FakeMailer, store: AccountStore) -> None:
        mailer.fail = True
        account = service.register(USER_EMAIL, USER_PASSWORD)
        assert store.get_by_id(account.id) is not None

    def test_activity_recorded(self, service: AuthService, store: AccountStore) -> None:
        account = service.register(USER_EMAIL, USER_PASSWORD)
        assert [a.type for a in store.list_activities(account.id)] == [ActivityType.USER_REGISTERED]


class TestVerifyEmail:
    def test_verify_once(self, service: AuthService, mailer: FakeMailer) -> None:
        service.register(USER_EMAIL, USER_PASSWORD)
        token = mailer.verification_tokens[USER_EMAIL]
        account = service.verify_email(USER_EMAIL, token)
        assert account.is_email_verified is True
        assert "Welcome to Asset Marketplace" in mailer.subjects_to(USER_EMAIL)
        with pytest.raises(ValidationError, match="Invalid or expired verification token"):
            service.verify_email(USER_EMAIL, token)

    def test_wrong_token(self, service: AuthService) -> None:
        service.register(USER_EMAIL, USER_PASSWORD)
        with pytest.raises(ValidationError):
            service.verify_email(USER_EMAIL, "0" * 64)

    def test_expired_token(self, service: AuthService, mailer: FakeMailer, clock: FakeClock) -> None:
        service.register(USER_EMAIL, USER_PASSWORD)
        clock.advance(hours=24, seconds=1)
        with pytest.raises(ValidationError):
            service.verify_email(USER_EMAIL, mailer.verification_tokens[USER_EMAIL])

    def test_missing_inputs(self, service: AuthService) -> None:
        with pytest.raises(ValidationError, match="Token and email are required"):
            service.verify_email("", "")

    def test_resend_replaces_token(self, service: AuthService, mailer: FakeMailer) -> None:
        service.register(USER_EMAIL, USER_PASSWORD)
        first = mailer.verification_tokens[USER_EMAIL]
        service.resend_verification(USER_EMAIL)
        second = mailer.verification_tokens[USER_EMAIL]
        assert first != second
        with pytest.raises(ValidationError):
            service.verify_email(USER_EMAIL, first)
        service.verify_email(USER_EMAIL, second)

    def test_resend_unknown_email(self, service: AuthService) -> None:
        with pytest.raises(NotFoundError):
            service.resend_verification("ghost@example.com")

    def test_resend_already_verified(self, service: AuthService, verified_account: Account) -> None:
        with pytest.raises(ValidationError, match="already verified"):
            service.resend_verification(USER_EMAIL)

    def test_resend_mail_failure_propagates(self, service: AuthService, mailer: FakeMailer) -> None:
        service.register(USER_EMAIL, USER_PASSWORD)
        mailer.fail = True
        with pytest.raises(MailDeliveryError):
            service.resend_verification(USER_EMAIL)


class TestLogin:
    def test_success(self, service: AuthService, verified_account: Account, store: AccountStore) -> None:
        result = service.login(USER_EMAIL, USER_PASSWORD, "pytest-agent")
        assert result.account.id == verified_account.id
        assert result.account.last_login is not None
        sessions = store.list_sessions(verified_account.id)
        assert [s.device_label for s in sessions] == ["pytest-agent"]
        ctx = service.authenticate(result.access_token)
        assert ctx.account.id == verified_account.id

    def test_unknown_email_and_wrong_password_look_alike(self, service: AuthService, verified_account: Account) -> None:
        with pytest.raises(AuthenticationError) as unknown:
            service.login("ghost@example.com", USER_PASSWORD)
        with pytest.raises(AuthenticationError) as wrong:
            service.login(USER_EMAIL, "Wr0ng!Pass")
        assert unknown.value.message == wrong.value.message == "Invalid credentials"

    def test_unverified(self, service: AuthService) -> None:
        service.register(USER_EMAIL, USER_PASSWORD)
        with pytest.raises(EmailNotVerifiedError) as exc_info:
            service.login(USER_EMAIL, USER_PASSWORD)
        assert exc_info.value.status_code == 403

    def test_inactive(self, service: AuthService, verified_account: Account, store: AccountStore) -> None:
        store.update_account(verified_account.id, is_active=False)
        with pytest.raises(AuthenticationError):
            service.login(USER_EMAIL, USER_PASSWORD)

    def test_device_label_defaults(self, service: AuthService, verified_account: Account, store: AccountStore) -> None:
        service.login(USER_EMAIL, USER_PASSWORD)
        assert store.list_sessions(verified_account.id)[0].device_label == "Unknown Device"


class TestLockout:
    def _fail(self, service: AuthService, times: int) -> None:
        for _ in range(times):
            with pytest.raises(AuthenticationError):
                service.login(USER_EMAIL, "Wr0ng!Pass")

    def test_locks_after_five_failures(self, service: AuthService, verified_account: Account) -> None:
        self._fail(service, 5)
        with pytest.raises(LockedError) as exc_info:
            service.login(USER_EMAIL, USER_PASSWORD)
        assert exc_info.value.status_code == 423

    def test_four_failures_do_not_lock(self, service: AuthService, verified_account: Account) -> None:
        self._fail(service, 4)
        service.login(USER_EMAIL, USER_PASSWORD)

    def test_success_resets_counter(self, service: AuthService, verified_account: Account, store: AccountStore) -> None:
        self._fail(service, 4)
        service.login(USER_EMAIL, USER_PASSWORD)
        assert store.get_by_id(verified_account.id).failed_login_count == 0
        self._fail(service, 4)
        service.login(USER_EMAIL, USER_PASSWORD)

    def test_lock_expires(self, service: AuthService, verified_account: Account, clock: FakeClock) -> None:
        self._fail(service, 5)
        clock.advance(minutes=29)
        with pytest.raises(LockedError):
            service.login(USER_EMAIL, USER_PASSWORD)
        clock.advance(minutes=2)
        service.login(USER_EMAIL, USER_PASSWORD)

    def test_failure_after_expired_lock_starts_fresh(
        self, service: AuthService, verified_account: Account, clock: FakeClock, store: AccountStore
    ) -> None:
        self._fail(service, 5)
        clock.advance(minutes=31)
        self._fail(service, 1)
        assert store.get_by_id(verified_account.id).failed_login_count == 1
        service.login(USER_EMAIL, USER_PASSWORD)

    def test_admin_unlock(self, service: AuthService, verified_account: Account) -> None:
        self._fail(service, 5)
        service.unlock_account(USER_EMAIL)
        service.login(USER_EMAIL, USER_PASSWORD)


class TestTokensAndSessions:
    def test_refresh_issues_new_access_token(self, service: AuthService, verified_account: Account) -> None:
        result = service.login(USER_EMAIL, USER_PASSWORD)
        access = service.refresh(result.refresh_token)
        assert service.authenticate(access).account.id == verified_account.id

    def test_refresh_token_cannot_authenticate(self, service: AuthService, verified_account: Account) -> None:
        result = service.login(USER_EMAIL, USER_PASSWORD)
        with pytest.raises(InvalidTokenError):
            service.authenticate(result.refresh_token)

    def test_access_token_cannot_refresh(self, service: AuthService, verified_account: Account) -> None:
        result = service.login(USER_EMAIL, USER_PASSWORD)
        with pytest.raises(InvalidTokenError):
            service.refresh(result.access_token)

    def test_logout_revokes_only_that_session(self, service: AuthService, verified_account: Account) -> None:
        phone = service.login(USER_EMAIL, USER_PASSWORD, "phone")
        laptop = service.login(USER_EMAIL, USER_PASSWORD, "laptop")
        service.logout(verified_account, phone.refresh_token)
        with pytest.raises(AuthenticationError):
            service.refresh(phone.refresh_token)
        service.refresh(laptop.refresh_token)

    def test_logout_unknown_token_is_noop(self, service: AuthService, verified_account: Account) -> None:
        service.logout(verified_account, "not-a-session")
        service.logout(verified_account, None)

    def test_logout_all_is_idempotent(self, service: AuthService, verified_account: Account, store: AccountStore) -> None:
        first = service.login(USER_EMAIL, USER_PASSWORD)
        second = service.login(USER_EMAIL, USER_PASSWORD)
        service.logout_all(verified_account)
        service.logout_all(verified_account)
        assert store.list_sessions(verified_account.id) == []
        for token in (first.refresh_token, second.refresh_token):
            with pytest.raises(AuthenticationError):
                service.refresh(token)

    def test_sixth_login_evicts_oldest_session(self, service: AuthService, verified_account: Account) -> None:
        logins = [service.login(USER_EMAIL, USER_PASSWORD, f"device-{i}") for i in range(6)]
        with pytest.raises(AuthenticationError):
            service.refresh(logins[0].refresh_token)
        service.refresh(logins[5].refresh_token)

    def test_untyped_token_cannot_refresh(self, service: AuthService, verified_account: Account) -> None:
        exp = datetime.now(timezone.utc) + timedelta(days=1)
        token = jwt.encode(
            {"sub": verified_account.id, "ver": verified_account.token_version, "exp": exp},
            TEST_SECRET_KEY,
            algorithm="HS256",
        )
        with pytest.raises(InvalidTokenError) as exc_info:
            service.refresh(token)
        assert exc_info.value.status_code == 401

    def test_expired_session_rejected_while_jwt_still_valid(
        self, service: AuthService, verified_account: Account, clock: FakeClock
    ) -> None:
        service.sessions.refresh_ttl = timedelta(hours=1)
        result = service.login(USER_EMAIL, USER_PASSWORD)
        service.refresh(result.refresh_token)
        clock.advance(hours=1, seconds=1)
        with pytest.raises(AuthenticationError) as exc_info:
            service.refresh(result.refresh_token)
        assert exc_info.value.status_code == 401
        assert exc_info.value.code == "invalid_token"

    def test_revoke_all_tokens(self, service: AuthService, verified_account: Account) -> None:
        result = service.login(USER_EMAIL, USER_PASSWORD)
        service.revoke_all_tokens(USER_EMAIL)
        with pytest.raises(InvalidTokenError):
            service.authenticate(result.access_token)
        with pytest.raises(InvalidTokenError):
            service.refresh(result.refresh_token)


class TestPasswordReset:
    def test_unknown_email_same_answer_no_mail(self, service: AuthService, verified_account: Account, mailer: FakeMailer) -> None:
        sent_before = len(mailer.sent)
        assert service.request_password_reset("ghost@example.com") == RESET_REQUESTED_MESSAGE
        assert len(mailer.sent) == sent_before
        assert service.request_password_reset(USER_EMAIL) == RESET_REQUESTED_MESSAGE
        assert mailer.subjects_to(USER_EMAIL)[-1] == "Your password reset code"

    def test_otp_resets_password_once(self, service: AuthService, verified_account: Account, mailer: FakeMailer) -> None:
        old = service.login(USER_EMAIL, USER_PASSWORD)
        service.request_password_reset(USER_EMAIL)
        otp = mailer.reset_otps[USER_EMAIL]

        service.reset_password_with_otp(USER_EMAIL, otp, NEW_PASSWORD)

        with pytest.raises(InvalidTokenError):
            service.authenticate(old.access_token)
        with pytest.raises(AuthenticationError):
            service.refresh(old.refresh_token)
        with pytest.raises(AuthenticationError):
            service.login(USER_EMAIL, USER_PASSWORD)
        service.login(USER_EMAIL, NEW_PASSWORD)
        with pytest.raises(ValidationError, match="Invalid or expired OTP"):
            service.reset_password_with_otp(USER_EMAIL, otp, "An0ther!Pass")

    def test_expired_otp(self, service: AuthService, verified_account: Account, mailer: FakeMailer, clock: FakeClock) -> None:
        service.request_password_reset(USER_EMAIL)
        clock.advance(minutes=10, seconds=1)
        with pytest.raises(ValidationError):
            service.reset_password_with_otp(USER_EMAIL, mailer.reset_otps[USER_EMAIL], NEW_PASSWORD)

    def test_weak_new_password_keeps_otp(self, service: AuthService, verified_account: Account, mailer: FakeMailer) -> None:
        service.request_password_reset(USER_EMAIL)
        otp = mailer.reset_otps[USER_EMAIL]
        with pytest.raises(ValidationError):
            service.reset_password_with_otp(USER_EMAIL, otp, "weak")
        service.reset_password_with_otp(USER_EMAIL, otp, NEW_PASSWORD)

    def test_mail_failure_propagates(self, service: AuthService, verified_account: Account, mailer: FakeMailer) -> None:
        mailer.fail = True
        with pytest.raises(MailDeliveryError) as exc_info:
            service.request_password_reset(USER_EMAIL)
        assert exc_info.value.status_code == 500


class TestChangePassword:
    def test_change_revokes_old_tokens(self, service: AuthService, verified_account: Account) -> None:
        result = service.login(USER_EMAIL, USER_PASSWORD)
        ctx = service.authenticate(result.access_token)
        service.change_password(ctx.account, USER_PASSWORD, NEW_PASSWORD)
        with pytest.raises(InvalidTokenError):
            service.authenticate(result.access_token)
        with pytest.raises(AuthenticationError):
            service.refresh(result.refresh_token)
        service.login(USER_EMAIL, NEW_PASSWORD)

    def test_wrong_current_password(self, service: AuthService, verified_account: Account) -> None:
        with pytest.raises(ValidationError, match="Current password is incorrect"):
            service.change_password(verified_account, "Wr0ng!Pass", NEW_PASSWORD)

    def test_weak_new_password(self, service: AuthService, verified_account: Account) -> None:
        with pytest.raises(ValidationError):
            service.change_password(verified_account, USER_PASSWORD, "short")


class TestAdministration:
    def test_create_admin_is_verified(self, admin_account: Account) -> None:
        assert admin_account.role == Role.ADMIN
        assert admin_account.is_email_verified is True

    def test_deactivate_revokes_tokens(self, service: AuthService, admin_account: Account, verified_account: Account) -> None:
        result = service.login(USER_EMAIL, USER_PASSWORD)
        updated = service.update_account(admin_account, verified_account.id, is_active=False)
        assert updated.is_active is False
        with pytest.raises(AuthenticationError):
            service.authenticate(result.access_token)

    def test_cannot_deactivate_self(self, service: AuthService, admin_account: Account) -> None:
        with pytest.raises(ValidationError, match="own account"):
            service.update_account(admin_account, admin_account.id, is_active=False)

    def test_cannot_demote_last_admin(self, service: AuthService, admin_account: Account, verified_account: Account) -> None:
        with pytest.raises(ValidationError, match="last active admin"):
            service.update_account(admin_account, admin_account.id, role=Role.USER)
        service.update_account(admin_account, verified_account.id, role=Role.ADMIN)
        service.update_account(admin_account, admin_account.id, role=Role.USER)

    def test_update_unknown_account(self, service: AuthService, admin_account: Account) -> None:
        with pytest.raises(NotFoundError):
            service.update_account(admin_account, "missing", role=Role.ADMIN)

    def test_update_requires_a_change(self, service: AuthService, admin_account: Account, verified_account: Account) -> None:
        with pytest.raises(ValidationError):
            service.update_account(admin_account, verified_account.id)
