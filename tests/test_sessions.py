"""Unit tests for auth/sessions.py -- the session lifecycle.

Covers:
- register: default role, explicit role, duplicate email, unknown role, missing default role
- login: success, unknown email, wrong password, inactive account, FAILED_LOGIN records
- refresh: rotation, inactive user, wrong token class
- forgot/reset password: uniform response, one-shot tokens, stored expiry
- change password, logout, profile
"""

from datetime import datetime, timedelta, timezone

import pytest

from audit.interceptor import AuditContext
from audit.models import AuditAction, AuditFilter
from auth.sessions import SessionManager
from core.errors import (
    AccountInactive,
    DuplicateEmail,
    InvalidCredentials,
    InvalidInput,
    InvalidToken,
    NotFound,
)

PASSWORD = "Passw0rd"
CTX = AuditContext(ip_address="203.0.113.9", user_agent="pytest")


def _records(stores, action):
    records, _total = stores.audit.query(AuditFilter(action=action), page=1, limit=100)
    return records


def _register_fields(**overrides):
    fields = {"first_name": "Grace", "last_name": "Hopper", "email": "Grace@Example.com", "password": PASSWORD}
    fields.update(overrides)
    return fields


class TestRegister:
    def test_assigns_default_role_and_signs_in(self, sessions, stores, issuer):
        result = sessions.register(_register_fields(), CTX)
        assert result["user"]["email"] == "grace@example.com"
        assert result["user"]["role"]["name"] == "user"
        assert "hashed_password" not in result["user"]
        claims = issuer.verify_access(result["access_token"])
        assert claims["user_id"] == result["user"]["id"]
        assert claims["permissions"] == stores.default_roles["user"].permissions
        assert issuer.verify_refresh(result["refresh_token"])["user_id"] == result["user"]["id"]

    def test_explicit_role(self, sessions, stores):
        moderator = stores.default_roles["moderator"]
        result = sessions.register(_register_fields(role_id=moderator.id), CTX)
        assert result["user"]["role_id"] == moderator.id

    def test_explicit_role_can_be_switched_off(self, stores, issuer, audit_logger, settings, notifier):
        locked = SessionManager(
            stores.users,
            stores.roles,
            issuer,
            audit_logger,
            settings.model_copy(update={"allow_register_role_id": False}),
            notifier,
        )
        with pytest.raises(InvalidInput, match="disabled"):
            locked.register(_register_fields(role_id=stores.default_roles["super-admin"].id), CTX)
        assert stores.users.get_by_email("grace@example.com") is None
        assert locked.register(_register_fields(), CTX)["user"]["role"]["name"] == "user"

    def test_duplicate_email_is_case_insensitive(self, sessions):
        sessions.register(_register_fields(), CTX)
        with pytest.raises(DuplicateEmail):
            sessions.register(_register_fields(email="GRACE@example.COM"), CTX)

    def test_unknown_role(self, sessions):
        with pytest.raises(InvalidInput):
            sessions.register(_register_fields(role_id=9999), CTX)

    def test_missing_default_role(self, sessions, stores):
        stores.roles.delete_role(stores.default_roles["user"].id)
        with pytest.raises(NotFound):
            sessions.register(_register_fields(), CTX)

    def test_manager_does_not_write_create_user(self, sessions, stores):
        sessions.register(_register_fields(), CTX)
        assert _records(stores, AuditAction.CREATE_USER) == []


class TestLogin:
    def test_success(self, sessions, stores, issuer, make_user):
        user = make_user("login@example.com")
        result = sessions.login("LOGIN@example.com", PASSWORD, CTX)
        assert issuer.verify_access(result["access_token"])["user_id"] == user.id
        assert stores.users.get_by_id(user.id).last_login is not None
        [record] = _records(stores, AuditAction.LOGIN)
        assert record.user_id == user.id
        assert record.ip_address == "203.0.113.9"

    def test_unknown_email_and_wrong_password_look_the_same(self, sessions, stores, make_user):
        make_user("known@example.com")
        with pytest.raises(InvalidCredentials) as unknown:
            sessions.login("nobody@example.com", PASSWORD, CTX)
        with pytest.raises(InvalidCredentials) as wrong:
            sessions.login("known@example.com", "Wrong1234", CTX)
        assert unknown.value.message == wrong.value.message

    def test_each_failure_writes_one_failed_login(self, sessions, stores, make_user):
        make_user("known@example.com")
        with pytest.raises(InvalidCredentials):
            sessions.login("nobody@example.com", PASSWORD, CTX)
        with pytest.raises(InvalidCredentials):
            sessions.login("known@example.com", "Wrong1234", CTX)
        failed = _records(stores, AuditAction.FAILED_LOGIN)
        assert len(failed) == 2
        assert all(r.user_id is None for r in failed)
        assert {r.after["email"] for r in failed} == {"nobody@example.com", "known@example.com"}
        assert all("password" not in r.after for r in failed)

    def test_inactive_account(self, sessions, stores, make_user):
        make_user("sleepy@example.com", is_active=False)
        with pytest.raises(AccountInactive):
            sessions.login("sleepy@example.com", PASSWORD, CTX)
        assert len(_records(stores, AuditAction.FAILED_LOGIN)) == 1
        assert _records(stores, AuditAction.LOGIN) == []

    def test_inactive_account_with_wrong_password_reveals_nothing(self, sessions, stores, make_user):
        make_user("sleepy@example.com", is_active=False)
        with pytest.raises(InvalidCredentials):
            sessions.login("sleepy@example.com", "Wrong1234", CTX)


class TestRefresh:
    def test_rotates_both_tokens(self, sessions, stores, issuer, make_user):
        make_user("r@example.com")
        first = sessions.login("r@example.com", PASSWORD, CTX)
        second = sessions.refresh(first["refresh_token"], CTX)
        assert second["refresh_token"] != first["refresh_token"]
        assert issuer.verify_access(second["access_token"])["user_id"] == issuer.verify_refresh(
            first["refresh_token"]
        )["user_id"]

    def test_inactive_user(self, sessions, stores, make_user):
        user = make_user("r@example.com")
        tokens = sessions.login("r@example.com", PASSWORD, CTX)
        stores.users.update_user(user.id, is_active=False)
        with pytest.raises(InvalidToken):
            sessions.refresh(tokens["refresh_token"], CTX)

    def test_deleted_user(self, sessions, stores, make_user):
        user = make_user("r@example.com")
        tokens = sessions.login("r@example.com", PASSWORD, CTX)
        stores.users.delete_user(user.id)
        with pytest.raises(InvalidToken):
            sessions.refresh(tokens["refresh_token"], CTX)

    def test_access_token_is_not_a_refresh_token(self, sessions, stores, make_user):
        make_user("r@example.com")
        tokens = sessions.login("r@example.com", PASSWORD, CTX)
        with pytest.raises(InvalidToken):
            sessions.refresh(tokens["access_token"], CTX)


class TestPasswordReset:
    def test_unknown_email_is_silent(self, sessions, stores, notifier):
        assert sessions.forgot_password("ghost@example.com", CTX) is None
        assert notifier.sent == []
        assert _records(stores, AuditAction.RESET_PASSWORD) == []

    def test_token_is_delivered_not_returned(self, sessions, stores, notifier, make_user):
        user = make_user("f@example.com")
        assert sessions.forgot_password("f@example.com", CTX) is None
        [(delivered_to, token)] = notifier.sent
        assert delivered_to.id == user.id
        assert stores.users.get_by_id(user.id).reset_password_token == token
        [record] = _records(stores, AuditAction.RESET_PASSWORD)
        assert record.user_id == user.id

    def test_token_returned_when_exposed(self, stores, issuer, audit_logger, settings, notifier, make_user):
        exposed = SessionManager(
            stores.users,
            stores.roles,
            issuer,
            audit_logger,
            settings.model_copy(update={"expose_reset_token": True}),
            notifier,
        )
        make_user("f@example.com")
        token = exposed.forgot_password("f@example.com", CTX)
        assert token == notifier.sent[0][1]

    def test_reset_is_one_shot(self, sessions, stores, notifier, make_user):
        make_user("f@example.com")
        sessions.forgot_password("f@example.com", CTX)
        token = notifier.sent[0][1]

        sessions.reset_password(token, "N3wPassword", CTX)
        assert sessions.login("f@example.com", "N3wPassword", CTX)["access_token"]
        assert stores.users.get_by_email("f@example.com").reset_password_token is None

        with pytest.raises(InvalidToken):
            sessions.reset_password(token, "An0therOne", CTX)
        assert len(_records(stores, AuditAction.CHANGE_PASSWORD)) == 1

    def test_only_latest_token_is_valid(self, sessions, stores, notifier, make_user):
        make_user("f@example.com")
        sessions.forgot_password("f@example.com", CTX)
        sessions.forgot_password("f@example.com", CTX)
        older, newer = notifier.sent[0][1], notifier.sent[1][1]
        with pytest.raises(InvalidToken):
            sessions.reset_password(older, "N3wPassword", CTX)
        sessions.reset_password(newer, "N3wPassword", CTX)

    def test_stored_expiry_is_enforced(self, sessions, stores, notifier, make_user):
        user = make_user("f@example.com")
        sessions.forgot_password("f@example.com", CTX)
        token = notifier.sent[0][1]
        stores.users.set_reset_token(user.id, token, datetime.now(timezone.utc) - timedelta(minutes=1))
        with pytest.raises(InvalidToken):
            sessions.reset_password(token, "N3wPassword", CTX)

    def test_access_token_cannot_reset(self, sessions, stores, make_user):
        make_user("f@example.com")
        tokens = sessions.login("f@example.com", PASSWORD, CTX)
        with pytest.raises(InvalidToken):
            sessions.reset_password(tokens["access_token"], "N3wPassword", CTX)


class TestChangePasswordLogoutProfile:
    def test_change_password(self, sessions, stores, make_user):
        user = make_user("c@example.com")
        sessions.change_password(user.id, PASSWORD, "Chang3dPass", CTX)
        with pytest.raises(InvalidCredentials):
            sessions.login("c@example.com", PASSWORD, CTX)
        assert sessions.login("c@example.com", "Chang3dPass", CTX)["access_token"]
        [record] = _records(stores, AuditAction.CHANGE_PASSWORD)
        assert record.user_id == user.id

    def test_change_password_wrong_current(self, sessions, stores, make_user):
        user = make_user("c@example.com")
        with pytest.raises(InvalidCredentials):
            sessions.change_password(user.id, "Wrong1234", "Chang3dPass", CTX)
        assert _records(stores, AuditAction.CHANGE_PASSWORD) == []

    def test_logout_is_recorded(self, sessions, stores, make_user):
        user = make_user("l@example.com")
        sessions.logout(user.id, CTX)
        [record] = _records(stores, AuditAction.LOGOUT)
        assert record.user_id == user.id

    def test_profile_has_role_and_no_secrets(self, sessions, stores, make_user):
        user = make_user("p@example.com", role_name="moderator")
        profile = sessions.profile(user.id)
        assert profile["role"]["name"] == "moderator"
        assert "hashed_password" not in profile
        assert "reset_password_token" not in profile

    def test_profile_missing_user(self, sessions):
        with pytest.raises(NotFound):
            sessions.profile(12345)
