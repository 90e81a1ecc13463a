"""
auth/sessions.py -- Session lifecycle: register, login, refresh, password flows.

SessionManager is the only component that issues credentials. It owns the
ordering rules that keep authentication failures uninformative:

  login   unknown email   -> burn a bcrypt check, InvalidCredentials
          wrong password  -> InvalidCredentials (same message)
          inactive        -> AccountInactive, only after the password matched
  Every rejected login writes exactly one FAILED_LOGIN record (actor None).

  forgot_password returns the same message whether or not the email exists.

Refresh rotates both credentials. There is no denylist: a refresh token stays
valid until it expires, even after rotation or logout. Logout only records
the event; clients discard their tokens.

Audit records written here (all via AuditLogger, never raising):
  LOGIN, FAILED_LOGIN, LOGOUT, RESET_PASSWORD (forgot), CHANGE_PASSWORD
  (reset and change). CREATE_USER for register comes from the @audited
  decorator on the HTTP endpoint.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hmac
import logging
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy.exc import IntegrityError

from audit.interceptor import AuditContext, AuditLogger
from audit.models import AuditAction, AuditResource
from auth.models import Role, User
from auth.store import RoleStore, UserStore
from auth.tokens import TokenIssuer, burn_password_check, hash_password, verify_password
from core.config import Settings
from core.errors import (
    AccountInactive,
    DuplicateEmail,
    InvalidCredentials,
    InvalidInput,
    InvalidToken,
    NotFound,
)

logger = logging.getLogger("accessgate.auth")

FORGOT_PASSWORD_MESSAGE = "If an account with this email exists, a password reset link has been sent."

# ---------------------------------------------------------------------------
# Reset delivery
# ---------------------------------------------------------------------------


class ResetNotifier(Protocol):
    """Delivers a password-reset token to the account owner (mail, SMS, ...)."""

    def send_password_reset(self, user: User, token: str, expires_at: datetime) -> None: ...


class LoggingResetNotifier:
    """Default notifier: records that a reset was issued. Never logs the token."""

    def send_password_reset(self, user: User, token: str, expires_at: datetime) -> None:
        logger.info("Password reset issued for user id=%s (expires %s)", user.id, expires_at.isoformat())


# ---------------------------------------------------------------------------
# Session manager
# ---------------------------------------------------------------------------


class SessionManager:
    """Credential lifecycle over the user/role stores.

    Every public method takes an AuditContext describing the HTTP caller.
    Methods return plain dicts ready to be placed in the response envelope.
    """

    def __init__(
        self,
        users: UserStore,
        roles: RoleStore,
        issuer: TokenIssuer,
        audit: AuditLogger,
        settings: Settings,
        notifier: ResetNotifier | None = None,
    ) -> None:
        self.users = users
        self.roles = roles
        self.issuer = issuer
        self.audit = audit
        self.settings = settings
        self.notifier = notifier or LoggingResetNotifier()

    # ------------------------------------------------------------------
    # Registration / login
    # ------------------------------------------------------------------

    def register(self, fields: dict, context: AuditContext | None = None) -> dict:
        """Create an account and sign it in.

        fields: first_name, last_name, email, password, optional role_id and
        profile fields. Without role_id the default role is assigned.
        """
        email = fields["email"].strip().lower()
        if self.users.get_by_email(email) is not None:
            raise DuplicateEmail()

        role_id = fields.get("role_id")
        if role_id is not None and not self.settings.allow_register_role_id:
            raise InvalidInput("Choosing a role at registration is disabled.")
        if role_id is not None:
            role = self.roles.get_by_id(role_id)
            if role is None:
                raise InvalidInput("Invalid role ID.")
        else:
            role = self.roles.get_by_name(self.settings.default_role_name)
            if role is None:
                raise NotFound("Default user role not found.")

        user = User(
            first_name=fields["first_name"],
            last_name=fields["last_name"],
            email=email,
            role_id=role.id,
            hashed_password=hash_password(fields["password"], self.settings.bcrypt_rounds),
            avatar=fields.get("avatar"),
            gender=fields.get("gender"),
            phone=fields.get("phone"),
            date_of_birth=fields.get("date_of_birth"),
            address=fields.get("address"),
        )
        try:
            user_id = self.users.create_user(user)
        except IntegrityError:
            raise DuplicateEmail() from None

        created = self.users.get_by_id(user_id)
        logger.info("User registered: id=%s role=%s", user_id, role.name)
        return self._session_payload(created, role)

    def login(self, email: str, password: str, context: AuditContext | None = None) -> dict:
        normalized = (email or "").strip().lower()
        user = self.users.get_by_email(normalized) if normalized else None

        if user is None:
            burn_password_check(password)  # [C1]
            self._failed_login(normalized, "unknown_email", context)
            raise InvalidCredentials()

        if not verify_password(password, user.hashed_password or ""):
            self._failed_login(normalized, "wrong_password", context, user_id=user.id)
            raise InvalidCredentials()

        if not user.is_active:
            self._failed_login(normalized, "account_inactive", context, user_id=user.id)
            raise AccountInactive()

        role = self._role_of(user)
        user.last_login = self.users.update_last_login(user.id)
        self.audit.log_auth_event(AuditAction.LOGIN, context, user_id=user.id, details={"email": user.email})
        logger.info("Login succeeded: user id=%s", user.id)
        return self._session_payload(user, role)

    def _failed_login(
        self,
        email: str,
        reason: str,
        context: AuditContext | None,
        user_id: int | None = None,
    ) -> None:
        # Actor stays None: the caller never authenticated. The attempted
        # account, when it exists, is kept as the resource id.
        logger.info("Login failed (%s)", reason)
        self.audit.log(
            AuditAction.FAILED_LOGIN,
            AuditResource.AUTH,
            (context or AuditContext()).with_actor(None),
            resource_id=user_id,
            after={"email": email, "reason": reason},
        )

    def refresh(self, refresh_token: str, context: AuditContext | None = None) -> dict:
        """Exchange a refresh token for a new access + refresh pair."""
        claims = self.issuer.verify_refresh(refresh_token)
        user = self.users.get_by_id(claims["user_id"])
        if user is None or not user.is_active:
            raise InvalidToken()
        role = self.roles.get_by_id(user.role_id)
        if role is None:
            raise InvalidToken()
        return {
            "access_token": self.issuer.issue_access(user, role),
            "refresh_token": self.issuer.issue_refresh(user),
        }

    def logout(self, user_id: int, context: AuditContext | None = None) -> None:
        self.audit.log_auth_event(AuditAction.LOGOUT, context, user_id=user_id)

    def profile(self, user_id: int) -> dict:
        user = self.users.get_by_id(user_id)
        if user is None:
            raise NotFound("User not found.")
        return user.to_public(self.roles.get_by_id(user.role_id))

    # ------------------------------------------------------------------
    # Password flows
    # ------------------------------------------------------------------

    def forgot_password(self, email: str, context: AuditContext | None = None) -> str | None:
        """Issue a reset token if the account exists.

        Returns the token only when EXPOSE_RESET_TOKEN is enabled; callers
        must not branch their response on anything else.
        """
        user = self.users.get_by_email((email or "").strip().lower())
        if user is None:
            logger.info("Password reset requested for unknown email")
            return None

        token = self.issuer.issue_password_reset(user)
        expires_at = self.issuer.reset_expiry()
        self.users.set_reset_token(user.id, token, expires_at)
        self.notifier.send_password_reset(user, token, expires_at)
        self.audit.log_auth_event(AuditAction.RESET_PASSWORD, context, user_id=user.id, details={"email": user.email})
        return token if self.settings.expose_reset_token else None

    def reset_password(self, token: str, new_password: str, context: AuditContext | None = None) -> None:
        """Set a new password with a one-shot reset token.

        The token must verify cryptographically AND equal the stored value
        AND the stored expiry must be in the future. Using it clears the
        stored value, so a second presentation fails.
        """
        claims = self.issuer.verify_password_reset(token)
        user = self.users.get_by_id(claims["user_id"])
        if user is None or not user.reset_password_token:
            raise InvalidToken()
        if not hmac.compare_digest(user.reset_password_token, token):
            raise InvalidToken()
        if not self._reset_still_valid(user.reset_password_expires):
            raise InvalidToken()

        new_hash = hash_password(new_password, self.settings.bcrypt_rounds)
        if not self.users.consume_reset_token(user.id, token, new_hash):
            raise InvalidToken()
        self.audit.log_auth_event(AuditAction.CHANGE_PASSWORD, context, user_id=user.id, details={"method": "reset"})
        logger.info("Password reset completed: user id=%s", user.id)

    def change_password(
        self,
        user_id: int,
        current_password: str,
        new_password: str,
        context: AuditContext | None = None,
    ) -> None:
        # TODO: rotate or revoke outstanding refresh tokens once a token
        # version column exists on users.
        user = self.users.get_by_id(user_id)
        if user is None:
            raise NotFound("User not found.")
        if not verify_password(current_password, user.hashed_password or ""):
            raise InvalidCredentials("Current password is incorrect.")
        self.users.update_user(user.id, hashed_password=hash_password(new_password, self.settings.bcrypt_rounds))
        self.audit.log_auth_event(AuditAction.CHANGE_PASSWORD, context, user_id=user.id, details={"method": "change"})

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _role_of(self, user: User) -> Role:
        role = self.roles.get_by_id(user.role_id)
        if role is None:
            logger.error("User id=%s references missing role id=%s", user.id, user.role_id)
            raise NotFound("Assigned role not found.")
        return role

    def _session_payload(self, user: User, role: Role) -> dict:
        return {
            "user": user.to_public(role),
            "access_token": self.issuer.issue_access(user, role),
            "refresh_token": self.issuer.issue_refresh(user),
        }

    def _reset_still_valid(self, stored_expiry: str | None) -> bool:
        if not stored_expiry:
            return False
        try:
            expires_at = datetime.fromisoformat(stored_expiry)
        except ValueError:
            return False
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at > self.issuer.now()
