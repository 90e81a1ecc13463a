"""
auth/tokens.py -- JWT issuing/verification and password hashing.

Security design decisions:
  JWT: python-jose with HS256. Three token classes, each tagged with a "type"
       claim that verification checks:

         access          access secret   short TTL   user_id, email, role_id, permissions
         refresh         refresh secret  long TTL    user_id only
         password-reset  access secret   1 hour      user_id only

       Access and refresh tokens use different secrets, so a leaked access
       secret cannot mint refresh tokens and vice versa. Reset tokens share
       the access secret, which is why the type claim is checked on both
       sides: a reset token is never accepted as an access token and an
       access token is never accepted as a reset token.

       Every verification failure raises InvalidToken with the same message.
       Bad signature, expiry, malformed input and wrong purpose all look the
       same to the caller [C2].

  Passwords: bcrypt directly (no passlib wrapper). The dummy hash enables
       timing equalization in SessionManager.login() so response time does
       not reveal whether an email exists [C1].

Nothing in this module persists anything. Revocation is expiry-only.

Layer rule: no imports from api/ or audit/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from core.errors import InvalidToken, TokenPurposeMismatch

if TYPE_CHECKING:
    from auth.models import Role, User
    from core.config import Settings

logger = logging.getLogger("accessgate.auth")

_ALGORITHM = "HS256"

ACCESS = "access"
REFRESH = "refresh"
PASSWORD_RESET = "password-reset"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are silently truncated by bcrypt. The API
    layer caps password length at 128 characters.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


@lru_cache(maxsize=1)
def _dummy_hash() -> str:
    # Computed once, lazily, so importing this module stays cheap.
    return hash_password("accessgate_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Spend one bcrypt verification on nothing [C1].

    Call on the "no such user" path so it costs the same as a wrong password.
    """
    verify_password(plain, _dummy_hash())


# ---------------------------------------------------------------------------
# Token issuer
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenIssuer:
    """Mints and verifies the three bearer token classes.

    Built once at startup from Settings and shared through app.state. The
    clock is injectable so tests can mint already-expired tokens.

    Usage:
        issuer = TokenIssuer.from_settings(get_settings())
        token = issuer.issue_access(user, role)
        claims = issuer.verify_access(token)   # raises InvalidToken
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        access_ttl: int = 15 * 60,
        refresh_ttl: int = 7 * 24 * 3600,
        reset_ttl: int = 3600,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._access_secret = access_secret
        self._refresh_secret = refresh_secret
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.reset_ttl = reset_ttl
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> TokenIssuer:
        return cls(
            access_secret=settings.access_token_secret,
            refresh_secret=settings.refresh_token_secret,
            access_ttl=settings.access_token_expire_seconds,
            refresh_ttl=settings.refresh_token_expire_seconds,
            reset_ttl=settings.reset_token_expire_seconds,
        )

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue_access(self, user: User, role: Role) -> str:
        """Access token with the role's permissions resolved at issuance."""
        claims = {
            "email": user.email,
            "role_id": role.id,
            "permissions": list(role.permissions),
        }
        return self._sign(user.id, ACCESS, self._access_secret, self.access_ttl, claims)

    def issue_refresh(self, user: User) -> str:
        return self._sign(user.id, REFRESH, self._refresh_secret, self.refresh_ttl)

    def issue_password_reset(self, user: User) -> str:
        return self._sign(user.id, PASSWORD_RESET, self._access_secret, self.reset_ttl)

    def now(self) -> datetime:
        return self._clock()

    def reset_expiry(self) -> datetime:
        """When a reset token minted now stops being valid."""
        return self._clock() + timedelta(seconds=self.reset_ttl)

    def _sign(self, user_id: int | None, token_type: str, secret: str, ttl: int, extra: dict | None = None) -> str:
        now = self._clock()
        payload = {
            "sub": str(user_id),
            "user_id": user_id,
            "type": token_type,
            # jti keeps two tokens minted in the same second distinct, so a
            # rotated refresh token never equals the one it replaced.
            "jti": secrets.token_hex(8),
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=ttl)).timestamp()),
        }
        if extra:
            payload.update(extra)
        return jwt.encode(payload, secret, algorithm=_ALGORITHM)

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify_access(self, token: str) -> dict:
        return self._verify(token, self._access_secret, ACCESS)

    def verify_refresh(self, token: str) -> dict:
        return self._verify(token, self._refresh_secret, REFRESH)

    def verify_password_reset(self, token: str) -> dict:
        return self._verify(token, self._access_secret, PASSWORD_RESET)

    def _verify(self, token: str, secret: str, expected_type: str) -> dict:
        if not token or not isinstance(token, str):
            raise InvalidToken()
        try:
            payload = jwt.decode(token, secret, algorithms=[_ALGORITHM])
        except JWTError as exc:
            logger.info("%s token rejected: %s", expected_type, type(exc).__name__)
            raise InvalidToken() from None
        if payload.get("type") != expected_type:
            logger.warning("Token purpose mismatch: expected %s, got %r", expected_type, payload.get("type"))
            raise TokenPurposeMismatch()
        if not isinstance(payload.get("user_id"), int):
            raise InvalidToken()
        return payload


def extract_bearer_token(header: str | None) -> str | None:
    """Return the token from "Bearer <token>", or None for anything else."""
    if not header:
        return None
    parts = header.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        return None
    return parts[1]
