"""
core/errors.py -- Exception taxonomy shared by auth/, audit/ and api/.

Every error a service can raise on purpose is a ServiceError subclass that
carries its HTTP status and machine-readable code as class attributes. The
API layer has a single exception handler for ServiceError that turns any of
them into the uniform response envelope, so services never import FastAPI.

Authentication failures use fixed, uninformative messages (no hint whether an
email exists or why a token was rejected). Authorization failures name the
missing permission: the caller is already authenticated, so the detail helps
debugging without enabling enumeration.
"""

from __future__ import annotations


class ServiceError(Exception):
    """Base class for expected, user-facing failures."""

    status_code: int = 400
    code: str = "error"
    message: str = "Request failed."

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class InvalidCredentials(ServiceError):
    status_code = 401
    code = "invalid_credentials"
    message = "Invalid email or password."


class AccountInactive(ServiceError):
    status_code = 403
    code = "account_inactive"
    message = "Account is deactivated."


class InvalidToken(ServiceError):
    status_code = 401
    code = "invalid_token"
    message = "Invalid or expired token."


class AuthenticationRequired(InvalidToken):
    code = "authentication_required"
    message = "Access token required."


class TokenPurposeMismatch(InvalidToken):
    """A structurally valid token presented for the wrong purpose.

    Keeps the parent's public code and message: callers must not be able to
    tell a wrong-purpose token from a forged one.
    """


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


class InsufficientPermission(ServiceError):
    status_code = 403
    code = "insufficient_permission"
    message = "Insufficient permissions."

    def __init__(self, permission: str) -> None:
        self.permission = permission
        super().__init__(f"Insufficient permissions: '{permission}' is required.")


# ---------------------------------------------------------------------------
# Directory (users / roles)
# ---------------------------------------------------------------------------


class NotFound(ServiceError):
    status_code = 404
    code = "not_found"
    message = "Resource not found."


class DuplicateEmail(ServiceError):
    status_code = 409
    code = "duplicate_email"
    message = "A user with this email already exists."


class DuplicateRoleName(ServiceError):
    status_code = 409
    code = "duplicate_role_name"
    message = "A role with this name already exists."


class ProtectedRoleViolation(ServiceError):
    status_code = 400
    code = "protected_role"
    message = "The super-admin role cannot be renamed, stripped of '*:*', or deleted."


class RoleInUse(ServiceError):
    status_code = 409
    code = "role_in_use"
    message = "Cannot delete a role that is assigned to users."


class SelfDeletionForbidden(ServiceError):
    status_code = 400
    code = "self_deletion"
    message = "You cannot delete your own account."


class InvalidInput(ServiceError):
    status_code = 400
    code = "invalid_input"
    message = "Invalid input."
