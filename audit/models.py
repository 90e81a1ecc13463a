"""
audit/models.py -- Domain types for the audit trail.

AuditRecord is frozen: a record is written once and never edited. The store
exposes no update method either, so append-only holds at both layers.

AuditAction is a closed enumeration. Only mutating and authentication events
are audited; reads never produce a record.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class AuditAction(str, Enum):
    CREATE_USER = "CREATE_USER"
    UPDATE_USER = "UPDATE_USER"
    DELETE_USER = "DELETE_USER"
    CREATE_ROLE = "CREATE_ROLE"
    UPDATE_ROLE = "UPDATE_ROLE"
    DELETE_ROLE = "DELETE_ROLE"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    FAILED_LOGIN = "FAILED_LOGIN"
    CHANGE_PASSWORD = "CHANGE_PASSWORD"
    RESET_PASSWORD = "RESET_PASSWORD"
    ASSIGN_ROLE = "ASSIGN_ROLE"


class AuditResource(str, Enum):
    USERS = "users"
    ROLES = "roles"
    AUTH = "auth"


@dataclass(frozen=True)
class AuditRecord:
    """One immutable entry in the audit trail.

    user_id is the actor (None for anonymous events such as FAILED_LOGIN).
    before / after are JSON-compatible snapshots with secrets already
    scrubbed; either may be None.
    """

    action: AuditAction
    resource: AuditResource
    user_id: int | None = None
    resource_id: str | None = None
    before: Any = None
    after: Any = None
    ip_address: str | None = None
    user_agent: str | None = None
    timestamp: str | None = None
    id: int | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "action": self.action.value,
            "resource": self.resource.value,
            "resource_id": self.resource_id,
            "before": self.before,
            "after": self.after,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "timestamp": self.timestamp,
        }


@dataclass
class AuditFilter:
    """Query filter for AuditStore.query() and AuditStore.statistics().

    Every field is optional; unset fields do not constrain the result.
    """

    user_id: int | None = None
    action: AuditAction | None = None
    resource: AuditResource | None = None
    resource_id: str | None = None
    start: datetime | None = None
    end: datetime | None = None
