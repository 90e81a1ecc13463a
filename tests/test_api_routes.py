"""
tests/test_api_routes.py -- Integration tests for users, roles and audit routes.

These tests exercise the full stack: FastAPI routing -> Authorization Gate
dependencies -> services -> stores -> @audited recording -> envelope
serialization. Unit testing individual route functions would miss the gate
and the interceptor, which are the point here.

Coverage:
  - Gate: 401 without/with a bad token, 403 naming the missing permission,
    ownership via :self permissions, deactivated accounts, live role changes
  - Users: list, create, update, profile, assign role, delete, self-delete
  - Roles: CRUD, super-admin protection, role-in-use, permission catalogue
  - Audit: records carry before/after snapshots, filters, statistics

Fixtures used (from conftest.py):
  - api_client: ApiContext(client, stores, admin, token) -- a super-admin
    caller; api_client.headers_for(user) builds headers for any other user.
"""

from __future__ import annotations

import itertools

from audit.models import AuditAction, AuditFilter
from auth.models import User
from auth.tokens import hash_password

_seq = itertools.count(1)


def _user(api_client, role_name: str = "user", is_active: bool = True) -> User:
    stores = api_client.stores
    role = stores.roles.get_by_name(role_name)
    user_id = stores.users.create_user(
        User(
            first_name="Api",
            last_name=role_name.title(),
            email=f"{role_name}{next(_seq)}@example.com",
            role_id=role.id,
            hashed_password=hash_password("Passw0rd", rounds=4),
            is_active=is_active,
        )
    )
    return stores.users.get_by_id(user_id)


def _role_id(api_client, name: str) -> int:
    return api_client.stores.roles.get_by_name(name).id


def _records(api_client, **filters):
    records, _total = api_client.stores.audit.query(AuditFilter(**filters), page=1, limit=100)
    return records


# ---------------------------------------------------------------------------
# Authorization Gate
# ---------------------------------------------------------------------------


class TestGate:
    def test_missing_token(self, api_client):
        resp = api_client.client.get("/api/v1/users")
        assert resp.status_code == 401
        body = resp.json()
        assert body["success"] is False
        assert body["code"] == "authentication_required"

    def test_garbage_token(self, api_client):
        resp = api_client.client.get("/api/v1/users", headers={"Authorization": "Bearer not.a.jwt"})
        assert resp.status_code == 401
        assert resp.json()["code"] == "invalid_token"

    def test_missing_permission_is_named(self, api_client):
        plain = _user(api_client)
        resp = api_client.client.get("/api/v1/users", headers=api_client.headers_for(plain))
        assert resp.status_code == 403
        assert "user:read" in resp.json()["message"]

    def test_owner_reads_self_with_self_permission(self, api_client):
        plain = _user(api_client)
        resp = api_client.client.get(f"/api/v1/users/{plain.id}", headers=api_client.headers_for(plain))
        assert resp.status_code == 200
        assert resp.json()["data"]["id"] == plain.id

    def test_self_permission_does_not_reach_others(self, api_client):
        plain = _user(api_client)
        other = _user(api_client)
        resp = api_client.client.get(f"/api/v1/users/{other.id}", headers=api_client.headers_for(plain))
        assert resp.status_code == 403

    def test_unscoped_permission_reaches_others(self, api_client):
        moderator = _user(api_client, "moderator")
        other = _user(api_client)
        resp = api_client.client.get(f"/api/v1/users/{other.id}", headers=api_client.headers_for(moderator))
        assert resp.status_code == 200

    def test_deactivated_account(self, api_client):
        user = _user(api_client, "moderator")
        headers = api_client.headers_for(user)
        api_client.stores.users.update_user(user.id, is_active=False)
        resp = api_client.client.get("/api/v1/users", headers=headers)
        assert resp.status_code == 403
        assert resp.json()["code"] == "account_inactive"

    def test_deleted_account(self, api_client):
        user = _user(api_client, "moderator")
        headers = api_client.headers_for(user)
        api_client.stores.users.delete_user(user.id)
        assert api_client.client.get("/api/v1/users", headers=headers).status_code == 401

    def test_role_change_applies_to_issued_tokens(self, api_client):
        user = _user(api_client, "moderator")
        headers = api_client.headers_for(user)
        assert api_client.client.get("/api/v1/users", headers=headers).status_code == 200
        api_client.stores.users.update_user(user.id, role_id=_role_id(api_client, "user"))
        assert api_client.client.get("/api/v1/users", headers=headers).status_code == 403

    def test_wildcard_role(self, api_client):
        admin = _user(api_client, "admin")
        resp = api_client.client.get("/api/v1/roles", headers=api_client.headers_for(admin))
        assert resp.status_code == 200


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class TestUsers:
    def test_list_paginates(self, api_client):
        resp = api_client.client.get("/api/v1/users", params={"page": 1, "limit": 2}, headers=api_client.headers)
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert len(data["users"]) <= 2
        assert data["pagination"]["page"] == 1
        assert data["pagination"]["limit"] == 2

    def test_list_rejects_bad_paging(self, api_client):
        resp = api_client.client.get("/api/v1/users", params={"limit": 1000}, headers=api_client.headers)
        assert resp.status_code == 400
        assert resp.json()["errors"][0]["field"] == "limit"

    def test_create_is_audited(self, api_client):
        body = {
            "first_name": "New",
            "last_name": "Hire",
            "email": "new.hire@example.com",
            "password": "Welc0me1",
            "role_id": _role_id(api_client, "moderator"),
        }
        resp = api_client.client.post("/api/v1/users", json=body, headers=api_client.headers)
        assert resp.status_code == 201
        created = resp.json()["data"]

        [record] = _records(api_client, action=AuditAction.CREATE_USER, resource_id=str(created["id"]))
        assert record.user_id == api_client.admin.id
        assert record.after["email"] == "new.hire@example.com"
        assert "password" not in record.after

    def test_update_records_before_and_after(self, api_client):
        target = _user(api_client)
        resp = api_client.client.put(
            f"/api/v1/users/{target.id}", json={"first_name": "Renamed"}, headers=api_client.headers
        )
        assert resp.status_code == 200
        [record] = _records(api_client, action=AuditAction.UPDATE_USER, resource_id=str(target.id))
        assert record.before["first_name"] == "Api"
        assert record.after["first_name"] == "Renamed"

    def test_failed_update_is_not_audited(self, api_client):
        target = _user(api_client)
        taken = _user(api_client)
        resp = api_client.client.put(
            f"/api/v1/users/{target.id}", json={"email": taken.email}, headers=api_client.headers
        )
        assert resp.status_code == 409
        assert _records(api_client, action=AuditAction.UPDATE_USER, resource_id=str(target.id)) == []

    def test_update_missing_user(self, api_client):
        resp = api_client.client.put("/api/v1/users/999999", json={"first_name": "X"}, headers=api_client.headers)
        assert resp.status_code == 404

    def test_null_is_active_is_rejected(self, api_client):
        target = _user(api_client)
        resp = api_client.client.put(f"/api/v1/users/{target.id}", json={"is_active": None}, headers=api_client.headers)
        assert resp.status_code == 400
        assert resp.json()["errors"][0]["field"] == "is_active"
        assert api_client.stores.users.get_by_id(target.id).is_active is True
        assert _records(api_client, action=AuditAction.UPDATE_USER, resource_id=str(target.id)) == []

    def test_null_email_is_rejected(self, api_client):
        target = _user(api_client)
        resp = api_client.client.put(f"/api/v1/users/{target.id}", json={"email": None}, headers=api_client.headers)
        assert resp.status_code == 400
        assert resp.json()["errors"][0]["field"] == "email"
        assert api_client.stores.users.get_by_id(target.id).email == target.email

    def test_null_role_and_password_are_rejected(self, api_client):
        target = _user(api_client)
        resp = api_client.client.put(
            f"/api/v1/users/{target.id}", json={"role_id": None, "password": None}, headers=api_client.headers
        )
        assert resp.status_code == 400
        assert {e["field"] for e in resp.json()["errors"]} == {"role_id", "password"}

    def test_null_profile_name_is_rejected(self, api_client):
        plain = _user(api_client)
        resp = api_client.client.put(
            "/api/v1/users/profile", json={"first_name": None}, headers=api_client.headers_for(plain)
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "validation_error"
        assert resp.json()["errors"][0]["field"] == "first_name"
        assert api_client.stores.users.get_by_id(plain.id).first_name == "Api"

    def test_null_optional_profile_field_clears_it(self, api_client):
        plain = _user(api_client)
        headers = api_client.headers_for(plain)
        api_client.client.put("/api/v1/users/profile", json={"phone": "+15550199"}, headers=headers)
        resp = api_client.client.put("/api/v1/users/profile", json={"phone": None}, headers=headers)
        assert resp.status_code == 200
        assert resp.json()["data"]["phone"] is None

    def test_own_profile(self, api_client):
        plain = _user(api_client)
        resp = api_client.client.put(
            "/api/v1/users/profile",
            json={"phone": "+15550123", "first_name": "Self"},
            headers=api_client.headers_for(plain),
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["phone"] == "+15550123"
        [record] = _records(api_client, action=AuditAction.UPDATE_USER, resource_id=str(plain.id))
        assert record.user_id == plain.id

    def test_assign_role(self, api_client):
        target = _user(api_client)
        resp = api_client.client.put(
            f"/api/v1/users/{target.id}/role",
            json={"role_id": _role_id(api_client, "moderator")},
            headers=api_client.headers,
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["role"]["name"] == "moderator"
        [record] = _records(api_client, action=AuditAction.ASSIGN_ROLE, resource_id=str(target.id))
        assert record.before["role_id"] == _role_id(api_client, "user")

    def test_delete(self, api_client):
        target = _user(api_client)
        resp = api_client.client.delete(f"/api/v1/users/{target.id}", headers=api_client.headers)
        assert resp.status_code == 200
        assert api_client.stores.users.get_by_id(target.id) is None
        [record] = _records(api_client, action=AuditAction.DELETE_USER, resource_id=str(target.id))
        assert record.before["email"] == target.email
        assert record.after is None

    def test_self_delete_forbidden(self, api_client):
        resp = api_client.client.delete(f"/api/v1/users/{api_client.admin.id}", headers=api_client.headers)
        assert resp.status_code == 400
        assert resp.json()["code"] == "self_deletion"
        assert api_client.stores.users.get_by_id(api_client.admin.id) is not None

    def test_user_audit_logs(self, api_client):
        target = _user(api_client)
        api_client.client.put(f"/api/v1/users/{target.id}", json={"last_name": "Logged"}, headers=api_client.headers)
        resp = api_client.client.get(f"/api/v1/users/{api_client.admin.id}/audit-logs", headers=api_client.headers)
        assert resp.status_code == 200
        assert resp.json()["data"]["pagination"]["total"] >= 1


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


class TestRoles:
    def test_list_includes_user_count(self, api_client):
        resp = api_client.client.get("/api/v1/roles", params={"limit": 100}, headers=api_client.headers)
        assert resp.status_code == 200
        by_name = {r["name"]: r for r in resp.json()["data"]["roles"]}
        assert by_name["super-admin"]["user_count"] >= 1

    def test_permission_catalogue(self, api_client):
        resp = api_client.client.get("/api/v1/roles/permissions", headers=api_client.headers)
        assert resp.status_code == 200
        assert resp.json()["data"]

    def test_create_update_delete(self, api_client):
        created = api_client.client.post(
            "/api/v1/roles",
            json={"name": "auditor", "description": "Reads logs", "permissions": ["audit:read"]},
            headers=api_client.headers,
        )
        assert created.status_code == 201
        role_id = created.json()["data"]["id"]

        updated = api_client.client.put(
            f"/api/v1/roles/{role_id}",
            json={"permissions": ["audit:read", "user:read"]},
            headers=api_client.headers,
        )
        assert updated.status_code == 200
        [record] = _records(api_client, action=AuditAction.UPDATE_ROLE, resource_id=str(role_id))
        assert record.before["permissions"] == ["audit:read"]
        assert record.after["permissions"] == ["audit:read", "user:read"]

        deleted = api_client.client.delete(f"/api/v1/roles/{role_id}", headers=api_client.headers)
        assert deleted.status_code == 200
        assert api_client.client.get(f"/api/v1/roles/{role_id}", headers=api_client.headers).status_code == 404

    def test_unknown_permission_rejected(self, api_client):
        resp = api_client.client.post(
            "/api/v1/roles",
            json={"name": "bogus", "permissions": ["user:fly"]},
            headers=api_client.headers,
        )
        assert resp.status_code == 400
        assert "user:fly" in resp.json()["errors"][0]["message"]

    def test_super_role_is_protected(self, api_client):
        super_id = _role_id(api_client, "super-admin")
        delete = api_client.client.delete(f"/api/v1/roles/{super_id}", headers=api_client.headers)
        rename = api_client.client.put(f"/api/v1/roles/{super_id}", json={"name": "root"}, headers=api_client.headers)
        assert delete.status_code == rename.status_code == 400
        assert delete.json()["code"] == "protected_role"
        assert api_client.stores.roles.get_by_id(super_id).name == "super-admin"
        assert _records(api_client, action=AuditAction.DELETE_ROLE, resource_id=str(super_id)) == []

    def test_role_in_use(self, api_client):
        created = api_client.client.post(
            "/api/v1/roles", json={"name": "occupied", "permissions": ["user:read"]}, headers=api_client.headers
        ).json()["data"]
        holder = _user(api_client)
        api_client.stores.users.update_user(holder.id, role_id=created["id"])

        resp = api_client.client.delete(f"/api/v1/roles/{created['id']}", headers=api_client.headers)
        assert resp.status_code == 409
        assert resp.json()["code"] == "role_in_use"
        assert api_client.stores.roles.get_by_id(created["id"]) is not None

        members = api_client.client.get(f"/api/v1/roles/{created['id']}/users", headers=api_client.headers)
        assert members.json()["data"]["pagination"]["total"] == 1


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


class TestAuditRoutes:
    def test_logs_embed_actor(self, api_client):
        target = _user(api_client)
        api_client.client.put(f"/api/v1/users/{target.id}", json={"last_name": "Seen"}, headers=api_client.headers)
        resp = api_client.client.get(
            "/api/v1/audit/logs", params={"action": "UPDATE_USER"}, headers=api_client.headers
        )
        assert resp.status_code == 200
        latest = resp.json()["data"]["logs"][0]
        assert latest["user"]["email"] == api_client.admin.email
        assert latest["action"] == "UPDATE_USER"

    def test_my_logs_only_show_caller(self, api_client):
        plain = _user(api_client)
        headers = api_client.headers_for(plain)
        api_client.client.put("/api/v1/users/profile", json={"address": "1 Main St"}, headers=headers)
        resp = api_client.client.get("/api/v1/audit/logs/my", headers=headers)
        assert resp.status_code == 200
        logs = resp.json()["data"]["logs"]
        assert logs
        assert all(entry["user_id"] == plain.id for entry in logs)

    def test_plain_user_cannot_read_all_logs(self, api_client):
        plain = _user(api_client)
        resp = api_client.client.get("/api/v1/audit/logs", headers=api_client.headers_for(plain))
        assert resp.status_code == 403

    def test_bad_date_range(self, api_client):
        resp = api_client.client.get(
            "/api/v1/audit/logs",
            params={"start_date": "2030-01-02T00:00:00Z", "end_date": "2030-01-01T00:00:00Z"},
            headers=api_client.headers,
        )
        assert resp.status_code == 400

    def test_single_log_and_missing(self, api_client):
        target = _user(api_client)
        api_client.client.put(f"/api/v1/users/{target.id}", json={"last_name": "One"}, headers=api_client.headers)
        [record] = _records(api_client, action=AuditAction.UPDATE_USER, resource_id=str(target.id))
        found = api_client.client.get(f"/api/v1/audit/logs/{record.id}", headers=api_client.headers)
        assert found.status_code == 200
        assert found.json()["data"]["id"] == record.id
        assert api_client.client.get("/api/v1/audit/logs/999999", headers=api_client.headers).status_code == 404

    def test_statistics(self, api_client):
        resp = api_client.client.get("/api/v1/audit/statistics", headers=api_client.headers)
        assert resp.status_code == 200
        stats = resp.json()["data"]
        assert stats["total"] >= 1
        assert {"total", "unique_users", "by_action", "by_resource", "date_range"} <= set(stats)

    def test_vocabularies(self, api_client):
        actions = api_client.client.get("/api/v1/audit/actions", headers=api_client.headers).json()["data"]
        resources = api_client.client.get("/api/v1/audit/resources", headers=api_client.headers).json()["data"]
        assert "FAILED_LOGIN" in actions
        assert set(resources) == {"users", "roles", "auth"}

    def test_reads_are_not_audited(self, api_client):
        before = api_client.stores.audit.count()
        api_client.client.get("/api/v1/users", headers=api_client.headers)
        api_client.client.get("/api/v1/audit/logs", headers=api_client.headers)
        assert api_client.stores.audit.count() == before
