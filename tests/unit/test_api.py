# Copyright (c) 2026 Flowkeeper Contributors. All Rights Reserved.
"""API tests: bootstrap, access checks, instances, members and settings."""

import pytest

from flowkeeper.core.identity import Role

ROOT = "root@example.com"
BOB = "bob@example.com"

DB_SETTINGS = {"host": "n8n-db.internal", "database": "n8n", "user": "n8n", "password": "pw"}


async def _bootstrap(client):
    resp = await client.post("/api/users", json={"name": "Root", "email": ROOT})
    assert resp.status_code == 201
    # identify explicitly per request from here on
    client.cookies.clear()
    return resp.json()


async def _add_bob(client, as_user, role="User"):
    resp = await client.post(
        "/api/users",
        json={"name": "Bob", "email": BOB, "instance_id": "default", "role": role},
        headers=as_user(ROOT),
    )
    assert resp.status_code == 201
    return resp.json()


class TestObservability:
    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["system"] == "bootstrapping"
        assert data["pools"]["size"] == 0
        assert "metrics" in data

    @pytest.mark.asyncio
    async def test_metrics(self, client):
        resp = await client.get("/api/metrics")
        assert resp.status_code == 200
        assert "counters" in resp.json()

    @pytest.mark.asyncio
    async def test_trace_id_echoed(self, client):
        resp = await client.get("/health", headers={"X-Trace-Id": "trace-123"})
        assert resp.headers["X-Trace-Id"] == "trace-123"


class TestBootstrap:
    @pytest.mark.asyncio
    async def test_first_user_becomes_superadmin(self, client, keeper, as_user):
        resp = await client.post("/api/users", json={"name": "Root", "email": "Root@Example.com"})
        assert resp.status_code == 201
        body = resp.json()
        assert body["is_superadmin"] is True
        assert body["email"] == ROOT
        assert "vm_user" in resp.cookies
        assert keeper.bootstrap_gate.is_operational

        client.cookies.clear()
        instances = (await client.get("/api/instances", headers=as_user(ROOT))).json()
        assert [(i["id"], i["role"]) for i in instances] == [("default", "Admin")]

    @pytest.mark.asyncio
    async def test_window_closes_after_first_user(self, client):
        await _bootstrap(client)
        resp = await client.post("/api/users", json={"name": "Eve", "email": "eve@example.com"})
        assert resp.status_code == 401
        assert resp.json()["code"] == "NOT_AUTHENTICATED"

    @pytest.mark.asyncio
    async def test_settings_open_during_bootstrap(self, client):
        resp = await client.get("/api/settings")
        assert resp.status_code == 200
        assert resp.json()["instance_id"] == "default"

    @pytest.mark.asyncio
    async def test_user_admin_closed_during_bootstrap(self, client):
        resp = await client.get("/api/users")
        assert resp.status_code == 401


class TestAccessChecks:
    @pytest.mark.asyncio
    async def test_unauthenticated(self, client):
        await _bootstrap(client)
        resp = await client.get("/api/settings")
        assert resp.status_code == 401
        assert "trace_id" in resp.json()

    @pytest.mark.asyncio
    async def test_unknown_identity(self, client, as_user):
        await _bootstrap(client)
        resp = await client.get("/api/instances", headers=as_user("ghost@example.com"))
        assert resp.status_code == 401
        assert resp.json()["message"] == "User not found"

    @pytest.mark.asyncio
    async def test_member_without_admin_role(self, client, as_user):
        await _bootstrap(client)
        await _add_bob(client, as_user)
        resp = await client.get("/api/settings", headers=as_user(BOB))
        assert resp.status_code == 403
        assert resp.json()["code"] == "FORBIDDEN"
        assert resp.json()["message"] == "Instance Admin role required"

    @pytest.mark.asyncio
    async def test_instance_admin(self, client, as_user):
        await _bootstrap(client)
        await _add_bob(client, as_user, role="Admin")
        resp = await client.get("/api/settings", headers=as_user(BOB))
        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_non_superadmin_cannot_list_users(self, client, as_user):
        await _bootstrap(client)
        await _add_bob(client, as_user, role="Admin")
        resp = await client.get("/api/users", headers=as_user(BOB))
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_me(self, client, as_user):
        await _bootstrap(client)
        await _add_bob(client, as_user)
        data = (await client.get("/api/me", headers=as_user(BOB))).json()
        assert data["user"]["email"] == BOB
        assert data["instance_id"] == "default"
        assert data["role"] == "User"


class TestInstancesAPI:
    @pytest.mark.asyncio
    async def test_create_and_list(self, client, as_user):
        await _bootstrap(client)
        resp = await client.post(
            "/api/instances", json={"name": "Production", "slug": " Prod "}, headers=as_user(ROOT),
        )
        assert resp.status_code == 201
        assert resp.json()["slug"] == "prod"

        listed = (await client.get("/api/instances", headers=as_user(ROOT))).json()
        assert {i["slug"] for i in listed} == {"default", "prod"}
        assert all(i["role"] == "Admin" for i in listed)

    @pytest.mark.asyncio
    async def test_duplicate_slug(self, client, as_user):
        await _bootstrap(client)
        body = {"name": "Prod", "slug": "prod"}
        await client.post("/api/instances", json=body, headers=as_user(ROOT))
        resp = await client.post("/api/instances", json=body, headers=as_user(ROOT))
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_only_superadmin_creates(self, client, as_user):
        await _bootstrap(client)
        await _add_bob(client, as_user, role="Admin")
        resp = await client.post(
            "/api/instances", json={"name": "X", "slug": "x"}, headers=as_user(BOB),
        )
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_default_instance_protected(self, client, as_user):
        await _bootstrap(client)
        resp = await client.delete("/api/instances/default", headers=as_user(ROOT))
        assert resp.status_code == 409
        assert resp.json()["code"] == "DEFAULT_INSTANCE_PROTECTED"

    @pytest.mark.asyncio
    async def test_delete_instance(self, client, as_user):
        await _bootstrap(client)
        created = (await client.post(
            "/api/instances", json={"name": "Tmp", "slug": "tmp"}, headers=as_user(ROOT),
        )).json()
        resp = await client.delete(f"/api/instances/{created['id']}", headers=as_user(ROOT))
        assert resp.status_code == 204
        resp = await client.delete(f"/api/instances/{created['id']}", headers=as_user(ROOT))
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_switch(self, client, as_user):
        await _bootstrap(client)
        await _add_bob(client, as_user)
        prod = (await client.post(
            "/api/instances", json={"name": "Prod", "slug": "prod"}, headers=as_user(ROOT),
        )).json()

        denied = await client.post(
            "/api/instances/switch", json={"instance_id": prod["id"]}, headers=as_user(BOB),
        )
        assert denied.status_code == 403
        assert denied.json()["message"] == "No access to this instance"

        allowed = await client.post(
            "/api/instances/switch", json={"instance_id": prod["id"]}, headers=as_user(ROOT),
        )
        assert allowed.status_code == 200
        assert allowed.cookies.get("vm_instance") == prod["id"]

    @pytest.mark.asyncio
    async def test_members(self, client, as_user):
        await _bootstrap(client)
        bob = await _add_bob(client, as_user)

        resp = await client.put(
            f"/api/instances/default/members/{bob['id']}", json={"role": "Admin"},
            headers=as_user(ROOT),
        )
        assert resp.status_code == 200
        assert resp.json()["role"] == "Admin"

        members = (await client.get("/api/instances/default/members", headers=as_user(BOB))).json()
        assert {m["email"] for m in members} == {ROOT, BOB}

        resp = await client.delete(f"/api/instances/default/members/{bob['id']}", headers=as_user(ROOT))
        assert resp.status_code == 204
        resp = await client.get("/api/settings", headers=as_user(BOB))
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_member_role_validated(self, client, as_user):
        await _bootstrap(client)
        bob = await _add_bob(client, as_user)
        resp = await client.put(
            f"/api/instances/default/members/{bob['id']}", json={"role": "SuperAdmin"},
            headers=as_user(ROOT),
        )
        assert resp.status_code == 422


class TestUsersAPI:
    @pytest.mark.asyncio
    async def test_list_users(self, client, as_user):
        await _bootstrap(client)
        await _add_bob(client, as_user)
        users = (await client.get("/api/users", headers=as_user(ROOT))).json()
        assert {u["email"] for u in users} == {ROOT, BOB}

    @pytest.mark.asyncio
    async def test_duplicate_email(self, client, as_user):
        await _bootstrap(client)
        await _add_bob(client, as_user)
        resp = await client.post(
            "/api/users", json={"name": "Bob2", "email": BOB}, headers=as_user(ROOT),
        )
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_cannot_delete_self(self, client, as_user):
        root = await _bootstrap(client)
        resp = await client.delete(f"/api/users/{root['id']}", headers=as_user(ROOT))
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_deleted_user_loses_access(self, client, as_user):
        await _bootstrap(client)
        bob = await _add_bob(client, as_user, role="Admin")
        resp = await client.delete(f"/api/users/{bob['id']}", headers=as_user(ROOT))
        assert resp.status_code == 204
        resp = await client.get("/api/settings", headers=as_user(BOB))
        assert resp.status_code == 401


class TestUserUpdateAPI:
    @pytest.mark.asyncio
    async def test_granted_superadmin_reaches_any_instance(self, client, keeper, as_user):
        await _bootstrap(client)
        bob = await _add_bob(client, as_user)
        prod = (await client.post(
            "/api/instances", json={"name": "Prod", "slug": "prod"}, headers=as_user(ROOT),
        )).json()
        on_prod = {**as_user(BOB), "X-Instance-Id": prod["id"]}
        assert (await client.get("/api/settings", headers=on_prod)).status_code == 403

        resp = await client.patch(
            f"/api/users/{bob['id']}", json={"is_superadmin": True}, headers=as_user(ROOT),
        )
        assert resp.status_code == 200
        assert resp.json()["is_superadmin"] is True

        outcome = await keeper.resolver.authorize(BOB, prod["id"], Role.ADMIN)
        assert outcome.ok and outcome.role is Role.SUPERADMIN
        assert (await client.get("/api/settings", headers=on_prod)).status_code == 200

        await client.patch(
            f"/api/users/{bob['id']}", json={"is_superadmin": False}, headers=as_user(ROOT),
        )
        assert (await client.get("/api/settings", headers=on_prod)).status_code == 403

    @pytest.mark.asyncio
    async def test_cannot_revoke_own_superadmin(self, client, as_user):
        root = await _bootstrap(client)
        resp = await client.patch(
            f"/api/users/{root['id']}", json={"is_superadmin": False}, headers=as_user(ROOT),
        )
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_name_status_and_membership_role(self, client, keeper, as_user):
        await _bootstrap(client)
        bob = await _add_bob(client, as_user)
        resp = await client.patch(
            f"/api/users/{bob['id']}",
            json={"name": "Robert", "status": "Active", "instance_id": "default", "role": "Admin"},
            headers=as_user(ROOT),
        )
        assert resp.status_code == 200
        assert resp.json()["name"] == "Robert"
        assert resp.json()["status"] == "Active"
        assert (await keeper.directory.find_membership(bob["id"], "default")).role is Role.ADMIN

    @pytest.mark.asyncio
    async def test_role_change_requires_membership(self, client, as_user):
        await _bootstrap(client)
        bob = await _add_bob(client, as_user)
        prod = (await client.post(
            "/api/instances", json={"name": "Prod", "slug": "prod"}, headers=as_user(ROOT),
        )).json()
        resp = await client.patch(
            f"/api/users/{bob['id']}",
            json={"instance_id": prod["id"], "role": "Admin"},
            headers=as_user(ROOT),
        )
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_invalid_updates(self, client, as_user):
        await _bootstrap(client)
        bob = await _add_bob(client, as_user)
        url = f"/api/users/{bob['id']}"
        assert (await client.patch(url, json={"status": "Gone"}, headers=as_user(ROOT))).status_code == 422
        assert (await client.patch(url, json={"role": "Admin"}, headers=as_user(ROOT))).status_code == 422
        assert (await client.patch("/api/users/missing", json={"name": "x"}, headers=as_user(ROOT))).status_code == 404

    @pytest.mark.asyncio
    async def test_only_superadmin_updates(self, client, as_user):
        root = await _bootstrap(client)
        await _add_bob(client, as_user, role="Admin")
        resp = await client.patch(
            f"/api/users/{root['id']}", json={"is_superadmin": False}, headers=as_user(BOB),
        )
        assert resp.status_code == 403


class TestSettingsAPI:
    @pytest.mark.asyncio
    async def test_password_masked(self, client, as_user):
        await _bootstrap(client)
        resp = await client.put("/api/settings", json={"db": DB_SETTINGS}, headers=as_user(ROOT))
        assert resp.status_code == 200
        assert resp.json()["db"]["password"] == "********"

        data = (await client.get("/api/settings", headers=as_user(ROOT))).json()
        assert data["db"]["host"] == "n8n-db.internal"
        assert data["db"]["password"] == "********"

    @pytest.mark.asyncio
    async def test_masked_password_keeps_stored(self, client, keeper, as_user):
        await _bootstrap(client)
        await client.put("/api/settings", json={"db": DB_SETTINGS}, headers=as_user(ROOT))
        await client.put(
            "/api/settings",
            json={"db": {"host": "moved.internal", "password": "********"}},
            headers=as_user(ROOT),
        )
        conn = await keeper.directory.get_connection_settings("default")
        assert conn.host == "moved.internal"
        assert conn.password == "pw"

    @pytest.mark.asyncio
    async def test_invalid_settings(self, client, as_user):
        await _bootstrap(client)
        resp = await client.put(
            "/api/settings", json={"db": {"port": "not-a-port"}}, headers=as_user(ROOT),
        )
        assert resp.status_code == 422
        assert resp.json()["code"] == "INVALID_SETTINGS"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("section", [{"db": "oops"}, {"db": [1]}, {"webhook": 7}])
    async def test_non_object_section_rejected(self, client, keeper, as_user, section):
        await _bootstrap(client)
        await client.put("/api/settings", json={"db": DB_SETTINGS}, headers=as_user(ROOT))
        resp = await client.put("/api/settings", json=section, headers=as_user(ROOT))
        assert resp.status_code == 422
        body = resp.json()
        assert body["code"] == "INVALID_SETTINGS"
        assert body["details"]["section"] == next(iter(section))
        assert "trace_id" in body
        assert (await keeper.directory.get_connection_settings("default")).host == "n8n-db.internal"

    @pytest.mark.asyncio
    async def test_clear_password(self, client, keeper, as_user):
        await _bootstrap(client)
        await client.put("/api/settings", json={"db": DB_SETTINGS}, headers=as_user(ROOT))
        await client.put("/api/settings", json={"db": {"password": ""}}, headers=as_user(ROOT))
        assert (await keeper.directory.get_connection_settings("default")).password == "pw"

        resp = await client.put(
            "/api/settings", json={"clear_password": True}, headers=as_user(ROOT),
        )
        assert resp.status_code == 200
        conn = await keeper.directory.get_connection_settings("default")
        assert conn.password == ""
        assert conn.host == "n8n-db.internal"

    @pytest.mark.asyncio
    async def test_connection_unconfigured(self, client, pool_factory, as_user):
        await _bootstrap(client)
        resp = await client.post("/api/settings/test-connection", headers=as_user(ROOT))
        assert resp.status_code == 428
        body = resp.json()
        assert body["code"] == "TENANT_NOT_CONFIGURED"
        assert body["details"]["missing"] == ["database", "host", "user"]
        assert pool_factory.calls == 0

    @pytest.mark.asyncio
    async def test_connection_ok_and_save_invalidates(self, client, keeper, pool_factory, as_user):
        await _bootstrap(client)
        await client.put("/api/settings", json={"db": DB_SETTINGS}, headers=as_user(ROOT))

        resp = await client.post("/api/settings/test-connection", headers=as_user(ROOT))
        assert resp.status_code == 200
        assert resp.json()["ok"] is True
        assert "default" in keeper.pool_cache

        resp = await client.post("/api/settings/test-connection", headers=as_user(ROOT))
        assert pool_factory.calls == 1

        await client.put(
            "/api/settings", json={"db": {"password": "rotated"}}, headers=as_user(ROOT),
        )
        assert "default" not in keeper.pool_cache
        assert pool_factory.built[0].dispose_calls == 1

    @pytest.mark.asyncio
    async def test_connection_failure(self, client, pool_factory, as_user):
        await _bootstrap(client)
        await client.put("/api/settings", json={"db": DB_SETTINGS}, headers=as_user(ROOT))
        pool_factory.fail_with = OSError("connection refused")
        resp = await client.post("/api/settings/test-connection", headers=as_user(ROOT))
        assert resp.status_code == 500
        assert resp.json()["code"] == "TENANT_CONNECTION_FAILED"
