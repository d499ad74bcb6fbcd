"""Tests for user management and role enforcement."""

from __future__ import annotations

from typing import TYPE_CHECKING

from tests.conftest import ADMIN_PASSWORD, auth_headers, create_test_client, login

if TYPE_CHECKING:
    from httpx import AsyncClient

    from backend.config import Settings

PASSWORD = "Member-Pass-9"


async def _register(client: AsyncClient, username: str) -> tuple[int, str]:
    resp = await client.post(
        "/api/auth/register", json={"username": username, "password": PASSWORD}
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["id"], await login(client, username, PASSWORD)


class TestRegistration:
    async def test_register_creates_plain_user(self, test_settings: Settings) -> None:
        async with create_test_client(test_settings) as client:
            resp = await client.post(
                "/api/auth/register", json={"username": "newbie", "password": PASSWORD}
            )
        assert resp.status_code == 201
        body = resp.json()
        assert body["role"] == "User"
        assert body["is_active"] is True
        assert body["two_factor_enabled"] is False
        assert "password_hash" not in body

    async def test_duplicate_username_conflicts(self, test_settings: Settings) -> None:
        async with create_test_client(test_settings) as client:
            await _register(client, "dupe")
            resp = await client.post(
                "/api/auth/register", json={"username": "dupe", "password": PASSWORD}
            )
        assert resp.status_code == 409

    async def test_weak_password_rejected(self, test_settings: Settings) -> None:
        async with create_test_client(test_settings) as client:
            resp = await client.post(
                "/api/auth/register", json={"username": "weakling", "password": "alllowercase"}
            )
        assert resp.status_code == 422

    async def test_registration_can_be_disabled(self, test_settings: Settings) -> None:
        test_settings.auth_self_registration = False
        async with create_test_client(test_settings) as client:
            resp = await client.post(
                "/api/auth/register", json={"username": "latecomer", "password": PASSWORD}
            )
        assert resp.status_code == 403

    async def test_login_failure_is_generic(self, test_settings: Settings) -> None:
        async with create_test_client(test_settings) as client:
            unknown = await client.post(
                "/api/auth/login", json={"username": "nobody", "password": PASSWORD}
            )
            wrong = await client.post(
                "/api/auth/login", json={"username": "admin", "password": "Wrong-Pass-1"}
            )
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json()


class TestUserReads:
    async def test_user_reads_self_only(self, test_settings: Settings) -> None:
        async with create_test_client(test_settings) as client:
            alice_id, alice = await _register(client, "alice")
            bob_id, _bob = await _register(client, "bob")
            own = await client.get(f"/api/users/{alice_id}", headers=auth_headers(alice))
            other = await client.get(f"/api/users/{bob_id}", headers=auth_headers(alice))
            listing = await client.get("/api/users", headers=auth_headers(alice))
        assert own.status_code == 200
        assert other.status_code == 403
        assert listing.status_code == 403

    async def test_admin_lists_users(self, test_settings: Settings) -> None:
        async with create_test_client(test_settings) as client:
            await _register(client, "carol")
            admin = await login(client, "admin", ADMIN_PASSWORD)
            resp = await client.get("/api/users", headers=auth_headers(admin))
        assert resp.status_code == 200
        assert [u["username"] for u in resp.json()] == ["admin", "carol"]

    async def test_anonymous_rejected(self, test_settings: Settings) -> None:
        async with create_test_client(test_settings) as client:
            resp = await client.get("/api/users")
        assert resp.status_code == 401


class TestUserUpdates:
    async def test_user_changes_own_username(self, test_settings: Settings) -> None:
        async with create_test_client(test_settings) as client:
            user_id, token = await _register(client, "dave")
            resp = await client.patch(
                f"/api/users/{user_id}", json={"username": "david"}, headers=auth_headers(token)
            )
            relogin = await client.post(
                "/api/auth/login", json={"username": "david", "password": PASSWORD}
            )
        assert resp.status_code == 200
        assert resp.json()["username"] == "david"
        assert relogin.status_code == 200

    async def test_user_cannot_change_own_role(self, test_settings: Settings) -> None:
        async with create_test_client(test_settings) as client:
            user_id, token = await _register(client, "erin")
            resp = await client.patch(
                f"/api/users/{user_id}", json={"role": "Admin"}, headers=auth_headers(token)
            )
        assert resp.status_code == 403

    async def test_user_cannot_update_others(self, test_settings: Settings) -> None:
        async with create_test_client(test_settings) as client:
            _frank_id, frank = await _register(client, "frank")
            grace_id, _grace = await _register(client, "grace")
            resp = await client.put(
                f"/api/users/{grace_id}", json={"username": "hijacked"}, headers=auth_headers(frank)
            )
        assert resp.status_code == 403

    async def test_username_collision_conflicts(self, test_settings: Settings) -> None:
        async with create_test_client(test_settings) as client:
            user_id, token = await _register(client, "heidi")
            await _register(client, "ivan")
            resp = await client.patch(
                f"/api/users/{user_id}", json={"username": "ivan"}, headers=auth_headers(token)
            )
        assert resp.status_code == 409

    async def test_admin_promotes_via_update(self, test_settings: Settings) -> None:
        async with create_test_client(test_settings) as client:
            user_id, _token = await _register(client, "judy")
            admin = await login(client, "admin", ADMIN_PASSWORD)
            resp = await client.patch(
                f"/api/users/{user_id}", json={"role": "Manager"}, headers=auth_headers(admin)
            )
        assert resp.status_code == 200
        assert resp.json()["role"] == "Manager"

    async def test_invalid_role_rejected(self, test_settings: Settings) -> None:
        async with create_test_client(test_settings) as client:
            user_id, _token = await _register(client, "kim")
            admin = await login(client, "admin", ADMIN_PASSWORD)
            resp = await client.put(
                f"/api/users/{user_id}/role",
                json={"role": "Overlord"},
                headers=auth_headers(admin),
            )
        assert resp.status_code == 422


class TestAdminActions:
    async def test_manager_cannot_change_roles(self, test_settings: Settings) -> None:
        async with create_test_client(test_settings) as client:
            admin = await login(client, "admin", ADMIN_PASSWORD)
            manager_id, _ = await _register(client, "mallory")
            await client.put(
                f"/api/users/{manager_id}/role",
                json={"role": "Manager"},
                headers=auth_headers(admin),
            )
            manager = await login(client, "mallory", PASSWORD)
            target_id, _ = await _register(client, "niaj")
            resp = await client.put(
                f"/api/users/{target_id}/role",
                json={"role": "Manager"},
                headers=auth_headers(manager),
            )
        assert resp.status_code == 403

    async def test_admin_cannot_demote_self(self, test_settings: Settings) -> None:
        async with create_test_client(test_settings) as client:
            admin = await login(client, "admin", ADMIN_PASSWORD)
            me = await client.get("/api/auth/me", headers=auth_headers(admin))
            resp = await client.put(
                f"/api/users/{me.json()['id']}/role",
                json={"role": "User"},
                headers=auth_headers(admin),
            )
        assert resp.status_code == 400

    async def test_admin_cannot_deactivate_self(self, test_settings: Settings) -> None:
        async with create_test_client(test_settings) as client:
            admin = await login(client, "admin", ADMIN_PASSWORD)
            me = await client.get("/api/auth/me", headers=auth_headers(admin))
            resp = await client.post(
                f"/api/users/{me.json()['id']}/deactivate", headers=auth_headers(admin)
            )
        assert resp.status_code == 400

    async def test_deactivate_then_activate(self, test_settings: Settings) -> None:
        async with create_test_client(test_settings) as client:
            admin = auth_headers(await login(client, "admin", ADMIN_PASSWORD))
            user_id, _token = await _register(client, "olivia")

            deactivated = await client.post(f"/api/users/{user_id}/deactivate", headers=admin)
            blocked_login = await client.post(
                "/api/auth/login", json={"username": "olivia", "password": PASSWORD}
            )
            activated = await client.post(f"/api/users/{user_id}/activate", headers=admin)
            allowed_login = await client.post(
                "/api/auth/login", json={"username": "olivia", "password": PASSWORD}
            )
        assert deactivated.json()["is_active"] is False
        assert blocked_login.status_code == 401
        assert activated.json()["is_active"] is True
        assert allowed_login.status_code == 200

    async def test_delete_user(self, test_settings: Settings) -> None:
        async with create_test_client(test_settings) as client:
            admin = auth_headers(await login(client, "admin", ADMIN_PASSWORD))
            user_id, _token = await _register(client, "peggy")
            deleted = await client.delete(f"/api/users/{user_id}", headers=admin)
            missing = await client.get(f"/api/users/{user_id}", headers=admin)
        assert deleted.status_code == 204
        assert missing.status_code == 404

    async def test_deleted_user_token_does_not_reach_new_account(
        self, test_settings: Settings
    ) -> None:
        async with create_test_client(test_settings) as client:
            admin = auth_headers(await login(client, "admin", ADMIN_PASSWORD))
            alice_id, alice = await _register(client, "alice")
            deleted = await client.delete(f"/api/users/{alice_id}", headers=admin)
            mallory_id, _mallory = await _register(client, "mallory")
            stale = await client.get("/api/auth/me", headers=auth_headers(alice))
        assert deleted.status_code == 204
        assert mallory_id != alice_id
        assert stale.status_code == 401

    async def test_renamed_user_must_log_in_again(self, test_settings: Settings) -> None:
        async with create_test_client(test_settings) as client:
            user_id, token = await _register(client, "quentin")
            await client.get("/api/auth/me", headers=auth_headers(token))
            renamed = await client.patch(
                f"/api/users/{user_id}", json={"username": "quinn"}, headers=auth_headers(token)
            )
            stale = await client.get("/api/auth/me", headers=auth_headers(token))
            fresh = await login(client, "quinn", PASSWORD)
            me = await client.get("/api/auth/me", headers=auth_headers(fresh))
        assert renamed.status_code == 200
        assert stale.status_code == 401
        assert me.json()["username"] == "quinn"


class TestHealth:
    async def test_health(self, test_settings: Settings) -> None:
        async with create_test_client(test_settings) as client:
            resp = await client.get("/api/health")
            db = await client.get("/api/health/db")
        assert resp.json() == {"status": "ok", "version": "0.1.0", "database": "ok"}
        assert db.json() == {"database": "ok", "user_count": 1, "room_count": 0}
