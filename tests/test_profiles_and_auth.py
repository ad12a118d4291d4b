"""Tests for /profiles and the /auth session endpoints."""

from unittest.mock import MagicMock

from chatline.profiles import service


# =============================================================================
# Identity Directory
# =============================================================================


class TestProfileService:
    def test_get_profile(self, store, alice):
        profile = service.get_profile(store, alice["id"])

        assert profile.username == "alice"
        assert profile.display_name == "Alice Liddell"

    def test_missing_profile_is_none(self, store):
        assert service.get_profile(store, "missing") is None

    def test_get_profiles_skips_unknown_ids(self, store, alice, bob):
        found = service.get_profiles(store, [alice["id"], bob["id"], "missing"])

        assert set(found) == {alice["id"], bob["id"]}

    def test_search_is_case_insensitive_and_excludes_viewer(self, store, alice, bob):
        store.add_profile("alicia")
        store.add_profile("BOBBY_T")

        names = [p.username for p in service.search_profiles(store, alice["id"], "ALI")]
        assert names == ["alicia"]

        names = [p.username for p in service.search_profiles(store, alice["id"], "bob")]
        assert names == ["BOBBY_T", "bob"]

    def test_blank_search_returns_nothing(self, store, alice, bob):
        assert service.search_profiles(store, alice["id"], "   ") == []


# =============================================================================
# /profiles
# =============================================================================


class TestProfileEndpoints:
    def test_search(self, client, auth_headers, alice, bob, carol):
        response = client.get("/profiles/search?q=o", headers=auth_headers(bob))

        assert response.status_code == 200
        assert [p["username"] for p in response.json()["profiles"]] == ["carol"]

    def test_update_own_profile(self, client, store, auth_headers, alice):
        response = client.patch(
            "/profiles/me",
            json={"display_name": "  Alice L.  ", "avatar_url": "https://cdn.example.com/a2.png"},
            headers=auth_headers(alice),
        )

        assert response.status_code == 200
        assert response.json()["display_name"] == "Alice L."
        assert store.rows("profiles", id=alice["id"])[0]["avatar_url"].endswith("a2.png")

    def test_update_requires_a_field(self, client, auth_headers, alice):
        response = client.patch("/profiles/me", json={}, headers=auth_headers(alice))

        assert response.status_code == 400

    def test_blank_display_name_rejected(self, client, auth_headers, alice):
        response = client.patch(
            "/profiles/me", json={"display_name": "   "}, headers=auth_headers(alice)
        )

        assert response.status_code == 422

    def test_get_profile_by_id(self, client, auth_headers, alice, bob):
        response = client.get(f"/profiles/{bob['id']}", headers=auth_headers(alice))

        assert response.status_code == 200
        assert response.json()["username"] == "bob"
        assert client.get("/profiles/nobody", headers=auth_headers(alice)).status_code == 404


# =============================================================================
# /auth
# =============================================================================


class TestAuthEndpoints:
    def test_register_passes_profile_fields_as_metadata(self, client, store):
        store.auth.sign_up.return_value = MagicMock(
            user=MagicMock(id="new-user", email="dana@example.com")
        )

        response = client.post(
            "/auth/register",
            json={
                "email": "dana@example.com",
                "username": "Dana_99",
                "display_name": " Dana ",
                "password": "long-enough",
            },
        )

        assert response.status_code == 201
        assert response.json() == {
            "id": "new-user",
            "email": "dana@example.com",
            "username": "Dana_99",
        }
        [payload] = store.auth.sign_up.call_args.args
        assert payload["options"]["data"] == {"username": "Dana_99", "display_name": "Dana"}
        # The profile row comes from the database trigger, not from this service.
        assert ("profiles", "insert") not in store.calls

    def test_register_rejects_bad_usernames(self, client):
        for username in ["ab", "x" * 31, "has space", "dots.not.allowed"]:
            response = client.post(
                "/auth/register",
                json={"email": "e@example.com", "username": username, "password": "long-enough"},
            )
            assert response.status_code == 422, username

    def test_register_taken_username(self, client, alice):
        response = client.post(
            "/auth/register",
            json={"email": "e@example.com", "username": "alice", "password": "long-enough"},
        )

        assert response.status_code == 409

    def test_me(self, client, auth_headers, alice):
        response = client.get("/auth/me", headers=auth_headers(alice))

        assert response.status_code == 200
        body = response.json()
        assert body["id"] == alice["id"]
        assert body["profile"]["username"] == "alice"

    def test_logout_revokes_session_and_clears_cookie(self, client, store, auth_headers, alice):
        headers = auth_headers(alice)

        response = client.post("/auth/logout", headers=headers)

        assert response.status_code == 200
        assert response.json() == {"logged_out": True}
        store.auth.admin.sign_out.assert_called_once_with(
            headers["Authorization"].removeprefix("Bearer ")
        )
        assert "refresh_token=" in response.headers["set-cookie"]

    def test_refresh_without_cookie(self, client):
        assert client.get("/auth/access").status_code == 401
