"""
tests/test_api_routes.py -- Integration tests for the /api/v1/auth and /api/v1/admin routes.

Runs the real app (middleware, exception handlers, dependencies) over
fakeredis and an in-memory principal store via the api_client fixture.

Covers:
  - sign-in: cookies, no-store, body shape, error envelope for every failure
  - refresh: rotation and replay detection over HTTP
  - sign-out, me, session listing and revocation (IDOR guard)
  - password change revokes every session
  - admin session endpoints: role check
"""

from __future__ import annotations

from cache.redis_client import session_key, user_sessions_key

ADMIN_EMAIL = "admin@example.com"
EDITOR_EMAIL = "editor@example.com"
EDITOR_PASSWORD = "Ed1tor!pass"


# ---------------------------------------------------------------------------
# Sign-in
# ---------------------------------------------------------------------------


class TestSignIn:
    def test_success_sets_cookies_and_returns_user(self, api_client) -> None:
        resp = api_client.sign_in()

        assert resp.status_code == 200
        assert resp.headers["cache-control"] == "no-store"
        body = resp.json()
        assert body["user"] == {"id": api_client.admin_id, "email": ADMIN_EMAIL, "name": "Admin", "role": "admin"}
        assert api_client.redis.exists(session_key(body["session_id"]))

        set_cookie = resp.headers.get_list("set-cookie")
        access = next(c for c in set_cookie if c.startswith("access_token="))
        refresh = next(c for c in set_cookie if c.startswith("refresh_token="))
        for cookie in (access, refresh):
            assert "HttpOnly" in cookie
            assert "Path=/" in cookie
            assert "SameSite=lax" in cookie
        assert "Max-Age=900" in access
        assert "Max-Age=604800" in refresh

    def test_tokens_never_appear_in_body(self, api_client) -> None:
        resp = api_client.sign_in()
        text = resp.text
        assert api_client.client.cookies.get("access_token") not in text
        assert api_client.client.cookies.get("refresh_token") not in text

    def test_wrong_password(self, api_client) -> None:
        resp = api_client.sign_in(password="Wrong!pass1")
        assert resp.status_code == 401
        assert resp.json() == {"error": {"code": "invalid_credentials", "message": "Invalid email or password."}}
        assert "access_token" not in resp.cookies

    def test_unknown_email_same_body_as_wrong_password(self, api_client) -> None:
        unknown = api_client.sign_in(email="ghost@example.com", ip="198.51.100.2")
        wrong = api_client.sign_in(password="Wrong!pass1", ip="198.51.100.3")
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json()

    def test_validation_error_before_any_store_access(self, api_client) -> None:
        resp = api_client.client.post("/api/v1/auth/signin", json={"email": "not-an-email", "password": ""})
        assert resp.status_code == 422
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        fields = {d["field"] for d in error["detail"]}
        assert {"email", "password"} <= fields
        assert api_client.redis.keys("ratelimit:*") == []

    def test_oversized_password_rejected(self, api_client) -> None:
        resp = api_client.sign_in(password="x" * 256)
        assert resp.status_code == 422

    def test_lockout_over_http(self, api_client) -> None:
        # Distinct IPs so the per-IP login limit does not trigger first.
        for i in range(5):
            assert api_client.sign_in(email=EDITOR_EMAIL, password="Wrong!pass1", ip=f"192.0.2.{i}").status_code == 401

        resp = api_client.sign_in(email=EDITOR_EMAIL, password=EDITOR_PASSWORD, ip="192.0.2.99")
        assert resp.status_code == 423
        error = resp.json()["error"]
        assert error["code"] == "account_locked"
        assert "30 minutes" in error["message"]

    def test_rate_limited_after_five_attempts_from_one_ip(self, api_client) -> None:
        for _ in range(5):
            api_client.sign_in(email="ghost@example.com", password="Wrong!pass1", ip="203.0.113.9")

        resp = api_client.sign_in(ip="203.0.113.9")
        assert resp.status_code == 429
        error = resp.json()["error"]
        assert error["code"] == "rate_limited"
        assert 0 < error["retry_after"] <= 900
        assert resp.headers["retry-after"] == str(error["retry_after"])
        assert error["message"].startswith("Too many attempts.")

    def test_redis_down_sign_in_is_503(self, api_client, redis_server) -> None:
        redis_server.connected = False
        resp = api_client.sign_in()
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "service_unavailable"


# ---------------------------------------------------------------------------
# Refresh and sign-out
# ---------------------------------------------------------------------------


class TestRefresh:
    def test_refresh_rotates_session_and_cookies(self, api_client) -> None:
        first = api_client.sign_in().json()["session_id"]
        old_refresh = api_client.client.cookies.get("refresh_token")

        resp = api_client.client.post("/api/v1/auth/refresh")

        assert resp.status_code == 200
        second = resp.json()["session_id"]
        assert second != first
        assert not api_client.redis.exists(session_key(first))
        assert api_client.redis.exists(session_key(second))
        assert api_client.client.cookies.get("refresh_token") != old_refresh

    def test_refresh_during_redis_outage_is_503(self, api_client, redis_server) -> None:
        api_client.sign_in()
        redis_server.connected = False

        resp = api_client.client.post("/api/v1/auth/refresh")

        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "service_unavailable"
        assert "set-cookie" not in resp.headers

    def test_replayed_refresh_token_revokes_all_sessions(self, api_client) -> None:
        api_client.sign_in()
        stolen = api_client.client.cookies.get("refresh_token")
        assert api_client.client.post("/api/v1/auth/refresh").status_code == 200

        api_client.client.cookies.clear()
        resp = api_client.client.post("/api/v1/auth/refresh", headers={"Cookie": f"refresh_token={stolen}"})

        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "replay_detected"
        assert api_client.redis.scard(user_sessions_key(api_client.admin_id)) == 0
        assert api_client.redis.keys("session:*") == []
        cleared = [c for c in resp.headers.get_list("set-cookie") if c.startswith("refresh_token=")]
        assert cleared and ("Max-Age=0" in cleared[0] or "expires=" in cleared[0].lower())

    def test_refresh_without_cookie(self, api_client) -> None:
        resp = api_client.client.post("/api/v1/auth/refresh")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "no_token"

    def test_refresh_with_garbage(self, api_client) -> None:
        resp = api_client.client.post("/api/v1/auth/refresh", headers={"Cookie": "refresh_token=garbage"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_token"


class TestSignOut:
    def test_sign_out_deletes_session_and_clears_cookies(self, api_client) -> None:
        session_id = api_client.sign_in().json()["session_id"]
        access = api_client.client.cookies.get("access_token")

        resp = api_client.client.post("/api/v1/auth/signout")

        assert resp.status_code == 200
        assert not api_client.redis.exists(session_key(session_id))
        names = {c.split("=", 1)[0] for c in resp.headers.get_list("set-cookie")}
        assert names == {"access_token", "refresh_token"}
        # The old access token still has a valid signature but no session.
        resp = api_client.client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {access}"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "session_not_found"

    def test_sign_out_without_session_still_200(self, api_client) -> None:
        assert api_client.client.post("/api/v1/auth/signout").status_code == 200


# ---------------------------------------------------------------------------
# Current user and sessions
# ---------------------------------------------------------------------------


class TestSessions:
    def test_me(self, api_client) -> None:
        session_id = api_client.sign_in().json()["session_id"]
        resp = api_client.client.get("/api/v1/auth/me")
        assert resp.status_code == 200
        assert resp.json() == {
            "user_id": api_client.admin_id,
            "email": ADMIN_EMAIL,
            "role": "admin",
            "session_id": session_id,
        }

    def test_me_requires_auth(self, api_client) -> None:
        resp = api_client.client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_list_sessions_marks_current(self, api_client) -> None:
        api_client.sign_in(ip="198.51.100.10")
        current = api_client.sign_in(ip="198.51.100.11").json()["session_id"]

        sessions = api_client.client.get("/api/v1/auth/sessions").json()["sessions"]

        assert len(sessions) == 2
        flagged = [s for s in sessions if s["is_current"]]
        assert [s["session_id"] for s in flagged] == [current]
        assert flagged[0]["ip_address"] == "198.51.100.11"
        assert flagged[0]["user_agent"] == "pytest-agent"
        assert "T" in flagged[0]["created_at"]
        assert sessions[0]["created_at"] >= sessions[1]["created_at"]

    def test_revoke_one_session(self, api_client) -> None:
        other = api_client.sign_in().json()["session_id"]
        api_client.sign_in()

        resp = api_client.client.delete("/api/v1/auth/sessions", params={"session_id": other})

        assert resp.status_code == 200
        assert resp.json()["revoked"] == 1
        assert not api_client.redis.exists(session_key(other))

    def test_cannot_revoke_someone_elses_session(self, api_client) -> None:
        editor_session = api_client.sign_in(email=EDITOR_EMAIL, password=EDITOR_PASSWORD).json()["session_id"]
        api_client.sign_in()

        resp = api_client.client.delete("/api/v1/auth/sessions", params={"session_id": editor_session})

        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"
        assert api_client.redis.exists(session_key(editor_session))

    def test_revoke_all_sessions(self, api_client) -> None:
        for _ in range(3):
            api_client.sign_in()
        resp = api_client.client.delete("/api/v1/auth/sessions", params={"all": "true"})
        assert resp.status_code == 200
        assert resp.json()["revoked"] == 3
        assert api_client.client.get("/api/v1/auth/me").status_code == 401

    def test_revoke_without_parameters(self, api_client) -> None:
        api_client.sign_in()
        resp = api_client.client.delete("/api/v1/auth/sessions")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "missing_session_id"

    def test_request_and_response_fields_are_snake_case(self, api_client) -> None:
        current = api_client.sign_in().json()["session_id"]
        listed = api_client.client.get("/api/v1/auth/sessions").json()["sessions"][0]
        assert set(listed) == {"session_id", "user_agent", "ip_address", "created_at", "expires_at", "is_current"}

        resp = api_client.client.delete("/api/v1/auth/sessions", params={"sessionId": current})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "missing_session_id"


class TestPasswordChange:
    def test_change_password_revokes_sessions(self, api_client) -> None:
        api_client.sign_in(email=EDITOR_EMAIL, password=EDITOR_PASSWORD)
        resp = api_client.client.post(
            "/api/v1/auth/password",
            json={"current_password": EDITOR_PASSWORD, "new_password": "Brand!new9"},
        )
        assert resp.status_code == 200
        assert resp.json()["revoked"] == 1
        assert api_client.redis.scard(user_sessions_key(api_client.editor_id)) == 0
        assert api_client.sign_in(email=EDITOR_EMAIL, password="Brand!new9").status_code == 200

    def test_weak_password_rejected_with_reasons(self, api_client) -> None:
        api_client.sign_in(email=EDITOR_EMAIL, password=EDITOR_PASSWORD)
        resp = api_client.client.post(
            "/api/v1/auth/password",
            json={"current_password": EDITOR_PASSWORD, "new_password": "weakpass"},
        )
        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "weak_password"
        assert any("uppercase" in problem for problem in error["detail"])


# ---------------------------------------------------------------------------
# Admin endpoints
# ---------------------------------------------------------------------------


class TestAdminSessions:
    def test_admin_lists_and_revokes_other_users_sessions(self, api_client) -> None:
        api_client.sign_in(email=EDITOR_EMAIL, password=EDITOR_PASSWORD, ip="198.51.100.20")
        api_client.sign_in(email=EDITOR_EMAIL, password=EDITOR_PASSWORD, ip="198.51.100.21")
        api_client.sign_in()  # cookies now belong to the admin

        url = f"/api/v1/admin/users/{api_client.editor_id}/sessions"
        listed = api_client.client.get(url)
        assert listed.status_code == 200
        assert len(listed.json()["sessions"]) == 2

        revoked = api_client.client.delete(url)
        assert revoked.status_code == 200
        assert revoked.json()["revoked"] == 2
        assert api_client.client.get(url).json()["sessions"] == []

    def test_editor_is_forbidden(self, api_client) -> None:
        api_client.sign_in(email=EDITOR_EMAIL, password=EDITOR_PASSWORD)
        resp = api_client.client.get(f"/api/v1/admin/users/{api_client.admin_id}/sessions")
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"
