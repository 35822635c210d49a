"""End-to-end tests for the auth API, route guard and logout push channel."""

import pytest
from starlette.websockets import WebSocketDisconnect

from conftest import TEST_PASSWORD

SESSION_COOKIE = "auth.session_token"
ACCESS_COOKIE = "auth.session_data"


def _register(client, email="ada@example.com", **overrides):
    body = {
        "name": "Ada Lovelace",
        "email": email,
        "password": TEST_PASSWORD,
        "termsAccepted": True,
    }
    body.update(overrides)
    return client.post("/v1/auth/register", json=body)


def _cookie_header(client) -> str:
    return "; ".join(f"{name}={value}" for name, value in client.cookies.items())


class TestRegisterAndLogin:
    def test_register_sets_cookies_without_exposing_them(self, client):
        response = _register(client)

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["user"]["email"] == "ada@example.com"
        assert data["session"]["remember_me"] is False
        assert SESSION_COOKIE in response.cookies
        assert ACCESS_COOKIE in response.cookies
        assert response.cookies[SESSION_COOKIE] not in response.text
        assert response.cookies[ACCESS_COOKIE] not in response.text
        set_cookie = response.headers.get_list("set-cookie")
        assert all("httponly" in header.lower() for header in set_cookie)
        assert all("samesite=lax" in header.lower() for header in set_cookie)

    def test_duplicate_registration_conflicts(self, client):
        _register(client)
        client.cookies.clear()

        response = _register(client, email="ADA@example.com")

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "conflict"
        assert error["message"] == "Email already registered"

    def test_registration_field_errors(self, client):
        response = _register(client, password="short", termsAccepted=False)

        assert response.status_code == 400
        fields = response.json()["error"]["details"]["fields"]
        assert fields == {
            "password": "Password must be at least 8 characters",
            "terms_accepted": "You must accept the terms of service",
        }

    def test_login_with_remember_me(self, client):
        _register(client)
        client.cookies.clear()

        response = client.post(
            "/v1/auth/login",
            json={"email": "ada@example.com", "password": TEST_PASSWORD, "rememberMe": True},
        )

        assert response.status_code == 200
        assert response.json()["data"]["session"]["remember_me"] is True
        assert SESSION_COOKIE in response.cookies

    def test_failed_logins_are_indistinguishable(self, client):
        _register(client)
        client.cookies.clear()
        headers = {"X-Request-ID": "fixed-request-id"}

        wrong_password = client.post(
            "/v1/auth/login",
            json={"email": "ada@example.com", "password": "not-the-password"},
            headers=headers,
        )
        unknown_email = client.post(
            "/v1/auth/login",
            json={"email": "nobody@example.com", "password": "not-the-password"},
            headers=headers,
        )

        assert wrong_password.status_code == unknown_email.status_code == 401
        assert wrong_password.content == unknown_email.content
        assert wrong_password.json()["error"]["message"] == "Invalid email or password"

    def test_throttled_login_returns_retry_after(self, client):
        _register(client)
        client.cookies.clear()
        for _ in range(5):
            client.post(
                "/v1/auth/login",
                json={"email": "ada@example.com", "password": "not-the-password"},
            )

        response = client.post(
            "/v1/auth/login", json={"email": "ada@example.com", "password": TEST_PASSWORD}
        )

        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) >= 1
        assert response.json()["error"]["message"] == "Too many attempts. Please try again later."

    def test_wrong_method_is_not_a_server_error(self, client):
        response = client.get("/v1/auth/login")

        assert response.status_code == 405
        assert response.json()["error"]["code"] == "method_not_allowed"

    def test_malformed_body_is_a_validation_error(self, client):
        response = client.post("/v1/auth/login", json={"email": ["a"], "password": 3})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestSessionEndpoints:
    def test_session_read(self, client):
        _register(client)

        response = client.get("/v1/auth/session")

        data = response.json()["data"]
        assert data["user"]["name"] == "Ada Lovelace"
        assert "expires_at" in data["session"]

    def test_anonymous_session_read_is_null(self, client):
        response = client.get("/v1/auth/session")

        assert response.status_code == 200
        assert response.json()["data"] is None

    def test_refresh_renews_access_cookie(self, client):
        _register(client)

        response = client.post("/v1/auth/refresh")

        assert response.status_code == 200
        assert ACCESS_COOKIE in response.cookies
        assert "access_expires_at" in response.json()["data"]["session"]

    def test_refresh_without_session(self, client):
        response = client.post("/v1/auth/refresh")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "session_expired"

    def test_logout_twice(self, client):
        _register(client)
        cookie = client.cookies[SESSION_COOKIE]

        first = client.post("/v1/auth/logout")
        client.cookies.set(SESSION_COOKIE, cookie)
        second = client.post("/v1/auth/logout")

        assert first.status_code == second.status_code == 200
        assert first.json()["data"] == {"logged_out": True}
        assert second.json()["data"] == {"logged_out": False}
        assert client.get("/v1/auth/session").json()["data"] is None

    def test_logout_without_session(self, client):
        response = client.post("/v1/auth/logout")

        assert response.status_code == 200
        assert response.json()["data"] == {"logged_out": False}


class TestRouteGuard:
    def test_dashboard_requires_session(self, client):
        response = client.get("/dashboard", follow_redirects=False)

        assert response.status_code == 307
        assert response.headers["location"] == "/login?redirect=%2Fdashboard"

    def test_login_page_redirects_signed_in_user(self, client):
        _register(client)

        response = client.get("/login", follow_redirects=False)

        assert response.status_code == 307
        assert response.headers["location"] == "/dashboard"

    def test_dashboard_served_with_session(self, client):
        _register(client)

        response = client.get("/dashboard", follow_redirects=False)

        assert response.status_code == 200
        assert "text/html" in response.headers["content-type"]

    def test_login_page_served_anonymously(self, client):
        response = client.get("/login")

        assert response.status_code == 200

    def test_missing_access_cookie_is_renewed_silently(self, client):
        _register(client)
        client.cookies.delete(ACCESS_COOKIE)

        response = client.get("/dashboard", follow_redirects=False)

        assert response.status_code == 200
        assert ACCESS_COOKIE in response.cookies

    def test_forged_session_cookie_is_cleared(self, client):
        client.cookies.set(SESSION_COOKIE, "forged.signature")

        response = client.get("/dashboard", follow_redirects=False)

        assert response.status_code == 307
        cleared = [h for h in response.headers.get_list("set-cookie") if h.startswith(SESSION_COOKIE)]
        assert cleared and "max-age=0" in cleared[0].lower()

    def test_unsafe_redirect_parameter_is_dropped(self, client):
        response = client.get("/login?redirect=/%5Cevil.com", follow_redirects=False)

        assert response.status_code == 307
        assert response.headers["location"] == "/login"

    def test_safe_redirect_parameter_is_kept(self, client):
        response = client.get("/login?redirect=%2Fdashboard", follow_redirects=False)

        assert response.status_code == 200

    def test_api_paths_are_not_guarded(self, client):
        response = client.get("/v1/auth/session", follow_redirects=False)

        assert response.status_code == 200


class TestLogoutBroadcast:
    def test_logout_reaches_other_open_tabs(self, client):
        _register(client)
        cookie = _cookie_header(client)

        with client.websocket_connect(
            "/v1/auth/events?tab_id=tab-b", headers={"cookie": cookie}
        ) as ws:
            response = client.post("/v1/auth/logout", headers={"X-Tab-ID": "tab-a"})
            message = ws.receive_json()

        assert response.json()["data"] == {"logged_out": True}
        assert message == {"type": "logout", "redirect": "/login"}
        assert client.get("/v1/auth/session").json()["data"] is None

    def test_events_require_session(self, client):
        with client.websocket_connect("/v1/auth/events?tab_id=tab-b") as ws:
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()

        assert exc_info.value.code == 4401


class TestPlumbing:
    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        assert response.json() == {
            "status": "healthy",
            "checks": {"store": "ok", "cache": "disabled"},
        }

    def test_request_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "trace-me"})

        assert response.headers["X-Request-ID"] == "trace-me"

    def test_security_headers(self, client):
        response = client.get("/v1/auth/session")

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "no-store" in response.headers["Cache-Control"]
