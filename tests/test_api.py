"""Integration tests for the HTTP surface.

Covers the sign-in round trip (portal, authenticate, token, userinfo,
callback), session cookies, logout and remote revocation, MFA enrollment
and the development fallback mode.
"""

import asyncio
import time
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from wukongid import app as app_module
from wukongid.service.errors import OPAQUE_CODE_MESSAGE
from wukongid.service.issuer import TokenIssuer
from wukongid.service.runtime import get_runtime, reset_runtime_for_tests

CLIENT_ID = "wukong-console"
REDIRECT_URI = "https://console.example.com/api/oauth/callback"
CHROME_MAC = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def state():
    return TokenIssuer.encode_state({"redirect_uri": REDIRECT_URI, "nonce": "n-1"})


def _authenticate(client, state, **overrides):
    body = {
        "provider": "email",
        "email": "alice@example.com",
        "redirect_uri": REDIRECT_URI,
        "state": state,
        "client_id": CLIENT_ID,
    }
    body.update(overrides)
    return client.post("/v1/auth/authenticate", json=body)


def _sign_in(client, state, email="alice@example.com"):
    response = _authenticate(client, state, email=email)
    assert response.status_code == 200
    return response.cookies.get("app_session_id") or client.cookies.get("app_session_id")


def _github_code(client, state, user_id="12345"):
    response = _authenticate(
        client, state, provider="github", email=None, provider_user_id=user_id, name="Octo"
    )
    assert response.status_code == 200
    return response.json()["data"]["code"]


def _exchange(client, code, **overrides):
    body = {
        "grant_type": "authorization_code",
        "code": code,
        "client_id": CLIENT_ID,
        "redirect_uri": REDIRECT_URI,
    }
    body.update(overrides)
    return client.post("/v1/auth/token", json=body)


class TestPortal:
    """Tests for the console's sign-in entry point."""

    def test_accepts_valid_request(self, client, state):
        response = client.get(
            "/v1/portal/app-auth",
            params={"client_id": CLIENT_ID, "redirect_uri": REDIRECT_URI, "state": state},
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["client_id"] == CLIENT_ID
        assert data["type"] == "signIn"
        assert data["state_payload"] == {"redirect_uri": REDIRECT_URI, "nonce": "n-1"}

    def test_missing_params(self, client):
        response = client.get("/v1/portal/app-auth", params={"client_id": CLIENT_ID})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_unknown_client(self, client, state):
        response = client.get(
            "/v1/portal/app-auth",
            params={"client_id": "other-app", "redirect_uri": REDIRECT_URI, "state": state},
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_quoted_client_id_accepted(self, client, state):
        response = client.get(
            "/v1/portal/app-auth",
            params={"client_id": f'"{CLIENT_ID}"', "redirect_uri": REDIRECT_URI, "state": state},
        )

        assert response.status_code == 200

    @pytest.mark.parametrize("bad_state", ["not base64!", "WzEsMiwzXQ", "bm90IGpzb24"])
    def test_malformed_state(self, client, bad_state):
        response = client.get(
            "/v1/portal/app-auth",
            params={"client_id": CLIENT_ID, "redirect_uri": REDIRECT_URI, "state": bad_state},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestEmailSignIn:
    """The email provider signs the browser in without a redirect."""

    def test_sets_session_cookies(self, client, state):
        response = _authenticate(client, state, email="Alice@Example.com")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["redirect_url"] == "/"
        assert data["code"] is None
        assert data["created"] is True
        assert "app_session_id" in response.cookies
        assert "device_session" in response.cookies
        set_cookie = response.headers["set-cookie"].lower()
        assert "httponly" in set_cookie
        assert "samesite=lax" in set_cookie

    def test_me_after_sign_in(self, client, state):
        _sign_in(client, state)

        response = client.get("/v1/me")

        assert response.status_code == 200
        me = response.json()["data"]
        assert me["open_id"] == "email:alice@example.com"
        assert me["email"] == "alice@example.com"
        assert me["name"] == "alice"
        assert me["login_method"] == "email"
        assert me["role"] == "user"
        assert me["mfa_enabled"] is False

    def test_second_sign_in_not_created(self, client, state):
        _authenticate(client, state)
        response = _authenticate(client, state)

        assert response.json()["data"]["created"] is False

    def test_bearer_credential_accepted(self, state):
        credential = _sign_in(TestClient(app_module.app), state)

        response = TestClient(app_module.app).get(
            "/v1/me", headers={"Authorization": f"Bearer {credential}"}
        )

        assert response.status_code == 200

    def test_invalid_email_rejected(self, client, state):
        response = _authenticate(client, state, email="not-an-email")
        assert response.status_code == 422

    def test_unknown_fields_rejected(self, client, state):
        response = _authenticate(client, state, password="hunter2")
        assert response.status_code == 422

    def test_owner_promoted_to_admin(self, monkeypatch, client, state):
        monkeypatch.setenv("OWNER_OPEN_ID", "email:owner@example.com")
        reset_runtime_for_tests()

        _sign_in(client, state, email="owner@example.com")

        assert client.get("/v1/me").json()["data"]["role"] == "admin"


class TestCodeExchange:
    """Tests for the authorization code and access token endpoints."""

    def test_provider_sign_in_returns_code(self, client, state):
        response = _authenticate(
            client, state, provider="github", email=None, provider_user_id="12345"
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert len(data["code"]) == 43
        redirect = urlparse(data["redirect_url"])
        assert redirect.netloc == "console.example.com"
        query = parse_qs(redirect.query)
        assert query["code"] == [data["code"]]
        assert query["state"] == [state]
        assert "app_session_id" not in response.cookies

    def test_exchange_and_userinfo(self, client, state):
        code = _github_code(client, state)

        tokens = _exchange(client, code)

        assert tokens.status_code == 200
        body = tokens.json()["data"]
        assert body["token_type"] == "Bearer"
        assert body["expires_in"] == 3600
        assert body["id_token"].count(".") == 2

        info = client.post("/v1/auth/userinfo", json={"access_token": body["access_token"]})
        assert info.status_code == 200
        data = info.json()["data"]
        assert data["open_id"] == "github:12345"
        assert data["client_id"] == CLIENT_ID
        assert data["name"] == "Octo"
        assert data["login_method"] == "github"

    def test_id_token_verifies(self, client, state):
        code = _github_code(client, state)
        id_token = _exchange(client, code).json()["data"]["id_token"]

        claims = get_runtime().issuer.verify_id_assertion(id_token, CLIENT_ID)

        assert claims["sub"] == "github:12345"
        assert claims["aud"] == CLIENT_ID

    def test_code_is_single_use(self, client, state):
        code = _github_code(client, state)
        assert _exchange(client, code).status_code == 200

        replay = _exchange(client, code)

        assert replay.status_code == 400
        error = replay.json()["error"]
        assert error["message"] == OPAQUE_CODE_MESSAGE
        assert error["details"] == {"error": "invalid_grant"}

    def test_unknown_code_is_opaque(self, client):
        response = _exchange(client, "x" * 43)

        assert response.status_code == 400
        assert response.json()["error"]["message"] == OPAQUE_CODE_MESSAGE

    def test_redirect_mismatch(self, client, state):
        code = _github_code(client, state)

        response = _exchange(client, code, redirect_uri="https://evil.example.com/cb")

        assert response.status_code == 400
        assert "redirect_uri" in response.json()["error"]["message"]

    def test_wrong_grant_type(self, client, state):
        code = _github_code(client, state)

        response = _exchange(client, code, grant_type="password")

        assert response.status_code == 422
        assert response.json()["error"]["details"]["error"] == "unsupported_grant_type"
        # The code was not consumed
        assert _exchange(client, code).status_code == 200

    def test_unknown_access_token(self, client):
        response = client.post("/v1/auth/userinfo", json={"access_token": "nope"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_userinfo_from_session_credential(self, client, state):
        credential = _sign_in(client, state)

        response = client.post(
            "/v1/auth/userinfo/jwt", json={"jwt_token": credential, "project_id": CLIENT_ID}
        )

        assert response.status_code == 200
        assert response.json()["data"]["open_id"] == "email:alice@example.com"

    def test_userinfo_jwt_wrong_project(self, client, state):
        credential = _sign_in(client, state)

        response = client.post(
            "/v1/auth/userinfo/jwt", json={"jwt_token": credential, "project_id": "other"}
        )

        assert response.status_code == 403


class TestCallback:
    """Tests for the provider callback that signs the browser in."""

    def test_callback_sets_cookie_and_redirects(self, client, state):
        code = _github_code(client, state)

        response = client.get(
            "/v1/oauth/callback",
            params={"code": code, "state": state},
            follow_redirects=False,
        )

        assert response.status_code == 302
        assert response.headers["location"] == "/"
        assert "app_session_id" in response.cookies
        me = client.get("/v1/me").json()["data"]
        assert me["open_id"] == "github:12345"

    def test_callback_requires_redirect_in_state(self, client, state):
        code = _github_code(client, state)
        bare_state = TokenIssuer.encode_state({"nonce": "n-2"})

        response = client.get(
            "/v1/oauth/callback",
            params={"code": code, "state": bare_state},
            follow_redirects=False,
        )

        assert response.status_code == 400

    def test_callback_missing_params(self, client):
        response = client.get("/v1/oauth/callback", follow_redirects=False)
        assert response.status_code == 400


class TestSessions:
    """Tests for logout, device listing and remote revocation."""

    def test_me_requires_session(self, client):
        response = client.get("/v1/me")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_logout_revokes_device_session(self, client, state):
        credential = _sign_in(client, state)

        response = client.post("/v1/auth/logout")

        assert response.status_code == 200
        # The credential is still correctly signed but its device session is gone
        replay = TestClient(app_module.app).get(
            "/v1/me", headers={"Authorization": f"Bearer {credential}"}
        )
        assert replay.status_code == 401

    def test_logout_without_session(self, client):
        assert client.post("/v1/auth/logout").status_code == 200

    def test_list_marks_current_session(self, state):
        browser = TestClient(app_module.app, headers={"User-Agent": CHROME_MAC})
        _sign_in(browser, state)
        _sign_in(TestClient(app_module.app), state)

        response = browser.get("/v1/sessions")

        assert response.status_code == 200
        items = response.json()["data"]["items"]
        assert len(items) == 2
        current = [item for item in items if item["is_current"]]
        assert len(current) == 1
        assert current[0]["browser"] == "Chrome"
        assert current[0]["os"] == "macOS"
        assert current[0]["device_name"] == "Chrome on macOS"
        assert all(item["is_active"] for item in items)

    def test_revoke_single_session(self, state):
        laptop = TestClient(app_module.app)
        phone = TestClient(app_module.app)
        _sign_in(laptop, state)
        _sign_in(phone, state)
        items = laptop.get("/v1/sessions").json()["data"]["items"]
        other = next(item for item in items if not item["is_current"])

        response = laptop.delete(f"/v1/sessions/{other['id']}")

        assert response.status_code == 200
        assert phone.get("/v1/me").status_code == 401
        assert laptop.get("/v1/me").status_code == 200

    def test_cannot_revoke_another_users_session(self, state):
        alice = TestClient(app_module.app)
        bob = TestClient(app_module.app)
        _sign_in(alice, state)
        _sign_in(bob, state, email="bob@example.com")
        alice_session = alice.get("/v1/sessions").json()["data"]["items"][0]["id"]

        response = bob.delete(f"/v1/sessions/{alice_session}")

        assert response.status_code == 403
        assert alice.get("/v1/me").status_code == 200

    def test_revoke_unknown_session(self, client, state):
        _sign_in(client, state)

        response = client.delete("/v1/sessions/does-not-exist")

        assert response.status_code == 404

    def test_activity_written_by_sweep_not_per_request(self, client, state):
        _sign_in(client, state)
        runtime = get_runtime()
        state_file = runtime.store._state_path()
        before = state_file.read_text()

        for _ in range(3):
            assert client.get("/v1/me").status_code == 200

        assert state_file.read_text() == before
        asyncio.run(runtime.sweep_expired())
        assert state_file.read_text() != before

    def test_revoke_all(self, state):
        laptop = TestClient(app_module.app)
        phone = TestClient(app_module.app)
        _sign_in(laptop, state)
        _sign_in(phone, state)
        bob = TestClient(app_module.app)
        _sign_in(bob, state, email="bob@example.com")

        response = laptop.post("/v1/sessions/revoke-all")

        assert response.status_code == 200
        assert response.json()["data"]["revoked"] == 2
        assert laptop.get("/v1/me").status_code == 401
        assert phone.get("/v1/me").status_code == 401
        assert bob.get("/v1/me").status_code == 200


class TestMfa:
    """MFA enrollment and verification through the API."""

    def _enroll(self, client, state):
        _sign_in(client, state)
        setup = client.post("/v1/mfa/setup")
        assert setup.status_code == 200
        data = setup.json()["data"]
        code = get_runtime().mfa.generate_totp(data["secret"], time.time())
        enabled = client.post("/v1/mfa/enable", json={"code": code})
        assert enabled.status_code == 200
        return data

    def test_setup_stages_only(self, client, state):
        _sign_in(client, state)

        setup = client.post("/v1/mfa/setup").json()["data"]

        assert setup["provisioning_uri"].startswith("otpauth://totp/")
        assert len(setup["backup_codes"]) == 10
        assert client.get("/v1/mfa/status").json()["data"]["enabled"] is False

    def test_enable_and_verify(self, client, state):
        data = self._enroll(client, state)

        status = client.get("/v1/mfa/status").json()["data"]
        assert status["enabled"] is True
        assert status["backup_codes_remaining"] == 10
        assert client.get("/v1/me").json()["data"]["mfa_enabled"] is True

        code = get_runtime().mfa.generate_totp(data["secret"], time.time())
        verified = client.post("/v1/mfa/verify", json={"code": code})
        assert verified.status_code == 200
        assert verified.json()["data"]["method"] == "totp"

    def test_enable_rejects_wrong_code(self, client, state):
        _sign_in(client, state)
        secret = client.post("/v1/mfa/setup").json()["data"]["secret"]
        good = get_runtime().mfa.generate_totp(secret, time.time())
        wrong = f"{(int(good) + 1) % 1_000_000:06d}"

        response = client.post("/v1/mfa/enable", json={"code": wrong})

        assert response.status_code == 400
        assert client.get("/v1/mfa/status").json()["data"]["enabled"] is False

    def test_enable_rejects_client_chosen_secret(self, client, state):
        _sign_in(client, state)
        client.post("/v1/mfa/setup")
        weak_secret = "AAAAAAAAAAAAAAAA"
        code = get_runtime().mfa.generate_totp(weak_secret, time.time())

        response = client.post(
            "/v1/mfa/enable",
            json={"secret": weak_secret, "code": code, "backup_codes": ["a"]},
        )

        assert response.status_code == 422
        assert client.get("/v1/mfa/status").json()["data"]["enabled"] is False

    def test_enable_without_setup(self, client, state):
        _sign_in(client, state)

        response = client.post("/v1/mfa/enable", json={"code": "123456"})

        assert response.status_code == 400
        assert client.get("/v1/mfa/status").json()["data"]["enabled"] is False

    def test_enable_uses_staged_backup_codes(self, client, state):
        data = self._enroll(client, state)

        stored = get_runtime().mfa.status("email:alice@example.com")

        assert stored.backup_codes_remaining == len(data["backup_codes"])
        backup = data["backup_codes"][-1]
        assert client.post("/v1/mfa/verify", json={"code": backup}).status_code == 200

    def test_setup_when_enabled_conflicts(self, client, state):
        self._enroll(client, state)
        assert client.post("/v1/mfa/setup").status_code == 409

    def test_backup_code_single_use(self, client, state):
        data = self._enroll(client, state)
        backup = data["backup_codes"][0]

        first = client.post("/v1/mfa/verify", json={"code": backup})
        second = client.post("/v1/mfa/verify", json={"code": backup})

        assert first.status_code == 200
        assert first.json()["data"]["method"] == "backup_code"
        assert second.status_code == 401
        assert client.get("/v1/mfa/status").json()["data"]["backup_codes_remaining"] == 9

    def test_verify_without_enrollment(self, client, state):
        _sign_in(client, state)

        response = client.post("/v1/mfa/verify", json={"code": "123456"})

        assert response.status_code == 400

    def test_regenerate_and_disable(self, client, state):
        data = self._enroll(client, state)

        regenerated = client.post("/v1/mfa/backup-codes/regenerate")
        assert regenerated.status_code == 200
        new_codes = regenerated.json()["data"]["backup_codes"]
        assert not set(new_codes) & set(data["backup_codes"])

        disabled = client.post("/v1/mfa/disable", json={"code": new_codes[0]})
        assert disabled.status_code == 200
        assert client.get("/v1/mfa/status").json()["data"]["enabled"] is False

    def test_disable_requires_valid_code(self, client, state):
        self._enroll(client, state)

        response = client.post("/v1/mfa/disable", json={"code": "ZZZZZZZZ"})

        assert response.status_code == 401
        assert client.get("/v1/mfa/status").json()["data"]["enabled"] is True


class TestMfaSignIn:
    """Accounts with MFA get no session until the second factor is verified."""

    def _enrolled_secret(self, state, email="alice@example.com"):
        device = TestClient(app_module.app)
        _sign_in(device, state, email=email)
        secret = device.post("/v1/mfa/setup").json()["data"]["secret"]
        code = get_runtime().mfa.generate_totp(secret, time.time())
        assert device.post("/v1/mfa/enable", json={"code": code}).status_code == 200
        return secret

    def test_sign_in_is_pending_until_verified(self, state):
        secret = self._enrolled_secret(state)
        browser = TestClient(app_module.app)

        signed_in = _authenticate(browser, state)

        assert signed_in.status_code == 200
        assert signed_in.json()["data"]["mfa_required"] is True
        assert "device_session" not in signed_in.cookies
        for path in ("/v1/me", "/v1/sessions"):
            blocked = browser.get(path)
            assert blocked.status_code == 401
            assert blocked.json()["error"]["details"] == {"mfa_required": True}

        code = get_runtime().mfa.generate_totp(secret, time.time())
        verified = browser.post("/v1/mfa/verify", json={"code": code})

        assert verified.status_code == 200
        assert verified.json()["data"]["session_started"] is True
        assert browser.get("/v1/me").status_code == 200
        items = browser.get("/v1/sessions").json()["data"]["items"]
        assert sum(1 for item in items if item["is_current"]) == 1

    def test_wrong_code_keeps_sign_in_pending(self, state):
        self._enrolled_secret(state)
        browser = TestClient(app_module.app)
        _authenticate(browser, state)

        response = browser.post("/v1/mfa/verify", json={"code": "ZZZZZZZZ"})

        assert response.status_code == 401
        assert browser.get("/v1/me").status_code == 401

    def test_pending_credential_as_bearer_blocked(self, state):
        self._enrolled_secret(state)
        pending = _sign_in(TestClient(app_module.app), state)

        response = TestClient(app_module.app).get(
            "/v1/sessions", headers={"Authorization": f"Bearer {pending}"}
        )

        assert response.status_code == 401

    def test_pending_credential_has_no_userinfo(self, state):
        self._enrolled_secret(state)
        pending = _sign_in(TestClient(app_module.app), state)

        response = TestClient(app_module.app).post(
            "/v1/auth/userinfo/jwt", json={"jwt_token": pending, "project_id": CLIENT_ID}
        )

        assert response.status_code == 401

    def test_pending_credential_cannot_manage_mfa(self, state):
        self._enrolled_secret(state)
        browser = TestClient(app_module.app)
        _authenticate(browser, state)

        assert browser.get("/v1/mfa/status").status_code == 401
        assert browser.post("/v1/mfa/backup-codes/regenerate").status_code == 401

    def test_callback_sign_in_is_pending(self, state):
        device = TestClient(app_module.app)
        device.get(
            "/v1/oauth/callback",
            params={"code": _github_code(device, state), "state": state},
            follow_redirects=False,
        )
        secret = device.post("/v1/mfa/setup").json()["data"]["secret"]
        code = get_runtime().mfa.generate_totp(secret, time.time())
        assert device.post("/v1/mfa/enable", json={"code": code}).status_code == 200
        browser = TestClient(app_module.app)

        response = browser.get(
            "/v1/oauth/callback",
            params={"code": _github_code(browser, state), "state": state},
            follow_redirects=False,
        )

        assert response.status_code == 302
        assert "device_session" not in response.cookies
        assert browser.get("/v1/me").status_code == 401
        code = get_runtime().mfa.generate_totp(secret, time.time())
        assert browser.post("/v1/mfa/verify", json={"code": code}).status_code == 200
        assert browser.get("/v1/me").json()["data"]["open_id"] == "github:12345"


class TestDevelopmentFallback:
    """Unauthenticated requests map to a fixed identity in fallback mode."""

    def test_fallback_identity(self, monkeypatch, client):
        monkeypatch.setenv("AUTH_MODE", "development_fallback")
        reset_runtime_for_tests()

        response = client.get("/v1/me")

        assert response.status_code == 200
        me = response.json()["data"]
        assert me["open_id"] == "dev-user-mock"
        assert me["name"] == "Development User"
        assert me["role"] == "admin"

    def test_real_session_preferred(self, monkeypatch, client, state):
        monkeypatch.setenv("AUTH_MODE", "development_fallback")
        reset_runtime_for_tests()
        _sign_in(client, state)

        assert client.get("/v1/me").json()["data"]["open_id"] == "email:alice@example.com"


class TestApp:
    """Tests for health and response headers."""

    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["store"]["status"] == "healthy"
        assert body["version"] == app_module.__version__

    def test_request_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "no-store" in response.headers["Cache-Control"]
