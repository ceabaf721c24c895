import pytest

from classes import auth as auth_module
from classes.auth import AuthUser, Authenticator, admin_allowlist, is_admin_email, parse_bearer
from classes.base_utils import ApiError, mask_email
from classes.entities import AdminEmail
from conftest import FakeSupabase, bearer


def test_parse_bearer_reads_fallback_headers_case_insensitively():
    assert parse_bearer({"Authorization": "Bearer abc"}) == "abc"
    assert parse_bearer({"x-authorization": "bearer xyz"}) == "xyz"
    assert parse_bearer({"X-Forwarded-Authorization": "BEARER  tok "}) == "tok"
    assert parse_bearer({"Authorization": "Basic abc"}) is None
    assert parse_bearer({}) is None


def test_admin_allowlist_splits_on_commas_semicolons_and_spaces():
    assert admin_allowlist("A@x.com; b@y.com,c@z.com  d@w.com") == {"a@x.com", "b@y.com", "c@z.com", "d@w.com"}
    assert is_admin_email("B@Y.com", "a@x.com;b@y.com")
    assert not is_admin_email(None, "a@x.com")


def test_mask_email():
    assert mask_email("someone@example.com") == "som***@example.com"
    assert mask_email("nope") == "unknown"


def test_resolve_user_lowercases_email(session_factory):
    user = Authenticator(FakeSupabase(), session_factory).resolve_user("user-token")
    assert user.id == "user-1"
    assert user.email == "user@example.com"


def test_resolve_user_rejects_missing_and_bad_tokens(session_factory):
    authenticator = Authenticator(FakeSupabase(), session_factory)
    with pytest.raises(ApiError) as missing:
        authenticator.resolve_user(None)
    assert missing.value.status == 401
    assert missing.value.message == "Authentication required"

    with pytest.raises(ApiError) as bad:
        authenticator.resolve_user("forged")
    assert bad.value.status == 401
    assert bad.value.message == "Invalid authentication token"


def test_dev_token_only_accepted_in_development(session_factory, monkeypatch):
    authenticator = Authenticator(FakeSupabase(), session_factory)
    monkeypatch.setattr(auth_module, "DEV_BEARER_TOKEN", "dev-secret")

    monkeypatch.setattr(auth_module, "IS_DEV", False)
    with pytest.raises(ApiError):
        authenticator.resolve_user("dev-secret")

    monkeypatch.setattr(auth_module, "IS_DEV", True)
    assert authenticator.resolve_user("dev-secret").is_dev


def test_require_admin_accepts_profile_flag(session_factory, add_profile):
    add_profile(user_id="user-9", email="boss@example.com", is_admin=True)
    authenticator = Authenticator(FakeSupabase(), session_factory)
    user = AuthUser(id="user-9", email="boss@example.com")
    assert authenticator.require_admin(user) is user


def test_protected_route_without_token_returns_envelope(client):
    resp = client.get("/api/designs")
    assert resp.status_code == 401
    assert resp.json() == {"error": "Authentication required", "code": "auth_required"}


def test_paid_route_requires_active_paid_profile(client, add_profile):
    add_profile(is_paid=True, is_active=False)
    resp = client.post("/api/generate", json={"prompt": "a gear"}, headers=bearer())
    assert resp.status_code == 403
    assert resp.json()["error"] == "Payment required"


def test_admin_route_rejects_regular_user(client):
    resp = client.get("/api/admin/health", headers=bearer())
    assert resp.status_code == 403
    assert resp.json()["code"] == "admin_required"


def test_admin_health_for_allowlisted_email(client):
    resp = client.get("/api/admin/health", headers=bearer("admin-token"))
    assert resp.status_code == 200
    body = resp.json()
    assert body["admin"] is True
    assert body["email"] == "admin@example.com"


def test_require_admin_accepts_admin_emails_row(session_factory):
    session = session_factory()
    session.add(AdminEmail(email="listed@example.com"))
    session.commit()
    session.close()

    authenticator = Authenticator(FakeSupabase(), session_factory)
    user = AuthUser(id="user-5", email="listed@example.com")
    assert authenticator.require_admin(user) is user
    with pytest.raises(ApiError) as exc:
        authenticator.require_admin(AuthUser(id="user-6", email="unlisted@example.com"))
    assert exc.value.status == 403


def test_cors_preflight_allows_stripe_signature(client):
    resp = client.options("/api/stripe-webhook", headers={
        "Origin": "https://shop.example.com",
        "Access-Control-Request-Method": "POST",
        "Access-Control-Request-Headers": "content-type, stripe-signature",
    })
    assert resp.status_code == 200
    assert resp.headers["access-control-allow-origin"] == "*"
    allowed = [h.strip().lower() for h in resp.headers["access-control-allow-headers"].split(",")]
    assert "stripe-signature" in allowed
    assert "authorization" in allowed
    assert "POST" in resp.headers["access-control-allow-methods"]
