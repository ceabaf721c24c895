import hashlib
import hmac
import json
import time

import pytest
import stripe

from classes import payment_service, settings
from classes.entities import PromoCode, Profile, StripeEvent
from conftest import bearer


def _signed(event: dict, secret="whsec_test_secret"):
    payload = json.dumps(event)
    timestamp = int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return payload, {"Stripe-Signature": f"t={timestamp},v1={signature}", "Content-Type": "application/json"}


def _post_event(client, event):
    payload, headers = _signed(event)
    return client.post("/api/stripe-webhook", content=payload, headers=headers)


@pytest.fixture
def stripe_calls(monkeypatch):
    calls = {"sessions": [], "coupons": []}

    def create_session(**kwargs):
        calls["sessions"].append(kwargs)
        return stripe.checkout.Session.construct_from(
            {"id": "cs_test_123", "url": "https://checkout.stripe.test/cs_test_123"}, "sk_test_dummy")

    def create_coupon(**kwargs):
        calls["coupons"].append(kwargs)
        return stripe.Coupon.construct_from({"id": "coupon_abc"}, "sk_test_dummy")

    monkeypatch.setattr(stripe.checkout.Session, "create", create_session)
    monkeypatch.setattr(stripe.Coupon, "create", create_coupon)
    return calls


def _profile(session_factory, user_id="user-1"):
    session = session_factory()
    try:
        return session.get(Profile, user_id)
    finally:
        session.close()


# -----------------------
# Checkout
# -----------------------

def test_checkout_session_builds_subscription(client, stripe_calls):
    resp = client.post("/api/checkout-session", json={"email": "buyer@example.com", "plan": "yearly", "userId": "user-1"})
    assert resp.status_code == 200
    assert resp.json() == {"url": "https://checkout.stripe.test/cs_test_123", "id": "cs_test_123"}

    config = stripe_calls["sessions"][0]
    assert config["mode"] == "subscription"
    price = config["line_items"][0]["price_data"]
    assert price["currency"] == "aud"
    assert price["unit_amount"] == 5000
    assert price["recurring"] == {"interval": "year"}
    assert config["metadata"]["plan"] == "yearly"
    assert config["metadata"]["user_id"] == "user-1"
    assert config["success_url"].startswith(
        "https://flexicad.test/payment-success.html?session_id={CHECKOUT_SESSION_ID}&checkout=success"
    )
    assert config["cancel_url"] == "https://flexicad.test/register.html?payment=cancelled"
    assert "discounts" not in config
    assert stripe_calls["coupons"] == []


def test_checkout_session_applies_promo_coupon(client, stripe_calls, session_factory):
    session = session_factory()
    session.add(PromoCode(code="LAUNCH20", discount_percent=20))
    session.commit()
    session.close()

    resp = client.post("/api/checkout-session", json={"email": "buyer@example.com", "promoCode": "launch20"})
    assert resp.status_code == 200
    assert stripe_calls["coupons"][0]["percent_off"] == 20
    assert stripe_calls["coupons"][0]["duration"] == "once"
    config = stripe_calls["sessions"][0]
    assert config["discounts"] == [{"coupon": "coupon_abc"}]
    assert config["metadata"]["discount_applied"] == "20"
    assert config["metadata"]["promo_code"] == "LAUNCH20"


@pytest.mark.parametrize("body,status,code", [
    ({"plan": "monthly"}, 400, "MISSING_EMAIL"),
    ({"email": "a@b.com", "plan": "weekly"}, 400, "VALIDATION_ERROR"),
    ({"email": "a@b.com", "promoCode": "NOPE"}, 400, "INVALID_PROMO"),
])
def test_checkout_session_validation(client, stripe_calls, body, status, code):
    resp = client.post("/api/checkout-session", json=body)
    assert resp.status_code == status
    assert resp.json()["code"] == code
    assert stripe_calls["sessions"] == []


def test_checkout_session_requires_stripe_key(client, stripe_calls, monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "")
    resp = client.post("/api/checkout-session", json={"email": "a@b.com"})
    assert resp.status_code == 500
    assert resp.json()["code"] == "MISSING_ENV"


def test_checkout_session_maps_stripe_request_errors(client, monkeypatch):
    def reject(**kwargs):
        raise stripe.InvalidRequestError("No such price", param="line_items")

    monkeypatch.setattr(stripe.checkout.Session, "create", reject)
    resp = client.post("/api/checkout-session", json={"email": "a@b.com"})
    assert resp.status_code == 400
    assert resp.json()["code"] == "STRIPE_ERROR"


# -----------------------
# Webhook
# -----------------------

def _checkout_completed(event_id="evt_1", **metadata):
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {"object": {
            "customer": "cus_1",
            "subscription": "sub_1",
            "customer_email": "user@example.com",
            "metadata": {"user_email": "user@example.com", "user_id": "user-1", "plan": "monthly", **metadata},
        }},
    }


def test_webhook_rejects_bad_signature(client):
    resp = client.post("/api/stripe-webhook", content=json.dumps(_checkout_completed()),
                       headers={"Stripe-Signature": "t=1,v1=deadbeef"})
    assert resp.status_code == 400


def test_checkout_completed_activates_profile_once(client, add_profile, session_factory):
    add_profile()
    resp = _post_event(client, _checkout_completed())
    assert resp.status_code == 200
    assert resp.json() == {"received": True}

    profile = _profile(session_factory)
    assert profile.is_paid and profile.is_active
    assert profile.subscription_plan == "monthly"
    assert profile.stripe_customer_id == "cus_1"
    assert profile.stripe_subscription_id == "sub_1"
    assert profile.payment_date is not None

    again = _post_event(client, _checkout_completed())
    assert again.json() == {"received": True, "duplicate": True}

    session = session_factory()
    assert session.get(StripeEvent, "evt_1").status == "PROCESSED"
    session.close()


def test_checkout_completed_falls_back_to_email(client, add_profile, session_factory):
    add_profile(user_id="user-7", email="late@example.com")
    event = _checkout_completed(user_id="", user_email="Late@Example.com")
    assert _post_event(client, event).status_code == 200
    assert _profile(session_factory, "user-7").has_paid


def test_subscription_lifecycle(client, add_profile, session_factory):
    add_profile(is_paid=True, is_active=True, stripe_customer_id="cus_1", subscription_plan="monthly")

    _post_event(client, {
        "id": "evt_upd",
        "type": "customer.subscription.updated",
        "data": {"object": {
            "id": "sub_1",
            "customer": "cus_1",
            "status": "active",
            "items": {"data": [{"price": {"recurring": {"interval": "year"}}}]},
        }},
    })
    assert _profile(session_factory).subscription_plan == "yearly"

    _post_event(client, {"id": "evt_del", "type": "customer.subscription.deleted",
                         "data": {"object": {"id": "sub_1", "customer": "cus_1"}}})
    profile = _profile(session_factory)
    assert not profile.is_active and not profile.is_paid

    _post_event(client, {"id": "evt_inv", "type": "invoice.payment_succeeded",
                         "data": {"object": {"customer": "cus_1"}}})
    assert _profile(session_factory).has_paid


def test_webhook_handler_failure_is_recorded(client, session_factory):
    event = {"id": "evt_bad", "type": "checkout.session.completed", "data": {"object": {"metadata": {}}}}
    resp = _post_event(client, event)
    assert resp.status_code == 500

    session = session_factory()
    row = session.get(StripeEvent, "evt_bad")
    session.close()
    assert row.status == "FAILED"


def test_unknown_event_is_acknowledged(client):
    resp = _post_event(client, {"id": "evt_x", "type": "charge.refunded", "data": {"object": {}}})
    assert resp.status_code == 200


# -----------------------
# Profile & status
# -----------------------

def test_payment_status_without_profile(client):
    body = client.get("/api/payment-status", headers=bearer()).json()
    assert body["hasPaid"] is False
    assert body["needsRegistration"] is True


def test_payment_status_with_paid_profile(client, paid_profile):
    body = client.get("/api/payment-status", headers=bearer()).json()
    assert body["hasPaid"] is True
    assert body["needsRegistration"] is False
    assert body["paymentStatus"]["subscription_plan"] == "monthly"


def test_ensure_profile_creates_unpaid_profile_once(client, session_factory):
    first = client.post("/api/profile", headers=bearer()).json()
    assert first["profileExists"] is False
    assert first["profile"]["is_paid"] is False
    assert first["profile"]["email"] == "user@example.com"

    second = client.post("/api/profile", headers=bearer()).json()
    assert second["profileExists"] is True


def test_ensure_profile_in_development_marks_paid(client, session_factory, monkeypatch):
    monkeypatch.setattr(settings, "IS_DEV", True)
    client.post("/api/profile", headers=bearer())
    profile = _profile(session_factory)
    assert profile.has_paid
    assert profile.subscription_plan == "development"


def _stripe_session(**values):
    return stripe.checkout.Session.construct_from(values, "sk_test_dummy")


def test_verify_checkout_session_activates_owner(client, session_factory, monkeypatch):
    def retrieve(session_id):
        return _stripe_session(
            id=session_id,
            status="complete",
            payment_status="paid",
            customer="cus_9",
            subscription="sub_9",
            metadata={"user_id": "user-1", "user_email": "user@example.com", "plan": "yearly"},
        )

    monkeypatch.setattr(stripe.checkout.Session, "retrieve", retrieve)

    resp = client.post("/api/verify-checkout", json={"session_id": "cs_1"}, headers=bearer("other-token"))
    assert resp.status_code == 403

    resp = client.post("/api/verify-checkout", json={"session_id": "cs_1"}, headers=bearer())
    assert resp.status_code == 200
    assert resp.json()["paymentStatus"]["subscription_plan"] == "yearly"
    profile = _profile(session_factory)
    assert profile.stripe_customer_id == "cus_9"
    assert profile.stripe_subscription_id == "sub_9"


def test_verify_checkout_session_matches_owner_by_email(client, session_factory, monkeypatch):
    monkeypatch.setattr(stripe.checkout.Session, "retrieve", lambda session_id: _stripe_session(
        id=session_id, status="complete", payment_status="paid", customer_email="User@Example.com",
    ))
    resp = client.post("/api/verify-checkout", json={"session_id": "cs_3"}, headers=bearer())
    assert resp.status_code == 200
    assert _profile(session_factory).subscription_plan == "monthly"


def test_verify_checkout_session_requires_paid_session(client, monkeypatch):
    monkeypatch.setattr(stripe.checkout.Session, "retrieve", lambda session_id: _stripe_session(
        id=session_id, status="open", payment_status="unpaid", metadata={"user_id": "user-1"},
    ))
    resp = client.post("/api/verify-checkout", json={"session_id": "cs_2"}, headers=bearer())
    assert resp.status_code == 400
    assert resp.json()["code"] == "payment_incomplete"


def test_verify_checkout_session_unknown_id(client, monkeypatch):
    def retrieve(session_id):
        raise stripe.InvalidRequestError("No such checkout.session", param="id")

    monkeypatch.setattr(stripe.checkout.Session, "retrieve", retrieve)
    resp = client.post("/api/verify-checkout", json={"session_id": "cs_missing"}, headers=bearer())
    assert resp.status_code == 404


def test_profile_status_shape():
    profile = Profile(id="x", email="x@example.com", is_paid=True, is_active=True, subscription_plan="monthly")
    assert payment_service.profile_to_status(profile)["is_paid"] is True
