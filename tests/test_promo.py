from datetime import datetime, timedelta, timezone

from classes.entities import PromoCode
from conftest import bearer

ADMIN = bearer("admin-token")


def _add_promo(session_factory, **fields):
    session = session_factory()
    try:
        promo = PromoCode(**fields)
        session.add(promo)
        session.commit()
        return promo
    finally:
        session.close()


def test_validate_promo_code(client, session_factory):
    _add_promo(session_factory, code="SAVE10", discount_percent=10, description="Ten off")
    resp = client.post("/api/promo/validate", json={"code": "save10"})
    assert resp.status_code == 200
    assert resp.json() == {"valid": True, "code": "SAVE10", "discount_percent": 10, "description": "Ten off"}


def test_validate_promo_code_invalid_expired_and_missing(client, session_factory):
    yesterday = datetime.now(timezone.utc) - timedelta(days=1)
    _add_promo(session_factory, code="OLD", discount_percent=10, expires_at=yesterday)
    _add_promo(session_factory, code="OFF", discount_percent=10, active=False)

    assert client.post("/api/promo/validate", json={"code": "OLD"}).json() == {
        "valid": False, "error": "This promo code has expired",
    }
    assert client.post("/api/promo/validate", json={"code": "OFF"}).json()["valid"] is False
    resp = client.post("/api/promo/validate", json={"code": ""})
    assert resp.status_code == 400
    assert resp.json()["valid"] is False


def test_admin_promo_crud(client):
    resp = client.post("/api/admin/promos", json={"code": "spring", "discount_percent": 25}, headers=ADMIN)
    assert resp.status_code == 201
    promo = resp.json()["promoCode"]
    assert promo["code"] == "SPRING"
    assert promo["active"] is True

    dup = client.post("/api/admin/promos", json={"code": "SPRING", "discount_percent": 5}, headers=ADMIN)
    assert dup.status_code == 409

    resp = client.put(f"/api/admin/promos/{promo['id']}", json={"discount_percent": 30, "active": False}, headers=ADMIN)
    assert resp.status_code == 200
    assert resp.json()["promoCode"]["discount_percent"] == 30
    assert resp.json()["promoCode"]["active"] is False

    listed = client.get("/api/admin/promos", headers=ADMIN).json()["promoCodes"]
    assert [p["code"] for p in listed] == ["SPRING"]

    assert client.delete(f"/api/admin/promos/{promo['id']}", headers=ADMIN).status_code == 200
    assert client.delete(f"/api/admin/promos/{promo['id']}", headers=ADMIN).status_code == 404


def test_admin_promo_validation(client):
    assert client.post("/api/admin/promos", json={"code": "X"}, headers=ADMIN).status_code == 400
    resp = client.post("/api/admin/promos", json={"code": "X", "discount_percent": 150}, headers=ADMIN)
    assert resp.status_code == 400
    assert resp.json()["error"] == "Discount percentage must be between 1 and 100"
    resp = client.post("/api/admin/promos", json={"code": "X", "discount_percent": 10, "expires_at": "soon"},
                       headers=ADMIN)
    assert resp.status_code == 400


def test_admin_promos_require_admin(client):
    assert client.get("/api/admin/promos", headers=bearer()).status_code == 403
