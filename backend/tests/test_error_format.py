from __future__ import annotations

from app.core.database import ConcurrentModificationError
from app.core.security import create_access_token
from app.services.credits import CreditsService


def _assert_error_shape(res, *, error: str | None = None):
    data = res.json()
    assert isinstance(data, dict)
    assert isinstance(data.get("error"), str) and data["error"]
    assert isinstance(data.get("message"), str) and data["message"]
    if error is not None:
        assert data["error"] == error


def test_error_shape_401_missing_token(anonymous_client):
    res = anonymous_client.get("/billing/credits/status")
    assert res.status_code == 401
    assert res.headers.get("www-authenticate") == "Bearer"
    _assert_error_shape(res, error="UNAUTHORIZED")


def test_error_shape_401_bad_token(anonymous_client):
    res = anonymous_client.get("/billing/credits/status", headers={"Authorization": "Bearer not-a-jwt"})
    assert res.status_code == 401
    _assert_error_shape(res, error="UNAUTHORIZED")


def test_error_shape_404_unknown_payment(client):
    res = client.get("/billing/payments/pi_does_not_exist")
    assert res.status_code == 404
    _assert_error_shape(res, error="NOT_FOUND")


def test_error_shape_422_validation(client):
    res = client.post("/tests/generate", json={"plugin_code": ""})
    assert res.status_code == 422
    _assert_error_shape(res, error="VALIDATION_ERROR")
    assert isinstance(res.json()["details"]["errors"], list)


def test_error_shape_409_exhausted_retries(client, monkeypatch):
    def _busy(self, user_id):
        raise ConcurrentModificationError("credits.deduct", 3)

    monkeypatch.setattr(CreditsService, "get_balance", _busy)
    res = client.get("/billing/credits/balance")
    assert res.status_code == 409
    _assert_error_shape(res, error="CONFLICT")


def test_health(anonymous_client):
    assert anonymous_client.get("/health").json() == {"status": "ok"}


def test_bearer_token_authenticates(anonymous_client, users):
    user, _ = users
    token = create_access_token(user.email)
    res = anonymous_client.get("/billing/credits/balance", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 200


def test_inactive_user_is_rejected(anonymous_client, users, db_session):
    user, _ = users
    user.is_active = False
    db_session.commit()
    token = create_access_token(user.email)
    res = anonymous_client.get("/billing/credits/balance", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 401
