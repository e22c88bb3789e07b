from __future__ import annotations

from decimal import Decimal

from app.models.payment import PaymentIntent, PaymentIntentStatus
from app.services.credits import CreditsService


def test_admin_routes_require_admin(client, users):
    _, other = users
    res = client.post(f"/admin/credits/{other.id}/bonus", json={"amount": "5"})
    assert res.status_code == 403
    assert res.json() == {"error": "FORBIDDEN", "message": "Admin access required"}


def test_admin_bonus(client_for, admin_user, users, db_session):
    user, _ = users
    with client_for(admin_user) as admin:
        res = admin.post(f"/admin/credits/{user.id}/bonus", json={"amount": "10"})

    assert res.status_code == 201
    body = res.json()
    assert body["type"] == "bonus"
    assert body["description"] == "Bonus credits"
    assert Decimal(str(body["balance_after"])) == Decimal("10.00")
    assert CreditsService(db_session).get_balance(user.id) == Decimal("10.00")


def test_admin_adjust_both_directions(client_for, admin_user, users, fund, db_session):
    user, _ = users
    fund(user, 5)
    with client_for(admin_user) as admin:
        up = admin.post(f"/admin/credits/{user.id}/adjust", json={"amount": "2.5", "description": "Goodwill"})
        down = admin.post(f"/admin/credits/{user.id}/adjust", json={"amount": "-4", "description": "Correction"})
        too_far = admin.post(f"/admin/credits/{user.id}/adjust", json={"amount": "-100", "description": "Oops"})
        zero = admin.post(f"/admin/credits/{user.id}/adjust", json={"amount": "0", "description": "Noop"})

    assert up.status_code == 201
    assert up.json()["type"] == "adjustment"
    assert down.status_code == 201
    assert Decimal(str(down.json()["amount"])) == Decimal("-4.00")
    assert too_far.status_code == 409
    assert zero.status_code == 422
    assert CreditsService(db_session).get_balance(user.id) == Decimal("3.50")
    assert CreditsService(db_session).verify_history(user.id) == []


def test_admin_unknown_user_is_404(client_for, admin_user):
    with client_for(admin_user) as admin:
        res = admin.post("/admin/credits/99999/bonus", json={"amount": "5"})
    assert res.status_code == 404


def test_admin_refund(client_for, admin_user, users, db_session, fake_stripe):
    user, _ = users
    intent = PaymentIntent(
        user_id=user.id,
        external_reference="pi_paid",
        status=PaymentIntentStatus.SUCCEEDED.value,
        amount=Decimal("19.99"),
        currency="usd",
        credits_to_add=Decimal("55"),
    )
    db_session.add(intent)
    db_session.commit()

    with client_for(admin_user) as admin:
        ok = admin.post("/admin/payments/pi_paid/refund", json={"reason": "requested_by_customer"})
        missing = admin.post("/admin/payments/pi_nope/refund", json={})

    assert ok.status_code == 200
    assert ok.json() == {"refund_id": "re_1", "status": "succeeded", "amount_minor": None}
    assert fake_stripe.refunds[0] == {
        "id": "re_1",
        "status": "succeeded",
        "payment_intent": "pi_paid",
        "reason": "requested_by_customer",
    }
    assert missing.status_code == 404


def test_admin_refund_requires_succeeded_payment(client_for, admin_user, users, db_session, fake_stripe):
    user, _ = users
    db_session.add(
        PaymentIntent(
            user_id=user.id,
            external_reference="pi_open",
            status=PaymentIntentStatus.PENDING.value,
            amount=Decimal("9.99"),
            currency="usd",
            credits_to_add=Decimal("25"),
        )
    )
    db_session.commit()

    with client_for(admin_user) as admin:
        res = admin.post("/admin/payments/pi_open/refund", json={})
    assert res.status_code == 409
    assert fake_stripe.refunds == []
