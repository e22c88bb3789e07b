from __future__ import annotations

from decimal import Decimal

import pytest

from app.models.credit import CreditBalance, CreditTransaction, TransactionType
from app.models.payment import PaymentIntent, PaymentIntentStatus
from app.services.credits import CreditsService, TransactionMetadata
from app.services.payments import (
    PackageUnavailableError,
    PaymentEventMismatchError,
    PaymentsService,
    PaymentStateError,
    ReceiptUnavailableError,
    ReconciliationOutcome,
    TEMP_REFERENCE_PREFIX,
    TransactionNotFoundError,
    UnfundedPaymentError,
    UnknownPaymentReferenceError,
)
from app.services.stripe import StripeService, StripeServiceError


def _service(db, fake_stripe) -> PaymentsService:
    return PaymentsService(db, stripe_service=StripeService(db, stripe_client=fake_stripe))


def _pending_intent(db_session, user, *, reference="pi_ref_1", credits="25", amount="9.99", package=None):
    intent = PaymentIntent(
        user_id=user.id,
        credit_package_id=package.id if package else None,
        external_reference=reference,
        status=PaymentIntentStatus.PENDING.value,
        amount=Decimal(amount),
        currency="usd",
        credits_to_add=Decimal(credits),
    )
    db_session.add(intent)
    db_session.commit()
    db_session.refresh(intent)
    return intent


def _purchases(db_session, user_id):
    return (
        db_session.query(CreditTransaction)
        .filter(
            CreditTransaction.user_id == user_id,
            CreditTransaction.type == TransactionType.PURCHASE.value,
        )
        .all()
    )


def test_create_purchase_creates_pending_intent_with_gateway_reference(db_session, users, packages, fake_stripe):
    user, _ = users
    purchase = _service(db_session, fake_stripe).create_purchase(user, packages["professional"].id)

    assert purchase.external_reference == "pi_test_1"
    assert purchase.client_secret == "pi_test_1_secret"
    assert purchase.amount == Decimal("29.99")
    assert purchase.credits == Decimal("110.00")

    intent = db_session.get(PaymentIntent, purchase.payment_intent_id)
    assert intent.status == PaymentIntentStatus.PENDING.value
    assert intent.external_reference == "pi_test_1"

    gateway_call = fake_stripe.intents["pi_test_1"]
    assert gateway_call["amount"] == 2999
    assert gateway_call["currency"] == "usd"
    assert gateway_call["metadata"]["local_payment_intent_id"] == str(intent.id)
    assert gateway_call["customer"] == "cus_1"
    assert db_session.query(CreditTransaction).count() == 0


def test_create_purchase_accepts_slug_and_reuses_customer(db_session, users, packages, fake_stripe):
    user, _ = users
    service = _service(db_session, fake_stripe)
    service.create_purchase(user, "starter")
    service.create_purchase(user, "starter")
    assert len(fake_stripe.customers) == 1
    assert len(fake_stripe.intents) == 2


def test_create_purchase_rejects_inactive_package(db_session, users, packages, fake_stripe):
    user, _ = users
    packages["enterprise"].is_active = False
    db_session.commit()
    with pytest.raises(PackageUnavailableError):
        _service(db_session, fake_stripe).create_purchase(user, "enterprise")
    with pytest.raises(PackageUnavailableError):
        _service(db_session, fake_stripe).create_purchase(user, 9999)


def test_create_purchase_rejects_package_without_credits(db_session, users, packages, fake_stripe):
    user, _ = users
    packages["starter"].credits = Decimal("0")
    packages["starter"].bonus_credits = 0
    db_session.commit()

    with pytest.raises(PackageUnavailableError):
        _service(db_session, fake_stripe).create_purchase(user, "starter")
    assert db_session.query(PaymentIntent).count() == 0
    assert fake_stripe.intents == {}


def test_create_purchase_gateway_failure_marks_intent_failed(db_session, users, packages, fake_stripe):
    user, _ = users
    user.stripe_customer_id = "cus_existing"
    db_session.commit()
    fake_stripe.fail_with = fake_stripe.StripeError("card network down")

    with pytest.raises(StripeServiceError):
        _service(db_session, fake_stripe).create_purchase(user, "starter")

    intent = db_session.query(PaymentIntent).one()
    assert intent.status == PaymentIntentStatus.FAILED.value
    assert intent.external_reference.startswith(TEMP_REFERENCE_PREFIX)
    assert "card network down" in intent.failure_reason


def test_payment_succeeded_is_applied_once(db_session, users, fake_stripe):
    user, _ = users
    intent = _pending_intent(db_session, user)
    service = _service(db_session, fake_stripe)

    first = service.handle_payment_succeeded("pi_ref_1")
    assert first.outcome == ReconciliationOutcome.APPLIED
    assert first.credits_applied is True
    assert first.transaction.payment_intent_id == "pi_ref_1"
    assert Decimal(first.transaction.amount) == Decimal("25.00")

    second = service.handle_payment_succeeded("pi_ref_1")
    assert second.outcome == ReconciliationOutcome.DUPLICATE
    assert second.transaction is None

    db_session.refresh(intent)
    assert intent.status == PaymentIntentStatus.SUCCEEDED.value
    assert intent.completed_at is not None
    assert len(_purchases(db_session, user.id)) == 1
    assert CreditsService(db_session).get_balance(user.id) == Decimal("25.00")

    account = db_session.query(CreditBalance).filter_by(user_id=user.id).one()
    assert Decimal(account.total_purchased) == Decimal("25.00")


def test_unknown_reference_is_signalled_without_side_effects(db_session, users, fake_stripe):
    with pytest.raises(UnknownPaymentReferenceError):
        _service(db_session, fake_stripe).handle_payment_succeeded("pi_nobody")
    assert db_session.query(CreditTransaction).count() == 0


def test_local_id_adopts_gateway_reference(db_session, users, fake_stripe):
    user, _ = users
    intent = _pending_intent(db_session, user, reference="temp_abc123")

    result = _service(db_session, fake_stripe).handle_payment_succeeded("pi_late", local_intent_id=intent.id)

    assert result.outcome == ReconciliationOutcome.APPLIED
    db_session.refresh(intent)
    assert intent.external_reference == "pi_late"
    assert result.transaction.payment_intent_id == "pi_late"


def test_local_id_never_steals_a_settled_reference(db_session, users, fake_stripe):
    user, _ = users
    intent = _pending_intent(db_session, user, reference="pi_owned")
    with pytest.raises(UnknownPaymentReferenceError):
        _service(db_session, fake_stripe).handle_payment_succeeded("pi_other", local_intent_id=intent.id)
    db_session.refresh(intent)
    assert intent.external_reference == "pi_owned"


def test_amount_or_currency_mismatch_is_rejected(db_session, users, fake_stripe):
    user, _ = users
    intent = _pending_intent(db_session, user, amount="9.99")
    service = _service(db_session, fake_stripe)

    with pytest.raises(PaymentEventMismatchError):
        service.handle_payment_succeeded("pi_ref_1", amount_minor=1, currency="usd")
    with pytest.raises(PaymentEventMismatchError):
        service.handle_payment_succeeded("pi_ref_1", amount_minor=999, currency="eur")

    db_session.refresh(intent)
    assert intent.status == PaymentIntentStatus.PENDING.value
    assert db_session.query(CreditTransaction).count() == 0

    ok = service.handle_payment_succeeded("pi_ref_1", amount_minor=999, currency="USD")
    assert ok.outcome == ReconciliationOutcome.APPLIED


def test_success_for_intent_without_credits_is_rejected_and_left_pending(db_session, users, fake_stripe):
    user, _ = users
    intent = _pending_intent(db_session, user, credits="0")

    with pytest.raises(UnfundedPaymentError):
        _service(db_session, fake_stripe).handle_payment_succeeded("pi_ref_1", amount_minor=999, currency="usd")

    db_session.refresh(intent)
    assert intent.status == PaymentIntentStatus.PENDING.value
    assert db_session.query(CreditTransaction).count() == 0


def test_failed_and_canceled_only_touch_pending_intents(db_session, users, fake_stripe):
    user, _ = users
    failed = _pending_intent(db_session, user, reference="pi_fail")
    canceled = _pending_intent(db_session, user, reference="pi_cancel")
    service = _service(db_session, fake_stripe)

    result = service.handle_payment_failed("pi_fail", "Your card was declined.")
    assert result.outcome == ReconciliationOutcome.RECORDED
    db_session.refresh(failed)
    assert failed.status == PaymentIntentStatus.FAILED.value
    assert failed.failure_reason == "Your card was declined."
    assert failed.failed_at is not None

    result = service.handle_payment_canceled("pi_cancel")
    assert result.outcome == ReconciliationOutcome.RECORDED
    db_session.refresh(canceled)
    assert canceled.status == PaymentIntentStatus.CANCELED.value

    again = service.handle_payment_canceled("pi_fail")
    assert again.outcome == ReconciliationOutcome.IGNORED
    db_session.refresh(failed)
    assert failed.status == PaymentIntentStatus.FAILED.value
    assert db_session.query(CreditTransaction).count() == 0


def test_failed_event_never_reopens_a_succeeded_intent(db_session, users, fake_stripe):
    user, _ = users
    intent = _pending_intent(db_session, user)
    service = _service(db_session, fake_stripe)
    service.handle_payment_succeeded("pi_ref_1")

    result = service.handle_payment_failed("pi_ref_1", "late failure")
    assert result.outcome == ReconciliationOutcome.IGNORED
    db_session.refresh(intent)
    assert intent.status == PaymentIntentStatus.SUCCEEDED.value
    assert CreditsService(db_session).get_balance(user.id) == Decimal("25.00")


def test_success_after_failed_attempt_is_credited(db_session, users, fake_stripe):
    user, _ = users
    _pending_intent(db_session, user)
    service = _service(db_session, fake_stripe)
    service.handle_payment_failed("pi_ref_1", "insufficient funds")

    result = service.handle_payment_succeeded("pi_ref_1")
    assert result.outcome == ReconciliationOutcome.APPLIED
    assert result.payment_intent.failure_reason is None


def test_success_after_cancel_is_not_credited(db_session, users, fake_stripe):
    user, _ = users
    _pending_intent(db_session, user)
    service = _service(db_session, fake_stripe)
    service.handle_payment_canceled("pi_ref_1")

    result = service.handle_payment_succeeded("pi_ref_1")
    assert result.outcome == ReconciliationOutcome.IGNORED
    assert db_session.query(CreditTransaction).count() == 0


def test_concurrent_success_deliveries_credit_once(db_session, other_session, users, fake_stripe, monkeypatch):
    user, _ = users
    _pending_intent(db_session, user)

    racer = _service(db_session, fake_stripe)
    rival = _service(other_session, fake_stripe)
    original_resolve = racer._resolve
    raced = {"done": False}

    def _resolve_then_lose_race(reference, local_intent_id):
        intent = original_resolve(reference, local_intent_id)
        if not raced["done"]:
            raced["done"] = True
            assert rival.handle_payment_succeeded(reference).outcome == ReconciliationOutcome.APPLIED
        return intent

    monkeypatch.setattr(racer, "_resolve", _resolve_then_lose_race)

    result = racer.handle_payment_succeeded("pi_ref_1")

    assert result.outcome == ReconciliationOutcome.DUPLICATE
    assert len(_purchases(db_session, user.id)) == 1
    assert CreditsService(db_session).get_balance(user.id) == Decimal("25.00")


def test_get_payment_status_is_scoped_to_owner(db_session, users, fake_stripe):
    user_a, user_b = users
    fake_stripe.intents["pi_ref_1"] = {"id": "pi_ref_1", "status": "processing"}
    _pending_intent(db_session, user_a)
    service = _service(db_session, fake_stripe)

    status = service.get_payment_status(user_a, "pi_ref_1")
    assert status.payment_intent.status == PaymentIntentStatus.PENDING.value
    assert status.gateway_status == "processing"

    with pytest.raises(UnknownPaymentReferenceError):
        service.get_payment_status(user_b, "pi_ref_1")


def test_refund_goes_through_gateway_and_leaves_ledger_alone(db_session, users, fake_stripe):
    user, _ = users
    intent = _pending_intent(db_session, user)
    service = _service(db_session, fake_stripe)

    with pytest.raises(PaymentStateError):
        service.refund_payment("pi_ref_1")

    service.handle_payment_succeeded("pi_ref_1")
    refund = service.refund_payment("pi_ref_1", amount=Decimal("5.00"), reason="requested_by_customer")

    assert refund["id"] == "re_1"
    assert fake_stripe.refunds[0]["amount"] == 500
    assert fake_stripe.refunds[0]["payment_intent"] == "pi_ref_1"
    db_session.refresh(intent)
    assert intent.gateway_metadata["refunds"][0]["id"] == "re_1"
    assert CreditsService(db_session).get_balance(user.id) == Decimal("25.00")

    with pytest.raises(PaymentStateError):
        service.refund_payment("pi_ref_1", amount=Decimal("50"))
    with pytest.raises(UnknownPaymentReferenceError):
        service.refund_payment("pi_missing")


def test_receipt_for_purchase_links_payment_and_gateway_receipt(db_session, users, packages, fake_stripe):
    user, _ = users
    intent = _pending_intent(db_session, user, package=packages["starter"])
    fake_stripe.intents["pi_ref_1"] = {
        "id": "pi_ref_1",
        "status": "succeeded",
        "latest_charge": {"id": "ch_1", "receipt_url": "https://pay.stripe.com/receipts/ch_1"},
    }
    service = _service(db_session, fake_stripe)
    transaction = service.handle_payment_succeeded("pi_ref_1").transaction

    receipt = service.get_receipt(user, transaction.id)

    assert receipt.transaction.id == transaction.id
    assert receipt.payment_intent.id == intent.id
    assert receipt.package.slug == "starter"
    assert receipt.receipt_url == "https://pay.stripe.com/receipts/ch_1"


def test_receipt_survives_gateway_outage_without_url(db_session, users, fake_stripe):
    user, _ = users
    _pending_intent(db_session, user)
    service = _service(db_session, fake_stripe)
    transaction = service.handle_payment_succeeded("pi_ref_1").transaction
    fake_stripe.fail_with = fake_stripe.StripeError("Stripe is down")

    receipt = service.get_receipt(user, transaction.id)

    assert receipt.receipt_url is None
    assert receipt.package is None
    assert receipt.payment_intent.external_reference == "pi_ref_1"


def test_receipt_is_only_for_own_purchases(db_session, users, fake_stripe):
    user_a, user_b = users
    _pending_intent(db_session, user_a)
    service = _service(db_session, fake_stripe)
    purchase = service.handle_payment_succeeded("pi_ref_1").transaction
    bonus = CreditsService(db_session).credit(user_a.id, Decimal("5"), "Welcome bonus", transaction_type="bonus")

    with pytest.raises(ReceiptUnavailableError):
        service.get_receipt(user_a, bonus.id)
    with pytest.raises(TransactionNotFoundError):
        service.get_receipt(user_b, purchase.id)
    with pytest.raises(TransactionNotFoundError):
        service.get_receipt(user_a, 999_999)


def test_receipt_needs_a_matching_payment_intent(db_session, users, fake_stripe):
    user, _ = users
    orphan = CreditsService(db_session).credit(
        user.id,
        Decimal("10"),
        "Imported purchase",
        TransactionMetadata(payment_reference="pi_gone"),
        transaction_type=TransactionType.PURCHASE,
    )

    with pytest.raises(ReceiptUnavailableError):
        _service(db_session, fake_stripe).get_receipt(user, orphan.id)
