from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError

from app.core import config as app_config
from app.models.credit import CreditTransaction
from app.models.demo_credit import DemoCredit
from app.services.demo_credits import DemoCreditsService


def test_status_without_row_reports_configured_allotment(db_session, users):
    app_config.settings.DEMO_CREDITS_LIMIT = 5
    user, _ = users

    status = DemoCreditsService(db_session).get_status(user.id)

    assert status.has_credits is True
    assert status.remaining == 5
    assert status.total == 5
    assert status.used == 0
    assert db_session.query(DemoCredit).count() == 0


def test_use_credit_until_exhausted(db_session, users):
    app_config.settings.DEMO_CREDITS_LIMIT = 2
    user, _ = users
    service = DemoCreditsService(db_session)

    assert service.use_credit(user.id) is True
    assert service.use_credit(user.id) is True
    assert service.use_credit(user.id) is False

    status = service.get_status(user.id)
    assert status.has_credits is False
    assert status.used == 2
    assert status.remaining == 0
    assert db_session.query(DemoCredit).count() == 1
    assert db_session.query(CreditTransaction).count() == 0


def test_first_and_last_use_are_recorded(db_session, users):
    app_config.settings.DEMO_CREDITS_LIMIT = 3
    user, _ = users
    service = DemoCreditsService(db_session)

    service.use_credit(user.id)
    record = db_session.query(DemoCredit).filter_by(user_id=user.id).one()
    db_session.refresh(record)
    first_used = record.first_used_at
    assert first_used is not None
    assert record.last_used_at is not None

    service.use_credit(user.id)
    db_session.refresh(record)
    assert record.first_used_at == first_used
    assert record.last_used_at >= first_used


def test_zero_limit_disables_allotment(db_session, users):
    app_config.settings.DEMO_CREDITS_LIMIT = 0
    user, _ = users
    service = DemoCreditsService(db_session)

    assert service.has_credits_remaining(user.id) is False
    assert service.use_credit(user.id) is False
    assert db_session.query(DemoCredit).count() == 0


def test_limit_is_fixed_when_row_is_created(db_session, users):
    app_config.settings.DEMO_CREDITS_LIMIT = 2
    user, _ = users
    service = DemoCreditsService(db_session)
    service.use_credit(user.id)

    app_config.settings.DEMO_CREDITS_LIMIT = 10

    status = service.get_status(user.id)
    assert status.total == 2
    assert status.remaining == 1


def test_allotments_are_per_user(db_session, users):
    app_config.settings.DEMO_CREDITS_LIMIT = 1
    user_a, user_b = users
    service = DemoCreditsService(db_session)

    assert service.use_credit(user_a.id) is True

    assert service.get_status(user_a.id).remaining == 0
    assert service.get_status(user_b.id).remaining == 1


def test_database_rejects_overspent_row(db_session, users):
    user, _ = users
    db_session.add(DemoCredit(user_id=user.id, credits_used=3, credits_limit=2))
    with pytest.raises(IntegrityError):
        db_session.flush()
    db_session.rollback()


def test_lost_row_creation_retries_on_existing_row(db_session, other_session, users, monkeypatch):
    app_config.settings.DEMO_CREDITS_LIMIT = 2
    user, _ = users
    raced = {"done": False}
    real_flush = db_session.flush

    def racing_flush(*args, **kwargs):
        if not raced["done"] and any(isinstance(obj, DemoCredit) for obj in db_session.new):
            raced["done"] = True
            assert DemoCreditsService(other_session).use_credit(user.id) is True
        return real_flush(*args, **kwargs)

    monkeypatch.setattr(db_session, "flush", racing_flush)

    assert DemoCreditsService(db_session).use_credit(user.id) is True

    assert raced["done"] is True
    status = DemoCreditsService(db_session).get_status(user.id)
    assert status.used == 2
    assert status.remaining == 0
    assert db_session.query(DemoCredit).count() == 1
