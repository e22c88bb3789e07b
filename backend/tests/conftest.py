import json
import os
from decimal import Decimal
from types import SimpleNamespace

# Ensure JWT_SECRET exists before importing app.main (it calls require_jwt_secret() at import time).
os.environ.setdefault("JWT_SECRET", "test_jwt_secret")

from contextlib import contextmanager

import pytest
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.base import Base
from app.core import config as app_config

# Import models so they register with SQLAlchemy metadata.
from app.models.user import User  # noqa: F401
from app.models.api_token import UserApiToken  # noqa: F401
from app.models.credit import CreditBalance, CreditTransaction  # noqa: F401
from app.models.demo_credit import DemoCredit  # noqa: F401
from app.models.payment import CreditPackage, PaymentIntent  # noqa: F401

from app.core.database import get_db
from app.dependencies.auth import get_current_user
from app.services import stripe as stripe_module
from app.services.credits import CreditsService
from app.services.packages import PackagesService
from app.services.provider_costs import ProviderCostTable


@pytest.fixture(scope="session")
def db_engine():
    # In-memory SQLite for fast, isolated tests.
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture()
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture()
def db_session(db_engine, session_factory):
    # Important: because we use an in-memory SQLite DB with StaticPool, the DB
    # persists across tests. Reset schema per test to avoid cross-test coupling.
    Base.metadata.drop_all(bind=db_engine)
    Base.metadata.create_all(bind=db_engine)

    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def other_session(db_session, session_factory):
    """A second session on the same database, standing in for a concurrent request."""
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def _reset_mutable_settings():
    """
    Tests sometimes tweak global settings (app_config.settings.*). Because that object is
    process-global, we must restore values after each test to avoid cross-test coupling.
    """
    keys = [
        "STRIPE_SECRET_KEY",
        "STRIPE_PUBLISHABLE_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "PROVIDER_COSTS",
        "PROVIDER_DEFAULT_COST",
        "LEDGER_MAX_RETRIES",
        "API_TOKEN_ENCRYPTION_KEY",
        "AI_MAX_RETRIES",
        "DEMO_CREDITS_LIMIT",
    ]
    original = {k: getattr(app_config.settings, k) for k in keys}
    app_config.settings.PROVIDER_COSTS = {}
    app_config.settings.PROVIDER_DEFAULT_COST = Decimal("1.0")
    app_config.settings.LEDGER_MAX_RETRIES = 3
    # Paid-credit tests assume no free allotment; demo tests opt in.
    app_config.settings.DEMO_CREDITS_LIMIT = 0
    app_config.settings.API_TOKEN_ENCRYPTION_KEY = Fernet.generate_key().decode()
    try:
        yield
    finally:
        for k, v in original.items():
            setattr(app_config.settings, k, v)


@pytest.fixture()
def app(db_session):
    # Ensure settings has a JWT secret even if imported earlier.
    app_config.settings.JWT_SECRET = app_config.settings.JWT_SECRET or "test_jwt_secret"

    import app.main as main

    fastapi_app = main.app

    def override_get_db():
        yield db_session
    fastapi_app.dependency_overrides[get_db] = override_get_db
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture()
def users(db_session):
    """
    Two distinct active users for ownership / isolation tests.
    """
    user_a = User(email="test@example.com", name="Test User", is_active=True)
    user_b = User(email="other@example.com", name="Other User", is_active=True)
    db_session.add_all([user_a, user_b])
    db_session.commit()
    db_session.refresh(user_a)
    db_session.refresh(user_b)
    return user_a, user_b


@pytest.fixture()
def admin_user(db_session):
    admin = User(email="admin@example.com", name="Admin", is_active=True, is_admin=True)
    db_session.add(admin)
    db_session.commit()
    db_session.refresh(admin)
    return admin


@pytest.fixture()
def client(app, users):
    """
    Default client authenticated as user_a.
    """
    user_a, _ = users
    app.dependency_overrides[get_current_user] = lambda: user_a
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.pop(get_current_user, None)


@pytest.fixture()
def anonymous_client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def client_for(app):
    """
    Context manager to create a client authenticated as an arbitrary user.

    Usage:
        with client_for(user) as c:
            ...
    """

    @contextmanager
    def _client_for(user: User):
        app.dependency_overrides[get_current_user] = lambda: user
        with TestClient(app) as c:
            yield c
        app.dependency_overrides.pop(get_current_user, None)

    return _client_for


@pytest.fixture()
def cost_table():
    return ProviderCostTable()


@pytest.fixture()
def credits_service(db_session, cost_table):
    return CreditsService(db_session, cost_table)


@pytest.fixture()
def fund(db_session, cost_table):
    """Give a user a starting balance through a normal bonus credit."""

    def _fund(user, amount) -> None:
        CreditsService(db_session, cost_table).credit(user.id, Decimal(str(amount)), "Test funding", transaction_type="bonus")

    return _fund


@pytest.fixture()
def packages(db_session):
    PackagesService(db_session).seed_defaults()
    rows = db_session.query(CreditPackage).all()
    return {row.slug: row for row in rows}


class _FakeStripe:
    """Records SDK calls; mirrors the parts of the stripe module the app touches."""

    class StripeError(Exception):
        pass

    class SignatureVerificationError(StripeError):
        pass

    def __init__(self) -> None:
        self.api_key = None
        self.customers: list[dict] = []
        self.intents: dict[str, dict] = {}
        self.refunds: list[dict] = []
        self.retrievals: list[tuple[str, dict]] = []
        self.fail_with: Exception | None = None
        self.Customer = SimpleNamespace(create=self._create_customer)
        self.PaymentIntent = SimpleNamespace(create=self._create_intent, retrieve=self._retrieve_intent)
        self.Refund = SimpleNamespace(create=self._create_refund)
        self.Webhook = SimpleNamespace(construct_event=self._construct_event)

    def _maybe_fail(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def _create_customer(self, **kwargs):
        self._maybe_fail()
        customer = {"id": f"cus_{len(self.customers) + 1}", **kwargs}
        self.customers.append(customer)
        return customer

    def _create_intent(self, **kwargs):
        self._maybe_fail()
        reference = f"pi_test_{len(self.intents) + 1}"
        intent = {
            "id": reference,
            "client_secret": f"{reference}_secret",
            "status": "requires_payment_method",
            **kwargs,
        }
        self.intents[reference] = intent
        return intent

    def _retrieve_intent(self, reference, **kwargs):
        self._maybe_fail()
        self.retrievals.append((reference, kwargs))
        return self.intents[reference]

    def _create_refund(self, **kwargs):
        self._maybe_fail()
        refund = {"id": f"re_{len(self.refunds) + 1}", "status": "succeeded", **kwargs}
        self.refunds.append(refund)
        return refund

    def _construct_event(self, payload, sig_header, secret):
        if sig_header != "valid":
            raise self.SignatureVerificationError("No signatures found matching the expected signature")
        return json.loads(payload)


@pytest.fixture()
def fake_stripe(monkeypatch):
    fake = _FakeStripe()
    monkeypatch.setattr(stripe_module, "stripe", fake)
    app_config.settings.STRIPE_SECRET_KEY = "sk_test"
    app_config.settings.STRIPE_WEBHOOK_SECRET = "whsec_test"
    return fake
