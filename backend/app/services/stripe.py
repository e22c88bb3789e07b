from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import stripe
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.user import User

logger = logging.getLogger(__name__)

# Currencies Stripe charges without a minor unit.
ZERO_DECIMAL_CURRENCIES = frozenset({"bif", "clp", "jpy", "krw", "pyg", "vnd", "xaf", "xof"})

EVENT_SUCCEEDED = "payment_intent.succeeded"
EVENT_FAILED = "payment_intent.payment_failed"
EVENT_CANCELED = "payment_intent.canceled"
HANDLED_EVENT_TYPES = frozenset({EVENT_SUCCEEDED, EVENT_FAILED, EVENT_CANCELED})

LOCAL_INTENT_METADATA_KEY = "local_payment_intent_id"


class StripeServiceError(Exception):
    """Base error for Stripe service operations."""


class StripeWebhookError(StripeServiceError):
    """Raised when a webhook payload cannot be verified or understood."""


@dataclass(frozen=True)
class PaymentEvent:
    """The parts of a PaymentIntent webhook event that reconciliation needs."""

    event_id: str | None
    event_type: str
    external_reference: str
    local_intent_id: int | None = None
    amount_minor: int | None = None
    currency: str | None = None
    failure_reason: str | None = None


def to_minor_units(amount: Decimal, currency: str) -> int:
    value = Decimal(str(amount))
    if (currency or "").lower() in ZERO_DECIMAL_CURRENCIES:
        return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class StripeService:
    """
    Stripe integration facade. All direct Stripe SDK calls live here.

    Responsibilities:
    - Manage customers tied to application users
    - Create, fetch and refund PaymentIntents
    - Verify webhook signatures and pull PaymentIntent events apart

    Ledger writes are not made here; see PaymentsService.
    """

    def __init__(self, db: Session, stripe_client: Any | None = None):
        self.db = db
        self.currency = (settings.STRIPE_DEFAULT_CURRENCY or "usd").lower()
        self.stripe = stripe_client or stripe
        if settings.STRIPE_SECRET_KEY:
            self.stripe.api_key = settings.STRIPE_SECRET_KEY

    # ------------------------------------------------------------------
    # Customers and payment intents
    # ------------------------------------------------------------------
    def ensure_customer(self, user: User) -> str:
        """Create or reuse the Stripe customer id stored on the user."""
        self._require_configured()

        db_user = self.db.get(User, user.id)
        if not db_user:
            raise StripeServiceError("User not found in session")

        if db_user.stripe_customer_id:
            return db_user.stripe_customer_id

        customer = self._call(
            "customer.create",
            self.stripe.Customer.create,
            email=db_user.email,
            name=db_user.name,
            metadata={"user_id": str(db_user.id)},
        )
        customer_id = customer.get("id")
        if not customer_id:
            raise StripeServiceError("Stripe did not return a customer id")
        db_user.stripe_customer_id = customer_id
        self.db.commit()
        self.db.refresh(db_user)
        logger.info("stripe.customer_linked", extra={"user_id": db_user.id, "customer_id": customer_id})
        return customer_id

    def create_payment_intent(
        self,
        *,
        amount_minor: int,
        currency: str,
        metadata: dict[str, str],
        description: str,
        customer: str | None = None,
    ) -> Any:
        self._require_configured()
        if amount_minor <= 0:
            raise StripeServiceError("Payment amount must be positive")
        params: dict[str, Any] = {
            "amount": amount_minor,
            "currency": (currency or self.currency).lower(),
            "metadata": metadata,
            "description": description,
            "automatic_payment_methods": {"enabled": True},
        }
        if customer:
            params["customer"] = customer
        intent = self._call("payment_intent.create", self.stripe.PaymentIntent.create, **params)
        if not intent.get("id") or not intent.get("client_secret"):
            raise StripeServiceError("Stripe did not return a usable payment intent")
        logger.info(
            "stripe.payment_intent_created",
            extra={"external_reference": intent.get("id"), "amount_minor": amount_minor},
        )
        return intent

    def retrieve_payment_intent(self, reference: str) -> Any:
        self._require_configured()
        return self._call("payment_intent.retrieve", self.stripe.PaymentIntent.retrieve, reference)

    def get_receipt_url(self, reference: str) -> str | None:
        """Hosted receipt of the intent's latest charge, if Stripe has issued one."""
        self._require_configured()
        intent = self._call(
            "payment_intent.retrieve",
            self.stripe.PaymentIntent.retrieve,
            reference,
            expand=["latest_charge"],
        )
        charge = intent.get("latest_charge")
        if not charge or isinstance(charge, str):
            return None
        return charge.get("receipt_url")

    def create_refund(self, reference: str, *, amount_minor: int | None = None, reason: str | None = None) -> Any:
        self._require_configured()
        params: dict[str, Any] = {"payment_intent": reference}
        if amount_minor is not None:
            params["amount"] = amount_minor
        if reason:
            params["reason"] = reason
        refund = self._call("refund.create", self.stripe.Refund.create, **params)
        logger.info(
            "stripe.refund_created",
            extra={"external_reference": reference, "refund_id": refund.get("id")},
        )
        return refund

    # ------------------------------------------------------------------
    # Webhook handling
    # ------------------------------------------------------------------
    def parse_event(self, payload: bytes, signature: str | None) -> Any:
        """Validate webhook signature and deserialize the event."""
        if not settings.STRIPE_WEBHOOK_SECRET:
            raise StripeWebhookError("Stripe webhook secret is not configured")
        if not signature:
            raise StripeWebhookError("Missing Stripe-Signature header")
        try:
            return self.stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=settings.STRIPE_WEBHOOK_SECRET,
            )
        except self.stripe.SignatureVerificationError as exc:
            raise StripeWebhookError(f"Invalid Stripe signature: {exc}") from exc
        except ValueError as exc:
            raise StripeWebhookError(f"Invalid Stripe payload: {exc}") from exc

    def describe_event(self, event: Any) -> PaymentEvent | None:
        """
        Pull a PaymentIntent event apart. Returns None for event types that do
        not touch payments; raises StripeWebhookError when a handled type is
        missing the fields reconciliation depends on.
        """
        event_type = event.get("type")
        if not event_type:
            raise StripeWebhookError("Stripe event missing type")
        if event_type not in HANDLED_EVENT_TYPES:
            return None

        obj = (event.get("data") or {}).get("object") or {}
        reference = obj.get("id")
        if not reference:
            raise StripeWebhookError(f"{event_type} event missing payment intent id")

        metadata = obj.get("metadata") or {}
        local_intent_id = _parse_int(metadata.get(LOCAL_INTENT_METADATA_KEY))

        amount_minor = None
        currency = None
        failure_reason = None
        if event_type == EVENT_SUCCEEDED:
            raw_amount = obj.get("amount_received")
            if raw_amount is None:
                raw_amount = obj.get("amount")
            amount_minor = _parse_int(raw_amount)
            currency = (obj.get("currency") or "").lower() or None
        elif event_type == EVENT_FAILED:
            error = obj.get("last_payment_error") or {}
            failure_reason = error.get("message") or "Payment failed"
        elif event_type == EVENT_CANCELED:
            failure_reason = obj.get("cancellation_reason") or "Payment canceled"

        return PaymentEvent(
            event_id=event.get("id"),
            event_type=event_type,
            external_reference=reference,
            local_intent_id=local_intent_id,
            amount_minor=amount_minor,
            currency=currency,
            failure_reason=failure_reason,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _require_configured(self) -> None:
        if not settings.STRIPE_SECRET_KEY:
            raise StripeServiceError("Stripe secret key is not configured")

    def _call(self, operation: str, func, *args, **kwargs) -> Any:
        try:
            return func(*args, **kwargs)
        except self.stripe.StripeError as exc:
            logger.error("stripe.request_failed", extra={"operation": operation, "error": str(exc)})
            raise StripeServiceError(f"Stripe {operation} failed: {exc}") from exc


def _parse_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None

