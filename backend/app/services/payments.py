from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import run_atomic
from app.models.credit import CreditTransaction, TransactionType
from app.models.payment import CreditPackage, PaymentIntent, PaymentIntentStatus
from app.models.user import User
from app.services.credits import RETRYABLE_CONFLICTS, CreditsService, TransactionMetadata, to_credits
from app.services.packages import PackagesService
from app.services.stripe import (
    LOCAL_INTENT_METADATA_KEY,
    StripeService,
    StripeServiceError,
    to_minor_units,
)

logger = logging.getLogger(__name__)

TEMP_REFERENCE_PREFIX = "temp_"
PAYMENT_METHOD = "stripe"


class PaymentsError(Exception):
    """Base error for purchase and reconciliation operations."""


class UnknownPaymentReferenceError(PaymentsError):
    def __init__(self, reference: str) -> None:
        super().__init__(f"Payment intent not found: {reference}")
        self.reference = reference


class PaymentEventMismatchError(PaymentsError):
    """The gateway reports a different amount or currency than was requested."""


class PackageUnavailableError(PaymentsError):
    pass


class UnfundedPaymentError(PaymentsError):
    """The payment intent carries no credits to apply."""


class PaymentStateError(PaymentsError):
    pass


class TransactionNotFoundError(PaymentsError):
    def __init__(self, transaction_id: int) -> None:
        super().__init__(f"Transaction not found: {transaction_id}")
        self.transaction_id = transaction_id


class ReceiptUnavailableError(PaymentsError):
    """Only purchases linked to a payment have a receipt."""


class ReconciliationOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    RECORDED = "recorded"
    IGNORED = "ignored"


@dataclass
class ReconciliationResult:
    outcome: ReconciliationOutcome
    payment_intent: PaymentIntent
    transaction: CreditTransaction | None = None

    @property
    def credits_applied(self) -> bool:
        return self.outcome == ReconciliationOutcome.APPLIED


@dataclass
class PurchaseInitiation:
    payment_intent_id: int
    external_reference: str
    client_secret: str
    amount: Decimal
    currency: str
    credits: Decimal
    package: CreditPackage


@dataclass
class PaymentStatus:
    payment_intent: PaymentIntent
    gateway_status: str | None


@dataclass
class Receipt:
    transaction: CreditTransaction
    payment_intent: PaymentIntent
    package: CreditPackage | None
    receipt_url: str | None


class PaymentsService:
    """
    Turns gateway payment outcomes into ledger credits.

    A PaymentIntent leaves `pending` exactly once. The one exception is
    `failed` -> `succeeded`: a failed attempt leaves the gateway intent open
    for another card. Canceled intents stay canceled.

    The success path re-reads the intent inside the same unit that credits
    the balance, so a replayed or concurrent delivery finds it already
    `succeeded` and becomes a no-op.
    """

    def __init__(
        self,
        db: Session,
        *,
        stripe_service: StripeService | None = None,
        credits_service: CreditsService | None = None,
        max_retries: int | None = None,
    ):
        self.db = db
        self.gateway = stripe_service or StripeService(db)
        self.credits = credits_service or CreditsService(db)
        self.max_retries = max_retries if max_retries is not None else settings.LEDGER_MAX_RETRIES

    # ------------------------------------------------------------------
    # Purchase initiation
    # ------------------------------------------------------------------
    def create_purchase(self, user: User, package_id: int | str) -> PurchaseInitiation:
        package = PackagesService(self.db).get_active(package_id)
        if not package:
            raise PackageUnavailableError(f"Credit package {package_id} is not available")
        if to_credits(package.total_credits) <= 0:
            raise PackageUnavailableError(f"Credit package {package_id} has no credits to sell")

        customer_id = self.gateway.ensure_customer(user)

        intent = PaymentIntent(
            user_id=user.id,
            credit_package_id=package.id,
            external_reference=f"{TEMP_REFERENCE_PREFIX}{uuid.uuid4().hex}",
            status=PaymentIntentStatus.PENDING.value,
            amount=package.price,
            currency=(package.currency or self.gateway.currency).lower(),
            credits_to_add=package.total_credits,
            gateway_metadata={"package_slug": package.slug, "customer_id": customer_id},
        )
        self.db.add(intent)
        self.db.commit()
        self.db.refresh(intent)

        try:
            gateway_intent = self.gateway.create_payment_intent(
                amount_minor=to_minor_units(intent.amount, intent.currency),
                currency=intent.currency,
                customer=customer_id,
                description=f"ThinkTest AI credits: {package.name}",
                metadata={
                    "user_id": str(user.id),
                    "package_id": str(package.id),
                    "credits": str(intent.credits_to_add),
                    LOCAL_INTENT_METADATA_KEY: str(intent.id),
                },
            )
        except StripeServiceError as exc:
            self._mark_terminal(intent.id, PaymentIntentStatus.FAILED, str(exc))
            raise

        reference = gateway_intent.get("id")

        def _adopt() -> PaymentIntent:
            current = self._lock_by_id(intent.id)
            # A webhook may already have adopted the reference.
            if current.external_reference.startswith(TEMP_REFERENCE_PREFIX):
                current.external_reference = reference
            return current

        intent = run_atomic(
            self.db,
            _adopt,
            attempts=self.max_retries,
            label="payments.adopt_reference",
            retry_on=RETRYABLE_CONFLICTS,
        )
        logger.info(
            "payments.purchase_created",
            extra={"user_id": user.id, "payment_intent_id": intent.id, "external_reference": reference},
        )
        return PurchaseInitiation(
            payment_intent_id=intent.id,
            external_reference=intent.external_reference,
            client_secret=gateway_intent.get("client_secret"),
            amount=Decimal(str(intent.amount)),
            currency=intent.currency,
            credits=Decimal(str(intent.credits_to_add)),
            package=package,
        )

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------
    def handle_payment_succeeded(
        self,
        external_reference: str,
        *,
        local_intent_id: int | None = None,
        amount_minor: int | None = None,
        currency: str | None = None,
    ) -> ReconciliationResult:
        def _operation() -> ReconciliationResult:
            intent = self._resolve(external_reference, local_intent_id)
            if intent.is_completed:
                return ReconciliationResult(ReconciliationOutcome.DUPLICATE, intent)
            if intent.status == PaymentIntentStatus.CANCELED.value:
                return ReconciliationResult(ReconciliationOutcome.IGNORED, intent)

            self._verify_amount(intent, amount_minor, currency)
            if to_credits(intent.credits_to_add) <= 0:
                raise UnfundedPaymentError(f"Payment intent {intent.id} has no credits to apply")

            intent.status = PaymentIntentStatus.SUCCEEDED.value
            intent.completed_at = self._now()
            intent.failure_reason = None

            package_name = intent.package.name if intent.package else "credits"
            transaction = self.credits.credit(
                intent.user_id,
                intent.credits_to_add,
                f"Credit purchase: {package_name}",
                TransactionMetadata(
                    payment_reference=intent.external_reference,
                    payment_method=PAYMENT_METHOD,
                    payment_status=PaymentIntentStatus.SUCCEEDED.value,
                    extra={"payment_intent_id": intent.id, "package_id": intent.credit_package_id},
                ),
                transaction_type=TransactionType.PURCHASE,
                commit=False,
            )
            return ReconciliationResult(ReconciliationOutcome.APPLIED, intent, transaction)

        result = self._run(_operation, "payments.succeeded", external_reference)
        if result.outcome == ReconciliationOutcome.DUPLICATE:
            logger.info(
                "payments.duplicate",
                extra={"external_reference": external_reference, "payment_intent_id": result.payment_intent.id},
            )
        elif result.outcome == ReconciliationOutcome.IGNORED:
            logger.error(
                "payments.succeeded_after_cancel",
                extra={"external_reference": external_reference, "payment_intent_id": result.payment_intent.id},
            )
        else:
            logger.info(
                "payments.succeeded",
                extra={
                    "external_reference": external_reference,
                    "user_id": result.payment_intent.user_id,
                    "credits": str(result.payment_intent.credits_to_add),
                    "transaction_id": result.transaction.id,
                },
            )
        return result

    def handle_payment_failed(
        self,
        external_reference: str,
        reason: str | None = None,
        *,
        local_intent_id: int | None = None,
    ) -> ReconciliationResult:
        return self._record_terminal(
            external_reference,
            PaymentIntentStatus.FAILED,
            reason or "Payment failed",
            local_intent_id,
        )

    def handle_payment_canceled(
        self,
        external_reference: str,
        reason: str | None = None,
        *,
        local_intent_id: int | None = None,
    ) -> ReconciliationResult:
        return self._record_terminal(
            external_reference,
            PaymentIntentStatus.CANCELED,
            reason or "Payment canceled",
            local_intent_id,
        )

    # ------------------------------------------------------------------
    # Queries and admin
    # ------------------------------------------------------------------
    def get_payment_status(self, user: User, external_reference: str) -> PaymentStatus:
        intent = self.db.execute(
            select(PaymentIntent).where(
                PaymentIntent.external_reference == external_reference,
                PaymentIntent.user_id == user.id,
            )
        ).scalars().first()
        if not intent:
            raise UnknownPaymentReferenceError(external_reference)

        gateway_status = None
        if not intent.external_reference.startswith(TEMP_REFERENCE_PREFIX):
            try:
                gateway_status = self.gateway.retrieve_payment_intent(intent.external_reference).get("status")
            except StripeServiceError as exc:
                logger.warning(
                    "payments.gateway_status_unavailable",
                    extra={"external_reference": external_reference, "error": str(exc)},
                )
        return PaymentStatus(payment_intent=intent, gateway_status=gateway_status)

    def get_receipt(self, user: User, transaction_id: int) -> Receipt:
        transaction = self.db.execute(
            select(CreditTransaction).where(
                CreditTransaction.id == transaction_id,
                CreditTransaction.user_id == user.id,
            )
        ).scalars().first()
        if not transaction:
            raise TransactionNotFoundError(transaction_id)
        if transaction.type != TransactionType.PURCHASE.value or not transaction.payment_intent_id:
            raise ReceiptUnavailableError("Receipt not available for this transaction")

        intent = self.db.execute(
            select(PaymentIntent).where(
                PaymentIntent.external_reference == transaction.payment_intent_id,
                PaymentIntent.user_id == user.id,
            )
        ).scalars().first()
        if not intent:
            raise ReceiptUnavailableError("Receipt not available for this transaction")

        receipt_url = None
        try:
            receipt_url = self.gateway.get_receipt_url(intent.external_reference)
        except StripeServiceError as exc:
            logger.warning(
                "payments.receipt_url_unavailable",
                extra={"transaction_id": transaction.id, "error": str(exc)},
            )
        return Receipt(
            transaction=transaction,
            payment_intent=intent,
            package=intent.package,
            receipt_url=receipt_url,
        )

    def refund_payment(
        self,
        external_reference: str,
        *,
        amount: Decimal | None = None,
        reason: str | None = None,
    ) -> Any:
        """Refund money through the gateway. Credits are not touched here."""
        intent = self.db.execute(
            select(PaymentIntent).where(PaymentIntent.external_reference == external_reference)
        ).scalars().first()
        if not intent:
            raise UnknownPaymentReferenceError(external_reference)
        if not intent.is_completed:
            raise PaymentStateError(f"Only succeeded payments can be refunded (status: {intent.status})")
        if amount is not None and (amount <= 0 or amount > Decimal(str(intent.amount))):
            raise PaymentStateError("Refund amount must be positive and no more than the amount paid")

        amount_minor = to_minor_units(amount, intent.currency) if amount is not None else None
        refund = self.gateway.create_refund(external_reference, amount_minor=amount_minor, reason=reason)

        def _note_refund() -> PaymentIntent:
            current = self._lock_by_id(intent.id)
            metadata = dict(current.gateway_metadata or {})
            refunds = list(metadata.get("refunds") or [])
            refunds.append({"id": refund.get("id"), "amount_minor": refund.get("amount"), "reason": reason})
            metadata["refunds"] = refunds
            current.gateway_metadata = metadata
            return current

        run_atomic(
            self.db,
            _note_refund,
            attempts=self.max_retries,
            label="payments.refund",
            retry_on=RETRYABLE_CONFLICTS,
        )
        logger.info(
            "payments.refunded",
            extra={"external_reference": external_reference, "refund_id": refund.get("id")},
        )
        return refund

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _record_terminal(
        self,
        external_reference: str,
        status: PaymentIntentStatus,
        reason: str,
        local_intent_id: int | None,
    ) -> ReconciliationResult:
        def _operation() -> ReconciliationResult:
            intent = self._resolve(external_reference, local_intent_id)
            if not intent.is_pending:
                return ReconciliationResult(ReconciliationOutcome.IGNORED, intent)
            self._apply_terminal(intent, status, reason)
            self.db.flush()
            return ReconciliationResult(ReconciliationOutcome.RECORDED, intent)

        result = self._run(_operation, f"payments.{status.value}", external_reference)
        logger.info(
            f"payments.{status.value}",
            extra={"external_reference": external_reference, "outcome": result.outcome.value, "reason": reason},
        )
        return result

    def _mark_terminal(self, intent_id: int, status: PaymentIntentStatus, reason: str) -> None:
        def _operation() -> None:
            intent = self._lock_by_id(intent_id)
            if intent.is_pending:
                self._apply_terminal(intent, status, reason)

        run_atomic(
            self.db,
            _operation,
            attempts=self.max_retries,
            label=f"payments.mark_{status.value}",
            retry_on=RETRYABLE_CONFLICTS,
        )
        logger.error(
            "payments.gateway_failed",
            extra={"payment_intent_id": intent_id, "reason": reason},
        )

    def _apply_terminal(self, intent: PaymentIntent, status: PaymentIntentStatus, reason: str) -> None:
        intent.status = status.value
        intent.failed_at = self._now()
        intent.failure_reason = reason[:1000]

    def _run(self, operation, label: str, external_reference: str) -> ReconciliationResult:
        try:
            return run_atomic(
                self.db,
                operation,
                attempts=self.max_retries,
                label=label,
                retry_on=RETRYABLE_CONFLICTS,
            )
        except UnknownPaymentReferenceError:
            logger.warning("payments.unknown_reference", extra={"external_reference": external_reference})
            raise

    def _resolve(self, external_reference: str, local_intent_id: int | None) -> PaymentIntent:
        intent = self.db.execute(
            select(PaymentIntent)
            .where(PaymentIntent.external_reference == external_reference)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().first()
        if intent:
            return intent

        if local_intent_id is not None:
            candidate = self._lock_by_id(local_intent_id, required=False)
            if candidate and candidate.external_reference.startswith(TEMP_REFERENCE_PREFIX):
                logger.info(
                    "payments.reference_adopted",
                    extra={"payment_intent_id": candidate.id, "external_reference": external_reference},
                )
                candidate.external_reference = external_reference
                return candidate

        raise UnknownPaymentReferenceError(external_reference)

    def _lock_by_id(self, intent_id: int, *, required: bool = True) -> PaymentIntent | None:
        intent = self.db.execute(
            select(PaymentIntent)
            .where(PaymentIntent.id == intent_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().first()
        if intent is None and required:
            raise PaymentsError(f"Payment intent {intent_id} disappeared")
        return intent

    def _verify_amount(self, intent: PaymentIntent, amount_minor: int | None, currency: str | None) -> None:
        if currency is not None and currency.lower() != (intent.currency or "").lower():
            raise PaymentEventMismatchError(
                f"Currency mismatch for {intent.external_reference}: {currency} != {intent.currency}"
            )
        if amount_minor is not None:
            expected = to_minor_units(intent.amount, intent.currency)
            if int(amount_minor) != expected:
                raise PaymentEventMismatchError(
                    f"Amount mismatch for {intent.external_reference}: {amount_minor} != {expected}"
                )

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)
