from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import settings
from app.core.database import ConcurrentModificationError, run_atomic
from app.models.credit import CreditBalance, CreditTransaction, TransactionType
from app.services.provider_costs import ProviderCostTable, build_cost_table

logger = logging.getLogger(__name__)

T = TypeVar("T")

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
RECENT_TRANSACTION_COUNT = 5

CREDIT_TYPES = frozenset({TransactionType.PURCHASE, TransactionType.BONUS, TransactionType.REFUND})


class CreditsError(Exception):
    """Base error for ledger operations."""


class InsufficientCreditsError(CreditsError):
    def __init__(self, *, required: Decimal, available: Decimal) -> None:
        super().__init__(f"Insufficient credits. Required: {required}, Available: {available}")
        self.required = required
        self.available = available


class InvalidAmountError(CreditsError, ValueError):
    pass


class LedgerIntegrityError(CreditsError):
    """A write would break the ledger invariants; the unit is rolled back."""


class BalanceRowConflict(CreditsError):
    """Another request created the same user's balance row first."""


# Conflicts that are resolved by rolling back and re-running the unit.
RETRYABLE_CONFLICTS: tuple[type[BaseException], ...] = (StaleDataError, BalanceRowConflict)

__all__ = [
    "BalanceRowConflict",
    "ConcurrentModificationError",
    "CreditStatus",
    "CreditsError",
    "CreditsService",
    "InsufficientCreditsError",
    "InvalidAmountError",
    "LedgerIntegrityError",
    "ProviderUsage",
    "RETRYABLE_CONFLICTS",
    "TransactionMetadata",
    "UsageMetadata",
    "to_credits",
]


def to_credits(value: Any) -> Decimal:
    """Normalize a numeric value to a 2dp Decimal credit amount."""
    if value is None:
        return ZERO
    try:
        amount = Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError) as exc:
        raise InvalidAmountError(f"Invalid credit amount: {value!r}") from exc
    if not amount.is_finite():
        raise InvalidAmountError(f"Invalid credit amount: {value!r}")
    return amount


@dataclass(frozen=True)
class UsageMetadata:
    """What the caller knows about a metered provider call."""

    model: str | None = None
    tokens_used: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TransactionMetadata:
    provider: str | None = None
    model: str | None = None
    tokens_used: int | None = None
    payment_reference: str | None = None
    payment_method: str | None = None
    payment_status: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> dict[str, Any]:
        known = {
            "provider": self.provider,
            "model": self.model,
            "tokens_used": self.tokens_used,
            "payment_reference": self.payment_reference,
        }
        payload = {key: value for key, value in self.extra.items()}
        payload.update({key: value for key, value in known.items() if value is not None})
        return payload


@dataclass
class ProviderUsage:
    uses: int
    credits: Decimal


@dataclass
class CreditStatus:
    balance: Decimal
    total_purchased: Decimal
    total_used: Decimal
    total_uses: int
    recent_transactions: list[CreditTransaction]
    usage_breakdown: dict[str, ProviderUsage]


class CreditsService:
    """
    Owner of the credit ledger. Every balance change is one atomic unit:
    lock (or lazily create) the balance row, validate, write the new balance
    and append exactly one transaction row.

    Mutating calls commit by default. Pass `commit=False` to fold the change
    into a unit the caller commits itself (payment reconciliation does this);
    the caller then owns retries for RETRYABLE_CONFLICTS.
    """

    MAX_PAGE_SIZE = 200

    def __init__(
        self,
        db: Session,
        cost_table: ProviderCostTable | None = None,
        *,
        max_retries: int | None = None,
    ):
        self.db = db
        self.costs = cost_table or build_cost_table()
        self.max_retries = max_retries if max_retries is not None else settings.LEDGER_MAX_RETRIES

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_balance(self, user_id: int) -> Decimal:
        value = self.db.execute(
            select(CreditBalance.balance).where(CreditBalance.user_id == user_id)
        ).scalar_one_or_none()
        return to_credits(value or 0)

    def get_cost(self, provider_id: str) -> Decimal:
        return to_credits(self.costs.cost(provider_id))

    def has_sufficient_credits(self, user_id: int, provider_id: str) -> bool:
        return self.get_balance(user_id) >= self.get_cost(provider_id)

    def list_transactions(
        self,
        user_id: int,
        *,
        limit: int = 20,
        offset: int = 0,
        transaction_type: TransactionType | str | None = None,
    ) -> list[CreditTransaction]:
        normalized_limit = max(1, min(int(limit or 20), self.MAX_PAGE_SIZE))
        normalized_offset = max(0, int(offset or 0))
        query = select(CreditTransaction).where(CreditTransaction.user_id == user_id)
        if transaction_type:
            query = query.where(CreditTransaction.type == TransactionType(transaction_type).value)
        query = (
            query.order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .offset(normalized_offset)
            .limit(normalized_limit)
        )
        return list(self.db.execute(query).scalars().all())

    def get_status(self, user_id: int) -> CreditStatus:
        account = self.db.execute(
            select(CreditBalance).where(CreditBalance.user_id == user_id)
        ).scalars().first()
        if not account:
            return CreditStatus(
                balance=ZERO,
                total_purchased=ZERO,
                total_used=ZERO,
                total_uses=0,
                recent_transactions=[],
                usage_breakdown={},
            )

        rows = self.db.execute(
            select(
                CreditTransaction.ai_provider,
                func.count(CreditTransaction.id),
                func.coalesce(func.sum(CreditTransaction.amount), 0),
            )
            .where(
                CreditTransaction.user_id == user_id,
                CreditTransaction.type == TransactionType.USAGE.value,
            )
            .group_by(CreditTransaction.ai_provider)
        ).all()
        breakdown = {
            (provider or "unknown"): ProviderUsage(uses=int(uses), credits=abs(to_credits(total)))
            for provider, uses, total in rows
        }

        return CreditStatus(
            balance=to_credits(account.balance),
            total_purchased=to_credits(account.total_purchased),
            total_used=to_credits(account.total_used),
            total_uses=sum(item.uses for item in breakdown.values()),
            recent_transactions=self.list_transactions(user_id, limit=RECENT_TRANSACTION_COUNT),
            usage_breakdown=breakdown,
        )

    def count_usage_since(self, user_id: int, since: datetime) -> int:
        return int(
            self.db.execute(
                select(func.count(CreditTransaction.id)).where(
                    CreditTransaction.user_id == user_id,
                    CreditTransaction.type == TransactionType.USAGE.value,
                    CreditTransaction.created_at >= since,
                )
            ).scalar_one()
        )

    def verify_history(self, user_id: int) -> list[str]:
        """
        Replay a user's transactions in creation order and report every break
        in the linear history or the balance invariant. Empty list means clean.
        """
        problems: list[str] = []
        transactions = self.db.execute(
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.id.asc())
        ).scalars().all()

        running = ZERO
        net_other = ZERO
        for txn in transactions:
            before = to_credits(txn.balance_before)
            after = to_credits(txn.balance_after)
            amount = to_credits(txn.amount)
            if before != running:
                problems.append(f"transaction {txn.id}: balance_before {before} != previous balance_after {running}")
            if after != before + amount:
                problems.append(f"transaction {txn.id}: balance_after {after} != {before} + {amount}")
            if after < 0:
                problems.append(f"transaction {txn.id}: negative balance {after}")
            if txn.type not in (TransactionType.PURCHASE.value, TransactionType.USAGE.value):
                net_other += amount
            running = after

        account = self.db.execute(
            select(CreditBalance).where(CreditBalance.user_id == user_id)
        ).scalars().first()
        if account is None:
            if transactions:
                problems.append("transactions exist without a balance row")
            return problems

        balance = to_credits(account.balance)
        if balance != running:
            problems.append(f"balance {balance} != last balance_after {running}")
        expected = to_credits(account.total_purchased) - to_credits(account.total_used) + net_other
        if balance != expected:
            problems.append(f"balance {balance} != purchased - used + other ({expected})")
        return problems

    def audit_ledgers(self, user_ids: list[int] | None = None) -> dict[int, list[str]]:
        """Run verify_history for every user with ledger activity; only users with problems are returned."""
        if user_ids is None:
            user_ids = sorted(
                set(self.db.execute(select(CreditBalance.user_id)).scalars().all())
                | set(self.db.execute(select(CreditTransaction.user_id).distinct()).scalars().all())
            )
        report: dict[int, list[str]] = {}
        for user_id in user_ids:
            problems = self.verify_history(user_id)
            if problems:
                report[user_id] = problems
                logger.error("credits.audit_failed", extra={"user_id": user_id, "problems": len(problems)})
        logger.info("credits.audit_completed", extra={"accounts": len(user_ids), "failed": len(report)})
        return report

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def deduct(
        self,
        user_id: int,
        provider_id: str,
        usage: UsageMetadata | None = None,
        *,
        commit: bool = True,
    ) -> CreditTransaction:
        entry = self.costs.get(provider_id)
        cost = to_credits(entry.cost)
        usage = usage or UsageMetadata()
        if not self.costs.is_known(provider_id):
            logger.warning(
                "credits.fallback_cost",
                extra={"user_id": user_id, "provider": entry.provider_id, "cost": str(cost)},
            )

        def _operation() -> CreditTransaction:
            account = self._lock_balance(user_id, create=True)
            before = to_credits(account.balance)
            if before < cost:
                raise InsufficientCreditsError(required=cost, available=before)

            account.balance = before - cost
            account.total_used = to_credits(account.total_used) + cost
            account.last_usage_at = self._now()
            metadata = TransactionMetadata(
                provider=entry.provider_id,
                model=usage.model or entry.model,
                tokens_used=usage.tokens_used,
                extra={**usage.extra, "cost_per_usage": str(cost)},
            )
            return self._append(
                account,
                TransactionType.USAGE,
                ZERO - cost,
                before,
                description=f"AI test generation using {entry.display_name}",
                metadata=metadata,
            )

        try:
            transaction = self._execute(_operation, commit=commit, label="credits.deduct")
        except InsufficientCreditsError as exc:
            logger.info(
                "credits.insufficient",
                extra={"user_id": user_id, "provider": entry.provider_id, "required": str(exc.required), "available": str(exc.available)},
            )
            raise

        logger.info(
            "credits.deducted",
            extra={"user_id": user_id, "provider": entry.provider_id, "cost": str(cost), "transaction_id": transaction.id},
        )
        return transaction

    def credit(
        self,
        user_id: int,
        amount: Decimal | int | float | str,
        description: str,
        metadata: TransactionMetadata | None = None,
        *,
        transaction_type: TransactionType | str = TransactionType.PURCHASE,
        commit: bool = True,
    ) -> CreditTransaction:
        txn_type = TransactionType(transaction_type)
        if txn_type not in CREDIT_TYPES:
            raise CreditsError(f"credit() does not record {txn_type.value} transactions")
        value = to_credits(amount)
        if value <= 0:
            raise InvalidAmountError(f"Credit amount must be positive, got {value}")

        def _operation() -> CreditTransaction:
            account = self._lock_balance(user_id, create=True)
            before = to_credits(account.balance)
            account.balance = before + value
            if txn_type == TransactionType.PURCHASE:
                account.total_purchased = to_credits(account.total_purchased) + value
                account.last_purchase_at = self._now()
            return self._append(
                account,
                txn_type,
                value,
                before,
                description=description,
                metadata=metadata or TransactionMetadata(),
            )

        transaction = self._execute(_operation, commit=commit, label=f"credits.{txn_type.value}")
        logger.info(
            "credits.credited",
            extra={"user_id": user_id, "type": txn_type.value, "amount": str(value), "transaction_id": transaction.id},
        )
        return transaction

    def adjust(
        self,
        user_id: int,
        amount: Decimal | int | float | str,
        description: str,
        metadata: TransactionMetadata | None = None,
        *,
        commit: bool = True,
    ) -> CreditTransaction:
        """Manual correction in either direction; never takes the balance below zero."""
        value = to_credits(amount)
        if value == 0:
            raise InvalidAmountError("Adjustment amount must be non-zero")

        def _operation() -> CreditTransaction:
            account = self._lock_balance(user_id, create=True)
            before = to_credits(account.balance)
            if before + value < 0:
                raise InsufficientCreditsError(required=abs(value), available=before)
            account.balance = before + value
            return self._append(
                account,
                TransactionType.ADJUSTMENT,
                value,
                before,
                description=description,
                metadata=metadata or TransactionMetadata(),
            )

        transaction = self._execute(_operation, commit=commit, label="credits.adjustment")
        logger.info(
            "credits.adjusted",
            extra={"user_id": user_id, "amount": str(value), "transaction_id": transaction.id},
        )
        return transaction

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _execute(self, operation: Callable[[], T], *, commit: bool, label: str) -> T:
        if not commit:
            return operation()
        return run_atomic(
            self.db,
            operation,
            attempts=self.max_retries,
            label=label,
            retry_on=RETRYABLE_CONFLICTS,
        )

    def _lock_balance(self, user_id: int, *, create: bool) -> CreditBalance | None:
        account = (
            self.db.execute(
                select(CreditBalance)
                .where(CreditBalance.user_id == user_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            .scalars()
            .first()
        )
        if account or not create:
            return account

        account = CreditBalance(user_id=user_id, balance=ZERO, total_purchased=ZERO, total_used=ZERO)
        self.db.add(account)
        try:
            self.db.flush()
        except IntegrityError as exc:
            raise BalanceRowConflict(f"Balance row for user {user_id} created concurrently") from exc
        return account

    def _append(
        self,
        account: CreditBalance,
        txn_type: TransactionType,
        amount: Decimal,
        before: Decimal,
        *,
        description: str,
        metadata: TransactionMetadata,
    ) -> CreditTransaction:
        after = to_credits(account.balance)
        self._check_invariants(txn_type, amount, before, after)

        text = (description or "").strip() or txn_type.value.capitalize()
        payload = metadata.to_json()
        transaction = CreditTransaction(
            user_id=account.user_id,
            type=txn_type.value,
            amount=amount,
            balance_before=before,
            balance_after=after,
            description=text[:255],
            metadata_=payload or None,
            payment_intent_id=metadata.payment_reference,
            payment_method=metadata.payment_method,
            payment_status=metadata.payment_status,
            ai_provider=metadata.provider,
            ai_model=metadata.model,
            tokens_used=metadata.tokens_used,
        )
        self.db.add(transaction)
        # Flushing here surfaces version conflicts on the balance row inside the unit.
        self.db.flush()
        return transaction

    def _check_invariants(
        self,
        txn_type: TransactionType,
        amount: Decimal,
        before: Decimal,
        after: Decimal,
    ) -> None:
        if after != before + amount:
            raise LedgerIntegrityError(f"balance_after {after} != balance_before {before} + amount {amount}")
        if after < 0:
            raise LedgerIntegrityError(f"balance would become negative ({after})")
        if txn_type == TransactionType.USAGE and amount > 0:
            raise LedgerIntegrityError("usage transactions must not add credits")
        if txn_type in CREDIT_TYPES and amount <= 0:
            raise LedgerIntegrityError(f"{txn_type.value} transactions must add credits")
        if txn_type == TransactionType.ADJUSTMENT and amount == 0:
            raise LedgerIntegrityError("adjustments must change the balance")

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)


def format_credits(value: Decimal | int | float) -> str:
    amount = to_credits(value)
    sign = "+" if amount > 0 else ""
    return f"{sign}{amount:.2f}"
