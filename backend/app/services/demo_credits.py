from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import run_atomic
from app.models.demo_credit import DemoCredit

logger = logging.getLogger(__name__)


class DemoRowConflict(Exception):
    """Another request created the same user's allotment row first."""


@dataclass(frozen=True)
class DemoCreditStatus:
    has_credits: bool
    remaining: int
    total: int
    used: int


class DemoCreditsService:
    """
    Free evaluation generations. Each successful generation without a private
    key spends one, whatever the provider costs; the credit ledger is not
    touched. The limit is fixed on the row when it is first created.
    """

    def __init__(self, db: Session, *, max_retries: int | None = None):
        self.db = db
        self.max_retries = max_retries if max_retries is not None else settings.LEDGER_MAX_RETRIES

    def get_status(self, user_id: int) -> DemoCreditStatus:
        record = self.db.execute(
            select(DemoCredit)
            .where(DemoCredit.user_id == user_id)
            .execution_options(populate_existing=True)
        ).scalars().first()
        if record is None:
            total = settings.DEMO_CREDITS_LIMIT
            return DemoCreditStatus(has_credits=total > 0, remaining=total, total=total, used=0)
        return DemoCreditStatus(
            has_credits=record.has_credits_remaining,
            remaining=record.remaining,
            total=int(record.credits_limit),
            used=int(record.credits_used),
        )

    def has_credits_remaining(self, user_id: int) -> bool:
        return self.get_status(user_id).has_credits

    def use_credit(self, user_id: int) -> bool:
        """Spend one generation. Returns False when nothing is left to spend."""
        if not self.has_credits_remaining(user_id):
            return False

        def _operation() -> bool:
            self._get_or_create(user_id)
            now = datetime.now(timezone.utc)
            result = self.db.execute(
                update(DemoCredit)
                .where(
                    DemoCredit.user_id == user_id,
                    DemoCredit.credits_used < DemoCredit.credits_limit,
                )
                .values(
                    credits_used=DemoCredit.credits_used + 1,
                    first_used_at=func.coalesce(DemoCredit.first_used_at, now),
                    last_used_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

        spent = run_atomic(
            self.db,
            _operation,
            attempts=self.max_retries,
            label="demo_credits.use",
            retry_on=(DemoRowConflict,),
        )
        logger.info("demo_credits.used" if spent else "demo_credits.exhausted", extra={"user_id": user_id})
        return spent

    def _get_or_create(self, user_id: int) -> DemoCredit:
        record = self.db.execute(
            select(DemoCredit).where(DemoCredit.user_id == user_id)
        ).scalars().first()
        if record:
            return record

        record = DemoCredit(user_id=user_id, credits_used=0, credits_limit=settings.DEMO_CREDITS_LIMIT)
        self.db.add(record)
        try:
            self.db.flush()
        except IntegrityError as exc:
            raise DemoRowConflict(f"Demo credit row for user {user_id} created concurrently") from exc
        return record
