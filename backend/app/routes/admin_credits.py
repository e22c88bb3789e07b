from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.dependencies.auth import require_admin_user
from app.models.credit import TransactionType
from app.models.user import User
from app.schemas.billing import (
    AdminAdjustIn,
    AdminBonusIn,
    CreditTransactionOut,
    RefundIn,
    RefundOut,
)
from app.services.credits import CreditsService, InsufficientCreditsError, InvalidAmountError, TransactionMetadata
from app.services.payments import PaymentStateError, PaymentsService, UnknownPaymentReferenceError
from app.services.stripe import StripeServiceError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


def _require_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


@router.post(
    "/credits/{user_id}/adjust",
    response_model=CreditTransactionOut,
    status_code=status.HTTP_201_CREATED,
)
def adjust_credits(
    user_id: int,
    payload: AdminAdjustIn,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin_user),
) -> CreditTransactionOut:
    _require_user(db, user_id)
    try:
        transaction = CreditsService(db).adjust(
            user_id,
            payload.amount,
            payload.description,
            TransactionMetadata(extra={"admin_user_id": admin.id}),
        )
    except InsufficientCreditsError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except InvalidAmountError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    logger.info("admin.credits_adjusted", extra={"admin_user_id": admin.id, "user_id": user_id})
    return CreditTransactionOut.model_validate(transaction)


@router.post(
    "/credits/{user_id}/bonus",
    response_model=CreditTransactionOut,
    status_code=status.HTTP_201_CREATED,
)
def grant_bonus_credits(
    user_id: int,
    payload: AdminBonusIn,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin_user),
) -> CreditTransactionOut:
    _require_user(db, user_id)
    try:
        transaction = CreditsService(db).credit(
            user_id,
            payload.amount,
            payload.description,
            TransactionMetadata(extra={"admin_user_id": admin.id}),
            transaction_type=TransactionType.BONUS,
        )
    except InvalidAmountError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    logger.info("admin.credits_bonus", extra={"admin_user_id": admin.id, "user_id": user_id})
    return CreditTransactionOut.model_validate(transaction)


@router.post("/payments/{reference}/refund", response_model=RefundOut)
def refund_payment(
    reference: str,
    payload: RefundIn,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin_user),
) -> RefundOut:
    try:
        refund = PaymentsService(db).refund_payment(reference, amount=payload.amount, reason=payload.reason)
    except UnknownPaymentReferenceError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found") from exc
    except PaymentStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except StripeServiceError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    logger.info("admin.payment_refunded", extra={"admin_user_id": admin.id, "external_reference": reference})
    return RefundOut(refund_id=refund.get("id"), status=refund.get("status"), amount_minor=refund.get("amount"))
