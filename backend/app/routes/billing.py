from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import get_db
from app.dependencies.auth import get_current_user
from app.models.credit import TransactionType
from app.models.user import User
from app.schemas.billing import (
    CreditBalanceOut,
    CreditPackageOut,
    CreditPackagesOut,
    CreditStatusOut,
    CreditTransactionOut,
    DemoCreditStatusOut,
    PaymentStatusOut,
    ProviderCostOut,
    ProviderUsageOut,
    PurchaseCreate,
    PurchaseOut,
    ReceiptOut,
)
from app.services.credits import CreditsService, format_credits
from app.services.demo_credits import DemoCreditsService
from app.services.packages import PackagesService
from app.services.payments import (
    PackageUnavailableError,
    PaymentsService,
    ReceiptUnavailableError,
    TransactionNotFoundError,
    UnknownPaymentReferenceError,
)
from app.services.stripe import StripeServiceError

router = APIRouter(prefix="/billing", tags=["billing"])


@router.get("/credits/balance", response_model=CreditBalanceOut)
def get_credit_balance(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> CreditBalanceOut:
    balance = CreditsService(db).get_balance(user.id)
    return CreditBalanceOut(balance=balance, formatted_balance=f"{format_credits(balance).lstrip('+')} credits")


@router.get("/credits/status", response_model=CreditStatusOut)
def get_credit_status(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> CreditStatusOut:
    status_ = CreditsService(db).get_status(user.id)
    return CreditStatusOut(
        balance=status_.balance,
        total_purchased=status_.total_purchased,
        total_used=status_.total_used,
        total_uses=status_.total_uses,
        recent_transactions=[CreditTransactionOut.model_validate(txn) for txn in status_.recent_transactions],
        usage_breakdown={
            provider: ProviderUsageOut(uses=usage.uses, credits=usage.credits)
            for provider, usage in status_.usage_breakdown.items()
        },
    )


@router.get("/credits/transactions", response_model=list[CreditTransactionOut])
def list_credit_transactions(
    limit: int = Query(20, ge=1, le=CreditsService.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    transaction_type: TransactionType | None = Query(None, alias="type"),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> list[CreditTransactionOut]:
    transactions = CreditsService(db).list_transactions(
        user.id,
        limit=limit,
        offset=offset,
        transaction_type=transaction_type,
    )
    return [CreditTransactionOut.model_validate(txn) for txn in transactions]


@router.get("/credits/transactions/{transaction_id}/receipt", response_model=ReceiptOut)
def get_transaction_receipt(
    transaction_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> ReceiptOut:
    try:
        receipt = PaymentsService(db).get_receipt(user, transaction_id)
    except TransactionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Transaction not found") from exc
    except ReceiptUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    intent = receipt.payment_intent
    return ReceiptOut(
        transaction=CreditTransactionOut.model_validate(receipt.transaction),
        package=CreditPackageOut.model_validate(receipt.package) if receipt.package else None,
        external_reference=intent.external_reference,
        amount=intent.amount,
        currency=intent.currency,
        paid_at=intent.completed_at,
        receipt_url=receipt.receipt_url,
    )


@router.get("/credits/demo", response_model=DemoCreditStatusOut)
def get_demo_credit_status(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> DemoCreditStatusOut:
    status_ = DemoCreditsService(db).get_status(user.id)
    return DemoCreditStatusOut(
        has_credits=status_.has_credits,
        remaining=status_.remaining,
        total=status_.total,
        used=status_.used,
    )



@router.get("/packages", response_model=CreditPackagesOut)
def list_credit_packages(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> CreditPackagesOut:
    service = PackagesService(db)
    recommended = service.recommend(user.id)
    return CreditPackagesOut(
        packages=[CreditPackageOut.model_validate(package) for package in service.list_active()],
        recommended_slug=recommended.slug if recommended else None,
    )


@router.get("/provider-costs", response_model=list[ProviderCostOut])
def list_provider_costs(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),  # noqa: ARG001
) -> list[ProviderCostOut]:
    table = CreditsService(db).costs
    return [ProviderCostOut.model_validate(entry) for entry in table.all()]


@router.post("/purchase", response_model=PurchaseOut, status_code=status.HTTP_201_CREATED)
def create_purchase(
    payload: PurchaseCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> PurchaseOut:
    service = PaymentsService(db)
    try:
        purchase = service.create_purchase(user, payload.package_id)
    except PackageUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except StripeServiceError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

    return PurchaseOut(
        payment_intent_id=purchase.payment_intent_id,
        external_reference=purchase.external_reference,
        client_secret=purchase.client_secret,
        publishable_key=settings.STRIPE_PUBLISHABLE_KEY or None,
        amount=purchase.amount,
        currency=purchase.currency,
        credits=purchase.credits,
        package=CreditPackageOut.model_validate(purchase.package),
    )


@router.get("/payments/{reference}", response_model=PaymentStatusOut)
def get_payment_status(
    reference: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> PaymentStatusOut:
    try:
        result = PaymentsService(db).get_payment_status(user, reference)
    except UnknownPaymentReferenceError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found") from exc

    intent = result.payment_intent
    return PaymentStatusOut(
        external_reference=intent.external_reference,
        status=intent.status,
        gateway_status=result.gateway_status,
        amount=intent.amount,
        currency=intent.currency,
        credits_to_add=intent.credits_to_add,
        completed_at=intent.completed_at,
        failed_at=intent.failed_at,
        failure_reason=intent.failure_reason,
    )
