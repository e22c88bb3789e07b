from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.database import ConcurrentModificationError, get_db
from app.schemas.billing import WebhookAckOut
from app.services.credits import CreditsError
from app.services.payments import (
    PaymentEventMismatchError,
    PaymentsError,
    PaymentsService,
    ReconciliationResult,
    UnfundedPaymentError,
    UnknownPaymentReferenceError,
)
from app.services.stripe import (
    EVENT_CANCELED,
    EVENT_FAILED,
    PaymentEvent,
    StripeService,
    StripeWebhookError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing/stripe", tags=["billing"])


def _reconcile(service: PaymentsService, event: PaymentEvent) -> ReconciliationResult:
    if event.event_type == EVENT_FAILED:
        return service.handle_payment_failed(
            event.external_reference,
            event.failure_reason,
            local_intent_id=event.local_intent_id,
        )
    if event.event_type == EVENT_CANCELED:
        return service.handle_payment_canceled(
            event.external_reference,
            event.failure_reason,
            local_intent_id=event.local_intent_id,
        )
    return service.handle_payment_succeeded(
        event.external_reference,
        local_intent_id=event.local_intent_id,
        amount_minor=event.amount_minor,
        currency=event.currency,
    )


@router.post("/webhook", response_model=WebhookAckOut, status_code=status.HTTP_200_OK)
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
) -> WebhookAckOut:
    """
    Public endpoint; authenticity comes from the Stripe signature. Anything
    that returns 2xx is never redelivered, so only internal failures map to 5xx.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    gateway = StripeService(db)
    try:
        event = gateway.parse_event(payload, signature)
        payment_event = gateway.describe_event(event)
    except StripeWebhookError as exc:
        logger.warning("stripe.webhook_rejected", extra={"error": str(exc)})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    if payment_event is None:
        logger.info("stripe.webhook_ignored", extra={"event_type": event.get("type"), "event_id": event.get("id")})
        return WebhookAckOut(credits_applied=False, outcome="ignored")

    service = PaymentsService(db, stripe_service=gateway)
    try:
        result = _reconcile(service, payment_event)
    except UnknownPaymentReferenceError:
        return WebhookAckOut(credits_applied=False, outcome="unknown_reference")
    except (PaymentEventMismatchError, UnfundedPaymentError) as exc:
        logger.error(
            "stripe.webhook_mismatch",
            extra={"event_id": payment_event.event_id, "external_reference": payment_event.external_reference, "error": str(exc)},
        )
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except (PaymentsError, CreditsError, ConcurrentModificationError, SQLAlchemyError) as exc:
        logger.exception(
            "stripe.webhook_failed",
            extra={"event_id": payment_event.event_id, "external_reference": payment_event.external_reference},
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from exc

    return WebhookAckOut(credits_applied=result.credits_applied, outcome=result.outcome.value)
