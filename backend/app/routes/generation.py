from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.dependencies.auth import get_current_user
from app.models.user import User
from app.schemas.generation import GenerateTestsIn, GenerateTestsOut
from app.services.ai_providers import AIProviderError
from app.services.api_tokens import ApiTokenError
from app.services.credits import InsufficientCreditsError
from app.services.generation import GenerationError, GenerationService

router = APIRouter(prefix="/tests", tags=["test-generation"])


@router.post("/generate", response_model=GenerateTestsOut)
def generate_tests(
    payload: GenerateTestsIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> GenerateTestsOut:
    service = GenerationService(db)
    try:
        result = service.generate(user, payload.plugin_code, payload.provider, payload.framework)
    except InsufficientCreditsError as exc:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "message": "You don't have enough credits for this provider. Buy credits or add your own API key.",
                "details": {"required": str(exc.required), "available": str(exc.available)},
            },
        ) from exc
    except GenerationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except ApiTokenError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except AIProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="The AI provider failed to generate tests. You were not charged.",
        ) from exc

    return GenerateTestsOut(
        tests=result.tests,
        provider=result.provider,
        model=result.model,
        framework=result.framework,
        tokens_used=result.tokens_used,
        metered=result.metered,
        funding=result.funding.value,
        credits_charged=result.credits_charged,
        balance_after=result.balance_after,
        transaction_id=result.transaction_id,
        demo_credits_remaining=result.demo_credits_remaining,
    )
