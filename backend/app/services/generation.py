from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Callable

from sqlalchemy.orm import Session

from app.models.user import User
from app.services.ai_providers import AIProviderError, BaseProvider, ProviderResponse, get_provider
from app.services.api_tokens import ApiTokensService
from app.services.credits import CreditsService, InsufficientCreditsError, UsageMetadata
from app.services.demo_credits import DemoCreditsService

logger = logging.getLogger(__name__)

SUPPORTED_FRAMEWORKS = ("phpunit", "pest")
MAX_PLUGIN_CODE_CHARS = 200_000

SYSTEM_PROMPT = (
    "You are an expert WordPress plugin developer. Write a complete, runnable {framework} "
    "test suite for the plugin code you are given. Reply with PHP code only."
)

ProviderFactory = Callable[..., BaseProvider]


class GenerationError(Exception):
    """Base error for the test generation workflow."""


class Funding(str, Enum):
    OWN_KEY = "own_key"
    DEMO = "demo"
    CREDITS = "credits"


@dataclass
class GenerationResult:
    tests: str
    provider: str
    model: str
    framework: str
    tokens_used: int
    funding: Funding
    credits_charged: Decimal
    balance_after: Decimal | None
    transaction_id: int | None = None
    demo_credits_remaining: int | None = None

    @property
    def metered(self) -> bool:
        return self.funding == Funding.CREDITS


class GenerationService:
    """
    Usage call site for metered AI calls.

    Funding is picked before the call, in order: the user's own key for the
    provider family, then a free demo generation, then paid credits. Free
    providers never spend demo generations. Demo and paid funding are only
    spent after the call succeeds.
    """

    def __init__(
        self,
        db: Session,
        *,
        credits_service: CreditsService | None = None,
        tokens_service: ApiTokensService | None = None,
        demo_service: DemoCreditsService | None = None,
        provider_factory: ProviderFactory | None = None,
    ):
        self.db = db
        self.credits = credits_service or CreditsService(db)
        self.tokens = tokens_service or ApiTokensService(db)
        self.demo = demo_service or DemoCreditsService(db)
        self.provider_factory = provider_factory or get_provider

    def generate(
        self,
        user: User,
        plugin_code: str,
        provider_id: str,
        framework: str = "phpunit",
    ) -> GenerationResult:
        framework = (framework or "phpunit").strip().lower()
        if framework not in SUPPORTED_FRAMEWORKS:
            raise GenerationError(f"Unsupported test framework: {framework}")
        code = (plugin_code or "").strip()
        if not code:
            raise GenerationError("Plugin code is required")
        if len(code) > MAX_PLUGIN_CODE_CHARS:
            raise GenerationError("Plugin code is too large")

        entry = self.credits.costs.get(provider_id)
        private_key = self.tokens.get_active_key(user.id, entry.family)
        if private_key is not None:
            funding = Funding.OWN_KEY
        elif self.credits.get_cost(entry.provider_id) > 0 and self.demo.has_credits_remaining(user.id):
            funding = Funding.DEMO
        else:
            funding = Funding.CREDITS

        if funding == Funding.CREDITS and not self.credits.has_sufficient_credits(user.id, entry.provider_id):
            available = self.credits.get_balance(user.id)
            logger.info(
                "generation.blocked",
                extra={"user_id": user.id, "provider": entry.provider_id, "available": str(available)},
            )
            raise InsufficientCreditsError(required=self.credits.get_cost(entry.provider_id), available=available)

        provider = self.provider_factory(entry.family, private_key)
        try:
            response = self._call(provider, entry.model, code, framework)
        except AIProviderError:
            logger.exception(
                "generation.provider_failed",
                extra={"user_id": user.id, "provider": entry.provider_id, "funding": funding.value},
            )
            raise
        finally:
            provider.close()

        if funding == Funding.OWN_KEY:
            self.tokens.mark_used(user.id, entry.family)
            return self._finish(user, entry.provider_id, framework, response, funding)

        # A rival request may have spent the last demo generation; paid credits cover it then.
        if funding == Funding.DEMO and self.demo.use_credit(user.id):
            remaining = self.demo.get_status(user.id).remaining
            return self._finish(user, entry.provider_id, framework, response, funding, demo_remaining=remaining)

        transaction = self.credits.deduct(
            user.id,
            entry.provider_id,
            UsageMetadata(
                model=response.model,
                tokens_used=response.total_tokens,
                extra={"framework": framework},
            ),
        )
        return self._finish(
            user,
            entry.provider_id,
            framework,
            response,
            Funding.CREDITS,
            credits_charged=abs(Decimal(str(transaction.amount))),
            balance_after=Decimal(str(transaction.balance_after)),
            transaction_id=transaction.id,
        )

    def _call(self, provider: BaseProvider, model: str, code: str, framework: str) -> ProviderResponse:
        label = "Pest" if framework == "pest" else "PHPUnit"
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT.format(framework=label)},
            {"role": "user", "content": code},
        ]
        response = provider.generate(model, messages)
        if not response.content.strip():
            raise AIProviderError("Provider returned an empty response", provider=provider.family)
        return response

    def _finish(
        self,
        user: User,
        provider_id: str,
        framework: str,
        response: ProviderResponse,
        funding: Funding,
        *,
        credits_charged: Decimal = Decimal("0.00"),
        balance_after: Decimal | None = None,
        transaction_id: int | None = None,
        demo_remaining: int | None = None,
    ) -> GenerationResult:
        logger.info(
            "generation.completed",
            extra={
                "user_id": user.id,
                "provider": provider_id,
                "funding": funding.value,
                "transaction_id": transaction_id,
            },
        )
        return GenerationResult(
            tests=response.content,
            provider=provider_id,
            model=response.model,
            framework=framework,
            tokens_used=response.total_tokens,
            funding=funding,
            credits_charged=credits_charged,
            balance_after=balance_after,
            transaction_id=transaction_id,
            demo_credits_remaining=demo_remaining,
        )
