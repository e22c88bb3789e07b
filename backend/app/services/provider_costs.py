from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from types import MappingProxyType
from typing import Mapping

from app.core.config import settings


@dataclass(frozen=True)
class ProviderCost:
    provider_id: str
    display_name: str
    family: str
    model: str
    cost: Decimal

    @property
    def formatted_cost(self) -> str:
        if self.cost == 0:
            return "Free"
        return f"{self.cost:.1f} credits"


DEFAULT_PROVIDERS: tuple[ProviderCost, ...] = (
    ProviderCost("openai-gpt5", "OpenAI GPT-5", "openai", "gpt-5", Decimal("2.0")),
    ProviderCost("openai-gpt5-mini", "OpenAI GPT-5 Mini", "openai", "gpt-5-mini", Decimal("1.0")),
    ProviderCost("anthropic-claude4-opus", "Anthropic Claude 4 Opus", "anthropic", "claude-opus-4-0", Decimal("3.0")),
    ProviderCost("anthropic-claude4-sonnet", "Anthropic Claude 4 Sonnet", "anthropic", "claude-sonnet-4-0", Decimal("2.0")),
    ProviderCost("anthropic-claude", "Anthropic Claude 3.5 Sonnet", "anthropic", "claude-3-5-sonnet-latest", Decimal("1.5")),
    ProviderCost("mock", "Mock Provider", "mock", "mock-model", Decimal("0.0")),
)

DEFAULT_FALLBACK_COST = Decimal("1.0")


def _display_name(provider_id: str) -> str:
    return provider_id.replace("-", " ").capitalize()


def _family(provider_id: str) -> str:
    return provider_id.split("-", 1)[0]


class ProviderCostTable:
    """
    Read-only map of provider id -> credits per invocation.

    Unknown ids are billed at `default_cost`; the table cannot be changed after
    construction, so a new price means a new table (i.e. a redeploy).
    """

    def __init__(
        self,
        providers: tuple[ProviderCost, ...] | list[ProviderCost] = DEFAULT_PROVIDERS,
        *,
        default_cost: Decimal = DEFAULT_FALLBACK_COST,
        overrides: Mapping[str, Decimal] | None = None,
    ) -> None:
        default_cost = Decimal(default_cost)
        if default_cost <= 0:
            raise ValueError("default_cost must be positive")

        entries: dict[str, ProviderCost] = {}
        for entry in providers:
            entries[entry.provider_id] = entry
        for raw_id, cost in (overrides or {}).items():
            provider_id = self._normalize(raw_id)
            cost = Decimal(cost)
            if cost < 0:
                raise ValueError(f"cost for {provider_id} must not be negative")
            base = entries.get(provider_id)
            entries[provider_id] = ProviderCost(
                provider_id=provider_id,
                display_name=base.display_name if base else _display_name(provider_id),
                family=base.family if base else _family(provider_id),
                model=base.model if base else provider_id,
                cost=cost,
            )

        self._entries: Mapping[str, ProviderCost] = MappingProxyType(entries)
        self._default_cost = default_cost

    @property
    def default_cost(self) -> Decimal:
        return self._default_cost

    def cost(self, provider_id: str) -> Decimal:
        entry = self._entries.get(self._normalize(provider_id))
        return entry.cost if entry else self._default_cost

    def get(self, provider_id: str) -> ProviderCost:
        """Entry for `provider_id`, synthesised at the fallback cost when unknown."""
        key = self._normalize(provider_id)
        entry = self._entries.get(key)
        if entry:
            return entry
        return ProviderCost(
            provider_id=key,
            display_name=_display_name(key),
            family=_family(key),
            model=key,
            cost=self._default_cost,
        )

    def is_known(self, provider_id: str) -> bool:
        return self._normalize(provider_id) in self._entries

    def all(self) -> list[ProviderCost]:
        return list(self._entries.values())

    @staticmethod
    def _normalize(provider_id: str) -> str:
        return (provider_id or "").strip().lower()


def build_cost_table() -> ProviderCostTable:
    return ProviderCostTable(
        default_cost=settings.PROVIDER_DEFAULT_COST,
        overrides=settings.PROVIDER_COSTS,
    )
