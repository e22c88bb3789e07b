from __future__ import annotations

import logging
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Sequence

import httpx
from openai import OpenAI, OpenAIError

from app.core.config import settings

logger = logging.getLogger(__name__)

ChatMessage = dict[str, str]

ANTHROPIC_VERSION = "2023-06-01"
RETRYABLE_STATUS_CODES = frozenset({408, 429})


@dataclass(frozen=True)
class ProviderResponse:
    content: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    raw_metadata: dict[str, Any] = field(default_factory=dict)


class AIProviderError(RuntimeError):
    def __init__(self, message: str, *, provider: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


def is_retryable_status(status: int | None) -> bool:
    if not isinstance(status, int):
        return False
    return status >= 500 or status in RETRYABLE_STATUS_CODES


def _backoff(attempt: int) -> None:
    delay = min(0.5 * (2 ** (attempt - 1)), 5.0)
    time.sleep(delay + random.uniform(0, 0.25))


def _clean_messages(messages: Sequence[ChatMessage]) -> list[ChatMessage]:
    cleaned = [
        {"role": message["role"], "content": message["content"]}
        for message in messages
        if message.get("role") and message.get("content")
    ]
    if not cleaned:
        raise AIProviderError("At least one chat message is required")
    return cleaned


class BaseProvider(ABC):
    """A chat-completion backend. Callers only ever see ProviderResponse."""

    family: str = ""

    @abstractmethod
    def generate(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> ProviderResponse:
        ...

    def close(self) -> None:
        pass


class OpenAIProvider(BaseProvider):
    """
    Thin wrapper around the OpenAI SDK so the rest of the app can be unit-tested
    without importing the global client module.
    """

    family = "openai"

    def __init__(self, *, api_key: str | None = None, client: Any | None = None) -> None:
        if client is None:
            key = api_key or settings.OPENAI_API_KEY
            if not key:
                raise AIProviderError("OPENAI_API_KEY is not configured", provider=self.family)
            client = OpenAI(api_key=key, timeout=settings.AI_TIMEOUT_SECONDS, max_retries=0)
        self._client = client
        self.max_retries = max(settings.AI_MAX_RETRIES, 1)

    def generate(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> ProviderResponse:
        params: dict[str, Any] = {"model": model, "messages": _clean_messages(messages)}
        # gpt-5 models take max_completion_tokens and only the default temperature.
        if model.startswith("gpt-5"):
            params["max_completion_tokens"] = max_tokens or settings.AI_MAX_TOKENS
        else:
            params["max_tokens"] = max_tokens or settings.AI_MAX_TOKENS
            params["temperature"] = settings.AI_TEMPERATURE if temperature is None else temperature

        for attempt in range(1, self.max_retries + 1):
            try:
                response = self._client.chat.completions.create(**params)
                break
            except OpenAIError as exc:
                status = getattr(exc, "status_code", None)
                if attempt == self.max_retries or not self._is_retryable(exc):
                    raise AIProviderError(str(exc), provider=self.family, status_code=status) from exc
                logger.warning(
                    "ai.retry",
                    extra={"provider": self.family, "attempt": attempt, "status_code": status},
                )
                _backoff(attempt)

        choice = response.choices[0]
        usage = response.usage or None
        prompt_tokens = int(getattr(usage, "prompt_tokens", 0) or 0)
        completion_tokens = int(getattr(usage, "completion_tokens", 0) or 0)
        return ProviderResponse(
            content=choice.message.content or "",
            model=response.model or model,
            input_tokens=prompt_tokens,
            output_tokens=completion_tokens,
            total_tokens=int(getattr(usage, "total_tokens", 0) or 0) or prompt_tokens + completion_tokens,
            raw_metadata={"response_id": getattr(response, "id", None)},
        )

    def _is_retryable(self, exc: OpenAIError) -> bool:
        status = getattr(exc, "status_code", None) or getattr(exc, "status", None)
        if isinstance(status, int):
            return is_retryable_status(status)
        message = str(exc).lower()
        return "timeout" in message or "temporarily unavailable" in message


class AnthropicProvider(BaseProvider):
    """Anthropic Messages API over httpx."""

    family = "anthropic"

    def __init__(self, *, api_key: str | None = None, client: httpx.Client | None = None) -> None:
        key = api_key or settings.ANTHROPIC_API_KEY
        if client is None and not key:
            raise AIProviderError("ANTHROPIC_API_KEY is not configured", provider=self.family)
        self._client = client or httpx.Client(
            base_url=settings.ANTHROPIC_API_URL,
            headers={
                "x-api-key": key,
                "anthropic-version": ANTHROPIC_VERSION,
                "content-type": "application/json",
            },
            timeout=settings.AI_TIMEOUT_SECONDS,
        )
        self.max_retries = max(settings.AI_MAX_RETRIES, 1)

    def generate(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> ProviderResponse:
        # System prompt travels outside the message list.
        system_parts: list[str] = []
        turns: list[ChatMessage] = []
        for message in _clean_messages(messages):
            if message["role"] == "system":
                system_parts.append(message["content"])
            else:
                turns.append(message)

        payload: dict[str, Any] = {
            "model": model,
            "messages": turns,
            "max_tokens": max_tokens or settings.AI_MAX_TOKENS,
            "temperature": settings.AI_TEMPERATURE if temperature is None else temperature,
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)

        data = self._post("/messages", payload)
        usage = data.get("usage") or {}
        text = "".join(block.get("text", "") for block in data.get("content") or [] if block.get("type") == "text")
        input_tokens = int(usage.get("input_tokens") or 0)
        output_tokens = int(usage.get("output_tokens") or 0)
        return ProviderResponse(
            content=text,
            model=data.get("model") or model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            raw_metadata={"response_id": data.get("id"), "stop_reason": data.get("stop_reason")},
        )

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        for attempt in range(1, self.max_retries + 1):
            try:
                response = self._client.post(path, json=payload)
                response.raise_for_status()
                return response.json()
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                if attempt == self.max_retries or not is_retryable_status(status):
                    raise AIProviderError(
                        f"Anthropic API error {status}: {exc.response.text[:200]}",
                        provider=self.family,
                        status_code=status,
                    ) from exc
            except httpx.TransportError as exc:
                if attempt == self.max_retries:
                    raise AIProviderError(f"Anthropic API unreachable: {exc}", provider=self.family) from exc
            logger.warning("ai.retry", extra={"provider": self.family, "attempt": attempt})
            _backoff(attempt)
        raise AIProviderError("Anthropic API retries exhausted", provider=self.family)

    def close(self) -> None:
        self._client.close()


class MockProvider(BaseProvider):
    """Deterministic provider for development and tests."""

    family = "mock"

    def generate(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> ProviderResponse:
        cleaned = _clean_messages(messages)
        input_chars = sum(len(message["content"]) for message in cleaned)
        input_tokens = max(input_chars // 4, 10)
        output_tokens = input_tokens * 2
        content = (
            "<?php\n\n"
            "use PHPUnit\\Framework\\TestCase;\n\n"
            "class GeneratedPluginTest extends TestCase\n"
            "{\n"
            "    public function test_plugin_loads(): void\n"
            "    {\n"
            "        $this->assertTrue(true);\n"
            "    }\n"
            "}\n"
        )
        return ProviderResponse(
            content=content,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            raw_metadata={"provider": self.family},
        )


PROVIDER_CLASSES: dict[str, type[BaseProvider]] = {
    OpenAIProvider.family: OpenAIProvider,
    AnthropicProvider.family: AnthropicProvider,
    MockProvider.family: MockProvider,
}


def get_provider(family: str, api_key: str | None = None) -> BaseProvider:
    """Build a provider for `family`; `api_key` overrides the platform key."""
    provider_cls = PROVIDER_CLASSES.get((family or "").strip().lower())
    if provider_cls is None:
        raise AIProviderError(f"Unknown AI provider: {family}", provider=family)
    if provider_cls is MockProvider:
        return MockProvider()
    return provider_cls(api_key=api_key)
