"""AI Provider abstraction layer.

OpenAI chat completions over httpx, used to draft support replies.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx

from supportdesk.core.exceptions import (
    PermanentValidationError,
    ProviderError,
    TransientIntegrationError,
)

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "Sen yardımsever ve profesyonel bir müşteri hizmetleri asistanısın."


@dataclass
class ChatMessage:
    """A single message in a conversation."""

    role: str  # 'system', 'user', 'assistant'
    content: str


@dataclass
class ChatResponse:
    """Response from an AI provider."""

    content: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    model: str


class AIProvider(ABC):
    """Abstract base class for AI providers."""

    @abstractmethod
    async def chat(
        self,
        messages: list[ChatMessage],
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 800,
        api_key: str | None = None,
    ) -> ChatResponse:
        """Send a chat completion request."""
        pass

    async def complete(
        self,
        prompt: str,
        model: str | None = None,
        api_key: str | None = None,
        system: str = DEFAULT_SYSTEM_PROMPT,
    ) -> str:
        """Single-turn completion: system prompt + user prompt → text."""
        response = await self.chat(
            [ChatMessage(role="system", content=system), ChatMessage(role="user", content=prompt)],
            model=model,
            api_key=api_key,
        )
        return response.content


class OpenAIProvider(AIProvider):
    """OpenAI API provider."""

    def __init__(
        self,
        api_key: str = "",
        default_model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = base_url
        self._transport = transport

    async def chat(
        self,
        messages: list[ChatMessage],
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 800,
        api_key: str | None = None,
    ) -> ChatResponse:
        model = model or self.default_model
        api_key = (api_key or self.api_key or "").strip()
        if not api_key:
            raise PermanentValidationError("OpenAI API key not configured")

        try:
            async with httpx.AsyncClient(timeout=60.0, transport=self._transport) as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    headers={
                        "Authorization": f"Bearer {api_key}",
                        "Content-Type": "application/json",
                    },
                    json={
                        "model": model,
                        "messages": [
                            {"role": m.role, "content": m.content} for m in messages
                        ],
                        "temperature": temperature,
                        "max_tokens": max_tokens,
                    },
                )
        except httpx.TimeoutException as exc:
            raise TransientIntegrationError("OpenAI API timeout") from exc
        except httpx.TransportError as exc:
            raise TransientIntegrationError(f"OpenAI API connection failed: {type(exc).__name__}") from exc

        if not response.is_success:
            raise ProviderError(
                f"OpenAI API {response.status_code}: {response.text[:300]}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise TransientIntegrationError("OpenAI API returned a non-JSON body") from exc
        try:
            content = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError("OpenAI API returned no choices") from exc

        usage = data.get("usage", {})
        return ChatResponse(
            content=content,
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
            total_tokens=usage.get("total_tokens", 0),
            model=model,
        )
