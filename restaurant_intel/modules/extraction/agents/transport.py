"""External reasoning transport.

One request/response call: a system prompt, the user content and the
target response shape go out, parsed JSON comes back. Every failure
(timeout, SDK error, quota, auth, malformed JSON) surfaces as
SynthesisError with the underlying cause attached.

Providers supported:
  - google (Gemini via google-genai)
  - anthropic (Claude via the anthropic SDK)
  - openai (chat completions, JSON mode)
"""

from __future__ import annotations

import asyncio
import json
import time
from abc import ABC, abstractmethod
from typing import Any

import structlog

from restaurant_intel.core.config import settings
from restaurant_intel.modules.extraction.agents.sanitizer import strip_code_fences
from restaurant_intel.modules.extraction.errors import SynthesisError

logger = structlog.get_logger()

# Default models per provider
DEFAULT_MODELS: dict[str, str] = {
    "google": "gemini-2.5-pro",
    "anthropic": "claude-sonnet-4-20250514",
    "openai": "gpt-4.1-mini",
}

OFFLINE_PROVIDER = "offline"


class ReasoningTransport(ABC):
    """Abstract base for reasoning providers."""

    provider: str = "base"

    def __init__(
        self,
        model: str | None = None,
        *,
        api_key: str | None = None,
        timeout: float | None = None,
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> None:
        self.model = model or settings.synthesis_model or DEFAULT_MODELS.get(self.provider, "")
        self.api_key = api_key if api_key is not None else settings.synthesis_api_key
        self.timeout = timeout if timeout is not None else settings.synthesis_timeout_seconds
        self.temperature = (
            temperature if temperature is not None else settings.synthesis_temperature
        )
        self.max_output_tokens = max_output_tokens or settings.synthesis_max_output_tokens
        self._client: Any = None

    # ------------------------------------------------------------------
    # SDK client (lazy, one per transport)
    # ------------------------------------------------------------------

    def _get_client(self) -> Any:
        """Get or create the provider SDK client."""
        if self._client is None:
            self._client = self._build_client()
        return self._client

    def _build_client(self) -> Any:
        raise NotImplementedError(f"{type(self).__name__} does not use an SDK client")

    async def _close_client(self, client: Any) -> None:
        await client.close()

    async def aclose(self) -> None:
        """Release the SDK client and its connection pool."""
        if self._client is None:
            return
        client, self._client = self._client, None
        await self._close_client(client)
        logger.info("Reasoning transport closed", provider=self.provider)

    async def complete(
        self,
        system_prompt: str,
        user_content: str,
        *,
        response_schema: dict[str, Any] | None = None,
    ) -> Any:
        """Send one prompt and return the parsed JSON body."""
        if response_schema is not None:
            system_prompt = (
                f"{system_prompt}\n\nRespond with JSON only, matching this schema:\n"
                f"{json.dumps(response_schema, indent=2)}"
            )

        start = time.time()
        try:
            raw_text = await asyncio.wait_for(
                self._generate(system_prompt, user_content),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as exc:
            raise SynthesisError(
                f"{self.provider} call timed out after {self.timeout:g}s"
            ) from exc
        except SynthesisError:
            raise
        except Exception as exc:  # SDK error types differ per provider
            raise SynthesisError(f"{self.provider} call failed: {exc}") from exc

        duration_ms = int((time.time() - start) * 1000)
        if not raw_text or not raw_text.strip():
            raise SynthesisError(f"{self.provider} returned an empty response")

        try:
            parsed = json.loads(strip_code_fences(raw_text))
        except ValueError as exc:
            raise SynthesisError(f"{self.provider} returned malformed JSON: {exc}") from exc

        logger.info(
            "Reasoning call completed",
            provider=self.provider,
            model=self.model,
            duration_ms=duration_ms,
        )
        return parsed

    @abstractmethod
    async def _generate(self, system_prompt: str, user_content: str) -> str | None:
        """Provider call; returns the raw response text."""
        ...


class GoogleTransport(ReasoningTransport):
    provider = "google"

    def _build_client(self) -> Any:
        from google import genai

        return genai.Client(api_key=self.api_key)

    async def _close_client(self, client: Any) -> None:
        await client.aio.aclose()

    async def _generate(self, system_prompt: str, user_content: str) -> str | None:
        from google.genai import types

        response = await self._get_client().aio.models.generate_content(
            model=self.model,
            contents=user_content,
            config=types.GenerateContentConfig(
                system_instruction=system_prompt,
                response_mime_type="application/json",
                temperature=self.temperature,
                max_output_tokens=self.max_output_tokens,
            ),
        )
        return response.text


class AnthropicTransport(ReasoningTransport):
    provider = "anthropic"

    def _build_client(self) -> Any:
        from anthropic import AsyncAnthropic

        return AsyncAnthropic(api_key=self.api_key)

    async def _generate(self, system_prompt: str, user_content: str) -> str | None:
        response = await self._get_client().messages.create(
            model=self.model,
            max_tokens=self.max_output_tokens,
            system=system_prompt,
            messages=[{"role": "user", "content": user_content}],
            temperature=self.temperature,
        )
        return "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )


class OpenAITransport(ReasoningTransport):
    provider = "openai"

    def _build_client(self) -> Any:
        from openai import AsyncOpenAI

        return AsyncOpenAI(api_key=self.api_key)

    async def _generate(self, system_prompt: str, user_content: str) -> str | None:
        response = await self._get_client().chat.completions.create(
            model=self.model,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_content},
            ],
            temperature=self.temperature,
            max_tokens=self.max_output_tokens,
        )
        return response.choices[0].message.content


_TRANSPORTS: dict[str, type[ReasoningTransport]] = {
    "google": GoogleTransport,
    "anthropic": AnthropicTransport,
    "openai": OpenAITransport,
}


def get_transport(
    provider: str | None = None,
    model: str | None = None,
    *,
    api_key: str | None = None,
) -> ReasoningTransport | None:
    """Factory: return the configured transport, or None when running offline.

    A provider without an API key is treated as offline.
    """
    name = (provider or settings.synthesis_provider).lower()
    if name == OFFLINE_PROVIDER:
        return None
    transport_cls = _TRANSPORTS.get(name)
    if transport_cls is None:
        raise ValueError(f"Unsupported synthesis provider: {name}")

    key = api_key if api_key is not None else {
        "google": settings.google_ai_api_key,
        "anthropic": settings.anthropic_api_key,
        "openai": settings.openai_api_key,
    }[name]
    if not key:
        logger.warning("No API key for synthesis provider, running offline", provider=name)
        return None
    return transport_cls(model, api_key=key)
