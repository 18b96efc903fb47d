"""Chat-completion providers, one strategy per supported LLM vendor."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Protocol

import httpx
from openai import APIConnectionError, APIStatusError, AsyncOpenAI

from .errors import UpstreamFailure, UpstreamUnavailable, ValidationError
from .http import borrow_client, error_detail
from .models import Config, LLMConfig

logger = logging.getLogger(__name__)

Message = Dict[str, str]

DEFAULT_TEMPERATURE = 0.3


class ChatCompletionProvider(Protocol):
    """Send neutral ``{role, content}`` messages, get the reply text back."""

    name: str

    async def complete(self, messages: List[Message], temperature: float = DEFAULT_TEMPERATURE) -> str:
        ...


class OpenAICompatibleProvider:
    """OpenAI and Grok both speak the OpenAI chat-completions protocol."""

    def __init__(
        self,
        name: str,
        api_key: str,
        model: str,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 60.0,
    ) -> None:
        self.name = name
        self.model = model
        self._client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            http_client=http_client,
            timeout=timeout,
            max_retries=0,
        )

    async def complete(self, messages: List[Message], temperature: float = DEFAULT_TEMPERATURE) -> str:
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=messages,  # type: ignore[arg-type]
                temperature=temperature,
            )
        except APIStatusError as exc:
            raise UpstreamFailure(f"{self.name} API error: {exc.message}", exc.status_code) from exc
        except APIConnectionError as exc:
            raise UpstreamFailure(f"{self.name} API unreachable: {exc}") from exc

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise UpstreamFailure(f"No content in {self.name} response")
        return content


class GeminiProvider:
    """Google Gemini ``generateContent`` with the conversation flattened into parts."""

    name = "gemini"

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 60.0,
    ) -> None:
        self.model = model
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._client = client
        self._timeout = timeout

    @staticmethod
    def _parts(messages: List[Message]) -> List[Dict[str, str]]:
        parts = []
        for message in messages:
            role = message["role"]
            if role == "system":
                parts.append({"text": message["content"]})
            elif role == "assistant":
                parts.append({"text": f"\n\nAssistant: {message['content']}"})
            else:
                parts.append({"text": f"\n\nUser: {message['content']}"})
        return parts

    async def complete(self, messages: List[Message], temperature: float = DEFAULT_TEMPERATURE) -> str:
        body = {
            "contents": [{"parts": self._parts(messages)}],
            "generationConfig": {"temperature": temperature},
        }
        url = f"{self._base_url}/models/{self.model}:generateContent"
        async with borrow_client(self._client, self._timeout) as client:
            try:
                response = await client.post(url, params={"key": self._api_key}, json=body)
            except httpx.HTTPError as exc:
                raise UpstreamFailure(f"gemini API unreachable: {exc}") from exc
        if response.status_code >= 400:
            raise UpstreamFailure(f"gemini API error: {error_detail(response)}", response.status_code)

        data = response.json()
        try:
            content = data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            content = None
        if not content:
            raise UpstreamFailure("No content in gemini response")
        return content


def provider_api_key(config: Config, provider: str) -> Optional[str]:
    keys = {
        "openai": config.openai_api_key,
        "grok": config.grok_api_key,
        "gemini": config.gemini_api_key,
    }
    return keys.get(provider)


def get_provider(
    config: Config,
    llm_config: LLMConfig,
    http_client: Optional[httpx.AsyncClient] = None,
) -> ChatCompletionProvider:
    """Build the provider strategy selected by ``llm_config.provider``."""

    provider = llm_config.provider
    if provider not in ("openai", "grok", "gemini"):
        raise ValidationError(f"Unsupported LLM provider: {provider}")

    api_key = provider_api_key(config, provider)
    if not api_key:
        label = {"openai": "OpenAI", "grok": "Grok", "gemini": "Gemini"}[provider]
        raise UpstreamUnavailable(f"{label} API key not configured")

    logger.debug("Using %s provider with model %s", provider, llm_config.model)
    if provider == "gemini":
        return GeminiProvider(
            api_key, llm_config.model, config.gemini_base_url, client=http_client, timeout=config.provider_timeout
        )
    base_url = config.grok_base_url if provider == "grok" else None
    return OpenAICompatibleProvider(
        provider,
        api_key,
        llm_config.model,
        base_url=base_url,
        http_client=http_client,
        timeout=config.provider_timeout,
    )
