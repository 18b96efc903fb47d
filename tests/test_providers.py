import json

import httpx
import pytest

from wonbiz.errors import UpstreamFailure, UpstreamUnavailable, ValidationError
from wonbiz.models import Config, LLMConfig
from wonbiz.providers import GeminiProvider, OpenAICompatibleProvider, get_provider


def _completion(content):
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 1_700_000_000,
        "model": "gpt-4o-mini",
        "choices": [
            {"index": 0, "message": {"role": "assistant", "content": content}, "finish_reason": "stop"}
        ],
    }


@pytest.mark.asyncio
async def test_openai_compatible_provider_posts_chat_completion():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=_completion("Hi there"))

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    provider = OpenAICompatibleProvider(
        "grok", "xai-key", "grok-4.1-fast", base_url="https://api.x.ai/v1", http_client=client
    )

    reply = await provider.complete([{"role": "user", "content": "Hello"}], temperature=0.3)

    assert reply == "Hi there"
    assert str(seen[0].url) == "https://api.x.ai/v1/chat/completions"
    body = json.loads(seen[0].content)
    assert body["model"] == "grok-4.1-fast"
    assert body["temperature"] == 0.3


@pytest.mark.asyncio
async def test_openai_compatible_provider_maps_status_errors():
    def handler(request):
        return httpx.Response(500, json={"error": {"message": "boom"}})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    provider = OpenAICompatibleProvider("openai", "sk-test", "gpt-4o-mini", http_client=client)

    with pytest.raises(UpstreamFailure) as excinfo:
        await provider.complete([{"role": "user", "content": "Hello"}])
    assert excinfo.value.status_code == 500


@pytest.mark.asyncio
async def test_gemini_flattens_messages_into_parts():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "Sure."}]}}]})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    provider = GeminiProvider("g-key", "gemini-2.5-flash", "https://gemini.example/v1beta", client=client)

    reply = await provider.complete(
        [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": "Hello"},
        ]
    )

    assert reply == "Sure."
    request = seen[0]
    assert request.url.path == "/v1beta/models/gemini-2.5-flash:generateContent"
    assert request.url.params["key"] == "g-key"
    parts = json.loads(request.content)["contents"][0]["parts"]
    assert parts == [
        {"text": "Be brief."},
        {"text": "\n\nUser: Hi"},
        {"text": "\n\nAssistant: Hello"},
    ]


@pytest.mark.asyncio
async def test_gemini_without_candidates_fails():
    def handler(request):
        return httpx.Response(200, json={"candidates": []})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    provider = GeminiProvider("g-key", "gemini-2.5-flash", "https://gemini.example/v1beta", client=client)

    with pytest.raises(UpstreamFailure, match="No content"):
        await provider.complete([{"role": "user", "content": "Hi"}])


def test_get_provider_requires_credentials():
    with pytest.raises(UpstreamUnavailable, match="Gemini API key not configured"):
        get_provider(Config(), LLMConfig("gemini", "gemini-2.5-flash"))
    with pytest.raises(ValidationError):
        get_provider(Config(), LLMConfig("claude", "opus"))


def test_get_provider_selects_strategy():
    config = Config(openai_api_key="sk", gemini_api_key="g")
    assert get_provider(config, LLMConfig("openai", "gpt-4o")).name == "openai"
    assert isinstance(get_provider(config, LLMConfig("gemini", "gemini-1.5-pro")), GeminiProvider)
