"""Turn a transcript into a cleaned transcript, summary, title and tags."""

from __future__ import annotations

import json
import logging
import re
from typing import Callable, Dict, List, Optional, Protocol

import httpx

from .errors import ParseDegradation
from .http import borrow_client
from .models import AnalysisResult, Config, LLMConfig
from .providers import ChatCompletionProvider, DEFAULT_TEMPERATURE, get_provider, provider_api_key

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")

DEGRADED_SUMMARY_CHARS = 200

LOCALISED_DEFAULTS: Dict[str, Dict[str, object]] = {
    "en": {
        "summary": "Summary not available",
        "title": "Untitled Recording",
        "degraded_title": "Voice Recording",
        "no_summary": "No summary available.",
        "tags": ["voice", "note"],
    },
    "zh": {
        "summary": "摘要不可用",
        "title": "未命名录音",
        "degraded_title": "语音记录",
        "no_summary": "暂无摘要。",
        "tags": ["语音", "笔记"],
    },
}

ProviderFactory = Callable[[Config, LLMConfig], ChatCompletionProvider]


class Analyzer(Protocol):
    async def analyze(self, transcript: str, llm_config: LLMConfig, language: str = "en") -> AnalysisResult:
        ...


def defaults_for(language: str) -> Dict[str, object]:
    return LOCALISED_DEFAULTS["zh" if language == "zh" else "en"]


def build_system_prompt(language: str) -> str:
    if language == "zh":
        instruction = "The transcript is in Chinese. Please respond entirely in Chinese (Simplified Chinese)."
    else:
        instruction = "Please respond in English."
    return (
        f"You are an AI assistant that processes voice transcripts. {instruction}\n"
        "For the given transcript, provide:\n"
        "1. A cleaned-up version of the transcript (fix any transcription errors, improve readability)\n"
        "2. A concise summary (2-3 sentences)\n"
        "3. A descriptive title (5-10 words)\n"
        "4. Relevant tags (3-5 keywords)\n\n"
        'Return your response as a JSON object with keys: "transcript", "summary", "title", '
        '"tags" (array of strings).'
    )


def build_messages(transcript: str, language: str) -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": build_system_prompt(language)},
        {"role": "user", "content": f"Please process this voice transcript:\n\n{transcript}"},
    ]


def strip_code_fence(content: str) -> str:
    match = _FENCE_RE.search(content)
    if match:
        return match.group(1).strip()
    return content.strip()


def _parse_structured(content: str, transcript: str, language: str) -> AnalysisResult:
    try:
        parsed = json.loads(strip_code_fence(content))
    except json.JSONDecodeError as exc:
        raise ParseDegradation(str(exc)) from exc
    if not isinstance(parsed, dict):
        raise ParseDegradation(f"Expected a JSON object, got {type(parsed).__name__}")

    defaults = defaults_for(language)
    tags = parsed.get("tags")
    if isinstance(tags, list):
        tags = [str(tag) for tag in tags if str(tag).strip()]
    else:
        tags = list(defaults["tags"])  # type: ignore[arg-type]
    return AnalysisResult(
        transcript=parsed.get("transcript") or transcript,
        summary=parsed.get("summary") or defaults["summary"],  # type: ignore[arg-type]
        title=parsed.get("title") or defaults["title"],  # type: ignore[arg-type]
        tags=tags,
    )


def degraded_result(content: str, transcript: str, language: str) -> AnalysisResult:
    defaults = defaults_for(language)
    text = content.strip()
    summary = text[:DEGRADED_SUMMARY_CHARS] + "..." if len(text) > DEGRADED_SUMMARY_CHARS else text
    return AnalysisResult(
        transcript=transcript,
        summary=summary or str(defaults["summary"]),
        title=str(defaults["degraded_title"]),
        tags=list(defaults["tags"]),  # type: ignore[arg-type]
        degraded=True,
    )


def parse_analysis(content: str, transcript: str, language: str = "en") -> AnalysisResult:
    """Parse an LLM reply, degrading to placeholders instead of raising."""
    try:
        return _parse_structured(content, transcript, language)
    except ParseDegradation as exc:
        logger.warning("Failed to parse analysis reply as JSON: %s", exc)
        logger.debug("Raw content: %s", content[:500])
        return degraded_result(content, transcript, language)


class AnalysisOrchestrator:
    """Orchestration layer first, the selected provider directly second.

    Parse failures degrade on either path. A failing direct provider call is
    fatal and propagates to the caller.
    """

    def __init__(
        self,
        config: Config,
        provider_factory: ProviderFactory = get_provider,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._config = config
        self._provider_factory = provider_factory
        self._client = client

    async def analyze(self, transcript: str, llm_config: LLMConfig, language: str = "en") -> AnalysisResult:
        if not self._config.llama_cloud_api_key:
            logger.info("LlamaCloud API key not configured, falling back to direct LLM call")
            return await self.analyze_direct(transcript, llm_config, language)

        content = await self._orchestrate(transcript, llm_config, language)
        if content is None:
            return await self.analyze_direct(transcript, llm_config, language)
        return parse_analysis(content, transcript, language)

    async def analyze_direct(self, transcript: str, llm_config: LLMConfig, language: str = "en") -> AnalysisResult:
        logger.info("Using direct %s API for analysis, language: %s", llm_config.provider, language)
        provider = self._provider_factory(self._config, llm_config)
        content = await provider.complete(build_messages(transcript, language), DEFAULT_TEMPERATURE)
        return parse_analysis(content, transcript, language)

    async def _orchestrate(self, transcript: str, llm_config: LLMConfig, language: str) -> Optional[str]:
        """Return the orchestration reply text, or ``None`` when the fallback should run."""
        headers = {
            "Authorization": f"Bearer {self._config.llama_cloud_api_key}",
            "X-Preferred-Provider": llm_config.provider,
        }
        provider_key = provider_api_key(self._config, llm_config.provider)
        if provider_key:
            headers["X-Preferred-Provider-Authorization"] = f"Bearer {provider_key}"
        body = {
            "model": llm_config.model,
            "messages": build_messages(transcript, language),
            "temperature": DEFAULT_TEMPERATURE,
        }
        url = f"{self._config.llama_base_url.rstrip('/')}/chat/completions"

        async with borrow_client(self._client, self._config.provider_timeout) as client:
            try:
                response = await client.post(url, headers=headers, json=body)
            except httpx.HTTPError as exc:
                logger.warning("Orchestration request failed (%s), falling back to direct LLM call", exc)
                return None

        if response.status_code >= 400:
            logger.warning(
                "Orchestration API error %s, falling back to direct LLM call: %s",
                response.status_code,
                response.text[:500],
            )
            return None
        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError):
            content = None
        if not content:
            logger.warning("No content in orchestration response, falling back to direct LLM call")
            return None
        return content
