"""Dataclasses describing notes, chat sessions and configuration for wonbiz."""

from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Optional

from .errors import ValidationError

APP_DIR = Path.home() / ".wonbiz"

SOURCE_AUDIO = "audio"
SOURCE_PDF = "pdf"

ROLE_USER = "user"
ROLE_MODEL = "model"

LLM_OPTIONS: Dict[str, Dict[str, object]] = {
    "openai": {"label": "OpenAI", "models": ["gpt-4o-mini", "gpt-4o", "gpt-4.1-mini"]},
    "grok": {"label": "Grok 4.1", "models": ["grok-4.1-fast", "grok-4.1", "grok-4.1-mini"]},
    "gemini": {"label": "Gemini 2.5", "models": ["gemini-2.5-flash", "gemini-1.5-pro", "gemini-1.5-flash"]},
}


def now_ms() -> int:
    """Current wall clock time as epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass(slots=True, frozen=True)
class LLMConfig:
    """Which provider and model should run analysis and chat."""

    provider: str = "openai"
    model: str = "gpt-4o-mini"

    @classmethod
    def for_provider(cls, provider: str) -> "LLMConfig":
        if provider not in LLM_OPTIONS:
            raise ValidationError(f"Unsupported LLM provider: {provider}")
        return cls(provider=provider, model=LLM_OPTIONS[provider]["models"][0])  # type: ignore[index]

    def with_provider(self, provider: str) -> "LLMConfig":
        """Switching provider always resets the model to that provider's default."""
        return LLMConfig.for_provider(provider)

    def validate(self) -> "LLMConfig":
        if self.provider not in LLM_OPTIONS:
            raise ValidationError(f"Unsupported LLM provider: {self.provider}")
        models = LLM_OPTIONS[self.provider]["models"]
        if self.model not in models:  # type: ignore[operator]
            raise ValidationError(f"Model {self.model!r} is not available for provider {self.provider!r}")
        return self

    def to_dict(self) -> Dict[str, str]:
        return {"provider": self.provider, "model": self.model}


@dataclass(slots=True)
class AudioBlob:
    """Raw audio bytes owned by the local capture or session."""

    data: bytes
    mime_type: str = "audio/webm"

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def fingerprint(self) -> str:
        return hashlib.sha256(self.data).hexdigest()


@dataclass(slots=True)
class Note:
    """A processed voice (or pdf) note."""

    id: str
    title: str = ""
    summary: str = ""
    transcript: str = ""
    tags: List[str] = field(default_factory=list)
    created_at: int = field(default_factory=now_ms)
    duration: float = 0.0
    source_type: str = SOURCE_AUDIO
    llm_provider: Optional[str] = None
    vector_score: Optional[float] = None
    audio: Optional[AudioBlob] = None

    def copy(self, **changes) -> "Note":
        values = {"tags": list(self.tags)}
        values.update(changes)
        return replace(self, **values)


@dataclass(slots=True, frozen=True)
class ChatMessage:
    id: str
    role: str
    text: str
    timestamp: int


@dataclass(slots=True)
class ChatSession:
    id: str
    title: str
    messages: List[ChatMessage] = field(default_factory=list)
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    def copy(self, **changes) -> "ChatSession":
        values = {"messages": list(self.messages)}
        values.update(changes)
        return replace(self, **values)


@dataclass(slots=True)
class TranscriptionResult:
    transcript: str
    detected_language: str = "en"


@dataclass(slots=True)
class AnalysisResult:
    """Structured analysis of a transcript.

    ``degraded`` is set when the LLM reply could not be parsed and generic
    placeholders were used instead.
    """

    transcript: str
    summary: str
    title: str
    tags: List[str] = field(default_factory=list)
    degraded: bool = False


@dataclass(slots=True)
class Config:
    """Process configuration, built once at startup and injected everywhere."""

    # provider credentials
    assemblyai_api_key: Optional[str] = None
    llama_cloud_api_key: Optional[str] = None
    openai_api_key: Optional[str] = None
    grok_api_key: Optional[str] = None
    gemini_api_key: Optional[str] = None
    voyage_api_key: Optional[str] = None

    # provider endpoints
    assemblyai_base_url: str = "https://api.assemblyai.com/v2"
    llama_base_url: str = "https://api.llamaindex.ai/api/v1"
    grok_base_url: str = "https://api.x.ai/v1"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    voyage_base_url: str = "https://api.voyageai.com/v1"
    embedding_model: str = "voyage-3"
    transcription_poll_interval: float = 5.0
    transcription_max_attempts: int = 60
    provider_timeout: float = 60.0

    # server
    db_path: str = str(APP_DIR / "wonbiz.db")
    jwt_secret: str = "wonbiz-dev-secret-change-me"
    jwt_algorithm: str = "HS256"
    token_ttl_hours: int = 168

    # client
    server_url: Optional[str] = "http://localhost:3001"
    server_token: Optional[str] = None
    api_timeout: float = 120.0
    verify_ssl: bool = True
    llm_provider: str = "openai"
    llm_model: str = "gpt-4o-mini"
    language: str = "en"
    log_level: str = "INFO"

    def llm_config(self) -> LLMConfig:
        return LLMConfig(provider=self.llm_provider, model=self.llm_model)


_last_id = 0


def new_id() -> str:
    """Time based identifier, strictly increasing within this process."""
    global _last_id
    candidate = now_ms()
    if candidate <= _last_id:
        candidate = _last_id + 1
    _last_id = candidate
    return str(candidate)
