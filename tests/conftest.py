from __future__ import annotations

from typing import Dict, List, Optional, Sequence

import pytest

from wonbiz.errors import NotFoundError, PersistenceFailure
from wonbiz.models import AnalysisResult, ChatSession, Config, LLMConfig, Note, TranscriptionResult


class FakeTranscriber:
    def __init__(self, transcript: str = "hello world", language: str = "en") -> None:
        self.result = TranscriptionResult(transcript=transcript, detected_language=language)
        self.calls: List[Optional[str]] = []
        self.error: Optional[Exception] = None

    async def transcribe(self, audio, language=None, on_status=None):
        self.calls.append(language)
        if self.error is not None:
            raise self.error
        return self.result


class FakeAnalyzer:
    def __init__(self, result: Optional[AnalysisResult] = None) -> None:
        self.result = result or AnalysisResult(
            transcript="Hello world.", summary="A greeting.", title="Greeting", tags=["voice", "note"]
        )
        self.calls: List[tuple] = []

    async def analyze(self, transcript: str, llm_config: LLMConfig, language: str = "en") -> AnalysisResult:
        self.calls.append((transcript, llm_config, language))
        return self.result


class FakeEmbedder:
    """Deterministic vectors derived from the text."""

    def __init__(self) -> None:
        self.calls: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        return [float(len(text)), float(sum(map(ord, text)) % 97), 1.0]


class InMemoryNotes:
    def __init__(self) -> None:
        self.notes: Dict[str, Note] = {}
        self.embeddings: Dict[str, List[float]] = {}
        self.fail_saves = False
        self.search_results: List[Note] = []
        self.search_error: Optional[Exception] = None
        self.queries: List[str] = []

    async def save_note(self, note: Note, embedding: Sequence[float]) -> None:
        if self.fail_saves:
            raise PersistenceFailure("store offline")
        self.notes[note.id] = note
        self.embeddings[note.id] = list(embedding)

    async def list_notes(self) -> List[Note]:
        return sorted(self.notes.values(), key=lambda n: n.created_at, reverse=True)

    async def get_note(self, note_id: str) -> Note:
        try:
            return self.notes[note_id]
        except KeyError:
            raise NotFoundError(f"Note with id {note_id} not found") from None

    async def delete_note(self, note_id: str) -> None:
        await self.get_note(note_id)
        del self.notes[note_id]

    async def search_notes(self, query: str) -> List[Note]:
        self.queries.append(query)
        if self.search_error is not None:
            raise self.search_error
        return list(self.search_results)

    async def update_analysis(self, note_id, analysis, llm_provider, embedding) -> Note:
        note = await self.get_note(note_id)
        updated = note.copy(
            transcript=analysis.transcript,
            summary=analysis.summary,
            title=analysis.title,
            tags=list(analysis.tags),
            llm_provider=llm_provider,
        )
        self.notes[note_id] = updated
        self.embeddings[note_id] = list(embedding)
        return updated


class InMemorySessions:
    def __init__(self, sessions: Sequence[ChatSession] = ()) -> None:
        self.sessions: Dict[str, ChatSession] = {s.id: s for s in sessions}
        self.saved: List[ChatSession] = []
        self.deleted: List[str] = []
        self.fail_saves = False

    async def list_sessions(self) -> List[ChatSession]:
        return sorted(self.sessions.values(), key=lambda s: s.updated_at, reverse=True)

    async def latest_session(self) -> Optional[ChatSession]:
        sessions = await self.list_sessions()
        return sessions[0] if sessions else None

    async def get_session(self, session_id: str) -> ChatSession:
        try:
            return self.sessions[session_id]
        except KeyError:
            raise NotFoundError(f"Chat session with id {session_id} not found") from None

    async def save_session(self, session: ChatSession) -> None:
        if self.fail_saves:
            raise PersistenceFailure("store offline")
        self.saved.append(session)
        self.sessions[session.id] = session

    async def delete_session(self, session_id: str) -> None:
        self.deleted.append(session_id)
        self.sessions.pop(session_id, None)


class Clock:
    """Monotonic fake clock in epoch milliseconds."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.value = start

    def __call__(self) -> int:
        self.value += 1000
        return self.value


class Counter:
    def __init__(self, prefix: str = "id") -> None:
        self.prefix = prefix
        self.value = 0

    def __call__(self) -> str:
        self.value += 1
        return f"{self.prefix}-{self.value}"


@pytest.fixture
def config(tmp_path):
    return Config(
        assemblyai_api_key="aai-key",
        openai_api_key="sk-test",
        voyage_api_key="voyage-key",
        db_path=str(tmp_path / "wonbiz.db"),
        jwt_secret="test-secret",
        server_url="http://testserver",
    )


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def ids():
    return Counter()
