"""Repository interfaces and their in-process SQLite implementations.

The same protocols are implemented over HTTP by :mod:`wonbiz.client`, so the
pipeline, search and chat code never know where notes actually live.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import List, Optional, Protocol, Sequence

from fastapi.concurrency import run_in_threadpool

from .codec import note_from_payload, note_to_payload, session_from_payload, session_to_payload
from .embeddings import Embedder
from .errors import NotFoundError, PersistenceFailure
from .models import AnalysisResult, ChatSession, Note
from .storage import Storage, StorageError

logger = logging.getLogger(__name__)


class NoteRepository(Protocol):
    async def save_note(self, note: Note, embedding: Sequence[float]) -> None:
        ...

    async def list_notes(self) -> List[Note]:
        ...

    async def get_note(self, note_id: str) -> Note:
        ...

    async def delete_note(self, note_id: str) -> None:
        ...

    async def search_notes(self, query: str) -> List[Note]:
        ...


class AnalysisStore(Protocol):
    """Write side used by regeneration: replace analysis and embedding in place."""

    async def get_note(self, note_id: str) -> Note:
        ...

    async def update_analysis(
        self, note_id: str, analysis: AnalysisResult, llm_provider: Optional[str], embedding: Sequence[float]
    ) -> Note:
        ...


class ChatSessionRepository(Protocol):
    async def list_sessions(self) -> List[ChatSession]:
        ...

    async def latest_session(self) -> Optional[ChatSession]:
        ...

    async def get_session(self, session_id: str) -> ChatSession:
        ...

    async def save_session(self, session: ChatSession) -> None:
        ...

    async def delete_session(self, session_id: str) -> None:
        ...


class LocalNoteRepository:
    """Notes of one user, stored in the local SQLite database."""

    def __init__(self, storage: Storage, user_id: str, embedder: Optional[Embedder] = None) -> None:
        self._storage = storage
        self._user_id = user_id
        self._embedder = embedder

    async def save_note(self, note: Note, embedding: Sequence[float]) -> None:
        payload = note_to_payload(note, include_audio=True)
        try:
            await run_in_threadpool(self._storage.upsert_note, self._user_id, payload, list(embedding))
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Failed to save note {note.id}: {exc}") from exc

    async def list_notes(self) -> List[Note]:
        rows = await run_in_threadpool(lambda: list(self._storage.list_notes(self._user_id)))
        return [note_from_payload(row) for row in rows]

    async def get_note(self, note_id: str) -> Note:
        try:
            row = await run_in_threadpool(self._storage.get_note, self._user_id, note_id)
        except StorageError as exc:
            raise NotFoundError(str(exc)) from exc
        return note_from_payload(row)

    async def delete_note(self, note_id: str) -> None:
        try:
            await run_in_threadpool(self._storage.delete_note, self._user_id, note_id)
        except StorageError as exc:
            raise NotFoundError(str(exc)) from exc

    async def search_notes(self, query: str) -> List[Note]:
        if self._embedder is None:
            raise RuntimeError("LocalNoteRepository.search_notes requires an embedder")
        vector = await self._embedder.embed(query)
        results = await run_in_threadpool(self._storage.search_notes, self._user_id, vector)
        notes = []
        for row, score in results:
            note = note_from_payload(row)
            note.vector_score = score
            notes.append(note)
        return notes

    async def update_analysis(
        self, note_id: str, analysis: AnalysisResult, llm_provider: Optional[str], embedding: Sequence[float]
    ) -> Note:
        try:
            row = await run_in_threadpool(
                lambda: self._storage.update_analysis(
                    self._user_id,
                    note_id,
                    transcript=analysis.transcript,
                    summary=analysis.summary,
                    title=analysis.title,
                    tags=analysis.tags,
                    llm_provider=llm_provider,
                    embedding=list(embedding),
                )
            )
        except StorageError as exc:
            raise NotFoundError(str(exc)) from exc
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Failed to update note {note_id}: {exc}") from exc
        return note_from_payload(row)


class LocalChatSessionRepository:
    """Chat sessions of one user, stored in the local SQLite database."""

    def __init__(self, storage: Storage, user_id: str) -> None:
        self._storage = storage
        self._user_id = user_id

    async def list_sessions(self) -> List[ChatSession]:
        rows = await run_in_threadpool(lambda: list(self._storage.list_sessions(self._user_id)))
        return [session_from_payload(row) for row in rows]

    async def latest_session(self) -> Optional[ChatSession]:
        row = await run_in_threadpool(self._storage.latest_session, self._user_id)
        return session_from_payload(row) if row else None

    async def get_session(self, session_id: str) -> ChatSession:
        try:
            row = await run_in_threadpool(self._storage.get_session, self._user_id, session_id)
        except StorageError as exc:
            raise NotFoundError(str(exc)) from exc
        return session_from_payload(row)

    async def save_session(self, session: ChatSession) -> None:
        try:
            await run_in_threadpool(self._storage.upsert_session, self._user_id, session_to_payload(session))
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Failed to save chat session {session.id}: {exc}") from exc

    async def delete_session(self, session_id: str) -> None:
        try:
            await run_in_threadpool(self._storage.delete_session, self._user_id, session_id)
        except StorageError as exc:
            raise NotFoundError(str(exc)) from exc
