"""SQLite backed persistence for notes and chat sessions."""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from .models import now_ms

SCHEMA_VERSION = 1

NOTE_LIST_LIMIT = 100
SESSION_LIST_LIMIT = 50
SEARCH_LIMIT = 12
SEARCH_CANDIDATES = 200
DEFAULT_SESSION_TITLE = "New Chat"


class StorageError(RuntimeError):
    """Raised when something goes wrong while accessing the storage."""


class Storage:
    """Manage persistence of notes, embeddings and chat sessions using SQLite.

    Every query is scoped by ``user_id``. Audio stays in its wire form (base64
    text plus MIME type); decoding happens in the repository adapters.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._ensure_initialised()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_initialised(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS notes (
                    id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    summary TEXT NOT NULL,
                    transcript TEXT NOT NULL,
                    tags TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL,
                    duration REAL NOT NULL DEFAULT 0,
                    source_type TEXT NOT NULL DEFAULT 'audio',
                    llm_provider TEXT,
                    embedding TEXT,
                    audio_data TEXT,
                    audio_mime_type TEXT,
                    PRIMARY KEY (id, user_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chat_sessions (
                    id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    messages TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL,
                    PRIMARY KEY (id, user_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS metadata (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
            cur = conn.execute("SELECT value FROM metadata WHERE key = ?", ("schema_version",))
            row = cur.fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO metadata(key, value) VALUES(?, ?)",
                    ("schema_version", str(SCHEMA_VERSION)),
                )

    # notes

    def upsert_note(self, user_id: str, note: Dict[str, Any], embedding: Sequence[float]) -> Dict[str, Any]:
        """Replace the note with the same id (for this user) or insert it."""
        now = now_ms()
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO notes(
                    id, user_id, title, summary, transcript, tags, created_at, updated_at,
                    duration, source_type, llm_provider, embedding, audio_data, audio_mime_type
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    note["id"],
                    user_id,
                    note.get("title") or "",
                    note.get("summary") or "",
                    note.get("transcript") or "",
                    json.dumps(note.get("tags") or []),
                    int(note.get("createdAt") or now),
                    now,
                    float(note.get("duration") or 0),
                    note.get("sourceType") or "audio",
                    note.get("llmProvider"),
                    json.dumps([float(v) for v in embedding]),
                    note.get("audioData"),
                    note.get("audioMimeType"),
                ),
            )
        return self.get_note(user_id, note["id"])

    def list_notes(self, user_id: str, limit: int = NOTE_LIST_LIMIT) -> Iterator[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM notes WHERE user_id = ? ORDER BY created_at DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        for row in rows:
            yield _row_to_note(row, include_audio=False)

    def get_note(self, user_id: str, note_id: str) -> Dict[str, Any]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM notes WHERE id = ? AND user_id = ?", (note_id, user_id)
            ).fetchone()
        if row is None:
            raise StorageError(f"Note with id {note_id} not found")
        return _row_to_note(row, include_audio=True)

    def get_embedding(self, user_id: str, note_id: str) -> Optional[List[float]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT embedding FROM notes WHERE id = ? AND user_id = ?", (note_id, user_id)
            ).fetchone()
        if row is None:
            raise StorageError(f"Note with id {note_id} not found")
        return json.loads(row["embedding"]) if row["embedding"] else None

    def update_analysis(
        self,
        user_id: str,
        note_id: str,
        *,
        transcript: str,
        summary: str,
        title: str,
        tags: Sequence[str],
        llm_provider: Optional[str],
        embedding: Sequence[float],
    ) -> Dict[str, Any]:
        with sqlite3.connect(self.db_path) as conn:
            cur = conn.execute(
                """
                UPDATE notes
                SET transcript = ?, summary = ?, title = ?, tags = ?, llm_provider = ?,
                    embedding = ?, updated_at = ?
                WHERE id = ? AND user_id = ?
                """,
                (
                    transcript,
                    summary,
                    title,
                    json.dumps(list(tags)),
                    llm_provider,
                    json.dumps([float(v) for v in embedding]),
                    now_ms(),
                    note_id,
                    user_id,
                ),
            )
            if cur.rowcount == 0:
                raise StorageError(f"Note with id {note_id} not found")
        return self.get_note(user_id, note_id)

    def delete_note(self, user_id: str, note_id: str) -> None:
        with sqlite3.connect(self.db_path) as conn:
            cur = conn.execute("DELETE FROM notes WHERE id = ? AND user_id = ?", (note_id, user_id))
            if cur.rowcount == 0:
                raise StorageError(f"Note with id {note_id} not found")

    def search_notes(
        self,
        user_id: str,
        vector: Sequence[float],
        limit: int = SEARCH_LIMIT,
        num_candidates: int = SEARCH_CANDIDATES,
    ) -> List[Tuple[Dict[str, Any], float]]:
        """Cosine-similarity search over the user's most recent ``num_candidates`` notes."""
        query = np.asarray(vector, dtype=float)
        query_norm = np.linalg.norm(query)
        if query.size == 0 or query_norm == 0:
            return []

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM notes
                WHERE user_id = ? AND embedding IS NOT NULL
                ORDER BY created_at DESC LIMIT ?
                """,
                (user_id, num_candidates),
            ).fetchall()

        candidates = []
        vectors = []
        for row in rows:
            stored = json.loads(row["embedding"])
            if len(stored) != query.size:
                continue
            candidates.append(row)
            vectors.append(stored)
        if not candidates:
            return []

        matrix = np.asarray(vectors, dtype=float)
        norms = np.linalg.norm(matrix, axis=1)
        norms[norms == 0] = 1.0
        scores = matrix @ query / (norms * query_norm)
        order = np.argsort(-scores, kind="stable")[:limit]
        return [(_row_to_note(candidates[i], include_audio=True), float(scores[i])) for i in order]

    def count_notes(self) -> int:
        with sqlite3.connect(self.db_path) as conn:
            return conn.execute("SELECT COUNT(*) FROM notes").fetchone()[0]

    # chat sessions

    def list_sessions(self, user_id: str, limit: int = SESSION_LIST_LIMIT) -> Iterator[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM chat_sessions WHERE user_id = ? ORDER BY updated_at DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        for row in rows:
            yield _row_to_session(row)

    def latest_session(self, user_id: str) -> Optional[Dict[str, Any]]:
        return next(self.list_sessions(user_id, limit=1), None)

    def get_session(self, user_id: str, session_id: str) -> Dict[str, Any]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM chat_sessions WHERE id = ? AND user_id = ?", (session_id, user_id)
            ).fetchone()
        if row is None:
            raise StorageError(f"Chat session with id {session_id} not found")
        return _row_to_session(row)

    def upsert_session(self, user_id: str, session: Dict[str, Any]) -> Dict[str, Any]:
        now = now_ms()
        created_at = session.get("createdAt")
        if not created_at:
            try:
                created_at = self.get_session(user_id, session["id"])["createdAt"]
            except StorageError:
                created_at = now
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO chat_sessions(id, user_id, title, messages, created_at, updated_at)
                VALUES(?, ?, ?, ?, ?, ?)
                """,
                (
                    session["id"],
                    user_id,
                    session.get("title") or DEFAULT_SESSION_TITLE,
                    json.dumps(session.get("messages") or []),
                    int(created_at),
                    now,
                ),
            )
        return self.get_session(user_id, session["id"])

    def delete_session(self, user_id: str, session_id: str) -> None:
        with sqlite3.connect(self.db_path) as conn:
            cur = conn.execute(
                "DELETE FROM chat_sessions WHERE id = ? AND user_id = ?", (session_id, user_id)
            )
            if cur.rowcount == 0:
                raise StorageError(f"Chat session with id {session_id} not found")


def _row_to_note(row: sqlite3.Row, include_audio: bool) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "title": row["title"],
        "summary": row["summary"],
        "transcript": row["transcript"],
        "tags": json.loads(row["tags"] or "[]"),
        "createdAt": row["created_at"],
        "duration": row["duration"] or 0,
        "sourceType": row["source_type"],
        "llmProvider": row["llm_provider"],
        "audioData": row["audio_data"] if include_audio else None,
        "audioMimeType": row["audio_mime_type"] if include_audio else None,
    }


def _row_to_session(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "title": row["title"],
        "messages": json.loads(row["messages"] or "[]"),
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }
