"""Async HTTP client for the wonbiz API server.

:class:`ApiClient` implements the transcription, analysis, embedding, note
repository, chat session repository and chat protocols over HTTP, so the
pipeline, search engine and chat manager can run against a remote server.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from .codec import encode_audio, note_from_payload, note_to_payload, session_from_payload, session_to_payload
from .errors import (
    AuthenticationError,
    NotFoundError,
    PersistenceFailure,
    SearchFailure,
    TranscriptionError,
    UpstreamFailure,
    UpstreamUnavailable,
    ValidationError,
    WonbizError,
)
from .http import error_detail
from .models import AnalysisResult, AudioBlob, ChatSession, Config, LLMConfig, Note, TranscriptionResult
from .transcriber import StatusCallback

logger = logging.getLogger(__name__)


def _raise_for_status(response: httpx.Response) -> None:
    if response.status_code < 400:
        return
    detail = error_detail(response)
    status = response.status_code
    if status == 400:
        raise ValidationError(detail)
    if status in (401, 403):
        raise AuthenticationError(detail, missing=status == 401)
    if status == 404:
        raise NotFoundError(detail)
    if status == 503:
        raise UpstreamUnavailable(detail)
    raise UpstreamFailure(f"{response.request.method} {response.request.url.path} failed: {detail}", status)


class ApiClient:
    def __init__(self, config: Config, client: Optional[httpx.AsyncClient] = None) -> None:
        if not config.server_url:
            raise ValidationError("No API server configured. Run `wonbiz config --server-url URL` first.")
        headers: Dict[str, str] = {}
        if config.server_token:
            headers["Authorization"] = f"Bearer {config.server_token}"
        self._client = client or httpx.AsyncClient(
            base_url=config.server_url.rstrip("/"),
            headers=headers,
            timeout=config.api_timeout,
            verify=config.verify_ssl,
        )

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise UpstreamFailure(f"Request to {path} failed: {exc}") from exc
        _raise_for_status(response)
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamFailure(f"Invalid JSON from {path}: {exc}", response.status_code) from exc
        if not isinstance(payload, dict):
            raise UpstreamFailure(
                f"Expected a JSON object from {path}, got {type(payload).__name__}", response.status_code
            )
        return payload

    # pipeline collaborators

    async def transcribe(
        self,
        audio: AudioBlob,
        language: Optional[str] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> TranscriptionResult:
        if on_status is not None:
            on_status("Uploading audio...")
        audio_data, _mime = encode_audio(audio)
        body: Dict[str, Any] = {"audioBlob": audio_data}
        if language:
            body["language"] = language
        try:
            payload = await self._request("POST", "/transcribe", json=body)
        except (ValidationError, AuthenticationError):
            raise
        except WonbizError as exc:
            raise TranscriptionError(f"Transcription failed: {exc}") from exc
        return TranscriptionResult(
            transcript=payload.get("transcript", ""),
            detected_language=payload.get("detectedLanguage") or language or "en",
        )

    async def analyze(self, transcript: str, llm_config: LLMConfig, language: str = "en") -> AnalysisResult:
        payload = await self._request(
            "POST",
            "/orchestrate",
            json={"transcript": transcript, "llmConfig": llm_config.to_dict(), "language": language},
        )
        return AnalysisResult(
            transcript=payload.get("transcript") or transcript,
            summary=payload.get("summary") or "",
            title=payload.get("title") or "",
            tags=list(payload.get("tags") or []),
            degraded=bool(payload.get("degraded", False)),
        )

    async def embed(self, text: str) -> List[float]:
        payload = await self._request("POST", "/embed", json={"text": text})
        return [float(v) for v in payload.get("embedding") or []]

    # notes

    async def save_note(self, note: Note, embedding: Sequence[float]) -> None:
        body = {"note": note_to_payload(note, include_audio=True), "embedding": list(embedding)}
        try:
            await self._request("POST", "/notes", json=body)
        except WonbizError as exc:
            raise PersistenceFailure(f"Failed to save note {note.id}: {exc}") from exc

    async def list_notes(self) -> List[Note]:
        payload = await self._request("GET", "/notes")
        return [note_from_payload(item) for item in payload.get("notes", [])]

    async def get_note(self, note_id: str) -> Note:
        payload = await self._request("GET", f"/notes/{note_id}")
        return note_from_payload(payload["note"])

    async def delete_note(self, note_id: str) -> None:
        await self._request("DELETE", f"/notes/{note_id}")

    async def search_notes(self, query: str) -> List[Note]:
        try:
            payload = await self._request("POST", "/notes/search", json={"query": query})
        except WonbizError as exc:
            raise SearchFailure(f"Vector search failed: {exc}") from exc
        return [note_from_payload(item) for item in payload.get("notes", [])]

    async def regenerate_note(self, note_id: str, llm_config: LLMConfig) -> AnalysisResult:
        payload = await self._request(
            "POST", f"/notes/{note_id}/regenerate", json={"llmConfig": llm_config.to_dict()}
        )
        return AnalysisResult(
            transcript=payload.get("transcript", ""),
            summary=payload.get("summary", ""),
            title=payload.get("title", ""),
            tags=list(payload.get("tags") or []),
        )

    # chat

    async def chat(
        self, context: str, history: List[Dict[str, str]], message: str, llm_config: LLMConfig
    ) -> str:
        payload = await self._request(
            "POST",
            "/chat",
            json={"context": context, "history": history, "message": message, "llmConfig": llm_config.to_dict()},
        )
        return payload.get("response") or ""

    async def list_sessions(self) -> List[ChatSession]:
        payload = await self._request("GET", "/chat-sessions")
        return [session_from_payload(item) for item in payload.get("sessions", [])]

    async def latest_session(self) -> Optional[ChatSession]:
        payload = await self._request("GET", "/chat-sessions/latest")
        session = payload.get("session")
        return session_from_payload(session) if session else None

    async def get_session(self, session_id: str) -> ChatSession:
        payload = await self._request("GET", f"/chat-sessions/{session_id}")
        return session_from_payload(payload["session"])

    async def save_session(self, session: ChatSession) -> None:
        try:
            await self._request("POST", "/chat-sessions", json={"session": session_to_payload(session)})
        except WonbizError as exc:
            raise PersistenceFailure(f"Failed to save chat session {session.id}: {exc}") from exc

    async def delete_session(self, session_id: str) -> None:
        await self._request("DELETE", f"/chat-sessions/{session_id}")

    async def health(self) -> Dict[str, Any]:
        return await self._request("GET", "/health")
