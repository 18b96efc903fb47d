"""FastAPI application for the wonbiz voice notes service."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Set

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field

from ..analysis import AnalysisOrchestrator, Analyzer
from ..auth import AuthenticatedUser, decode_token
from ..chat import ChatBackend, ProviderChatBackend
from ..codec import decode_audio, note_from_payload, note_to_payload, session_from_payload, session_to_payload
from ..config import load_config
from ..embeddings import Embedder, VoyageEmbeddings
from ..errors import (
    AuthenticationError,
    NoteBusy,
    NotFoundError,
    UpstreamFailure,
    UpstreamUnavailable,
    ValidationError,
    WonbizError,
)
from ..models import Config, LLMConfig
from ..pipeline import NotePipeline
from ..repository import LocalChatSessionRepository, LocalNoteRepository
from ..storage import Storage
from ..transcriber import TranscriptionBackend, get_backend

logger = logging.getLogger(__name__)

_bearer = HTTPBearer(auto_error=False)


@dataclass
class Services:
    """Everything a request handler needs, built once per application."""

    config: Config
    storage: Storage
    transcriber: TranscriptionBackend
    analyzer: Analyzer
    embedder: Embedder
    chat_backend: ChatBackend
    busy_notes: Set[str] = field(default_factory=set)

    @classmethod
    def from_config(cls, config: Config) -> "Services":
        return cls(
            config=config,
            storage=Storage(Path(config.db_path).expanduser()),
            transcriber=get_backend(config),
            analyzer=AnalysisOrchestrator(config),
            embedder=VoyageEmbeddings(config),
            chat_backend=ProviderChatBackend(config),
        )


class HealthResponse(BaseModel):
    status: str = "ok"
    mongodb: str
    voyage: str
    assemblyai: str
    llamaindex: str


class LLMConfigPayload(BaseModel):
    provider: str
    model: Optional[str] = None

    def to_config(self) -> LLMConfig:
        if self.model is None:
            return LLMConfig.for_provider(self.provider)
        return LLMConfig(provider=self.provider, model=self.model).validate()


class TranscribeRequest(BaseModel):
    audioBlob: str = Field(..., min_length=1)
    language: Optional[str] = None


class TranscribeResponse(BaseModel):
    transcript: str
    detectedLanguage: str


class OrchestrateRequest(BaseModel):
    transcript: str = Field(..., min_length=1)
    llmConfig: LLMConfigPayload
    language: str = "en"


class AnalysisResponse(BaseModel):
    transcript: str
    summary: str
    title: str
    tags: List[str]
    degraded: bool = False


class EmbedRequest(BaseModel):
    text: str = Field(..., min_length=1)


class EmbedResponse(BaseModel):
    embedding: List[float]


class NotePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    title: str = ""
    summary: str = ""
    transcript: str = ""
    tags: List[str] = Field(default_factory=list)
    createdAt: Optional[int] = None
    duration: float = Field(0.0, ge=0)
    sourceType: Literal["audio", "pdf"] = "audio"
    llmProvider: Optional[str] = None
    audioData: Optional[str] = None
    audioMimeType: Optional[str] = None
    vectorScore: Optional[float] = None


class UpsertNoteRequest(BaseModel):
    note: NotePayload
    embedding: List[float] = Field(..., min_length=1)


class NotesResponse(BaseModel):
    notes: List[NotePayload]


class NoteResponse(BaseModel):
    note: NotePayload


class SearchRequest(BaseModel):
    query: str = Field(..., min_length=1)


class RegenerateRequest(BaseModel):
    llmConfig: LLMConfigPayload


class RegenerateResponse(BaseModel):
    transcript: str
    summary: str
    title: str
    tags: List[str]
    llmProvider: Optional[str] = None


class HistoryItem(BaseModel):
    role: str
    content: str


class ChatRequest(BaseModel):
    context: str = ""
    history: List[HistoryItem] = Field(default_factory=list)
    message: str = Field(..., min_length=1)
    llmConfig: LLMConfigPayload


class ChatResponse(BaseModel):
    response: str


class MessagePayload(BaseModel):
    id: str
    role: Literal["user", "model"]
    text: str
    timestamp: int


class SessionPayload(BaseModel):
    id: str = Field(..., min_length=1)
    title: Optional[str] = None
    messages: List[MessagePayload] = Field(default_factory=list)
    createdAt: Optional[int] = None
    updatedAt: Optional[int] = None


class SaveSessionRequest(BaseModel):
    session: SessionPayload


class SessionsResponse(BaseModel):
    sessions: List[SessionPayload]


class SessionResponse(BaseModel):
    session: Optional[SessionPayload]


class AckResponse(BaseModel):
    success: bool = True


def _status_for(exc: WonbizError) -> int:
    if isinstance(exc, ValidationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, AuthenticationError):
        return status.HTTP_401_UNAUTHORIZED if exc.missing else status.HTTP_403_FORBIDDEN
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, NoteBusy):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, UpstreamUnavailable):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if isinstance(exc, UpstreamFailure):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _configured(value: Optional[str]) -> str:
    return "configured" if value else "not configured"


def create_app(config: Optional[Config] = None, services: Optional[Services] = None) -> FastAPI:
    """Build the API around one set of injected services.

    Called without arguments (as uvicorn does with ``--factory``) it loads the
    configuration file and wires the real provider clients.
    """
    if services is None:
        services = Services.from_config(config or load_config())

    app = FastAPI(
        title="wonbiz API",
        description="Voice notes: transcription, analysis, vector search and chat.",
        version="0.3.0",
    )
    app.state.services = services

    def get_services(request: Request) -> Services:
        return request.app.state.services

    def current_user(
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
        svc: Services = Depends(get_services),
    ) -> AuthenticatedUser:
        token = credentials.credentials if credentials is not None else None
        try:
            return decode_token(svc.config, token)
        except AuthenticationError as exc:
            raise HTTPException(status_code=_status_for(exc), detail=str(exc)) from exc

    def notes_for(user: AuthenticatedUser, svc: Services) -> LocalNoteRepository:
        return LocalNoteRepository(svc.storage, user.user_id, svc.embedder)

    @app.exception_handler(WonbizError)
    async def handle_wonbiz_error(request: Request, exc: WonbizError) -> JSONResponse:
        code = _status_for(exc)
        if code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=code, content={"detail": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        messages = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'][1:])}: {error['msg']}" for error in exc.errors()
        )
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": messages})

    @app.get("/health", response_model=HealthResponse)
    async def healthcheck(svc: Services = Depends(get_services)) -> HealthResponse:
        try:
            await run_in_threadpool(svc.storage.count_notes)
            store = "connected"
        except sqlite3.Error as exc:
            logger.warning("Note store unavailable: %s", exc)
            store = "disconnected"
        return HealthResponse(
            mongodb=store,
            voyage=_configured(svc.config.voyage_api_key),
            assemblyai=_configured(svc.config.assemblyai_api_key),
            llamaindex=_configured(svc.config.llama_cloud_api_key),
        )

    @app.post("/transcribe", response_model=TranscribeResponse)
    async def transcribe(body: TranscribeRequest, svc: Services = Depends(get_services)) -> TranscribeResponse:
        audio = decode_audio(body.audioBlob)
        logger.info("Transcription requested for %d bytes, language=%s", audio.size, body.language or "auto")
        result = await svc.transcriber.transcribe(audio, body.language)
        return TranscribeResponse(transcript=result.transcript, detectedLanguage=result.detected_language)

    @app.post("/orchestrate", response_model=AnalysisResponse)
    async def orchestrate(body: OrchestrateRequest, svc: Services = Depends(get_services)) -> AnalysisResponse:
        llm_config = body.llmConfig.to_config()
        logger.info("Orchestration for transcript length %d, language %s", len(body.transcript), body.language)
        result = await svc.analyzer.analyze(body.transcript, llm_config, body.language)
        return AnalysisResponse(
            transcript=result.transcript,
            summary=result.summary,
            title=result.title,
            tags=result.tags,
            degraded=result.degraded,
        )

    @app.post("/embed", response_model=EmbedResponse)
    async def embed(body: EmbedRequest, svc: Services = Depends(get_services)) -> EmbedResponse:
        return EmbedResponse(embedding=await svc.embedder.embed(body.text))

    @app.post("/notes", response_model=AckResponse)
    async def upsert_note(
        body: UpsertNoteRequest,
        user: AuthenticatedUser = Depends(current_user),
        svc: Services = Depends(get_services),
    ) -> AckResponse:
        if body.note.id in svc.busy_notes:
            raise NoteBusy(f"Note {body.note.id} is being regenerated")
        note = note_from_payload(body.note.model_dump())
        await notes_for(user, svc).save_note(note, body.embedding)
        return AckResponse()

    @app.get("/notes", response_model=NotesResponse)
    async def list_notes(
        user: AuthenticatedUser = Depends(current_user),
        svc: Services = Depends(get_services),
    ) -> NotesResponse:
        notes = await notes_for(user, svc).list_notes()
        return NotesResponse(notes=[NotePayload(**note_to_payload(n, include_audio=False)) for n in notes])

    @app.post("/notes/search", response_model=NotesResponse)
    async def search_notes(
        body: SearchRequest,
        user: AuthenticatedUser = Depends(current_user),
        svc: Services = Depends(get_services),
    ) -> NotesResponse:
        notes = await notes_for(user, svc).search_notes(body.query)
        return NotesResponse(notes=[NotePayload(**note_to_payload(n)) for n in notes])

    @app.get("/notes/{note_id}", response_model=NoteResponse)
    async def get_note(
        note_id: str,
        user: AuthenticatedUser = Depends(current_user),
        svc: Services = Depends(get_services),
    ) -> NoteResponse:
        note = await notes_for(user, svc).get_note(note_id)
        return NoteResponse(note=NotePayload(**note_to_payload(note)))

    @app.delete("/notes/{note_id}", response_model=AckResponse)
    async def delete_note(
        note_id: str,
        user: AuthenticatedUser = Depends(current_user),
        svc: Services = Depends(get_services),
    ) -> AckResponse:
        if note_id in svc.busy_notes:
            raise NoteBusy(f"Note {note_id} is being regenerated")
        await notes_for(user, svc).delete_note(note_id)
        return AckResponse()

    @app.post("/notes/{note_id}/regenerate", response_model=RegenerateResponse)
    async def regenerate_note(
        note_id: str,
        body: RegenerateRequest,
        user: AuthenticatedUser = Depends(current_user),
        svc: Services = Depends(get_services),
    ) -> RegenerateResponse:
        repository = notes_for(user, svc)
        pipeline = NotePipeline(
            svc.transcriber,
            svc.analyzer,
            svc.embedder,
            repository,
            analysis_store=repository,
            busy_notes=svc.busy_notes,
        )
        note = await pipeline.regenerate(note_id, body.llmConfig.to_config())
        return RegenerateResponse(
            transcript=note.transcript,
            summary=note.summary,
            title=note.title,
            tags=note.tags,
            llmProvider=note.llm_provider,
        )

    @app.post("/chat", response_model=ChatResponse)
    async def chat(body: ChatRequest, svc: Services = Depends(get_services)) -> ChatResponse:
        history: List[Dict[str, Any]] = [item.model_dump() for item in body.history]
        reply = await svc.chat_backend.chat(body.context, history, body.message, body.llmConfig.to_config())
        return ChatResponse(response=reply)

    @app.get("/chat-sessions", response_model=SessionsResponse)
    async def list_sessions(
        user: AuthenticatedUser = Depends(current_user),
        svc: Services = Depends(get_services),
    ) -> SessionsResponse:
        sessions = await LocalChatSessionRepository(svc.storage, user.user_id).list_sessions()
        return SessionsResponse(sessions=[SessionPayload(**session_to_payload(s)) for s in sessions])

    @app.get("/chat-sessions/latest", response_model=SessionResponse)
    async def latest_session(
        user: AuthenticatedUser = Depends(current_user),
        svc: Services = Depends(get_services),
    ) -> SessionResponse:
        session = await LocalChatSessionRepository(svc.storage, user.user_id).latest_session()
        return SessionResponse(session=SessionPayload(**session_to_payload(session)) if session else None)

    @app.get("/chat-sessions/{session_id}", response_model=SessionResponse)
    async def get_session(
        session_id: str,
        user: AuthenticatedUser = Depends(current_user),
        svc: Services = Depends(get_services),
    ) -> SessionResponse:
        session = await LocalChatSessionRepository(svc.storage, user.user_id).get_session(session_id)
        return SessionResponse(session=SessionPayload(**session_to_payload(session)))

    @app.post("/chat-sessions", response_model=AckResponse)
    async def save_session(
        body: SaveSessionRequest,
        user: AuthenticatedUser = Depends(current_user),
        svc: Services = Depends(get_services),
    ) -> AckResponse:
        session = session_from_payload(body.session.model_dump())
        await LocalChatSessionRepository(svc.storage, user.user_id).save_session(session)
        return AckResponse()

    @app.delete("/chat-sessions/{session_id}", response_model=AckResponse)
    async def delete_session(
        session_id: str,
        user: AuthenticatedUser = Depends(current_user),
        svc: Services = Depends(get_services),
    ) -> AckResponse:
        await LocalChatSessionRepository(svc.storage, user.user_id).delete_session(session_id)
        return AckResponse()

    return app
