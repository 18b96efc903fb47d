"""Conversions at the repository boundary.

Audio is held as :class:`AudioBlob` bytes in memory and as base64 text plus a
MIME type on the wire and in the store. The helpers here are the only place
where one representation is turned into the other.
"""

from __future__ import annotations

import base64
import binascii
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .errors import ValidationError
from .models import SOURCE_AUDIO, AudioBlob, ChatMessage, ChatSession, Note

DEFAULT_MIME_TYPE = "audio/webm"

_MIME_BY_SUFFIX = {
    ".webm": "audio/webm",
    ".wav": "audio/wav",
    ".mp3": "audio/mpeg",
    ".m4a": "audio/mp4",
    ".ogg": "audio/ogg",
    ".flac": "audio/flac",
}


def encode_audio(blob: AudioBlob) -> Tuple[str, str]:
    return base64.b64encode(blob.data).decode("ascii"), blob.mime_type or DEFAULT_MIME_TYPE


def decode_audio(data: str, mime_type: Optional[str] = None) -> AudioBlob:
    try:
        raw = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError(f"Audio payload is not valid base64: {exc}") from exc
    return AudioBlob(data=raw, mime_type=mime_type or DEFAULT_MIME_TYPE)


def guess_mime_type(path: Path) -> str:
    return _MIME_BY_SUFFIX.get(path.suffix.lower(), DEFAULT_MIME_TYPE)


def note_to_payload(note: Note, include_audio: bool = True) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": note.id,
        "title": note.title,
        "summary": note.summary,
        "transcript": note.transcript,
        "tags": list(note.tags),
        "createdAt": note.created_at,
        "duration": note.duration,
        "sourceType": note.source_type,
        "llmProvider": note.llm_provider,
        "audioData": None,
        "audioMimeType": None,
    }
    if include_audio and note.audio is not None:
        payload["audioData"], payload["audioMimeType"] = encode_audio(note.audio)
    if note.vector_score is not None:
        payload["vectorScore"] = note.vector_score
    return payload


def note_from_payload(payload: Dict[str, Any]) -> Note:
    audio = None
    if payload.get("audioData"):
        audio = decode_audio(payload["audioData"], payload.get("audioMimeType"))
    score = payload.get("vectorScore")
    return Note(
        id=str(payload["id"]),
        title=payload.get("title") or "",
        summary=payload.get("summary") or "",
        transcript=payload.get("transcript") or "",
        tags=list(payload.get("tags") or []),
        created_at=int(payload.get("createdAt") or 0),
        duration=float(payload.get("duration") or 0),
        source_type=payload.get("sourceType") or SOURCE_AUDIO,
        llm_provider=payload.get("llmProvider"),
        vector_score=float(score) if score is not None else None,
        audio=audio,
    )


def message_to_payload(message: ChatMessage) -> Dict[str, Any]:
    return {"id": message.id, "role": message.role, "text": message.text, "timestamp": message.timestamp}


def session_to_payload(session: ChatSession) -> Dict[str, Any]:
    return {
        "id": session.id,
        "title": session.title,
        "messages": [message_to_payload(m) for m in session.messages],
        "createdAt": session.created_at,
        "updatedAt": session.updated_at,
    }


def session_from_payload(payload: Dict[str, Any]) -> ChatSession:
    messages = [
        ChatMessage(id=str(m["id"]), role=m["role"], text=m.get("text", ""), timestamp=int(m.get("timestamp") or 0))
        for m in payload.get("messages") or []
    ]
    return ChatSession(
        id=str(payload["id"]),
        title=payload.get("title") or "",
        messages=messages,
        created_at=int(payload.get("createdAt") or 0),
        updated_at=int(payload.get("updatedAt") or 0),
    )
