"""Audio transcription backends."""

from __future__ import annotations

import logging
from typing import Callable, Optional, Protocol

import httpx

from .errors import TranscriptionError, UpstreamUnavailable, ValidationError
from .http import borrow_client, error_detail
from .models import AudioBlob, Config, TranscriptionResult
from .polling import PollTimeout, RetryPolicy

logger = logging.getLogger(__name__)

MIN_DURATION_SECONDS = 0.1
TERMINAL_STATES = {"completed", "error"}
EMPTY_TRANSCRIPT = "Transcription completed but no text available."

StatusCallback = Callable[[str], None]


class TranscriptionBackend(Protocol):
    """Common interface for transcription backends."""

    async def transcribe(
        self,
        audio: AudioBlob,
        language: Optional[str] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> TranscriptionResult:
        """Return the transcript text and the detected speech language."""


def validate_recording(audio: Optional[AudioBlob], duration: Optional[float] = None) -> None:
    """Reject recordings providers would refuse, before any network call."""
    if audio is None or audio.size == 0:
        raise ValidationError("Audio blob is empty")
    if duration is not None and duration < MIN_DURATION_SECONDS:
        raise ValidationError(
            f"Recording is too short ({duration:.1f}s). "
            f"Please record for at least {MIN_DURATION_SECONDS:g} seconds."
        )


def normalise_language(code: Optional[str]) -> str:
    if code and code.lower().startswith("zh"):
        return "zh"
    return code.lower() if code else "en"


def detect_text_language(text: str) -> str:
    """Guess "zh" or "en" for stored text that carries no language tag."""
    letters = [ch for ch in text if ch.isalpha()]
    if not letters:
        return "en"
    han = sum(1 for ch in letters if "\u4e00" <= ch <= "\u9fff")
    return "zh" if han * 3 >= len(letters) else "en"


def _notify(on_status: Optional[StatusCallback], message: str) -> None:
    if on_status is not None:
        on_status(message)


class AssemblyAIBackend:
    """Hosted transcription: upload, request, then poll until terminal."""

    def __init__(
        self,
        config: Config,
        client: Optional[httpx.AsyncClient] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> None:
        self._api_key = config.assemblyai_api_key
        self._base_url = config.assemblyai_base_url.rstrip("/")
        self._timeout = config.provider_timeout
        self._client = client
        self._policy = policy or RetryPolicy(
            interval=config.transcription_poll_interval,
            max_attempts=config.transcription_max_attempts,
        )

    async def transcribe(
        self,
        audio: AudioBlob,
        language: Optional[str] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> TranscriptionResult:
        validate_recording(audio)
        if not self._api_key:
            raise UpstreamUnavailable("AssemblyAI API key not configured")
        headers = {"Authorization": self._api_key}

        async with borrow_client(self._client, self._timeout) as client:
            _notify(on_status, "Uploading audio...")
            logger.info("Uploading %d bytes for transcription (language=%s)", audio.size, language or "auto")
            try:
                upload = await client.post(
                    f"{self._base_url}/upload",
                    headers={**headers, "Content-Type": "application/octet-stream"},
                    content=audio.data,
                )
            except httpx.HTTPError as exc:
                raise TranscriptionError(f"Audio upload failed: {exc}") from exc
            if upload.status_code >= 400:
                raise TranscriptionError(f"Audio upload failed: {error_detail(upload)}", upload.status_code)
            audio_url = upload.json().get("upload_url")

            _notify(on_status, "Requesting transcription...")
            request_body: dict = {"audio_url": audio_url, "punctuate": True, "format_text": True}
            if language in ("en", "zh"):
                request_body["language_code"] = language
            else:
                request_body["language_detection"] = True
            try:
                created = await client.post(f"{self._base_url}/transcript", headers=headers, json=request_body)
            except httpx.HTTPError as exc:
                raise TranscriptionError(f"Transcription request failed: {exc}") from exc
            if created.status_code >= 400:
                raise TranscriptionError(
                    f"Transcription request failed: {error_detail(created)}", created.status_code
                )
            transcript_id = created.json().get("id")
            logger.info("Transcription started, id=%s", transcript_id)

            _notify(on_status, "Waiting for transcription...")

            async def fetch_status() -> dict:
                try:
                    response = await client.get(f"{self._base_url}/transcript/{transcript_id}", headers=headers)
                except httpx.HTTPError as exc:
                    raise TranscriptionError(f"Status check failed: {exc}") from exc
                if response.status_code >= 400:
                    raise TranscriptionError(f"Status check failed: {response.status_code}", response.status_code)
                return response.json()

            try:
                status = await self._policy.poll(fetch_status, lambda data: data.get("status") in TERMINAL_STATES)
            except PollTimeout as exc:
                raise PollTimeout("Transcription timed out") from exc

        if status["status"] == "error":
            logger.error("Transcription %s failed: %s", transcript_id, status.get("error"))
            raise TranscriptionError(f"Transcription failed: {status.get('error')}")

        logger.info("Transcription %s completed", transcript_id)
        detected = status.get("language_code") or language
        return TranscriptionResult(
            transcript=status.get("text") or EMPTY_TRANSCRIPT,
            detected_language=normalise_language(detected),
        )


def get_backend(config: Config, client: Optional[httpx.AsyncClient] = None) -> TranscriptionBackend:
    """Return the hosted transcription backend for this configuration."""
    return AssemblyAIBackend(config, client=client)
