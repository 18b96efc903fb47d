"""Note pipeline: validate, transcribe, analyse, embed and persist."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict, List, Optional, Sequence, Set, Tuple

from .analysis import Analyzer, defaults_for
from .embeddings import Embedder
from .errors import NoteBusy, ValidationError, WonbizError
from .models import (
    SOURCE_AUDIO,
    SOURCE_PDF,
    AnalysisResult,
    AudioBlob,
    LLMConfig,
    Note,
    new_id,
    now_ms,
)
from .repository import AnalysisStore, NoteRepository
from .transcriber import StatusCallback, TranscriptionBackend, detect_text_language, validate_recording

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PipelineResult:
    note: Note
    embedding: List[float]
    saved: bool


def _notify(on_status: Optional[StatusCallback], message: str) -> None:
    if on_status is not None:
        on_status(message)


class NotePipeline:
    """Sequences the external calls that turn a recording into a stored note.

    Stages run strictly one after another. Persistence failures are logged and
    queued for :meth:`flush_pending` rather than failing note creation, so the
    caller still gets the note it just recorded.
    """

    def __init__(
        self,
        transcriber: TranscriptionBackend,
        analyzer: Analyzer,
        embedder: Embedder,
        repository: NoteRepository,
        analysis_store: Optional[AnalysisStore] = None,
        id_factory: Callable[[], str] = new_id,
        clock: Callable[[], int] = now_ms,
        busy_notes: Optional[Set[str]] = None,
    ) -> None:
        self._transcriber = transcriber
        self._analyzer = analyzer
        self._embedder = embedder
        self._repository = repository
        self._analysis_store = analysis_store
        self._id_factory = id_factory
        self._clock = clock
        self._active_attempts: Set[str] = set()
        self._busy_notes: Set[str] = busy_notes if busy_notes is not None else set()
        self.pending_saves: Dict[str, Tuple[Note, List[float]]] = {}

    # guards

    def is_busy(self, note_id: str) -> bool:
        return note_id in self._busy_notes

    def ensure_editable(self, note_id: str) -> None:
        if note_id in self._busy_notes:
            raise NoteBusy(f"Note {note_id} is being regenerated")

    @asynccontextmanager
    async def _hold(self, keys: Set[str], key: str, message: str) -> AsyncIterator[None]:
        if key in keys:
            raise NoteBusy(message)
        keys.add(key)
        try:
            yield
        finally:
            keys.discard(key)

    # creation

    async def create_note(
        self,
        audio: AudioBlob,
        duration: float,
        llm_config: LLMConfig,
        language: Optional[str] = None,
        on_status: Optional[StatusCallback] = None,
        attempt_id: Optional[str] = None,
    ) -> PipelineResult:
        """Run Validate, Transcribe, Analyze, Embed, Persist for one recording.

        ``language`` is only a transcription hint; analysis follows the language
        the transcriber detected. Without ``attempt_id`` the recording is keyed
        by its content, so the same audio cannot be processed twice at once.
        """
        validate_recording(audio, duration)
        attempt = attempt_id or audio.fingerprint
        async with self._hold(self._active_attempts, attempt, f"Recording {attempt} is already being processed"):
            logger.info("Processing recording %s (%d bytes, %.1fs)", attempt, audio.size, duration)

            _notify(on_status, "Transcribing audio...")
            transcription = await self._transcriber.transcribe(audio, language, on_status)

            _notify(on_status, "Analyzing transcript...")
            analysis = await self._analyzer.analyze(
                transcription.transcript, llm_config, transcription.detected_language
            )

            _notify(on_status, "Generating vector embedding...")
            embedding = await self._embedder.embed(transcription.transcript)

            note = self._build_note(
                analysis,
                transcription.transcript,
                transcription.detected_language,
                llm_config,
                duration=duration,
                source_type=SOURCE_AUDIO,
                audio=audio,
            )
            _notify(on_status, "Saving note...")
            saved = await self._persist(note, embedding)
        return PipelineResult(note=note, embedding=embedding, saved=saved)

    async def create_text_note(
        self,
        text: str,
        llm_config: LLMConfig,
        language: str = "en",
        on_status: Optional[StatusCallback] = None,
    ) -> PipelineResult:
        """Document variant: text was extracted elsewhere, so transcription is skipped."""
        if not text or not text.strip():
            raise ValidationError("Document text is empty")

        _notify(on_status, "Analyzing document...")
        analysis = await self._analyzer.analyze(text, llm_config, language)
        _notify(on_status, "Generating vector embedding...")
        embedding = await self._embedder.embed(text)

        note = self._build_note(analysis, text, language, llm_config, duration=0.0, source_type=SOURCE_PDF)
        _notify(on_status, "Saving note...")
        saved = await self._persist(note, embedding)
        return PipelineResult(note=note, embedding=embedding, saved=saved)

    def _build_note(
        self,
        analysis: AnalysisResult,
        original: str,
        language: str,
        llm_config: LLMConfig,
        *,
        duration: float,
        source_type: str,
        audio: Optional[AudioBlob] = None,
    ) -> Note:
        defaults = defaults_for(language)
        return Note(
            id=self._id_factory(),
            created_at=self._clock(),
            duration=duration,
            source_type=source_type,
            audio=audio,
            transcript=analysis.transcript or original,
            summary=analysis.summary or str(defaults["no_summary"]),
            title=analysis.title or str(defaults["title"]),
            tags=list(analysis.tags or []),
            llm_provider=llm_config.provider,
        )

    async def _persist(self, note: Note, embedding: Sequence[float]) -> bool:
        try:
            await self._repository.save_note(note, embedding)
        except WonbizError as exc:
            logger.warning("Failed to save note %s, keeping it for retry: %s", note.id, exc)
            self.pending_saves[note.id] = (note, list(embedding))
            return False
        self.pending_saves.pop(note.id, None)
        return True

    async def flush_pending(self) -> List[str]:
        """Retry queued saves; return the ids that are still unsaved."""
        for note, embedding in list(self.pending_saves.values()):
            await self._persist(note, embedding)
        return list(self.pending_saves)

    # regeneration

    async def regenerate(
        self,
        note_id: str,
        llm_config: LLMConfig,
        on_status: Optional[StatusCallback] = None,
    ) -> Note:
        """Retrieve, re-transcribe, re-analyse, re-embed and update the note in place.

        The embedding is always recomputed from the fresh raw transcript so
        vector search stays consistent with the stored text.
        """
        store = self._analysis_store
        if store is None:
            raise RuntimeError("Regeneration needs an analysis store")

        async with self._hold(self._busy_notes, note_id, f"Note {note_id} is already being regenerated"):
            note = await store.get_note(note_id)
            if note.source_type == SOURCE_PDF:
                raw_text = note.transcript
                language = detect_text_language(raw_text)
            else:
                if note.audio is None or note.audio.size == 0:
                    raise ValidationError(f"Note {note_id} has no audio to regenerate from")
                _notify(on_status, "Transcribing audio...")
                transcription = await self._transcriber.transcribe(note.audio, None, on_status)
                raw_text = transcription.transcript
                language = transcription.detected_language

            _notify(on_status, "Analyzing transcript...")
            analysis = await self._analyzer.analyze(raw_text, llm_config, language)
            defaults = defaults_for(language)
            analysis = AnalysisResult(
                transcript=analysis.transcript or raw_text,
                summary=analysis.summary or str(defaults["no_summary"]),
                title=analysis.title or str(defaults["title"]),
                tags=list(analysis.tags or []),
                degraded=analysis.degraded,
            )

            _notify(on_status, "Generating vector embedding...")
            embedding = await self._embedder.embed(raw_text)

            _notify(on_status, "Saving note...")
            updated = await store.update_analysis(note_id, analysis, llm_config.provider, embedding)
        logger.info("Regenerated note %s with %s", note_id, llm_config.provider)
        return updated
