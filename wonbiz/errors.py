"""Error taxonomy shared by the pipeline, the HTTP client and the API server."""

from __future__ import annotations

from typing import Optional


class WonbizError(RuntimeError):
    """Base class for all recoverable application errors."""


class ValidationError(WonbizError):
    """Raised before any network call when input is unusable."""


class UpstreamUnavailable(WonbizError):
    """Raised when a provider is not configured (missing credential)."""


class UpstreamFailure(WonbizError):
    """Raised when a provider answers with a non-success status or an error field."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TranscriptionError(UpstreamFailure):
    """Raised when upload, request or polling of a transcription fails."""


class ParseDegradation(WonbizError):
    """Raised internally when a structured LLM reply cannot be parsed."""


class PersistenceFailure(WonbizError):
    """Raised when a repository write does not succeed."""


class SearchFailure(WonbizError):
    """Raised when the remote vector search cannot be performed."""


class NotFoundError(WonbizError):
    """Raised when a note or chat session does not exist for the caller."""


class AuthenticationError(WonbizError):
    """Raised when a bearer credential is missing or invalid."""

    def __init__(self, message: str, missing: bool = False) -> None:
        super().__init__(message)
        self.missing = missing


class ConversationBusy(WonbizError):
    """Raised when a message is sent while the session is still generating."""


class NoteBusy(WonbizError):
    """Raised when a note is mutated while a pipeline run holds it."""
