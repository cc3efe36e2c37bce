"""Exception taxonomy for the audio generation pipeline."""

from typing import Optional, Sequence

from chapter2audio.models import FailureReason


class AudioPipelineError(Exception):
    """Base class for every error raised by chapter2audio.

    ``reason`` is the classification recorded on a failed job when the
    error happens after synthesis work has started.
    """

    reason = FailureReason.INTERNAL


class ValidationError(AudioPipelineError):
    """Input rejected before any provider call (empty text, bad limits, ...)."""

    reason = FailureReason.VALIDATION


class ChapterNotFoundError(ValidationError):
    def __init__(self, chapter_id: str):
        super().__init__(f"Capitolo non trovato: {chapter_id}")
        self.chapter_id = chapter_id


class PermissionDeniedError(AudioPipelineError):
    """The acting user does not own the chapter's book."""


class JobAlreadyActiveError(AudioPipelineError):
    """A pending or processing job already exists for the chapter."""

    def __init__(self, chapter_id: str, job=None):
        super().__init__(f"Generazione audio già in corso per il capitolo {chapter_id}")
        self.chapter_id = chapter_id
        self.job = job


class SynthesisError(AudioPipelineError):
    """The speech provider failed (or timed out) on one chunk."""

    reason = FailureReason.SYNTHESIS_PROVIDER

    def __init__(self, chunk_index: int, message: str):
        super().__init__(f"Sintesi fallita sul blocco {chunk_index}: {message}")
        self.chunk_index = chunk_index


class IncompleteSynthesisError(AudioPipelineError):
    """Assembly found chunks without audio."""

    reason = FailureReason.SYNTHESIS_PROVIDER

    def __init__(self, missing: Sequence[int], message: Optional[str] = None):
        missing = list(missing)
        super().__init__(message or f"Audio mancante per i blocchi: {missing}")
        self.missing = missing


class StorageError(AudioPipelineError):
    """Uploading the assembled artifact failed."""

    reason = FailureReason.STORAGE_UPLOAD


class InternalError(AudioPipelineError):
    """Unexpected condition, e.g. an illegal job state transition."""
