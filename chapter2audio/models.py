"""Data models for the chapter2audio pipeline."""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class JobState(str, Enum):
    """Lifecycle of a synthesis job: pending → processing → completed | failed."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_live(self) -> bool:
        return self in (JobState.PENDING, JobState.PROCESSING)

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


class FailureReason(str, Enum):
    VALIDATION = "validation"
    SYNTHESIS_PROVIDER = "synthesis-provider"
    STORAGE_UPLOAD = "storage-upload"
    INTERNAL = "internal"


class VoiceProfile(str, Enum):
    MALE = "male"
    FEMALE = "female"

    @classmethod
    def parse(cls, value) -> "VoiceProfile":
        """Map a user supplied value to a profile; anything unknown is female."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.FEMALE


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Book:
    """The owning book, only the fields the pipeline needs."""
    id: str
    owner_id: str
    title: str = ""
    voice_preference: VoiceProfile = VoiceProfile.FEMALE


@dataclass
class Chapter:
    """A unit of narratable content."""
    id: str
    book_id: str
    content: str
    order: int = 0
    title: str = ""
    audio_url: Optional[str] = None
    duration_seconds: Optional[int] = None


@dataclass(frozen=True)
class TextChunk:
    """An ordered, zero-indexed piece of chapter text sized for one provider request."""
    index: int
    text: str

    @property
    def byte_length(self) -> int:
        return len(self.text.encode("utf-8"))


@dataclass
class TTSConfig:
    """Configuration for a single TTS request."""
    voice: str
    speed: float = 1.0
    pitch: Optional[str] = None
    language: str = "en-US"
    timeout: float = 60.0


@dataclass
class SynthesisJob:
    """One end-to-end generation attempt for a chapter."""
    id: str
    chapter_id: str
    user_id: str
    voice: VoiceProfile = VoiceProfile.FEMALE
    state: JobState = JobState.PENDING
    audio_reference: Optional[str] = None
    duration_seconds: Optional[int] = None
    failure_reason: Optional[FailureReason] = None
    error_message: Optional[str] = None
    request_key: Optional[str] = None
    created_at: str = field(default_factory=utcnow)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    # Monotonic per chapter: job row sequence * 3 + state rank.
    sequence: int = 0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["voice"] = self.voice.value
        data["state"] = self.state.value
        data["failure_reason"] = self.failure_reason.value if self.failure_reason else None
        return data
