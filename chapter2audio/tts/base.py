"""Speech provider interface."""

from abc import ABC, abstractmethod
from typing import Optional

from chapter2audio.models import TTSConfig, VoiceProfile

CONTENT_TYPES = {
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
}


class TTSEngine(ABC):
    """A stateless adapter around one speech provider.

    Subclasses map the two abstract voice profiles to provider voices in
    ``VOICE_PROFILES`` and turn one block of text into one encoded audio
    buffer. Retries and error classification happen in the caller.
    """

    VOICE_PROFILES: dict[VoiceProfile, str] = {}

    @abstractmethod
    def initialize(self) -> None:
        """Check the provider client is importable.

        Raises:
            RuntimeError: If the provider library is missing.
        """

    @abstractmethod
    def synthesize(self, text: str, config: TTSConfig) -> bytes:
        """Return encoded audio for ``text``, honouring ``config.timeout``."""

    @abstractmethod
    def list_voices(self, language: Optional[str] = None) -> list[dict]:
        """Provider voices as dicts with at least 'name' and 'language'."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    @abstractmethod
    def output_format(self) -> str:
        """Container of the returned audio, e.g. 'mp3'."""

    @property
    def content_type(self) -> str:
        return CONTENT_TYPES.get(self.output_format, "application/octet-stream")

    def voice_for(self, profile) -> str:
        """Provider voice for ``profile``; anything unrecognised gets the female voice."""
        profile = VoiceProfile.parse(profile)
        return self.VOICE_PROFILES.get(profile) or self.VOICE_PROFILES[VoiceProfile.FEMALE]
