"""Google Cloud TTS engine - Chirp 3 HD voices, requires the 'google' extra."""

import logging
from typing import Optional

from chapter2audio.models import TTSConfig, VoiceProfile
from chapter2audio.tts.base import TTSEngine
from chapter2audio.tts import register_engine

logger = logging.getLogger(__name__)


@register_engine("google")
class GoogleTTSEngine(TTSEngine):
    """TTS engine using Google Cloud Text-to-Speech.

    Credentials come from the usual Application Default Credentials
    (``GOOGLE_APPLICATION_CREDENTIALS`` and friends).
    """

    VOICE_PROFILES = {
        VoiceProfile.FEMALE: "en-US-Chirp3-HD-Aoede",
        VoiceProfile.MALE: "en-US-Chirp3-HD-Umbriel",
    }

    def __init__(self):
        self._client = None

    def initialize(self) -> None:
        try:
            from google.cloud import texttospeech  # noqa: F401
        except ImportError as e:
            raise RuntimeError(
                "google-cloud-texttospeech non installato. "
                "Installa con: pip install 'chapter2audio[google]'"
            ) from e

    def _get_client(self):
        if self._client is None:
            from google.cloud import texttospeech

            self._client = texttospeech.TextToSpeechClient()
        return self._client

    def synthesize(self, text: str, config: TTSConfig) -> bytes:
        from google.cloud import texttospeech

        voice = config.voice or self.voice_for(VoiceProfile.FEMALE)
        response = self._get_client().synthesize_speech(
            input=texttospeech.SynthesisInput(text=text),
            voice=texttospeech.VoiceSelectionParams(
                language_code=config.language,
                name=voice,
            ),
            audio_config=texttospeech.AudioConfig(
                audio_encoding=texttospeech.AudioEncoding.MP3,
                speaking_rate=config.speed,
                pitch=0.0,
            ),
            timeout=config.timeout,
        )
        return response.audio_content

    def list_voices(self, language: Optional[str] = None) -> list[dict]:
        response = self._get_client().list_voices(language_code=language or "")
        return [
            {
                "name": v.name,
                "language": ", ".join(v.language_codes),
                "gender": v.ssml_gender.name.capitalize(),
            }
            for v in response.voices
        ]

    @property
    def name(self) -> str:
        return "Google Cloud TTS"

    @property
    def output_format(self) -> str:
        return "mp3"
