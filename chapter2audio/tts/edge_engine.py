"""Edge TTS engine - Microsoft Edge online neural voices, no credentials needed."""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from chapter2audio.models import TTSConfig, VoiceProfile
from chapter2audio.tts.base import TTSEngine
from chapter2audio.tts import register_engine

logger = logging.getLogger(__name__)


def run_sync(coro):
    """Run ``coro`` to completion from synchronous code.

    Inside a running event loop (the web app calls engines from request
    handlers) the coroutine gets its own loop on a helper thread, since
    ``asyncio.run`` refuses to nest.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    with ThreadPoolExecutor(max_workers=1, thread_name_prefix="edge-tts") as pool:
        return pool.submit(asyncio.run, coro).result()


@register_engine("edge")
class EdgeTTSEngine(TTSEngine):
    """Streams MP3 audio from the Edge read-aloud service."""

    VOICE_PROFILES = {
        VoiceProfile.FEMALE: "en-US-AriaNeural",
        VoiceProfile.MALE: "en-US-GuyNeural",
    }

    def initialize(self) -> None:
        try:
            import edge_tts  # noqa: F401
        except ImportError as e:
            raise RuntimeError("edge-tts non installato. Installa con: pip install edge-tts") from e

    def synthesize(self, text: str, config: TTSConfig) -> bytes:
        # wait_for raises TimeoutError, which the synthesizer reports per chunk
        return run_sync(
            asyncio.wait_for(self._stream_audio(text, config), timeout=config.timeout)
        )

    async def _stream_audio(self, text: str, config: TTSConfig) -> bytes:
        import edge_tts

        communicate = edge_tts.Communicate(
            text,
            config.voice or self.voice_for(VoiceProfile.FEMALE),
            rate=self._speed_to_rate(config.speed),
            pitch=config.pitch or "+0Hz",
        )
        audio = bytearray()
        async for message in communicate.stream():
            if message["type"] == "audio":
                audio.extend(message["data"])
        logger.debug("Edge TTS: %d caratteri → %d byte", len(text), len(audio))
        return bytes(audio)

    def list_voices(self, language: Optional[str] = None) -> list[dict]:
        import edge_tts

        voices = run_sync(edge_tts.list_voices())
        prefix = (language or "").lower()
        profiles = {voice: profile.value for profile, voice in self.VOICE_PROFILES.items()}
        return [
            {
                "name": v["ShortName"],
                "language": v.get("Locale", ""),
                "gender": v.get("Gender", ""),
                "profile": profiles.get(v["ShortName"]),
            }
            for v in voices
            if v.get("Locale", "").lower().startswith(prefix)
        ]

    @property
    def name(self) -> str:
        return "Edge TTS"

    @property
    def output_format(self) -> str:
        return "mp3"

    @staticmethod
    def _speed_to_rate(speed: float) -> str:
        """1.2 → '+20%', 0.8 → '-20%'."""
        return f"{round((speed - 1.0) * 100):+d}%"
