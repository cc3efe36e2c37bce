"""Synthesizer adapter - one provider call per chunk, results kept in chunk order."""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Optional, Sequence

from chapter2audio.errors import SynthesisError
from chapter2audio.models import TextChunk, TTSConfig, VoiceProfile
from chapter2audio.tts.base import TTSEngine

logger = logging.getLogger(__name__)

ChunkProgressCallback = Callable[[int, int], None]

DEFAULT_TIMEOUT = 60.0


class Synthesizer:
    """Calls a :class:`TTSEngine` for each chunk.

    No retries happen here; any provider error or timeout becomes a
    :class:`SynthesisError` carrying the chunk index.
    """

    def __init__(
        self,
        engine: TTSEngine,
        timeout: float = DEFAULT_TIMEOUT,
        speed: float = 1.0,
        language: str = "en-US",
    ):
        self.engine = engine
        self.timeout = timeout
        self.speed = speed
        self.language = language

    @property
    def content_type(self) -> str:
        return self.engine.content_type

    def synthesize(self, chunk: TextChunk, voice_profile=VoiceProfile.FEMALE) -> bytes:
        config = TTSConfig(
            voice=self.engine.voice_for(voice_profile),
            speed=self.speed,
            language=self.language,
            timeout=self.timeout,
        )
        try:
            return self.engine.synthesize(chunk.text, config)
        except (TimeoutError, asyncio.TimeoutError) as e:
            raise SynthesisError(chunk.index, f"timeout dopo {self.timeout:g}s") from e
        except Exception as e:
            raise SynthesisError(chunk.index, str(e) or type(e).__name__) from e

    def synthesize_all(
        self,
        chunks: Sequence[TextChunk],
        voice_profile=VoiceProfile.FEMALE,
        max_workers: int = 1,
        on_progress: Optional[ChunkProgressCallback] = None,
    ) -> list[Optional[bytes]]:
        """Synthesize every chunk, returning audio indexed by ``chunk.index``.

        With ``max_workers > 1`` chunks are dispatched to a bounded thread
        pool; results are still placed by index, never by completion order.
        An empty provider response is stored as ``None`` so the assembler
        can refuse the gap. The first failure aborts the remaining work.
        """
        results: list[Optional[bytes]] = [None] * len(chunks)
        total = len(chunks)
        done = 0

        if max_workers <= 1 or total <= 1:
            for chunk in chunks:
                logger.debug("Sintesi blocco %d/%d", chunk.index + 1, total)
                results[chunk.index] = self.synthesize(chunk, voice_profile) or None
                done += 1
                if on_progress:
                    on_progress(done, total)
            return results

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="tts") as pool:
            futures = {pool.submit(self.synthesize, chunk, voice_profile): chunk for chunk in chunks}
            try:
                for future in as_completed(futures):
                    chunk = futures[future]
                    results[chunk.index] = future.result() or None
                    done += 1
                    if on_progress:
                        on_progress(done, total)
            except SynthesisError:
                for future in futures:
                    future.cancel()
                raise
        return results
