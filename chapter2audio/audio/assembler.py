"""Assembler - join per-chunk MP3 buffers into one artifact."""

import logging
from typing import Optional, Sequence

from chapter2audio.errors import IncompleteSynthesisError

logger = logging.getLogger(__name__)

# 128 kbit/s MP3. The duration below is an estimate from the byte size,
# not a decoded measurement.
ASSUMED_BYTES_PER_SECOND = 16000


def assemble(ordered_audio: Sequence[Optional[bytes]]) -> tuple[bytes, int]:
    """Concatenate chunk audio in order and estimate its duration.

    MP3 streams can be joined at frame boundaries, so plain byte
    concatenation yields a playable file.

    Returns:
        (artifact, estimated_duration_seconds)

    Raises:
        IncompleteSynthesisError: If any chunk has no audio. Partial
            narration is never assembled.
    """
    if not ordered_audio:
        raise IncompleteSynthesisError([], "Nessun audio da assemblare")

    missing = [i for i, audio in enumerate(ordered_audio) if not audio]
    if missing:
        raise IncompleteSynthesisError(missing)

    artifact = b"".join(ordered_audio)
    duration = estimate_duration_seconds(len(artifact))
    logger.info(
        "Audio assemblato: %d blocchi, %d byte, ~%ds",
        len(ordered_audio), len(artifact), duration,
    )
    return artifact, duration


def estimate_duration_seconds(size_bytes: int) -> int:
    """Approximate duration at a fixed bitrate, ``round(size / 16000)``.

    Non-empty audio never reports 0: anything under half a second is
    rounded up to 1 so a completed chapter always has a duration. Plain
    rounding would give 0 there.
    """
    if size_bytes <= 0:
        return 0
    return max(1, round(size_bytes / ASSUMED_BYTES_PER_SECOND))
