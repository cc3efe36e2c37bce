"""Segmenter - split chapter text into provider-sized chunks.

Two limits are involved:

* ``max_fragment_bytes``: the provider's per-sentence ceiling, measured on
  the UTF-8 encoding. Sentences above it are split on whitespace, and a
  single word above it is cut at a code point boundary.
* ``max_chunk_chars``: the request-sized ceiling. Fragments are packed in
  order into chunks up to this many characters. A fragment longer than
  that is split on whitespace the same way, and only a single word over
  the limit is cut.

Whitespace inside a chunk is normalised to single spaces; apart from that,
joining all chunks gives back the original text.
"""

import logging
import re
from typing import Callable

from chapter2audio.errors import ValidationError
from chapter2audio.models import TextChunk

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHUNK_CHARS = 4000
DEFAULT_MAX_FRAGMENT_BYTES = 800

# Smallest ceiling that still fits any single UTF-8 code point
MIN_FRAGMENT_BYTES = 4

# A run of text ending in terminal punctuation, or the unterminated tail
_SENTENCE_RE = re.compile(r"[^.!?]*[.!?]+|[^.!?]+")


def segment(
    text: str,
    max_chunk_chars: int = DEFAULT_MAX_CHUNK_CHARS,
    max_fragment_bytes: int = DEFAULT_MAX_FRAGMENT_BYTES,
) -> list[TextChunk]:
    """Split ``text`` into an ordered list of chunks.

    Raises:
        ValidationError: If the text is empty or whitespace-only, or the
            limits are unusable.
    """
    if max_chunk_chars <= 0:
        raise ValidationError(f"Limite caratteri non valido: {max_chunk_chars}")
    if max_fragment_bytes < MIN_FRAGMENT_BYTES:
        raise ValidationError(f"Limite byte non valido: {max_fragment_bytes}")
    if not text or not text.strip():
        raise ValidationError("Il testo del capitolo è vuoto")

    fragments: list[str] = []
    for sentence in split_sentences(text):
        for fragment in split_sentence(sentence, max_fragment_bytes):
            fragments.extend(_split_words(fragment, max_chunk_chars, len, _cut_chars))

    chunks = [
        TextChunk(index=i, text=chunk_text)
        for i, chunk_text in enumerate(_pack(fragments, max_chunk_chars))
    ]
    logger.debug(
        "Testo di %d caratteri diviso in %d blocchi (%d frammenti)",
        len(text), len(chunks), len(fragments),
    )
    return chunks


def split_sentences(text: str) -> list[str]:
    """Split on ``.``, ``!`` and ``?``, keeping the punctuation with its sentence."""
    sentences = []
    for match in _SENTENCE_RE.finditer(text):
        sentence = " ".join(match.group(0).split())
        if sentence:
            sentences.append(sentence)
    return sentences


def split_sentence(sentence: str, max_bytes: int) -> list[str]:
    """Split one sentence into word-aligned pieces of at most ``max_bytes``.

    A word that alone exceeds the ceiling is force-cut; that is the only
    case where a piece does not end on a word boundary.
    """
    return _split_words(sentence, max_bytes, _byte_len, force_split)


def _split_words(
    text: str,
    limit: int,
    size: Callable[[str], int],
    cut: Callable[[str, int], list[str]],
) -> list[str]:
    """Greedy word packing of ``text`` into pieces with ``size(piece) <= limit``.

    ``cut`` is only applied to a single word that is over the limit.
    """
    if size(text) <= limit:
        return [text]

    parts: list[str] = []
    current = ""
    for word in text.split():
        candidate = f"{current} {word}" if current else word
        if size(candidate) <= limit:
            current = candidate
            continue

        if current:
            parts.append(current)
            current = ""

        if size(word) <= limit:
            current = word
        else:
            pieces = cut(word, limit)
            parts.extend(pieces[:-1])
            current = pieces[-1]

    if current:
        parts.append(current)
    return parts


def force_split(word: str, max_bytes: int) -> list[str]:
    """Cut ``word`` into pieces of at most ``max_bytes`` UTF-8 bytes.

    Cuts only fall between code points, so no piece holds a partial
    multi-byte sequence. ``"".join(pieces) == word``.
    """
    pieces: list[str] = []
    start = 0
    size = 0
    for i, char in enumerate(word):
        char_size = len(char.encode("utf-8"))
        if size + char_size > max_bytes:
            pieces.append(word[start:i])
            start = i
            size = 0
        size += char_size
    pieces.append(word[start:])
    return pieces


def _cut_chars(word: str, max_chars: int) -> list[str]:
    return [word[i:i + max_chars] for i in range(0, len(word), max_chars)]


def _pack(fragments: list[str], max_chars: int) -> list[str]:
    """Greedily join fragments with single spaces up to ``max_chars``."""
    chunks: list[str] = []
    current = ""
    for fragment in fragments:
        candidate = f"{current} {fragment}" if current else fragment
        if len(candidate) <= max_chars:
            current = candidate
        else:
            chunks.append(current)
            current = fragment
    if current:
        chunks.append(current)
    return chunks


def _byte_len(text: str) -> int:
    return len(text.encode("utf-8"))
