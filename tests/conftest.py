"""Shared fixtures: a temporary database, a seeded chapter and a fake TTS engine."""

import threading
from typing import Optional

import pytest

from chapter2audio.db import Database
from chapter2audio.feed import ChangeFeed
from chapter2audio.jobs import JobStore
from chapter2audio.models import Book, Chapter, TTSConfig, VoiceProfile
from chapter2audio.pipeline import AudioService
from chapter2audio.storage import ArtifactPublisher, LocalObjectStorage
from chapter2audio.synthesizer import Synthesizer
from chapter2audio.tts.base import TTSEngine

CHAPTER_TEXT = "First sentence here. Second sentence here. Third sentence here."


class FakeEngine(TTSEngine):
    """Returns ``<voice>:[text]`` as audio; can fail or block on chosen texts."""

    VOICE_PROFILES = {
        VoiceProfile.FEMALE: "fake-female",
        VoiceProfile.MALE: "fake-male",
    }

    def __init__(self, fail_on: Optional[str] = None, gate: Optional[threading.Event] = None):
        self.fail_on = fail_on
        self.gate = gate
        self.calls: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def initialize(self) -> None:
        pass

    def synthesize(self, text: str, config: TTSConfig) -> bytes:
        with self._lock:
            self.calls.append((text, config.voice))
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.fail_on and self.fail_on in text:
            raise RuntimeError("provider unavailable")
        return f"{config.voice}:[{text}]".encode()

    def list_voices(self, language=None) -> list[dict]:
        return [{"name": v, "language": "en-US"} for v in self.VOICE_PROFILES.values()]

    @property
    def name(self) -> str:
        return "Fake"

    @property
    def output_format(self) -> str:
        return "mp3"


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "test.db")
    database.init()
    database.insert_book(Book(id="book1", owner_id="alice", title="Test Book"))
    database.insert_chapter(Chapter(id="ch1", book_id="book1", content=CHAPTER_TEXT, title="One"))
    return database


@pytest.fixture
def feed():
    return ChangeFeed()


@pytest.fixture
def store(db, feed):
    return JobStore(db, feed)


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def storage(tmp_path):
    return LocalObjectStorage(tmp_path / "media", "/media")


def make_service(db, feed, engine, storage, **kwargs) -> AudioService:
    options = dict(
        max_chunk_chars=25,
        max_fragment_bytes=800,
        max_workers=1,
        run_inline=True,
    )
    options.update(kwargs)
    return AudioService(
        db,
        JobStore(db, feed),
        Synthesizer(engine, timeout=5),
        ArtifactPublisher(storage),
        feed,
        **options,
    )


@pytest.fixture
def service(db, feed, engine, storage):
    return make_service(db, feed, engine, storage)
