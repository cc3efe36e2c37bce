"""AudioService - orchestrates chapter text → TTS → published MP3.

Request time (synchronous, never creates a job on failure):
    chapter lookup, owner check, chapter id check, retry lookup by
    request key, text validation and segmentation, live-job guard.

Background work (after the job exists):
    processing → synthesize chunks → assemble → publish → completed,
    or failed with a classified reason.
"""

import logging
import threading
from pathlib import Path
from typing import Callable, Optional

from chapter2audio.audio.assembler import assemble
from chapter2audio.config import Settings
from chapter2audio.db import Database
from chapter2audio.errors import (
    AudioPipelineError,
    ChapterNotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from chapter2audio.feed import ChangeFeed, EntityChanged
from chapter2audio.jobs import JobStore
from chapter2audio.models import FailureReason, SynthesisJob, TextChunk, VoiceProfile
from chapter2audio.segmenter import segment
from chapter2audio.storage import (
    ArtifactPublisher,
    LocalObjectStorage,
    SupabaseObjectStorage,
    check_chapter_id,
)
from chapter2audio.synthesizer import Synthesizer

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int, int], None]


class AudioService:
    """Entry point for generation requests and job status queries."""

    def __init__(
        self,
        db: Database,
        store: JobStore,
        synthesizer: Synthesizer,
        publisher: ArtifactPublisher,
        feed: Optional[ChangeFeed] = None,
        *,
        max_chunk_chars: int,
        max_fragment_bytes: int,
        max_workers: int = 2,
        run_inline: bool = False,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.db = db
        self.store = store
        self.synthesizer = synthesizer
        self.publisher = publisher
        self.feed = feed
        self.max_chunk_chars = max_chunk_chars
        self.max_fragment_bytes = max_fragment_bytes
        self.max_workers = max_workers
        self.run_inline = run_inline
        self.on_progress = on_progress

    def generate(
        self,
        chapter_id: str,
        user_id: str,
        text: Optional[str] = None,
        voice=None,
        *,
        request_key: Optional[str] = None,
        regenerate: bool = True,
    ) -> SynthesisJob:
        """Accept a generation request and return the job (normally ``pending``).

        ``text`` defaults to the stored chapter content and ``voice`` to the
        book's voice preference.

        Raises:
            ChapterNotFoundError, ValidationError, PermissionDeniedError,
            JobAlreadyActiveError: Before any job is created.
        """
        chapter = self.db.get_chapter(chapter_id)
        if chapter is None:
            raise ChapterNotFoundError(chapter_id)
        book = self.db.get_book(chapter.book_id)
        if book is None or book.owner_id != user_id:
            raise PermissionDeniedError(
                f"L'utente {user_id} non può generare audio per il capitolo {chapter_id}"
            )

        check_chapter_id(chapter_id)

        # A retried call gets its job back without re-validating the body
        if request_key:
            existing = self.store.find_by_request_key(chapter_id, request_key)
            if existing is not None:
                return existing

        text = chapter.content if text is None else text
        profile = VoiceProfile.parse(voice) if voice else book.voice_preference
        chunks = segment(text, self.max_chunk_chars, self.max_fragment_bytes)

        job, created = self.store.create(
            chapter_id, user_id, profile,
            request_key=request_key, regenerate=regenerate,
        )
        if not created:
            return job

        logger.info(
            "Generazione audio capitolo %s: %d blocchi, voce %s",
            chapter_id, len(chunks), profile.value,
        )
        if self.run_inline:
            self._run(job, chunks, profile)
        else:
            thread = threading.Thread(
                target=self._run, args=(job, chunks, profile), daemon=True,
            )
            thread.start()
        return job

    def _run(self, job: SynthesisJob, chunks: list[TextChunk], profile: VoiceProfile) -> None:
        """Drive one job to a terminal state. Never raises."""
        try:
            self.store.start(job.id)

            def on_chunk(done: int, total: int) -> None:
                if self.on_progress:
                    self.on_progress(job.chapter_id, done, total)

            audio = self.synthesizer.synthesize_all(
                chunks, profile, max_workers=self.max_workers, on_progress=on_chunk,
            )
            artifact, duration = assemble(audio)
            reference = self.publisher.publish(
                job.chapter_id, artifact, self.synthesizer.content_type,
            )
            self.store.complete(job.id, reference, duration)
            logger.info("Audio pronto per il capitolo %s: %s (~%ds)",
                        job.chapter_id, reference, duration)

        except AudioPipelineError as e:
            logger.error("Generazione fallita per il job %s: %s", job.id, e)
            self._fail(job, e.reason, str(e))
        except Exception as e:
            logger.exception("Errore inatteso per il job %s", job.id)
            self._fail(job, FailureReason.INTERNAL, str(e) or type(e).__name__)

    def _fail(self, job: SynthesisJob, reason: FailureReason, message: str) -> None:
        try:
            self.store.fail(job.id, reason, message)
        except AudioPipelineError:
            logger.exception("Impossibile registrare il fallimento del job %s", job.id)

    def job_status(self, chapter_id: str) -> Optional[SynthesisJob]:
        return self.store.latest(chapter_id)

    def job_history(self, chapter_id: str) -> list[SynthesisJob]:
        return self.store.history(chapter_id)

    def set_voice_preference(self, book_id: str, user_id: str, voice: str) -> VoiceProfile:
        """Store the book's default voice (owner only)."""
        if voice not in (VoiceProfile.MALE.value, VoiceProfile.FEMALE.value):
            raise ValidationError("Preferenza voce non valida (male/female)")
        book = self.db.get_book(book_id)
        if book is None:
            raise ValidationError(f"Libro non trovato: {book_id}")
        if book.owner_id != user_id:
            raise PermissionDeniedError(f"L'utente {user_id} non può modificare il libro {book_id}")
        profile = VoiceProfile(voice)
        self.db.update_book_voice(book_id, profile)
        if self.feed is not None:
            self.feed.publish(EntityChanged(
                table="books", entity_id=book_id, event="update",
                payload={"voice_preference": profile.value},
            ))
        return profile


def create_service(
    settings: Settings,
    feed: Optional[ChangeFeed] = None,
    engine=None,
    **kwargs,
) -> AudioService:
    """Build an :class:`AudioService` from settings.

    Extra keyword arguments (``run_inline``, ``on_progress``) are passed
    through to the service.
    """
    from chapter2audio.tts import get_engine, import_engines

    db = Database(settings.db_path)
    db.init()

    if engine is None:
        import_engines()
        engine = get_engine(settings.engine)
        engine.initialize()

    if settings.uses_supabase:
        storage = SupabaseObjectStorage(
            settings.supabase_url, settings.supabase_service_key, settings.storage_bucket,
        )
    else:
        storage = LocalObjectStorage(Path(settings.data_dir) / "media", settings.public_base_url)

    return AudioService(
        db,
        JobStore(db, feed),
        Synthesizer(engine, timeout=settings.synthesis_timeout),
        ArtifactPublisher(storage),
        feed,
        max_chunk_chars=settings.max_chunk_chars,
        max_fragment_bytes=settings.max_fragment_bytes,
        max_workers=settings.max_workers,
        **kwargs,
    )
