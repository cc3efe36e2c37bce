"""Job store - lifecycle of synthesis jobs.

State machine: pending → processing → completed | failed

At most one job per chapter may be live (pending or processing). Every
committed transition is published on the change feed while the store lock
is held, so subscribers see a chapter's transitions in commit order and
never before they are persisted.
"""

import logging
import sqlite3
import threading
import uuid
from typing import Optional

from chapter2audio.db import Database, StaleTransitionError
from chapter2audio.errors import InternalError, JobAlreadyActiveError
from chapter2audio.feed import ChangeFeed, JobStateChanged
from chapter2audio.models import FailureReason, JobState, SynthesisJob, VoiceProfile

logger = logging.getLogger(__name__)


class JobStore:
    """Thread-safe job store backed by :class:`Database`."""

    def __init__(self, db: Database, feed: Optional[ChangeFeed] = None):
        self._db = db
        self._feed = feed
        self._lock = threading.RLock()

    def create(
        self,
        chapter_id: str,
        user_id: str,
        voice: VoiceProfile = VoiceProfile.FEMALE,
        *,
        request_key: Optional[str] = None,
        regenerate: bool = True,
    ) -> tuple[SynthesisJob, bool]:
        """Accept a generation request for a chapter.

        Returns ``(job, created)``. ``created`` is False when an existing job
        answers the request: a job with the same ``request_key`` (a retried
        call), or the last completed job when ``regenerate`` is False.

        Raises:
            JobAlreadyActiveError: If another live job exists for the chapter.
        """
        with self._lock:
            if request_key:
                existing = self._db.find_job_by_request_key(chapter_id, request_key)
                if existing:
                    logger.info("Richiesta ripetuta %s: riuso job %s (%s)",
                                request_key, existing.id, existing.state.value)
                    return existing, False

            live = self._db.live_job(chapter_id)
            if live:
                raise JobAlreadyActiveError(chapter_id, live)

            if not regenerate:
                latest = self._db.latest_job(chapter_id)
                if latest and latest.state is JobState.COMPLETED:
                    return latest, False

            job = SynthesisJob(
                id=uuid.uuid4().hex,
                chapter_id=chapter_id,
                user_id=user_id,
                voice=VoiceProfile.parse(voice),
                request_key=request_key,
            )
            try:
                job = self._db.insert_job(job)
            except sqlite3.IntegrityError as e:
                # Another process won the race on the live-job index
                raise JobAlreadyActiveError(chapter_id, self._db.live_job(chapter_id)) from e

            logger.info("Job %s creato per il capitolo %s", job.id, chapter_id)
            self._publish(job)
            return job, True

    def start(self, job_id: str) -> SynthesisJob:
        """pending → processing"""
        with self._lock:
            self._expect(job_id, JobState.PENDING)
            try:
                self._db.mark_processing(job_id)
            except StaleTransitionError as e:
                raise InternalError(f"Transizione non valida per il job {job_id}") from e
            return self._committed(job_id)

    def complete(self, job_id: str, audio_reference: str, duration_seconds: int) -> SynthesisJob:
        """processing → completed; the chapter's audio fields change in the same commit."""
        with self._lock:
            self._expect(job_id, JobState.PROCESSING)
            try:
                self._db.mark_completed(job_id, audio_reference, duration_seconds)
            except StaleTransitionError as e:
                raise InternalError(f"Transizione non valida per il job {job_id}") from e
            return self._committed(job_id)

    def fail(self, job_id: str, reason: FailureReason, message: str) -> SynthesisJob:
        """pending | processing → failed. The chapter row is left untouched."""
        with self._lock:
            job = self._expect(job_id, JobState.PENDING, JobState.PROCESSING)
            try:
                self._db.mark_failed(job_id, job.state, FailureReason(reason), message)
            except StaleTransitionError as e:
                raise InternalError(f"Transizione non valida per il job {job_id}") from e
            return self._committed(job_id)

    def get(self, job_id: str) -> Optional[SynthesisJob]:
        return self._db.get_job(job_id)

    def find_by_request_key(self, chapter_id: str, request_key: str) -> Optional[SynthesisJob]:
        return self._db.find_job_by_request_key(chapter_id, request_key)

    def latest(self, chapter_id: str) -> Optional[SynthesisJob]:
        return self._db.latest_job(chapter_id)

    def history(self, chapter_id: str) -> list[SynthesisJob]:
        return self._db.jobs_for_chapter(chapter_id)

    def _expect(self, job_id: str, *states: JobState) -> SynthesisJob:
        job = self._db.get_job(job_id)
        if job is None:
            raise InternalError(f"Job non trovato: {job_id}")
        if job.state not in states:
            raise InternalError(
                f"Transizione non valida per il job {job_id}: stato attuale {job.state.value}"
            )
        return job

    def _committed(self, job_id: str) -> SynthesisJob:
        job = self._db.get_job(job_id)
        logger.info("Job %s → %s", job_id, job.state.value)
        self._publish(job)
        return job

    def _publish(self, job: SynthesisJob) -> None:
        if self._feed is not None:
            self._feed.publish(JobStateChanged.from_job(job))
