"""Tests for the job store state machine and its persistence."""

import sqlite3

import pytest

from chapter2audio.errors import InternalError, JobAlreadyActiveError
from chapter2audio.feed import JobStateChanged
from chapter2audio.models import FailureReason, JobState, SynthesisJob, VoiceProfile


def _drain(sub):
    events = []
    while True:
        event = sub.get(timeout=0)
        if event is None:
            return events
        events.append(event)


class TestCreate:
    def test_new_job_is_pending(self, store, db):
        job, created = store.create("ch1", "alice", VoiceProfile.MALE)

        assert created
        assert job.state is JobState.PENDING
        assert job.voice is VoiceProfile.MALE
        assert job.started_at is None
        assert db.get_job(job.id) == job

    def test_second_live_job_rejected(self, store):
        first, _ = store.create("ch1", "alice")

        with pytest.raises(JobAlreadyActiveError) as exc_info:
            store.create("ch1", "alice")
        assert exc_info.value.job.id == first.id

        store.start(first.id)
        with pytest.raises(JobAlreadyActiveError):
            store.create("ch1", "alice")
        assert len(store.history("ch1")) == 1

    def test_regeneration_allowed_after_terminal_state(self, store):
        first, _ = store.create("ch1", "alice")
        store.fail(first.id, FailureReason.SYNTHESIS_PROVIDER, "down")

        second, created = store.create("ch1", "alice")
        assert created
        assert second.id != first.id
        assert [j.id for j in store.history("ch1")] == [second.id, first.id]

    def test_request_key_returns_existing_job(self, store):
        job, _ = store.create("ch1", "alice", request_key="req-1")
        store.start(job.id)
        store.complete(job.id, "/media/audio/ch1.mp3", 3)

        again, created = store.create("ch1", "alice", request_key="req-1")
        assert not created
        assert again.id == job.id
        assert again.state is JobState.COMPLETED

    def test_request_key_attaches_to_live_job(self, store):
        job, _ = store.create("ch1", "alice", request_key="req-1")
        again, created = store.create("ch1", "alice", request_key="req-1")
        assert not created
        assert again.id == job.id

    def test_no_regenerate_returns_completed_job(self, store):
        job, _ = store.create("ch1", "alice")
        store.start(job.id)
        store.complete(job.id, "/media/audio/ch1.mp3", 3)

        again, created = store.create("ch1", "alice", regenerate=False)
        assert not created
        assert again.id == job.id

    def test_live_index_guards_direct_inserts(self, db):
        db.insert_job(SynthesisJob(id="a", chapter_id="ch1", user_id="alice"))
        with pytest.raises(sqlite3.IntegrityError):
            db.insert_job(SynthesisJob(id="b", chapter_id="ch1", user_id="alice"))


class TestTransitions:
    def test_complete_updates_chapter_atomically(self, store, db):
        job, _ = store.create("ch1", "alice")
        started = store.start(job.id)
        assert started.state is JobState.PROCESSING
        assert started.started_at is not None

        done = store.complete(job.id, "/media/audio/ch1.mp3", 42)

        assert done.state is JobState.COMPLETED
        assert done.audio_reference == "/media/audio/ch1.mp3"
        assert done.duration_seconds == 42
        assert done.completed_at is not None
        chapter = db.get_chapter("ch1")
        assert chapter.audio_url == "/media/audio/ch1.mp3"
        assert chapter.duration_seconds == 42

    def test_fail_leaves_previous_audio(self, store, db):
        job, _ = store.create("ch1", "alice")
        store.start(job.id)
        store.complete(job.id, "/media/audio/ch1.mp3", 42)

        retry, _ = store.create("ch1", "alice")
        store.start(retry.id)
        failed = store.fail(retry.id, FailureReason.STORAGE_UPLOAD, "bucket gone")

        assert failed.state is JobState.FAILED
        assert failed.failure_reason is FailureReason.STORAGE_UPLOAD
        assert failed.error_message == "bucket gone"
        assert failed.audio_reference is None
        chapter = db.get_chapter("ch1")
        assert chapter.audio_url == "/media/audio/ch1.mp3"
        assert chapter.duration_seconds == 42

    def test_pending_job_can_fail(self, store):
        job, _ = store.create("ch1", "alice")
        failed = store.fail(job.id, FailureReason.INTERNAL, "crash")
        assert failed.state is JobState.FAILED

    @pytest.mark.parametrize("steps", [
        ["complete"],
        ["start", "start"],
        ["start", "complete", "fail"],
        ["fail", "start"],
    ])
    def test_illegal_transitions_rejected(self, store, steps):
        job, _ = store.create("ch1", "alice")
        actions = {
            "start": lambda: store.start(job.id),
            "complete": lambda: store.complete(job.id, "/x.mp3", 1),
            "fail": lambda: store.fail(job.id, FailureReason.INTERNAL, "x"),
        }
        for step in steps[:-1]:
            actions[step]()
        with pytest.raises(InternalError):
            actions[steps[-1]]()

    def test_unknown_job_rejected(self, store):
        with pytest.raises(InternalError):
            store.start("missing")

    def test_latest_returns_newest(self, store):
        assert store.latest("ch1") is None
        first, _ = store.create("ch1", "alice")
        store.fail(first.id, FailureReason.INTERNAL, "x")
        second, _ = store.create("ch1", "alice")
        assert store.latest("ch1").id == second.id


class TestPublishing:
    def test_transitions_published_in_commit_order(self, store, feed):
        sub = feed.subscribe(JobStateChanged.topic, "ch1")
        job, _ = store.create("ch1", "alice")
        store.start(job.id)
        store.complete(job.id, "/media/audio/ch1.mp3", 5)

        events = _drain(sub)
        assert [e.state for e in events] == ["pending", "processing", "completed"]
        assert [e.sequence for e in events] == sorted(e.sequence for e in events)
        assert len({e.sequence for e in events}) == 3
        assert events[-1].audio_reference == "/media/audio/ch1.mp3"
        assert events[-1].duration_seconds == 5

    def test_sequence_keeps_growing_across_jobs(self, store, feed):
        sub = feed.subscribe(JobStateChanged.topic, "ch1")
        first, _ = store.create("ch1", "alice")
        store.start(first.id)
        store.fail(first.id, FailureReason.SYNTHESIS_PROVIDER, "down")
        second, _ = store.create("ch1", "alice")

        sequences = [e.sequence for e in _drain(sub)]
        assert sequences == sorted(sequences)
        assert len(set(sequences)) == 4

    def test_event_visible_state_is_persisted(self, store, feed, db):
        seen = []
        sub = feed.subscribe()
        original = sub._deliver

        def deliver(event):
            seen.append((event.state, db.get_chapter("ch1").audio_url))
            original(event)

        sub._deliver = deliver
        job, _ = store.create("ch1", "alice")
        store.start(job.id)
        store.complete(job.id, "/media/audio/ch1.mp3", 5)

        assert seen[-1] == ("completed", "/media/audio/ch1.mp3")
