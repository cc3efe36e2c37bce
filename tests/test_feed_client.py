"""Tests for the change feed and the client-side synchronizer."""

import threading

import pytest

from chapter2audio.client import MAX_NEW_BOOKS, MAX_NEW_COMMENTS, ClientSynchronizer, JobView
from chapter2audio.errors import ValidationError
from chapter2audio.feed import ChangeFeed, EntityChanged, JobStateChanged
from chapter2audio.models import JobState

from conftest import FakeEngine, make_service


def _job_event(state, sequence, chapter_id="ch1", job_id="j1", **extra):
    return JobStateChanged(
        chapter_id=chapter_id, job_id=job_id, state=state, sequence=sequence, **extra,
    )


class TestChangeFeed:
    def test_filters_by_topic_and_entity(self):
        feed = ChangeFeed()
        chapter_sub = feed.subscribe(JobStateChanged.topic, "ch1")
        likes_sub = feed.subscribe("likes")
        all_sub = feed.subscribe()

        feed.publish(_job_event("pending", 0))
        feed.publish(_job_event("pending", 0, chapter_id="ch2"))
        feed.publish(EntityChanged("likes", "like1", "insert", {"book_id": "book1"}))

        assert chapter_sub.get(timeout=0).chapter_id == "ch1"
        assert chapter_sub.get(timeout=0) is None
        assert likes_sub.get(timeout=0).table == "likes"
        assert likes_sub.get(timeout=0) is None
        assert [all_sub.get(timeout=0) is not None for _ in range(4)] == [True, True, True, False]

    def test_publish_returns_delivery_count(self):
        feed = ChangeFeed()
        feed.subscribe(JobStateChanged.topic, "ch1")
        feed.subscribe(JobStateChanged.topic, "ch2")
        assert feed.publish(_job_event("pending", 0)) == 1

    def test_events_keep_publish_order(self):
        feed = ChangeFeed()
        sub = feed.subscribe()
        for seq, state in enumerate(["pending", "processing", "completed"]):
            feed.publish(_job_event(state, seq))
        assert [sub.get(timeout=0).state for _ in range(3)] == [
            "pending", "processing", "completed",
        ]

    def test_close_unblocks_waiting_reader(self):
        feed = ChangeFeed()
        sub = feed.subscribe()
        result = {}

        def reader():
            result["event"] = sub.get(timeout=5)

        thread = threading.Thread(target=reader)
        thread.start()
        sub.close()
        thread.join(timeout=5)

        assert not thread.is_alive()
        assert result["event"] is None
        assert sub.closed
        assert feed.subscriber_count == 0

    def test_closed_subscription_gets_nothing(self):
        feed = ChangeFeed()
        with feed.subscribe() as sub:
            pass
        assert feed.publish(_job_event("pending", 0)) == 0
        assert sub.get(timeout=0) is None


class TestJobCache:
    def test_higher_sequence_replaces_view(self, service, feed):
        client = ClientSynchronizer(service, feed)
        assert client.apply(_job_event("pending", 3))
        assert client.apply(_job_event("processing", 4))
        assert client.get("ch1").state is JobState.PROCESSING

    @pytest.mark.parametrize("sequence", [3, 4])
    def test_stale_and_duplicate_events_ignored(self, service, feed, sequence):
        client = ClientSynchronizer(service, feed)
        client.apply(_job_event("processing", 4))

        assert not client.apply(_job_event("pending", sequence))
        assert client.get("ch1").state is JobState.PROCESSING

    def test_failure_details_exposed(self, service, feed):
        client = ClientSynchronizer(service, feed)
        client.apply(_job_event(
            "failed", 5, failure_reason="synthesis-provider", error_message="down",
        ))
        view = client.get("ch1")
        assert view.failure_reason == "synthesis-provider"
        assert view.error_message == "down"
        assert view.can_regenerate
        assert not view.is_live

    def test_on_change_and_unsubscribe(self, service, feed):
        client = ClientSynchronizer(service, feed)
        seen = []
        unsubscribe = client.on_change(lambda chapter_id, view: seen.append(view.state))

        client.apply(_job_event("pending", 0))
        client.apply(_job_event("pending", 0))
        unsubscribe()
        client.apply(_job_event("processing", 1))

        assert seen == [JobState.PENDING]

    def test_failing_listener_does_not_break_others(self, service, feed):
        client = ClientSynchronizer(service, feed)
        seen = []

        def broken(chapter_id, view):
            raise RuntimeError("listener bug")

        client.on_change(broken)
        client.on_change(lambda chapter_id, view: seen.append(chapter_id))
        assert client.apply(_job_event("pending", 0))
        assert seen == ["ch1"]

    def test_generate_seeds_cache_and_follows_feed(self, service, feed):
        client = ClientSynchronizer(service, feed, chapter_id="ch1")

        view = client.generate("ch1", "alice")
        assert view.state is JobState.PENDING

        client.process_pending()
        final = client.get("ch1")
        assert final.state is JobState.COMPLETED
        assert final.audio_reference == "/media/audio/ch1.mp3"
        assert final.duration_seconds >= 1

    def test_generate_propagates_rejection(self, service, feed):
        client = ClientSynchronizer(service, feed)
        with pytest.raises(ValidationError):
            client.generate("ch1", "alice", text="  ")
        assert client.get("ch1") is None

    def test_refresh_fetches_latest_job(self, service, feed):
        service.generate("ch1", "alice")
        client = ClientSynchronizer(service, feed)

        view = client.refresh("ch1")
        assert view.state is JobState.COMPLETED
        assert client.refresh("other") is None

    def test_refresh_does_not_regress(self, service, feed):
        service.generate("ch1", "alice")
        client = ClientSynchronizer(service, feed)
        newer = JobView.from_job(service.job_status("ch1"))
        client.apply(_job_event("pending", newer.sequence + 1, job_id="next"))

        assert client.refresh("ch1").job_id == "next"

    def test_background_thread_applies_events(self, db, feed, storage):
        gate = threading.Event()
        service = make_service(db, feed, FakeEngine(gate=gate), storage, run_inline=False)
        client = ClientSynchronizer(service, feed, chapter_id="ch1").start()
        done = threading.Event()

        def on_change(chapter_id, view):
            if view.state.is_terminal:
                done.set()

        client.on_change(on_change)

        client.generate("ch1", "alice")
        gate.set()

        assert done.wait(timeout=5)
        assert client.get("ch1").state is JobState.COMPLETED
        client.close()


class TestEntityCounters:
    def test_insert_and_delete_adjust_counts(self, service, feed):
        client = ClientSynchronizer(service, feed)
        client.apply(EntityChanged("likes", "l1", "insert", {"book_id": "book1"}))
        client.apply(EntityChanged("likes", "l2", "insert", {"book_id": "book1"}))
        client.apply(EntityChanged("likes", "l1", "delete", {"book_id": "book1"}))
        client.apply(EntityChanged("saves", "s1", "insert", {"book_id": "book1"}))

        stats = client.book_stats("book1")
        assert stats.like_count == 1
        assert stats.save_count == 1
        assert stats.comment_count == 0

    def test_delete_never_goes_negative(self, service, feed):
        client = ClientSynchronizer(service, feed)
        client.apply(EntityChanged("saves", "s1", "delete", {"book_id": "book1"}))
        assert client.book_stats("book1").save_count == 0

    def test_payload_count_wins(self, service, feed):
        client = ClientSynchronizer(service, feed)
        client.apply(EntityChanged("follows", "f1", "insert", {"channel_id": "c1", "count": 40}))
        assert client.channel_stats("c1").follower_count == 40
        assert client.book_stats("c1") is None

    def test_event_without_owner_ignored(self, service, feed):
        client = ClientSynchronizer(service, feed)
        assert not client.apply(EntityChanged("likes", "l1", "insert", {}))
        assert not client.apply(EntityChanged("unknown", "x", "insert", {"book_id": "b"}))

    def test_new_comments_newest_first_and_capped(self, service, feed):
        client = ClientSynchronizer(service, feed)
        for i in range(MAX_NEW_COMMENTS + 5):
            client.apply(EntityChanged("comments", f"c{i}", "insert",
                                       {"book_id": "book1", "body": f"comment {i}"}))

        comments = client.new_comments
        assert len(comments) == MAX_NEW_COMMENTS
        assert comments[0]["id"] == f"c{MAX_NEW_COMMENTS + 4}"
        assert client.book_stats("book1").comment_count == MAX_NEW_COMMENTS + 5

        client.clear_new_comments()
        assert client.new_comments == []
        assert client.book_stats("book1").comment_count == MAX_NEW_COMMENTS + 5

    def test_only_published_books_listed(self, service, feed):
        client = ClientSynchronizer(service, feed)
        client.apply(EntityChanged("books", "draft", "insert", {"is_published": False}))
        for i in range(MAX_NEW_BOOKS + 2):
            client.apply(EntityChanged("books", f"b{i}", "insert", {"is_published": True}))

        books = client.new_books
        assert len(books) == MAX_NEW_BOOKS
        assert "draft" not in {b["id"] for b in books}

        client.clear_new_books()
        assert client.new_books == []

    def test_process_pending_reads_feed(self, service, feed):
        client = ClientSynchronizer(service, feed)
        feed.publish(EntityChanged("likes", "l1", "insert", {"book_id": "book1"}))
        feed.publish(EntityChanged("likes", "l2", "insert", {"book_id": "book1"}))

        assert client.process_pending() == 2
        assert client.book_stats("book1").like_count == 2
