"""Client synchronizer - a local, reactive cache of job and entity state.

The cache is fed by the change feed. Job views are replaced only by events
with a higher ``sequence`` than the cached one, so duplicates and stale
events are ignored regardless of when they arrive.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Optional

from chapter2audio.feed import ChangeFeed, EntityChanged, JobStateChanged, Subscription
from chapter2audio.models import JobState, SynthesisJob

logger = logging.getLogger(__name__)

MAX_NEW_COMMENTS = 50
MAX_NEW_BOOKS = 10

ChangeCallback = Callable[[str, "JobView"], None]


@dataclass(frozen=True)
class JobView:
    """What a client knows about a chapter's latest job."""
    chapter_id: str
    job_id: str
    state: JobState
    sequence: int
    audio_reference: Optional[str] = None
    duration_seconds: Optional[int] = None
    failure_reason: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def is_live(self) -> bool:
        return self.state.is_live

    @property
    def can_regenerate(self) -> bool:
        return self.state.is_terminal

    @classmethod
    def from_event(cls, event: JobStateChanged) -> "JobView":
        return cls(
            chapter_id=event.chapter_id,
            job_id=event.job_id,
            state=JobState(event.state),
            sequence=event.sequence,
            audio_reference=event.audio_reference,
            duration_seconds=event.duration_seconds,
            failure_reason=event.failure_reason,
            error_message=event.error_message,
        )

    @classmethod
    def from_job(cls, job: SynthesisJob) -> "JobView":
        return cls.from_event(JobStateChanged.from_job(job))


@dataclass
class BookStats:
    like_count: int = 0
    comment_count: int = 0
    save_count: int = 0


@dataclass
class ChannelStats:
    follower_count: int = 0


# table -> (owning key in payload, stats attribute)
_COUNTERS = {
    "likes": ("book_id", "like_count"),
    "comments": ("book_id", "comment_count"),
    "saves": ("book_id", "save_count"),
    "follows": ("channel_id", "follower_count"),
}


@dataclass
class _State:
    jobs: dict[str, JobView] = field(default_factory=dict)
    book_stats: dict[str, BookStats] = field(default_factory=dict)
    channel_stats: dict[str, ChannelStats] = field(default_factory=dict)
    new_comments: list[dict] = field(default_factory=list)
    new_books: list[dict] = field(default_factory=list)


class ClientSynchronizer:
    """Keeps a local view of job and entity state in sync with the feed.

    Args:
        service: An :class:`~chapter2audio.pipeline.AudioService` (or
            anything with ``generate`` and ``job_status``).
        feed: The change feed to subscribe to.
        chapter_id: Restrict the subscription to one chapter's jobs.
    """

    def __init__(self, service, feed: ChangeFeed, chapter_id: Optional[str] = None):
        self._service = service
        self._lock = threading.RLock()
        self._state = _State()
        self._listeners: list[ChangeCallback] = []
        if chapter_id is not None:
            self._subscription: Subscription = feed.subscribe(JobStateChanged.topic, chapter_id)
        else:
            self._subscription = feed.subscribe()
        self._thread: Optional[threading.Thread] = None

    # --- feed consumption ---

    def start(self) -> "ClientSynchronizer":
        """Apply feed events on a background thread until :meth:`close`."""
        if self._thread is None:
            self._thread = threading.Thread(target=self._pump, daemon=True)
            self._thread.start()
        return self

    def _pump(self) -> None:
        for event in self._subscription:
            self.apply(event)

    def process_pending(self, timeout: float = 0) -> int:
        """Apply queued events on the calling thread; returns how many were read."""
        count = 0
        while True:
            event = self._subscription.get(timeout=timeout)
            if event is None:
                return count
            self.apply(event)
            count += 1

    def apply(self, event) -> bool:
        """Apply one event; returns False if it was stale or not understood."""
        if isinstance(event, JobStateChanged):
            return self._apply_job(JobView.from_event(event))
        if isinstance(event, EntityChanged):
            return self._apply_entity(event)
        return False

    def _apply_job(self, view: JobView) -> bool:
        with self._lock:
            current = self._state.jobs.get(view.chapter_id)
            if current is not None and current.sequence >= view.sequence:
                return False
            self._state.jobs[view.chapter_id] = view
            listeners = list(self._listeners)
        for callback in listeners:
            try:
                callback(view.chapter_id, view)
            except Exception:
                logger.exception("Listener fallito per il capitolo %s", view.chapter_id)
        return True

    def _apply_entity(self, event: EntityChanged) -> bool:
        payload = event.payload
        with self._lock:
            if event.table in _COUNTERS:
                key, attr = _COUNTERS[event.table]
                owner = payload.get(key)
                if owner is None:
                    return False
                if key == "book_id":
                    stats = self._state.book_stats.setdefault(owner, BookStats())
                else:
                    stats = self._state.channel_stats.setdefault(owner, ChannelStats())
                if "count" in payload:
                    setattr(stats, attr, int(payload["count"]))
                elif event.event == "insert":
                    setattr(stats, attr, getattr(stats, attr) + 1)
                elif event.event == "delete":
                    setattr(stats, attr, max(0, getattr(stats, attr) - 1))
                if event.table == "comments" and event.event == "insert":
                    self._state.new_comments = ([dict(payload, id=event.entity_id)]
                                                + self._state.new_comments)[:MAX_NEW_COMMENTS]
                return True
            if event.table == "books" and event.event == "insert" and payload.get("is_published"):
                self._state.new_books = ([dict(payload, id=event.entity_id)]
                                         + self._state.new_books)[:MAX_NEW_BOOKS]
                return True
        return False

    # --- reactive reads ---

    def get(self, chapter_id: str) -> Optional[JobView]:
        with self._lock:
            return self._state.jobs.get(chapter_id)

    def snapshot(self) -> dict[str, JobView]:
        with self._lock:
            return dict(self._state.jobs)

    def book_stats(self, book_id: str) -> Optional[BookStats]:
        with self._lock:
            stats = self._state.book_stats.get(book_id)
            return replace(stats) if stats else None

    def channel_stats(self, channel_id: str) -> Optional[ChannelStats]:
        with self._lock:
            stats = self._state.channel_stats.get(channel_id)
            return replace(stats) if stats else None

    @property
    def new_comments(self) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._state.new_comments)

    @property
    def new_books(self) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._state.new_books)

    def clear_new_comments(self) -> None:
        with self._lock:
            self._state.new_comments = []

    def clear_new_books(self) -> None:
        with self._lock:
            self._state.new_books = []

    def on_change(self, callback: ChangeCallback) -> Callable[[], None]:
        """Call ``callback(chapter_id, view)`` after each accepted job update.

        Returns a function that removes the callback.
        """
        with self._lock:
            self._listeners.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)
        return unsubscribe

    # --- requests ---

    def generate(self, chapter_id: str, user_id: str, text: Optional[str] = None,
                 voice=None, **kwargs) -> JobView:
        """Request generation and seed the cache with the accepted job."""
        job = self._service.generate(chapter_id, user_id, text, voice, **kwargs)
        view = JobView.from_job(job)
        self._apply_job(view)
        return self.get(chapter_id) or view

    def refresh(self, chapter_id: str) -> Optional[JobView]:
        """Re-fetch the chapter's latest job (poll-style) and merge it."""
        job = self._service.job_status(chapter_id)
        if job is not None:
            self._apply_job(JobView.from_job(job))
        return self.get(chapter_id)

    def close(self) -> None:
        self._subscription.close()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
