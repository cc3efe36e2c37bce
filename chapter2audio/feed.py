"""Change feed - in-process publish/subscribe for state transitions.

The job store publishes a :class:`JobStateChanged` after each committed
transition. Other collaborators (likes, comments, saves, follows, books)
publish :class:`EntityChanged` on the same bus. Subscribers filter by topic
and entity id and read events from their own queue.

Events for one entity reach every subscriber in publish order. Consumers
must still tolerate duplicates, since a client that re-fetches a snapshot
can see the same transition twice.
"""

import asyncio
import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional, Union

from chapter2audio.models import SynthesisJob

logger = logging.getLogger(__name__)

JOBS_TOPIC = "audio_jobs"


@dataclass(frozen=True)
class JobStateChanged:
    chapter_id: str
    job_id: str
    state: str
    sequence: int
    audio_reference: Optional[str] = None
    duration_seconds: Optional[int] = None
    failure_reason: Optional[str] = None
    error_message: Optional[str] = None

    topic = JOBS_TOPIC

    @property
    def entity_id(self) -> str:
        return self.chapter_id

    @classmethod
    def from_job(cls, job: SynthesisJob) -> "JobStateChanged":
        return cls(
            chapter_id=job.chapter_id,
            job_id=job.id,
            state=job.state.value,
            sequence=job.sequence,
            audio_reference=job.audio_reference,
            duration_seconds=job.duration_seconds,
            failure_reason=job.failure_reason.value if job.failure_reason else None,
            error_message=job.error_message,
        )

    def to_dict(self) -> dict:
        return {
            "chapter_id": self.chapter_id,
            "job_id": self.job_id,
            "state": self.state,
            "sequence": self.sequence,
            "audio_reference": self.audio_reference,
            "duration_seconds": self.duration_seconds,
            "failure_reason": self.failure_reason,
            "error_message": self.error_message,
        }


@dataclass(frozen=True)
class EntityChanged:
    """A row change from another collaborator, e.g. a new like or comment."""
    table: str
    entity_id: str
    event: str  # insert | update | delete
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def topic(self) -> str:
        return self.table


Event = Union[JobStateChanged, EntityChanged]

_CLOSED = object()


class Subscription:
    """A subscriber's queue of matching events.

    Closing the subscription is the only way to cancel it; a blocked
    :meth:`get` returns ``None`` once the subscription is closed.
    """

    def __init__(self, feed: "ChangeFeed", topic: Optional[str] = None,
                 entity_id: Optional[str] = None):
        self._feed = feed
        self.topic = topic
        self.entity_id = entity_id
        self._queue: queue.Queue = queue.Queue()
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def matches(self, event: Event) -> bool:
        if self.topic is not None and event.topic != self.topic:
            return False
        if self.entity_id is not None and event.entity_id != self.entity_id:
            return False
        return True

    def _deliver(self, event: Event) -> None:
        self._queue.put(event)

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Next event, or ``None`` on timeout or once closed."""
        if self.closed and self._queue.empty():
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            return None
        return item

    async def aget(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Like :meth:`get` without blocking the running event loop."""
        return await asyncio.to_thread(self.get, timeout)

    def __iter__(self) -> Iterator[Event]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event

    def close(self) -> None:
        if self.closed:
            return
        self._closed.set()
        self._feed._remove(self)
        self._queue.put(_CLOSED)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class ChangeFeed:
    """Thread-safe event bus keyed by topic and entity id."""

    def __init__(self):
        self._subscriptions: list[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, topic: Optional[str] = None,
                  entity_id: Optional[str] = None) -> Subscription:
        sub = Subscription(self, topic, entity_id)
        with self._lock:
            self._subscriptions.append(sub)
        return sub

    def publish(self, event: Event) -> int:
        """Deliver ``event`` to every matching subscription; returns the count."""
        with self._lock:
            targets = [s for s in self._subscriptions if s.matches(event)]
            for sub in targets:
                sub._deliver(event)
        logger.debug("Evento %s/%s → %d iscritti", event.topic, event.entity_id, len(targets))
        return len(targets)

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)
