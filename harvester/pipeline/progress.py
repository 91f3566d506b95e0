"""In-process publish/subscribe for job progress events.

Subscribers are keyed by ``(job_type, audience)``. The last event for each
key is kept so a client that connects mid-job immediately sees where the
job is; terminal events (``job_completed``, ``error``) are kept only for a
short grace window so late joiners still see the outcome.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from harvester import config

logger = logging.getLogger(__name__)

DEFAULT_AUDIENCE = "global"

EVENT_JOB_STARTED = "job_started"
EVENT_SOURCE_STARTED = "source_started"
EVENT_STRUCTURE_DETECTION = "structure_detection"
EVENT_BOT_BYPASS = "bot_bypass"
EVENT_ARTICLE_PROCESSING = "article_processing"
EVENT_ARTICLE_ADDED = "article_added"
EVENT_ARTICLE_SKIPPED = "article_skipped"
EVENT_SOURCE_COMPLETED = "source_completed"
EVENT_JOB_COMPLETED = "job_completed"
EVENT_ERROR = "error"

TERMINAL_EVENTS = frozenset({EVENT_JOB_COMPLETED, EVENT_ERROR})


@dataclass
class ProgressEvent:
    job_id: str
    type: str
    event: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.event in TERMINAL_EVENTS

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "type": self.type,
            "event": self.event,
            "data": {k: v for k, v in self.data.items() if v is not None},
        }


def format_sse(event: ProgressEvent) -> str:
    """Render ``event`` as one Server-Sent Events frame."""
    return f"data: {json.dumps(event.to_dict(), default=str)}\n\n"


class Subscription:
    """One subscriber's bounded event queue."""

    def __init__(self, job_type: str, audience: str, max_size: int):
        self.job_type = job_type
        self.audience = audience
        self.queue: queue.Queue = queue.Queue(maxsize=max_size)
        self.closed = False

    @property
    def key(self) -> tuple[str, str]:
        return (self.job_type, self.audience)

    def offer(self, event: ProgressEvent) -> bool:
        """Queue ``event`` without blocking; False if the subscriber is gone or full."""
        if self.closed:
            return False
        try:
            self.queue.put_nowait(event)
        except queue.Full:
            return False
        return True

    def get(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        """Next event, or None when ``timeout`` elapses first.

        A closed subscription still hands out what was queued before it
        closed, then returns None without waiting.
        """
        try:
            if self.closed:
                return self.queue.get_nowait()
            return self.queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self.closed = True


class ProgressBroadcaster:
    """Fan progress events out to subscribers of a job type and audience."""

    def __init__(
        self,
        grace_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        max_queue_size: Optional[int] = None,
    ):
        self.grace_seconds = (
            config.PROGRESS_GRACE_SECONDS if grace_seconds is None else grace_seconds
        )
        self.clock = clock
        self.max_queue_size = max_queue_size or config.PROGRESS_QUEUE_SIZE
        self._subscribers: dict[tuple[str, str], list[Subscription]] = {}
        self._last: dict[tuple[str, str], tuple[ProgressEvent, float]] = {}
        self._lock = threading.Lock()

    def _expire(self, key: tuple[str, str]) -> None:
        entry = self._last.get(key)
        if entry is None:
            return
        event, stored_at = entry
        if event.is_terminal and self.clock() - stored_at >= self.grace_seconds:
            del self._last[key]

    def last_event(self, job_type: str, audience: str = DEFAULT_AUDIENCE) -> Optional[ProgressEvent]:
        key = (job_type, audience or DEFAULT_AUDIENCE)
        with self._lock:
            self._expire(key)
            entry = self._last.get(key)
            return entry[0] if entry else None

    def subscriber_count(self, job_type: str, audience: str = DEFAULT_AUDIENCE) -> int:
        with self._lock:
            return len(self._subscribers.get((job_type, audience or DEFAULT_AUDIENCE), []))

    def subscribe(self, job_type: str, audience: str = DEFAULT_AUDIENCE) -> Subscription:
        """Register a subscriber and replay the current event to it."""
        subscription = Subscription(job_type, audience or DEFAULT_AUDIENCE, self.max_queue_size)
        key = subscription.key
        with self._lock:
            self._subscribers.setdefault(key, []).append(subscription)
            self._expire(key)
            entry = self._last.get(key)
            if entry is not None:
                subscription.offer(entry[0])
            count = len(self._subscribers[key])
        logger.debug(f"Subscriber added for {key[0]}:{key[1]} ({count} total)")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()
        key = subscription.key
        with self._lock:
            subscribers = self._subscribers.get(key)
            if not subscribers:
                return
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                del self._subscribers[key]
        logger.debug(f"Subscriber removed for {key[0]}:{key[1]}")

    def publish(self, event: ProgressEvent, audience: str = DEFAULT_AUDIENCE) -> int:
        """Store ``event`` as current and deliver it; returns the delivery count."""
        key = (event.type, audience or DEFAULT_AUDIENCE)
        with self._lock:
            self._last[key] = (event, self.clock())
            subscribers = self._subscribers.get(key, [])
            alive = [s for s in subscribers if s.offer(event)]
            for stale in subscribers:
                if stale not in alive:
                    stale.close()
            dropped = len(subscribers) - len(alive)
            if alive:
                self._subscribers[key] = alive
            else:
                self._subscribers.pop(key, None)
        if dropped:
            logger.info(f"Dropped {dropped} stalled or closed subscribers for {key[0]}:{key[1]}")
        return len(alive)

    def _emit(
        self,
        job_id: str,
        job_type: str,
        event: str,
        audience: str,
        updates: dict[str, Any],
        carry: bool = True,
    ) -> ProgressEvent:
        data: dict[str, Any] = {}
        if carry:
            current = self.last_event(job_type, audience)
            if current is not None and current.job_id == job_id:
                data.update(current.data)
        data.update(updates)
        progress_event = ProgressEvent(job_id=job_id, type=job_type, event=event, data=data)
        self.publish(progress_event, audience)
        return progress_event

    # Lifecycle helpers; counters are carried forward from the current event.

    def start_job(self, job_id: str, job_type: str, total_sources: int,
                  audience: str = DEFAULT_AUDIENCE) -> ProgressEvent:
        return self._emit(job_id, job_type, EVENT_JOB_STARTED, audience, {
            "status": "running",
            "totalSources": total_sources,
            "processedSources": 0,
            "totalArticles": 0,
            "processedArticles": 0,
            "addedArticles": 0,
            "skippedArticles": 0,
        }, carry=False)

    def start_source(self, job_id: str, job_type: str, source_name: str, source_id: str,
                     audience: str = DEFAULT_AUDIENCE) -> ProgressEvent:
        return self._emit(job_id, job_type, EVENT_SOURCE_STARTED, audience, {
            "sourceName": source_name,
            "sourceId": source_id,
            "isDetectingStructure": False,
            "isBypassingBotProtection": False,
        })

    def detecting_structure(self, job_id: str, job_type: str,
                            audience: str = DEFAULT_AUDIENCE) -> ProgressEvent:
        return self._emit(job_id, job_type, EVENT_STRUCTURE_DETECTION, audience, {
            "isDetectingStructure": True,
            "isBypassingBotProtection": False,
        })

    def bypassing_bot_protection(self, job_id: str, job_type: str,
                                 audience: str = DEFAULT_AUDIENCE) -> ProgressEvent:
        return self._emit(job_id, job_type, EVENT_BOT_BYPASS, audience, {
            "isDetectingStructure": False,
            "isBypassingBotProtection": True,
        })

    def processing_article(self, job_id: str, job_type: str, article_url: str,
                           article_title: str = "",
                           audience: str = DEFAULT_AUDIENCE) -> ProgressEvent:
        return self._emit(job_id, job_type, EVENT_ARTICLE_PROCESSING, audience, {
            "articleUrl": article_url,
            "articleTitle": article_title,
            "isDetectingStructure": False,
            "isBypassingBotProtection": False,
        })

    def _bump(self, job_id: str, job_type: str, event: str, counter: str,
              audience: str) -> ProgressEvent:
        current = self.last_event(job_type, audience)
        data = current.data if current is not None and current.job_id == job_id else {}
        return self._emit(job_id, job_type, event, audience, {
            counter: (data.get(counter) or 0) + 1,
            "processedArticles": (data.get("processedArticles") or 0) + 1,
        })

    def article_added(self, job_id: str, job_type: str,
                      audience: str = DEFAULT_AUDIENCE) -> ProgressEvent:
        return self._bump(job_id, job_type, EVENT_ARTICLE_ADDED, "addedArticles", audience)

    def article_skipped(self, job_id: str, job_type: str,
                        audience: str = DEFAULT_AUDIENCE) -> ProgressEvent:
        return self._bump(job_id, job_type, EVENT_ARTICLE_SKIPPED, "skippedArticles", audience)

    def source_completed(self, job_id: str, job_type: str, total_articles: int,
                         audience: str = DEFAULT_AUDIENCE) -> ProgressEvent:
        current = self.last_event(job_type, audience)
        data = current.data if current is not None and current.job_id == job_id else {}
        return self._emit(job_id, job_type, EVENT_SOURCE_COMPLETED, audience, {
            "processedSources": (data.get("processedSources") or 0) + 1,
            "totalArticles": (data.get("totalArticles") or 0) + total_articles,
            "isDetectingStructure": False,
            "isBypassingBotProtection": False,
            "articleUrl": None,
            "articleTitle": None,
        })

    def job_completed(self, job_id: str, job_type: str,
                      audience: str = DEFAULT_AUDIENCE) -> ProgressEvent:
        return self._emit(job_id, job_type, EVENT_JOB_COMPLETED, audience, {"status": "completed"})

    def job_error(self, job_id: str, job_type: str, error: str,
                  audience: str = DEFAULT_AUDIENCE) -> ProgressEvent:
        return self._emit(job_id, job_type, EVENT_ERROR, audience, {
            "error": error,
            "status": "error",
        })
