"""
Progress broadcaster: fan‑out of job progress to any number of observers.

Publishers never block; every subscriber owns an unbounded queue.  The
terminal event is delivered at most once per job and closes every stream
open on that job.
"""
from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Iterator, Optional

from app.config import settings
from app.sales.schemas import ProgressEvent

logger = logging.getLogger(__name__)

_CLOSED = None


class Subscription:
    """One observer's view of a job's progress stream."""

    def __init__(self, broadcaster: "ProgressBroadcaster", job_id: str) -> None:
        self.job_id = job_id
        self._broadcaster = broadcaster
        self._queue: "queue.Queue[Optional[ProgressEvent]]" = queue.Queue()

    def put(self, event: Optional[ProgressEvent]) -> None:
        self._queue.put(event)

    def get(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        """Next event; raises ``queue.Empty`` on timeout, ``None`` once closed."""
        return self._queue.get(timeout=timeout)

    def events(self, keepalive: Optional[float] = None) -> Iterator[Optional[ProgressEvent]]:
        """Yield events until the terminal one.

        With *keepalive* set, ``None`` is yielded whenever that many seconds
        pass without an event.
        """
        try:
            while True:
                try:
                    event = self._queue.get(timeout=keepalive)
                except queue.Empty:
                    yield None
                    continue
                if event is _CLOSED:
                    return
                yield event
                if event.is_terminal:
                    return
        finally:
            self.close()

    def __iter__(self) -> Iterator[ProgressEvent]:
        return (event for event in self.events() if event is not None)

    def close(self) -> None:
        self._broadcaster.unsubscribe(self)


class ProgressBroadcaster:
    def __init__(self, retention: Optional[float] = None) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[Subscription]] = {}
        # job id -> monotonic time of its terminal event, oldest first
        self._terminated: dict[str, float] = {}
        self.retention = settings.TERMINAL_RETENTION_SECONDS if retention is None else retention

    def subscribe(self, job_id: str) -> Subscription:
        sub = Subscription(self, job_id)
        with self._lock:
            self._subscribers.setdefault(job_id, []).append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subscribers.get(sub.job_id)
            if subs and sub in subs:
                subs.remove(sub)
                if not subs:
                    del self._subscribers[sub.job_id]

    def subscriber_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(job_id, ()))

    def publish(self, job_id: str, progress: float) -> None:
        event = ProgressEvent(progress=progress)
        with self._lock:
            if job_id in self._terminated:
                return
            subs = list(self._subscribers.get(job_id, ()))
        for sub in subs:
            sub.put(event)

    def publish_terminal(
        self,
        job_id: str,
        status: str,
        stats: Optional[dict] = None,
        error: Optional[str] = None,
    ) -> bool:
        """Deliver the completion event; ``False`` if one was already sent."""
        event = ProgressEvent(progress=100.0, status=status, stats=stats, error=error)
        with self._lock:
            if job_id in self._terminated:
                return False
            self._terminated[job_id] = time.monotonic()
            subs = self._subscribers.pop(job_id, [])
        for sub in subs:
            sub.put(event)
        logger.debug("Job %s terminal (%s) sent to %d observers", job_id, status, len(subs))
        return True

    def sweep(self) -> int:
        """Drop finished job ids older than the retention window.

        Late observers of those jobs are answered from the stored job row.
        """
        cutoff = time.monotonic() - self.retention
        with self._lock:
            expired = [job_id for job_id, at in self._terminated.items() if at <= cutoff]
            for job_id in expired:
                del self._terminated[job_id]
        return len(expired)

    def forget(self, job_id: str) -> None:
        """Drop all state for a deleted job and close its open streams."""
        with self._lock:
            self._terminated.pop(job_id, None)
            subs = self._subscribers.pop(job_id, [])
        for sub in subs:
            sub.put(_CLOSED)

    def close_all(self) -> None:
        with self._lock:
            subs = [s for group in self._subscribers.values() for s in group]
            self._subscribers.clear()
        for sub in subs:
            sub.put(_CLOSED)
