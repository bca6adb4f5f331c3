"""
Registry of live ingestion workers and their cancellation flags.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class JobHandle:
    job_id: str
    cancel_event: threading.Event = field(default_factory=threading.Event)
    thread: Optional[threading.Thread] = None
    stored_percent: int = 0

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the worker; ``True`` when it has exited."""
        if self.thread is None or self.thread is threading.current_thread():
            return True
        self.thread.join(timeout)
        return not self.thread.is_alive()


class JobRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handles: dict[str, JobHandle] = {}

    def register(self, job_id: str) -> JobHandle:
        handle = JobHandle(job_id)
        with self._lock:
            self._handles[job_id] = handle
        return handle

    def get(self, job_id: str) -> Optional[JobHandle]:
        with self._lock:
            return self._handles.get(job_id)

    def cancel(self, job_id: str) -> Optional[JobHandle]:
        handle = self.get(job_id)
        if handle is not None:
            handle.cancel_event.set()
        return handle

    def discard(self, job_id: str) -> None:
        with self._lock:
            self._handles.pop(job_id, None)

    def sweep(self) -> list[str]:
        """Drop handles whose worker thread has exited; returns their job ids."""
        with self._lock:
            dead = [
                job_id for job_id, handle in self._handles.items()
                if handle.thread is not None and not handle.thread.is_alive()
            ]
            for job_id in dead:
                del self._handles[job_id]
        return dead

    def cancel_all(self) -> list[JobHandle]:
        with self._lock:
            handles = list(self._handles.values())
        for handle in handles:
            handle.cancel_event.set()
        return handles
