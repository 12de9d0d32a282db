"""
Push-style job progress notifications.

Listeners register for one job id (or for every job) and are called with the
updated Job each time the orchestrator writes progress or a status change.
Polling the job store remains the primary contract; this is an add-on for
in-process consumers such as a streaming endpoint or a CLI progress bar.
"""

import logging
import threading
from collections import defaultdict
from typing import Callable, Dict, List, Optional

from .models import Job

logger = logging.getLogger(__name__)

ProgressListener = Callable[[Job], None]


class ProgressBroker:
    """Fans job updates out to registered listeners."""

    def __init__(self):
        self._listeners: Dict[Optional[str], List[ProgressListener]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, listener: ProgressListener, job_id: Optional[str] = None) -> None:
        """Register a listener for one job, or for all jobs when job_id is None."""
        with self._lock:
            self._listeners[job_id].append(listener)

    def unsubscribe(self, listener: ProgressListener, job_id: Optional[str] = None) -> None:
        with self._lock:
            listeners = self._listeners.get(job_id, [])
            if listener in listeners:
                listeners.remove(listener)
            if not listeners:
                self._listeners.pop(job_id, None)

    def publish(self, job: Job) -> None:
        """Deliver an update; a failing listener never affects the job."""
        with self._lock:
            listeners = list(self._listeners.get(job.id, [])) + list(self._listeners.get(None, []))

        for listener in listeners:
            try:
                listener(job)
            except Exception:
                logger.exception(f"Progress listener failed for job {job.id}")

        if job.status.is_terminal:
            with self._lock:
                self._listeners.pop(job.id, None)
