"""
Worker pool for enrichment jobs using ThreadPoolExecutor.

The orchestrator accepts a request, records a pending job and hands the slow
part (the external provider call) to this pool, so the caller gets a job id
back immediately and polls for completion.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class ProcessingQueue:
    """Runs enrichment jobs on a bounded pool of worker threads."""

    def __init__(self, max_workers: int = 2):
        """
        Initialize the processing queue.

        Args:
            max_workers: Maximum number of concurrent processing threads
        """
        self.max_workers = max_workers
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="enrich")
        self.running_jobs: Dict[str, Future] = {}
        self.is_running = True

        # Lock for thread safety
        self._lock = threading.Lock()

    def submit(self, job_id: str, fn: Callable[..., Any], *args: Any) -> Future:
        """
        Schedule a job for processing.

        Args:
            job_id: Job identifier
            fn: Callable that processes the job
            *args: Arguments for fn

        Returns:
            Future for the job
        """
        if not self.is_running:
            raise RuntimeError("Cannot submit job: processing queue is stopped")

        future = self.executor.submit(fn, *args)
        with self._lock:
            self.running_jobs[job_id] = future

        # Clean up when the job completes
        future.add_done_callback(lambda f, jid=job_id: self._job_completed(jid, f))
        logger.info(f"Job {job_id} submitted for processing")
        return future

    def wait(self, job_id: str, timeout: Optional[float] = None) -> bool:
        """
        Block until a job submitted in this process finishes.

        Returns:
            True if the job was running here and has finished, False if unknown
        """
        with self._lock:
            future = self.running_jobs.get(job_id)

        if future is None:
            return False

        future.exception(timeout=timeout)
        return True

    def get_queue_status(self) -> Dict[str, Any]:
        """Get status information about the processing queue."""
        with self._lock:
            running_jobs = list(self.running_jobs.keys())

        return {
            "is_running": self.is_running,
            "running_jobs": running_jobs,
            "max_workers": self.max_workers,
        }

    def stop(self, wait: bool = True):
        """Stop accepting jobs and shut the pool down."""
        if not self.is_running:
            return

        logger.info("Stopping processing queue...")
        self.is_running = False
        self.executor.shutdown(wait=wait)
        logger.info("Processing queue stopped")

    def _job_completed(self, job_id: str, future: Future):
        """Callback called when a job completes."""
        with self._lock:
            self.running_jobs.pop(job_id, None)

        if future.cancelled():
            logger.info(f"Job {job_id} was cancelled")
        elif future.exception():
            logger.error(f"Job {job_id} raised outside its failure handling: {future.exception()}")
