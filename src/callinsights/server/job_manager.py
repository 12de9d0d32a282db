"""
Filesystem-based state management for enrichment jobs.

This module manages job state by tracking files in dedicated job directories:
- Each job gets a unique directory holding its metadata document
- Status changes follow pending -> processing -> {completed, failed}
- At most one pending/processing job exists per (call, job type); the slot is
  claimed by exclusively creating a claim file, so the guard holds across
  processes sharing the same jobs directory
- Jobs are kept after they finish, for audit and history
"""

import logging
import os
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Union

from ..errors import DuplicateActiveJobError, InvalidTransitionError, JobNotFoundError
from .models import VALID_TRANSITIONS, Job, JobProgress, JobStatus, JobType
from .storage import is_safe_key, read_json, write_json_atomic

logger = logging.getLogger(__name__)


class JobManager:
    """Durable record of enrichment jobs backed by a jobs directory."""

    ACTIVE_DIR = "_active"

    def __init__(self, jobs_dir: Union[str, Path] = "server_data/jobs"):
        """
        Initialize the job manager.

        Args:
            jobs_dir: Directory to store all job directories
        """
        self.jobs_dir = Path(jobs_dir)
        self.jobs_dir.mkdir(parents=True, exist_ok=True)
        self.active_dir = self.jobs_dir / self.ACTIVE_DIR
        self.active_dir.mkdir(exist_ok=True)

        # File names for job assets
        self.FILES = {
            "metadata": "metadata.json",
        }

        # Serializes read-check-write of a job document within this process
        self._lock = threading.Lock()

    def create(self, entity_id: str, job_type: JobType) -> Job:
        """
        Create a new pending job.

        Args:
            entity_id: Call the job works on
            job_type: Kind of enrichment

        Returns:
            The new job

        Raises:
            DuplicateActiveJobError: If a pending/processing job already exists
        """
        job_id = str(uuid.uuid4())
        self._claim_active_slot(entity_id, job_type, job_id)

        job = Job(
            id=job_id,
            entity_id=entity_id,
            job_type=job_type,
            status=JobStatus.PENDING,
            created_at=datetime.now(),
        )
        try:
            self._save(job)
        except Exception:
            self._release_active_slot(entity_id, job_type, job_id)
            raise

        logger.info(f"Created {job_type.value} job {job_id} for call {entity_id}")
        return job

    def create_cached(self, entity_id: str, job_type: JobType) -> Job:
        """
        Record a job answered from the enrichment cache.

        The job is born completed and never occupies the active slot.
        """
        now = datetime.now()
        job = Job(
            id=str(uuid.uuid4()),
            entity_id=entity_id,
            job_type=job_type,
            status=JobStatus.COMPLETED,
            created_at=now,
            started_at=now,
            completed_at=now,
            progress=JobProgress(stage="cached", progress=100.0, message="Used cached result"),
            cached=True,
        )
        self._save(job)
        return job

    def transition(
        self,
        job_id: str,
        new_status: JobStatus,
        progress: Optional[JobProgress] = None,
        error: Optional[str] = None,
        cached: Optional[bool] = None,
    ) -> Job:
        """
        Move a job to a new status.

        Raises:
            JobNotFoundError: If the job does not exist
            InvalidTransitionError: If the move is not allowed from the current status
        """
        with self._lock:
            job = self.get(job_id)
            if new_status not in VALID_TRANSITIONS[job.status]:
                raise InvalidTransitionError(
                    f"Job {job_id} cannot move from {job.status.value} to {new_status.value}"
                )

            now = datetime.now()
            job.status = new_status
            if new_status == JobStatus.PROCESSING:
                job.started_at = now
            if new_status.is_terminal:
                job.completed_at = now
            if progress is not None:
                job.progress = progress
            if error is not None:
                job.error = error
            if cached is not None:
                job.cached = cached

            self._save(job)

        if new_status.is_terminal:
            self._release_active_slot(job.entity_id, job.job_type, job.id)
        return job

    def update_progress(self, job_id: str, stage: str, progress: float, message: str = "") -> Job:
        """Update advisory progress of a job that has not finished."""
        with self._lock:
            job = self.get(job_id)
            if job.status.is_terminal:
                raise InvalidTransitionError(f"Job {job_id} is {job.status.value}; progress is frozen")

            job.progress = JobProgress(stage=stage, progress=max(0.0, min(100.0, float(progress))), message=message)
            self._save(job)
        return job

    def get(self, job_id: str) -> Job:
        """Get a job by id."""
        if not is_safe_key(job_id):
            raise JobNotFoundError(job_id)

        data = read_json(self.get_job_dir(job_id) / self.FILES["metadata"])
        if not data:
            raise JobNotFoundError(job_id)
        return Job.from_dict(data)

    def get_job_dir(self, job_id: str) -> Path:
        """Get the directory path for a job."""
        return self.jobs_dir / job_id

    def job_exists(self, job_id: str) -> bool:
        """Check if a job exists."""
        return is_safe_key(job_id) and (self.get_job_dir(job_id) / self.FILES["metadata"]).exists()

    def get_active_job_id(self, entity_id: str, job_type: JobType) -> Optional[str]:
        """Return the id held in the active slot, if any."""
        claim_path = self._claim_path(entity_id, job_type)
        try:
            return claim_path.read_text(encoding="utf-8").strip() or None
        except FileNotFoundError:
            return None

    def list_by_entity(self, entity_id: str) -> List[Job]:
        """All jobs of a call, newest first."""
        return [job for job in self._iter_jobs() if job.entity_id == entity_id]

    def list_active(self) -> List[Job]:
        """Jobs that are pending or processing, newest first."""
        jobs = []
        for claim_path in self.active_dir.iterdir():
            try:
                job_id = claim_path.read_text(encoding="utf-8").strip()
            except FileNotFoundError:
                # Released while we were scanning
                continue
            if self.job_exists(job_id):
                job = self.get(job_id)
                if job.status.is_active:
                    jobs.append(job)

        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs

    def list_jobs(self, status_filter: Optional[JobStatus] = None, limit: int = 100) -> List[Job]:
        """
        List all jobs.

        Args:
            status_filter: Filter by status
            limit: Maximum number of jobs to return

        Returns:
            Jobs sorted by creation time (newest first)
        """
        jobs = self._iter_jobs()
        if status_filter is not None:
            jobs = [job for job in jobs if job.status == status_filter]
        return jobs[:limit]

    def _iter_jobs(self) -> List[Job]:
        jobs = []
        for job_dir in self.jobs_dir.iterdir():
            if not job_dir.is_dir() or job_dir.name.startswith("_"):
                continue

            data = read_json(job_dir / self.FILES["metadata"])
            if data:
                jobs.append(Job.from_dict(data))

        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs

    def _save(self, job: Job) -> None:
        write_json_atomic(self.get_job_dir(job.id) / self.FILES["metadata"], job.to_dict())

    def _claim_path(self, entity_id: str, job_type: JobType) -> Path:
        return self.active_dir / f"{entity_id}__{job_type.value}.claim"

    def _claim_active_slot(self, entity_id: str, job_type: JobType, job_id: str) -> None:
        claim_path = self._claim_path(entity_id, job_type)
        try:
            fd = os.open(claim_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            active_job_id = self.get_active_job_id(entity_id, job_type)
            logger.warning(f"Rejected duplicate {job_type.value} job for call {entity_id} (active: {active_job_id})")
            raise DuplicateActiveJobError(entity_id, job_type.value, active_job_id)

        try:
            os.write(fd, job_id.encode("utf-8"))
        finally:
            os.close(fd)

    def _release_active_slot(self, entity_id: str, job_type: JobType, job_id: str) -> None:
        # Only the owning job may release the claim
        if self.get_active_job_id(entity_id, job_type) != job_id:
            return
        try:
            self._claim_path(entity_id, job_type).unlink()
        except FileNotFoundError:
            pass
