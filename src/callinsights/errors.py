"""
Exception taxonomy for the enrichment service.

Boundary errors (not found, access denied, empty content, duplicate active job)
are raised synchronously to the caller of ``enrich`` and never create a job.
Errors raised while a job is processing are captured on the job record instead.
"""

from typing import Optional


class EnrichmentError(Exception):
    """Base class for all enrichment service errors."""


class EntityNotFoundError(EnrichmentError):
    """The requested call does not exist."""

    def __init__(self, entity_id: str):
        super().__init__(f"Call {entity_id} not found")
        self.entity_id = entity_id


class AccessDeniedError(EnrichmentError):
    """The caller does not own the requested call."""

    def __init__(self, entity_id: str, user_id: str):
        super().__init__(f"User {user_id} may not access call {entity_id}")
        self.entity_id = entity_id
        self.user_id = user_id


class EmptyContentError(EnrichmentError):
    """There is nothing to enrich (empty or too-short content)."""


class DuplicateActiveJobError(EnrichmentError):
    """A job for the same call and job type is already pending or processing."""

    def __init__(self, entity_id: str, job_type: str, active_job_id: Optional[str] = None):
        super().__init__(f"An active {job_type} job already exists for call {entity_id}")
        self.entity_id = entity_id
        self.job_type = job_type
        self.active_job_id = active_job_id


class InvalidTransitionError(EnrichmentError):
    """A job status change that violates the job state machine."""


class JobNotFoundError(EnrichmentError):
    """The requested job does not exist."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class ExternalCapabilityError(EnrichmentError):
    """The transcription, insight or embedding provider call failed."""

    def __init__(self, message: str, transient: bool = False):
        super().__init__(message)
        self.transient = transient


class DimensionMismatchError(EnrichmentError):
    """Query vector dimension differs from the stored vectors."""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"Query vector has dimension {actual}, stored vectors have dimension {expected}")
        self.expected = expected
        self.actual = actual
