"""
Enrichment orchestration: transcription, insight and embedding jobs.

This module contains the logic that turns an enrich request into a job:
1. Check the caller may access the call and that there is content to enrich
2. Hash the content and consult the enrichment cache
3. On a hit, record a completed cached job and return at once
4. On a miss, record a pending job and hand it to the worker pool, which calls
   the external provider and stores the artifact in the cache

Errors found while checking the request are raised to the caller. Errors
raised while a job is processing are recorded on the job only.
"""

import logging
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import replace
from typing import Any, Dict, Optional, Union

from ..enrichment.hashing import ContentType, hash_content
from ..errors import EmptyContentError, ExternalCapabilityError, InvalidTransitionError
from ..search.vector_search import build_search_metadata
from .call_store import CallStore
from .enrichment_cache import EnrichmentCache
from .job_manager import JobManager
from .models import (
    CacheEntry,
    Call,
    EnrichResult,
    GenerationResult,
    Job,
    JobProgress,
    JobStatus,
    JobType,
    TranscriptionStatus,
    Usage,
)
from .processing_queue import ProcessingQueue
from .progress import ProgressBroker

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPES = {
    JobType.TRANSCRIPTION: ContentType.AUDIO_FOR_TRANSCRIPTION,
    JobType.INSIGHTS: ContentType.TRANSCRIPT_FOR_INSIGHTS,
    JobType.EMBEDDING: ContentType.TRANSCRIPT_FOR_EMBEDDING,
}

def resolve_content_type(job_type: JobType, content_type: Optional[str] = None) -> str:
    """
    Cache discriminator for a job type.

    Each job type owns exactly one content type, so one kind of artifact can
    never be read from or written into another kind's cache slot.

    Raises:
        ValueError: If ``content_type`` belongs to a different job type
    """
    expected = DEFAULT_CONTENT_TYPES[job_type]
    if content_type and content_type != expected:
        raise ValueError(f"content_type for {job_type.value} jobs must be {expected!r}, got {content_type!r}")
    return expected


STAGE_MESSAGES = {
    JobType.TRANSCRIPTION: "Transcribing audio...",
    JobType.INSIGHTS: "Analyzing with AI...",
    JobType.EMBEDDING: "Generating embedding...",
}


class EnrichmentOrchestrator:
    """Accepts enrich requests and drives jobs through their lifecycle."""

    def __init__(
        self,
        call_store: CallStore,
        job_manager: JobManager,
        cache: EnrichmentCache,
        generators: Dict[JobType, Any],
        max_workers: int = 2,
        capability_timeout: float = 120.0,
        max_retries: int = 0,
        retry_backoff: float = 1.0,
        progress: Optional[ProgressBroker] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            call_store: Calls being enriched
            job_manager: Job records
            cache: Enrichment cache
            generators: External capability per job type; each has ``generate(call) -> GenerationResult``
            max_workers: Concurrent jobs
            capability_timeout: Seconds allowed for one provider call
            max_retries: Extra attempts for transient provider failures (0 disables retry)
            retry_backoff: Base delay between attempts, multiplied by the attempt number
            progress: Broker notified on every job update
        """
        self.call_store = call_store
        self.job_manager = job_manager
        self.cache = cache
        self.generators = generators
        self.capability_timeout = capability_timeout
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.progress = progress or ProgressBroker()
        self.queue = ProcessingQueue(max_workers=max_workers)

    def enrich(
        self,
        entity_id: str,
        job_type: Union[JobType, str],
        user_id: str,
        content_type: Optional[str] = None,
        force_regenerate: bool = False,
    ) -> EnrichResult:
        """
        Request enrichment of a call.

        Args:
            entity_id: Call to enrich
            job_type: transcription, insights or embedding
            user_id: Requesting user; must own the call
            content_type: Cache discriminator; must match the job type when given
            force_regenerate: Skip the cache lookup and always call the provider

        Returns:
            Job id, status and whether the result came from the cache

        Raises:
            ValueError: Unknown job type or a content type of another job type
            EntityNotFoundError, AccessDeniedError, EmptyContentError, DuplicateActiveJobError
        """
        job_type = JobType(job_type)
        content_type = resolve_content_type(job_type, content_type)

        call = self.call_store.get_for_user(entity_id, user_id)
        content_hash = hash_content(self._content_for(call, job_type), content_type)

        if not force_regenerate:
            entry = self.cache.lookup(entity_id, content_type, content_hash)
            if entry is not None:
                return self._answer_from_cache(call, job_type, entry)
        else:
            logger.info(f"Force regenerate: skipping cache for {job_type.value} of call {entity_id}")

        job = self.job_manager.create(entity_id, job_type)
        self._publish(job)
        try:
            self.queue.submit(job.id, self._run_job, job.id, entity_id, job_type, content_type)
        except Exception as e:
            logger.error(f"Could not schedule job {job.id}: {e}")
            self._abandon(job.id, f"Could not schedule job: {e}")
            raise
        return EnrichResult(job_id=job.id, status=JobStatus.PENDING, cached=False)

    def get_job(self, job_id: str) -> Job:
        return self.job_manager.get(job_id)

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Job:
        """Block until a job running in this process finishes, then return it."""
        self.queue.wait(job_id, timeout=timeout)
        return self.job_manager.get(job_id)

    def shutdown(self, wait: bool = True) -> None:
        self.queue.stop(wait=wait)

    def _answer_from_cache(self, call: Call, job_type: JobType, entry: CacheEntry) -> EnrichResult:
        logger.info(f"Cache hit for {job_type.value} of call {call.id}")
        job = self.job_manager.create_cached(call.id, job_type)
        self.cache.record_cost(call.id, job_type.value, Usage(), cached=True)

        # A cached transcript may still need to be written back to the call
        if job_type == JobType.TRANSCRIPTION and call.transcription_status != TranscriptionStatus.COMPLETED:
            self._save_transcript(call, entry.artifact)

        self._publish(job)
        return EnrichResult(
            job_id=job.id, status=JobStatus.COMPLETED, cached=True, artifact_ref=self._artifact_ref(entry)
        )

    def _run_job(self, job_id: str, entity_id: str, job_type: JobType, content_type: str) -> None:
        """Process one job to completion or failure."""
        start_time = time.time()

        try:
            job = self.job_manager.transition(
                job_id, JobStatus.PROCESSING, progress=JobProgress("processing", 10.0, "Starting...")
            )
        except Exception as e:
            logger.error(f"Could not start job {job_id}: {e}")
            return
        self._publish(job)

        try:
            # Reload: the transcript may have changed since the request was accepted
            call = self.call_store.get(entity_id)
            content_hash = hash_content(self._content_for(call, job_type), content_type)

            self._update_progress(job_id, "generating", 30.0, STAGE_MESSAGES[job_type])
            result = self._invoke(job_id, job_type, call)

            self._update_progress(job_id, "saving", 90.0, "Saving results...")
            entry = CacheEntry(
                entity_id=entity_id,
                content_type=content_type,
                model=result.model,
                model_version=result.model_version,
                content_hash=content_hash,
                artifact=result.artifact,
                usage=result.usage,
                metadata=self._metadata_for(call, job_type),
            )
            self.cache.upsert(entry)
            self.cache.record_cost(entity_id, job_type.value, result.usage, cached=False)
            self._apply_side_effects(call, job_type, result)

            job = self.job_manager.transition(
                job_id, JobStatus.COMPLETED, progress=JobProgress("complete", 100.0, "Complete!"), cached=False
            )
            logger.info(f"Job {job_id} ({job_type.value}) completed in {time.time() - start_time:.2f} seconds")

        except Exception as e:
            logger.error(f"Job {job_id} ({job_type.value}) failed for call {entity_id}: {e}")
            job = self._fail(job_id, str(e) or type(e).__name__)

        if job is not None:
            self._publish(job)

    def _invoke(self, job_id: str, job_type: JobType, call: Call) -> GenerationResult:
        """Call the provider with a timeout, retrying transient failures if configured."""
        generator = self.generators.get(job_type)
        if generator is None:
            raise ExternalCapabilityError(f"No {job_type.value} provider configured")

        attempt = 0
        while True:
            try:
                return self._call_with_timeout(generator.generate, call)
            except FuturesTimeoutError:
                error = ExternalCapabilityError(
                    f"{job_type.value} provider timed out after {self.capability_timeout:g} seconds", transient=True
                )
            except ExternalCapabilityError as e:
                error = e

            if not error.transient or attempt >= self.max_retries:
                raise error

            attempt += 1
            logger.warning(f"Job {job_id}: attempt {attempt} failed ({error}); retrying")
            self._update_progress(job_id, "generating", 30.0, f"Retrying ({attempt}/{self.max_retries})...")
            time.sleep(self.retry_backoff * attempt)

    def _call_with_timeout(self, fn, *args) -> Any:
        # A dedicated daemon thread per call: a hung provider cannot starve the worker pool
        future: Future = Future()

        def runner():
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(fn(*args))
            except BaseException as e:
                future.set_exception(e)

        threading.Thread(target=runner, daemon=True, name="enrich-provider").start()
        return future.result(timeout=self.capability_timeout)

    def _content_for(self, call: Call, job_type: JobType) -> str:
        """The content whose hash keys the cache for this job type."""
        if job_type == JobType.TRANSCRIPTION:
            if not call.audio_digest:
                raise EmptyContentError(f"Call {call.id} has no audio to transcribe")
            return call.audio_digest

        if call.transcription_status != TranscriptionStatus.COMPLETED:
            raise EmptyContentError(f"Call {call.id} has no completed transcript")
        return call.text

    def _metadata_for(self, call: Call, job_type: JobType) -> Dict[str, Any]:
        if job_type != JobType.EMBEDDING:
            return {}
        insights = self.cache.get(call.id, ContentType.TRANSCRIPT_FOR_INSIGHTS)
        return build_search_metadata(call, insights.artifact if insights else None)

    def _apply_side_effects(self, call: Call, job_type: JobType, result: GenerationResult) -> None:
        if job_type == JobType.TRANSCRIPTION:
            self._save_transcript(call, result.artifact)
        elif job_type == JobType.INSIGHTS:
            # Keep the search filters of an existing embedding in step with the new insights
            embedding = self.cache.get(call.id, ContentType.TRANSCRIPT_FOR_EMBEDDING)
            if embedding is not None:
                refreshed = self.call_store.get(call.id)
                self.cache.upsert(replace(embedding, metadata=build_search_metadata(refreshed, result.artifact)))

    def _save_transcript(self, call: Call, artifact: Dict[str, Any]) -> None:
        self.call_store.save_transcription(
            call.id,
            artifact.get("text", ""),
            language=artifact.get("language"),
            duration_seconds=artifact.get("duration"),
        )

    def _update_progress(self, job_id: str, stage: str, progress: float, message: str) -> None:
        job = self.job_manager.update_progress(job_id, stage, progress, message)
        self._publish(job)

    def _fail(self, job_id: str, message: str) -> Optional[Job]:
        try:
            return self.job_manager.transition(
                job_id, JobStatus.FAILED, progress=JobProgress("failed", 100.0, "Failed"), error=message
            )
        except InvalidTransitionError as e:
            logger.error(f"Could not mark job {job_id} failed: {e}")
            return None

    def _abandon(self, job_id: str, message: str) -> None:
        """Fail a job that never reached a worker, releasing its active slot."""
        try:
            self.job_manager.transition(job_id, JobStatus.PROCESSING)
        except InvalidTransitionError as e:
            logger.error(f"Could not abandon job {job_id}: {e}")
            return
        job = self._fail(job_id, message)
        if job is not None:
            self._publish(job)

    def _publish(self, job: Job) -> None:
        self.progress.publish(job)

    @staticmethod
    def _artifact_ref(entry: CacheEntry) -> str:
        return f"{entry.entity_id}/{entry.content_type}"
