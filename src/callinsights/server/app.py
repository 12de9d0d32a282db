"""
Flask API server for call enrichment.

This server provides endpoints for:
- Uploading calls (audio recordings or already-transcribed text)
- Requesting transcription, insight and embedding jobs and polling them
- Semantic search over a user's calls
- QA scoring

Enrichment work runs on a ThreadPoolExecutor inside the orchestrator; every
request is answered immediately with a job id. The requesting user is taken
from the ``X-User-Id`` header.
"""

import atexit
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from flask import Flask, jsonify, request
from flask_cors import CORS
from werkzeug.utils import secure_filename

from ..config import ConfigManager
from ..enrichment.embeddings import EmbeddingGenerator
from ..enrichment.insights import CallInsightsGenerator
from ..enrichment.transcription import AudioTranscriber
from ..errors import (
    AccessDeniedError,
    DimensionMismatchError,
    DuplicateActiveJobError,
    EmptyContentError,
    EnrichmentError,
    EntityNotFoundError,
    InvalidTransitionError,
    JobNotFoundError,
)
from ..qa.criteria import criteria_catalogue
from ..qa.scoring import QACriterionScore, load_grade_scale, score_criteria
from ..search.service import QueryEmbeddingCache, SemanticSearchService
from ..search.vector_search import VectorSearchEngine
from .call_store import CallStore
from .enrichment_cache import EnrichmentCache, FileEnrichmentCache
from .job_manager import JobManager
from .models import JobStatus, JobType, SearchFilters, parse_flag, to_local_naive
from .orchestrator import EnrichmentOrchestrator, resolve_content_type

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {"wav", "mp3", "mp4", "m4a", "flac", "aac", "ogg", "wma"}

USER_HEADER = "X-User-Id"

ERROR_STATUS = [
    (EntityNotFoundError, 404),
    (JobNotFoundError, 404),
    (AccessDeniedError, 403),
    (EmptyContentError, 422),
    (DuplicateActiveJobError, 409),
    (DimensionMismatchError, 400),
    (InvalidTransitionError, 409),
]


class InvalidRequestError(Exception):
    """Malformed request parameters."""


@dataclass
class Services:
    """Everything the HTTP layer talks to."""

    call_store: CallStore
    job_manager: JobManager
    cache: EnrichmentCache
    orchestrator: EnrichmentOrchestrator
    search: SemanticSearchService
    grade_scale: List[Tuple[float, str, str]]


def build_services(
    data_dir: Optional[str] = None,
    generators: Optional[Dict[JobType, Any]] = None,
    embedder: Optional[Any] = None,
) -> Services:
    """
    Wire stores, cache, orchestrator and search from configuration.

    Args:
        data_dir: Root directory for calls, jobs and cache (DATA_DIR)
        generators: Capability per job type; built from configuration when None
        embedder: Query embedder for search; defaults to the embedding generator
    """
    root = Path(ConfigManager.get("DATA_DIR", data_dir))
    api_key = ConfigManager.get("OPENAI_API_KEY")
    base_url = ConfigManager.get("LLM_API_BASE_URL") or None
    timeout = ConfigManager.get_float("CAPABILITY_TIMEOUT_SECONDS")

    if generators is None:
        generators = {
            JobType.TRANSCRIPTION: AudioTranscriber(
                model_name=ConfigManager.get("WHISPER_MODEL"),
                backend=ConfigManager.get("TRANSCRIPTION_BACKEND"),
                api_key=api_key,
                timeout=timeout,
            ),
            JobType.INSIGHTS: CallInsightsGenerator(
                api_key=api_key, model=ConfigManager.get("INSIGHTS_MODEL"), base_url=base_url, timeout=timeout
            ),
            JobType.EMBEDDING: EmbeddingGenerator(
                api_key=api_key,
                model=ConfigManager.get("EMBEDDING_MODEL"),
                dimensions=ConfigManager.get_int("EMBEDDING_DIMENSIONS"),
                base_url=base_url,
                timeout=timeout,
            ),
        }
    if embedder is None:
        embedder = generators.get(JobType.EMBEDDING)

    call_store = CallStore(root / "calls")
    job_manager = JobManager(root / "jobs")
    cache = FileEnrichmentCache(root / "cache", max_age_days=ConfigManager.get_int("CACHE_MAX_AGE_DAYS"))

    orchestrator = EnrichmentOrchestrator(
        call_store,
        job_manager,
        cache,
        generators,
        max_workers=ConfigManager.get_int("MAX_WORKERS"),
        capability_timeout=timeout,
        max_retries=ConfigManager.get_int("CAPABILITY_MAX_RETRIES"),
        retry_backoff=ConfigManager.get_float("CAPABILITY_RETRY_BACKOFF_SECONDS"),
    )

    search = SemanticSearchService(
        VectorSearchEngine(cache, max_limit=ConfigManager.get_int("SEARCH_MAX_LIMIT")),
        call_store,
        embedder,
        query_cache=QueryEmbeddingCache(max_size=ConfigManager.get_int("QUERY_CACHE_SIZE")),
        default_limit=ConfigManager.get_int("SEARCH_DEFAULT_LIMIT"),
        default_threshold=ConfigManager.get_float("SEARCH_DEFAULT_THRESHOLD"),
    )

    return Services(
        call_store=call_store,
        job_manager=job_manager,
        cache=cache,
        orchestrator=orchestrator,
        search=search,
        grade_scale=load_grade_scale(),
    )


def allowed_file(filename: str) -> bool:
    """Check if the uploaded file has an allowed extension."""
    return "." in filename and filename.rsplit(".", 1)[1].lower() in ALLOWED_EXTENSIONS


def _current_user() -> str:
    user_id = request.headers.get(USER_HEADER, "").strip()
    if not user_id:
        raise InvalidRequestError(f"Missing {USER_HEADER} header")
    return user_id


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    return data


def _number(value: Any, name: str, cast=float) -> Optional[Any]:
    if value is None or value == "":
        return None
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise InvalidRequestError(f"Invalid {name}: {value!r}") from None


def _parse_datetime(value: Optional[str], name: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        return to_local_naive(datetime.fromisoformat(value))
    except ValueError:
        raise InvalidRequestError(f"Invalid {name}: {value!r}") from None


def create_app(services: Optional[Services] = None, data_dir: Optional[str] = None) -> Flask:
    """
    Create the Flask application.

    Args:
        services: Pre-built services (tests inject fakes here)
        data_dir: Data directory used when services are built from configuration
    """
    if services is None:
        services = build_services(data_dir)

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = 500 * 1024 * 1024  # 500MB max file size
    app.extensions["callinsights"] = services
    CORS(app)

    # Configure logging to reduce verbosity
    log_level = ConfigManager.get("LOG_LEVEL").upper()
    logging.getLogger("werkzeug").setLevel(getattr(logging, log_level, logging.WARNING))

    atexit.register(services.orchestrator.shutdown)

    @app.errorhandler(InvalidRequestError)
    def handle_invalid_request(error: InvalidRequestError):
        return jsonify({"error": str(error)}), 400

    @app.errorhandler(EnrichmentError)
    def handle_enrichment_error(error: EnrichmentError):
        status = next((code for error_type, code in ERROR_STATUS if isinstance(error, error_type)), 500)
        body = {"error": str(error), "error_type": type(error).__name__}
        if isinstance(error, DuplicateActiveJobError):
            body["active_job_id"] = error.active_job_id
        if status == 500:
            logger.error(f"Unhandled enrichment error: {error}")
        return jsonify(body), status

    @app.route("/health", methods=["GET"])
    def health_check():
        """Health check endpoint."""
        queue_status = services.orchestrator.queue.get_queue_status()
        return jsonify(
            {
                "status": "healthy",
                "timestamp": datetime.now().isoformat(),
                "queue_running": queue_status["is_running"],
                "running_jobs": len(queue_status["running_jobs"]),
                "max_workers": queue_status["max_workers"],
            }
        )

    @app.route("/calls", methods=["POST"])
    def create_call():
        """
        Create a call.

        Either multipart form data with an audio ``file``, or a JSON body with
        the transcript ``text`` of an already-transcribed call. Optional fields:
        call_time (ISO 8601), duration_seconds, language.

        Returns:
        - the new call (201)
        """
        user_id = _current_user()

        if "file" not in request.files:
            data = _json_body()
            text = data.get("text")
            if not isinstance(text, str) or not text.strip():
                raise InvalidRequestError("Provide an audio file or transcript text")
            call = services.call_store.create_call(
                user_id,
                text=text,
                call_time=_parse_datetime(data.get("call_time"), "call_time"),
                duration_seconds=_number(data.get("duration_seconds"), "duration_seconds"),
                language=data.get("language"),
            )
            return jsonify(call.to_dict()), 201

        file = request.files["file"]
        if file.filename == "":
            raise InvalidRequestError("No file selected")

        if not allowed_file(file.filename):
            allowed_types = ", ".join(sorted(ALLOWED_EXTENSIONS))
            raise InvalidRequestError(f"File type not allowed. Allowed types: {allowed_types}")

        # Validate filename is not empty after sanitization
        original_filename = secure_filename(file.filename)
        if not original_filename:
            raise InvalidRequestError("Invalid filename")

        with tempfile.NamedTemporaryFile(
            delete=False, suffix=f".{original_filename.rsplit('.', 1)[1].lower()}"
        ) as tmp_file:
            file.save(tmp_file.name)
            temp_file_path = tmp_file.name

        try:
            file_size = os.path.getsize(temp_file_path)
            if file_size == 0:
                raise InvalidRequestError("Empty file not allowed")

            # Reasonable minimum size for audio files (1KB)
            if file_size < 1024:
                raise InvalidRequestError("File too small to be a valid audio file")

            call = services.call_store.create_call(
                user_id,
                audio_file_path=temp_file_path,
                original_filename=original_filename,
                call_time=_parse_datetime(request.form.get("call_time"), "call_time"),
                duration_seconds=_number(request.form.get("duration_seconds"), "duration_seconds"),
                language=request.form.get("language") or None,
            )
            return jsonify(call.to_dict()), 201

        finally:
            # Clean up temporary file
            if os.path.exists(temp_file_path):
                os.unlink(temp_file_path)

    @app.route("/calls/<call_id>", methods=["GET"])
    def get_call(call_id: str):
        """Call record plus the history of its jobs."""
        call = services.call_store.get_for_user(call_id, _current_user())
        data = call.to_dict()
        data["jobs"] = [job.to_dict() for job in services.job_manager.list_by_entity(call_id)]
        return jsonify(data)

    @app.route("/calls/<call_id>/transcript", methods=["PUT"])
    def edit_transcript(call_id: str):
        """Replace the transcript text. Cached insights and embeddings stop matching."""
        text = _json_body().get("text")
        if not isinstance(text, str):
            raise InvalidRequestError("Field 'text' is required")
        call = services.call_store.edit_transcript(call_id, _current_user(), text)
        return jsonify(call.to_dict())

    @app.route("/calls/<call_id>/enrich", methods=["POST"])
    def enrich_call(call_id: str):
        """
        Request enrichment.

        Expected JSON body:
        - job_type: transcription, insights or embedding
        - content_type: Optional cache discriminator
        - force_regenerate: Optional, skip the cache

        Returns 200 with a completed job for a cache hit, 202 with a pending job otherwise.
        """
        user_id = _current_user()
        data = _json_body()
        try:
            job_type = JobType(data.get("job_type"))
        except ValueError:
            allowed = ", ".join(t.value for t in JobType)
            raise InvalidRequestError(f"Invalid job_type. Allowed: {allowed}") from None

        try:
            content_type = resolve_content_type(job_type, data.get("content_type"))
            force_regenerate = parse_flag(data.get("force_regenerate"), "force_regenerate", default=False)
        except ValueError as e:
            raise InvalidRequestError(str(e)) from None

        result = services.orchestrator.enrich(
            call_id, job_type, user_id, content_type=content_type, force_regenerate=force_regenerate
        )
        return jsonify(result.to_dict()), (200 if result.cached else 202)

    @app.route("/jobs/<job_id>", methods=["GET"])
    def get_job_status(job_id: str):
        """
        Get the status of an enrichment job.

        Returns job metadata including status, progress, timestamps, error and cached flag.
        """
        job = services.orchestrator.get_job(job_id)
        services.call_store.get_for_user(job.entity_id, _current_user())
        return jsonify(job.to_dict())

    @app.route("/jobs", methods=["GET"])
    def list_jobs():
        """
        List the caller's jobs.

        Query parameters:
        - status: Filter by status (pending, processing, completed, failed)
        - entity_id: Filter by call
        - limit: Limit number of results (default: 100)
        - offset: Offset for pagination (default: 0)

        Returns list of job metadata sorted by creation time (newest first).
        """
        user_id = _current_user()
        status_filter = request.args.get("status")
        try:
            status = JobStatus(status_filter) if status_filter else None
        except ValueError:
            raise InvalidRequestError(f"Invalid status: {status_filter!r}") from None
        limit = _number(request.args.get("limit", 100), "limit", int)
        offset = _number(request.args.get("offset", 0), "offset", int)
        if limit < 0 or offset < 0:
            raise InvalidRequestError("limit and offset must be non-negative")

        owned = set(services.call_store.list_ids_for_owner(user_id))
        entity_id = request.args.get("entity_id")
        jobs = [
            job
            for job in services.job_manager.list_jobs(status_filter=status, limit=1_000_000)
            if job.entity_id in owned and (entity_id is None or job.entity_id == entity_id)
        ]

        # Apply pagination
        total_jobs = len(jobs)
        jobs = jobs[offset : offset + limit]

        return jsonify({"jobs": [job.to_dict() for job in jobs], "total": total_jobs, "limit": limit, "offset": offset})

    @app.route("/search", methods=["POST"])
    def search_calls():
        """
        Semantic search over the caller's calls.

        Expected JSON body: query, optional filters, limit, threshold.
        """
        user_id = _current_user()
        data = _json_body()
        query = data.get("query")
        if not isinstance(query, str):
            raise InvalidRequestError("Field 'query' is required")

        limit = _number(data.get("limit"), "limit", int)
        if limit is not None and limit < 1:
            raise InvalidRequestError("limit must be at least 1")
        threshold = _number(data.get("threshold"), "threshold")

        try:
            filters = SearchFilters.from_dict(data.get("filters"))
        except (TypeError, ValueError, AttributeError) as e:
            raise InvalidRequestError(f"Invalid filters: {e}") from None

        return jsonify(services.search.search(query, user_id, filters=filters, limit=limit, threshold=threshold))

    @app.route("/calls/<call_id>/similar", methods=["GET"])
    def similar_calls(call_id: str):
        """Calls similar to this one, excluding itself."""
        user_id = _current_user()
        limit = _number(request.args.get("limit") or 10, "limit", int)
        if limit < 1:
            raise InvalidRequestError("limit must be at least 1")
        threshold = _number(request.args.get("threshold"), "threshold")
        return jsonify(services.search.find_similar(call_id, user_id, limit=limit, threshold=threshold))

    @app.route("/qa/score", methods=["POST"])
    def score_qa():
        """Aggregate QA criterion scores into category subtotals, a total and a grade."""
        criteria = _json_body().get("criteria")
        if not isinstance(criteria, list):
            raise InvalidRequestError("Field 'criteria' must be a list")
        try:
            scores = [QACriterionScore.from_dict(item) for item in criteria]
        except (TypeError, ValueError, AttributeError) as e:
            raise InvalidRequestError(str(e)) from None
        return jsonify(score_criteria(scores, services.grade_scale).to_dict())

    @app.route("/qa/criteria", methods=["GET"])
    def qa_criteria():
        return jsonify(criteria_catalogue())

    @app.route("/cache/stats", methods=["GET"])
    def cache_stats():
        return jsonify({"enrichment": services.cache.stats(), "query_embeddings": services.search.query_cache.stats()})

    return app


if __name__ == "__main__":
    logging.basicConfig(
        level=getattr(logging, ConfigManager.get("LOG_LEVEL").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    for key, setting in ConfigManager.snapshot().items():
        logger.info(f"{key}={setting['value']!r} ({setting['source']})")
    app = create_app()
    try:
        app.run(debug=False, host="0.0.0.0", port=5001)
    finally:
        app.extensions["callinsights"].orchestrator.shutdown()
