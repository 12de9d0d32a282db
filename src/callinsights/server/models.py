"""
Data models for the enrichment server.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class JobType(Enum):
    """Kinds of enrichment work."""

    TRANSCRIPTION = "transcription"
    INSIGHTS = "insights"
    EMBEDDING = "embedding"


class JobStatus(Enum):
    """Overall job status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def is_active(self) -> bool:
        return self in (JobStatus.PENDING, JobStatus.PROCESSING)


# pending -> processing -> {completed, failed}
VALID_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


class TranscriptionStatus(Enum):
    """Transcription state of a call."""

    NOT_STARTED = "not_started"
    COMPLETED = "completed"


def to_local_naive(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps are stored as naive local time; offset-aware input is converted."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


def parse_flag(value: Any, name: str, default: Optional[bool] = None) -> Optional[bool]:
    """Accept a real boolean (or None for the default); reject strings like "false"."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    raise ValueError(f"{name} must be true or false, got {value!r}")


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return to_local_naive(datetime.fromisoformat(value)) if value else None


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class JobProgress:
    """Advisory progress information shown to pollers."""

    stage: str = "queued"
    progress: float = 0.0
    message: str = ""


@dataclass
class Job:
    """One asynchronous unit of enrichment work."""

    id: str
    entity_id: str
    job_type: JobType
    status: JobStatus
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    progress: JobProgress = field(default_factory=JobProgress)
    error: Optional[str] = None
    cached: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_id": self.entity_id,
            "job_type": self.job_type.value,
            "status": self.status.value,
            "created_at": _format_dt(self.created_at),
            "started_at": _format_dt(self.started_at),
            "completed_at": _format_dt(self.completed_at),
            "progress": asdict(self.progress),
            "error": self.error,
            "cached": self.cached,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        return cls(
            id=data["id"],
            entity_id=data["entity_id"],
            job_type=JobType(data["job_type"]),
            status=JobStatus(data["status"]),
            created_at=_parse_dt(data["created_at"]),
            started_at=_parse_dt(data.get("started_at")),
            completed_at=_parse_dt(data.get("completed_at")),
            progress=JobProgress(**(data.get("progress") or {})),
            error=data.get("error"),
            cached=data.get("cached", False),
        )


@dataclass
class Usage:
    """Token and cost accounting for one generation."""

    token_count: int = 0
    cost_usd: float = 0.0


@dataclass
class CacheEntry:
    """A previously computed artifact for one (call, content type) pair."""

    entity_id: str
    content_type: str
    model: str
    model_version: str
    content_hash: str
    artifact: Any
    usage: Usage = field(default_factory=Usage)
    generated_at: datetime = field(default_factory=datetime.now)
    # Denormalized filter fields for embedding entries
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["generated_at"] = _format_dt(self.generated_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        return cls(
            entity_id=data["entity_id"],
            content_type=data["content_type"],
            model=data["model"],
            model_version=data.get("model_version", ""),
            content_hash=data["content_hash"],
            artifact=data["artifact"],
            usage=Usage(**(data.get("usage") or {})),
            generated_at=_parse_dt(data["generated_at"]),
            metadata=data.get("metadata") or {},
        )


@dataclass
class Call:
    """A call recording and its transcript."""

    id: str
    owner_id: str
    created_at: datetime
    original_filename: str = ""
    audio_path: Optional[str] = None
    audio_digest: Optional[str] = None
    text: str = ""
    transcription_status: TranscriptionStatus = TranscriptionStatus.NOT_STARTED
    edit_count: int = 0
    duration_seconds: Optional[float] = None
    call_time: Optional[datetime] = None
    language: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = _format_dt(self.created_at)
        data["call_time"] = _format_dt(self.call_time)
        data["transcription_status"] = self.transcription_status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Call":
        return cls(
            id=data["id"],
            owner_id=data["owner_id"],
            created_at=_parse_dt(data["created_at"]),
            original_filename=data.get("original_filename", ""),
            audio_path=data.get("audio_path"),
            audio_digest=data.get("audio_digest"),
            text=data.get("text", ""),
            transcription_status=TranscriptionStatus(data.get("transcription_status", "not_started")),
            edit_count=data.get("edit_count", 0),
            duration_seconds=data.get("duration_seconds"),
            call_time=_parse_dt(data.get("call_time")),
            language=data.get("language"),
        )


@dataclass
class GenerationResult:
    """What an external capability returns on success."""

    artifact: Any
    model: str
    model_version: str = ""
    usage: Usage = field(default_factory=Usage)


@dataclass
class EnrichResult:
    """Synchronous answer to an enrich request."""

    job_id: str
    status: JobStatus
    cached: bool
    artifact_ref: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "cached": self.cached,
            "artifact_ref": self.artifact_ref,
        }


@dataclass
class SearchMatch:
    """One ranked vector search hit."""

    entity_id: str
    similarity: float
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SearchFilters:
    """Conjunctive metadata filters; unset fields match everything."""

    sentiment: List[str] = field(default_factory=list)
    outcome: List[str] = field(default_factory=list)
    language: List[str] = field(default_factory=list)
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    min_duration: Optional[float] = None
    max_duration: Optional[float] = None
    has_red_flags: Optional[bool] = None
    has_action_items: Optional[bool] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SearchFilters":
        data = data or {}
        return cls(
            sentiment=list(data.get("sentiment") or []),
            outcome=list(data.get("outcome") or []),
            language=list(data.get("language") or []),
            date_from=_parse_dt(data.get("date_from")),
            date_to=_parse_dt(data.get("date_to")),
            min_duration=data.get("min_duration"),
            max_duration=data.get("max_duration"),
            has_red_flags=parse_flag(data.get("has_red_flags"), "has_red_flags"),
            has_action_items=parse_flag(data.get("has_action_items"), "has_action_items"),
        )
