"""Shared fixtures: isolated stores under tmp_path and fake external capabilities.

No network access and no Whisper/OpenAI models; every capability is a fake
that counts its invocations.
"""

import math
import threading
from pathlib import Path

import pytest

from callinsights.errors import ExternalCapabilityError
from callinsights.server.call_store import CallStore
from callinsights.server.enrichment_cache import FileEnrichmentCache
from callinsights.server.job_manager import JobManager
from callinsights.server.models import GenerationResult, JobType, Usage
from callinsights.server.orchestrator import EnrichmentOrchestrator

TRANSCRIPT = (
    "Agent: Thanks for calling Smile Dental, this is Dana.\n"
    "Caller: Hi, I need to book a cleaning for my son.\n"
    "Agent: Sure, I can do Thursday at 3 pm. Does that work?\n"
    "Caller: That works, thank you."
)


def make_insights(sentiment: str = "positive", outcome: str = "resolved", red_flags=None, action_items=None):
    return {
        "summary": {"brief": "Cleaning booked.", "key_points": ["Thursday 3 pm"], "outcome": outcome},
        "sentiment": {"overall": sentiment, "score": 0.8},
        "action_items": action_items if action_items is not None else ["Send confirmation"],
        "red_flags": red_flags if red_flags is not None else [],
    }


def unit_vector(similarity: float):
    """2-d unit vector whose cosine similarity with [1, 0] is ``similarity``."""
    return [similarity, math.sqrt(1 - similarity**2)]


class FakeCapability:
    """Stands in for a transcription, insight or embedding provider."""

    def __init__(self, artifact_fn, model: str = "fake-model", model_version: str = "1"):
        self.artifact_fn = artifact_fn
        self.model = model
        self.model_version = model_version
        self.calls = 0
        self.failures = []
        self.release = None
        self.started = threading.Event()
        self._lock = threading.Lock()

    def block(self) -> threading.Event:
        """Make every call wait until the returned event is set."""
        self.release = threading.Event()
        return self.release

    def fail_next(self, *errors: Exception) -> None:
        self.failures.extend(errors)

    def generate(self, call) -> GenerationResult:
        with self._lock:
            self.calls += 1
            attempt = self.calls
            error = self.failures.pop(0) if self.failures else None

        self.started.set()
        if self.release is not None:
            self.release.wait(10)
        if error is not None:
            raise error

        return GenerationResult(
            artifact=self.artifact_fn(call, attempt),
            model=self.model,
            model_version=self.model_version,
            usage=Usage(token_count=100, cost_usd=0.001),
        )


class FakeEmbedder(FakeCapability):
    """Embeds text as a fixed 2-d vector, and counts query embeddings."""

    def __init__(self, vector=None):
        super().__init__(lambda call, attempt: list(vector or [1.0, 0.0]), model="fake-embedding")
        self.vector = vector or [1.0, 0.0]
        self.query_vectors = {}
        self.embed_calls = 0

    def embed_text(self, text: str):
        self.embed_calls += 1
        return list(self.query_vectors.get(text, self.vector)), Usage(token_count=5)


@pytest.fixture
def call_store(tmp_path: Path) -> CallStore:
    return CallStore(tmp_path / "calls")


@pytest.fixture
def job_manager(tmp_path: Path) -> JobManager:
    return JobManager(tmp_path / "jobs")


@pytest.fixture
def cache(tmp_path: Path) -> FileEnrichmentCache:
    return FileEnrichmentCache(tmp_path / "cache")


@pytest.fixture
def transcriber() -> FakeCapability:
    return FakeCapability(
        lambda call, attempt: {"text": TRANSCRIPT, "segments": [], "language": "en", "duration": 42.0},
        model="whisper-base",
    )


@pytest.fixture
def insights_generator() -> FakeCapability:
    return FakeCapability(lambda call, attempt: {**make_insights(), "attempt": attempt}, model="gpt-4o-mini")


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def generators(transcriber, insights_generator, embedder):
    return {
        JobType.TRANSCRIPTION: transcriber,
        JobType.INSIGHTS: insights_generator,
        JobType.EMBEDDING: embedder,
    }


@pytest.fixture
def orchestrator(call_store, job_manager, cache, generators):
    orchestrator = EnrichmentOrchestrator(
        call_store, job_manager, cache, generators, max_workers=2, capability_timeout=5.0, retry_backoff=0.0
    )
    yield orchestrator
    orchestrator.shutdown(wait=False)


@pytest.fixture
def audio_file(tmp_path: Path) -> Path:
    path = tmp_path / "recording.wav"
    path.write_bytes(b"RIFF" + bytes(range(256)) * 8)
    return path


@pytest.fixture
def transcribed_call(call_store):
    return call_store.create_call("user-1", text=TRANSCRIPT, duration_seconds=42.0, language="en")


def failing(message: str, transient: bool = False) -> ExternalCapabilityError:
    return ExternalCapabilityError(message, transient=transient)
