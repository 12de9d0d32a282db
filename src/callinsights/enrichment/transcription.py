"""
Call transcription using OpenAI Whisper.

This module turns a call recording into transcript text. Two backends are
supported:
- "local": the open-source Whisper model, loaded lazily on first use
- "api": the hosted Whisper endpoint through the OpenAI client

Whichever backend is used, failures surface as ExternalCapabilityError so the
orchestrator can record them on the job.
"""

import logging
from typing import Any, Dict, Optional

from ..errors import ExternalCapabilityError
from ..server.models import Call, GenerationResult, Usage
from .costs import estimate_transcription_cost

logger = logging.getLogger(__name__)


class AudioTranscriber:
    """
    Handle audio transcription using OpenAI Whisper.

    The Whisper model (local backend) or OpenAI client (api backend) is only
    created when the first call is transcribed.
    """

    API_MODEL = "whisper-1"

    def __init__(
        self,
        model_name: str = "base",
        backend: str = "local",
        api_key: Optional[str] = None,
        timeout: float = 120.0,
    ):
        """
        Initialize transcriber.

        Args:
            model_name: Whisper model size for the local backend (tiny, base, small, medium, large)
            backend: "local" or "api"
            api_key: OpenAI API key (api backend only)
            timeout: Request timeout in seconds (api backend only)
        """
        if backend not in ("local", "api"):
            raise ValueError(f"Unknown transcription backend: {backend}")

        self.model_name = model_name
        self.backend = backend
        self.api_key = api_key
        self.timeout = timeout
        self.model = None
        self.client = None

    @property
    def model_id(self) -> str:
        return self.API_MODEL if self.backend == "api" else f"whisper-{self.model_name}"

    def load_model(self):
        """Load the Whisper model or the OpenAI client."""
        if self.backend == "local":
            if self.model is None:
                # Import whisper only when needed; it pulls in torch
                import whisper

                logger.info(f"Loading Whisper model: {self.model_name}")
                self.model = whisper.load_model(self.model_name)
        elif self.client is None:
            from openai import OpenAI

            self.client = OpenAI(api_key=self.api_key, timeout=self.timeout)

    def transcribe(self, audio_path: str, language: Optional[str] = None) -> Dict[str, Any]:
        """
        Transcribe an audio file to text.

        Args:
            audio_path: Path to the recording
            language: Language code (default: auto-detect)

        Returns:
            Dictionary with 'text', 'segments', 'language' and 'duration'
        """
        self.load_model()

        if self.backend == "local":
            result = self.model.transcribe(audio_path, language=language, verbose=False)
        else:
            with open(audio_path, "rb") as audio_file:
                response = self.client.audio.transcriptions.create(
                    model=self.API_MODEL,
                    file=audio_file,
                    response_format="verbose_json",
                    language=language,
                )
            result = response.model_dump() if hasattr(response, "model_dump") else dict(response)

        segments = [
            {"start": seg["start"], "end": seg["end"], "text": seg["text"].strip()}
            for seg in result.get("segments") or []
        ]
        duration = result.get("duration")
        if duration is None and segments:
            duration = segments[-1]["end"]

        return {
            "text": (result.get("text") or "").strip(),
            "segments": segments,
            "language": result.get("language"),
            "duration": duration or 0.0,
        }

    def generate(self, call: Call) -> GenerationResult:
        """
        Transcribe a call's recording.

        Raises:
            ExternalCapabilityError: If the call has no audio or transcription fails
        """
        if not call.audio_path:
            raise ExternalCapabilityError(f"Call {call.id} has no audio to transcribe")

        try:
            result = self.transcribe(call.audio_path, language=call.language)
        except ExternalCapabilityError:
            raise
        except Exception as e:
            raise ExternalCapabilityError(f"Transcription failed: {e}") from e

        if not result["text"]:
            raise ExternalCapabilityError("Transcription returned no speech")

        cost = estimate_transcription_cost(result["duration"]) if self.backend == "api" else 0.0
        return GenerationResult(
            artifact=result,
            model=self.model_id,
            model_version=self.model_name if self.backend == "local" else "",
            usage=Usage(token_count=0, cost_usd=cost),
        )
