"""
Call insight generation using the OpenAI chat API.

Produces a structured JSON payload per call: a brief summary with key points
and outcome, sentiment, action items and red flags. Uses lazy loading of the
OpenAI client so importing this module never touches the network.

Key features:
- JSON-mode completion with a fixed response schema
- Validation of the model output before it is cached
- Placeholder payload for calls too short to analyse
- Token usage and cost accounting
"""

import json
import logging
from typing import Any, Dict, Optional

from ..errors import ExternalCapabilityError
from ..server.models import Call, GenerationResult, Usage
from .costs import calculate_insights_cost
from .hashing import TOO_SHORT_MARKER

logger = logging.getLogger(__name__)

MIN_CALL_DURATION_SECONDS = 6
MAX_TRANSCRIPT_CHARS = 100_000
TRUNCATION_NOTICE = "\n\n[Transcript truncated for length. Analysis based on first portion.]"

OUTCOMES = {"resolved", "pending", "escalated", "no_resolution", "too_short"}
SENTIMENTS = {"positive", "neutral", "negative", "mixed", "too_short"}

INSIGHTS_SYSTEM_PROMPT = """You are an expert call analyst reviewing customer phone calls.
Respond ONLY with a JSON object of this shape:
{
  "summary": {"brief": str, "key_points": [str], "outcome": "resolved|pending|escalated|no_resolution"},
  "sentiment": {"overall": "positive|neutral|negative|mixed",
                "patient_satisfaction": "happy|satisfied|neutral|frustrated|angry",
                "staff_performance": "professional|needs_improvement"},
  "action_items": [{"action": str, "priority": "urgent|high|normal|low", "assignee": str}],
  "red_flags": [{"concern": str, "severity": "high|medium|low", "category": str}]
}"""


def create_insights_prompt(transcript: str, call_duration: Optional[float] = None) -> str:
    duration_line = f"Call duration: {int(call_duration)} seconds\n" if call_duration else ""
    return f"""Analyze this call transcript.
{duration_line}
Transcript:
{transcript}"""


def truncate_transcript(transcript: str, max_length: int = MAX_TRANSCRIPT_CHARS) -> str:
    if len(transcript) <= max_length:
        return transcript
    return transcript[:max_length] + TRUNCATION_NOTICE


def create_too_short_response() -> Dict[str, Any]:
    """Placeholder insights for calls too short to analyse."""
    return {
        "summary": {"brief": TOO_SHORT_MARKER, "key_points": [TOO_SHORT_MARKER], "outcome": "too_short"},
        "sentiment": {
            "overall": "too_short",
            "patient_satisfaction": "too_short",
            "staff_performance": "too_short",
        },
        "action_items": [],
        "red_flags": [],
    }


def parse_insights_response(response_text: str) -> Dict[str, Any]:
    """
    Parse and validate the model's JSON output.

    Raises:
        ExternalCapabilityError: If the output is not the expected shape
    """
    try:
        data = json.loads(response_text)
    except json.JSONDecodeError as e:
        raise ExternalCapabilityError(f"Malformed insights response: {e}") from e

    if not isinstance(data, dict):
        raise ExternalCapabilityError("Malformed insights response: expected a JSON object")

    summary = data.get("summary")
    sentiment = data.get("sentiment")
    if not isinstance(summary, dict) or not isinstance(sentiment, dict):
        raise ExternalCapabilityError("Malformed insights response: missing summary or sentiment")

    if not summary.get("brief"):
        raise ExternalCapabilityError("Malformed insights response: summary.brief is empty")

    outcome = summary.get("outcome")
    if outcome not in OUTCOMES:
        raise ExternalCapabilityError(f"Malformed insights response: unknown outcome {outcome!r}")

    overall = sentiment.get("overall")
    if overall not in SENTIMENTS:
        raise ExternalCapabilityError(f"Malformed insights response: unknown sentiment {overall!r}")

    return {
        "summary": {
            "brief": summary["brief"],
            "key_points": list(summary.get("key_points") or []),
            "outcome": outcome,
        },
        "sentiment": {
            "overall": overall,
            "patient_satisfaction": sentiment.get("patient_satisfaction"),
            "staff_performance": sentiment.get("staff_performance"),
        },
        "action_items": list(data.get("action_items") or []),
        "red_flags": list(data.get("red_flags") or []),
    }


class CallInsightsGenerator:
    """
    Generate structured call insights using the OpenAI API.

    The OpenAI client is created on first use.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: Optional[str] = None,
        timeout: float = 120.0,
        temperature: float = 0.3,
        max_tokens: int = 800,
    ):
        """
        Initialize the generator.

        Args:
            api_key: OpenAI API authentication key
            model: Chat model to use
            base_url: Optional OpenAI-compatible endpoint
            timeout: Request timeout in seconds
            temperature: Sampling temperature
            max_tokens: Completion token cap
        """
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.client = None

    def _load_client(self):
        if self.client is not None:
            return

        # Import OpenAI only when loading client (not at module import time)
        from openai import OpenAI

        kwargs = {"api_key": self.api_key, "timeout": self.timeout}
        if self.base_url:
            kwargs["base_url"] = self.base_url
        self.client = OpenAI(**kwargs)
        logger.info(f"OpenAI client loaded (model: {self.model})")

    def generate(self, call: Call) -> GenerationResult:
        """
        Generate insights for a call transcript.

        Raises:
            ExternalCapabilityError: On API errors or malformed output
        """
        if call.duration_seconds is not None and call.duration_seconds < MIN_CALL_DURATION_SECONDS:
            logger.info(f"Call {call.id} is too short for insights; using placeholder")
            return GenerationResult(artifact=create_too_short_response(), model="placeholder")

        if not self.api_key:
            raise ExternalCapabilityError("OpenAI API key not configured. Set OPENAI_API_KEY.")

        self._load_client()

        from openai import APIError

        try:
            completion = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": INSIGHTS_SYSTEM_PROMPT},
                    {
                        "role": "user",
                        "content": create_insights_prompt(truncate_transcript(call.text), call.duration_seconds),
                    },
                ],
                response_format={"type": "json_object"},
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except APIError as e:
            raise ExternalCapabilityError(f"OpenAI API error: {e}", transient=True) from e

        response_text = completion.choices[0].message.content if completion.choices else None
        if not response_text:
            raise ExternalCapabilityError("No response from OpenAI")

        insights = parse_insights_response(response_text)

        usage = completion.usage
        prompt_tokens = getattr(usage, "prompt_tokens", 0) or 0
        completion_tokens = getattr(usage, "completion_tokens", 0) or 0
        return GenerationResult(
            artifact=insights,
            model=self.model,
            model_version=getattr(completion, "model", "") or "",
            usage=Usage(
                token_count=prompt_tokens + completion_tokens,
                cost_usd=calculate_insights_cost(prompt_tokens, completion_tokens),
            ),
        )
