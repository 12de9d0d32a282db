"""
Embedding generation using the OpenAI embeddings API.
"""

import logging
import re
from typing import List, Optional, Tuple

from ..errors import ExternalCapabilityError
from ..server.models import Call, GenerationResult, Usage
from .costs import calculate_embedding_cost, estimate_token_count
from .hashing import normalize_text

logger = logging.getLogger(__name__)

MAX_TOKENS_PER_REQUEST = 8191

_TIMESTAMP = re.compile(r"\[\d+:\d+(?::\d+)?\]")
_SPEAKER_LABEL = re.compile(r"^\s*(Speaker \d+|Patient|Staff|Agent|Caller):", re.MULTILINE)


def prepare_text_for_embedding(text: str) -> str:
    """Collapse whitespace and truncate to the model's token budget."""
    prepared = normalize_text(text)
    max_chars = MAX_TOKENS_PER_REQUEST * 4
    if len(prepared) > max_chars:
        prepared = prepared[:max_chars] + "..."
    return prepared


def prepare_transcript_for_embedding(transcript: str) -> str:
    """Drop timestamps and speaker labels before embedding a transcript."""
    cleaned = _TIMESTAMP.sub("", transcript)
    cleaned = _SPEAKER_LABEL.sub("", cleaned)
    return prepare_text_for_embedding(cleaned)


class EmbeddingGenerator:
    """Generate fixed-dimension vectors for transcripts and search queries."""

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        dimensions: int = 1536,
        base_url: Optional[str] = None,
        timeout: float = 120.0,
    ):
        self.api_key = api_key
        self.model = model
        self.dimensions = dimensions
        self.base_url = base_url
        self.timeout = timeout
        self.client = None

    def _load_client(self):
        if self.client is not None:
            return

        from openai import OpenAI

        kwargs = {"api_key": self.api_key, "timeout": self.timeout}
        if self.base_url:
            kwargs["base_url"] = self.base_url
        self.client = OpenAI(**kwargs)

    def embed_text(self, text: str) -> Tuple[List[float], Usage]:
        """
        Embed a piece of text.

        Returns:
            The vector and its usage

        Raises:
            ExternalCapabilityError: On API errors or unexpected dimensions
        """
        if not self.api_key:
            raise ExternalCapabilityError("OpenAI API key not configured. Set OPENAI_API_KEY.")

        prepared = prepare_text_for_embedding(text)
        if not prepared:
            raise ExternalCapabilityError("Text is empty")

        self._load_client()

        from openai import APIError

        try:
            response = self.client.embeddings.create(model=self.model, input=prepared, encoding_format="float")
        except APIError as e:
            raise ExternalCapabilityError(f"OpenAI API error: {e}", transient=True) from e

        embedding = response.data[0].embedding if response.data else None
        if not embedding or len(embedding) != self.dimensions:
            raise ExternalCapabilityError(f"Invalid embedding dimensions: {len(embedding) if embedding else 0}")

        token_count = getattr(response.usage, "total_tokens", None) or estimate_token_count(prepared)
        return list(embedding), Usage(token_count=token_count, cost_usd=calculate_embedding_cost(token_count))

    def generate(self, call: Call) -> GenerationResult:
        """Embed a call transcript."""
        vector, usage = self.embed_text(prepare_transcript_for_embedding(call.text))
        return GenerationResult(artifact=vector, model=self.model, model_version=str(self.dimensions), usage=usage)
