"""
External capabilities (Whisper transcription, OpenAI insights and embeddings)
and the content hashing that keys their cached results.
"""

from .embeddings import EmbeddingGenerator
from .hashing import TOO_SHORT_MARKER, ContentType, hash_content
from .insights import CallInsightsGenerator
from .transcription import AudioTranscriber

__all__ = [
    "AudioTranscriber",
    "CallInsightsGenerator",
    "ContentType",
    "EmbeddingGenerator",
    "TOO_SHORT_MARKER",
    "hash_content",
]
