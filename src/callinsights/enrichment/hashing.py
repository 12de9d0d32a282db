"""
Content fingerprints used as enrichment cache keys.

Hashes are computed over whitespace-normalized text so that cosmetic edits
(trailing spaces, CRLF vs LF, re-wrapped lines) do not force regeneration,
while any change to the words themselves produces a different key.
"""

import hashlib
import re
from pathlib import Path
from typing import Union

from ..errors import EmptyContentError

# Placeholder text stored for calls that were too short to analyse
TOO_SHORT_MARKER = "Too short for insights"

_WHITESPACE = re.compile(r"\s+")


class ContentType:
    """Content-type discriminators mixed into every hash."""

    TRANSCRIPT_FOR_EMBEDDING = "transcript-for-embedding"
    TRANSCRIPT_FOR_INSIGHTS = "transcript-for-insights"
    AUDIO_FOR_TRANSCRIPTION = "audio-for-transcription"
    QUERY_FOR_SEARCH = "query-for-search"


def normalize_text(text: str) -> str:
    """Collapse all whitespace runs (including line endings) to single spaces."""
    return _WHITESPACE.sub(" ", text.replace("\r\n", "\n")).strip()


def hash_content(text: str, content_type: str) -> str:
    """
    Compute the cache key for a piece of content.

    Args:
        text: Raw content (transcript text, or an audio digest)
        content_type: Discriminator so the same text hashes differently per use

    Returns:
        64-character SHA-256 hex digest

    Raises:
        EmptyContentError: If the text is empty or the too-short placeholder
    """
    normalized = normalize_text(text or "")
    if not normalized or normalized == TOO_SHORT_MARKER:
        raise EmptyContentError("Content is empty or too short to enrich")

    digest = hashlib.sha256()
    digest.update(normalized.encode("utf-8"))
    digest.update(b"\x00")
    digest.update(content_type.encode("utf-8"))
    return digest.hexdigest()


def fingerprint_file(path: Union[str, Path], chunk_size: int = 1024 * 1024) -> str:
    """SHA-256 of a file's bytes, read in chunks."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()
