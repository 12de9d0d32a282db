"""
Semantic call search over stored transcript embeddings.

Similarity is cosine similarity computed with numpy against every candidate
vector (a linear scan). That is fine at the scale of one tenant's call
history; an approximate index can replace the scan as long as threshold,
ranking and filter semantics stay the same.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import numpy as np

from ..enrichment.hashing import ContentType
from ..errors import DimensionMismatchError
from ..server.enrichment_cache import EnrichmentCache
from ..server.models import Call, CacheEntry, SearchFilters, SearchMatch, to_local_naive

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.7
DEFAULT_SEARCH_LIMIT = 20
MAX_SEARCH_LIMIT = 100


def build_search_metadata(call: Call, insights: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Denormalize the filterable fields of a call for its embedding entry.

    Args:
        call: The call being embedded
        insights: Its insight payload, if one has been generated
    """
    insights = insights or {}
    return {
        "sentiment": (insights.get("sentiment") or {}).get("overall"),
        "outcome": (insights.get("summary") or {}).get("outcome"),
        "has_red_flags": bool(insights.get("red_flags")),
        "has_action_items": bool(insights.get("action_items")),
        "duration_seconds": call.duration_seconds,
        "call_time": call.call_time.isoformat() if call.call_time else None,
        "language": call.language,
    }


def matches_filters(metadata: Dict[str, Any], filters: Optional[SearchFilters]) -> bool:
    """Conjunctive filter check; unset filters match everything."""
    if filters is None:
        return True

    if filters.sentiment and metadata.get("sentiment") not in filters.sentiment:
        return False
    if filters.outcome and metadata.get("outcome") not in filters.outcome:
        return False
    if filters.language and metadata.get("language") not in filters.language:
        return False

    if filters.date_from is not None or filters.date_to is not None:
        raw_time = metadata.get("call_time")
        if not raw_time:
            return False
        call_time = to_local_naive(datetime.fromisoformat(raw_time))
        if filters.date_from is not None and call_time < filters.date_from:
            return False
        if filters.date_to is not None and call_time > filters.date_to:
            return False

    if filters.min_duration is not None or filters.max_duration is not None:
        duration = metadata.get("duration_seconds")
        if duration is None:
            return False
        if filters.min_duration is not None and duration < filters.min_duration:
            return False
        if filters.max_duration is not None and duration > filters.max_duration:
            return False

    if filters.has_red_flags is not None and bool(metadata.get("has_red_flags")) != filters.has_red_flags:
        return False
    if filters.has_action_items is not None and bool(metadata.get("has_action_items")) != filters.has_action_items:
        return False

    return True


class VectorSearchEngine:
    """Ranks stored call embeddings against a query vector."""

    def __init__(
        self,
        cache: EnrichmentCache,
        content_type: str = ContentType.TRANSCRIPT_FOR_EMBEDDING,
        max_limit: int = MAX_SEARCH_LIMIT,
    ):
        self.cache = cache
        self.content_type = content_type
        self.max_limit = max_limit

    def search(
        self,
        query_vector: List[float],
        accessible_ids: Iterable[str],
        filters: Optional[SearchFilters] = None,
        limit: int = DEFAULT_SEARCH_LIMIT,
        threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        model: Optional[str] = None,
    ) -> List[SearchMatch]:
        """
        Find the calls most similar to a query vector.

        Args:
            query_vector: Embedding of the query
            accessible_ids: Calls the requesting user may see
            filters: Metadata filters (AND-ed)
            limit: Maximum number of matches (capped at max_limit)
            threshold: Minimum cosine similarity
            model: Only compare vectors produced by this embedding model

        Returns:
            Matches with similarity >= threshold, most similar first

        Raises:
            DimensionMismatchError: If the query and stored vectors differ in length
        """
        allowed = set(accessible_ids)
        candidates = [
            entry
            for entry in self.cache.iter_entries(self.content_type)
            if entry.entity_id in allowed and (model is None or entry.model == model)
        ]
        if not candidates:
            return []

        query = np.asarray(query_vector, dtype=np.float64)
        matrix = self._stack(candidates, query.shape[0])

        similarities = self._cosine_similarities(query, matrix)
        limit = max(0, min(limit, self.max_limit))

        matches = []
        for entry, similarity in zip(candidates, similarities):
            if similarity < threshold:
                continue
            if not matches_filters(entry.metadata, filters):
                continue
            matches.append(SearchMatch(entity_id=entry.entity_id, similarity=float(similarity), metadata=entry.metadata))

        matches.sort(key=lambda m: m.similarity, reverse=True)
        return matches[:limit]

    @staticmethod
    def _stack(candidates: List[CacheEntry], query_dim: int) -> np.ndarray:
        stored_dim = len(candidates[0].artifact)
        for entry in candidates:
            if len(entry.artifact) != stored_dim:
                # Vectors of one model must share a dimension; mixed stores need a model filter
                raise DimensionMismatchError(stored_dim, len(entry.artifact))
        if query_dim != stored_dim:
            raise DimensionMismatchError(stored_dim, query_dim)
        return np.asarray([entry.artifact for entry in candidates], dtype=np.float64)

    @staticmethod
    def _cosine_similarities(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
        query_norm = np.linalg.norm(query)
        row_norms = np.linalg.norm(matrix, axis=1)
        denominators = row_norms * query_norm
        dots = matrix @ query
        # Zero vectors have no direction; treat them as dissimilar
        return np.divide(dots, denominators, out=np.zeros_like(dots), where=denominators > 0)
