"""
Search request handling: embed the query text, run the vector search and
attach transcript previews.
"""

import logging
import threading
import time
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from ..enrichment.hashing import ContentType, hash_content
from ..errors import EmptyContentError, EntityNotFoundError
from ..server.call_store import CallStore
from ..server.models import SearchFilters, SearchMatch
from .vector_search import DEFAULT_SEARCH_LIMIT, DEFAULT_SIMILARITY_THRESHOLD, VectorSearchEngine

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 200


class QueryEmbeddingCache:
    """LRU of query embeddings keyed by content hash, with a time-to-live."""

    def __init__(self, max_size: int = 1000, ttl: timedelta = timedelta(days=30)):
        self.max_size = max_size
        self.ttl = ttl
        self._entries: "OrderedDict[str, Tuple[List[float], datetime]]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[List[float]]:
        with self._lock:
            item = self._entries.get(key)
            if item is None:
                self.misses += 1
                return None

            vector, created_at = item
            if datetime.now() - created_at > self.ttl:
                del self._entries[key]
                self.misses += 1
                return None

            self._entries.move_to_end(key)
            self.hits += 1
            return vector

    def set(self, key: str, vector: List[float]) -> None:
        with self._lock:
            self._entries[key] = (vector, datetime.now())
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self.hits + self.misses
            return {
                "hits": self.hits,
                "misses": self.misses,
                "size": len(self._entries),
                "hit_rate": self.hits / total if total else 0.0,
            }


def make_preview(text: str, max_chars: int = PREVIEW_CHARS) -> str:
    return text if len(text) <= max_chars else text[:max_chars] + "..."


class SemanticSearchService:
    """Text-in, ranked-calls-out search for one user's calls."""

    def __init__(
        self,
        engine: VectorSearchEngine,
        call_store: CallStore,
        embedder,
        query_cache: Optional[QueryEmbeddingCache] = None,
        default_limit: int = DEFAULT_SEARCH_LIMIT,
        default_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    ):
        """
        Args:
            engine: Vector search over stored embeddings
            call_store: Source of ownership and transcript previews
            embedder: Object with ``embed_text(text) -> (vector, usage)`` and a ``model`` attribute
            query_cache: Cache of query embeddings
        """
        self.engine = engine
        self.call_store = call_store
        self.embedder = embedder
        self.query_cache = query_cache or QueryEmbeddingCache()
        self.default_limit = default_limit
        self.default_threshold = default_threshold

    def search(
        self,
        query_text: str,
        user_id: str,
        filters: Optional[SearchFilters] = None,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Search the user's calls by meaning.

        Returns:
            {"results": [{entity_id, similarity, preview, metadata}], "search_time_ms": int}
        """
        start = time.perf_counter()
        query_vector = self._embed_query(query_text)

        matches = self.engine.search(
            query_vector,
            self.call_store.list_ids_for_owner(user_id),
            filters=filters,
            limit=self.default_limit if limit is None else limit,
            threshold=self.default_threshold if threshold is None else threshold,
            model=getattr(self.embedder, "model", None),
        )

        search_time_ms = int((time.perf_counter() - start) * 1000)
        logger.info(f"Search for user {user_id} returned {len(matches)} result(s) in {search_time_ms} ms")
        return {"results": self._present(matches), "search_time_ms": search_time_ms}

    def find_similar(self, entity_id: str, user_id: str, limit: int = 10, threshold: Optional[float] = None) -> Dict[str, Any]:
        """Calls similar to an already-embedded call, excluding the call itself."""
        start = time.perf_counter()
        self.call_store.get_for_user(entity_id, user_id)

        entry = self.engine.cache.get(entity_id, self.engine.content_type)
        if entry is None:
            raise EntityNotFoundError(entity_id)

        matches = self.engine.search(
            entry.artifact,
            self.call_store.list_ids_for_owner(user_id),
            limit=limit + 1,
            threshold=self.default_threshold if threshold is None else threshold,
            model=entry.model,
        )
        matches = [m for m in matches if m.entity_id != entity_id][:limit]

        search_time_ms = int((time.perf_counter() - start) * 1000)
        return {"results": self._present(matches), "search_time_ms": search_time_ms}

    def _embed_query(self, query_text: str) -> List[float]:
        try:
            key = hash_content(query_text, ContentType.QUERY_FOR_SEARCH)
        except EmptyContentError:
            raise EmptyContentError("Search query is empty") from None

        vector = self.query_cache.get(key)
        if vector is None:
            vector, _ = self.embedder.embed_text(query_text)
            self.query_cache.set(key, vector)
        return vector

    def _present(self, matches: List[SearchMatch]) -> List[Dict[str, Any]]:
        results = []
        for match in matches:
            try:
                text = self.call_store.get(match.entity_id).text
            except EntityNotFoundError:
                text = ""
            results.append(
                {
                    "entity_id": match.entity_id,
                    "similarity": round(match.similarity, 6),
                    "preview": make_preview(text),
                    "metadata": match.metadata,
                }
            )
        return results
