"""Semantic search over call embeddings."""

from .service import QueryEmbeddingCache, SemanticSearchService
from .vector_search import VectorSearchEngine

__all__ = ["QueryEmbeddingCache", "SemanticSearchService", "VectorSearchEngine"]
