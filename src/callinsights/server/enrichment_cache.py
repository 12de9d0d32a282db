"""
Content-addressed cache of enrichment artifacts.

One entry per (call, content type). An entry is reused only when its stored
content hash equals the hash of the call's current content, so editing a
transcript invalidates its insights and embedding without any explicit purge.

The orchestrator talks to the ``EnrichmentCache`` interface only; the shipped
engine keeps one JSON document per entry under ``<cache_dir>/<call id>/``.
"""

import logging
import shutil
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Union

from .models import CacheEntry, Usage
from .storage import append_json_line, is_safe_key, read_json, write_json_atomic

logger = logging.getLogger(__name__)


class EnrichmentCache:
    """Lookup/upsert/invalidate interface for previously computed artifacts."""

    def lookup(self, entity_id: str, content_type: str, content_hash: str) -> Optional[CacheEntry]:
        raise NotImplementedError

    def get(self, entity_id: str, content_type: str) -> Optional[CacheEntry]:
        raise NotImplementedError

    def upsert(self, entry: CacheEntry) -> None:
        raise NotImplementedError

    def invalidate(self, entity_id: str, content_type: Optional[str] = None) -> int:
        raise NotImplementedError

    def iter_entries(self, content_type: str) -> Iterator[CacheEntry]:
        raise NotImplementedError

    def record_cost(self, entity_id: str, job_type: str, usage: Usage, cached: bool = False) -> None:
        raise NotImplementedError

    def stats(self) -> Dict[str, Any]:
        raise NotImplementedError


class FileEnrichmentCache(EnrichmentCache):
    """Filesystem engine for the enrichment cache."""

    COSTS_FILE = "costs.jsonl"

    def __init__(self, cache_dir: Union[str, Path] = "server_data/cache", max_age_days: int = 30):
        """
        Initialize the cache.

        Args:
            cache_dir: Directory holding one sub-directory per call
            max_age_days: Entries older than this are misses (0 disables expiry)
        """
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.costs_path = self.cache_dir / self.COSTS_FILE
        self.max_age = timedelta(days=max_age_days) if max_age_days > 0 else None

        self._stats_lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._invalidations = 0

    def lookup(self, entity_id: str, content_type: str, content_hash: str) -> Optional[CacheEntry]:
        """
        Return the stored entry only if it was generated from identical content.

        Args:
            entity_id: Call id
            content_type: Content-type discriminator
            content_hash: Hash of the call's current content

        Returns:
            The cached entry on a hit, None on a miss
        """
        entry = self.get(entity_id, content_type)

        if entry is None:
            self._count(miss=True)
            return None

        if entry.content_hash != content_hash:
            logger.info(f"Cache stale for call {entity_id} ({content_type}): content changed")
            self._count(miss=True)
            return None

        if self.max_age is not None and datetime.now() - entry.generated_at > self.max_age:
            logger.info(f"Cache expired for call {entity_id} ({content_type})")
            self._count(miss=True)
            return None

        self._count(miss=False)
        return entry

    def get(self, entity_id: str, content_type: str) -> Optional[CacheEntry]:
        """Raw read of the entry for (call, content type), regardless of validity."""
        if not (is_safe_key(entity_id) and is_safe_key(content_type)):
            return None

        data = read_json(self._entry_path(entity_id, content_type))
        return CacheEntry.from_dict(data) if data else None

    def upsert(self, entry: CacheEntry) -> None:
        """Replace whatever is stored for (call, content type) with ``entry``."""
        if not (is_safe_key(entry.entity_id) and is_safe_key(entry.content_type)):
            raise ValueError(f"Unsafe cache key: {entry.entity_id!r}/{entry.content_type!r}")

        write_json_atomic(self._entry_path(entry.entity_id, entry.content_type), entry.to_dict())
        logger.debug(f"Cached {entry.content_type} for call {entry.entity_id} ({entry.model})")

    def invalidate(self, entity_id: str, content_type: Optional[str] = None) -> int:
        """
        Remove cached entries of a call.

        Args:
            entity_id: Call id
            content_type: Only this content type; all when None

        Returns:
            Number of entries removed
        """
        if not is_safe_key(entity_id) or (content_type is not None and not is_safe_key(content_type)):
            return 0

        entity_dir = self.cache_dir / entity_id
        if not entity_dir.exists():
            return 0

        if content_type is None:
            removed = len(list(entity_dir.glob("*.json")))
            shutil.rmtree(entity_dir, ignore_errors=True)
        else:
            path = self._entry_path(entity_id, content_type)
            removed = 0
            if path.exists():
                path.unlink()
                removed = 1

        with self._stats_lock:
            self._invalidations += removed
        return removed

    def iter_entries(self, content_type: str) -> Iterator[CacheEntry]:
        """Yield every stored entry of one content type."""
        if not is_safe_key(content_type):
            return

        for entity_dir in self.cache_dir.iterdir():
            if not entity_dir.is_dir():
                continue

            data = read_json(entity_dir / f"{content_type}.json")
            if data:
                yield CacheEntry.from_dict(data)

    def record_cost(self, entity_id: str, job_type: str, usage: Usage, cached: bool = False) -> None:
        """
        Append a usage record for billing and reporting.

        Best effort: a failure here is logged and never fails the enrichment.
        """
        record = {
            "entity_id": entity_id,
            "job_type": job_type,
            "token_count": usage.token_count,
            "cost_usd": round(usage.cost_usd, 8),
            "cached": cached,
            "recorded_at": datetime.now().isoformat(),
        }
        try:
            append_json_line(self.costs_path, record)
        except Exception as e:
            logger.error(f"Failed to record cost for call {entity_id}: {e}")

    def stats(self) -> Dict[str, Any]:
        """Cache hit/miss counters for monitoring."""
        with self._stats_lock:
            total = self._hits + self._misses
            return {
                "hits": self._hits,
                "misses": self._misses,
                "invalidations": self._invalidations,
                "hit_rate": self._hits / total if total else 0.0,
            }

    def _entry_path(self, entity_id: str, content_type: str) -> Path:
        return self.cache_dir / entity_id / f"{content_type}.json"

    def _count(self, miss: bool) -> None:
        with self._stats_lock:
            if miss:
                self._misses += 1
            else:
                self._hits += 1
