"""Three-bucket, token-budgeted shared memory cache.

Buckets:
- transient: short-lived context (1 hour TTL), LRU-evictable
- decision: cross-cycle decisions (24 hour TTL), LRU-evictable
- sensitive: manual eviction only (7 day TTL), hard token quota

Total capacity is a flat token cap. Going over it evicts transient and
decision entries, least recently accessed first; sensitive entries are
never touched by that scan. A sensitive store that would breach the quota
is rejected and reported through StoreResult rather than raised.
"""

from __future__ import annotations

import itertools
import json
import logging
import math
import time
from pathlib import Path
from typing import Any, Callable, Optional

from src.core.config import CacheConfig
from src.core.exceptions import ContextStoreError
from src.core.models import CacheBucket, CacheEntry, StoreResult
from src.tools.fs import atomic_write_text

_LOGGER_NAME = "conclave.memory.shared_cache"


def estimate_tokens(value: Any) -> int:
    """Rough estimate: one token per four characters of compact JSON."""
    serialized = json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)
    return math.ceil(len(serialized) / 4)


class SharedMemoryCache:
    """Process-wide cache shared by every actor in a run.

    Injected dependencies:
        config: Capacity, quota and per-bucket TTLs.
        clock: Returns seconds since the epoch (tests pass a fake).
        logger: Destination for store/evict records.
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or CacheConfig()
        self._clock = clock
        self._log = logger or logging.getLogger(_LOGGER_NAME)
        self._entries: dict[str, CacheEntry] = {}
        # Tie-breaker for entries touched within the same clock tick.
        self._access_order: dict[str, int] = {}
        self._sequence = itertools.count()
        self._eviction_count = 0
        self._hit_count = 0
        self._miss_count = 0

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def store(
        self,
        key: str,
        value: Any,
        bucket: CacheBucket | str,
        reason: Optional[str] = None,
    ) -> StoreResult:
        """Store or replace a value. Returns whether it was kept and what was evicted."""
        bucket = CacheBucket(bucket)
        tokens = estimate_tokens(value)
        previous = self._entries.get(key)

        if bucket == CacheBucket.SENSITIVE:
            used = self._bucket_tokens(CacheBucket.SENSITIVE)
            if previous is not None and previous.bucket == CacheBucket.SENSITIVE:
                used -= previous.token_count
            if used + tokens > self.config.sensitive_quota:
                message = (
                    f"Cannot store {tokens} tokens in sensitive bucket "
                    f"(quota: {self.config.sensitive_quota}, used: {used})"
                )
                self._log.warning("Cache store rejected for '%s': %s", key, message)
                return StoreResult(
                    stored=False, key=key, bucket=bucket, tokens=tokens, reason=message,
                )

        if tokens > self.config.max_tokens:
            message = f"Entry of {tokens} tokens exceeds cache capacity ({self.config.max_tokens})"
            self._log.warning("Cache store rejected for '%s': %s", key, message)
            return StoreResult(stored=False, key=key, bucket=bucket, tokens=tokens, reason=message)

        if previous is not None:
            self._log.debug(
                "Cache replace '%s': %d -> %d tokens", key, previous.token_count, tokens,
            )
            self._remove(key)

        now = self._clock()
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            bucket=bucket,
            token_count=tokens,
            created_at=now,
            last_accessed_at=now,
            ttl_seconds=self._ttl_for(bucket),
            reason=reason,
        )
        self._touch(key)

        evicted = self._enforce_capacity()
        stored = key in self._entries
        self._log.debug(
            "Cache store '%s' bucket=%s tokens=%d total=%d",
            key, bucket.value, tokens, self.total_tokens,
        )
        return StoreResult(
            stored=stored,
            key=key,
            bucket=bucket,
            tokens=tokens,
            evicted=evicted,
            reason=None if stored else "Sensitive entries leave no room under cache capacity",
        )

    def retrieve(self, key: str) -> Any:
        """Return the stored value, or None on a miss or an expired entry."""
        entry = self._entries.get(key)
        if entry is None:
            self._miss_count += 1
            return None

        now = self._clock()
        if entry.is_expired(now):
            self._remove(key)
            self._eviction_count += 1
            self._miss_count += 1
            self._log.debug(
                "Cache entry '%s' expired (age %.0fs > ttl %.0fs)",
                key, now - entry.created_at, entry.ttl_seconds,
            )
            return None

        entry.last_accessed_at = now
        self._touch(key)
        self._hit_count += 1
        return entry.value

    def evict(self, key: str) -> bool:
        """Manually remove a key from any bucket, sensitive included."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        self._remove(key)
        self._eviction_count += 1
        self._log.info("Cache manual evict '%s' (%s, %d tokens)", key, entry.bucket.value, entry.token_count)
        return True

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            self._remove(key)
        self._eviction_count += len(expired)
        if expired:
            self._log.info("Cache purged %d expired entr%s", len(expired), "y" if len(expired) == 1 else "ies")
        return len(expired)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    @property
    def total_tokens(self) -> int:
        return sum(entry.token_count for entry in self._entries.values())

    def get_stats(self) -> dict[str, Any]:
        bucket_stats = {b.value: {"tokens": 0, "entries": 0} for b in CacheBucket}
        for entry in self._entries.values():
            bucket_stats[entry.bucket.value]["tokens"] += entry.token_count
            bucket_stats[entry.bucket.value]["entries"] += 1
        return {
            "total_entries": len(self._entries),
            "total_tokens": self.total_tokens,
            "eviction_count": self._eviction_count,
            "hit_count": self._hit_count,
            "miss_count": self._miss_count,
            "bucket_stats": bucket_stats,
        }

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def export_state(self) -> list[dict[str, Any]]:
        """All entries, least recently accessed first, as JSON-ready dicts."""
        return [self._entries[key].model_dump(mode="json") for key in self._lru_keys(all_buckets=True)]

    def import_state(self, entries: list[dict[str, Any]]) -> int:
        """Load exported entries, dropping any whose TTL ran out since export.

        Returns the number of entries imported.
        """
        now = self._clock()
        imported = 0
        for raw in entries:
            entry = CacheEntry.model_validate(raw)
            if entry.is_expired(now):
                self._log.debug("Dropping expired entry '%s' on import", entry.key)
                continue
            if entry.key in self._entries:
                self._remove(entry.key)
            self._entries[entry.key] = entry
            self._touch(entry.key)
            imported += 1
        self._enforce_capacity()
        return imported

    def save(self, path: Path) -> None:
        atomic_write_text(path, json.dumps(self.export_state(), indent=2))

    def load(self, path: Path) -> int:
        """Import a snapshot file. A missing file imports nothing."""
        if not path.exists():
            return 0
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ContextStoreError(f"Corrupt cache snapshot {path}: {e}") from e
        if not isinstance(data, list):
            raise ContextStoreError(f"Cache snapshot {path} must be a JSON array")
        return self.import_state(data)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ttl_for(self, bucket: CacheBucket) -> float:
        return {
            CacheBucket.TRANSIENT: self.config.transient_ttl_seconds,
            CacheBucket.DECISION: self.config.decision_ttl_seconds,
            CacheBucket.SENSITIVE: self.config.sensitive_ttl_seconds,
        }[bucket]

    def _bucket_tokens(self, bucket: CacheBucket) -> int:
        return sum(e.token_count for e in self._entries.values() if e.bucket == bucket)

    def _touch(self, key: str) -> None:
        self._access_order[key] = next(self._sequence)

    def _remove(self, key: str) -> None:
        self._entries.pop(key, None)
        self._access_order.pop(key, None)

    def _lru_keys(self, all_buckets: bool = False) -> list[str]:
        keys = [
            key for key, entry in self._entries.items()
            if all_buckets or entry.bucket != CacheBucket.SENSITIVE
        ]
        return sorted(
            keys,
            key=lambda k: (self._entries[k].last_accessed_at, self._access_order.get(k, 0)),
        )

    def _enforce_capacity(self) -> list[str]:
        total = self.total_tokens
        if total <= self.config.max_tokens:
            return []

        evicted: list[str] = []
        for key in self._lru_keys():
            if total <= self.config.max_tokens:
                break
            entry = self._entries[key]
            self._remove(key)
            total -= entry.token_count
            self._eviction_count += 1
            evicted.append(key)
            self._log.info(
                "Cache LRU evict '%s' (%s, %d tokens)", key, entry.bucket.value, entry.token_count,
            )

        if total > self.config.max_tokens:
            self._log.warning(
                "Cache still over capacity (%d > %d): remaining entries are sensitive",
                total, self.config.max_tokens,
            )
        return evicted
