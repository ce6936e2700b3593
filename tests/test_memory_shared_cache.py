"""Tests for src/memory/shared_cache.py: three-bucket token-budgeted cache."""

import json

import pytest

from src.core.config import CacheConfig
from src.core.exceptions import ContextStoreError
from src.core.models import CacheBucket
from src.memory.shared_cache import SharedMemoryCache, estimate_tokens


def text_of_tokens(tokens: int) -> str:
    """A string whose JSON encoding (with quotes) estimates to exactly `tokens`."""
    return "x" * (tokens * 4 - 2)


@pytest.fixture
def cache(clock):
    return SharedMemoryCache(CacheConfig(), clock=clock)


class TestEstimateTokens:
    def test_string_counts_quotes(self):
        assert estimate_tokens("abcdef") == 2  # '"abcdef"' is 8 chars

    def test_rounds_up(self):
        assert estimate_tokens("abc") == 2  # 5 chars

    def test_structures_use_compact_json(self):
        value = {"a": [1, 2]}
        assert estimate_tokens(value) == -(-len(json.dumps(value, separators=(",", ":"))) // 4)

    def test_helper_is_exact(self):
        assert estimate_tokens(text_of_tokens(1000)) == 1000


class TestStoreAndRetrieve:
    def test_round_trip(self, cache):
        result = cache.store("plan", {"step": 1}, CacheBucket.DECISION, reason="team plan")
        assert result.stored is True
        assert result.evicted == []
        assert cache.retrieve("plan") == {"step": 1}

    def test_miss_returns_none_and_counts(self, cache):
        assert cache.retrieve("nope") is None
        assert cache.get_stats()["miss_count"] == 1

    def test_hit_counts(self, cache):
        cache.store("k", "v", "transient")
        cache.retrieve("k")
        cache.retrieve("k")
        assert cache.get_stats()["hit_count"] == 2

    def test_update_replaces_tokens(self, cache):
        cache.store("k", text_of_tokens(100), CacheBucket.TRANSIENT)
        cache.store("k", text_of_tokens(10), CacheBucket.TRANSIENT)
        stats = cache.get_stats()
        assert stats["total_entries"] == 1
        assert stats["total_tokens"] == 10

    def test_update_can_move_bucket(self, cache):
        cache.store("k", "v", CacheBucket.TRANSIENT)
        cache.store("k", "v", CacheBucket.DECISION)
        assert cache.get_stats()["bucket_stats"]["transient"]["entries"] == 0
        assert cache.get_stats()["bucket_stats"]["decision"]["entries"] == 1

    def test_manual_evict(self, cache):
        cache.store("k", "v", CacheBucket.SENSITIVE)
        assert cache.evict("k") is True
        assert cache.evict("k") is False
        assert cache.retrieve("k") is None
        assert cache.get_stats()["eviction_count"] == 1

    def test_unknown_bucket_rejected(self, cache):
        with pytest.raises(ValueError):
            cache.store("k", "v", "permanent")


class TestCapacity:
    def test_five_large_transient_entries_keep_newest_three(self, cache, clock):
        results = []
        for i in range(5):
            results.append(cache.store(f"k{i}", text_of_tokens(15_001), CacheBucket.TRANSIENT))
            clock.advance(1)

        assert results[3].evicted == ["k0"]
        assert results[4].evicted == ["k1"]
        assert cache.retrieve("k0") is None
        assert cache.retrieve("k1") is None
        for key in ("k2", "k3", "k4"):
            assert cache.retrieve(key) is not None
        stats = cache.get_stats()
        assert stats["total_entries"] == 3
        assert stats["total_tokens"] <= 50_000

    def test_recent_access_protects_entry(self, cache, clock):
        for key in ("a", "b", "c"):
            cache.store(key, text_of_tokens(15_000), CacheBucket.DECISION)
            clock.advance(1)
        cache.retrieve("a")
        clock.advance(1)
        result = cache.store("d", text_of_tokens(15_000), CacheBucket.TRANSIENT)
        assert result.evicted == ["b"]
        assert cache.retrieve("a") is not None

    def test_same_tick_ties_break_by_insertion(self, cache):
        for key in ("a", "b", "c", "d"):
            cache.store(key, text_of_tokens(15_000), CacheBucket.TRANSIENT)
        assert cache.retrieve("a") is None
        assert cache.retrieve("b") is not None

    def test_sensitive_entries_survive_lru(self, cache, clock):
        cache.store("secret", text_of_tokens(4_000), CacheBucket.SENSITIVE)
        clock.advance(1)
        for i in range(4):
            cache.store(f"t{i}", text_of_tokens(15_000), CacheBucket.TRANSIENT)
            clock.advance(1)
        assert cache.retrieve("secret") is not None
        assert cache.get_stats()["total_tokens"] <= 50_000

    def test_entry_larger_than_capacity_is_rejected_without_evicting(self, clock):
        cache = SharedMemoryCache(CacheConfig(max_tokens=100), clock=clock)
        cache.store("small", "v", CacheBucket.TRANSIENT)
        clock.advance(1)
        result = cache.store("huge", text_of_tokens(200), CacheBucket.TRANSIENT)
        assert result.stored is False
        assert result.evicted == []
        assert "exceeds cache capacity" in result.reason
        assert cache.retrieve("huge") is None
        assert cache.retrieve("small") == "v"

    def test_oversize_replacement_keeps_previous_value(self, clock):
        cache = SharedMemoryCache(CacheConfig(max_tokens=100), clock=clock)
        cache.store("k", "old", CacheBucket.DECISION)
        assert cache.store("k", text_of_tokens(200), CacheBucket.DECISION).stored is False
        assert cache.retrieve("k") == "old"


class TestSensitiveQuota:
    def test_fills_to_quota_inclusive(self, cache):
        for i in range(5):
            assert cache.store(f"s{i}", text_of_tokens(1_000), CacheBucket.SENSITIVE).stored

    def test_overflow_rejected_without_side_effects(self, cache):
        for i in range(5):
            cache.store(f"s{i}", text_of_tokens(1_000), CacheBucket.SENSITIVE)
        before = cache.get_stats()

        result = cache.store("s5", text_of_tokens(1), CacheBucket.SENSITIVE)

        assert result.stored is False
        assert "quota" in result.reason
        assert cache.get_stats() == before
        assert cache.retrieve("s5") is None

    def test_replacing_sensitive_key_does_not_double_count(self, cache):
        cache.store("s", text_of_tokens(4_000), CacheBucket.SENSITIVE)
        result = cache.store("s", text_of_tokens(5_000), CacheBucket.SENSITIVE)
        assert result.stored is True
        assert cache.get_stats()["bucket_stats"]["sensitive"]["tokens"] == 5_000

    def test_rejected_replacement_keeps_old_value(self, cache):
        cache.store("s", "old", CacheBucket.SENSITIVE)
        result = cache.store("s", text_of_tokens(6_000), CacheBucket.SENSITIVE)
        assert result.stored is False
        assert cache.retrieve("s") == "old"


class TestTTL:
    def test_transient_expires_after_an_hour(self, cache, clock):
        cache.store("t", "v", CacheBucket.TRANSIENT)
        clock.advance(3_601)
        assert cache.retrieve("t") is None
        stats = cache.get_stats()
        assert stats["eviction_count"] == 1
        assert stats["miss_count"] == 1
        assert stats["total_entries"] == 0

    def test_exact_ttl_is_still_valid(self, cache, clock):
        cache.store("t", "v", CacheBucket.TRANSIENT)
        clock.advance(3_600)
        assert cache.retrieve("t") == "v"

    def test_decision_outlives_transient(self, cache, clock):
        cache.store("d", "v", CacheBucket.DECISION)
        clock.advance(3_601)
        assert cache.retrieve("d") == "v"
        clock.advance(86_400)
        assert cache.retrieve("d") is None

    def test_access_does_not_extend_ttl(self, cache, clock):
        cache.store("t", "v", CacheBucket.TRANSIENT)
        clock.advance(3_000)
        cache.retrieve("t")
        clock.advance(700)
        assert cache.retrieve("t") is None

    def test_purge_expired(self, cache, clock):
        cache.store("t", "v", CacheBucket.TRANSIENT)
        cache.store("s", "v", CacheBucket.SENSITIVE)
        clock.advance(4_000)
        assert cache.purge_expired() == 1
        assert cache.get_stats()["total_entries"] == 1


class TestSnapshot:
    def test_export_is_lru_ordered(self, cache, clock):
        cache.store("a", 1, CacheBucket.DECISION)
        clock.advance(1)
        cache.store("b", 2, CacheBucket.DECISION)
        clock.advance(1)
        cache.retrieve("a")
        assert [e["key"] for e in cache.export_state()] == ["b", "a"]

    def test_import_drops_expired(self, cache, clock):
        cache.store("t", "v", CacheBucket.TRANSIENT)
        cache.store("d", "v", CacheBucket.DECISION)
        exported = cache.export_state()

        clock.advance(7_200)
        fresh = SharedMemoryCache(CacheConfig(), clock=clock)
        assert fresh.import_state(exported) == 1
        assert fresh.retrieve("d") == "v"
        assert fresh.retrieve("t") is None

    def test_save_and_load(self, cache, clock, tmp_path):
        cache.store("d", {"decided": True}, CacheBucket.DECISION, reason="why")
        path = tmp_path / "cache.json"
        cache.save(path)

        fresh = SharedMemoryCache(CacheConfig(), clock=clock)
        assert fresh.load(path) == 1
        assert fresh.retrieve("d") == {"decided": True}

    def test_load_missing_file(self, cache, tmp_path):
        assert cache.load(tmp_path / "missing.json") == 0

    def test_load_corrupt_file_raises(self, cache, tmp_path):
        path = tmp_path / "cache.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ContextStoreError, match="Corrupt cache snapshot"):
            cache.load(path)
