"""
MindNote Backend — CacheRegistry Unit Tests
============================================

What we test:
    ✅ Standard instances are built with their own profiles
    ✅ Instances are independent
    ✅ Unknown instance names raise NotFoundError
    ✅ Aggregate stats, clear, and cleanup
"""

import pytest

from app.cache.registry import STANDARD_INSTANCES, CacheRegistry
from app.cache.store import EvictionStrategy
from app.config import CacheSettings, Settings
from app.exceptions import NotFoundError


@pytest.fixture
def registry(fake_clock):
    return CacheRegistry.from_settings(Settings(), clock=fake_clock)


class TestCacheRegistry:
    def test_standard_instances_exist(self, registry):
        assert set(STANDARD_INSTANCES) <= set(registry.names())

    def test_instance_profiles(self, registry):
        assert registry.general.max_size == 10_000
        assert registry.search.default_ttl == 300.0
        assert registry.analytics.strategy is EvictionStrategy.LFU
        assert registry.ai_results.default_ttl == 3600.0

    def test_instances_do_not_share_entries(self, registry):
        registry.general.set("k", "general")
        registry.search.set("k", "search")
        assert registry.general.get("k") == "general"
        assert registry.search.get("k") == "search"

    def test_unknown_instance(self, registry):
        with pytest.raises(NotFoundError):
            registry.get("nope")

    def test_extra_instance_from_settings(self, fake_clock):
        settings = Settings(
            cache_instances={"sessions": CacheSettings(max_size=5, ttl_ms=0, strategy="fifo")},
        )
        registry = CacheRegistry.from_settings(settings, clock=fake_clock)
        sessions = registry.get("sessions")
        assert sessions.max_size == 5
        assert sessions.strategy is EvictionStrategy.FIFO
        assert sessions.default_ttl is None
        # Standard instances not overridden fall back to the shared defaults
        assert registry.general.max_size == settings.cache.max_size

    def test_stats_aggregate(self, registry):
        registry.general.set("a", 1)
        registry.search.set("b", 2)
        registry.search.set("c", 3)
        stats = registry.stats()
        assert stats.total_entries == 3
        assert stats.instances["search"].total_size == 2
        assert stats.instances["search"].name == "search"

    def test_clear_one_and_all(self, registry):
        registry.general.set("a", 1)
        registry.search.set("b", 2)
        assert registry.clear("search") == 1
        assert registry.search.size() == 0
        assert registry.general.size() == 1
        assert registry.clear() == 1
        assert registry.general.size() == 0

    def test_cleanup_reports_per_instance(self, registry, fake_clock):
        registry.search.set("old", 1)
        fake_clock.advance(301)
        removed = registry.cleanup()
        assert removed["search"] == 1
        assert removed["general"] == 0
