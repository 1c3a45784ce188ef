"""
MindNote Backend — Named Cache Instances
=========================================

What:  A small registry of independently configured CacheStore instances.
Why:   Different workloads want different policies: search results go stale
       quickly, analytics aggregates are hit by frequency, AI results are
       expensive and worth keeping for an hour. Instances never share entries.
How:   Built once in the app lifespan from settings and stored on app.state;
       components receive the specific store they need at construction time.

Standard instances:
    general     hot lookups              (LRU)
    search      similarity query results (LRU, cleared on index rebuild)
    analytics   aggregates               (LFU)
    ai_results  dispatcher responses     (LRU)
"""

import logging
import time
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from app.cache.store import CacheStore
from app.exceptions import NotFoundError
from app.schemas.cache import CacheRegistryStats

if TYPE_CHECKING:
    from app.config import Settings

logger = logging.getLogger(__name__)

STANDARD_INSTANCES = ("general", "search", "analytics", "ai_results")


class CacheRegistry:
    """Owns every named cache of the process; no cache is a module-level global."""

    def __init__(self, stores: Dict[str, CacheStore]):
        self._stores = dict(stores)

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        clock: Callable[[], float] = time.time,
    ) -> "CacheRegistry":
        """
        Build the standard instances plus any extra ones named in settings.

        Each instance takes its own entry from settings.cache_instances when
        present, else the shared `cache` defaults.
        """
        names: List[str] = list(STANDARD_INSTANCES)
        names.extend(n for n in settings.cache_instances if n not in names)

        stores = {}
        for name in names:
            cfg = settings.cache_settings_for(name)
            stores[name] = CacheStore(
                max_size=cfg.max_size,
                strategy=cfg.strategy,
                default_ttl=cfg.ttl_seconds,
                name=name,
                clock=clock,
            )
            logger.info(
                "Cache '%s' ready: max_size=%d ttl_ms=%d strategy=%s",
                name, cfg.max_size, cfg.ttl_ms, cfg.strategy.value,
            )
        return cls(stores)

    def get(self, name: str) -> CacheStore:
        try:
            return self._stores[name]
        except KeyError:
            raise NotFoundError(resource="cache", resource_id=name) from None

    def names(self) -> List[str]:
        return list(self._stores)

    @property
    def general(self) -> CacheStore:
        return self.get("general")

    @property
    def search(self) -> CacheStore:
        return self.get("search")

    @property
    def analytics(self) -> CacheStore:
        return self.get("analytics")

    @property
    def ai_results(self) -> CacheStore:
        return self.get("ai_results")

    def stats(self) -> CacheRegistryStats:
        per_instance = {name: store.get_stats() for name, store in self._stores.items()}
        return CacheRegistryStats(
            instances=per_instance,
            total_entries=sum(s.total_size for s in per_instance.values()),
        )

    def clear(self, name: Optional[str] = None) -> int:
        """Clear one instance (or all); returns the number of entries dropped."""
        targets = [self.get(name)] if name else list(self._stores.values())
        dropped = 0
        for store in targets:
            dropped += store.size()
            store.clear()
        logger.info("Cleared %d cache entries from %s", dropped, name or "all caches")
        return dropped

    def cleanup(self) -> Dict[str, int]:
        """Eagerly drop expired entries everywhere; returns removals per instance."""
        return {name: store.cleanup() for name, store in self._stores.items()}
