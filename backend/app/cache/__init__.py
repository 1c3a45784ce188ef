# Cache package init
"""
MindNote Backend — Cache Layer
===============================

What:  In-process caching for expensive AI work (responses, similarity queries).
Why:   Provider calls cost money and seconds; repeat work should cost neither.

Contents:
    - CacheStore:    bounded TTL cache with LRU/FIFO/LFU eviction (store.py)
    - CacheRegistry: named, independently configured instances (registry.py)

Non-goals: no cross-process coherency and no persistence across restarts.
"""

from app.cache.store import CacheEntry, CacheStore, EvictionStrategy
from app.cache.registry import CacheRegistry, STANDARD_INSTANCES

__all__ = [
    "CacheEntry",
    "CacheStore",
    "EvictionStrategy",
    "CacheRegistry",
    "STANDARD_INSTANCES",
]
