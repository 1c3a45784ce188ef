"""
MindNote Backend — Cache Statistics Schemas
============================================

What:  Snapshot models returned by CacheStore.get_stats() and GET /api/cache/stats.
Why:   A typed snapshot keeps the stats endpoint and the tests honest about
       which numbers a cache reports.
"""

from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, Field


class CacheStats(BaseModel):
    """
    Point-in-time view of one cache instance.

    Entry counts:
        total_size includes entries whose TTL has passed but that have not yet
        been touched or evicted (lazy expiry); expired_count/valid_count split it.

    Counters (hits/misses/evictions) are cumulative since creation or the
    last clear().
    """
    name: Optional[str] = Field(default=None, description="Instance name when owned by a registry")
    strategy: str
    total_size: int = Field(ge=0)
    expired_count: int = Field(ge=0)
    valid_count: int = Field(ge=0)
    total_access_count: int = Field(ge=0)
    average_access_count: float = Field(ge=0)
    oldest_item: Optional[datetime] = None
    newest_item: Optional[datetime] = None
    max_size: int = Field(ge=0)
    utilization_rate: float = Field(ge=0, description="size / max_size; 0 when max_size is 0")
    hits: int = Field(default=0, ge=0)
    misses: int = Field(default=0, ge=0)
    evictions: int = Field(default=0, ge=0)
    hit_rate: float = Field(default=0.0, ge=0, le=1)


class CacheRegistryStats(BaseModel):
    instances: Dict[str, CacheStats]
    total_entries: int = Field(ge=0)
