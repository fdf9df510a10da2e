"""Event-driven cache invalidation helpers."""
from __future__ import annotations

from typing import Optional

from .manager import CacheManager


def invalidate_on_build(cache: CacheManager) -> None:
    """Package presence is part of each discovered artifact; rescan after builds."""
    cache.invalidate_pattern("artifacts:*")


def invalidate_on_deploy(cache: CacheManager, environment: Optional[str]) -> None:
    """Remote function listings for *environment* are stale after a push."""
    if environment:
        cache.invalidate_pattern(f"remote:{environment}*")
    else:
        cache.invalidate_pattern("remote:*")
