# services/intelligence/aggregate_cache.py
from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import redis as redis_sync
from pydantic import ValidationError

from schemas.intelligence import AnalysisAggregate

logger = logging.getLogger(__name__)

# -------------------------
# Config
# -------------------------
# Prefix isolates app + env. Example:
#   locintel:prod:
#   locintel:preview:
REDIS_PREFIX = os.getenv("REDIS_PREFIX", "locintel:")
UPSTASH_REDIS_URL = os.getenv("UPSTASH_REDIS_URL")

Clock = Callable[[], datetime]

_redis_client = None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def get_redis_client():
    """Lazy init redis client (sync). Returns None if not configured/available."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client

    if not UPSTASH_REDIS_URL:
        return None

    try:
        _redis_client = redis_sync.from_url(
            UPSTASH_REDIS_URL,
            decode_responses=True,
            socket_timeout=2,
            socket_connect_timeout=2,
        )
    except Exception:
        logger.warning("redis_init_failed; using in-process cache only")
        _redis_client = None

    return _redis_client


def _redis_key(key: str) -> str:
    return f"{REDIS_PREFIX}aggregate:{key}"


class AggregateCache:
    """
    Process-wide cache of AnalysisAggregate by analysis key.

      1) in-process dict (authoritative for this worker, never does I/O)
      2) redis (shared across workers, optional)

    The local tier is synchronous so callers can consult it without awaiting.
    The shared tier is only reached through the ``async`` methods, which run
    the sync redis client in a worker thread.

    Each entry is one immutable aggregate, replaced whole on write, so a
    reader never sees a half-written record. Entries older than
    ``stale_after_s`` (by ``computed_at``) are treated as misses but kept for
    their key until replaced or invalidated.
    """

    def __init__(
        self,
        *,
        stale_after_s: float = 1800.0,
        clock: Optional[Clock] = None,
        redis_client: Any = None,
        use_redis: bool = True,
    ) -> None:
        self.stale_after = timedelta(seconds=stale_after_s)
        self._clock = clock or utc_now
        self._local: Dict[str, AnalysisAggregate] = {}
        self._redis = redis_client
        self._use_redis = use_redis

    def _client(self):
        if not self._use_redis:
            return None
        return self._redis if self._redis is not None else get_redis_client()

    def is_stale(self, aggregate: AnalysisAggregate) -> bool:
        return self._clock() - aggregate.computed_at > self.stale_after

    # ── local tier (sync) ───────────────────────────────────────────

    def peek(self, key: str) -> Optional[AnalysisAggregate]:
        """Return whatever is cached locally for key, stale or not."""
        return self._local.get(key)

    def get_fresh(self, key: str) -> Optional[AnalysisAggregate]:
        hit = self._local.get(key)
        if hit is None or self.is_stale(hit):
            return None
        return hit

    def put(self, aggregate: AnalysisAggregate) -> None:
        # last writer wins, whole record at a time
        self._local[aggregate.key] = aggregate

    def invalidate(self, key: str) -> None:
        self._local.pop(key, None)

    def clear(self) -> None:
        self._local.clear()

    def __contains__(self, key: str) -> bool:
        return key in self._local

    def __len__(self) -> int:
        return len(self._local)

    # ── shared tier (async) ─────────────────────────────────────────

    async def fetch_shared(self, key: str) -> Optional[AnalysisAggregate]:
        """Fresh aggregate from redis, copied into the local tier on a hit."""
        if self._client() is None:
            return None
        hit = await asyncio.to_thread(self._redis_get, key)
        if hit is None or self.is_stale(hit):
            return None
        self._local[key] = hit
        return hit

    async def publish(self, aggregate: AnalysisAggregate) -> None:
        if self._client() is None:
            return
        await asyncio.to_thread(self._redis_set, aggregate)

    async def invalidate_shared(self, key: str) -> None:
        self.invalidate(key)
        if self._client() is None:
            return
        await asyncio.to_thread(self._redis_delete, key)

    def _redis_get(self, key: str) -> Optional[AnalysisAggregate]:
        r = self._client()
        if r is None:
            return None
        try:
            raw = r.get(_redis_key(key))
        except Exception as exc:
            logger.warning("aggregate_cache_redis_get_failed key=%s err=%s", key, exc)
            return None
        if not isinstance(raw, (str, bytes, bytearray)):
            return None
        try:
            return AnalysisAggregate.model_validate_json(raw)
        except ValidationError:
            logger.warning("aggregate_cache_redis_corrupt key=%s", key)
            return None

    def _redis_set(self, aggregate: AnalysisAggregate) -> None:
        r = self._client()
        if r is None:
            return
        ttl = max(1, int(self.stale_after.total_seconds()))
        try:
            r.setex(_redis_key(aggregate.key), ttl, aggregate.model_dump_json())
        except Exception as exc:
            # local tier still holds the record
            logger.warning("aggregate_cache_redis_set_failed key=%s err=%s", aggregate.key, exc)

    def _redis_delete(self, key: str) -> None:
        r = self._client()
        if r is None:
            return
        try:
            r.delete(_redis_key(key))
        except Exception as exc:
            logger.warning("aggregate_cache_redis_delete_failed key=%s err=%s", key, exc)
