"""
GroupLedger - Cache Service

Redis-based caching service for performance optimization.
Provides caching for:
- Exchange rates (FX)
- Consolidated reports of completed runs

Cache failures never fail a request: they are logged as warnings and treated
as misses.
"""

import json
import logging
from datetime import date
from decimal import Decimal, InvalidOperation
from functools import wraps
from typing import Any, Dict, Optional
from uuid import UUID

import redis.asyncio as redis

from app.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()


class CacheService:
    """Redis-based caching service."""

    # Cache key prefixes
    PREFIX_FX_RATE = "fx:rate"
    PREFIX_REPORT = "consolidation:report"

    # Default TTL values (in seconds)
    TTL_FX_RATE = settings.fx_rate_cache_ttl
    TTL_REPORT = settings.report_cache_ttl

    def __init__(self, redis_url: Optional[str] = None):
        self.redis_url = redis_url or settings.redis_url
        self._client: Optional[redis.Redis] = None

    async def get_client(self) -> redis.Redis:
        """Get or create Redis client."""
        if self._client is None:
            self._client = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._client

    async def close(self):
        """Close Redis connection."""
        if self._client:
            await self._client.aclose()
            self._client = None

    # =========================================================================
    # GENERIC CACHE OPERATIONS
    # =========================================================================

    async def get(self, key: str) -> Optional[str]:
        """Get a value from cache."""
        try:
            client = await self.get_client()
            return await client.get(key)
        except Exception as e:
            logger.warning(f"Cache get failed for {key}: {e}")
            return None

    async def set(
        self,
        key: str,
        value: str,
        ttl: Optional[int] = None,
    ) -> bool:
        """Set a value in cache with optional TTL."""
        try:
            client = await self.get_client()
            if ttl:
                await client.setex(key, ttl, value)
            else:
                await client.set(key, value)
            return True
        except Exception as e:
            logger.warning(f"Cache set failed for {key}: {e}")
            return False

    async def delete(self, key: str) -> bool:
        """Delete a key from cache."""
        try:
            client = await self.get_client()
            await client.delete(key)
            return True
        except Exception as e:
            logger.warning(f"Cache delete failed for {key}: {e}")
            return False

    async def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching a pattern."""
        try:
            client = await self.get_client()
            keys = []
            async for key in client.scan_iter(match=pattern):
                keys.append(key)
            if keys:
                return await client.delete(*keys)
            return 0
        except Exception as e:
            logger.warning(f"Cache delete_pattern failed for {pattern}: {e}")
            return 0

    async def get_json(self, key: str) -> Optional[Dict[str, Any]]:
        """Get a JSON value from cache."""
        value = await self.get(key)
        if value:
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                logger.warning(f"Invalid JSON in cache for {key}")
        return None

    async def set_json(
        self,
        key: str,
        value: Dict[str, Any],
        ttl: Optional[int] = None,
    ) -> bool:
        """Set a JSON value in cache."""
        try:
            return await self.set(key, json.dumps(value, default=str), ttl)
        except (TypeError, ValueError) as e:
            logger.warning(f"Cache set_json failed for {key}: {e}")
            return False

    # =========================================================================
    # FX RATE CACHING
    # =========================================================================

    def _fx_rate_key(
        self,
        from_currency: str,
        to_currency: str,
        rate_date: date,
    ) -> str:
        """Generate cache key for FX rate."""
        return f"{self.PREFIX_FX_RATE}:{from_currency}:{to_currency}:{rate_date.isoformat()}"

    async def get_fx_rate(
        self,
        from_currency: str,
        to_currency: str,
        rate_date: date,
    ) -> Optional[Decimal]:
        """Get cached FX rate."""
        key = self._fx_rate_key(from_currency, to_currency, rate_date)
        value = await self.get(key)
        if value:
            try:
                return Decimal(value)
            except InvalidOperation:
                logger.warning(f"Invalid FX rate in cache for {key}: {value!r}")
        return None

    async def set_fx_rate(
        self,
        from_currency: str,
        to_currency: str,
        rate_date: date,
        rate: Decimal,
        ttl: Optional[int] = None,
    ) -> bool:
        """Cache an FX rate."""
        key = self._fx_rate_key(from_currency, to_currency, rate_date)
        return await self.set(key, str(rate), ttl or self.TTL_FX_RATE)

    # =========================================================================
    # REPORT CACHING
    # =========================================================================

    def _report_key(
        self,
        run_id: UUID,
        report_type: str,
        comparative_run_id: Optional[UUID] = None,
    ) -> str:
        """
        Generate cache key for a report.

        Completed runs never change, so a report is fully determined by its
        run and, for movement-based reports, the comparative run.
        """
        comparative = str(comparative_run_id) if comparative_run_id else "none"
        return f"{self.PREFIX_REPORT}:{run_id}:{report_type}:{comparative}"

    async def get_report(
        self,
        run_id: UUID,
        report_type: str,
        comparative_run_id: Optional[UUID] = None,
    ) -> Optional[Dict[str, Any]]:
        """Get cached report data."""
        return await self.get_json(self._report_key(run_id, report_type, comparative_run_id))

    async def set_report(
        self,
        run_id: UUID,
        report_type: str,
        data: Dict[str, Any],
        comparative_run_id: Optional[UUID] = None,
        ttl: Optional[int] = None,
    ) -> bool:
        """Cache report data."""
        key = self._report_key(run_id, report_type, comparative_run_id)
        return await self.set_json(key, data, ttl or self.TTL_REPORT)

    async def invalidate_run_reports(self, run_id: UUID) -> int:
        """Drop every cached report of a run."""
        return await self.delete_pattern(f"{self.PREFIX_REPORT}:{run_id}:*")

    # =========================================================================
    # UTILITY METHODS
    # =========================================================================

    async def health_check(self) -> Dict[str, Any]:
        """Check cache health."""
        try:
            client = await self.get_client()
            await client.ping()
            info = await client.info()
            return {
                "status": "healthy",
                "connected": True,
                "used_memory": info.get("used_memory_human", "unknown"),
                "connected_clients": info.get("connected_clients", 0),
            }
        except Exception as e:
            return {
                "status": "unhealthy",
                "connected": False,
                "error": str(e),
            }


# =========================================================================
# GLOBAL CACHE INSTANCE
# =========================================================================

_cache_service: Optional[CacheService] = None


def get_cache_service() -> Optional[CacheService]:
    """Get global cache service instance, or None when caching is disabled."""
    global _cache_service
    if not get_settings().cache_enabled:
        return None
    if _cache_service is None:
        _cache_service = CacheService()
    return _cache_service


async def close_cache_service():
    """Close global cache service."""
    global _cache_service
    if _cache_service:
        await _cache_service.close()
        _cache_service = None


# =========================================================================
# DECORATORS FOR CACHING
# =========================================================================

def cached_fx_rate(ttl: Optional[int] = None):
    """
    Decorator to cache FX rate lookups.

    Usage:
        @cached_fx_rate()
        async def get_rate(self, from_currency, to_currency, on_date):
            ...
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(
            self,
            from_currency: str,
            to_currency: str,
            on_date: date,
            *args,
            **kwargs,
        ):
            # Don't cache same currency conversions
            if from_currency == to_currency:
                return Decimal("1")

            cache = get_cache_service()
            if cache is None:
                return await func(self, from_currency, to_currency, on_date, *args, **kwargs)

            # Try cache first
            cached = await cache.get_fx_rate(from_currency, to_currency, on_date)
            if cached is not None:
                return cached

            # Get from database
            result = await func(self, from_currency, to_currency, on_date, *args, **kwargs)

            # Cache the result
            if result is not None:
                await cache.set_fx_rate(from_currency, to_currency, on_date, result, ttl)

            return result
        return wrapper
    return decorator
