"""Durable cache for upstream provider responses."""

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from research_desk.database import ApiCacheModel, Database, to_naive_utc, utcnow


logger = logging.getLogger(__name__)

# Query parameters that must never end up in a cache key
SECRET_PARAMS = {"apikey", "token", "api_key"}


def make_cache_key(provider: str, path: str, params: Optional[Dict[str, Any]] = None) -> str:
    """
    Build a stable cache key for an upstream request.

    Secret parameters are dropped and the rest sorted, so the same request
    always maps to the same key.
    """
    public = {k: v for k, v in (params or {}).items() if k.lower() not in SECRET_PARAMS and v is not None}
    suffix = json.dumps(public, sort_keys=True, default=str) if public else ""
    return f"{provider}:{path.strip('/')}{'?' + suffix if suffix else ''}"


class ResponseCache:
    """
    Expiring key/value cache stored in the api_cache table.

    Reads bump access_count and last_accessed so purge_lru() can drop the
    least recently used entries first.

    Representation Invariants:
    - every entry has created_at <= expires_at
    - an entry past expires_at is never returned
    """

    def __init__(
        self,
        database: Database,
        clock: Callable[[], datetime] = utcnow,
        enabled: bool = True
    ) -> None:
        self._db = database
        self._clock = clock
        self._enabled = enabled

    @property
    def enabled(self) -> bool:
        return self._enabled

    def _now(self) -> datetime:
        return to_naive_utc(self._clock())

    async def get(self, key: str) -> Optional[Any]:
        """
        Return the live value for `key`, or None on a miss or expired entry.
        """
        if not self._enabled:
            return None

        now = self._now()
        async with self._db.session() as session:
            row = await session.get(ApiCacheModel, key)
            if row is None or row.expires_at <= now:
                return None
            row.access_count += 1
            row.last_accessed = now
            await session.commit()
            logger.debug(f"Cache hit: {key}")
            return row.data

    async def set(self, key: str, data: Any, ttl_seconds: int) -> datetime:
        """
        Store `data` under `key` for `ttl_seconds`, replacing any previous entry.

        Returns:
            The new expiry time
        """
        now = self._now()
        expires_at = now + timedelta(seconds=ttl_seconds)
        if not self._enabled:
            return expires_at

        for attempt in range(2):
            try:
                async with self._db.session() as session:
                    row = await session.get(ApiCacheModel, key)
                    if row is None:
                        session.add(ApiCacheModel(
                            cache_key=key,
                            data=data,
                            created_at=now,
                            expires_at=expires_at,
                            access_count=0,
                            last_accessed=now,
                        ))
                    else:
                        row.data = data
                        row.created_at = now
                        row.expires_at = expires_at
                        row.last_accessed = now
                    await session.commit()
                return expires_at
            except IntegrityError:
                # Another writer inserted the same key first; update it instead
                if attempt == 1:
                    raise
                logger.debug(f"Cache key {key} inserted concurrently, retrying as update")
        return expires_at

    async def get_or_create(self, key: str, default: Any, ttl_seconds: int) -> Any:
        """
        Return the live value for `key`; otherwise store `default` and return it.
        """
        existing = await self.get(key)
        if existing is not None:
            return existing
        await self.set(key, default, ttl_seconds)
        return default

    async def cached(self, key: str, ttl_seconds: int, loader: Callable[[], Awaitable[Any]]) -> Any:
        """
        Read-through helper: serve from cache, otherwise call `loader` and store
        a non-empty result.

        Cache storage failures are logged and never fail the load itself.
        """
        try:
            hit = await self.get(key)
        except SQLAlchemyError as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            hit = None
        if hit is not None:
            return hit

        value = await loader()
        if value is None or value == [] or value == {}:
            return value

        try:
            await self.set(key, value, ttl_seconds)
        except SQLAlchemyError as e:
            logger.warning(f"Cache write failed for {key}: {e}")
        return value

    async def purge_lru(self, max_entries: int) -> int:
        """
        Drop expired entries, then the least recently used ones above `max_entries`.

        Returns:
            Number of entries removed
        """
        if max_entries < 0:
            raise ValueError("max_entries cannot be negative")

        now = self._now()
        async with self._db.session() as session:
            async with session.begin():
                expired = await session.execute(
                    delete(ApiCacheModel).where(ApiCacheModel.expires_at <= now)
                )
                removed = expired.rowcount or 0

                total = await session.scalar(select(func.count()).select_from(ApiCacheModel))
                excess = (total or 0) - max_entries
                if excess > 0:
                    oldest = await session.scalars(
                        select(ApiCacheModel.cache_key)
                        .order_by(ApiCacheModel.last_accessed.asc(), ApiCacheModel.cache_key.asc())
                        .limit(excess)
                    )
                    keys = list(oldest)
                    await session.execute(
                        delete(ApiCacheModel).where(ApiCacheModel.cache_key.in_(keys))
                    )
                    removed += len(keys)

        if removed:
            logger.info(f"Purged {removed} cache entries (max {max_entries})")
        return removed
