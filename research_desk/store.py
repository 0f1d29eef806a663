"""Bounded-capacity persistence for user-saved reports and predictions."""

import asyncio
import logging
import uuid
import weakref
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from sqlalchemy import delete, func, select, text
from sqlalchemy.exc import IntegrityError

from research_desk.database import Database, SavedArtifactModel, is_postgres, to_naive_utc, utcnow
from research_desk.entities import ArtifactKind, SavedArtifact
from research_desk.errors import PersistenceError


logger = logging.getLogger(__name__)

KindLike = Union[ArtifactKind, str]


def coerce_kind(kind: KindLike) -> ArtifactKind:
    """
    Accept an ArtifactKind or its string value.

    Raises:
        ValueError: If kind is not a known artifact kind
    """
    if isinstance(kind, ArtifactKind):
        return kind
    try:
        return ArtifactKind(str(kind).lower())
    except ValueError:
        valid = ", ".join(k.value for k in ArtifactKind)
        raise ValueError(f"Unknown artifact kind '{kind}' (expected one of: {valid})")


def _to_entity(row: SavedArtifactModel) -> SavedArtifact:
    return SavedArtifact(
        artifact_id=row.id,
        owner_id=row.owner_id,
        kind=ArtifactKind(row.kind),
        symbol=row.symbol,
        payload=row.payload,
        created_at=row.created_at,
        expires_at=row.expires_at,
        company_name=row.company_name,
    )


class BoundedCapacityStore:
    """
    Keeps at most `capacity` artifacts per (owner, kind), evicting oldest first.

    Saving a symbol the owner already has refreshes that row in place.
    Saving a new symbol at capacity deletes the oldest rows and inserts the
    new one inside a single transaction, so a failed insert leaves no
    partial eviction behind.

    Saves for the same (owner, kind) are serialized by an in-process lock
    and, on PostgreSQL, by a transaction-scoped advisory lock. The unique
    constraint on (owner_id, kind, symbol) catches any remaining race
    between two new inserts of one symbol; the loser is retried as an
    update, so the last commit wins.

    Representation Invariants:
    - capacity >= 1
    - after any committed save, count(owner, kind) <= capacity
    - at most one row per (owner, kind, symbol)
    """

    def __init__(
        self,
        database: Database,
        capacity: int = 20,
        retention_days: int = 30,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4())
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if retention_days < 1:
            raise ValueError("retention_days must be at least 1")
        self._db = database
        self._capacity = capacity
        self._retention = timedelta(days=retention_days)
        self._clock = clock
        self._id_factory = id_factory
        self._locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()

    @classmethod
    def from_settings(cls, database: Database, settings) -> "BoundedCapacityStore":
        return cls(
            database,
            capacity=settings.artifact_capacity,
            retention_days=settings.artifact_retention_days,
        )

    @property
    def capacity(self) -> int:
        return self._capacity

    def _now(self) -> datetime:
        return to_naive_utc(self._clock())

    def _lock_for(self, owner_id: str, kind: ArtifactKind) -> asyncio.Lock:
        """Lock shared by in-flight saves of one (owner, kind); dropped once none holds it."""
        key = (owner_id, kind.value)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def save(
        self,
        owner_id: str,
        kind: KindLike,
        symbol: str,
        payload: Dict[str, Any],
        company_name: Optional[str] = None
    ) -> str:
        """
        Upsert an artifact, evicting the owner's oldest ones if needed.

        Preconditions:
        - owner_id and symbol are non-empty
        - payload is a JSON-serializable dict

        Postconditions:
        - exactly one row exists for (owner_id, kind, symbol)
        - count(owner_id, kind) <= capacity

        Returns:
            The artifact id (unchanged when an existing row was refreshed)

        Raises:
            ValueError: On invalid arguments
            PersistenceError: If the transaction failed (nothing was changed)
        """
        if not owner_id or not owner_id.strip():
            raise ValueError("owner_id cannot be empty")
        if not symbol or not symbol.strip():
            raise ValueError("symbol cannot be empty")
        if not isinstance(payload, dict):
            raise ValueError("payload must be a dict")
        kind = coerce_kind(kind)
        symbol = symbol.strip().upper()

        lock = self._lock_for(owner_id, kind)
        async with lock:
            try:
                return await self._save_once(owner_id, kind, symbol, payload, company_name)
            except IntegrityError:
                logger.info(f"Concurrent save of {owner_id}/{kind.value}/{symbol}, retrying as update")
            except PersistenceError:
                raise
            except Exception as e:
                logger.error(f"Save failed for {owner_id}/{kind.value}/{symbol}: {e}")
                raise PersistenceError("save", e) from e

            try:
                return await self._save_once(owner_id, kind, symbol, payload, company_name)
            except Exception as e:
                logger.error(f"Save retry failed for {owner_id}/{kind.value}/{symbol}: {e}")
                raise PersistenceError("save", e) from e

    async def _save_once(
        self,
        owner_id: str,
        kind: ArtifactKind,
        symbol: str,
        payload: Dict[str, Any],
        company_name: Optional[str]
    ) -> str:
        now = self._now()
        expires_at = now + self._retention

        async with self._db.session() as session:
            async with session.begin():
                if is_postgres(self._db.url):
                    await session.execute(
                        text("SELECT pg_advisory_xact_lock(hashtext(:lock_key))"),
                        {"lock_key": f"{owner_id}:{kind.value}"},
                    )

                existing = await session.scalar(
                    select(SavedArtifactModel).where(
                        SavedArtifactModel.owner_id == owner_id,
                        SavedArtifactModel.kind == kind.value,
                        SavedArtifactModel.symbol == symbol,
                    )
                )
                if existing is not None:
                    existing.payload = payload
                    if company_name is not None:
                        existing.company_name = company_name
                    existing.created_at = now
                    existing.expires_at = expires_at
                    logger.info(f"Refreshed {kind.value} {symbol} for {owner_id}")
                    return existing.id

                count = await session.scalar(
                    select(func.count()).select_from(SavedArtifactModel).where(
                        SavedArtifactModel.owner_id == owner_id,
                        SavedArtifactModel.kind == kind.value,
                    )
                ) or 0

                if count >= self._capacity:
                    overflow = count - self._capacity + 1
                    oldest = list(await session.scalars(
                        select(SavedArtifactModel.id)
                        .where(
                            SavedArtifactModel.owner_id == owner_id,
                            SavedArtifactModel.kind == kind.value,
                        )
                        .order_by(SavedArtifactModel.created_at.asc(), SavedArtifactModel.id.asc())
                        .limit(overflow)
                    ))
                    await session.execute(
                        delete(SavedArtifactModel).where(SavedArtifactModel.id.in_(oldest))
                    )
                    logger.info(
                        f"Evicted {len(oldest)} oldest {kind.value}(s) for {owner_id} "
                        f"(capacity {self._capacity})"
                    )

                artifact_id = self._id_factory()
                session.add(SavedArtifactModel(
                    id=artifact_id,
                    owner_id=owner_id,
                    kind=kind.value,
                    symbol=symbol,
                    company_name=company_name,
                    payload=payload,
                    created_at=now,
                    expires_at=expires_at,
                ))
                await session.flush()

        logger.info(f"Saved {kind.value} {symbol} for {owner_id} as {artifact_id}")
        return artifact_id

    async def delete(self, artifact_id: str) -> bool:
        """
        Remove one artifact. No capacity bookkeeping is involved.

        Returns:
            True if a row was deleted, False if the id was unknown
        """
        try:
            async with self._db.session() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(SavedArtifactModel).where(SavedArtifactModel.id == artifact_id)
                    )
                    deleted = (result.rowcount or 0) > 0
        except Exception as e:
            raise PersistenceError("delete", e) from e

        if deleted:
            logger.info(f"Deleted artifact {artifact_id}")
        return deleted

    async def get(self, artifact_id: str) -> Optional[SavedArtifact]:
        try:
            async with self._db.session() as session:
                row = await session.get(SavedArtifactModel, artifact_id)
                return _to_entity(row) if row is not None else None
        except Exception as e:
            raise PersistenceError("get", e) from e

    async def list(self, owner_id: str, kind: KindLike) -> List[SavedArtifact]:
        """Unexpired artifacts of one kind for an owner, newest first."""
        kind = coerce_kind(kind)
        now = self._now()
        try:
            async with self._db.session() as session:
                rows = await session.scalars(
                    select(SavedArtifactModel)
                    .where(
                        SavedArtifactModel.owner_id == owner_id,
                        SavedArtifactModel.kind == kind.value,
                        SavedArtifactModel.expires_at > now,
                    )
                    .order_by(SavedArtifactModel.created_at.desc(), SavedArtifactModel.id.desc())
                )
                return [_to_entity(row) for row in rows]
        except Exception as e:
            raise PersistenceError("list", e) from e

    async def count(self, owner_id: str, kind: KindLike) -> int:
        """Stored rows for (owner, kind), expired ones included until purged."""
        kind = coerce_kind(kind)
        try:
            async with self._db.session() as session:
                total = await session.scalar(
                    select(func.count()).select_from(SavedArtifactModel).where(
                        SavedArtifactModel.owner_id == owner_id,
                        SavedArtifactModel.kind == kind.value,
                    )
                )
                return total or 0
        except Exception as e:
            raise PersistenceError("count", e) from e

    async def purge_expired(self) -> int:
        """
        Delete every artifact past its expiry.

        Returns:
            Number of rows removed
        """
        now = self._now()
        try:
            async with self._db.session() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(SavedArtifactModel).where(SavedArtifactModel.expires_at <= now)
                    )
                    removed = result.rowcount or 0
        except Exception as e:
            raise PersistenceError("purge_expired", e) from e

        if removed:
            logger.info(f"Purged {removed} expired artifacts")
        return removed
