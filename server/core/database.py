"""Async database service with SQLModel and SQLAlchemy 2.0."""

import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel, select

from core.config import Settings
from core.logging import get_logger
from models.cache import CacheEntry  # SQLite-backed cache for Redis alternative
from models.database import PlaybookExecutionRecord, PlaybookRecord
from services.playbooks.graph import Graph, Playbook
from services.playbooks.models import RunState, RunStatus

logger = get_logger(__name__)


def _from_epoch(value: Optional[float]) -> Optional[datetime]:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value is not None else None


def _to_playbook(record: PlaybookRecord) -> Playbook:
    return Playbook(
        id=record.id,
        name=record.name,
        description=record.description or "",
        trigger_type=record.trigger_type,
        trigger_config=dict(record.trigger_config or {}),
        graph=Graph.from_dict(record.graph),
        is_active=record.is_active,
        usage_count=record.usage_count,
        success_rate=record.success_rate,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


class Database:
    """Async database service with SQLModel."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    async def startup(self):
        """Initialize database connection and create tables."""
        try:
            engine_kwargs: Dict[str, Any] = {"echo": self.settings.database_echo, "future": True}
            # Pool sizing only applies to server databases
            if not self.settings.is_sqlite:
                engine_kwargs.update(
                    pool_size=self.settings.database_pool_size,
                    max_overflow=self.settings.database_max_overflow,
                )
            self.engine = create_async_engine(self.settings.database_url, **engine_kwargs)

            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized successfully")

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Get async database session."""
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    # ============================================================================
    # Playbooks
    # ============================================================================

    async def save_playbook(self, playbook: Playbook) -> bool:
        """Insert or update a playbook aggregate."""
        try:
            async with self.get_session() as session:
                existing = await session.get(PlaybookRecord, playbook.id)
                if existing:
                    existing.name = playbook.name
                    existing.description = playbook.description
                    existing.trigger_type = playbook.trigger_type
                    existing.trigger_config = dict(playbook.trigger_config)
                    existing.graph = playbook.graph.to_dict()
                    existing.is_active = playbook.is_active
                    existing.updated_at = datetime.now(timezone.utc)
                else:
                    session.add(PlaybookRecord(
                        id=playbook.id,
                        name=playbook.name,
                        description=playbook.description,
                        trigger_type=playbook.trigger_type,
                        trigger_config=dict(playbook.trigger_config),
                        graph=playbook.graph.to_dict(),
                        is_active=playbook.is_active,
                        usage_count=playbook.usage_count,
                        success_rate=playbook.success_rate,
                    ))
                await session.commit()
                return True

        except Exception as e:
            logger.error("Failed to save playbook", playbook_id=playbook.id, error=str(e))
            return False

    async def get_playbook(self, playbook_id: str) -> Optional[Playbook]:
        try:
            async with self.get_session() as session:
                record = await session.get(PlaybookRecord, playbook_id)
                return _to_playbook(record) if record else None

        except Exception as e:
            logger.error("Failed to get playbook", playbook_id=playbook_id, error=str(e))
            return None

    async def list_playbooks(self, active_only: bool = False) -> List[Playbook]:
        try:
            async with self.get_session() as session:
                stmt = select(PlaybookRecord).order_by(PlaybookRecord.created_at)
                if active_only:
                    stmt = stmt.where(PlaybookRecord.is_active == True)  # noqa: E712
                result = await session.execute(stmt)
                return [_to_playbook(r) for r in result.scalars().all()]

        except Exception as e:
            logger.error("Failed to list playbooks", error=str(e))
            return []

    async def delete_playbook(self, playbook_id: str) -> bool:
        """Delete a playbook and its execution history."""
        try:
            async with self.get_session() as session:
                record = await session.get(PlaybookRecord, playbook_id)
                if not record:
                    return False
                await session.execute(
                    delete(PlaybookExecutionRecord).where(
                        PlaybookExecutionRecord.playbook_id == playbook_id
                    )
                )
                await session.delete(record)
                await session.commit()
                return True

        except Exception as e:
            logger.error("Failed to delete playbook", playbook_id=playbook_id, error=str(e))
            return False

    async def set_playbook_active(self, playbook_id: str, is_active: bool) -> bool:
        try:
            async with self.get_session() as session:
                record = await session.get(PlaybookRecord, playbook_id)
                if not record:
                    return False
                record.is_active = is_active
                record.updated_at = datetime.now(timezone.utc)
                await session.commit()
                return True

        except Exception as e:
            logger.error("Failed to set playbook active flag", playbook_id=playbook_id, error=str(e))
            return False

    async def update_playbook_stats(self, playbook_id: str, succeeded: bool) -> bool:
        """Count one finished run and recompute the success rate (percent)."""
        try:
            async with self.get_session() as session:
                record = await session.get(PlaybookRecord, playbook_id)
                if not record:
                    return False
                record.usage_count += 1
                if succeeded:
                    record.success_count += 1
                record.success_rate = round(100.0 * record.success_count / record.usage_count, 2)
                await session.commit()
                return True

        except Exception as e:
            logger.error("Failed to update playbook stats", playbook_id=playbook_id, error=str(e))
            return False

    # ============================================================================
    # Executions
    # ============================================================================

    async def record_execution(self, state: RunState) -> bool:
        """Insert or update the execution record of a run."""
        try:
            async with self.get_session() as session:
                record = await session.get(PlaybookExecutionRecord, state.execution_id)
                if record is None:
                    record = PlaybookExecutionRecord(
                        id=state.execution_id,
                        playbook_id=state.playbook_id,
                        entity_key=state.entity_key,
                        contact_id=state.contact_id,
                        deal_id=state.deal_id,
                        conversation_id=state.conversation_id,
                        triggered_by=state.triggered_by,
                        started_at=_from_epoch(state.started_at),
                    )
                    session.add(record)

                record.status = state.status.value
                record.current_step = state.current_step
                record.steps_log = [entry.to_dict() for entry in state.log]
                record.error_message = (state.error or "")[:2000] or None
                record.resume_at = state.resume_at if state.status == RunStatus.SUSPENDED else None
                record.completed_at = _from_epoch(state.completed_at)
                await session.commit()
                return True

        except Exception as e:
            logger.error("Failed to record execution", execution_id=state.execution_id, error=str(e))
            return False

    async def get_execution(self, execution_id: str) -> Optional[PlaybookExecutionRecord]:
        try:
            async with self.get_session() as session:
                return await session.get(PlaybookExecutionRecord, execution_id)

        except Exception as e:
            logger.error("Failed to get execution", execution_id=execution_id, error=str(e))
            return None

    async def list_executions(self, playbook_id: Optional[str] = None,
                              status: Optional[str] = None,
                              limit: int = 50) -> List[PlaybookExecutionRecord]:
        try:
            async with self.get_session() as session:
                stmt = select(PlaybookExecutionRecord)
                if playbook_id:
                    stmt = stmt.where(PlaybookExecutionRecord.playbook_id == playbook_id)
                if status:
                    stmt = stmt.where(PlaybookExecutionRecord.status == status)
                stmt = stmt.order_by(PlaybookExecutionRecord.started_at.desc()).limit(limit)
                result = await session.execute(stmt)
                return list(result.scalars().all())

        except Exception as e:
            logger.error("Failed to list executions", playbook_id=playbook_id, error=str(e))
            return []

    # ============================================================================
    # Cache Entries (SQLite-backed Redis alternative)
    # ============================================================================

    async def get_cache_entry(self, key: str) -> Optional[str]:
        """Get cache value by key. Returns None if expired or not found."""
        try:
            async with self.get_session() as session:
                entry = await session.get(CacheEntry, key)
                if not entry:
                    return None

                if entry.expires_at and entry.expires_at < time.time():
                    await session.delete(entry)
                    await session.commit()
                    return None

                return entry.value

        except Exception as e:
            logger.error("Failed to get cache entry", key=key, error=str(e))
            return None

    async def set_cache_entry(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        """Set cache value with optional TTL in seconds."""
        try:
            now = time.time()
            expires_at = now + ttl if ttl else None

            async with self.get_session() as session:
                existing = await session.get(CacheEntry, key)
                if existing:
                    existing.value = value
                    existing.expires_at = expires_at
                    existing.created_at = now
                else:
                    session.add(CacheEntry(key=key, value=value, expires_at=expires_at,
                                           created_at=now))
                await session.commit()
                return True

        except Exception as e:
            logger.error("Failed to set cache entry", key=key, error=str(e))
            return False

    async def add_cache_entry(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        """Insert a cache entry only if the key is absent or expired (SET NX).

        Two concurrent inserts of the same key race on the primary key, so
        exactly one of them succeeds.
        """
        try:
            now = time.time()
            async with self.get_session() as session:
                existing = await session.get(CacheEntry, key)
                if existing:
                    if not existing.expires_at or existing.expires_at >= now:
                        return False
                    await session.delete(existing)
                    await session.flush()

                session.add(CacheEntry(key=key, value=value,
                                       expires_at=now + ttl if ttl else None, created_at=now))
                await session.commit()
                return True

        except IntegrityError:
            logger.debug("Cache entry already claimed", key=key)
            return False
        except Exception as e:
            logger.error("Failed to add cache entry", key=key, error=str(e))
            return False

    async def delete_cache_entry(self, key: str) -> bool:
        """Delete cache entry by key. Returns True if an entry was removed."""
        try:
            async with self.get_session() as session:
                result = await session.execute(delete(CacheEntry).where(CacheEntry.key == key))
                await session.commit()
                return bool(result.rowcount)

        except Exception as e:
            logger.error("Failed to delete cache entry", key=key, error=str(e))
            return False

    async def get_cache_entries(self, prefix: str) -> Dict[str, str]:
        """Live cache values whose key starts with prefix."""
        try:
            async with self.get_session() as session:
                stmt = select(CacheEntry).where(CacheEntry.key.startswith(prefix, autoescape=True))
                result = await session.execute(stmt)
                now = time.time()
                return {
                    entry.key: entry.value
                    for entry in result.scalars().all()
                    if not entry.expires_at or entry.expires_at >= now
                }

        except Exception as e:
            logger.error("Failed to get cache entries", prefix=prefix, error=str(e))
            return {}

    async def cache_exists(self, key: str) -> bool:
        """Check if cache key exists and is not expired."""
        try:
            async with self.get_session() as session:
                entry = await session.get(CacheEntry, key)
                if not entry:
                    return False
                return not (entry.expires_at and entry.expires_at < time.time())

        except Exception as e:
            logger.error("Failed to check cache exists", key=key, error=str(e))
            return False

    async def cleanup_expired_cache(self) -> int:
        """Remove all expired cache entries. Returns count deleted."""
        try:
            async with self.get_session() as session:
                result = await session.execute(delete(CacheEntry).where(
                    CacheEntry.expires_at.isnot(None),
                    CacheEntry.expires_at < time.time()
                ))
                await session.commit()
                count = result.rowcount or 0
                if count > 0:
                    logger.info("Cleaned up expired cache entries", count=count)
                return count

        except Exception as e:
            logger.error("Failed to cleanup expired cache", error=str(e))
            return 0
