"""Run store for playbook execution state.

Provides:
- Run state persistence (durable continuation of suspended runs)
- Run admission slots (one active run per playbook and entity)
- Suspended run index ordered by resume time
- Distributed locking for resume/cancel
- Run event history
"""

import asyncio
import json
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from core.cache import CacheService
from core.logging import get_logger
from services.playbooks.models import RunState, RunStatus

logger = get_logger(__name__)

ACTIVE_RUNS_KEY = "playbook_runs:active"
SUSPENDED_RUNS_KEY = "playbook_runs:suspended"


def ensure_str(value: Union[str, bytes, None]) -> Optional[str]:
    """Redis with decode_responses=True returns str; tolerate bytes too."""
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode('utf-8')
    return value


def _state_key(execution_id: str) -> str:
    return f"playbook_run:{execution_id}:state"


def _cancel_key(execution_id: str) -> str:
    return f"playbook_run:{execution_id}:cancel"


def _slot_key(playbook_id: str, entity_key: str) -> str:
    return f"playbook_slot:{playbook_id}:{entity_key}"


def _active_entry(execution_id: str) -> str:
    return f"{ACTIVE_RUNS_KEY}:{execution_id}"


def _suspended_entry(execution_id: str) -> str:
    return f"{SUSPENDED_RUNS_KEY}:{execution_id}"


class RunStore:
    """Run state on top of CacheService.

    Key schema (Redis):
        playbook_run:{id}:state          -> HASH {field -> JSON}
        playbook_run:{id}:events         -> STREAM (run event log)
        playbook_run:{id}:cancel         -> JSON true (cancellation requested)
        playbook_runs:active             -> SET {execution_ids}
        playbook_runs:suspended          -> ZSET {execution_id: resume_at}
        playbook_slot:{playbook}:{entity} -> STRING (holder execution id)
        lock:{name}                      -> STRING (lock token)

    Without Redis the same data lives in CacheService entries (SQLite when a
    database is wired in), one entry per index member:
        playbook_runs:active:{id}        -> JSON true
        playbook_runs:suspended:{id}     -> JSON resume_at
    """

    def __init__(self, cache_service: CacheService, finished_ttl: int = 86400):
        self.cache = cache_service
        self.finished_ttl = finished_ttl
        self._local_locks: Dict[str, asyncio.Lock] = {}

    @property
    def _redis(self):
        return self.cache.redis if self.cache.is_redis_available() else None

    # =========================================================================
    # RUN STATE PERSISTENCE
    # =========================================================================

    async def save_state(self, state: RunState) -> bool:
        """Persist run state and keep the active/suspended indexes in sync."""
        try:
            key = _state_key(state.execution_id)
            data = state.to_dict()
            terminal = state.status.is_terminal

            if self._redis is not None:
                mapping = {k: json.dumps(v, default=str) for k, v in data.items()}
                await self._redis.hset(key, mapping=mapping)
                if terminal:
                    await self._redis.expire(key, self.finished_ttl)
                    await self._redis.srem(ACTIVE_RUNS_KEY, state.execution_id)
                else:
                    await self._redis.persist(key)
                    await self._redis.sadd(ACTIVE_RUNS_KEY, state.execution_id)

                if state.status == RunStatus.SUSPENDED and state.resume_at is not None:
                    await self._redis.zadd(SUSPENDED_RUNS_KEY, {state.execution_id: state.resume_at})
                else:
                    await self._redis.zrem(SUSPENDED_RUNS_KEY, state.execution_id)
            else:
                if not await self.cache.set(key, data, ttl=self.finished_ttl if terminal else 0):
                    return False
                if terminal:
                    await self.cache.delete(_active_entry(state.execution_id))
                else:
                    await self.cache.set(_active_entry(state.execution_id), True, ttl=0)
                if state.status == RunStatus.SUSPENDED and state.resume_at is not None:
                    await self.cache.set(_suspended_entry(state.execution_id), state.resume_at,
                                         ttl=0)
                else:
                    await self.cache.delete(_suspended_entry(state.execution_id))

            logger.debug("Saved run state", execution_id=state.execution_id,
                         status=state.status.value)
            return True

        except Exception as e:
            logger.error("Failed to save run state", execution_id=state.execution_id,
                         error=str(e))
            return False

    async def load_state(self, execution_id: str) -> Optional[RunState]:
        """Load run state, or None if unknown (or expired)."""
        try:
            key = _state_key(execution_id)
            if self._redis is not None:
                raw_data = await self._redis.hgetall(key)
                if not raw_data:
                    return None
                data = {}
                for k, v in raw_data.items():
                    try:
                        data[ensure_str(k)] = json.loads(ensure_str(v))
                    except (json.JSONDecodeError, TypeError):
                        data[ensure_str(k)] = ensure_str(v)
                return RunState.from_dict(data)

            data = await self.cache.get(key)
            return RunState.from_dict(data) if data else None

        except Exception as e:
            logger.error("Failed to load run state", execution_id=execution_id, error=str(e))
            return None

    async def delete_state(self, execution_id: str) -> bool:
        """Forget a run entirely (state, cancel flag, index entries)."""
        try:
            if self._redis is not None:
                await self._redis.delete(_state_key(execution_id), _cancel_key(execution_id),
                                         f"playbook_run:{execution_id}:events")
                await self._redis.srem(ACTIVE_RUNS_KEY, execution_id)
                await self._redis.zrem(SUSPENDED_RUNS_KEY, execution_id)
            else:
                await self.cache.delete(_state_key(execution_id))
                await self.cache.delete(_cancel_key(execution_id))
                await self.cache.delete(_active_entry(execution_id))
                await self.cache.delete(_suspended_entry(execution_id))
            return True
        except Exception as e:
            logger.error("Failed to delete run state", execution_id=execution_id, error=str(e))
            return False

    async def request_cancel(self, execution_id: str) -> bool:
        """Flag a run for cancellation at its next node boundary.

        The flag lives in its own key so state checkpoints never clear it.
        """
        state = await self.load_state(execution_id)
        if state is None or state.status.is_terminal:
            return False
        return await self.cache.set(_cancel_key(execution_id), True, ttl=self.finished_ttl)

    async def is_cancel_requested(self, execution_id: str) -> bool:
        return await self.cache.exists(_cancel_key(execution_id))


    # =========================================================================
    # INDEXES
    # =========================================================================

    async def get_active_runs(self) -> Set[str]:
        """Execution ids of runs that have not reached a terminal state."""
        try:
            if self._redis is not None:
                members = await self._redis.smembers(ACTIVE_RUNS_KEY)
                return {ensure_str(m) for m in members}
            prefix = _active_entry("")
            return {key[len(prefix):] for key in await self.cache.get_prefix(prefix)}
        except Exception as e:
            logger.error("Failed to get active runs", error=str(e))
            return set()

    async def get_suspended_runs(self) -> List[Tuple[str, float]]:
        """All suspended runs as (execution_id, resume_at), earliest first."""
        try:
            if self._redis is not None:
                members = await self._redis.zrange(SUSPENDED_RUNS_KEY, 0, -1, withscores=True)
                return [(ensure_str(m), float(score)) for m, score in members]
            prefix = _suspended_entry("")
            entries = await self.cache.get_prefix(prefix)
            return sorted(((key[len(prefix):], float(resume_at)) for key, resume_at in entries.items()),
                          key=lambda item: item[1])
        except Exception as e:
            logger.error("Failed to get suspended runs", error=str(e))
            return []

    async def get_due_runs(self, now: Optional[float] = None) -> List[str]:
        """Suspended runs whose resume time has passed."""
        now = time.time() if now is None else now
        return [execution_id for execution_id, resume_at in await self.get_suspended_runs()
                if resume_at <= now]

    # =========================================================================
    # ADMISSION SLOTS
    # =========================================================================

    async def acquire_slot(self, playbook_id: str, entity_key: str, execution_id: str) -> bool:
        """Claim the (playbook, entity) slot for a run.

        Callers save the run's state before claiming, so a holder without
        state is still starting and keeps the slot. Only a holder whose
        saved state is terminal is reclaimed.

        Returns:
            True if this run now holds the slot
        """
        key = _slot_key(playbook_id, entity_key)
        try:
            if await self._try_claim(key, execution_id):
                return True

            holder = await self.get_slot_holder(playbook_id, entity_key)
            if holder is None:
                return await self._try_claim(key, execution_id)
            holder_state = await self.load_state(holder)
            if holder_state is not None and holder_state.status.is_terminal:
                logger.info("Reclaiming stale run slot", playbook_id=playbook_id,
                            entity_key=entity_key, stale_execution_id=holder)
                await self._release(key, holder)
                return await self._try_claim(key, execution_id)
            return False

        except Exception as e:
            logger.error("Failed to acquire run slot", playbook_id=playbook_id,
                         entity_key=entity_key, error=str(e))
            return False

    async def _try_claim(self, key: str, execution_id: str) -> bool:
        if self._redis is not None:
            return bool(await self._redis.set(key, execution_id, nx=True))
        return await self.cache.add(key, execution_id, ttl=0)

    async def get_slot_holder(self, playbook_id: str, entity_key: str) -> Optional[str]:
        key = _slot_key(playbook_id, entity_key)
        if self._redis is not None:
            return ensure_str(await self._redis.get(key))
        return await self.cache.get(key)

    async def release_slot(self, playbook_id: str, entity_key: str, execution_id: str) -> bool:
        try:
            return await self._release(_slot_key(playbook_id, entity_key), execution_id)
        except Exception as e:
            logger.error("Failed to release run slot", playbook_id=playbook_id,
                         entity_key=entity_key, error=str(e))
            return False

    async def _release(self, key: str, execution_id: str) -> bool:
        # Only the holder releases
        if self._redis is not None:
            current = ensure_str(await self._redis.get(key))
            if current == execution_id:
                await self._redis.delete(key)
                return True
            return False
        if await self.cache.get(key) == execution_id:
            return await self.cache.delete(key)
        return False

    # =========================================================================
    # DISTRIBUTED LOCKING
    # =========================================================================

    @asynccontextmanager
    async def distributed_lock(self, lock_name: str, timeout: int = 60):
        """Acquire a lock shared by every engine process (Redis SET NX).

        Used so a suspended run is resumed by exactly one caller.

        Yields:
            Lock token if acquired

        Raises:
            TimeoutError: If lock cannot be acquired
        """
        lock_key = f"lock:{lock_name}"
        lock_token = str(uuid.uuid4())
        acquired = False

        try:
            if self._redis is not None:
                acquired = await self._redis.set(lock_key, lock_token, ex=timeout, nx=True)
            else:
                if lock_name not in self._local_locks:
                    self._local_locks[lock_name] = asyncio.Lock()
                await asyncio.wait_for(self._local_locks[lock_name].acquire(), timeout=timeout)
                acquired = True

            if not acquired:
                raise TimeoutError(f"Could not acquire lock: {lock_name}")

            logger.debug("Lock acquired", lock_name=lock_name, token=lock_token[:8])
            yield lock_token

        finally:
            if acquired:
                if self._redis is not None:
                    current = ensure_str(await self._redis.get(lock_key))
                    if current == lock_token:
                        await self._redis.delete(lock_key)
                        logger.debug("Lock released", lock_name=lock_name)
                elif lock_name in self._local_locks:
                    self._local_locks[lock_name].release()

    # =========================================================================
    # EVENT HISTORY
    # =========================================================================

    async def add_event(self, execution_id: str, event_type: str,
                        data: Dict[str, Any]) -> Optional[str]:
        """Append to the run's event stream (Redis Streams only)."""
        try:
            return await self.cache.stream_add(
                f"playbook_run:{execution_id}:events",
                {"type": event_type, "timestamp": time.time(), **data},
                maxlen=1000,
            )
        except Exception as e:
            logger.error("Failed to add run event", execution_id=execution_id, error=str(e))
            return None
