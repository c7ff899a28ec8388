"""Resumption of suspended runs and crash recovery.

- ResumeScheduler registers one APScheduler date job per suspended run
- RecoverySweeper runs as a background task to:
  - Resume due runs whose job was lost (restart, another process)
  - Fail runs left RUNNING by a crashed process
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional

from core.logging import get_logger
from services import scheduler
from services.playbooks.cache import RunStore
from services.playbooks.models import RunStatus

logger = get_logger(__name__)


def _job_id(execution_id: str) -> str:
    return f"resume_{execution_id}"


class ResumeScheduler:
    """Time-driven re-entry into the engine for suspended runs."""

    def __init__(self, resume_callback: Callable[[str], Awaitable]):
        self._resume = resume_callback

    def schedule(self, execution_id: str, resume_at: float) -> str:
        run_date = datetime.fromtimestamp(resume_at, tz=timezone.utc)
        return scheduler.register_date_job(_job_id(execution_id), run_date, self._fire,
                                           execution_id=execution_id)

    def cancel(self, execution_id: str) -> bool:
        return scheduler.remove_job(_job_id(execution_id))

    def is_scheduled(self, execution_id: str) -> bool:
        return scheduler.get_job_info(_job_id(execution_id)) is not None

    async def _fire(self, execution_id: str) -> None:
        try:
            await self._resume(execution_id)
        except Exception as e:
            logger.error("Scheduled resume failed", execution_id=execution_id, error=str(e))


class RecoverySweeper:
    """Background task that recovers suspended and abandoned runs.

    Sweeper pattern:
    - Periodically scans the suspended index for due runs and resumes them
    - Detects PENDING or RUNNING runs with no progress for interrupted_timeout
      seconds and finishes them as failed, releasing their admission slot
    """

    def __init__(self, engine, run_store: RunStore,
                 resume_scheduler: Optional[ResumeScheduler] = None,
                 sweep_interval: int = 60,
                 interrupted_timeout: int = 900):
        """Initialize recovery sweeper.

        Args:
            engine: PlaybookEngine used to resume/abandon runs
            run_store: RunStore with the active and suspended indexes
            resume_scheduler: Re-registers jobs found on startup
            sweep_interval: Seconds between sweep runs
            interrupted_timeout: Seconds without progress before a PENDING or
                RUNNING run is considered abandoned
        """
        self.engine = engine
        self.run_store = run_store
        self.resume_scheduler = resume_scheduler
        self.sweep_interval = sweep_interval
        self.interrupted_timeout = interrupted_timeout
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the recovery sweeper background task."""
        if self._running:
            logger.warning("Recovery sweeper already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("Recovery sweeper started", sweep_interval=self.sweep_interval,
                    interrupted_timeout=self.interrupted_timeout)

    async def stop(self) -> None:
        """Stop the recovery sweeper."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Recovery sweeper stopped")

    async def _sweep_loop(self) -> None:
        """Main sweep loop - runs continuously."""
        while self._running:
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error("Sweep iteration failed", error=str(e))

            await asyncio.sleep(self.sweep_interval)

    async def sweep_once(self, now: Optional[float] = None) -> List[str]:
        """Single sweep iteration.

        Returns:
            Execution ids that were resumed
        """
        now = time.time() if now is None else now
        resumed = []

        for execution_id in await self.run_store.get_due_runs(now):
            try:
                await self.engine.resume_run(execution_id)
                resumed.append(execution_id)
            except Exception as e:
                logger.error("Failed to resume run", execution_id=execution_id, error=str(e))

        for execution_id in await self.run_store.get_active_runs():
            try:
                await self._check_running(execution_id, now)
            except Exception as e:
                logger.error("Failed to check run", execution_id=execution_id, error=str(e))

        # Finished run states past their TTL
        await self.run_store.cache.cleanup_expired()

        if resumed:
            logger.info("Sweep resumed due runs", count=len(resumed))
        return resumed

    async def _check_running(self, execution_id: str, now: float) -> None:
        state = await self.run_store.load_state(execution_id)
        if state is None or state.status not in (RunStatus.PENDING, RunStatus.RUNNING):
            return
        age = now - state.updated_at
        if age > self.interrupted_timeout:
            logger.warning("Run interrupted (no progress)", execution_id=execution_id,
                           age_seconds=round(age, 1))
            await self.engine.abandon_run(execution_id, "run interrupted")

    async def scan_on_startup(self) -> List[str]:
        """Reschedule suspended runs after a restart.

        Past-due runs are resumed immediately, the others get their date
        job back.

        Returns:
            Execution ids resumed during the scan
        """
        now = time.time()
        suspended = await self.run_store.get_suspended_runs()
        logger.info("Startup scan for suspended runs", suspended_count=len(suspended))

        resumed = []
        for execution_id, resume_at in suspended:
            if resume_at <= now:
                try:
                    await self.engine.resume_run(execution_id)
                    resumed.append(execution_id)
                except Exception as e:
                    logger.error("Failed to resume run", execution_id=execution_id, error=str(e))
            elif self.resume_scheduler is not None:
                self.resume_scheduler.schedule(execution_id, resume_at)

        return resumed


# Global sweeper instance (initialized by main.py)
_sweeper: Optional[RecoverySweeper] = None


def get_recovery_sweeper() -> Optional[RecoverySweeper]:
    """Get global recovery sweeper instance."""
    return _sweeper


def set_recovery_sweeper(sweeper: Optional[RecoverySweeper]) -> None:
    """Set global recovery sweeper instance."""
    global _sweeper
    _sweeper = sweeper
