"""Playbook execution engine.

Orchestrates one run of a playbook for one triggering entity:

    PENDING -> RUNNING -> COMPLETED | STOPPED | FAILED | SUSPENDED

Features:
- Run admission: at most one active run per (playbook, entity)
- Immutable graph snapshot taken at run start and kept with the run
- Durable suspension on wait (cursor + context persisted, resumed by the
  ResumeScheduler or the RecoverySweeper)
- Cancellation observed at node boundaries
- Execution record and playbook statistics kept in the database
"""

import asyncio
import time
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from core.logging import get_logger, log_execution_time
from services.playbooks.cache import RunStore
from services.playbooks.conditions import ConditionEvaluator
from services.playbooks.dispatcher import ActionDispatcher
from services.playbooks.errors import RunRejected, ValidationError
from services.playbooks.graph import Graph, GraphSnapshot
from services.playbooks.models import (
    Cursor, ExecutionContext, RunResult, RunState, RunStatus,
)
from services.playbooks.registry import NodeTypeRegistry
from services.playbooks.runner import PlaybookRunner

logger = get_logger(__name__)

# (execution_id, node_id, status, data)
RunStatusCallback = Callable[[str, str, str, Dict[str, Any]], Awaitable[None]]

RESUME_LOCK_TIMEOUT = 300


class PlaybookEngine:
    """Runs playbooks against CRM entities."""

    def __init__(self, store, run_store: RunStore,
                 dispatcher: ActionDispatcher,
                 evaluator: ConditionEvaluator,
                 registry: NodeTypeRegistry,
                 resume_scheduler=None,
                 status_callback: Optional[RunStatusCallback] = None):
        """Initialize engine.

        Args:
            store: Database with playbooks and execution records
            run_store: RunStore for run state, slots and locks
            dispatcher: ActionDispatcher with the production handlers
            evaluator: ConditionEvaluator shared by every run
            registry: NodeTypeRegistry used to bind graph snapshots
            resume_scheduler: Schedules resumption of suspended runs
            status_callback: Optional async callback for node status updates
        """
        self.store = store
        self.run_store = run_store
        self.dispatcher = dispatcher
        self.evaluator = evaluator
        self.registry = registry
        self.resume_scheduler = resume_scheduler
        self.status_callback = status_callback
        self.runner = PlaybookRunner(evaluator, dispatcher)

    def set_resume_scheduler(self, resume_scheduler) -> None:
        self.resume_scheduler = resume_scheduler

    # =========================================================================
    # START
    # =========================================================================

    async def start_run(self, playbook_id: str,
                        trigger_config: Optional[Dict[str, Any]] = None,
                        context: Union[ExecutionContext, Dict[str, Any], None] = None,
                        triggered_by: str = "event") -> RunResult:
        """Start a run of an active playbook.

        Args:
            playbook_id: Playbook to run
            trigger_config: Trigger firing metadata, merged into the context
            context: Entity snapshot (ExecutionContext or its dict form)
            triggered_by: event / manual / schedule

        Returns:
            RunResult (status may be SUSPENDED when a wait was reached)

        Raises:
            RunRejected: Unknown or inactive playbook, or another active run
                for the same entity. Nothing is executed or recorded.
        """
        playbook = await self.store.get_playbook(playbook_id)
        if playbook is None:
            raise RunRejected("playbook not found", playbook_id)
        if not playbook.is_active:
            logger.info("Run rejected: playbook inactive", playbook_id=playbook_id)
            raise RunRejected("playbook is not active", playbook_id)

        if not isinstance(context, ExecutionContext):
            context = ExecutionContext.from_dict(context)
        context = context.with_trigger(trigger_config)

        state = RunState.create(playbook_id, context, triggered_by=triggered_by,
                                trigger_config=trigger_config)
        state.graph = playbook.graph.to_dict()

        # State must exist before the slot is claimed: a slot holder without
        # state is treated as live by other admissions
        if not await self.run_store.save_state(state):
            raise RunRejected("run state could not be saved", playbook_id, state.entity_key)
        if not await self.run_store.acquire_slot(playbook_id, state.entity_key, state.execution_id):
            await self.run_store.delete_state(state.execution_id)
            logger.info("Run rejected: entity already has an active run",
                        playbook_id=playbook_id, entity_key=state.entity_key)
            raise RunRejected("another run is active for this entity",
                              playbook_id, state.entity_key)

        logger.info("Run admitted", execution_id=state.execution_id,
                    playbook_id=playbook_id, entity_key=state.entity_key,
                    triggered_by=triggered_by)

        try:
            snapshot = self._snapshot(state.graph)
        except ValidationError as e:
            logger.warning("Run failed validation", execution_id=state.execution_id,
                           playbook_id=playbook_id, error=str(e))
            state.finish(RunStatus.FAILED, f"validation failed: {e}")
            await self._finalize(state)
            return state.result()

        return await self._execute(state, snapshot, [Cursor(snapshot.trigger_id, context)])

    def _snapshot(self, graph: Dict[str, Any]) -> GraphSnapshot:
        snapshot = Graph.from_dict(graph).snapshot(self.registry)
        self.dispatcher.ensure_handlers(snapshot)
        return snapshot

    # =========================================================================
    # TRAVERSAL
    # =========================================================================

    async def _execute(self, state: RunState, snapshot: GraphSnapshot,
                       cursors: List[Cursor], waiting: Optional[List[Cursor]] = None) -> RunResult:
        """Run the traversal and persist the outcome.

        Args:
            waiting: Suspended cursors that are not due yet (resume only)
        """
        waiting = waiting or []
        state.status = RunStatus.RUNNING
        state.suspended = list(waiting)
        state.updated_at = time.time()
        await self.run_store.save_state(state)
        await self.store.record_execution(state)
        await self.run_store.add_event(state.execution_id, "run_running",
                                       {"cursors": len(cursors)})

        start_time = time.time()
        try:
            result = await self.runner.run(
                snapshot, cursors,
                log=state.log,
                is_cancelled=partial(self.run_store.is_cancel_requested, state.execution_id),
                on_status=partial(self._on_node_status, state),
            )
        except asyncio.CancelledError:
            state.finish(RunStatus.STOPPED, "cancelled")
            await self._finalize(state)
            raise
        except Exception as e:
            logger.error("Run crashed", execution_id=state.execution_id, error=str(e))
            state.finish(RunStatus.FAILED, f"{type(e).__name__}: {e}")
        else:
            if result.status == RunStatus.FAILED:
                state.finish(RunStatus.FAILED, result.error)
            elif result.status == RunStatus.STOPPED:
                state.finish(RunStatus.STOPPED, result.stop_reason)
            else:
                state.suspended = waiting + result.suspended
                state.finish(RunStatus.SUSPENDED if state.suspended else RunStatus.COMPLETED)

        await self._finalize(state)
        log_execution_time(logger, "playbook_run", start_time, time.time(),
                           execution_id=state.execution_id, playbook_id=state.playbook_id,
                           status=state.status.value, nodes=len(state.log))
        return state.result()

    async def _on_node_status(self, state: RunState, node_id: str, status: str,
                              data: Dict[str, Any]) -> None:
        state.current_step = node_id
        state.updated_at = time.time()
        await self.run_store.add_event(state.execution_id, "node_status",
                                       {"node_id": node_id, "status": status})
        if status != "running":
            # Checkpoint progress after every node
            await self.run_store.save_state(state)
        await self._notify_status(state.execution_id, node_id, status, data)

    async def _notify_status(self, execution_id: str, node_id: str, status: str,
                             data: Dict[str, Any]) -> None:
        if self.status_callback:
            try:
                await self.status_callback(execution_id, node_id, status, data)
            except Exception as e:
                logger.warning("Status callback failed", execution_id=execution_id,
                               node_id=node_id, error=str(e))

    async def _finalize(self, state: RunState) -> None:
        """Persist the run and settle slot, stats and resume job."""
        await self.run_store.save_state(state)
        await self.store.record_execution(state)
        await self.run_store.add_event(state.execution_id, "run_" + state.status.value,
                                       {"error": state.error or ""})

        if state.status == RunStatus.SUSPENDED:
            logger.info("Run suspended", execution_id=state.execution_id,
                        playbook_id=state.playbook_id, resume_at=state.resume_at,
                        paths=len(state.suspended))
            if self.resume_scheduler is not None and state.resume_at is not None:
                self.resume_scheduler.schedule(state.execution_id, state.resume_at)
            return

        if state.status.is_terminal:
            await self.run_store.release_slot(state.playbook_id, state.entity_key,
                                              state.execution_id)
            await self.store.update_playbook_stats(
                state.playbook_id,
                succeeded=state.status in (RunStatus.COMPLETED, RunStatus.STOPPED),
            )
            if self.resume_scheduler is not None:
                self.resume_scheduler.cancel(state.execution_id)

            log = logger.warning if state.status == RunStatus.FAILED else logger.info
            log("Run finished", execution_id=state.execution_id,
                playbook_id=state.playbook_id, status=state.status.value,
                error=state.error)

    # =========================================================================
    # RESUME / CANCEL
    # =========================================================================

    async def resume_run(self, execution_id: str) -> Optional[RunResult]:
        """Resume a suspended run from durable state.

        Only continuations whose resume time has passed are resumed; the
        others stay suspended. Concurrent resumes of the same run are
        serialized by a distributed lock.

        Returns:
            RunResult, or None if the run is unknown or being resumed elsewhere
        """
        try:
            async with self.run_store.distributed_lock(f"playbook_run:{execution_id}:resume",
                                                       timeout=RESUME_LOCK_TIMEOUT):
                state = await self.run_store.load_state(execution_id)
                if state is None:
                    logger.warning("Resume requested for unknown run", execution_id=execution_id)
                    return None
                if state.status != RunStatus.SUSPENDED:
                    return state.result()

                if await self.run_store.is_cancel_requested(execution_id):
                    state.finish(RunStatus.STOPPED, "cancelled")
                    await self._finalize(state)
                    return state.result()

                now = time.time()
                due = [c for c in state.suspended if c.resume_at is None or c.resume_at <= now]
                waiting = [c for c in state.suspended if c.resume_at is not None and c.resume_at > now]
                if not due:
                    if self.resume_scheduler is not None and state.resume_at is not None:
                        self.resume_scheduler.schedule(execution_id, state.resume_at)
                    return state.result()

                logger.info("Run resumed", execution_id=execution_id,
                            playbook_id=state.playbook_id, paths=len(due))
                try:
                    snapshot = self._snapshot(state.graph)
                except ValidationError as e:
                    state.finish(RunStatus.FAILED, f"validation failed: {e}")
                    await self._finalize(state)
                    return state.result()

                return await self._execute(state, snapshot, due, waiting=waiting)

        except (TimeoutError, asyncio.TimeoutError):
            logger.info("Resume already in progress", execution_id=execution_id)
            return None

    async def cancel_run(self, execution_id: str) -> bool:
        """Cancel a run at its next node boundary.

        A suspended run is finished as stopped right away.

        Returns:
            True if the run was active and is now cancelled (or flagged)
        """
        state = await self.run_store.load_state(execution_id)
        if state is None or state.status.is_terminal:
            return False

        if not await self.run_store.request_cancel(execution_id):
            return False

        if state.status == RunStatus.SUSPENDED:
            # Goes through resume_run's lock so a concurrent resume sees the flag
            await self.resume_run(execution_id)

        logger.info("Run cancellation requested", execution_id=execution_id,
                    playbook_id=state.playbook_id, status=state.status.value)
        return True

    async def abandon_run(self, execution_id: str, reason: str) -> bool:
        """Finish a run left PENDING or RUNNING by a crashed process as failed."""
        state = await self.run_store.load_state(execution_id)
        if state is None or state.status not in (RunStatus.PENDING, RunStatus.RUNNING):
            return False
        state.finish(RunStatus.FAILED, reason)
        await self._finalize(state)
        return True

    async def deactivate_playbook(self, playbook_id: str) -> int:
        """Deactivate a playbook and cancel its active runs.

        Returns:
            Number of runs cancelled
        """
        await self.store.set_playbook_active(playbook_id, False)

        cancelled = 0
        for execution_id in await self.run_store.get_active_runs():
            state = await self.run_store.load_state(execution_id)
            if state is not None and state.playbook_id == playbook_id:
                if await self.cancel_run(execution_id):
                    cancelled += 1

        logger.info("Playbook deactivated", playbook_id=playbook_id, cancelled_runs=cancelled)
        return cancelled

    async def get_run(self, execution_id: str) -> Optional[RunState]:
        return await self.run_store.load_state(execution_id)
