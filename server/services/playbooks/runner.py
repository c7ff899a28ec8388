"""Graph traversal shared by the execution engine and the simulator.

Each path of a run is a Cursor; every step executes one node and yields
the cursors of the next nodes. Steps run as asyncio tasks with continuous
scheduling: as soon as a step completes its successors are scheduled, so
fan-out paths progress independently. Nothing joins paths back together.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Set

from constants import BRANCH_LOOP, KIND_ACTION, KIND_CONDITION, KIND_TRIGGER
from core.logging import get_logger
from services.playbooks.conditions import ConditionEvaluator
from services.playbooks.dispatcher import ActionDispatcher
from services.playbooks.errors import EvaluationError, LoopLimitExceeded, RunStopped
from services.playbooks.graph import GraphSnapshot
from services.playbooks.models import Cursor, ExecutionLogEntry, LogStatus, RunStatus

logger = get_logger(__name__)

StatusCallback = Callable[[str, str, Dict], Awaitable[None]]
CancelCheck = Callable[[], Awaitable[bool]]


@dataclass
class StepResult:
    """Outcome of executing one node on one path."""
    entry: ExecutionLogEntry
    next: List[Cursor] = field(default_factory=list)
    suspended: Optional[Cursor] = None
    stopped: Optional[str] = None
    error: Optional[str] = None


@dataclass
class TraversalResult:
    status: RunStatus
    log: List[ExecutionLogEntry]
    suspended: List[Cursor] = field(default_factory=list)
    error: Optional[str] = None
    stop_reason: Optional[str] = None


class PlaybookRunner:
    """Walks a GraphSnapshot from a set of cursors until every path ends."""

    def __init__(self, evaluator: ConditionEvaluator, dispatcher: ActionDispatcher,
                 suspend_waits: bool = True):
        self.evaluator = evaluator
        self.dispatcher = dispatcher
        self.suspend_waits = suspend_waits

    async def run(self, snapshot: GraphSnapshot, cursors: List[Cursor],
                  log: Optional[List[ExecutionLogEntry]] = None,
                  is_cancelled: Optional[CancelCheck] = None,
                  on_status: Optional[StatusCallback] = None) -> TraversalResult:
        """Traverse until every path completes, suspends, or the run halts.

        Args:
            snapshot: Validated graph
            cursors: Starting points (the trigger for a new run, resumed
                continuations for a suspended one)
            log: Existing log to append to
            is_cancelled: Checked before scheduling each node
            on_status: Called with (node_id, status, data) around every node

        Returns:
            TraversalResult with the final status
        """
        log = log if log is not None else []
        suspended: List[Cursor] = []
        error: Optional[str] = None
        stop_reason: Optional[str] = None

        # task -> scheduling order, so simultaneous completions are logged deterministically
        task_order: Dict[asyncio.Task, int] = {}
        pending_tasks: Set[asyncio.Task] = set()
        sequence = 0

        async def schedule(ready: List[Cursor]) -> None:
            nonlocal sequence, stop_reason
            for cursor in ready:
                if stop_reason is None and is_cancelled is not None and await is_cancelled():
                    stop_reason = "cancelled"
                    logger.info("Cancellation observed, not scheduling further nodes",
                                node_id=cursor.node_id)
                if stop_reason is not None or error is not None:
                    return
                task = asyncio.create_task(
                    self._step(snapshot, cursor, on_status),
                    name=f"node_{cursor.node_id}",
                )
                task_order[task] = sequence
                sequence += 1
                pending_tasks.add(task)

        # A resumed wait already ran and was logged: continue with its successors
        start: List[Cursor] = []
        for cursor in cursors:
            if cursor.completed:
                start.extend(Cursor(n.id, cursor.context) for n in snapshot.successors(cursor.node_id))
            else:
                start.append(cursor)
        await schedule(start)

        try:
            while pending_tasks:
                done, pending_tasks = await asyncio.wait(
                    pending_tasks,
                    return_when=asyncio.FIRST_COMPLETED
                )

                for task in sorted(done, key=task_order.__getitem__):
                    result: StepResult = task.result()
                    log.append(result.entry)

                    if result.error is not None:
                        if error is None:
                            error = result.error
                        continue
                    if result.stopped is not None:
                        if stop_reason is None:
                            stop_reason = result.stopped
                        continue
                    if result.suspended is not None:
                        suspended.append(result.suspended)
                    await schedule(result.next)

        except asyncio.CancelledError:
            # Caller cancelled the whole traversal: do not leave steps behind
            for task in pending_tasks:
                task.cancel()
            raise

        if error is not None:
            status = RunStatus.FAILED
        elif stop_reason is not None:
            status = RunStatus.STOPPED
        elif suspended:
            status = RunStatus.SUSPENDED
        else:
            status = RunStatus.COMPLETED

        return TraversalResult(
            status=status,
            log=log,
            suspended=suspended if status == RunStatus.SUSPENDED else [],
            error=error,
            stop_reason=stop_reason,
        )

    # =========================================================================
    # SINGLE STEP
    # =========================================================================

    async def _step(self, snapshot: GraphSnapshot, cursor: Cursor,
                    on_status: Optional[StatusCallback]) -> StepResult:
        node = snapshot.node(cursor.node_id)
        context = cursor.context

        await _notify(on_status, node.id, LogStatus.RUNNING.value, {"type": node.type})
        logger.debug("Visiting node", node_id=node.id, kind=node.kind, type=node.type)

        if node.kind == KIND_TRIGGER:
            result = StepResult(
                ExecutionLogEntry(node.id, LogStatus.SUCCESS, f"Trigger fired: {node.type}",
                                  node_type=node.type),
                next=[Cursor(n.id, context) for n in snapshot.successors(node.id)],
            )
        elif node.kind == KIND_CONDITION:
            result = self._condition_step(snapshot, node, context)
        elif node.kind == KIND_ACTION:
            result = await self._action_step(snapshot, node, context)
        else:
            result = StepResult(
                ExecutionLogEntry(node.id, LogStatus.ERROR, f"Unknown node kind '{node.kind}'",
                                  node_type=node.type),
                error=f"unknown node kind '{node.kind}' at {node.id}",
            )

        await _notify(on_status, node.id, result.entry.status.value, result.entry.to_dict())
        return result

    def _condition_step(self, snapshot: GraphSnapshot, node, context) -> StepResult:
        try:
            branch = self.evaluator.evaluate(node, context)
        except RunStopped as e:
            entry = ExecutionLogEntry(node.id, LogStatus.SUCCESS, f"Run stopped: {e.reason}",
                                      node_type=node.type)
            return StepResult(entry, stopped=e.reason)
        except EvaluationError as e:
            logger.warning("Condition evaluation failed", node_id=node.id, error=str(e))
            entry = ExecutionLogEntry(node.id, LogStatus.ERROR, str(e), node_type=node.type)
            return StepResult(entry, error=f"{node.id}: {e}")

        if branch is None:
            message = "Condition passed" if node.type == "stop_if" else "Following all paths"
        else:
            message = f"Branch '{branch}' selected"
        entry = ExecutionLogEntry(node.id, LogStatus.SUCCESS, message,
                                  node_type=node.type, branch=branch)
        return StepResult(entry, next=[Cursor(n.id, context)
                                       for n in snapshot.successors(node.id, branch)])

    async def _action_step(self, snapshot: GraphSnapshot, node, context) -> StepResult:
        try:
            outcome = await self.dispatcher.dispatch(node, context)
        except (LoopLimitExceeded, EvaluationError) as e:
            logger.warning("Action aborted the run", node_id=node.id, error=str(e))
            entry = ExecutionLogEntry(node.id, LogStatus.ERROR, str(e), node_type=node.type)
            return StepResult(entry, error=str(e))

        if not outcome.ok:
            entry = ExecutionLogEntry(node.id, LogStatus.ERROR, outcome.message,
                                      node_type=node.type)
            return StepResult(entry, error=f"{node.id}: {outcome.message}")

        entry = ExecutionLogEntry(node.id, LogStatus.SUCCESS, outcome.message,
                                  node_type=node.type, branch=outcome.branch,
                                  iteration=outcome.loop_iteration)
        context = context.with_patch(outcome.context_patch)
        if node.type == "loop_until":
            count = outcome.loop_iteration if outcome.branch == BRANCH_LOOP else None
            context = context.with_loop_counter(node.id, count)

        if outcome.resume_after is not None and self.suspend_waits:
            resume_at = time.time() + outcome.resume_after.total_seconds()
            return StepResult(entry, suspended=Cursor(node.id, context, completed=True,
                                                      resume_at=resume_at))

        return StepResult(entry, next=[Cursor(n.id, context)
                                       for n in snapshot.successors(node.id, outcome.branch)])


async def _notify(callback: Optional[StatusCallback], node_id: str, status: str,
                  data: Dict) -> None:
    if callback:
        try:
            await callback(node_id, status, data)
        except Exception as e:
            logger.warning("Status callback failed", node_id=node_id, error=str(e))
