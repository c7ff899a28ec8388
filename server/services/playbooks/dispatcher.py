"""Action Dispatcher - action node execution with handler dispatch.

Uses a handler table keyed on node type (built once at wiring time) so
dispatch is a single lookup. ``wait`` and ``loop_until`` are enforced by
the dispatcher itself; every other action goes to an injected handler:

    async def handler(params, context) -> ActionOutcome
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional

from constants import BRANCH_DONE, BRANCH_LOOP, BUILTIN_ACTION_TYPES, KIND_ACTION
from core.logging import get_logger
from models.nodes import BaseNodeParams
from services.playbooks.conditions import ConditionEvaluator
from services.playbooks.errors import ActionError, LoopLimitExceeded, ValidationError
from services.playbooks.models import ActionOutcome, ExecutionContext

logger = get_logger(__name__)

ActionHandler = Callable[[BaseNodeParams, ExecutionContext], Awaitable[ActionOutcome]]


class ActionDispatcher:
    """Dispatches action nodes to handlers with an explicit timeout per call."""

    def __init__(self, handlers: Dict[str, ActionHandler],
                 evaluator: ConditionEvaluator,
                 default_timeout: float = 30.0):
        self._handlers = dict(handlers)
        self.evaluator = evaluator
        self.default_timeout = default_timeout

    def with_handlers(self, handlers: Dict[str, ActionHandler]) -> "ActionDispatcher":
        """Same dispatcher semantics with a different handler table."""
        return ActionDispatcher(handlers, self.evaluator, self.default_timeout)

    def missing_handlers(self, snapshot) -> List[str]:
        return sorted({
            node.type for node in snapshot.nodes.values()
            if node.kind == KIND_ACTION
            and node.type not in BUILTIN_ACTION_TYPES
            and node.type not in self._handlers
        })

    def ensure_handlers(self, snapshot) -> None:
        """Resolve every action type of a snapshot before the run starts.

        Raises:
            ValidationError: Action types without a handler
        """
        missing = self.missing_handlers(snapshot)
        if missing:
            raise ValidationError([f"no handler registered for action type '{t}'" for t in missing])

    async def dispatch(self, node, context: ExecutionContext) -> ActionOutcome:
        """Execute one bound action node.

        Handler failures, ActionError and timeouts become error outcomes.

        Raises:
            LoopLimitExceeded: loop_until guard tripped
            EvaluationError: loop_until stop condition cannot be evaluated
        """
        if node.type == "wait":
            return self._wait(node.params)
        if node.type == "loop_until":
            return self._loop_until(node, context)

        handler = self._handlers.get(node.type)
        if handler is None:
            return ActionOutcome.error(f"No handler registered for '{node.type}'")

        timeout = getattr(node.params, "timeout", None) or self.default_timeout
        try:
            outcome = await asyncio.wait_for(handler(node.params, context), timeout=timeout)
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            logger.warning("Action timed out", node_id=node.id, type=node.type, timeout=timeout)
            return ActionOutcome.error(f"Action timed out after {timeout:g}s")
        except ActionError as e:
            logger.warning("Action failed", node_id=node.id, type=node.type, error=str(e))
            return ActionOutcome.error(str(e))
        except Exception as e:
            logger.error("Action handler error", node_id=node.id, type=node.type, error=str(e))
            return ActionOutcome.error(f"{type(e).__name__}: {e}")

        if not isinstance(outcome, ActionOutcome):
            return ActionOutcome.error(f"Handler for '{node.type}' returned {type(outcome).__name__}")
        return outcome

    def _wait(self, params) -> ActionOutcome:
        return ActionOutcome.success(
            f"Waiting {params.wait_value} {params.wait_unit}",
            resume_after=params.delay,
        )

    def _loop_until(self, node, context: ExecutionContext) -> ActionOutcome:
        params = node.params
        count = context.loop_counters.get(node.id, 0)

        if self.evaluator.stop_condition_met(params.stop_condition, context):
            return ActionOutcome.success(
                f"Loop finished after {count} iterations",
                branch=BRANCH_DONE,
            )

        if count >= params.max_iterations:
            raise LoopLimitExceeded(node.id, params.max_iterations)

        return ActionOutcome.success(
            f"Iteration {count + 1} of {params.max_iterations}",
            branch=BRANCH_LOOP,
            loop_iteration=count + 1,
        )
