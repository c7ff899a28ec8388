"""Dry-run execution of a playbook graph.

Uses the same validation, runner, evaluator and dispatcher semantics as a
real run; only the action handlers are replaced by stand-ins that report
what would have happened. Waits do not suspend. Nothing is persisted and
no admission slot is taken.
"""

import random
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Dict, List, Optional, Union

from constants import ACTION_TYPES, BUILTIN_ACTION_TYPES
from core.logging import get_logger
from services.handlers.crm import context_patch_for
from services.playbooks.conditions import ConditionEvaluator
from services.playbooks.dispatcher import ActionDispatcher
from services.playbooks.graph import Graph, Playbook
from services.playbooks.models import (
    ActionOutcome, Cursor, ExecutionContext, ExecutionLogEntry, RunStatus,
)
from services.playbooks.registry import NodeTypeRegistry
from services.playbooks.runner import PlaybookRunner

logger = get_logger(__name__)

FAILURE_MESSAGE = "Error executing action"
DEFAULT_MESSAGE = "Action executed"

SIMULATED_MESSAGES: Dict[str, str] = {
    "send_whatsapp": "Message sent successfully",
    "send_email": "Email sent successfully",
    "create_task": "Task created",
    "move_stage": "Deal moved to new stage",
    "call_webhook": "Webhook called successfully",
    "send_to_n8n": "Sent to n8n",
}


@dataclass
class SimulationResult:
    status: RunStatus
    log: List[ExecutionLogEntry] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def visited(self) -> List[str]:
        return [entry.node_id for entry in self.log]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "log": [entry.to_dict() for entry in self.log],
            "visited": self.visited,
            "error": self.error,
        }


async def _simulated_action(params, context: ExecutionContext, *,
                            rng: random.Random, failure_rate: float) -> ActionOutcome:
    if failure_rate > 0 and rng.random() < failure_rate:
        return ActionOutcome.error(FAILURE_MESSAGE)
    return ActionOutcome.success(
        SIMULATED_MESSAGES.get(params.type, DEFAULT_MESSAGE),
        context_patch_for(params.type, params, context),
    )


class Simulator:
    """Runs a graph against sample data without side effects."""

    def __init__(self, registry: NodeTypeRegistry, evaluator: ConditionEvaluator,
                 dispatcher: ActionDispatcher, failure_rate: float = 0.0):
        self.registry = registry
        self.evaluator = evaluator
        self.dispatcher = dispatcher
        self.failure_rate = failure_rate

    async def simulate(self, playbook_or_graph: Union[Playbook, Graph],
                       context: Union[ExecutionContext, Dict[str, Any], None] = None,
                       failure_rate: Optional[float] = None,
                       rng: Optional[random.Random] = None) -> SimulationResult:
        """Simulate one run.

        Args:
            playbook_or_graph: Playbook (active or not) or bare graph
            context: Sample entity data
            failure_rate: Probability (0..1) that an action fails
            rng: Random source for injected failures

        Raises:
            ValidationError: The graph would be rejected by a real run too
        """
        graph = playbook_or_graph.graph if isinstance(playbook_or_graph, Playbook) else playbook_or_graph
        snapshot = graph.snapshot(self.registry)

        if not isinstance(context, ExecutionContext):
            context = ExecutionContext.from_dict(context)
        rate = self.failure_rate if failure_rate is None else failure_rate
        stand_in = partial(_simulated_action, rng=rng or random.Random(), failure_rate=rate)

        dispatcher = self.dispatcher.with_handlers(
            {action_type: stand_in for action_type in ACTION_TYPES - BUILTIN_ACTION_TYPES}
        )
        runner = PlaybookRunner(self.evaluator, dispatcher, suspend_waits=False)
        result = await runner.run(snapshot, [Cursor(snapshot.trigger_id, context)])

        error = result.error if result.status == RunStatus.FAILED else result.stop_reason
        logger.info("Simulation finished", status=result.status.value,
                    nodes=len(result.log), failure_rate=rate)
        return SimulationResult(status=result.status, log=result.log, error=error)
