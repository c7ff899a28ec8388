"""Playbook engine - graph model, evaluation, execution and simulation.

Modules:
- registry.py: Node type catalog and per-node config validation
- graph.py: Graph, Playbook aggregate and immutable GraphSnapshot
- conditions.py: Condition evaluation (branch selection)
- dispatcher.py: Action dispatch with timeouts and built-in wait/loop
- runner.py: Concurrent traversal shared by engine and simulator
- engine.py: Run admission, persistence, suspension and cancellation
- cache.py: RunStore (Redis or in-memory run state, slots, locks)
- recovery.py: Resume scheduling and crash recovery
- triggers.py: Event matching and scheduled triggers
- simulator.py: Side-effect-free dry runs
"""

from services.playbooks.errors import (
    ActionError,
    EvaluationError,
    LoopLimitExceeded,
    NodeTypeNotFound,
    PlaybookError,
    RunRejected,
    RunStopped,
    ValidationError,
)
from services.playbooks.models import (
    ActionOutcome,
    Cursor,
    ExecutionContext,
    ExecutionLogEntry,
    LogStatus,
    RunResult,
    RunState,
    RunStatus,
)
from services.playbooks.registry import NodeTypeRegistry, NodeTypeSpec, get_registry
from services.playbooks.graph import Edge, Graph, GraphSnapshot, Node, Playbook
from services.playbooks.conditions import ConditionEvaluator
from services.playbooks.dispatcher import ActionDispatcher
from services.playbooks.runner import PlaybookRunner
from services.playbooks.cache import RunStore
from services.playbooks.engine import PlaybookEngine
from services.playbooks.recovery import (
    RecoverySweeper,
    ResumeScheduler,
    get_recovery_sweeper,
    set_recovery_sweeper,
)
from services.playbooks.triggers import TriggerEvent, TriggerManager, trigger_matches
from services.playbooks.simulator import SimulationResult, Simulator

__all__ = [
    # Errors
    "PlaybookError",
    "ValidationError",
    "NodeTypeNotFound",
    "EvaluationError",
    "ActionError",
    "LoopLimitExceeded",
    "RunStopped",
    "RunRejected",
    # Models
    "ActionOutcome",
    "Cursor",
    "ExecutionContext",
    "ExecutionLogEntry",
    "LogStatus",
    "RunResult",
    "RunState",
    "RunStatus",
    # Graph
    "Node",
    "Edge",
    "Graph",
    "GraphSnapshot",
    "Playbook",
    "NodeTypeRegistry",
    "NodeTypeSpec",
    "get_registry",
    # Execution
    "ConditionEvaluator",
    "ActionDispatcher",
    "PlaybookRunner",
    "PlaybookEngine",
    "RunStore",
    "ResumeScheduler",
    "RecoverySweeper",
    "get_recovery_sweeper",
    "set_recovery_sweeper",
    "TriggerEvent",
    "TriggerManager",
    "trigger_matches",
    "Simulator",
    "SimulationResult",
]
