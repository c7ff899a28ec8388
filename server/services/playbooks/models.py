"""Playbook run state models.

All models are JSON-serializable so a run can be persisted in the run
store and resumed by another process after a wait.
"""

import copy
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class RunStatus(str, Enum):
    """Run states.

    State transitions:
        PENDING -> RUNNING -> COMPLETED
                           -> STOPPED    (stop_if fired or cancelled)
                           -> FAILED     (evaluation/action error, loop limit)
                           -> SUSPENDED  (wait) -> RUNNING on resume
    """
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILED = "failed"
    SUSPENDED = "suspended"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.STOPPED, RunStatus.FAILED)


class LogStatus(str, Enum):
    """Per-node status as shown in the execution log."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class _Missing:
    """Marker for a context field that cannot be resolved."""

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()


def get_nested_value(data: Any, field_path: str) -> Any:
    """Get a nested value using dot notation.

    Args:
        data: Dict (or list) to extract value from
        field_path: Dot-separated path (e.g., "deal.value", "tags.0")

    Returns:
        Value at path or None if not found

    Examples:
        >>> get_nested_value({"deal": {"value": 10}}, "deal.value")
        10
        >>> get_nested_value({"tags": ["vip"]}, "tags.0")
        'vip'
    """
    if data is None or not field_path:
        return None

    current = data
    for part in field_path.split('.'):
        if current is None:
            return None
        if part.isdigit() and isinstance(current, (list, tuple)):
            index = int(part)
            current = current[index] if index < len(current) else None
        elif isinstance(current, dict):
            current = current.get(part)
        else:
            return None

    return current


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# EXECUTION CONTEXT
# =============================================================================

_ENTITY_MAPS = ("contact", "deal", "conversation", "variables")
_ROOTS = _ENTITY_MAPS + ("trigger",)


@dataclass(frozen=True)
class ExecutionContext:
    """Read-only snapshot handed to one run.

    Never mutated in place: ``with_patch`` and friends return a copy, so
    each path of a fan-out carries its own context.
    """
    contact: Dict[str, Any] = field(default_factory=dict)
    deal: Dict[str, Any] = field(default_factory=dict)
    conversation: Dict[str, Any] = field(default_factory=dict)
    variables: Dict[str, Any] = field(default_factory=dict)
    trigger: Dict[str, Any] = field(default_factory=dict)
    loop_counters: Dict[str, int] = field(default_factory=dict)

    @property
    def contact_id(self) -> Optional[str]:
        return _as_id(self.contact.get("id"))

    @property
    def deal_id(self) -> Optional[str]:
        return _as_id(self.deal.get("id"))

    @property
    def conversation_id(self) -> Optional[str]:
        return _as_id(self.conversation.get("id"))

    @property
    def entity_key(self) -> str:
        """Key of the triggering entity, used for run admission."""
        if self.deal_id:
            return f"deal:{self.deal_id}"
        if self.conversation_id:
            return f"conversation:{self.conversation_id}"
        if self.contact_id:
            return f"contact:{self.contact_id}"
        return "playbook"

    def lookup(self, field_path: str) -> Any:
        """Resolve a condition field against the context.

        Dotted paths whose first part is contact/deal/conversation/variables/
        trigger are resolved inside that map; bare names are searched in
        variables, contact, deal, conversation, then trigger metadata.

        Returns:
            The value, or MISSING when absent or None
        """
        if not field_path:
            return MISSING

        root, _, rest = field_path.partition(".")
        if rest and root in _ROOTS:
            value = get_nested_value(getattr(self, root), rest)
        elif rest:
            value = get_nested_value(self.variables, field_path)
        else:
            value = self._lookup_name(field_path)

        return MISSING if value is None else value

    def _lookup_name(self, name: str) -> Any:
        for source in (self.variables, self.contact, self.deal, self.conversation, self.trigger):
            if source.get(name) is not None:
                return source[name]

        # Derived fields
        if name == "has_deal":
            return bool(self.deal)
        if name == "message_count" and isinstance(self.conversation.get("messages"), list):
            return len(self.conversation["messages"])
        return None

    def with_patch(self, patch: Optional[Dict[str, Any]]) -> "ExecutionContext":
        """Return a copy with an action's context patch merged in."""
        if not patch:
            return self
        maps = {name: dict(getattr(self, name)) for name in _ENTITY_MAPS}
        for key, value in patch.items():
            if key in maps and isinstance(value, dict):
                maps[key].update(copy.deepcopy(value))
            else:
                maps["variables"][key] = copy.deepcopy(value)
        return replace(self, **maps)

    def with_trigger(self, trigger: Optional[Dict[str, Any]]) -> "ExecutionContext":
        if not trigger:
            return self
        return replace(self, trigger={**self.trigger, **copy.deepcopy(trigger)})

    def with_loop_counter(self, node_id: str, count: Optional[int]) -> "ExecutionContext":
        """Set (or clear with None) the iteration counter of a loop node."""
        counters = dict(self.loop_counters)
        if count is None:
            counters.pop(node_id, None)
        else:
            counters[node_id] = count
        return replace(self, loop_counters=counters)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contact": copy.deepcopy(self.contact),
            "deal": copy.deepcopy(self.deal),
            "conversation": copy.deepcopy(self.conversation),
            "variables": copy.deepcopy(self.variables),
            "trigger": copy.deepcopy(self.trigger),
            "loop_counters": dict(self.loop_counters),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ExecutionContext":
        data = data or {}
        return cls(
            contact=copy.deepcopy(data.get("contact") or {}),
            deal=copy.deepcopy(data.get("deal") or {}),
            conversation=copy.deepcopy(data.get("conversation") or {}),
            variables=copy.deepcopy(data.get("variables") or {}),
            trigger=copy.deepcopy(data.get("trigger") or {}),
            loop_counters={k: int(v) for k, v in (data.get("loop_counters") or {}).items()},
        )


def _as_id(value: Any) -> Optional[str]:
    return str(value) if value not in (None, "") else None


# =============================================================================
# LOG AND OUTCOMES
# =============================================================================

@dataclass
class ExecutionLogEntry:
    """One visited node (or one loop iteration) in a run's audit log."""
    node_id: str
    status: LogStatus
    message: str = ""
    timestamp: str = field(default_factory=utc_now_iso)
    node_type: str = ""
    branch: Optional[str] = None
    iteration: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "node_id": self.node_id,
            "status": self.status.value,
            "message": self.message,
            "timestamp": self.timestamp,
            "node_type": self.node_type,
        }
        if self.branch is not None:
            d["branch"] = self.branch
        if self.iteration is not None:
            d["iteration"] = self.iteration
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionLogEntry":
        return cls(
            node_id=data["node_id"],
            status=LogStatus(data.get("status", "pending")),
            message=data.get("message", ""),
            timestamp=data.get("timestamp") or utc_now_iso(),
            node_type=data.get("node_type", ""),
            branch=data.get("branch"),
            iteration=data.get("iteration"),
        )


@dataclass
class ActionOutcome:
    """Result of dispatching one action node."""
    status: str
    message: str = ""
    context_patch: Dict[str, Any] = field(default_factory=dict)
    branch: Optional[str] = None                # loop_until: loop / done
    resume_after: Optional[timedelta] = None    # wait: suspend this path
    loop_iteration: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.status == "success"

    @classmethod
    def success(cls, message: str, context_patch: Optional[Dict[str, Any]] = None,
                **kwargs) -> "ActionOutcome":
        return cls("success", message, context_patch or {}, **kwargs)

    @classmethod
    def error(cls, message: str) -> "ActionOutcome":
        return cls("error", message)


# =============================================================================
# RUN STATE
# =============================================================================

@dataclass
class Cursor:
    """A position in the graph for one path of a run.

    ``completed`` means the node itself already ran (a wait that has been
    suspended) and traversal continues with its successors.
    """
    node_id: str
    context: ExecutionContext
    completed: bool = False
    resume_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "context": self.context.to_dict(),
            "completed": self.completed,
            "resume_at": self.resume_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Cursor":
        return cls(
            node_id=data["node_id"],
            context=ExecutionContext.from_dict(data.get("context")),
            completed=bool(data.get("completed", False)),
            resume_at=data.get("resume_at"),
        )


@dataclass
class RunResult:
    """What a caller gets back from starting or resuming a run."""
    execution_id: str
    playbook_id: str
    status: RunStatus
    log: List[ExecutionLogEntry] = field(default_factory=list)
    error: Optional[str] = None
    resume_at: Optional[float] = None

    @property
    def succeeded(self) -> bool:
        return self.status in (RunStatus.COMPLETED, RunStatus.STOPPED)

    @property
    def visited(self) -> List[str]:
        return [entry.node_id for entry in self.log]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "playbook_id": self.playbook_id,
            "status": self.status.value,
            "log": [entry.to_dict() for entry in self.log],
            "error": self.error,
            "resume_at": self.resume_at,
        }


@dataclass
class RunState:
    """Durable state of one run, persisted across suspensions."""
    execution_id: str
    playbook_id: str
    entity_key: str
    status: RunStatus = RunStatus.PENDING
    triggered_by: str = "event"
    trigger_config: Dict[str, Any] = field(default_factory=dict)
    contact_id: Optional[str] = None
    deal_id: Optional[str] = None
    conversation_id: Optional[str] = None
    log: List[ExecutionLogEntry] = field(default_factory=list)
    suspended: List[Cursor] = field(default_factory=list)
    current_step: Optional[str] = None
    error: Optional[str] = None
    graph: Dict[str, Any] = field(default_factory=dict)     # snapshot taken at run start
    started_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None
    updated_at: float = field(default_factory=time.time)

    @classmethod
    def create(cls, playbook_id: str, context: ExecutionContext,
               triggered_by: str = "event",
               trigger_config: Optional[Dict[str, Any]] = None) -> "RunState":
        return cls(
            execution_id=str(uuid.uuid4()),
            playbook_id=playbook_id,
            entity_key=context.entity_key,
            triggered_by=triggered_by,
            trigger_config=dict(trigger_config or {}),
            contact_id=context.contact_id,
            deal_id=context.deal_id,
            conversation_id=context.conversation_id,
        )

    @property
    def resume_at(self) -> Optional[float]:
        times = [c.resume_at for c in self.suspended if c.resume_at is not None]
        return min(times) if times else None

    def finish(self, status: RunStatus, error: Optional[str] = None) -> None:
        self.status = status
        self.error = error
        self.updated_at = time.time()
        if status.is_terminal:
            self.suspended = []
            self.completed_at = self.updated_at

    def result(self) -> RunResult:
        return RunResult(
            execution_id=self.execution_id,
            playbook_id=self.playbook_id,
            status=self.status,
            log=list(self.log),
            error=self.error,
            resume_at=self.resume_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "playbook_id": self.playbook_id,
            "entity_key": self.entity_key,
            "status": self.status.value,
            "triggered_by": self.triggered_by,
            "trigger_config": self.trigger_config,
            "contact_id": self.contact_id,
            "deal_id": self.deal_id,
            "conversation_id": self.conversation_id,
            "log": [entry.to_dict() for entry in self.log],
            "suspended": [cursor.to_dict() for cursor in self.suspended],
            "current_step": self.current_step,
            "error": self.error,
            "graph": self.graph,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunState":
        return cls(
            execution_id=data["execution_id"],
            playbook_id=data["playbook_id"],
            entity_key=data.get("entity_key", "playbook"),
            status=RunStatus(data.get("status", "pending")),
            triggered_by=data.get("triggered_by", "event"),
            trigger_config=data.get("trigger_config") or {},
            contact_id=data.get("contact_id"),
            deal_id=data.get("deal_id"),
            conversation_id=data.get("conversation_id"),
            log=[ExecutionLogEntry.from_dict(e) for e in data.get("log") or []],
            suspended=[Cursor.from_dict(c) for c in data.get("suspended") or []],
            current_step=data.get("current_step"),
            error=data.get("error"),
            graph=data.get("graph") or {},
            started_at=float(data.get("started_at") or time.time()),
            completed_at=float(data["completed_at"]) if data.get("completed_at") is not None else None,
            updated_at=float(data.get("updated_at") or time.time()),
        )

