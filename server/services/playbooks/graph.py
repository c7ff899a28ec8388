"""Playbook graph model.

The authoring surface mutates a ``Graph`` freely; the engine runs on an
immutable ``GraphSnapshot`` taken at run start, in which every node is
already bound to its typed params.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from constants import (
    BRANCH_LOOP, KIND_TRIGGER, NODE_BRANCHES, NODE_KINDS, REQUIRED_BRANCHES,
    START_NODE_ID, kind_of,
)
from core.logging import get_logger
from services.playbooks.errors import ValidationError

logger = get_logger(__name__)


@dataclass(frozen=True)
class Node:
    id: str
    kind: str
    type: str
    label: str = ""
    config: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "type": self.type,
            "label": self.label,
            "config": dict(self.config),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Node":
        node_type = data.get("type", "")
        return cls(
            id=str(data["id"]),
            kind=data.get("kind") or kind_of(node_type),
            type=node_type,
            label=data.get("label", ""),
            config=dict(data.get("config") or {}),
        )


@dataclass(frozen=True)
class Edge:
    source: str
    target: str
    branch: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = {"source": self.source, "target": self.target}
        if self.branch is not None:
            d["branch"] = self.branch
        return d

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Edge":
        return cls(source=str(data["source"]), target=str(data["target"]),
                   branch=data.get("branch") or None)


def _edge_name(edge: Edge) -> str:
    branch = f" [{edge.branch}]" if edge.branch else ""
    return f"edge {edge.source} -> {edge.target}{branch}"


class Graph:
    """Mutable node and edge set of one playbook.

    Nodes keep insertion order and edges keep authoring order; successors
    are returned in edge order, which is the order fan-out paths run in.
    """

    def __init__(self, nodes: Optional[Iterable[Node]] = None,
                 edges: Optional[Iterable[Edge]] = None):
        self.nodes: Dict[str, Node] = {}
        self.edges: List[Edge] = []
        for node in nodes or ():
            if node.id in self.nodes:
                raise ValidationError([f"duplicate node id '{node.id}'"])
            self.nodes[node.id] = node
        self.edges.extend(edges or ())

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def triggers(self) -> List[Node]:
        return [n for n in self.nodes.values() if n.kind == KIND_TRIGGER]

    @property
    def trigger(self) -> Optional[Node]:
        triggers = self.triggers
        return triggers[0] if len(triggers) == 1 else None

    def outgoing(self, node_id: str) -> List[Edge]:
        return [e for e in self.edges if e.source == node_id]

    def successors(self, node_id: str, branch: Optional[str] = None) -> List[Node]:
        """Resolve outgoing edges to nodes, in edge order.

        When branch is given only edges carrying that label are followed;
        otherwise only unlabeled edges.
        """
        return [
            self.nodes[e.target]
            for e in self.edges
            if e.source == node_id and e.branch == branch and e.target in self.nodes
        ]

    def reachable(self) -> Set[str]:
        trigger = self.trigger
        if trigger is None:
            return set()
        seen = {trigger.id}
        stack = [trigger.id]
        while stack:
            current = stack.pop()
            for edge in self.outgoing(current):
                if edge.target in self.nodes and edge.target not in seen:
                    seen.add(edge.target)
                    stack.append(edge.target)
        return seen

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate(self, registry=None, allow_drafts: bool = False) -> List[str]:
        """Check structural invariants (and node configs when a registry is given).

        Args:
            registry: NodeTypeRegistry used to validate every node config
            allow_drafts: Accept nodes not reachable from the trigger

        Returns:
            List of error messages (empty if the graph is valid)
        """
        errors: List[str] = []

        triggers = self.triggers
        if not triggers:
            errors.append("graph has no trigger node")
        elif len(triggers) > 1:
            errors.append(
                f"graph has {len(triggers)} trigger nodes ({', '.join(n.id for n in triggers)}); "
                f"exactly one is required"
            )

        for node in self.nodes.values():
            if node.kind not in NODE_KINDS:
                errors.append(f"node '{node.id}': unknown kind '{node.kind}'")
            elif kind_of(node.type) and kind_of(node.type) != node.kind:
                errors.append(
                    f"node '{node.id}': type '{node.type}' is a {kind_of(node.type)}, not a {node.kind}"
                )

        errors.extend(self._edge_errors())

        reachable = self.reachable()
        checked = self.nodes.keys()
        if allow_drafts:
            checked = [node_id for node_id in self.nodes if node_id in reachable]
        elif len(triggers) == 1:
            for node_id in self.nodes:
                if node_id not in reachable:
                    errors.append(f"node '{node_id}' is not reachable from the trigger")

        for node_id in checked:
            node = self.nodes[node_id]
            produced = {e.branch for e in self.outgoing(node_id)}
            for branch in REQUIRED_BRANCHES.get(node.type, ()):
                if branch not in produced:
                    errors.append(
                        f"{node.kind} '{node_id}' ({node.type}) is missing an outbound '{branch}' edge"
                    )
            if node.type == "loop_until":
                bound = node.config.get("max_iterations")
                if isinstance(bound, bool) or not isinstance(bound, int) or bound < 1:
                    errors.append(f"loop_until '{node_id}' must have a finite positive max_iterations")

        cycle = self._unguarded_cycle()
        if cycle:
            errors.append(
                f"cycle {' -> '.join(cycle)} does not re-enter through a loop_until '{BRANCH_LOOP}' branch"
            )

        if registry is not None:
            for node_id in checked:
                errors.extend(registry.validate(self.nodes[node_id]))

        return errors

    def _edge_errors(self) -> List[str]:
        errors = []
        seen: Set[Tuple[str, str, Optional[str]]] = set()
        for edge in self.edges:
            name = _edge_name(edge)
            source = self.nodes.get(edge.source)
            if source is None:
                errors.append(f"{name}: unknown source node '{edge.source}'")
            if edge.target not in self.nodes:
                errors.append(f"{name}: unknown target node '{edge.target}'")
            elif self.nodes[edge.target].kind == KIND_TRIGGER:
                errors.append(f"{name}: the trigger node cannot have inbound edges")
            if source is not None:
                branch_error = _branch_error(source, edge.branch)
                if branch_error:
                    errors.append(f"{name}: {branch_error}")
            key = (edge.source, edge.target, edge.branch)
            if key in seen:
                errors.append(f"{name}: duplicate edge")
            seen.add(key)
        return errors

    def _unguarded_cycle(self) -> Optional[List[str]]:
        """Find a cycle that does not pass through a loop_until 'loop' edge.

        Removing every loop-branch edge of loop_until nodes must leave the
        graph acyclic. Returns the node ids of one offending cycle, or None.
        """
        adjacency: Dict[str, List[str]] = {node_id: [] for node_id in self.nodes}
        for edge in self.edges:
            if edge.source not in self.nodes or edge.target not in self.nodes:
                continue
            if self.nodes[edge.source].type == "loop_until" and edge.branch == BRANCH_LOOP:
                continue
            adjacency[edge.source].append(edge.target)

        WHITE, GREY, BLACK = 0, 1, 2
        color = {node_id: WHITE for node_id in self.nodes}
        for root in self.nodes:
            if color[root] != WHITE:
                continue
            path = [root]
            iterators = [iter(adjacency[root])]
            color[root] = GREY
            while iterators:
                nxt = next(iterators[-1], None)
                if nxt is None:
                    color[path.pop()] = BLACK
                    iterators.pop()
                elif color[nxt] == GREY:
                    return path[path.index(nxt):] + [nxt]
                elif color[nxt] == WHITE:
                    color[nxt] = GREY
                    path.append(nxt)
                    iterators.append(iter(adjacency[nxt]))
        return None

    # -------------------------------------------------------------------------
    # Authoring mutations
    # -------------------------------------------------------------------------
    # Each mutation raises ValidationError for changes that can never be
    # valid and returns the outstanding (draft) issues of the whole graph.

    def add_node(self, node: Node) -> List[str]:
        errors = []
        if node.id in self.nodes:
            errors.append(f"duplicate node id '{node.id}'")
        if node.kind not in NODE_KINDS:
            errors.append(f"node '{node.id}': unknown kind '{node.kind}'")
        elif kind_of(node.type) != node.kind:
            errors.append(f"node '{node.id}': unknown {node.kind} type '{node.type}'")
        if node.kind == KIND_TRIGGER and self.triggers:
            errors.append(f"graph already has a trigger node ('{self.triggers[0].id}')")
        if errors:
            raise ValidationError(errors)

        self.nodes[node.id] = node
        return self.validate(allow_drafts=True)

    def remove_node(self, node_id: str) -> List[str]:
        node = self._require(node_id)
        if node.kind == KIND_TRIGGER:
            raise ValidationError([f"cannot remove the trigger node '{node_id}'"])

        del self.nodes[node_id]
        self.edges = [e for e in self.edges if node_id not in (e.source, e.target)]
        return self.validate(allow_drafts=True)

    def update_node_config(self, node_id: str, config: Mapping[str, Any],
                           label: Optional[str] = None) -> List[str]:
        node = self._require(node_id)
        self.nodes[node_id] = Node(
            id=node.id,
            kind=node.kind,
            type=node.type,
            label=node.label if label is None else label,
            config=dict(config),
        )
        return self.validate(allow_drafts=True)

    def connect(self, source: str, target: str, branch: Optional[str] = None) -> List[str]:
        source_node = self._require(source)
        target_node = self._require(target)
        errors = []
        branch_error = _branch_error(source_node, branch)
        if branch_error:
            errors.append(f"{_edge_name(Edge(source, target, branch))}: {branch_error}")
        if target_node.kind == KIND_TRIGGER:
            errors.append("the trigger node cannot have inbound edges")
        if Edge(source, target, branch) in self.edges:
            errors.append(f"{_edge_name(Edge(source, target, branch))}: duplicate edge")
        if errors:
            raise ValidationError(errors)

        self.edges.append(Edge(source, target, branch))
        return self.validate(allow_drafts=True)

    def disconnect(self, source: str, target: str, branch: Optional[str] = None) -> List[str]:
        self.edges = [e for e in self.edges if e != Edge(source, target, branch)]
        return self.validate(allow_drafts=True)

    def _require(self, node_id: str) -> Node:
        node = self.nodes.get(node_id)
        if node is None:
            raise ValidationError([f"unknown node '{node_id}'"])
        return node

    # -------------------------------------------------------------------------
    # Snapshot / serialization
    # -------------------------------------------------------------------------

    def snapshot(self, registry) -> "GraphSnapshot":
        """Bind every reachable node against the registry.

        Raises:
            ValidationError: Structural or config errors
        """
        errors = self.validate(registry=registry)
        if errors:
            raise ValidationError(errors)

        reachable = self.reachable()
        bound = {node_id: registry.bind(node) for node_id, node in self.nodes.items()
                 if node_id in reachable}
        return GraphSnapshot(
            trigger_id=self.trigger.id,
            nodes=bound,
            edges=tuple(e for e in self.edges if e.source in bound and e.target in bound),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": [n.to_dict() for n in self.nodes.values()],
            "edges": [e.to_dict() for e in self.edges],
        }

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "Graph":
        data = data or {}
        return cls(
            nodes=[Node.from_dict(n) for n in data.get("nodes") or []],
            edges=[Edge.from_dict(e) for e in data.get("edges") or []],
        )


def _branch_error(source: Node, branch: Optional[str]) -> Optional[str]:
    allowed = NODE_BRANCHES.get(source.type)
    if allowed:
        if branch not in allowed:
            return f"branch {branch!r} is not valid for {source.type} (expected one of {', '.join(allowed)})"
    elif branch is not None:
        return f"{source.type} node does not produce branch {branch!r}"
    return None


@dataclass(frozen=True)
class GraphSnapshot:
    """Immutable, validated view of a graph used by one or many runs."""
    trigger_id: str
    nodes: Dict[str, Any]          # node id -> BoundNode
    edges: Tuple[Edge, ...]

    def node(self, node_id: str):
        return self.nodes[node_id]

    def successors(self, node_id: str, branch: Optional[str] = None) -> List[Any]:
        return [self.nodes[e.target] for e in self.edges
                if e.source == node_id and e.branch == branch]


# =============================================================================
# PLAYBOOK AGGREGATE
# =============================================================================

def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Playbook:
    """A named automation owning exactly one graph."""
    id: str
    name: str
    description: str = ""
    trigger_type: str = "manual"
    trigger_config: Dict[str, Any] = field(default_factory=dict)
    graph: Graph = field(default_factory=Graph)
    is_active: bool = False
    usage_count: int = 0
    success_rate: float = 0.0
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    @classmethod
    def create(cls, name: str, description: str = "", trigger_type: str = "manual",
               trigger_config: Optional[Dict[str, Any]] = None,
               playbook_id: Optional[str] = None) -> "Playbook":
        trigger = Node(
            id=START_NODE_ID,
            kind=KIND_TRIGGER,
            type=trigger_type,
            label=trigger_type.replace("_", " ").capitalize(),
            config=dict(trigger_config or {}),
        )
        return cls(
            id=playbook_id or str(uuid.uuid4()),
            name=name,
            description=description,
            trigger_type=trigger_type,
            trigger_config=dict(trigger_config or {}),
            graph=Graph(nodes=[trigger]),
        )

    def sync_trigger(self) -> None:
        """Re-derive the denormalized trigger fields from the trigger node."""
        trigger = self.graph.trigger
        if trigger is not None:
            self.trigger_type = trigger.type
            self.trigger_config = dict(trigger.config)
        self.updated_at = _now()

    # Authoring mutations delegate to the graph and keep the trigger fields in sync

    def add_node(self, node: Node) -> List[str]:
        issues = self.graph.add_node(node)
        self.sync_trigger()
        return issues

    def remove_node(self, node_id: str) -> List[str]:
        issues = self.graph.remove_node(node_id)
        self.sync_trigger()
        return issues

    def update_node_config(self, node_id: str, config: Mapping[str, Any],
                           label: Optional[str] = None) -> List[str]:
        issues = self.graph.update_node_config(node_id, config, label=label)
        self.sync_trigger()
        return issues

    def connect(self, source: str, target: str, branch: Optional[str] = None) -> List[str]:
        issues = self.graph.connect(source, target, branch)
        self.sync_trigger()
        return issues

    def validate(self, registry) -> List[str]:
        return self.graph.validate(registry=registry)

    def activate(self, registry) -> None:
        """Mark the playbook live.

        Raises:
            ValidationError: Listing every structural and config problem
        """
        errors = self.validate(registry)
        if errors:
            logger.info("Playbook activation rejected", playbook_id=self.id, errors=len(errors))
            raise ValidationError(errors)
        self.sync_trigger()
        self.is_active = True
        logger.info("Playbook activated", playbook_id=self.id, trigger_type=self.trigger_type)

    def deactivate(self) -> None:
        self.is_active = False
        self.updated_at = _now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "trigger_type": self.trigger_type,
            "trigger_config": dict(self.trigger_config),
            "graph": self.graph.to_dict(),
            "is_active": self.is_active,
            "usage_count": self.usage_count,
            "success_rate": self.success_rate,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Playbook":
        playbook = cls(
            id=str(data.get("id") or uuid.uuid4()),
            name=data["name"],
            description=data.get("description") or "",
            trigger_type=data.get("trigger_type") or "manual",
            trigger_config=dict(data.get("trigger_config") or {}),
            graph=Graph.from_dict(data.get("graph")),
            is_active=bool(data.get("is_active", False)),
            usage_count=int(data.get("usage_count") or 0),
            success_rate=float(data.get("success_rate") or 0.0),
        )
        if playbook.graph.trigger is None and not playbook.graph.nodes:
            playbook.graph.nodes[START_NODE_ID] = Node(
                id=START_NODE_ID, kind=KIND_TRIGGER, type=playbook.trigger_type,
                config=dict(playbook.trigger_config),
            )
        return playbook
