"""Node type registry.

Maps a ``(kind, type)`` pair to its configuration schema (a pydantic
params model from ``models.nodes``) and validates node configs against it.
Resolving a node here once at snapshot time means run-time dispatch
never meets an unknown type.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, Tuple, Type, Union, get_args, get_origin

from pydantic import ValidationError as PydanticValidationError

from constants import NODE_BRANCHES, REQUIRED_BRANCHES, kind_of
from models.nodes import PARAMS_BY_TYPE, BaseNodeParams, validate_node_params
from services.playbooks.conditions import parse_expression
from services.playbooks.errors import EvaluationError, NodeTypeNotFound, ValidationError


def _type_name(annotation: Any) -> str:
    """Human readable semantic type of a params field."""
    origin = get_origin(annotation)
    if origin is Literal:
        return "enum"
    if origin in (list, List):
        return "list"
    if origin is Union:
        args = [a for a in get_args(annotation) if a is not type(None)]
        if len(args) == 1:
            return _type_name(args[0])
        return "scalar"
    name = getattr(annotation, "__name__", None) or getattr(origin, "__name__", None)
    return {"str": "string", "int": "integer", "float": "number", "bool": "boolean",
            "Any": "any"}.get(name, (name or str(annotation)).lower())


@dataclass(frozen=True)
class FieldSpec:
    name: str
    type: str
    required: bool
    default: Any = None
    choices: Optional[Tuple[Any, ...]] = None

    def to_dict(self) -> Dict[str, Any]:
        d = {"name": self.name, "type": self.type, "required": self.required}
        if not self.required and self.default is not None:
            d["default"] = self.default if isinstance(self.default, (str, int, float, bool, list)) else str(self.default)
        if self.choices:
            d["choices"] = list(self.choices)
        return d


@dataclass(frozen=True)
class NodeTypeSpec:
    """Configuration contract of one (kind, type) pair."""
    kind: str
    type: str
    label: str
    params_model: Type[BaseNodeParams]
    branches: Tuple[str, ...] = ()
    required_branches: Tuple[str, ...] = ()

    @property
    def fields(self) -> List[FieldSpec]:
        specs = []
        for name, info in self.params_model.model_fields.items():
            if name == "type":
                continue
            choices = get_args(info.annotation) if get_origin(info.annotation) is Literal else None
            default = None if info.is_required() else info.get_default(call_default_factory=True)
            specs.append(FieldSpec(
                name=name,
                type=_type_name(info.annotation),
                required=info.is_required(),
                default=default,
                choices=choices,
            ))
        return specs

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "type": self.type,
            "label": self.label,
            "branches": list(self.branches),
            "required_branches": list(self.required_branches),
            "fields": [f.to_dict() for f in self.fields],
        }


@dataclass(frozen=True)
class BoundNode:
    """A node resolved against the registry: typed params instead of a raw map."""
    id: str
    kind: str
    type: str
    label: str
    params: BaseNodeParams


def _format_error(node_type: str, err: Dict[str, Any]) -> str:
    loc = [str(part) for part in err.get("loc", ())]
    # Discriminated unions prefix the location with the tag
    if loc and loc[0] == node_type:
        loc = loc[1:]
    message = err.get("msg", "invalid value")
    return f"{'.'.join(loc)}: {message}" if loc else message


class NodeTypeRegistry:
    """Static catalog of every supported node type."""

    def __init__(self, max_loop_iterations: int = 1000):
        self.max_loop_iterations = max_loop_iterations
        self._specs: Dict[Tuple[str, str], NodeTypeSpec] = {}
        for node_type, model in PARAMS_BY_TYPE.items():
            kind = kind_of(node_type)
            self._specs[(kind, node_type)] = NodeTypeSpec(
                kind=kind,
                type=node_type,
                label=node_type.replace("_", " ").capitalize(),
                params_model=model,
                branches=NODE_BRANCHES.get(node_type, ()),
                required_branches=REQUIRED_BRANCHES.get(node_type, ()),
            )

    def spec_for(self, kind: str, node_type: str) -> NodeTypeSpec:
        """Look up a node type.

        Raises:
            NodeTypeNotFound: Unknown (kind, type) pair
        """
        spec = self._specs.get((kind, node_type))
        if spec is None:
            raise NodeTypeNotFound(kind, node_type)
        return spec

    def has(self, kind: str, node_type: str) -> bool:
        return (kind, node_type) in self._specs

    def specs(self, kind: Optional[str] = None) -> List[NodeTypeSpec]:
        return [s for s in self._specs.values() if kind is None or s.kind == kind]

    def parse(self, node) -> BaseNodeParams:
        """Decode a node's raw config into its typed params model.

        Raises:
            ValidationError: Unknown type or invalid config (every problem listed)
        """
        try:
            self.spec_for(node.kind, node.type)
        except NodeTypeNotFound as e:
            raise ValidationError([f"node '{node.id}': {e}"]) from e

        try:
            params = validate_node_params(node.type, node.config)
        except PydanticValidationError as e:
            raise ValidationError([
                f"node '{node.id}' ({node.type}): {_format_error(node.type, err)}"
                for err in e.errors()
            ]) from e

        errors = self._semantic_errors(node.id, params)
        if errors:
            raise ValidationError(errors)
        return params

    def validate(self, node) -> List[str]:
        """Validate one node's config. Returns a list of errors (empty if ok)."""
        try:
            self.parse(node)
        except ValidationError as e:
            return e.errors
        return []

    def bind(self, node) -> BoundNode:
        return BoundNode(
            id=node.id,
            kind=node.kind,
            type=node.type,
            label=node.label,
            params=self.parse(node),
        )

    def _semantic_errors(self, node_id: str, params: BaseNodeParams) -> List[str]:
        errors = []
        if params.type == "loop_until":
            if params.max_iterations > self.max_loop_iterations:
                errors.append(
                    f"node '{node_id}' (loop_until): max_iterations: must be at most "
                    f"{self.max_loop_iterations}"
                )
            try:
                parse_expression(params.stop_condition)
            except EvaluationError as e:
                errors.append(f"node '{node_id}' (loop_until): stop_condition: {e}")
        return errors

    def catalog(self) -> List[Dict[str, Any]]:
        return [spec.to_dict() for spec in sorted(self._specs.values(), key=lambda s: (s.kind, s.type))]


# =============================================================================
# MODULE-LEVEL DEFAULT
# =============================================================================

_registry: Optional[NodeTypeRegistry] = None


def get_registry() -> NodeTypeRegistry:
    global _registry
    if _registry is None:
        _registry = NodeTypeRegistry()
    return _registry


def spec_for(kind: str, node_type: str) -> NodeTypeSpec:
    return get_registry().spec_for(kind, node_type)


def validate_node(node) -> List[str]:
    return get_registry().validate(node)
