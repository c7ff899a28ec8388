"""Playbook engine error taxonomy."""

from typing import Iterable, List


class PlaybookError(Exception):
    """Base class for all playbook engine errors."""


class ValidationError(PlaybookError):
    """Node config or graph structure failed validation.

    Carries every problem found so authoring tools can show them at once.
    """

    def __init__(self, errors: Iterable[str]):
        self.errors: List[str] = list(errors)
        super().__init__("; ".join(self.errors) or "validation failed")


class NodeTypeNotFound(PlaybookError, LookupError):
    """No NodeTypeSpec registered for a (kind, type) pair."""

    def __init__(self, kind: str, node_type: str):
        self.kind = kind
        self.node_type = node_type
        super().__init__(f"unknown node type {kind}/{node_type}")


class EvaluationError(PlaybookError):
    """A condition could not be evaluated. Fatal for the current run."""


class ActionError(PlaybookError):
    """An action handler reported a failure or timed out."""


class LoopLimitExceeded(PlaybookError):
    """A loop_until node reached max_iterations without its stop condition."""

    def __init__(self, node_id: str, max_iterations: int):
        self.node_id = node_id
        self.max_iterations = max_iterations
        super().__init__(
            f"loop {node_id} exceeded max_iterations={max_iterations} "
            f"without meeting its stop condition"
        )


class RunStopped(PlaybookError):
    """Raised by stop_if to end the run with status stopped."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class RunRejected(PlaybookError):
    """A run was refused at admission; nothing was executed."""

    def __init__(self, reason: str, playbook_id: str = "", entity_key: str = ""):
        self.reason = reason
        self.playbook_id = playbook_id
        self.entity_key = entity_key
        super().__init__(reason)
