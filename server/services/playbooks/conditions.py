"""Condition evaluation for playbook branching.

Evaluates condition nodes against an execution context to determine
which outbound branch the engine follows.

Supported condition types:
- if_then: one field/operator/value test -> yes/no
- advanced_condition: N predicates combined with AND/OR -> yes/no
- randomize: weighted random split -> A/B
- split: unconditional fan-out -> all unlabeled edges
- stop_if: named predicate; ends the run when true
- check_hours / check_assignment / check_label -> yes/no

Supported operators:
- equals / not_equals
- greater / less (numeric when both sides are numbers, else lexical)
- contains (substring for strings, membership for lists)

A field that cannot be resolved from the context makes its test false.
"""

import random
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
from zoneinfo import ZoneInfo

from constants import BRANCH_A, BRANCH_B, BRANCH_NO, BRANCH_YES, STOP_PREDICATES
from core.logging import get_logger
from services.playbooks.errors import EvaluationError, RunStopped
from services.playbooks.models import MISSING, ExecutionContext

logger = get_logger(__name__)


# =============================================================================
# OPERATORS
# =============================================================================

def _evaluate_operator(operator: str, actual: Any, target: Any) -> bool:
    """Evaluate a single operator.

    Raises:
        EvaluationError: If the operator is unknown
    """
    if operator == "equals":
        return _values_equal(actual, target)

    elif operator == "not_equals":
        return not _values_equal(actual, target)

    elif operator == "greater":
        return _safe_compare(actual, target, lambda a, b: a > b)

    elif operator == "less":
        return _safe_compare(actual, target, lambda a, b: a < b)

    elif operator == "greater_or_equal":
        return _safe_compare(actual, target, lambda a, b: a >= b)

    elif operator == "less_or_equal":
        return _safe_compare(actual, target, lambda a, b: a <= b)

    elif operator == "contains":
        if actual is None:
            return False
        if isinstance(actual, str):
            return str(target) in actual
        elif isinstance(actual, (list, tuple, set)):
            return target in actual or str(target) in {str(item) for item in actual}
        elif isinstance(actual, dict):
            return target in actual
        elif isinstance(actual, (int, float)):
            # e.g. phone numbers stored as integers
            return str(target) in str(actual)
        return False

    raise EvaluationError(f"unknown operator: {operator}")


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (ValueError, TypeError):
        return None


def _values_equal(actual: Any, target: Any) -> bool:
    if isinstance(actual, bool) or isinstance(target, bool):
        return str(actual).lower() == str(target).lower()

    a, b = _as_number(actual), _as_number(target)
    if a is not None and b is not None:
        return a == b
    return str(actual) == str(target)


def _safe_compare(actual: Any, target: Any, comparator) -> bool:
    """Compare numerically when both sides are numbers, else as strings.

    Returns:
        Comparison result, False if comparison impossible
    """
    if actual is None or target is None:
        return False

    a, b = _as_number(actual), _as_number(target)
    if a is not None and b is not None:
        return comparator(a, b)

    try:
        return comparator(str(actual), str(target))
    except (ValueError, TypeError):
        return False


# =============================================================================
# NAMED PREDICATES
# =============================================================================

def _status(entity: Dict[str, Any]) -> str:
    return str(entity.get("status") or "").lower()


def stop_predicate(name: str, context: ExecutionContext) -> bool:
    """Evaluate a named predicate (deal_lost, deal_won, ...) against the context."""
    if name == "deal_lost":
        return _status(context.deal) == "lost"
    if name == "deal_won":
        return _status(context.deal) == "won"
    if name == "contact_blocked":
        return bool(context.contact.get("blocked")) or _status(context.contact) == "blocked"
    if name == "unsubscribed":
        return bool(context.contact.get("unsubscribed") or context.contact.get("opt_out"))
    raise EvaluationError(f"unknown stop predicate: {name}")


# =============================================================================
# LOOP STOP EXPRESSIONS
# =============================================================================

_EXPRESSION_RE = re.compile(
    r"^\s*(?P<field>[A-Za-z_][\w.]*)\s*"
    r"(?P<op>>=|<=|==|!=|>|<|=|\bcontains\b)\s*"
    r"(?P<value>.+?)\s*$"
)

_SYMBOL_OPERATORS = {
    ">": "greater",
    "<": "less",
    ">=": "greater_or_equal",
    "<=": "less_or_equal",
    "==": "equals",
    "=": "equals",
    "!=": "not_equals",
    "contains": "contains",
}


@dataclass(frozen=True)
class Expression:
    """Parsed loop stop condition.

    operator is one of the comparison operators, "predicate" for a named
    stop predicate, or "truthy" for a bare field reference.
    """
    field: str
    operator: str
    value: Any = None


def _parse_literal(raw: str) -> Any:
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in ("'", '"'):
        return raw[1:-1]
    lowered = raw.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        return float(raw)
    except ValueError:
        return raw


def parse_expression(text: str) -> Expression:
    """Parse a stop condition such as ``message_count > 5`` or ``deal_won``.

    Raises:
        EvaluationError: If the text is not a supported expression
    """
    text = (text or "").strip()
    if not text:
        raise EvaluationError("empty stop condition")

    if text in STOP_PREDICATES:
        return Expression(field=text, operator="predicate")

    match = _EXPRESSION_RE.match(text)
    if match:
        return Expression(
            field=match.group("field"),
            operator=_SYMBOL_OPERATORS[match.group("op")],
            value=_parse_literal(match.group("value")),
        )

    if re.fullmatch(r"[A-Za-z_][\w.]*", text):
        return Expression(field=text, operator="truthy")

    raise EvaluationError(f"cannot parse stop condition: {text!r}")


def evaluate_expression(expression: Expression, context: ExecutionContext) -> bool:
    if expression.operator == "predicate":
        return stop_predicate(expression.field, context)

    actual = context.lookup(expression.field)
    if actual is MISSING:
        logger.info("Stop condition field missing, treating as false",
                    field=expression.field)
        return False
    if expression.operator == "truthy":
        return bool(actual)
    return _evaluate_operator(expression.operator, actual, expression.value)


# =============================================================================
# EVALUATOR
# =============================================================================

class ConditionEvaluator:
    """Picks the outbound branch of a condition node.

    Stateless apart from the injected random source and clock, so one
    instance is shared by every run (and by the simulator).
    """

    def __init__(self, rng: Optional[random.Random] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 timezone_name: str = "America/Sao_Paulo"):
        self.rng = rng or random.Random()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.timezone_name = timezone_name
        self._evaluators: Dict[str, Callable] = {
            "if_then": self._if_then,
            "advanced_condition": self._advanced_condition,
            "randomize": self._randomize,
            "split": self._split,
            "stop_if": self._stop_if,
            "check_hours": self._check_hours,
            "check_assignment": self._check_assignment,
            "check_label": self._check_label,
        }

    def evaluate(self, node, context: ExecutionContext) -> Optional[str]:
        """Evaluate a bound condition node.

        Args:
            node: BoundNode whose params are the typed condition config
            context: Execution context of the current path

        Returns:
            Branch label, or None to follow every unlabeled edge

        Raises:
            RunStopped: stop_if predicate holds
            EvaluationError: The condition cannot be evaluated
        """
        evaluator = self._evaluators.get(node.type)
        if evaluator is None:
            raise EvaluationError(f"no evaluator for condition type '{node.type}'")

        branch = evaluator(node, node.params, context)
        logger.debug("Condition evaluated", node_id=node.id, type=node.type, branch=branch)
        return branch

    def stop_condition_met(self, text: str, context: ExecutionContext) -> bool:
        return evaluate_expression(parse_expression(text), context)

    def _test(self, node_id: str, field: str, operator: str, value: Any,
              context: ExecutionContext) -> bool:
        actual = context.lookup(field)
        if actual is MISSING:
            logger.info("Condition field missing, taking false branch",
                        node_id=node_id, field=field, branch=BRANCH_NO)
            return False
        return _evaluate_operator(operator, actual, value)

    def _if_then(self, node, params, context: ExecutionContext) -> str:
        result = self._test(node.id, params.field, params.operator, params.value, context)
        return BRANCH_YES if result else BRANCH_NO

    def _advanced_condition(self, node, params, context: ExecutionContext) -> str:
        results = [
            self._test(node.id, p.field, p.operator, p.value, context)
            for p in params.predicates
        ]
        result = all(results) if params.logic == "AND" else any(results)
        return BRANCH_YES if result else BRANCH_NO

    def _randomize(self, node, params, context: ExecutionContext) -> str:
        # Fresh draw per invocation: [0, 100)
        draw = self.rng.random() * 100
        return BRANCH_A if draw < params.path_a_percent else BRANCH_B

    def _split(self, node, params, context: ExecutionContext) -> None:
        return None

    def _stop_if(self, node, params, context: ExecutionContext) -> None:
        if stop_predicate(params.stop_condition, context):
            raise RunStopped(f"stop condition '{params.stop_condition}' met at {node.id}")
        return None

    def _check_hours(self, node, params, context: ExecutionContext) -> str:
        now = self.clock().astimezone(ZoneInfo(params.timezone or self.timezone_name))
        weekday = now.isoweekday() % 7  # 0 = Sunday
        in_hours = (
            weekday in params.weekdays
            and params.start_time <= now.time().replace(tzinfo=None) < params.end_time
        )
        return BRANCH_YES if in_hours else BRANCH_NO

    def _check_assignment(self, node, params, context: ExecutionContext) -> str:
        assigned = None
        for source in (context.conversation, context.deal, context.contact):
            if source.get("assigned_to"):
                assigned = str(source["assigned_to"])
                break

        if params.user_id:
            result = assigned == str(params.user_id)
        else:
            result = assigned is not None
        return BRANCH_YES if result else BRANCH_NO

    def _check_label(self, node, params, context: ExecutionContext) -> str:
        wanted = params.label_name.strip().lower()
        labels = []
        for source in (context.contact, context.conversation, context.deal):
            for key in ("labels", "tags"):
                value = source.get(key)
                if isinstance(value, (list, tuple)):
                    labels.extend(value)

        names = {
            str(label.get("name") if isinstance(label, dict) else label).strip().lower()
            for label in labels
        }
        return BRANCH_YES if wanted in names else BRANCH_NO
