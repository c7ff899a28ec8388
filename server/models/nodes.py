"""Pydantic models for playbook node configuration with discriminated unions.

Every node type has one params model whose ``type`` literal is the
discriminator, so a raw ``{type, **config}`` dict is routed to the right
model in a single lookup and decoded into a typed record the engine uses
internally.
"""

import datetime as dt
import re
from typing import Annotated, Any, Dict, List, Literal, Optional, Type, Union, get_args
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, HttpUrl, TypeAdapter, field_validator, model_validator

from constants import WAIT_UNIT_SECONDS


Weekday = Annotated[int, Field(ge=0, le=6)]  # 0 = Sunday
Scalar = Union[bool, int, float, str]
ComparisonOperator = Literal["equals", "greater", "less", "contains"]
PredicateOperator = Literal["equals", "not_equals", "greater", "less", "contains"]

_NUMBERED_KEY = re.compile(r"(field|operator|value)(\d+)")


def _yes_no(value: Any) -> Any:
    """Accept the authoring surface's yes/no strings for boolean flags."""
    if isinstance(value, str) and value.strip().lower() in ("yes", "no"):
        return value.strip().lower() == "yes"
    return value


# =============================================================================
# BASE MODELS
# =============================================================================

class BaseNodeParams(BaseModel):
    """Base class for all node parameters."""
    model_config = {"extra": "allow", "frozen": True}


# =============================================================================
# TRIGGER MODELS
# =============================================================================

class ManualTriggerParams(BaseNodeParams):
    type: Literal["manual"]


class EventTriggerParams(BaseNodeParams):
    """Triggers fired by an event with no extra filtering."""
    type: Literal["deal_created", "proposal_viewed", "proposal_accepted", "proposal_rejected"]


class NewMessageTriggerParams(BaseNodeParams):
    type: Literal["new_message"]
    channel: Optional[str] = None


class StageChangedTriggerParams(BaseNodeParams):
    type: Literal["stage_changed"]
    stage_id: Optional[str] = None


class TimeInactiveTriggerParams(BaseNodeParams):
    type: Literal["time_inactive"]
    days: int = Field(ge=0)


class ScoreReachedTriggerParams(BaseNodeParams):
    type: Literal["score_reached"]
    min_score: int


class ScoreChangedTriggerParams(BaseNodeParams):
    type: Literal["score_changed"]
    change_type: Literal["greater_than", "less_than", "equals"]
    threshold: int


class SpecificDateTriggerParams(BaseNodeParams):
    type: Literal["specific_date"]
    date: dt.date
    time: Optional[dt.time] = None


class ContactBirthdayTriggerParams(BaseNodeParams):
    type: Literal["contact_birthday"]
    timing: Literal["before", "on_day", "after"] = "on_day"
    days_offset: int = Field(default=0, ge=0, le=365)


class LabelAddedTriggerParams(BaseNodeParams):
    type: Literal["label_added"]
    label_name: str = Field(min_length=1)


class CronScheduleTriggerParams(BaseNodeParams):
    type: Literal["cron_schedule"]
    time: dt.time
    weekdays: List[Weekday] = Field(default_factory=list)
    repeat: Literal["daily", "weekly", "monthly"] = "daily"

    @field_validator("weekdays")
    @classmethod
    def dedupe_weekdays(cls, v):
        return sorted(set(v))

    @model_validator(mode="after")
    def weekly_needs_weekdays(self):
        if self.repeat == "weekly" and not self.weekdays:
            raise ValueError("weekly repeat requires at least one weekday")
        return self


class SlaExceededTriggerParams(BaseNodeParams):
    type: Literal["sla_exceeded"]
    max_minutes: int = Field(ge=1)


class WebhookReceivedTriggerParams(BaseNodeParams):
    type: Literal["webhook_received"]
    path: Optional[str] = None


# =============================================================================
# CONDITION MODELS
# =============================================================================

class IfThenParams(BaseNodeParams):
    type: Literal["if_then"]
    field: str = Field(min_length=1)
    operator: ComparisonOperator
    value: Scalar = ""


class Predicate(BaseModel):
    """One field/operator/value test of an advanced condition."""
    model_config = {"frozen": True}

    field: str = Field(min_length=1)
    operator: PredicateOperator
    value: Scalar = ""


class AdvancedConditionParams(BaseNodeParams):
    """AND/OR over numbered predicates (field1/operator1/value1, field2/...)."""
    type: Literal["advanced_condition"]
    logic: Literal["AND", "OR"] = "AND"
    predicates: List[Predicate] = Field(min_length=1)

    @model_validator(mode="before")
    @classmethod
    def collect_numbered_predicates(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "predicates" in data:
            return data
        data = dict(data)
        indexes = set()
        for key in data:
            match = _NUMBERED_KEY.fullmatch(str(key))
            if match:
                indexes.add(int(match.group(2)))

        predicates = []
        for index in range(1, max(indexes, default=0) + 1):
            if f"field{index}" not in data:
                raise ValueError(f"predicate {index} is missing field{index}")
            predicates.append({
                "field": data.pop(f"field{index}"),
                "operator": data.pop(f"operator{index}", None),
                "value": data.pop(f"value{index}", ""),
            })
        data["predicates"] = predicates
        if isinstance(data.get("logic"), str):
            data["logic"] = data["logic"].upper()
        return data


class RandomizeParams(BaseNodeParams):
    type: Literal["randomize"]
    path_a_percent: int = Field(default=50, ge=0, le=100)


class SplitParams(BaseNodeParams):
    type: Literal["split"]


class CheckHoursParams(BaseNodeParams):
    """Business hours check; start inclusive, end exclusive."""
    type: Literal["check_hours"]
    start_time: dt.time = dt.time(8, 0)
    end_time: dt.time = dt.time(18, 0)
    weekdays: List[Weekday] = Field(default_factory=lambda: [1, 2, 3, 4, 5])
    timezone: Optional[str] = None

    @field_validator("timezone")
    @classmethod
    def known_timezone(cls, v):
        if v is not None:
            try:
                ZoneInfo(v)
            except (ZoneInfoNotFoundError, ValueError):
                raise ValueError(f"unknown timezone: {v}")
        return v

    @model_validator(mode="after")
    def end_after_start(self):
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class CheckAssignmentParams(BaseNodeParams):
    type: Literal["check_assignment"]
    user_id: Optional[str] = None


class CheckLabelParams(BaseNodeParams):
    type: Literal["check_label"]
    label_name: str = Field(min_length=1)


class StopIfParams(BaseNodeParams):
    type: Literal["stop_if"]
    stop_condition: Literal["deal_lost", "deal_won", "contact_blocked", "unsubscribed"]


# =============================================================================
# ACTION MODELS
# =============================================================================

class SendMessageParams(BaseNodeParams):
    type: Literal["send_whatsapp", "send_email"]
    message: str = Field(min_length=1)
    subject: Optional[str] = None


class CreateTaskParams(BaseNodeParams):
    type: Literal["create_task"]
    title: str = "Automated task"
    due_in_days: int = Field(default=1, ge=0)
    priority: Literal["low", "medium", "high", "urgent"] = "medium"
    task_type: str = "follow_up"
    assign_to: Optional[str] = None


class MoveStageParams(BaseNodeParams):
    type: Literal["move_stage"]
    target_stage: str = Field(min_length=1)


class AddLabelParams(BaseNodeParams):
    type: Literal["add_label"]
    label_id: str = Field(min_length=1)


class AssignToParams(BaseNodeParams):
    type: Literal["assign_to"]
    user_id: str = Field(min_length=1)


class NotifyUserParams(BaseNodeParams):
    type: Literal["notify_user"]
    title: str = "Automatic notification"
    message: str = "Playbook action"
    user_id: Optional[str] = None


class WaitParams(BaseNodeParams):
    type: Literal["wait"]
    wait_value: int = Field(ge=1)
    wait_unit: Literal["minutes", "hours", "days"] = "days"

    @property
    def delay(self) -> dt.timedelta:
        return dt.timedelta(seconds=self.wait_value * WAIT_UNIT_SECONDS[self.wait_unit])


class CallWebhookParams(BaseNodeParams):
    type: Literal["call_webhook"]
    url: HttpUrl
    method: Literal["GET", "POST", "PUT", "DELETE"] = "POST"
    wait_response: bool = False
    timeout: Optional[float] = Field(default=None, gt=0, le=600)

    @field_validator("wait_response", mode="before")
    @classmethod
    def coerce_wait_response(cls, v):
        return _yes_no(v)

    @field_validator("method", mode="before")
    @classmethod
    def upper_method(cls, v):
        return v.upper() if isinstance(v, str) else v


class SendToN8nParams(BaseNodeParams):
    type: Literal["send_to_n8n"]
    n8n_url: HttpUrl
    wait_response: bool = False
    timeout: Optional[float] = Field(default=None, gt=0, le=600)

    @field_validator("wait_response", mode="before")
    @classmethod
    def coerce_wait_response(cls, v):
        return _yes_no(v)


class UpdateScoreParams(BaseNodeParams):
    type: Literal["update_score"]
    score_change: int


class UpdateFieldParams(BaseNodeParams):
    type: Literal["update_field"]
    entity: Literal["contact", "deal"]
    field_name: str = Field(min_length=1, pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")
    new_value: Any = None


class AddNoteParams(BaseNodeParams):
    type: Literal["add_note"]
    note: str = Field(min_length=1)


class LoopUntilParams(BaseNodeParams):
    type: Literal["loop_until"]
    stop_condition: str = Field(min_length=1)
    max_iterations: int = Field(ge=1)


# =============================================================================
# DISCRIMINATED UNION
# =============================================================================

_PARAM_MODELS = (
    # Triggers
    ManualTriggerParams, EventTriggerParams, NewMessageTriggerParams,
    StageChangedTriggerParams, TimeInactiveTriggerParams, ScoreReachedTriggerParams,
    ScoreChangedTriggerParams, SpecificDateTriggerParams, ContactBirthdayTriggerParams,
    LabelAddedTriggerParams, CronScheduleTriggerParams, SlaExceededTriggerParams,
    WebhookReceivedTriggerParams,
    # Conditions
    IfThenParams, AdvancedConditionParams, RandomizeParams, SplitParams,
    CheckHoursParams, CheckAssignmentParams, CheckLabelParams, StopIfParams,
    # Actions
    SendMessageParams, CreateTaskParams, MoveStageParams, AddLabelParams,
    AssignToParams, NotifyUserParams, WaitParams, CallWebhookParams,
    SendToN8nParams, UpdateScoreParams, UpdateFieldParams, AddNoteParams,
    LoopUntilParams,
)

KnownNodeParams = Annotated[
    Union[_PARAM_MODELS],
    Field(discriminator="type")
]

_known_node_adapter = TypeAdapter(KnownNodeParams)

# node type -> params model
PARAMS_BY_TYPE: Dict[str, Type[BaseNodeParams]] = {
    node_type: model
    for model in _PARAM_MODELS
    for node_type in get_args(model.model_fields["type"].annotation)
}


def validate_node_params(node_type: str, params: Dict[str, Any]) -> BaseNodeParams:
    """Validate node parameters using the appropriate model.

    Args:
        node_type: The node type string
        params: The raw configuration mapping

    Returns:
        Validated parameters model (specific subclass based on node_type)

    Raises:
        KeyError: If node_type is not a known type
        pydantic.ValidationError: If validation fails
    """
    if node_type not in PARAMS_BY_TYPE:
        raise KeyError(node_type)
    return _known_node_adapter.validate_python({**(params or {}), "type": node_type})


