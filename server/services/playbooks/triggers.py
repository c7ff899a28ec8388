"""Trigger sources for playbooks.

Events (new message, stage change, score change, ...) are matched against
every active playbook's trigger; time-based triggers are registered as
APScheduler jobs. Both end in PlaybookEngine.start_run.
"""

import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo

import pydantic

from constants import SCHEDULED_TRIGGER_TYPES
from core.logging import get_logger
from models.nodes import CronScheduleTriggerParams, validate_node_params
from services import scheduler
from services.playbooks.errors import RunRejected
from services.playbooks.models import ExecutionContext, RunResult, utc_now_iso

logger = get_logger(__name__)

# 0 = Sunday, as stored by the authoring surface
_WEEKDAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


@dataclass
class TriggerEvent:
    """Something that happened in the CRM."""
    event_type: str
    context: Dict[str, Any] = field(default_factory=dict)
    data: Dict[str, Any] = field(default_factory=dict)

    def to_trigger_config(self) -> Dict[str, Any]:
        return {"event_type": self.event_type, **self.data}


def _num(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _same_text(a: Any, b: Any) -> bool:
    return str(a).strip().lower() == str(b).strip().lower()


# =============================================================================
# MATCHERS
# =============================================================================
# Each matcher gets the validated trigger params and the event data.

def _match_new_message(params, data) -> bool:
    return not params.channel or _same_text(params.channel, data.get("channel", ""))


def _match_stage_changed(params, data) -> bool:
    if not params.stage_id:
        return True
    return str(data.get("stage_id") or data.get("to_stage") or "") == params.stage_id


def _match_time_inactive(params, data) -> bool:
    days = _num(data.get("inactive_days"))
    return days is not None and days >= params.days


def _match_score_reached(params, data) -> bool:
    old, new = _num(data.get("old_score")), _num(data.get("new_score"))
    if new is None:
        return False
    # Fires once when the score crosses the threshold upward
    return new >= params.min_score and (old is None or old < params.min_score)


def _match_score_changed(params, data) -> bool:
    new = _num(data.get("new_score"))
    if new is None:
        return False
    if params.change_type == "greater_than":
        return new > params.threshold
    if params.change_type == "less_than":
        return new < params.threshold
    return new == params.threshold


def _match_label_added(params, data) -> bool:
    label = data.get("label_name") or data.get("label")
    return label is not None and _same_text(label, params.label_name)


def _match_sla_exceeded(params, data) -> bool:
    minutes = _num(data.get("waiting_minutes"))
    return minutes is not None and minutes >= params.max_minutes


def _match_contact_birthday(params, data) -> bool:
    days_until = _num(data.get("days_until_birthday"))
    if days_until is None:
        return False
    if params.timing == "before":
        return days_until == params.days_offset
    if params.timing == "after":
        return days_until == -params.days_offset
    return days_until == 0


def _match_webhook_received(params, data) -> bool:
    if not params.path:
        return True
    return str(data.get("path", "")).strip("/") == params.path.strip("/")


def _match_any(params, data) -> bool:
    return True


# trigger type -> (event types it listens to, matcher)
_MATCHERS: Dict[str, tuple] = {
    "new_message": (("new_message",), _match_new_message),
    "deal_created": (("deal_created",), _match_any),
    "stage_changed": (("stage_changed",), _match_stage_changed),
    "time_inactive": (("contact_inactive",), _match_time_inactive),
    "score_reached": (("score_changed",), _match_score_reached),
    "score_changed": (("score_changed",), _match_score_changed),
    "label_added": (("label_added",), _match_label_added),
    "proposal_viewed": (("proposal_viewed",), _match_any),
    "proposal_accepted": (("proposal_accepted",), _match_any),
    "proposal_rejected": (("proposal_rejected",), _match_any),
    "sla_exceeded": (("sla_exceeded",), _match_sla_exceeded),
    "contact_birthday": (("contact_birthday",), _match_contact_birthday),
    "webhook_received": (("webhook_received",), _match_webhook_received),
}


def trigger_matches(trigger_type: str, trigger_config: Optional[Dict[str, Any]],
                    event: TriggerEvent) -> bool:
    """Decide whether a playbook trigger fires for an event.

    manual, cron_schedule and specific_date never match events. A trigger
    whose configuration does not validate never matches.
    """
    entry = _MATCHERS.get(trigger_type)
    if entry is None:
        return False
    event_types, matcher = entry
    if event.event_type not in event_types:
        return False

    try:
        params = validate_node_params(trigger_type, trigger_config or {})
    except (KeyError, pydantic.ValidationError) as e:
        logger.warning("Invalid trigger configuration", trigger_type=trigger_type, error=str(e))
        return False
    return matcher(params, event.data or {})


def cron_expression_for(params: CronScheduleTriggerParams) -> str:
    """5-field cron expression for a cron_schedule trigger."""
    minute, hour = params.time.minute, params.time.hour
    if params.repeat == "weekly":
        days = ",".join(_WEEKDAY_NAMES[d] for d in params.weekdays)
        return f"{minute} {hour} * * {days}"
    if params.repeat == "monthly":
        return f"{minute} {hour} 1 * *"
    return f"{minute} {hour} * * *"


def _job_id(playbook_id: str) -> str:
    return f"playbook_trigger_{playbook_id}"


# =============================================================================
# MANAGER
# =============================================================================

class TriggerManager:
    """Routes CRM events and schedules to playbook runs."""

    def __init__(self, engine, store, timezone: str = "America/Sao_Paulo",
                 clock: Optional[Callable[[], dt.datetime]] = None):
        """Initialize trigger manager.

        Args:
            engine: PlaybookEngine that starts the runs
            store: Database listing playbooks
            timezone: Timezone of cron and specific_date triggers
            clock: Returns the current aware datetime (tests)
        """
        self.engine = engine
        self.store = store
        self.timezone = timezone
        self._clock = clock or (lambda: dt.datetime.now(ZoneInfo(self.timezone)))

    async def handle_event(self, event: TriggerEvent) -> List[RunResult]:
        """Start a run for every active playbook whose trigger matches.

        Rejected admissions (entity already running the playbook) are
        skipped.
        """
        results = []
        context = ExecutionContext.from_dict(event.context)

        for playbook in await self.store.list_playbooks(active_only=True):
            if not trigger_matches(playbook.trigger_type, playbook.trigger_config, event):
                continue
            try:
                result = await self.engine.start_run(
                    playbook.id,
                    trigger_config=event.to_trigger_config(),
                    context=context,
                    triggered_by="event",
                )
                results.append(result)
            except RunRejected as e:
                logger.info("Event run skipped", playbook_id=playbook.id,
                            event_type=event.event_type, reason=e.reason)

        logger.debug("Event handled", event_type=event.event_type, runs=len(results))
        return results

    async def sync_schedules(self, playbooks: Optional[Iterable] = None) -> List[str]:
        """Register jobs for active scheduled playbooks, drop the others.

        Returns:
            Ids of the registered jobs
        """
        if playbooks is None:
            playbooks = await self.store.list_playbooks()

        registered = []
        for playbook in playbooks:
            job_id = self.sync_playbook(playbook)
            if job_id:
                registered.append(job_id)
        return registered

    def sync_playbook(self, playbook) -> Optional[str]:
        """Register or remove the schedule job of one playbook."""
        job_id = _job_id(playbook.id)
        if not playbook.is_active or playbook.trigger_type not in SCHEDULED_TRIGGER_TYPES:
            scheduler.remove_job(job_id)
            return None

        try:
            params = validate_node_params(playbook.trigger_type, playbook.trigger_config)
        except (KeyError, pydantic.ValidationError) as e:
            logger.warning("Invalid schedule configuration", playbook_id=playbook.id,
                           error=str(e))
            scheduler.remove_job(job_id)
            return None

        if playbook.trigger_type == "cron_schedule":
            return scheduler.register_cron_job(job_id, cron_expression_for(params),
                                               self._fire_scheduled, timezone=self.timezone,
                                               playbook_id=playbook.id)

        run_date = dt.datetime.combine(params.date, params.time or dt.time(0, 0),
                                       tzinfo=ZoneInfo(self.timezone))
        if run_date <= self._clock():
            logger.info("Specific date already passed, not scheduling",
                        playbook_id=playbook.id, run_date=run_date.isoformat())
            scheduler.remove_job(job_id)
            return None
        return scheduler.register_date_job(job_id, run_date, self._fire_scheduled,
                                           playbook_id=playbook.id)

    def unschedule(self, playbook_id: str) -> bool:
        return scheduler.remove_job(_job_id(playbook_id))

    async def _fire_scheduled(self, playbook_id: str) -> Optional[RunResult]:
        try:
            return await self.engine.start_run(
                playbook_id,
                trigger_config={"event_type": "schedule", "fired_at": utc_now_iso()},
                context=None,
                triggered_by="schedule",
            )
        except RunRejected as e:
            logger.info("Scheduled run skipped", playbook_id=playbook_id, reason=e.reason)
        except Exception as e:
            logger.error("Scheduled run failed", playbook_id=playbook_id, error=str(e))
        return None
