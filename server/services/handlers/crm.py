"""CRM action handlers - tasks, stages, labels, assignment, scores, fields and notes."""

from typing import Any, Dict

from core.logging import get_logger
from services.crm import due_date
from services.playbooks.errors import ActionError
from services.playbooks.models import ActionOutcome, ExecutionContext
from services.playbooks.templates import render_template

logger = get_logger(__name__)


# =============================================================================
# CONTEXT PATCHES
# =============================================================================

def _assignment_target(context: ExecutionContext) -> str:
    if context.conversation:
        return "conversation"
    if context.deal:
        return "deal"
    return "contact"


def context_patch_for(node_type: str, params, context: ExecutionContext) -> Dict[str, Any]:
    """Changes an action makes to the entities later nodes see.

    Pure function of the params and the context, so simulated runs branch
    the same way real runs do.
    """
    if node_type == "update_score":
        current = context.contact.get("lead_score") or 0
        return {"contact": {"lead_score": int(current) + params.score_change}}
    if node_type == "update_field":
        return {params.entity: {params.field_name: params.new_value}}
    if node_type == "move_stage":
        return {"deal": {"stage_id": params.target_stage}}
    if node_type == "add_label":
        labels = list(context.contact.get("labels") or [])
        if params.label_id not in labels:
            labels.append(params.label_id)
        return {"contact": {"labels": labels}}
    if node_type == "assign_to":
        return {_assignment_target(context): {"assigned_to": params.user_id}}
    return {}


def _require(value, message: str) -> str:
    if not value:
        raise ActionError(message)
    return value


# =============================================================================
# HANDLERS
# =============================================================================

async def handle_create_task(params, context: ExecutionContext, *, crm) -> ActionOutcome:
    title = render_template(params.title, context)
    task = await crm.create_task(
        title=title,
        due_at=due_date(params.due_in_days),
        priority=params.priority,
        task_type=params.task_type,
        assigned_to=params.assign_to or context.lookup("assigned_to") or None,
        contact_id=context.contact_id,
        deal_id=context.deal_id,
    )
    return ActionOutcome.success("Task created", {"last_task_id": task.get("id")})


async def handle_move_stage(params, context: ExecutionContext, *, crm) -> ActionOutcome:
    deal_id = _require(context.deal_id, "No deal in context to move")
    await crm.move_deal_stage(deal_id, params.target_stage)
    logger.info("Deal moved", deal_id=deal_id, stage_id=params.target_stage)
    return ActionOutcome.success("Deal moved to new stage",
                                 context_patch_for(params.type, params, context))


async def handle_add_label(params, context: ExecutionContext, *, crm) -> ActionOutcome:
    contact_id = _require(context.contact_id, "No contact in context to label")
    await crm.add_label(contact_id, params.label_id)
    return ActionOutcome.success("Label added", context_patch_for(params.type, params, context))


async def handle_assign_to(params, context: ExecutionContext, *, crm) -> ActionOutcome:
    entity = _assignment_target(context)
    entity_id = _require(getattr(context, f"{entity}_id"), "Nothing in context to assign")
    await crm.assign(entity, entity_id, params.user_id)
    return ActionOutcome.success(f"Assigned to {params.user_id}",
                                 context_patch_for(params.type, params, context))


async def handle_notify_user(params, context: ExecutionContext, *, crm) -> ActionOutcome:
    user_id = params.user_id or context.lookup("assigned_to") or None
    await crm.notify_user(user_id, render_template(params.title, context),
                          render_template(params.message, context))
    return ActionOutcome.success("User notified")


async def handle_update_score(params, context: ExecutionContext, *, crm) -> ActionOutcome:
    contact_id = _require(context.contact_id, "No contact in context to score")
    patch = context_patch_for(params.type, params, context)
    score = patch["contact"]["lead_score"]
    await crm.update_score(contact_id, score)
    return ActionOutcome.success(f"Score updated to {score}", patch)


async def handle_update_field(params, context: ExecutionContext, *, crm) -> ActionOutcome:
    entity_id = _require(getattr(context, f"{params.entity}_id"),
                         f"No {params.entity} in context to update")
    await crm.update_field(params.entity, entity_id, params.field_name, params.new_value)
    return ActionOutcome.success(f"Field {params.field_name} updated",
                                 context_patch_for(params.type, params, context))


async def handle_add_note(params, context: ExecutionContext, *, crm) -> ActionOutcome:
    if not context.contact_id and not context.deal_id:
        raise ActionError("No contact or deal in context for the note")
    await crm.add_note(context.contact_id, context.deal_id, render_template(params.note, context))
    return ActionOutcome.success("Note added")
