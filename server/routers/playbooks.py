"""Playbook authoring, execution and simulation routes."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, Field

from core.container import container
from core.logging import get_logger
from services import scheduler
from services.playbooks.errors import RunRejected, ValidationError
from services.playbooks.graph import Graph, Playbook
from services.playbooks.recovery import get_recovery_sweeper
from services.playbooks.triggers import TriggerEvent

logger = get_logger(__name__)
router = APIRouter(prefix="/api", tags=["playbooks"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class PlaybookCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str = ""
    trigger_type: str = "manual"
    trigger_config: Dict[str, Any] = {}
    graph: Optional[Dict[str, Any]] = None


class PlaybookUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    graph: Optional[Dict[str, Any]] = None


class RunRequest(BaseModel):
    context: Dict[str, Any] = {}
    trigger_config: Dict[str, Any] = {}


class SimulateRequest(BaseModel):
    context: Dict[str, Any] = {}
    failure_rate: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class EventRequest(BaseModel):
    event_type: str = Field(min_length=1)
    context: Dict[str, Any] = {}
    data: Dict[str, Any] = {}


# =============================================================================
# HELPERS
# =============================================================================

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _playbook_dict(playbook: Playbook) -> Dict[str, Any]:
    return {
        **playbook.to_dict(),
        "created_at": _iso(playbook.created_at),
        "updated_at": _iso(playbook.updated_at),
    }


def _execution_dict(record) -> Dict[str, Any]:
    return {
        "id": record.id,
        "playbook_id": record.playbook_id,
        "entity_key": record.entity_key,
        "contact_id": record.contact_id,
        "deal_id": record.deal_id,
        "conversation_id": record.conversation_id,
        "status": record.status,
        "current_step": record.current_step,
        "steps_log": record.steps_log or [],
        "error_message": record.error_message,
        "triggered_by": record.triggered_by,
        "resume_at": record.resume_at,
        "started_at": _iso(record.started_at),
        "completed_at": _iso(record.completed_at),
    }


async def _get_playbook_or_404(playbook_id: str) -> Playbook:
    playbook = await container.database().get_playbook(playbook_id)
    if playbook is None:
        raise HTTPException(status_code=404, detail=f"Playbook not found: {playbook_id}")
    return playbook


async def _save(playbook: Playbook) -> None:
    if not await container.database().save_playbook(playbook):
        raise HTTPException(status_code=500, detail="Failed to save playbook")
    container.trigger_manager().sync_playbook(playbook)


# =============================================================================
# PLAYBOOK CRUD
# =============================================================================

@router.post("/playbooks", status_code=status.HTTP_201_CREATED)
async def create_playbook(request: PlaybookCreateRequest):
    """Create an inactive playbook (trigger placeholder only, unless a graph is given)."""
    playbook = Playbook.create(request.name, request.description,
                               trigger_type=request.trigger_type,
                               trigger_config=request.trigger_config)
    if request.graph is not None:
        playbook.graph = Graph.from_dict(request.graph)
        playbook.sync_trigger()

    await _save(playbook)
    issues = playbook.graph.validate(registry=container.registry(), allow_drafts=True)
    logger.info("Playbook created", playbook_id=playbook.id, nodes=len(playbook.graph.nodes))
    return {"playbook": _playbook_dict(playbook), "issues": issues}


@router.get("/playbooks")
async def list_playbooks(active_only: bool = False):
    playbooks = await container.database().list_playbooks(active_only=active_only)
    return {"playbooks": [_playbook_dict(p) for p in playbooks]}


@router.get("/playbooks/{playbook_id}")
async def get_playbook(playbook_id: str):
    return {"playbook": _playbook_dict(await _get_playbook_or_404(playbook_id))}


@router.put("/playbooks/{playbook_id}")
async def update_playbook(playbook_id: str, request: PlaybookUpdateRequest):
    """Update name, description or graph.

    An active playbook only accepts a graph that passes activation
    validation; an inactive one is saved as a draft and its issues returned.
    """
    playbook = await _get_playbook_or_404(playbook_id)
    registry = container.registry()

    if request.name is not None:
        playbook.name = request.name
    if request.description is not None:
        playbook.description = request.description
    if request.graph is not None:
        playbook.graph = Graph.from_dict(request.graph)
        playbook.sync_trigger()

    if playbook.is_active:
        errors = playbook.validate(registry)
        if errors:
            raise HTTPException(status_code=422, detail={"errors": errors})
        issues: List[str] = []
    else:
        issues = playbook.graph.validate(registry=registry, allow_drafts=True)

    await _save(playbook)
    return {"playbook": _playbook_dict(playbook), "issues": issues}


@router.delete("/playbooks/{playbook_id}")
async def delete_playbook(playbook_id: str):
    await _get_playbook_or_404(playbook_id)
    cancelled = await container.engine().deactivate_playbook(playbook_id)
    container.trigger_manager().unschedule(playbook_id)
    await container.database().delete_playbook(playbook_id)
    logger.info("Playbook deleted", playbook_id=playbook_id, cancelled_runs=cancelled)
    return {"deleted": True, "cancelled_runs": cancelled}


# =============================================================================
# LIFECYCLE
# =============================================================================

@router.post("/playbooks/{playbook_id}/activate")
async def activate_playbook(playbook_id: str):
    playbook = await _get_playbook_or_404(playbook_id)
    try:
        playbook.activate(container.registry())
    except ValidationError as e:
        raise HTTPException(status_code=422, detail={"errors": e.errors})
    await _save(playbook)
    return {"playbook": _playbook_dict(playbook)}


@router.post("/playbooks/{playbook_id}/deactivate")
async def deactivate_playbook(playbook_id: str):
    playbook = await _get_playbook_or_404(playbook_id)
    cancelled = await container.engine().deactivate_playbook(playbook_id)
    playbook.deactivate()
    container.trigger_manager().sync_playbook(playbook)
    return {"playbook": _playbook_dict(playbook), "cancelled_runs": cancelled}


@router.post("/playbooks/{playbook_id}/validate")
async def validate_playbook(playbook_id: str):
    playbook = await _get_playbook_or_404(playbook_id)
    errors = playbook.validate(container.registry())
    return {"valid": not errors, "errors": errors}


# =============================================================================
# EXECUTION
# =============================================================================

@router.post("/playbooks/{playbook_id}/run")
async def run_playbook(playbook_id: str, request: RunRequest):
    """Manually run an active playbook for the given entity context."""
    await _get_playbook_or_404(playbook_id)
    try:
        result = await container.engine().start_run(
            playbook_id,
            trigger_config=request.trigger_config or None,
            context=request.context,
            triggered_by="manual",
        )
    except RunRejected as e:
        raise HTTPException(status_code=409, detail=e.reason)
    return result.to_dict()


@router.post("/playbooks/{playbook_id}/simulate")
async def simulate_playbook(playbook_id: str, request: SimulateRequest):
    playbook = await _get_playbook_or_404(playbook_id)
    try:
        result = await container.simulator().simulate(playbook, request.context,
                                                      failure_rate=request.failure_rate)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail={"errors": e.errors})
    return result.to_dict()


@router.get("/playbooks/{playbook_id}/executions")
async def list_playbook_executions(playbook_id: str,
                                   status_filter: Optional[str] = Query(default=None, alias="status"),
                                   limit: int = Query(default=50, ge=1, le=500)):
    await _get_playbook_or_404(playbook_id)
    records = await container.database().list_executions(playbook_id, status=status_filter,
                                                         limit=limit)
    return {"executions": [_execution_dict(r) for r in records]}


@router.get("/executions/{execution_id}")
async def get_execution(execution_id: str):
    record = await container.database().get_execution(execution_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Execution not found: {execution_id}")
    return {"execution": _execution_dict(record)}


@router.post("/executions/{execution_id}/cancel")
async def cancel_execution(execution_id: str):
    engine = container.engine()
    if await engine.get_run(execution_id) is None:
        raise HTTPException(status_code=404, detail=f"Execution not found: {execution_id}")
    cancelled = await engine.cancel_run(execution_id)
    run = await engine.get_run(execution_id)
    return {"cancelled": cancelled, "status": run.status.value if run else None}


@router.post("/events")
async def receive_event(request: EventRequest):
    """Deliver a CRM event to every playbook whose trigger matches."""
    event = TriggerEvent(request.event_type, request.context, request.data)
    results = await container.trigger_manager().handle_event(event)
    return {"runs": [r.to_dict() for r in results]}


# =============================================================================
# CATALOG / HEALTH
# =============================================================================

@router.get("/node-types")
async def list_node_types():
    return {"node_types": container.registry().catalog()}


@router.get("/health")
async def health_check():
    settings = container.settings()
    sweeper = get_recovery_sweeper()
    return {
        "status": "OK",
        "redis_enabled": settings.redis_enabled,
        "redis_available": container.cache().is_redis_available(),
        "recovery_sweeper": sweeper is not None and sweeper._running,
        "scheduled_jobs": len(scheduler.get_all_jobs()),
        "timestamp": datetime.now().isoformat(),
    }
