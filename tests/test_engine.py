"""Execution engine: traversal, admission, suspension, cancellation and stats."""

import asyncio
import time

import pytest

from core.cache import CacheService
from core.database import Database
from services.playbooks.cache import RunStore
from services.playbooks.engine import PlaybookEngine
from services.playbooks.errors import RunRejected
from services.playbooks.models import ActionOutcome, ExecutionContext, RunState, RunStatus
from services.playbooks.recovery import RecoverySweeper


def blocking_handler(message="Message sent successfully"):
    """Handler that parks until released, to hold a run mid-traversal."""
    entered = asyncio.Event()
    release = asyncio.Event()

    async def handler(params, context):
        entered.set()
        await release.wait()
        return ActionOutcome.success(message)

    return handler, entered, release


async def make_due(run_store, execution_id):
    """Move every suspended path of a run into the past."""
    state = await run_store.load_state(execution_id)
    for cursor in state.suspended:
        cursor.resume_at = time.time() - 1
    assert await run_store.save_state(state)


@pytest.fixture
def wait_playbook(build_playbook):
    return build_playbook(
        nodes=[
            ("pause", "wait", {"wait_value": 1, "wait_unit": "days"}),
            ("msg", "send_whatsapp", {"message": "Oi {{nome}}"}),
        ],
        edges=[("start", "pause"), ("pause", "msg")],
    )


# ============================================================================
# Scenarios
# ============================================================================

async def test_high_score_takes_yes_branch(engine, save_active, lead_score_playbook,
                                           make_context, crm, database):
    playbook = await save_active(lead_score_playbook())

    result = await engine.start_run(playbook.id, {"event_type": "contact_inactive"},
                                    make_context(lead_score=90))

    assert result.status == RunStatus.COMPLETED
    assert result.visited == ["start", "check", "msg"]
    assert result.log[1].branch == "yes"
    assert result.log[2].message == "Message sent successfully"
    assert crm.operations("send_message")[0]["text"] == "Oi Ana"

    record = await database.get_execution(result.execution_id)
    assert record.status == "completed"
    assert record.entity_key == "contact:c1"
    assert [step["node_id"] for step in record.steps_log] == ["start", "check", "msg"]


async def test_low_score_takes_no_branch(engine, save_active, lead_score_playbook,
                                         make_context, crm):
    playbook = await save_active(lead_score_playbook())

    result = await engine.start_run(playbook.id, None, make_context(lead_score=50))

    assert result.status == RunStatus.COMPLETED
    assert result.visited == ["start", "check", "task"]
    assert result.log[1].branch == "no"
    assert crm.operations("create_task")[0]["title"] == "Follow up"
    assert crm.operations("send_message") == []


async def test_loop_limit_fails_the_run(engine, save_active, loop_playbook, make_context):
    playbook = await save_active(loop_playbook(max_iterations=3))

    result = await engine.start_run(playbook.id, None, make_context())

    assert result.status == RunStatus.FAILED
    assert "exceeded max_iterations=3" in result.error
    assert result.visited.count("note") == 3
    assert result.visited[-1] == "loop"
    assert [e.iteration for e in result.log if e.node_id == "loop"][:3] == [1, 2, 3]


async def test_loop_exits_through_done_branch(engine, save_active, loop_playbook, make_context):
    playbook = await save_active(loop_playbook(stop_condition="lead_score >= 10"))

    result = await engine.start_run(playbook.id, None, make_context(lead_score=12))

    assert result.status == RunStatus.COMPLETED
    assert result.visited == ["start", "loop", "done"]
    assert result.log[1].branch == "done"


async def test_trigger_metadata_is_visible_to_conditions(engine, save_active, build_playbook,
                                                         make_context):
    playbook = await save_active(build_playbook(
        nodes=[
            ("check", "if_then", {"field": "trigger.channel", "operator": "equals",
                                  "value": "whatsapp"}),
            ("yes", "add_note", {"note": "from whatsapp"}),
            ("no", "add_note", {"note": "elsewhere"}),
        ],
        edges=[("start", "check"), ("check", "yes", "yes"), ("check", "no", "no")],
    ))

    result = await engine.start_run(playbook.id, {"channel": "whatsapp"}, make_context())
    assert result.visited == ["start", "check", "yes"]


# ============================================================================
# Admission
# ============================================================================

async def test_unknown_or_inactive_playbook_rejected(engine, database, lead_score_playbook):
    with pytest.raises(RunRejected) as exc_info:
        await engine.start_run("does-not-exist")
    assert exc_info.value.reason == "playbook not found"

    draft = lead_score_playbook()
    assert await database.save_playbook(draft)
    with pytest.raises(RunRejected) as exc_info:
        await engine.start_run(draft.id)
    assert exc_info.value.reason == "playbook is not active"
    assert await database.list_executions(draft.id) == []


async def test_one_active_run_per_entity(make_engine, save_active, lead_score_playbook,
                                         make_context):
    handler, entered, release = blocking_handler()
    engine = make_engine(overrides={"send_whatsapp": handler})
    playbook = await save_active(lead_score_playbook())

    first = asyncio.create_task(engine.start_run(playbook.id, None, make_context(lead_score=90)))
    await asyncio.wait_for(entered.wait(), timeout=2)

    with pytest.raises(RunRejected) as exc_info:
        await engine.start_run(playbook.id, None, make_context(lead_score=90))
    assert exc_info.value.entity_key == "contact:c1"

    # Another contact is admitted meanwhile
    other = await engine.start_run(playbook.id, None, make_context(id="c2", lead_score=10))
    assert other.status == RunStatus.COMPLETED

    release.set()
    assert (await first).status == RunStatus.COMPLETED

    again = await engine.start_run(playbook.id, None, make_context(lead_score=90))
    assert again.status == RunStatus.COMPLETED


async def test_simultaneous_starts_admit_one_run(engine, save_active, wait_playbook,
                                                 make_context, run_store, database):
    playbook = await save_active(wait_playbook)

    results = await asyncio.gather(
        engine.start_run(playbook.id, None, make_context()),
        engine.start_run(playbook.id, None, make_context()),
        return_exceptions=True,
    )

    admitted = [r for r in results if not isinstance(r, BaseException)]
    rejected = [r for r in results if isinstance(r, RunRejected)]
    assert len(admitted) == 1 and len(rejected) == 1
    assert admitted[0].status == RunStatus.SUSPENDED
    assert await run_store.get_active_runs() == {admitted[0].execution_id}
    assert [eid for eid, _ in await run_store.get_suspended_runs()] == [admitted[0].execution_id]
    assert len(await database.list_executions(playbook.id)) == 1


# ============================================================================
# Stop, fan-out, failures
# ============================================================================

async def test_stop_if_stops_the_run(engine, save_active, build_playbook, make_context, database):
    playbook = await save_active(build_playbook(
        nodes=[
            ("guard", "stop_if", {"stop_condition": "deal_lost"}),
            ("note", "add_note", {"note": "still open"}),
        ],
        edges=[("start", "guard"), ("guard", "note")],
    ))
    context = {**make_context(), "deal": {"id": "d1", "status": "lost"}}

    result = await engine.start_run(playbook.id, None, context)

    assert result.status == RunStatus.STOPPED
    assert result.visited == ["start", "guard"]
    assert "deal_lost" in result.error
    assert result.succeeded

    stored = await database.get_playbook(playbook.id)
    assert stored.usage_count == 1
    assert stored.success_rate == 100.0


async def test_split_runs_every_path(engine, save_active, build_playbook, make_context, crm):
    playbook = await save_active(build_playbook(
        nodes=[
            ("fan", "split", {}),
            ("note", "add_note", {"note": "path one"}),
            ("task", "create_task", {"title": "path two"}),
        ],
        edges=[("start", "fan"), ("fan", "note"), ("fan", "task")],
    ))

    result = await engine.start_run(playbook.id, None, make_context())

    assert result.status == RunStatus.COMPLETED
    assert result.visited[:2] == ["start", "fan"]
    assert set(result.visited[2:]) == {"note", "task"}
    assert len(crm.operations("add_note")) == 1
    assert len(crm.operations("create_task")) == 1


async def test_action_error_fails_the_run(engine, save_active, lead_score_playbook):
    playbook = await save_active(lead_score_playbook())

    result = await engine.start_run(playbook.id, None,
                                    {"contact": {"id": "c3", "lead_score": 95}})

    assert result.status == RunStatus.FAILED
    assert result.log[-1].status.value == "error"
    assert "Contact has no phone for whatsapp" in result.error


async def test_action_timeout_fails_the_run(make_engine, save_active, lead_score_playbook,
                                            make_context):
    async def slow(params, context):
        await asyncio.sleep(5)
        return ActionOutcome.success("late")

    engine = make_engine(overrides={"create_task": slow}, default_timeout=0.05)
    playbook = await save_active(lead_score_playbook())

    result = await engine.start_run(playbook.id, None, make_context(lead_score=10))

    assert result.status == RunStatus.FAILED
    assert "timed out" in result.error


async def test_stats_count_every_finished_run(engine, save_active, lead_score_playbook,
                                              make_context, database):
    playbook = await save_active(lead_score_playbook())

    ok = await engine.start_run(playbook.id, None, make_context(lead_score=90))
    failed = await engine.start_run(playbook.id, None, {"contact": {"id": "c2", "lead_score": 90}})
    assert (ok.status, failed.status) == (RunStatus.COMPLETED, RunStatus.FAILED)

    stored = await database.get_playbook(playbook.id)
    assert stored.usage_count == 2
    assert stored.success_rate == 50.0
    assert len(await database.list_executions(playbook.id)) == 2
    assert len(await database.list_executions(playbook.id, status="failed")) == 1


async def test_status_callback_sees_every_node(make_engine, save_active, lead_score_playbook,
                                               make_context):
    events = []

    async def on_status(execution_id, node_id, status, data):
        events.append((node_id, status))

    engine = make_engine(status_callback=on_status)
    playbook = await save_active(lead_score_playbook())
    await engine.start_run(playbook.id, None, make_context(lead_score=90))

    assert events == [
        ("start", "running"), ("start", "success"),
        ("check", "running"), ("check", "success"),
        ("msg", "running"), ("msg", "success"),
    ]


# ============================================================================
# Suspension and resumption
# ============================================================================

async def test_wait_suspends_and_resumes(engine, save_active, wait_playbook, make_context,
                                         run_store, crm, database):
    playbook = await save_active(wait_playbook)

    before = time.time()
    result = await engine.start_run(playbook.id, None, make_context())

    assert result.status == RunStatus.SUSPENDED
    assert result.visited == ["start", "pause"]
    assert before + 86400 - 5 < result.resume_at < time.time() + 86400 + 5
    assert [eid for eid, _ in await run_store.get_suspended_runs()] == [result.execution_id]
    assert (await database.get_execution(result.execution_id)).status == "suspended"
    assert crm.calls == []

    # Not due yet: nothing happens
    early = await engine.resume_run(result.execution_id)
    assert early.status == RunStatus.SUSPENDED

    # The entity keeps its slot while suspended
    with pytest.raises(RunRejected):
        await engine.start_run(playbook.id, None, make_context())

    await make_due(run_store, result.execution_id)
    resumed = await engine.resume_run(result.execution_id)

    assert resumed.status == RunStatus.COMPLETED
    assert resumed.visited == ["start", "pause", "msg"]
    assert crm.operations("send_message")[0]["text"] == "Oi Ana"
    assert await run_store.get_suspended_runs() == []


async def test_resume_unknown_run(engine):
    assert await engine.resume_run("missing") is None


async def test_resume_uses_graph_snapshot(engine, save_active, wait_playbook, make_context,
                                          run_store, database, crm):
    playbook = await save_active(wait_playbook)
    result = await engine.start_run(playbook.id, None, make_context())

    # Edit the live playbook while the run is parked
    playbook.update_node_config("msg", {"message": "Changed"})
    assert await database.save_playbook(playbook)

    await make_due(run_store, result.execution_id)
    await engine.resume_run(result.execution_id)
    assert crm.operations("send_message")[0]["text"] == "Oi Ana"


async def test_sweeper_resumes_due_runs(engine, save_active, wait_playbook, make_context,
                                        run_store):
    playbook = await save_active(wait_playbook)
    result = await engine.start_run(playbook.id, None, make_context())
    sweeper = RecoverySweeper(engine, run_store, sweep_interval=1)

    assert await sweeper.sweep_once() == []
    await make_due(run_store, result.execution_id)
    assert await sweeper.sweep_once() == [result.execution_id]

    state = await engine.get_run(result.execution_id)
    assert state.status == RunStatus.COMPLETED


async def test_sweeper_fails_abandoned_runs(engine, run_store):
    state = RunState.create("pb-gone", ExecutionContext(contact={"id": "c9"}))
    state.status = RunStatus.RUNNING
    assert await run_store.save_state(state)
    sweeper = RecoverySweeper(engine, run_store, interrupted_timeout=900)

    await sweeper.sweep_once(now=time.time() + 60)
    assert (await run_store.load_state(state.execution_id)).status == RunStatus.RUNNING

    await sweeper.sweep_once(now=time.time() + 1000)
    abandoned = await run_store.load_state(state.execution_id)
    assert abandoned.status == RunStatus.FAILED
    assert abandoned.error == "run interrupted"


async def test_sweeper_frees_slot_of_run_that_never_started(engine, save_active, wait_playbook,
                                                           make_context, run_store):
    playbook = await save_active(wait_playbook)
    # Admitted by a process that died before executing it
    state = RunState.create(playbook.id, ExecutionContext.from_dict(make_context()))
    assert await run_store.save_state(state)
    assert await run_store.acquire_slot(playbook.id, state.entity_key, state.execution_id)
    with pytest.raises(RunRejected):
        await engine.start_run(playbook.id, None, make_context())

    sweeper = RecoverySweeper(engine, run_store, interrupted_timeout=900)
    await sweeper.sweep_once(now=time.time() + 1000)

    assert (await run_store.load_state(state.execution_id)).status == RunStatus.FAILED
    result = await engine.start_run(playbook.id, None, make_context())
    assert result.status == RunStatus.SUSPENDED


async def test_suspended_run_survives_restart(settings, engine, save_active, wait_playbook,
                                              make_context, dispatcher, evaluator, registry, crm):
    playbook = await save_active(wait_playbook)
    result = await engine.start_run(playbook.id, None, make_context())
    assert result.status == RunStatus.SUSPENDED

    # A new process: its own database connection, cache and run store on the same file
    database = Database(settings)
    await database.startup()
    cache = CacheService(settings, database)
    await cache.startup()
    try:
        run_store = RunStore(cache)
        restarted = PlaybookEngine(database, run_store, dispatcher, evaluator, registry)

        assert [eid for eid, _ in await run_store.get_suspended_runs()] == [result.execution_id]
        assert await run_store.get_active_runs() == {result.execution_id}
        assert await run_store.get_slot_holder(playbook.id, "contact:c1") == result.execution_id

        await make_due(run_store, result.execution_id)
        sweeper = RecoverySweeper(restarted, run_store)
        assert await sweeper.sweep_once() == [result.execution_id]

        state = await restarted.get_run(result.execution_id)
        assert state.status == RunStatus.COMPLETED
        assert crm.operations("send_message")[0]["text"] == "Oi Ana"
        assert (await database.get_execution(result.execution_id)).status == "completed"
        assert await run_store.get_slot_holder(playbook.id, "contact:c1") is None
    finally:
        await cache.shutdown()
        await database.shutdown()


# ============================================================================
# Cancellation
# ============================================================================

async def test_cancel_suspended_run(engine, save_active, wait_playbook, make_context, run_store):
    playbook = await save_active(wait_playbook)
    result = await engine.start_run(playbook.id, None, make_context())

    assert await engine.cancel_run(result.execution_id)

    state = await engine.get_run(result.execution_id)
    assert state.status == RunStatus.STOPPED
    assert state.error == "cancelled"
    assert await run_store.get_suspended_runs() == []
    assert not await engine.cancel_run(result.execution_id)

    # Slot was released
    again = await engine.start_run(playbook.id, None, make_context())
    assert again.status == RunStatus.SUSPENDED


async def test_cancel_running_run_at_next_boundary(make_engine, save_active,
                                                   build_playbook, make_context, run_store, crm):
    handler, entered, release = blocking_handler()
    engine = make_engine(overrides={"send_whatsapp": handler})
    playbook = await save_active(build_playbook(
        nodes=[
            ("msg", "send_whatsapp", {"message": "Oi"}),
            ("task", "create_task", {"title": "never"}),
        ],
        edges=[("start", "msg"), ("msg", "task")],
    ))

    run = asyncio.create_task(engine.start_run(playbook.id, None, make_context()))
    await asyncio.wait_for(entered.wait(), timeout=2)

    (execution_id,) = await run_store.get_active_runs()
    assert await engine.cancel_run(execution_id)
    release.set()
    result = await run

    assert result.status == RunStatus.STOPPED
    assert result.error == "cancelled"
    assert result.visited == ["start", "msg"]
    assert crm.operations("create_task") == []


async def test_deactivate_cancels_active_runs(engine, save_active, wait_playbook, make_context,
                                              database):
    playbook = await save_active(wait_playbook)
    first = await engine.start_run(playbook.id, None, make_context())
    second = await engine.start_run(playbook.id, None, make_context(id="c2"))

    assert await engine.deactivate_playbook(playbook.id) == 2

    for execution_id in (first.execution_id, second.execution_id):
        assert (await engine.get_run(execution_id)).status == RunStatus.STOPPED
    assert not (await database.get_playbook(playbook.id)).is_active
    with pytest.raises(RunRejected):
        await engine.start_run(playbook.id, None, make_context())
