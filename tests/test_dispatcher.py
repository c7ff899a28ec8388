"""Action dispatch: builtins, handler failures and the production handlers."""

import asyncio

import httpx
import pytest

from constants import kind_of
from services.handlers import build_handler_registry
from services.playbooks.dispatcher import ActionDispatcher
from services.playbooks.errors import ActionError, LoopLimitExceeded, ValidationError
from services.playbooks.graph import Node
from services.playbooks.models import ActionOutcome, ExecutionContext


@pytest.fixture
def bind(registry):
    def factory(node_type, config, node_id="act"):
        return registry.bind(Node(node_id, kind_of(node_type), node_type, config=config))
    return factory


@pytest.fixture
def contact_ctx(make_context):
    return ExecutionContext.from_dict(make_context(email="ana@example.com", lead_score=40))


# ============================================================================
# Builtins
# ============================================================================

async def test_wait_requests_suspension(dispatcher, bind):
    outcome = await dispatcher.dispatch(bind("wait", {"wait_value": 3, "wait_unit": "minutes"}),
                                        ExecutionContext())
    assert outcome.ok
    assert outcome.resume_after.total_seconds() == 180
    assert outcome.message == "Waiting 3 minutes"


class TestLoopUntil:
    config = {"stop_condition": "message_count > 5", "max_iterations": 2}

    async def test_iterates_while_condition_false(self, dispatcher, bind):
        outcome = await dispatcher.dispatch(bind("loop_until", self.config), ExecutionContext())
        assert (outcome.branch, outcome.loop_iteration) == ("loop", 1)

    async def test_done_when_condition_true(self, dispatcher, bind):
        context = ExecutionContext(conversation={"messages": list(range(6))},
                                   loop_counters={"act": 1})
        outcome = await dispatcher.dispatch(bind("loop_until", self.config), context)
        assert outcome.branch == "done"
        assert outcome.message == "Loop finished after 1 iterations"

    async def test_limit_raises(self, dispatcher, bind):
        context = ExecutionContext(loop_counters={"act": 2})
        with pytest.raises(LoopLimitExceeded) as exc_info:
            await dispatcher.dispatch(bind("loop_until", self.config), context)
        assert exc_info.value.max_iterations == 2


# ============================================================================
# Handler failures
# ============================================================================

def _dispatcher_with(evaluator, handler, timeout=5.0):
    return ActionDispatcher({"add_note": handler}, evaluator, default_timeout=timeout)


async def test_handler_exception_becomes_error_outcome(evaluator, bind):
    async def broken(params, context):
        raise RuntimeError("database down")

    outcome = await _dispatcher_with(evaluator, broken).dispatch(
        bind("add_note", {"note": "x"}), ExecutionContext())
    assert outcome.status == "error"
    assert outcome.message == "RuntimeError: database down"


async def test_action_error_message_is_kept(evaluator, bind):
    async def refuse(params, context):
        raise ActionError("Contact has no phone for whatsapp")

    outcome = await _dispatcher_with(evaluator, refuse).dispatch(
        bind("add_note", {"note": "x"}), ExecutionContext())
    assert outcome.message == "Contact has no phone for whatsapp"


async def test_slow_handler_times_out(evaluator, bind):
    async def slow(params, context):
        await asyncio.sleep(5)
        return ActionOutcome.success("late")

    outcome = await _dispatcher_with(evaluator, slow, timeout=0.05).dispatch(
        bind("add_note", {"note": "x"}), ExecutionContext())
    assert outcome.status == "error"
    assert "timed out" in outcome.message


async def test_non_outcome_return_is_an_error(evaluator, bind):
    async def sloppy(params, context):
        return {"ok": True}

    outcome = await _dispatcher_with(evaluator, sloppy).dispatch(
        bind("add_note", {"note": "x"}), ExecutionContext())
    assert outcome.status == "error"


def test_ensure_handlers_lists_missing_types(evaluator, registry, lead_score_playbook):
    snapshot = lead_score_playbook().graph.snapshot(registry)
    dispatcher = ActionDispatcher({"create_task": None}, evaluator)

    assert dispatcher.missing_handlers(snapshot) == ["send_whatsapp"]
    with pytest.raises(ValidationError):
        dispatcher.ensure_handlers(snapshot)


def test_production_table_covers_every_handled_action(handlers, dispatcher, registry,
                                                      lead_score_playbook, loop_playbook):
    assert len(handlers) == 12
    dispatcher.ensure_handlers(lead_score_playbook().graph.snapshot(registry))
    dispatcher.ensure_handlers(loop_playbook().graph.snapshot(registry))


# ============================================================================
# Messaging and CRM handlers
# ============================================================================

async def test_whatsapp_message_is_rendered(dispatcher, bind, crm, contact_ctx):
    outcome = await dispatcher.dispatch(
        bind("send_whatsapp", {"message": "Oi {{nome}}, score {{lead_score}}"}), contact_ctx)

    assert outcome.message == "Message sent successfully"
    sent = crm.operations("send_message")[0]
    assert sent["channel"] == "whatsapp"
    assert sent["text"] == "Oi Ana, score 40"
    assert outcome.context_patch == {"last_message": "Oi Ana, score 40"}


async def test_message_without_address_fails(dispatcher, bind, crm):
    context = ExecutionContext(contact={"id": "c1", "name": "Ana"})
    outcome = await dispatcher.dispatch(bind("send_email", {"message": "Hello"}), context)
    assert outcome.status == "error"
    assert outcome.message == "Contact has no email for email"
    assert crm.calls == []


async def test_update_score_patches_context(dispatcher, bind, crm, contact_ctx):
    outcome = await dispatcher.dispatch(bind("update_score", {"score_change": 15}), contact_ctx)
    assert outcome.message == "Score updated to 55"
    assert outcome.context_patch == {"contact": {"lead_score": 55}}
    assert crm.operations("update_score")[0]["score"] == 55


async def test_move_stage_needs_a_deal(dispatcher, bind, contact_ctx):
    outcome = await dispatcher.dispatch(bind("move_stage", {"target_stage": "won"}), contact_ctx)
    assert outcome.status == "error"

    context = contact_ctx.with_patch({"deal": {"id": "d1"}})
    outcome = await dispatcher.dispatch(bind("move_stage", {"target_stage": "won"}), context)
    assert outcome.ok
    assert outcome.context_patch == {"deal": {"stage_id": "won"}}


async def test_assign_prefers_conversation(dispatcher, bind, crm, contact_ctx):
    context = contact_ctx.with_patch({"conversation": {"id": "conv1"}})
    outcome = await dispatcher.dispatch(bind("assign_to", {"user_id": "u7"}), context)
    assert outcome.message == "Assigned to u7"
    assert crm.operations("assign")[0]["entity"] == "conversation"


async def test_create_task(dispatcher, bind, crm, contact_ctx):
    outcome = await dispatcher.dispatch(
        bind("create_task", {"title": "Call {{nome}}", "priority": "high"}), contact_ctx)
    task = crm.operations("create_task")[0]
    assert outcome.message == "Task created"
    assert task["title"] == "Call Ana"
    assert task["contact_id"] == "c1"
    assert outcome.context_patch["last_task_id"] == task["id"]


# ============================================================================
# HTTP handlers
# ============================================================================

def _http_dispatcher(settings, crm, evaluator, status_code, body=None):
    requests = []

    def respond(request):
        requests.append(request)
        return httpx.Response(status_code, json=body if body is not None else {})

    client = httpx.AsyncClient(transport=httpx.MockTransport(respond))
    handlers = build_handler_registry(crm, settings, http_client=client)
    return ActionDispatcher(handlers, evaluator), requests


async def test_webhook_with_response(settings, crm, evaluator, bind, contact_ctx):
    dispatcher, requests = _http_dispatcher(settings, crm, evaluator, 200, {"score": 99})
    node = bind("call_webhook", {"url": "https://hooks.example.com/lead",
                                 "wait_response": "yes"})

    outcome = await dispatcher.dispatch(node, contact_ctx)

    assert outcome.message == "Webhook called successfully"
    assert outcome.context_patch == {"webhook_response": {"score": 99}}
    assert requests[0].method == "POST"
    assert b'"node_type":"call_webhook"' in requests[0].content.replace(b" ", b"")


async def test_webhook_error_status_fails_when_waiting(settings, crm, evaluator, bind, contact_ctx):
    dispatcher, _ = _http_dispatcher(settings, crm, evaluator, 500)
    node = bind("call_webhook", {"url": "https://hooks.example.com/lead", "wait_response": True})

    outcome = await dispatcher.dispatch(node, contact_ctx)
    assert outcome.status == "error"
    assert "HTTP 500" in outcome.message


async def test_webhook_error_status_ignored_when_not_waiting(settings, crm, evaluator, bind,
                                                             contact_ctx):
    dispatcher, _ = _http_dispatcher(settings, crm, evaluator, 500)
    node = bind("call_webhook", {"url": "https://hooks.example.com/lead"})

    outcome = await dispatcher.dispatch(node, contact_ctx)
    assert outcome.ok
    assert outcome.context_patch == {}


async def test_get_webhook_sends_no_body(dispatcher, bind, http_requests, contact_ctx):
    node = bind("call_webhook", {"url": "https://hooks.example.com/ping", "method": "get"})
    await dispatcher.dispatch(node, contact_ctx)
    assert http_requests[0].method == "GET"
    assert http_requests[0].content == b""


async def test_send_to_n8n(dispatcher, bind, http_requests, contact_ctx):
    node = bind("send_to_n8n", {"n8n_url": "https://n8n.example.com/webhook/abc",
                                "wait_response": "yes"})
    outcome = await dispatcher.dispatch(node, contact_ctx)
    assert outcome.message == "Sent to n8n"
    assert outcome.context_patch == {"n8n_response": {"ok": True}}
    assert str(http_requests[0].url) == "https://n8n.example.com/webhook/abc"
