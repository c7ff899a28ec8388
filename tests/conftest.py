"""
Playbook engine - test infrastructure (conftest.py)

Provides:
  - Settings on a temporary SQLite file, SQLite-backed cache
  - Database, RunStore, registry and evaluator fixtures
  - Recording CRM gateway and mock HTTP transport
  - Engine and simulator factories
  - Scenario graph builders
"""

import random

import httpx
import pytest

from constants import kind_of
from core.cache import CacheService
from core.config import Settings
from core.database import Database
from core.logging import configure_logging
from services import scheduler
from services.crm import InMemoryCRMGateway
from services.handlers import build_handler_registry
from services.playbooks.cache import RunStore
from services.playbooks.conditions import ConditionEvaluator
from services.playbooks.dispatcher import ActionDispatcher
from services.playbooks.engine import PlaybookEngine
from services.playbooks.graph import Node, Playbook
from services.playbooks.registry import NodeTypeRegistry
from services.playbooks.simulator import Simulator


# ============================================================================
# Environment
# ============================================================================

@pytest.fixture(scope="session", autouse=True)
def quiet_logging():
    configure_logging(Settings(log_level="WARNING"))


@pytest.fixture(autouse=True)
def fresh_scheduler():
    """Every test gets its own (unstarted) APScheduler instance."""
    scheduler.reset_scheduler()
    yield
    scheduler.reset_scheduler()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'playbooks.db'}",
        redis_enabled=False,
        action_timeout=5.0,
        webhook_timeout=5.0,
    )


# ============================================================================
# Storage
# ============================================================================

@pytest.fixture
async def database(settings):
    db = Database(settings)
    await db.startup()
    yield db
    await db.shutdown()


@pytest.fixture
async def cache(settings, database):
    service = CacheService(settings, database)
    await service.startup()
    yield service
    await service.shutdown()


@pytest.fixture
def run_store(cache):
    return RunStore(cache)


# ============================================================================
# Engine collaborators
# ============================================================================

@pytest.fixture
def registry():
    return NodeTypeRegistry(max_loop_iterations=100)


@pytest.fixture
def evaluator():
    return ConditionEvaluator(rng=random.Random(1234))


@pytest.fixture
def crm():
    return InMemoryCRMGateway()


@pytest.fixture
def http_requests():
    """Requests seen by the mock HTTP transport."""
    return []


@pytest.fixture
def http_client(http_requests):
    def respond(request: httpx.Request) -> httpx.Response:
        http_requests.append(request)
        return httpx.Response(200, json={"ok": True})

    return httpx.AsyncClient(transport=httpx.MockTransport(respond))


@pytest.fixture
def handlers(crm, settings, http_client):
    return build_handler_registry(crm, settings, http_client=http_client)


@pytest.fixture
def dispatcher(handlers, evaluator):
    return ActionDispatcher(handlers, evaluator, default_timeout=5.0)


@pytest.fixture
def make_engine(database, run_store, registry, evaluator, handlers):
    """Engine factory; pass handlers to override individual action types."""
    def factory(overrides=None, status_callback=None, default_timeout=5.0):
        table = {**handlers, **(overrides or {})}
        dispatcher = ActionDispatcher(table, evaluator, default_timeout=default_timeout)
        return PlaybookEngine(database, run_store, dispatcher, evaluator, registry,
                              status_callback=status_callback)
    return factory


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture
def simulator(registry, evaluator, dispatcher):
    return Simulator(registry, evaluator, dispatcher)


# ============================================================================
# Graph builders
# ============================================================================

def _build_playbook(nodes=(), edges=(), trigger_type="manual", trigger_config=None,
                    name="Test playbook"):
    """Playbook from (id, type, config) nodes and (source, target[, branch]) edges."""
    playbook = Playbook.create(name, trigger_type=trigger_type, trigger_config=trigger_config)
    for node_id, node_type, config in nodes:
        playbook.add_node(Node(node_id, kind_of(node_type), node_type,
                               label=node_type, config=config))
    for edge in edges:
        source, target, *branch = edge
        playbook.connect(source, target, branch[0] if branch else None)
    return playbook


@pytest.fixture
def build_playbook():
    return _build_playbook


@pytest.fixture
def save_active(database, registry):
    """Activate a playbook and persist it."""
    async def save(playbook):
        playbook.activate(registry)
        assert await database.save_playbook(playbook)
        return playbook
    return save


@pytest.fixture
def lead_score_playbook():
    """time_inactive -> if_then(lead_score > 80) -> yes: whatsapp / no: task."""
    def build():
        return _build_playbook(
            nodes=[
                ("check", "if_then", {"field": "lead_score", "operator": "greater", "value": 80}),
                ("msg", "send_whatsapp", {"message": "Oi {{nome}}"}),
                ("task", "create_task", {"title": "Follow up"}),
            ],
            edges=[
                ("start", "check"),
                ("check", "msg", "yes"),
                ("check", "task", "no"),
            ],
            trigger_type="time_inactive",
            trigger_config={"days": 3},
        )
    return build


@pytest.fixture
def loop_playbook():
    """manual -> loop_until(message_count > 5, max 3) -> loop: note -> back / done: task."""
    def build(max_iterations=3, stop_condition="message_count > 5"):
        return _build_playbook(
            nodes=[
                ("loop", "loop_until", {"stop_condition": stop_condition,
                                        "max_iterations": max_iterations}),
                ("note", "add_note", {"note": "Still waiting"}),
                ("done", "create_task", {"title": "Loop finished"}),
            ],
            edges=[
                ("start", "loop"),
                ("loop", "note", "loop"),
                ("note", "loop"),
                ("loop", "done", "done"),
            ],
        )
    return build


def contact_context(**contact):
    return {"contact": {"id": "c1", "name": "Ana", "phone": "+5511999990000", **contact}}


@pytest.fixture
def make_context():
    return contact_context
