"""CRM gateway used by the playbook action handlers.

The engine never talks to CRM storage directly: every side effect of an
action (message, task, stage move, note, ...) goes through a gateway.
InMemoryCRMGateway keeps what it was asked to do in memory and logs it;
deployments plug their own implementation into the container.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol

from core.logging import get_logger

logger = get_logger(__name__)


class CRMGateway(Protocol):
    """Side effects available to action handlers."""

    async def send_message(self, channel: str, contact: Dict[str, Any],
                           conversation: Dict[str, Any], text: str,
                           subject: Optional[str] = None) -> Dict[str, Any]: ...

    async def create_task(self, title: str, due_at: datetime, priority: str,
                          task_type: str, assigned_to: Optional[str],
                          contact_id: Optional[str], deal_id: Optional[str]) -> Dict[str, Any]: ...

    async def move_deal_stage(self, deal_id: str, stage_id: str) -> Dict[str, Any]: ...

    async def add_label(self, contact_id: str, label_id: str) -> Dict[str, Any]: ...

    async def assign(self, entity: str, entity_id: str, user_id: str) -> Dict[str, Any]: ...

    async def notify_user(self, user_id: Optional[str], title: str,
                          message: str) -> Dict[str, Any]: ...

    async def update_score(self, contact_id: str, score: int) -> Dict[str, Any]: ...

    async def update_field(self, entity: str, entity_id: str, field_name: str,
                           value: Any) -> Dict[str, Any]: ...

    async def add_note(self, contact_id: Optional[str], deal_id: Optional[str],
                       note: str) -> Dict[str, Any]: ...


class InMemoryCRMGateway:
    """Gateway that records every call.

    Each call is appended to ``calls`` as ``(operation, payload)``.
    """

    def __init__(self):
        self.calls: List[tuple] = []

    def _record(self, operation: str, **payload) -> Dict[str, Any]:
        record = {"id": str(uuid.uuid4()), **payload}
        self.calls.append((operation, record))
        logger.info("CRM operation", operation=operation,
                    **{k: v for k, v in payload.items() if isinstance(v, (str, int, float, bool))})
        return record

    def operations(self, operation: Optional[str] = None) -> List[Dict[str, Any]]:
        return [payload for op, payload in self.calls if operation is None or op == operation]

    async def send_message(self, channel, contact, conversation, text, subject=None):
        return self._record("send_message", channel=channel, contact_id=contact.get("id"),
                            conversation_id=conversation.get("id"), text=text, subject=subject)

    async def create_task(self, title, due_at, priority, task_type, assigned_to,
                          contact_id, deal_id):
        return self._record("create_task", title=title, due_at=due_at.isoformat(),
                            priority=priority, task_type=task_type, assigned_to=assigned_to,
                            contact_id=contact_id, deal_id=deal_id)

    async def move_deal_stage(self, deal_id, stage_id):
        return self._record("move_deal_stage", deal_id=deal_id, stage_id=stage_id)

    async def add_label(self, contact_id, label_id):
        return self._record("add_label", contact_id=contact_id, label_id=label_id)

    async def assign(self, entity, entity_id, user_id):
        return self._record("assign", entity=entity, entity_id=entity_id, user_id=user_id)

    async def notify_user(self, user_id, title, message):
        return self._record("notify_user", user_id=user_id, title=title, message=message)

    async def update_score(self, contact_id, score):
        return self._record("update_score", contact_id=contact_id, score=score)

    async def update_field(self, entity, entity_id, field_name, value):
        return self._record("update_field", entity=entity, entity_id=entity_id,
                            field_name=field_name, value=value)

    async def add_note(self, contact_id, deal_id, note):
        return self._record("add_note", contact_id=contact_id, deal_id=deal_id, note=note)


def due_date(days: int, now: Optional[datetime] = None) -> datetime:
    return (now or datetime.now(timezone.utc)) + timedelta(days=days)
