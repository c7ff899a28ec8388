"""Action handlers for playbook nodes.

This package contains the production handlers organized by category:
- messaging.py: send_whatsapp, send_email
- crm.py: create_task, move_stage, add_label, assign_to, notify_user,
  update_score, update_field, add_note
- http.py: call_webhook, send_to_n8n

``wait`` and ``loop_until`` are handled by the dispatcher itself.
"""

from functools import partial
from typing import Dict, Optional

import httpx

from core.config import Settings

# Messaging handlers
from .messaging import (
    handle_send_message,
)

# CRM handlers
from .crm import (
    context_patch_for,
    handle_create_task,
    handle_move_stage,
    handle_add_label,
    handle_assign_to,
    handle_notify_user,
    handle_update_score,
    handle_update_field,
    handle_add_note,
)

# HTTP handlers
from .http import (
    handle_call_webhook,
    handle_send_to_n8n,
)


def build_handler_registry(crm, settings: Settings,
                           http_client: Optional[httpx.AsyncClient] = None) -> Dict:
    """Handler table keyed on action type, with dependencies bound via partial."""
    client = http_client or httpx.AsyncClient(timeout=settings.webhook_timeout)
    http_kwargs = {"client": client, "default_timeout": settings.webhook_timeout}

    return {
        'send_whatsapp': partial(handle_send_message, crm=crm),
        'send_email': partial(handle_send_message, crm=crm),
        'create_task': partial(handle_create_task, crm=crm),
        'move_stage': partial(handle_move_stage, crm=crm),
        'add_label': partial(handle_add_label, crm=crm),
        'assign_to': partial(handle_assign_to, crm=crm),
        'notify_user': partial(handle_notify_user, crm=crm),
        'update_score': partial(handle_update_score, crm=crm),
        'update_field': partial(handle_update_field, crm=crm),
        'add_note': partial(handle_add_note, crm=crm),
        'call_webhook': partial(handle_call_webhook, **http_kwargs),
        'send_to_n8n': partial(handle_send_to_n8n, **http_kwargs),
    }


__all__ = [
    'build_handler_registry',
    'context_patch_for',
    'handle_send_message',
    'handle_create_task',
    'handle_move_stage',
    'handle_add_label',
    'handle_assign_to',
    'handle_notify_user',
    'handle_update_score',
    'handle_update_field',
    'handle_add_note',
    'handle_call_webhook',
    'handle_send_to_n8n',
]
