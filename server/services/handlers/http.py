"""HTTP action handlers - call_webhook and send_to_n8n."""

import json
from typing import Any, Dict, Optional

import httpx

from core.logging import get_logger
from services.playbooks.errors import ActionError
from services.playbooks.models import ActionOutcome, ExecutionContext, utc_now_iso

logger = get_logger(__name__)


def _payload(node_type: str, context: ExecutionContext) -> Dict[str, Any]:
    return {
        "event": "playbook_action",
        "node_type": node_type,
        "sent_at": utc_now_iso(),
        "contact": context.contact,
        "deal": context.deal,
        "conversation": context.conversation,
        "variables": context.variables,
        "trigger": context.trigger,
    }


async def _call(client: httpx.AsyncClient, method: str, url: str, node_type: str,
                context: ExecutionContext, wait_response: bool,
                timeout: float) -> Optional[Any]:
    """Send the context to an external endpoint.

    With wait_response the call fails on an error status and the parsed
    body is returned; otherwise only transport errors fail it.

    Raises:
        ActionError: Timeout, transport error, or (wait_response) HTTP error status
    """
    kwargs: Dict[str, Any] = {"timeout": timeout}
    if method != "GET":
        kwargs["json"] = _payload(node_type, context)

    logger.info("[HTTP Action] Executing", node_type=node_type, method=method, url=url)
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException:
        raise ActionError(f"Request timed out after {timeout:g} seconds")
    except httpx.HTTPError as e:
        raise ActionError(f"Request failed: {e}")

    if not wait_response:
        if response.status_code >= 400:
            logger.warning("[HTTP Action] Endpoint returned an error", url=url,
                           status=response.status_code)
        return None

    if response.status_code >= 400:
        raise ActionError(f"Endpoint returned HTTP {response.status_code}")
    try:
        return response.json()
    except json.JSONDecodeError:
        return response.text


async def handle_call_webhook(params, context: ExecutionContext, *,
                              client: httpx.AsyncClient, default_timeout: float = 15.0) -> ActionOutcome:
    data = await _call(client, params.method, str(params.url), params.type, context,
                       params.wait_response, params.timeout or default_timeout)
    patch = {"webhook_response": data} if params.wait_response else {}
    return ActionOutcome.success("Webhook called successfully", patch)


async def handle_send_to_n8n(params, context: ExecutionContext, *,
                             client: httpx.AsyncClient, default_timeout: float = 15.0) -> ActionOutcome:
    data = await _call(client, "POST", str(params.n8n_url), params.type, context,
                       params.wait_response, params.timeout or default_timeout)
    patch = {"n8n_response": data} if params.wait_response else {}
    return ActionOutcome.success("Sent to n8n", patch)
