"""Messaging action handlers - WhatsApp and e-mail."""

from core.logging import get_logger
from models.nodes import SendMessageParams
from services.playbooks.errors import ActionError
from services.playbooks.models import ActionOutcome, ExecutionContext
from services.playbooks.templates import render_template

logger = get_logger(__name__)

_CHANNELS = {
    "send_whatsapp": ("whatsapp", "phone", "Message sent successfully"),
    "send_email": ("email", "email", "Email sent successfully"),
}


async def handle_send_message(params: SendMessageParams, context: ExecutionContext,
                              *, crm) -> ActionOutcome:
    """Send a templated message to the contact of the run.

    The message and subject go through template substitution
    ({{nome}}, {{deal.title}}, ...) before delivery.

    Raises:
        ActionError: Contact has no address on the channel
    """
    channel, address_field, success_message = _CHANNELS[params.type]
    if not context.contact.get(address_field):
        raise ActionError(f"Contact has no {address_field} for {channel}")

    text = render_template(params.message, context)
    subject = render_template(params.subject, context) if params.subject else None

    await crm.send_message(channel, context.contact, context.conversation, text, subject=subject)
    logger.info("Message sent", channel=channel, contact_id=context.contact_id,
                length=len(text))
    return ActionOutcome.success(success_message, {"last_message": text})
