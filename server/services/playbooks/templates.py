"""Template variable substitution for message-like action fields.

Placeholders look like ``{{nome}}`` or ``{{deal.stage_id}}``. Unknown
placeholders are left untouched so operators can spot them in the
delivered text.
"""

import re
from typing import Any, Callable, Dict

from services.playbooks.models import MISSING, ExecutionContext

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")


def _format_value(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


# Shorthand variables used by the message composer
_ALIASES: Dict[str, Callable[[ExecutionContext], Any]] = {
    "nome": lambda ctx: ctx.contact.get("name") or "Cliente",
    "empresa": lambda ctx: ctx.contact.get("company") or "",
    "titulo": lambda ctx: ctx.deal.get("title") or "",
    "valor": lambda ctx: ctx.deal.get("value") if ctx.deal.get("value") is not None else "0",
}


def render_template(text: str, context: ExecutionContext) -> str:
    """Substitute ``{{...}}`` placeholders from the execution context."""
    if not text or "{{" not in text:
        return text

    def replace(match: "re.Match") -> str:
        name = match.group(1)
        alias = _ALIASES.get(name)
        if alias is not None:
            return _format_value(alias(context))
        value = context.lookup(name)
        if value is MISSING:
            return match.group(0)
        return _format_value(value)

    return _PLACEHOLDER_RE.sub(replace, text)
