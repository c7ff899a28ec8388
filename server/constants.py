"""Centralized constants for playbook node kinds, types and branches.

This module provides a single source of truth for the node catalog,
shared by the registry, the graph validator, the engine and the API.
"""

from typing import Dict, FrozenSet, Tuple

# =============================================================================
# NODE KINDS
# =============================================================================

KIND_TRIGGER = 'trigger'
KIND_CONDITION = 'condition'
KIND_ACTION = 'action'

NODE_KINDS: FrozenSet[str] = frozenset([
    KIND_TRIGGER,
    KIND_CONDITION,
    KIND_ACTION,
])

# Id given to the trigger placeholder of a freshly created playbook
START_NODE_ID = 'start'

# =============================================================================
# TRIGGER TYPES
# =============================================================================

# Fired by external events (message bus, CRM data-change listeners, webhooks)
EVENT_TRIGGER_TYPES: FrozenSet[str] = frozenset([
    'new_message',
    'deal_created',
    'stage_changed',
    'time_inactive',
    'score_reached',
    'score_changed',
    'contact_birthday',
    'label_added',
    'proposal_viewed',
    'proposal_accepted',
    'proposal_rejected',
    'sla_exceeded',
    'webhook_received',
])

# Fired by the APScheduler-backed trigger manager
SCHEDULED_TRIGGER_TYPES: FrozenSet[str] = frozenset([
    'cron_schedule',
    'specific_date',
])

TRIGGER_TYPES: FrozenSet[str] = (
    frozenset(['manual']) |
    EVENT_TRIGGER_TYPES |
    SCHEDULED_TRIGGER_TYPES
)

# =============================================================================
# CONDITION TYPES
# =============================================================================

BRANCH_YES = 'yes'
BRANCH_NO = 'no'
BRANCH_A = 'A'
BRANCH_B = 'B'

# Conditions that pick exactly one of yes/no
BINARY_CONDITION_TYPES: FrozenSet[str] = frozenset([
    'if_then',
    'advanced_condition',
    'check_hours',
    'check_assignment',
    'check_label',
])

CONDITION_TYPES: FrozenSet[str] = BINARY_CONDITION_TYPES | frozenset([
    'randomize',
    'split',
    'stop_if',
])

# Named predicates understood by stop_if (and by loop stop conditions)
STOP_PREDICATES: FrozenSet[str] = frozenset([
    'deal_lost',
    'deal_won',
    'contact_blocked',
    'unsubscribed',
])

# =============================================================================
# ACTION TYPES
# =============================================================================

BRANCH_LOOP = 'loop'
BRANCH_DONE = 'done'

MESSAGE_ACTION_TYPES: FrozenSet[str] = frozenset([
    'send_whatsapp',
    'send_email',
])

CRM_ACTION_TYPES: FrozenSet[str] = frozenset([
    'create_task',
    'move_stage',
    'add_label',
    'assign_to',
    'notify_user',
    'update_score',
    'update_field',
    'add_note',
])

# Actions that perform outbound network I/O
HTTP_ACTION_TYPES: FrozenSet[str] = frozenset([
    'call_webhook',
    'send_to_n8n',
])

# Actions whose semantics the engine enforces itself (no injected handler)
BUILTIN_ACTION_TYPES: FrozenSet[str] = frozenset([
    'wait',
    'loop_until',
])

ACTION_TYPES: FrozenSet[str] = (
    MESSAGE_ACTION_TYPES |
    CRM_ACTION_TYPES |
    HTTP_ACTION_TYPES |
    BUILTIN_ACTION_TYPES
)

# =============================================================================
# BRANCHES PER TYPE
# =============================================================================

# Branches a node can produce, and the subset that must have an outbound edge.
# Types not listed here have a single unlabeled successor set.
NODE_BRANCHES: Dict[str, Tuple[str, ...]] = {
    **{t: (BRANCH_YES, BRANCH_NO) for t in BINARY_CONDITION_TYPES},
    'randomize': (BRANCH_A, BRANCH_B),
    'loop_until': (BRANCH_LOOP, BRANCH_DONE),
}

REQUIRED_BRANCHES: Dict[str, Tuple[str, ...]] = {
    **{t: (BRANCH_YES, BRANCH_NO) for t in BINARY_CONDITION_TYPES},
    'randomize': (BRANCH_A, BRANCH_B),
    'loop_until': (BRANCH_LOOP,),
}

# =============================================================================
# WAIT UNITS
# =============================================================================

WAIT_UNIT_SECONDS: Dict[str, int] = {
    'minutes': 60,
    'hours': 3600,
    'days': 86400,
}


def kind_of(node_type: str) -> str:
    """Return the node kind a type belongs to, or '' if unknown."""
    if node_type in TRIGGER_TYPES:
        return KIND_TRIGGER
    if node_type in CONDITION_TYPES:
        return KIND_CONDITION
    if node_type in ACTION_TYPES:
        return KIND_ACTION
    return ''
