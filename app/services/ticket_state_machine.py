"""
Ticket State Machine

This module is the SINGLE SOURCE OF TRUTH for ticket status transitions.
All status changes must go through this module.

Each transition is a rule: (current status, action) -> new status, with the
minimum approval level the actor must hold for the ticket's location and,
for some actions, the ticket participant who must perform it.
"""

import enum
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from app.core.exceptions import (
    InsufficientApprovalLevel,
    InvalidActionPayload,
    InvalidTransition,
    NotTicketParticipant,
)
from app.models.ticket import ActionType, TicketStatus


class Participant(str, enum.Enum):
    """Ticket field an actor may be matched against."""
    ASSIGNEE = "assignee"
    CREATOR = "creator"


@dataclass(frozen=True)
class TransitionRule:
    """
    One edge of the workflow.

    required_participant: actor must be this participant AND hold min_level.
    bypass_participant: this participant may act regardless of level; anyone
        else needs min_level.
    """
    from_status: TicketStatus
    action: ActionType
    to_status: TicketStatus
    min_level: int
    required_participant: Optional[Participant] = None
    bypass_participant: Optional[Participant] = None


# =============================================================================
# TRANSITION RULES
# =============================================================================

S = TicketStatus
A = ActionType

_RULES: Tuple[TransitionRule, ...] = (
    TransitionRule(S.OPEN, A.ACCEPT, S.ACCEPTED, 2),
    TransitionRule(S.REJECTED_PENDING_L3_REVIEW, A.ACCEPT, S.ACCEPTED, 3),

    # escalate_to_l3=false sends an open ticket straight to rejected_final
    TransitionRule(S.OPEN, A.REJECT, S.REJECTED_PENDING_L3_REVIEW, 2),
    TransitionRule(S.REJECTED_PENDING_L3_REVIEW, A.REJECT, S.REJECTED_FINAL, 3),

    TransitionRule(S.ACCEPTED, A.PLAN, S.PLANED, 2),

    TransitionRule(S.PLANED, A.START, S.IN_PROGRESS, 2,
                   required_participant=Participant.ASSIGNEE),

    TransitionRule(S.IN_PROGRESS, A.FINISH, S.FINISHED, 2,
                   required_participant=Participant.ASSIGNEE),
    TransitionRule(S.REOPENED_IN_PROGRESS, A.FINISH, S.FINISHED, 2,
                   required_participant=Participant.ASSIGNEE),

    TransitionRule(S.ACCEPTED, A.ESCALATE, S.ESCALATED, 2),
    TransitionRule(S.PLANED, A.ESCALATE, S.ESCALATED, 2),
    TransitionRule(S.IN_PROGRESS, A.ESCALATE, S.ESCALATED, 2),
    TransitionRule(S.REOPENED_IN_PROGRESS, A.ESCALATE, S.ESCALATED, 2),

    TransitionRule(S.FINISHED, A.APPROVE_REVIEW, S.REVIEWED, 4),

    TransitionRule(S.REVIEWED, A.APPROVE_CLOSE, S.CLOSED, 4,
                   bypass_participant=Participant.CREATOR),

    TransitionRule(S.REJECTED_PENDING_L3_REVIEW, A.REASSIGN, S.IN_PROGRESS, 3),
    TransitionRule(S.ESCALATED, A.REASSIGN, S.IN_PROGRESS, 3),

    TransitionRule(S.CLOSED, A.REOPEN, S.REOPENED_IN_PROGRESS, 3,
                   bypass_participant=Participant.CREATOR),
    TransitionRule(S.REJECTED_FINAL, A.REOPEN, S.REOPENED_IN_PROGRESS, 3,
                   bypass_participant=Participant.CREATOR),
)

TICKET_TRANSITIONS: Dict[Tuple[TicketStatus, ActionType], TransitionRule] = {
    (rule.from_status, rule.action): rule for rule in _RULES
}

# Actions that move an existing ticket (CREATE opens one and has no edge)
TRANSITION_ACTIONS: Tuple[ActionType, ...] = tuple(a for a in ActionType if a is not ActionType.CREATE)

TERMINAL_STATUSES = frozenset({TicketStatus.CLOSED, TicketStatus.REJECTED_FINAL})

_unmapped = [a.value for a in TRANSITION_ACTIONS if not any(r.action is a for r in _RULES)]
if _unmapped:
    raise RuntimeError(f"Ticket actions without a transition rule: {', '.join(_unmapped)}")


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def _status(value) -> Optional[TicketStatus]:
    try:
        return TicketStatus(value)
    except ValueError:
        return None


def get_rule(current_status, action) -> Optional[TransitionRule]:
    """Rule for (status, action), or None when there is no such edge."""
    status = _status(current_status)
    if status is None:
        return None
    return TICKET_TRANSITIONS.get((status, ActionType(action)))


def get_allowed_actions(current_status) -> List[ActionType]:
    """Actions that have an edge out of the given status."""
    status = _status(current_status)
    return [rule.action for rule in _RULES if rule.from_status is status]


# =============================================================================
# GUARD
# =============================================================================

def _is_participant(ticket, participant: Participant, actor_id: int) -> bool:
    if participant is Participant.ASSIGNEE:
        return ticket.assigned_to is not None and ticket.assigned_to == actor_id
    return ticket.created_by == actor_id


def validate_transition(ticket, action, actor_id: int, actor_level: int) -> TransitionRule:
    """
    Validate that ``actor_id`` (holding ``actor_level`` for the ticket's
    location) may perform ``action`` on ``ticket`` right now.

    Raises:
        InvalidTransition: no edge for the action from the current status
        InsufficientApprovalLevel: actor level below the rule's minimum
        NotTicketParticipant: action reserved for the assignee
    """
    action = ActionType(action)
    rule = get_rule(ticket.status, action)
    if rule is None:
        raise InvalidTransition(
            ticket.status,
            action.value,
            [a.value for a in get_allowed_actions(ticket.status)],
        )

    if rule.bypass_participant and _is_participant(ticket, rule.bypass_participant, actor_id):
        return rule

    if actor_level < rule.min_level:
        raise InsufficientApprovalLevel(action.value, actor_level, rule.min_level)

    if rule.required_participant and not _is_participant(ticket, rule.required_participant, actor_id):
        raise NotTicketParticipant(action.value, actor_level, rule.min_level, rule.required_participant.value)

    return rule


def resolve_target(rule: TransitionRule, payload) -> TicketStatus:
    """Target status of a validated rule, taking payload switches into account."""
    if (
        rule.action is ActionType.REJECT
        and rule.from_status is TicketStatus.OPEN
        and payload is not None
        and payload.escalate_to_l3 is False
    ):
        return TicketStatus.REJECTED_FINAL
    return rule.to_status


# =============================================================================
# PAYLOAD REQUIREMENTS
# =============================================================================

def validate_payload(action, payload) -> None:
    """Check fields an action cannot run without. Raises InvalidActionPayload."""
    action = ActionType(action)
    if action is ActionType.PLAN:
        missing = [
            name for name in ("assigned_to", "schedule_start", "schedule_finish")
            if payload is None or getattr(payload, name) is None
        ]
        if missing:
            raise InvalidActionPayload(f"Plan requires: {', '.join(missing)}")
        if payload.schedule_finish < payload.schedule_start:
            raise InvalidActionPayload("schedule_finish must not be before schedule_start")
    elif action is ActionType.REASSIGN:
        if payload is None or payload.assigned_to is None:
            raise InvalidActionPayload("Reassign requires: assigned_to")


# =============================================================================
# TRANSITION EXECUTOR
# =============================================================================

def transition_ticket(ticket, rule: TransitionRule, actor_id: int, payload=None,
                      now: Optional[datetime] = None) -> TicketStatus:
    """
    Move a validated ticket to its new status.

    This function:
    1. Resolves the target status
    2. Updates the status
    3. Sets the audit / action fields for the transition

    Returns the new status. Does not write history; the caller records it in
    the same transaction.
    """
    new_status = resolve_target(rule, payload)
    now = now or datetime.now(timezone.utc)
    notes = payload.notes if payload is not None else None

    ticket.status = new_status.value

    if rule.action is ActionType.ACCEPT:
        ticket.accepted_at = now
        ticket.accepted_by = actor_id
        if payload is not None and payload.schedule_finish is not None:
            ticket.schedule_finish = payload.schedule_finish

    elif rule.action is ActionType.REJECT:
        ticket.rejected_at = now
        ticket.rejected_by = actor_id
        ticket.rejection_reason = (payload.rejection_reason or notes) if payload is not None else None

    elif rule.action is ActionType.PLAN:
        ticket.planned_at = now
        ticket.planned_by = actor_id
        ticket.assigned_to = payload.assigned_to
        ticket.schedule_start = payload.schedule_start
        ticket.schedule_finish = payload.schedule_finish

    elif rule.action is ActionType.START:
        ticket.started_at = now

    elif rule.action is ActionType.FINISH:
        ticket.finished_at = now
        ticket.finish_notes = notes

    elif rule.action is ActionType.ESCALATE:
        ticket.escalated_at = now
        ticket.escalated_by = actor_id
        ticket.escalation_reason = notes
        if payload is not None and payload.escalate_to is not None:
            ticket.escalated_to = payload.escalate_to

    elif rule.action is ActionType.APPROVE_REVIEW:
        ticket.reviewed_at = now
        ticket.reviewed_by = actor_id

    elif rule.action is ActionType.APPROVE_CLOSE:
        ticket.closed_at = now
        ticket.closed_by = actor_id

    elif rule.action is ActionType.REASSIGN:
        ticket.assigned_to = payload.assigned_to
        ticket.escalated_to = None
        if payload.schedule_start is not None:
            ticket.schedule_start = payload.schedule_start
        if payload.schedule_finish is not None:
            ticket.schedule_finish = payload.schedule_finish

    elif rule.action is ActionType.REOPEN:
        ticket.reopened_at = now
        ticket.reopened_by = actor_id

    return new_status
