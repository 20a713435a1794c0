"""
Workflow exception hierarchy.

Every error carries a machine-readable ``code`` and the HTTP status the API
answers with, plus structured data for the response body:

    WorkflowError
    +-- ResourceNotFound             404  NOT_FOUND (also a LookupError)
    |   +-- TicketNotFound           404  TICKET_NOT_FOUND
    +-- InvalidTransition            409  INVALID_TRANSITION
    +-- InsufficientApprovalLevel    403  INSUFFICIENT_APPROVAL_LEVEL
    |   +-- NotTicketParticipant     403  NOT_TICKET_PARTICIPANT
    +-- InvalidActionPayload         422  INVALID_ACTION_PAYLOAD
    +-- PersistenceError             500  PERSISTENCE_ERROR

Recovered locally (logged / recorded, never surfaced to the caller of an
action):

    +-- NotificationDeliveryError        NOTIFICATION_DELIVERY_FAILED
    +-- ExternalSyncError                EXTERNAL_SYNC_FAILED
    +-- RecipientResolutionError         RECIPIENT_RESOLUTION_FAILED
"""
from typing import Any, Dict, Optional


class WorkflowError(Exception):
    """Base class for ticket workflow errors."""

    code: str = "WORKFLOW_ERROR"
    status_code: int = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class ResourceNotFound(WorkflowError, LookupError):
    code = "NOT_FOUND"
    status_code = 404


class TicketNotFound(ResourceNotFound):
    code = "TICKET_NOT_FOUND"

    def __init__(self, ticket_id: int):
        super().__init__(f"Ticket {ticket_id} not found")
        self.ticket_id = ticket_id


class InvalidTransition(WorkflowError):
    """No edge for this action from the ticket's current status."""

    code = "INVALID_TRANSITION"
    status_code = 409

    def __init__(self, current_status: str, action: str, allowed_actions: Optional[list] = None):
        allowed_actions = allowed_actions or []
        if allowed_actions:
            message = (
                f"Cannot '{action}' a ticket in '{current_status}' status. "
                f"Allowed actions: {', '.join(allowed_actions)}"
            )
        else:
            message = f"Cannot '{action}' a ticket in '{current_status}' status. This is a terminal state."
        super().__init__(message)
        self.current_status = current_status
        self.action = action
        self.allowed_actions = allowed_actions

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(
            current_status=self.current_status,
            action=self.action,
            allowed_actions=self.allowed_actions,
        )
        return data


class InsufficientApprovalLevel(WorkflowError):
    """Actor's effective level for the ticket scope is below the requirement."""

    code = "INSUFFICIENT_APPROVAL_LEVEL"
    status_code = 403

    def __init__(self, action: str, actor_level: int, required_level: int, message: Optional[str] = None):
        super().__init__(
            message
            or f"Action '{action}' requires approval level {required_level} for this location "
               f"(actor has level {actor_level})"
        )
        self.action = action
        self.actor_level = actor_level
        self.required_level = required_level

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(
            action=self.action,
            actor_level=self.actor_level,
            required_level=self.required_level,
        )
        return data


class NotTicketParticipant(InsufficientApprovalLevel):
    """Action is reserved for a specific participant (assignee / creator)."""

    code = "NOT_TICKET_PARTICIPANT"

    def __init__(self, action: str, actor_level: int, required_level: int, participant: str):
        super().__init__(
            action,
            actor_level,
            required_level,
            message=f"Only the ticket {participant} can perform '{action}'",
        )
        self.participant = participant


class InvalidActionPayload(WorkflowError):
    code = "INVALID_ACTION_PAYLOAD"
    status_code = 422


class PersistenceError(WorkflowError):
    """The status write / history insert transaction failed and was rolled back."""

    code = "PERSISTENCE_ERROR"
    status_code = 500


class NotificationDeliveryError(WorkflowError):
    code = "NOTIFICATION_DELIVERY_FAILED"
    status_code = 502


class ExternalSyncError(WorkflowError):
    code = "EXTERNAL_SYNC_FAILED"
    status_code = 502


class RecipientResolutionError(WorkflowError):
    code = "RECIPIENT_RESOLUTION_FAILED"
    status_code = 500
