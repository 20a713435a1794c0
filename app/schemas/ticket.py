"""
Ticket Workflow Schemas.

Pydantic schemas for ticket creation, workflow actions and responses.
"""
from datetime import datetime
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field

from app.schemas.base import BaseResponseSchema, BaseCreateSchema


# ============== Create Schemas ==============

class TicketCreate(BaseCreateSchema):
    """Schema for reporting a new abnormal finding."""
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    production_unit_id: int = Field(..., description="PUNO of the production unit")
    schedule_finish: Optional[datetime] = None


# ============== Action Schemas ==============

class ActionPayload(BaseCreateSchema):
    """
    Payload for a workflow action. Fields are read by the actions that use them:

    - reject: rejection_reason, escalate_to_l3
    - plan: assigned_to, schedule_start, schedule_finish (required)
    - reassign: assigned_to (required), schedule_start, schedule_finish
    - escalate: escalate_to
    - any: notes
    """
    notes: Optional[str] = Field(None, max_length=500)
    rejection_reason: Optional[str] = Field(None, max_length=500)
    escalate_to_l3: Optional[bool] = Field(
        None,
        description="reject only; false rejects an open ticket as final"
    )
    assigned_to: Optional[int] = None
    escalate_to: Optional[int] = None
    schedule_start: Optional[datetime] = None
    schedule_finish: Optional[datetime] = None


class ActionError(BaseModel):
    """Error detail of a failed action."""
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class ActionResult(BaseModel):
    """Outcome of a workflow action as returned to the caller."""
    success: bool
    ticket_id: Optional[int] = None
    old_status: Optional[str] = None
    new_status: Optional[str] = None
    error: Optional[ActionError] = None


# ============== Response Schemas ==============

class StatusHistoryResponse(BaseResponseSchema):
    """Response schema for a status history row."""
    id: int
    ticket_id: int
    old_status: Optional[str] = None
    new_status: str
    action: str
    changed_by: int
    changed_to: Optional[int] = None
    notes: Optional[str] = None
    created_at: datetime


class TicketResponse(BaseResponseSchema):
    """Response schema for a ticket."""
    id: int
    ticket_number: str
    title: str
    description: Optional[str] = None
    status: str
    production_unit_id: int

    created_by: int
    assigned_to: Optional[int] = None
    escalated_to: Optional[int] = None

    schedule_start: Optional[datetime] = None
    schedule_finish: Optional[datetime] = None

    accepted_at: Optional[datetime] = None
    planned_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    escalated_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    reopened_at: Optional[datetime] = None

    rejection_reason: Optional[str] = None
    escalation_reason: Optional[str] = None
    finish_notes: Optional[str] = None

    created_at: datetime
    updated_at: datetime


class TicketDetailResponse(TicketResponse):
    """Ticket with its allowed next actions."""
    allowed_actions: List[str] = Field(default_factory=list)


class PendingTicketResponse(BaseModel):
    """A ticket waiting for the person, tagged with why."""
    ticket_id: int
    ticket_number: str
    title: str
    status: str
    production_unit_id: int
    user_relationship: str
    schedule_finish: Optional[datetime] = None
    created_at: datetime


class PendingTicketListResponse(BaseModel):
    items: List[PendingTicketResponse]
    total: int
