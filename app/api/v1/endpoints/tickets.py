"""
Abnormal Finding Ticket API Endpoints.

Provides:
- Report a finding (create ticket)
- Ticket detail with the caller's allowed actions
- Status history
- Workflow actions (accept, reject, plan, start, finish, escalate,
  approve_review, approve_close, reassign, reopen)
- Pending tickets of the caller
"""
from typing import List, Optional

from fastapi import APIRouter, Body, Query, status

from app.api.deps import CurrentPerson, Orchestrator, OptionalPersonId
from app.models.ticket import ActionType
from app.schemas.ticket import (
    ActionPayload,
    ActionResult,
    PendingTicketListResponse,
    PendingTicketResponse,
    StatusHistoryResponse,
    TicketCreate,
    TicketDetailResponse,
    TicketResponse,
)

router = APIRouter(prefix="/tickets", tags=["Tickets"])


@router.post("", response_model=TicketResponse, status_code=status.HTTP_201_CREATED)
async def create_ticket(
    data: TicketCreate,
    orchestrator: Orchestrator,
    current_person: CurrentPerson,
):
    """Report a new abnormal finding on a production unit."""
    ticket = await orchestrator.create_ticket(current_person.id, data)
    return TicketResponse.model_validate(ticket)


@router.get("/pending", response_model=PendingTicketListResponse)
async def list_pending_tickets(
    orchestrator: Orchestrator,
    current_person: CurrentPerson,
    limit: int = Query(100, ge=1, le=500),
):
    """Tickets waiting on the caller, tagged with the caller's relationship."""
    pending = await orchestrator.list_pending_for_person(current_person.id, limit=limit)
    items = [
        PendingTicketResponse(
            ticket_id=ticket.id,
            ticket_number=ticket.ticket_number,
            title=ticket.title,
            status=ticket.status,
            production_unit_id=ticket.production_unit_id,
            user_relationship=relationship,
            schedule_finish=ticket.schedule_finish,
            created_at=ticket.created_at,
        )
        for ticket, relationship in pending
    ]
    return PendingTicketListResponse(items=items, total=len(items))


@router.get("/{ticket_id}", response_model=TicketDetailResponse)
async def get_ticket(
    ticket_id: int,
    orchestrator: Orchestrator,
    person_id: OptionalPersonId,
):
    """Get a ticket. With X-Person-Id, allowed_actions is narrowed to that person."""
    ticket = await orchestrator.get_ticket(ticket_id)
    response = TicketDetailResponse.model_validate(ticket)
    response.allowed_actions = await orchestrator.allowed_actions_for(ticket, person_id)
    return response


@router.get("/{ticket_id}/history", response_model=List[StatusHistoryResponse])
async def get_ticket_history(
    ticket_id: int,
    orchestrator: Orchestrator,
):
    """Status history, oldest first."""
    history = await orchestrator.get_history(ticket_id)
    return [StatusHistoryResponse.model_validate(h) for h in history]


@router.post("/{ticket_id}/{action}", response_model=ActionResult)
async def perform_action(
    ticket_id: int,
    action: ActionType,
    orchestrator: Orchestrator,
    current_person: CurrentPerson,
    payload: Optional[ActionPayload] = Body(None),
):
    """
    Perform a workflow action.

    Errors come back as {success: false, new_status: null, error: {...}}
    with 404 / 409 / 403 / 422 / 500 status codes.
    """
    outcome = await orchestrator.perform_action(ticket_id, action, current_person.id, payload)
    return ActionResult(
        success=True,
        ticket_id=outcome.ticket.id,
        old_status=outcome.old_status,
        new_status=outcome.new_status,
    )
