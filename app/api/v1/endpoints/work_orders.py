"""
Work Order Integration API Endpoints.

Provides:
- Work order link and CMMS status of a ticket
- Manual re-sync of a ticket
- Integration log of a ticket
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy import select

from app.api.deps import DB, CurrentPerson, Orchestrator
from app.models.ticket import TicketStatusHistory
from app.models.work_order import WorkOrderIntegrationLog, WorkOrderLink
from app.schemas.base import BaseResponseSchema

router = APIRouter(prefix="/tickets/{ticket_id}/work-order", tags=["Work Orders"])


class WorkOrderLinkResponse(BaseModel):
    ticket_id: int
    external_id: Optional[int] = None
    external_code: Optional[str] = None
    sync_status: str
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None
    wf_status_code: Optional[str] = None


class SyncResultResponse(BaseModel):
    success: bool
    operation: str
    external_id: Optional[int] = None
    external_code: Optional[str] = None
    message: Optional[str] = None


class IntegrationLogResponse(BaseResponseSchema):
    id: int
    ticket_id: int
    external_id: Optional[int] = None
    action: str
    status: str
    request_data: Optional[dict] = None
    response_data: Optional[dict] = None
    error_message: Optional[str] = None
    created_at: datetime


def _sync_service(request: Request):
    effects = getattr(request.app.state, "post_commit_effects", None)
    if effects is None:
        raise HTTPException(status_code=503, detail="Work order integration is not running")
    return effects.sync_service


@router.get("", response_model=WorkOrderLinkResponse)
async def get_work_order(
    ticket_id: int,
    request: Request,
    db: DB,
    orchestrator: Orchestrator,
):
    """Work order link of a ticket with the CMMS workflow status code."""
    await orchestrator.get_ticket(ticket_id)
    link = await db.get(WorkOrderLink, ticket_id)
    if link is None:
        raise HTTPException(status_code=404, detail="Ticket has no work order")

    wf_status_code = None
    if link.external_id is not None:
        work_order_system = _sync_service(request).work_order_system
        wf_status_code = (await work_order_system.get_work_order_status(link.external_id)).wf_status_code

    return WorkOrderLinkResponse(
        ticket_id=link.ticket_id,
        external_id=link.external_id,
        external_code=link.external_code,
        sync_status=link.sync_status,
        last_sync_at=link.last_sync_at,
        last_error=link.last_error,
        wf_status_code=wf_status_code,
    )


@router.post("/sync", response_model=SyncResultResponse)
async def resync_work_order(
    ticket_id: int,
    request: Request,
    db: DB,
    orchestrator: Orchestrator,
    current_person: CurrentPerson,
):
    """Re-run the sync for the ticket's last workflow action."""
    await orchestrator.get_ticket(ticket_id)
    result = await db.execute(
        select(TicketStatusHistory.action)
        .where(TicketStatusHistory.ticket_id == ticket_id)
        .order_by(TicketStatusHistory.id.desc())
        .limit(1)
    )
    last_action = result.scalar_one_or_none()
    if last_action is None:
        raise HTTPException(status_code=409, detail="Ticket has no workflow history")

    sync_result = await _sync_service(request).sync(ticket_id, last_action)
    return SyncResultResponse(
        success=sync_result.success,
        operation=sync_result.operation,
        external_id=sync_result.external_id,
        external_code=sync_result.external_code,
        message=sync_result.message,
    )


@router.get("/logs", response_model=List[IntegrationLogResponse])
async def get_integration_logs(
    ticket_id: int,
    db: DB,
):
    """Work order sync attempts of a ticket, newest first."""
    result = await db.execute(
        select(WorkOrderIntegrationLog)
        .where(WorkOrderIntegrationLog.ticket_id == ticket_id)
        .order_by(WorkOrderIntegrationLog.id.desc())
    )
    return [IntegrationLogResponse.model_validate(log) for log in result.scalars().all()]
