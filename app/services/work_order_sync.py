"""
Ticket to Work Order Sync.

Keeps the CMMS work order of a ticket in step with the ticket workflow:

- accept, no work order yet      -> create one (workflow code 10) and link it
- any action, work order linked  -> push the mapped workflow code
- otherwise                      -> nothing to do (open tickets have no WO)

Sync is best effort. Failures are logged, recorded on the ticket's link
(sync_status=error, last_error) and in the integration log; they never
fail the workflow action that triggered them.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from app.config import settings
from app.core.exceptions import ExternalSyncError
from app.models.ticket import ActionType, Ticket, TicketStatus
from app.models.work_order import SyncStatus, WorkOrderIntegrationLog, WorkOrderLink
from app.services.work_order_system import INITIAL_WF_STATUS_CODE, WorkOrderRequest, WorkOrderSystem

logger = logging.getLogger(__name__)


# Ticket status -> CMMS workflow status code.
# escalated and rejected_pending_l3_review have no CMMS counterpart.
STATUS_CODES: Dict[str, str] = {
    TicketStatus.OPEN.value: "10",
    TicketStatus.ACCEPTED.value: "10",
    TicketStatus.PLANED.value: "30",
    TicketStatus.IN_PROGRESS.value: "50",
    TicketStatus.REOPENED_IN_PROGRESS.value: "50",
    TicketStatus.FINISHED.value: "70",
    TicketStatus.REVIEWED.value: "80",
    TicketStatus.CLOSED.value: "99",
    TicketStatus.REJECTED_FINAL.value: "95",
    "cancelled": "95",
}


def get_status_code(ticket_status: str) -> Optional[str]:
    return STATUS_CODES.get(ticket_status)


def _loggable(data: Dict[str, Any]) -> Dict[str, Any]:
    """Integration log payloads are stored as JSON."""
    return {key: value.isoformat() if isinstance(value, datetime) else value for key, value in data.items()}


@dataclass(frozen=True)
class SyncResult:
    success: bool
    operation: str  # create, status_update, skipped, noop
    external_id: Optional[int] = None
    external_code: Optional[str] = None
    message: Optional[str] = None


def _extra_fields(ticket: Ticket) -> Dict[str, Any]:
    """Work order fields that travel with a status code."""
    if ticket.status == TicketStatus.PLANED.value:
        return {
            "schedule_start": ticket.schedule_start,
            "schedule_finish": ticket.schedule_finish,
            "assigned_to": ticket.assigned_to,
        }
    if ticket.status in (TicketStatus.IN_PROGRESS.value, TicketStatus.REOPENED_IN_PROGRESS.value):
        return {"actual_start": ticket.started_at, "assigned_to": ticket.assigned_to}
    if ticket.status == TicketStatus.FINISHED.value:
        return {"actual_finish": ticket.finished_at, "remark": ticket.finish_notes}
    return {}


class WorkOrderSyncService:
    """Best-effort propagation of ticket status to the work order system."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        work_order_system: WorkOrderSystem,
        timeout: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.work_order_system = work_order_system
        self.timeout = timeout or settings.WORK_ORDER_SYNC_TIMEOUT_SECONDS
        self._locks: Dict[int, asyncio.Lock] = {}
        self._lock_users: Dict[int, int] = {}

    @asynccontextmanager
    async def _ticket_lock(self, ticket_id: int):
        """One sync per ticket at a time, in submission order."""
        lock = self._locks.setdefault(ticket_id, asyncio.Lock())
        self._lock_users[ticket_id] = self._lock_users.get(ticket_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[ticket_id] -= 1
            if not self._lock_users[ticket_id]:
                del self._lock_users[ticket_id]
                del self._locks[ticket_id]

    async def sync(self, ticket_id: int, action) -> SyncResult:
        """Sync a ticket after ``action`` committed. Never raises."""
        action = ActionType(action)
        async with self._ticket_lock(ticket_id):
            return await self._sync_with_timeout(ticket_id, action)

    async def _sync_with_timeout(self, ticket_id: int, action: ActionType) -> SyncResult:
        operation = "create" if action is ActionType.ACCEPT else "status_update"
        request_data: Dict[str, Any] = {"action": action.value}
        try:
            return await asyncio.wait_for(self._sync(ticket_id, action, request_data), timeout=self.timeout)
        except Exception as e:
            if isinstance(e, asyncio.TimeoutError):
                e = ExternalSyncError(f"Work order sync timed out after {self.timeout}s")
            message = str(e) or e.__class__.__name__
            logger.error(f"Work order sync failed for ticket {ticket_id} (action: {action.value}): {message}")
            await self._record_failure(ticket_id, operation, request_data, message)
            return SyncResult(success=False, operation=operation, message=message)

    async def _sync(self, ticket_id: int, action: ActionType, request_data: Dict[str, Any]) -> SyncResult:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Ticket)
                .options(selectinload(Ticket.work_order_link))
                .where(Ticket.id == ticket_id)
            )
            ticket = result.scalar_one_or_none()
            if ticket is None:
                raise ExternalSyncError(f"Ticket {ticket_id} not found")

            link = ticket.work_order_link
            request_data["ticket_status"] = ticket.status

            if action is ActionType.ACCEPT and (link is None or link.external_id is None):
                work_order_request = WorkOrderRequest(
                    ticket_id=ticket.id,
                    ticket_number=ticket.ticket_number,
                    title=ticket.title,
                    description=ticket.description,
                    production_unit_id=ticket.production_unit_id,
                    reported_by=ticket.created_by,
                    accepted_by=ticket.accepted_by,
                    schedule_finish=ticket.schedule_finish,
                )
                request_data.update(work_order_request.to_dict())
                external_id, external_code = await self.work_order_system.create_work_order(work_order_request)
                link = await self._record_success(
                    session, ticket.id, link, external_id, external_code, "create", request_data,
                )

                # The ticket may have moved past accepted while the work order was created
                status_code = get_status_code(ticket.status)
                if status_code is not None and status_code != INITIAL_WF_STATUS_CODE:
                    await self._push_status(
                        session, ticket, link, status_code,
                        {"action": action.value, "ticket_status": ticket.status},
                    )
                return SyncResult(True, "create", external_id, external_code)

            if link is not None and link.external_id is not None:
                status_code = get_status_code(ticket.status)
                if status_code is None:
                    logger.info(
                        f"No work order status for ticket status '{ticket.status}' "
                        f"(ticket {ticket_id}) - skipping update"
                    )
                    return SyncResult(True, "skipped", link.external_id, link.external_code,
                                      f"No status mapping for {ticket.status}")

                await self._push_status(session, ticket, link, status_code, request_data)
                return SyncResult(True, "status_update", link.external_id, link.external_code)

        logger.debug(f"No work order for ticket {ticket_id} (action: {action.value}) - nothing to sync")
        return SyncResult(True, "noop", message="No work order exists yet")

    async def _push_status(self, session: AsyncSession, ticket: Ticket, link: WorkOrderLink,
                           status_code: str, request_data: Dict[str, Any]) -> None:
        extra_fields = _extra_fields(ticket)
        request_data.update(status_code=status_code, **extra_fields)
        await self.work_order_system.update_work_order_status(link.external_id, status_code, extra_fields)
        await self._record_success(
            session, ticket.id, link, link.external_id, link.external_code, "status_update", request_data,
        )

    async def _record_success(
        self,
        session: AsyncSession,
        ticket_id: int,
        link: Optional[WorkOrderLink],
        external_id: int,
        external_code: Optional[str],
        operation: str,
        request_data: Dict[str, Any],
    ) -> WorkOrderLink:
        now = datetime.now(timezone.utc)
        if link is None:
            link = WorkOrderLink(ticket_id=ticket_id)
            session.add(link)
        link.external_id = external_id
        link.external_code = external_code
        link.sync_status = SyncStatus.SUCCESS.value
        link.last_sync_at = now
        link.last_error = None

        session.add(WorkOrderIntegrationLog(
            ticket_id=ticket_id,
            external_id=external_id,
            action=operation,
            status=SyncStatus.SUCCESS.value,
            request_data=_loggable(request_data),
            response_data={"external_id": external_id, "external_code": external_code},
        ))
        await session.commit()
        logger.info(f"Ticket {ticket_id} synced to work order {external_code or external_id} ({operation})")
        return link

    async def _record_failure(self, ticket_id: int, operation: str,
                              request_data: Dict[str, Any], message: str) -> None:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    link = await session.get(WorkOrderLink, ticket_id)
                    if link is None:
                        ticket = await session.get(Ticket, ticket_id)
                        if ticket is not None:
                            link = WorkOrderLink(ticket_id=ticket_id)
                            session.add(link)
                    if link is not None:
                        link.sync_status = SyncStatus.ERROR.value
                        link.last_error = message[:500]
                        link.last_sync_at = datetime.now(timezone.utc)

                    session.add(WorkOrderIntegrationLog(
                        ticket_id=ticket_id,
                        external_id=link.external_id if link is not None else None,
                        action=operation,
                        status=SyncStatus.ERROR.value,
                        request_data=_loggable(request_data),
                        error_message=message[:500],
                    ))
        except Exception as e:
            logger.error(f"Could not record work order sync failure for ticket {ticket_id}: {e}")

    async def get_link(self, ticket_id: int) -> Optional[WorkOrderLink]:
        async with self.session_factory() as session:
            return await session.get(WorkOrderLink, ticket_id)
