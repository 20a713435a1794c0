"""
Work order system (Cedar CMMS) access.

WorkOrderSystem is the interface the sync adapter talks to; the shipped
implementation writes the CMMS work order table through its own session so
a CMMS failure never touches the ticket transaction.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.core.exceptions import ResourceNotFound
from app.models.work_order import WorkOrder

logger = logging.getLogger(__name__)

INITIAL_WF_STATUS_CODE = "10"

# Ticket-side field name -> WorkOrder column
_EXTRA_FIELD_COLUMNS = {
    "schedule_start": "schedule_start",
    "schedule_finish": "schedule_finish",
    "assigned_to": "work_by",
    "actual_start": "actual_start",
    "actual_finish": "actual_finish",
    "remark": "remark",
}


@dataclass(frozen=True)
class WorkOrderRequest:
    """Ticket snapshot sent when a work order is created."""
    ticket_id: int
    ticket_number: str
    title: str
    production_unit_id: int
    reported_by: int
    description: Optional[str] = None
    accepted_by: Optional[int] = None
    schedule_finish: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ticket_id": self.ticket_id,
            "ticket_number": self.ticket_number,
            "title": self.title,
            "production_unit_id": self.production_unit_id,
            "reported_by": self.reported_by,
            "accepted_by": self.accepted_by,
            "schedule_finish": self.schedule_finish,
        }


@dataclass(frozen=True)
class WorkOrderStatus:
    external_id: int
    external_code: Optional[str]
    wf_status_code: str
    schedule_start: Optional[datetime] = None
    schedule_finish: Optional[datetime] = None
    actual_start: Optional[datetime] = None
    actual_finish: Optional[datetime] = None
    work_by: Optional[int] = None


class WorkOrderSystem(Protocol):
    async def create_work_order(self, request: WorkOrderRequest) -> Tuple[int, str]:
        ...

    async def update_work_order_status(self, external_id: int, status_code: str,
                                       extra_fields: Dict[str, Any]) -> None:
        ...

    async def get_work_order_status(self, external_id: int) -> WorkOrderStatus:
        ...


class SqlWorkOrderSystem:
    """Work order table access through a dedicated session per call."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], code_prefix: Optional[str] = None):
        self.session_factory = session_factory
        self.code_prefix = code_prefix or settings.WORK_ORDER_CODE_PREFIX

    async def create_work_order(self, request: WorkOrderRequest) -> Tuple[int, str]:
        """Insert a work order at the initial workflow code and return (WONO, WOCODE)."""
        async with self.session_factory() as session:
            async with session.begin():
                work_order = WorkOrder(
                    title=request.title,
                    description=request.description,
                    production_unit_id=request.production_unit_id,
                    reported_by=request.reported_by,
                    accepted_by=request.accepted_by,
                    schedule_finish=request.schedule_finish,
                    wf_status_code=INITIAL_WF_STATUS_CODE,
                    remark=f"Created from ticket {request.ticket_number}",
                )
                session.add(work_order)
                await session.flush()
                work_order.code = f"{self.code_prefix}{work_order.id:06d}"
                external_id, external_code = work_order.id, work_order.code

        logger.info(f"Work order {external_code} created for ticket {request.ticket_id}")
        return external_id, external_code

    async def update_work_order_status(self, external_id: int, status_code: str,
                                       extra_fields: Dict[str, Any]) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                work_order = await session.get(WorkOrder, external_id, with_for_update=True)
                if work_order is None:
                    raise ResourceNotFound(f"Work order {external_id} not found")

                work_order.wf_status_code = status_code
                for name, value in extra_fields.items():
                    column = _EXTRA_FIELD_COLUMNS.get(name)
                    if column is not None and value is not None:
                        setattr(work_order, column, value)
                work_order.updated_at = datetime.now(timezone.utc)

        logger.info(f"Work order {external_id} moved to status {status_code}")

    async def get_work_order_status(self, external_id: int) -> WorkOrderStatus:
        async with self.session_factory() as session:
            work_order = await session.get(WorkOrder, external_id)
            if work_order is None:
                raise ResourceNotFound(f"Work order {external_id} not found")
            return WorkOrderStatus(
                external_id=work_order.id,
                external_code=work_order.code,
                wf_status_code=work_order.wf_status_code,
                schedule_start=work_order.schedule_start,
                schedule_finish=work_order.schedule_finish,
                actual_start=work_order.actual_start,
                actual_finish=work_order.actual_finish,
                work_by=work_order.work_by,
            )
