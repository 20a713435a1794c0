"""SQLAlchemy models. Importing this package registers every table on Base.metadata."""
from app.models.production_unit import ProductionUnit, Person
from app.models.approval import ApprovalGrant, ApprovalLevel
from app.models.ticket import (
    Ticket,
    TicketStatusHistory,
    TicketYearCounter,
    TicketStatus,
    ActionType,
)
from app.models.work_order import (
    WorkOrder,
    WorkOrderLink,
    WorkOrderIntegrationLog,
    SyncStatus,
)

__all__ = [
    "ProductionUnit",
    "Person",
    "ApprovalGrant",
    "ApprovalLevel",
    "Ticket",
    "TicketStatusHistory",
    "TicketYearCounter",
    "TicketStatus",
    "ActionType",
    "WorkOrder",
    "WorkOrderLink",
    "WorkOrderIntegrationLog",
    "SyncStatus",
]
