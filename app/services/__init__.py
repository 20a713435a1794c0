# Services module
from app.services.approval_registry import ApprovalRegistry
from app.services.recipient_resolver import RecipientResolver
from app.services.ticket_number_service import TicketNumberService

# Delivery / CMMS integration
from app.services.notifier import ChannelNotifier, NotificationDispatcher
from app.services.work_order_sync import WorkOrderSyncService
from app.services.work_order_system import SqlWorkOrderSystem

# Workflow
from app.services.workflow_orchestrator import PostCommitEffects, WorkflowOrchestrator

__all__ = [
    "ApprovalRegistry",
    "RecipientResolver",
    "TicketNumberService",
    # Delivery / CMMS
    "ChannelNotifier",
    "NotificationDispatcher",
    "WorkOrderSyncService",
    "SqlWorkOrderSystem",
    # Workflow
    "PostCommitEffects",
    "WorkflowOrchestrator",
]
