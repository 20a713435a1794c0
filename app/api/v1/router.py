from fastapi import APIRouter

from app.api.v1.endpoints import (
    # Ticket workflow
    tickets,
    work_orders,
    # Approval hierarchy
    approvals,
    # Notifications
    notifications,
)

api_router = APIRouter()

# ==================== Tickets ====================
# Work order routes first: /tickets/{id}/work-order must not be taken as an action
api_router.include_router(work_orders.router)
api_router.include_router(tickets.router)

# ==================== Approvals ====================
api_router.include_router(approvals.router)

# ==================== Notifications ====================
api_router.include_router(notifications.router)
