"""Notification recipient preview endpoint."""
from fastapi import APIRouter

from app.api.deps import DB
from app.schemas.notification import RecipientListResponse, RecipientPreviewRequest, RecipientResponse
from app.services.recipient_resolver import RecipientResolver

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.post("/recipients/preview", response_model=RecipientListResponse)
async def preview_recipients(
    data: RecipientPreviewRequest,
    db: DB,
):
    """
    Who would be notified if ``action_type`` happened on a ticket of this
    production unit with the given creator and assignee.
    """
    recipients = await RecipientResolver(db).resolve_for_unit(
        data.production_unit_id,
        data.action_type,
        created_by=data.created_by,
        assigned_to=data.assigned_to,
    )
    items = [RecipientResponse(**r.to_dict()) for r in recipients]
    return RecipientListResponse(items=items, total=len(items))
