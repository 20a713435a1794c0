"""Notification recipient schemas."""
from typing import List, Optional

from pydantic import BaseModel, Field

from app.models.ticket import ActionType


class RecipientPreviewRequest(BaseModel):
    """Who would be notified for an action on a production unit."""
    production_unit_id: int
    action_type: ActionType
    created_by: Optional[int] = None
    assigned_to: Optional[int] = None


class RecipientResponse(BaseModel):
    person_id: int
    name: str
    email: Optional[str] = None
    chat_id: Optional[str] = None
    avatar_url: Optional[str] = None
    reason: str
    recipient_type: str
    approval_level: Optional[int] = None
    channels: List[str] = Field(default_factory=list)


class RecipientListResponse(BaseModel):
    items: List[RecipientResponse]
    total: int
