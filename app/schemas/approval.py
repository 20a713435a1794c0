"""
Approval Grant Schemas.

Pydantic schemas for hierarchical approval grant administration and
authority lookups.
"""
from datetime import datetime
from typing import Optional, List

from pydantic import BaseModel, Field

from app.schemas.base import BaseResponseSchema, BaseCreateSchema, BaseUpdateSchema


# ============== Grant Schemas ==============

class ApprovalGrantCreate(BaseCreateSchema):
    """Schema for granting a person an approval level over a scope."""
    person_id: int
    approval_level: int = Field(..., ge=1, le=4)
    plant_code: str = Field(..., min_length=1, max_length=20)
    area_code: Optional[str] = Field(None, max_length=20)
    line_code: Optional[str] = Field(None, max_length=20)
    machine_code: Optional[str] = Field(None, max_length=20)


class ApprovalGrantUpdate(BaseUpdateSchema):
    """Schema for editing a grant."""
    approval_level: Optional[int] = Field(None, ge=1, le=4)
    plant_code: Optional[str] = Field(None, min_length=1, max_length=20)
    area_code: Optional[str] = Field(None, max_length=20)
    line_code: Optional[str] = Field(None, max_length=20)
    machine_code: Optional[str] = Field(None, max_length=20)
    is_active: Optional[bool] = None


class ApprovalGrantResponse(BaseResponseSchema):
    """Response schema for an approval grant."""
    id: int
    person_id: int
    approval_level: int
    plant_code: str
    area_code: Optional[str] = None
    line_code: Optional[str] = None
    machine_code: Optional[str] = None
    is_active: bool
    created_by: Optional[int] = None
    created_at: datetime
    updated_at: datetime


class ApprovalGrantListResponse(BaseModel):
    items: List[ApprovalGrantResponse]
    total: int


# ============== Lookup Schemas ==============

class EffectiveLevelResponse(BaseModel):
    """A person's effective approval level for a production unit."""
    person_id: int
    production_unit_id: int
    approval_level: int


class ApproverResponse(BaseResponseSchema):
    """An approver for a unit at one level."""
    person_id: int
    approval_level: int
    scope_description: str
    name: str
    email: Optional[str] = None
    line_id: Optional[str] = None
    avatar_url: Optional[str] = None


class ApproverListResponse(BaseModel):
    items: List[ApproverResponse]
    total: int
