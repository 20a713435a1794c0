"""
Hierarchical Approval API Endpoints.

Provides:
- Grant administration (list, create, update, delete)
- Effective approval level of a person for a production unit
- Approvers of a production unit at a level
"""
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, status

from app.api.deps import CurrentPerson, Registry
from app.core.exceptions import InsufficientApprovalLevel
from app.models.approval import ApprovalLevel
from app.schemas.approval import (
    ApprovalGrantCreate,
    ApprovalGrantListResponse,
    ApprovalGrantResponse,
    ApprovalGrantUpdate,
    ApproverListResponse,
    ApproverResponse,
    EffectiveLevelResponse,
)
from app.services.approval_registry import ApprovalRegistry
from app.services.hierarchy_matcher import HierarchyScope

router = APIRouter(prefix="/approvals", tags=["Approvals"])


# ============== Helper Functions ==============

async def _require_plant_admin(registry: ApprovalRegistry, person_id: int, plant_code: str) -> None:
    """Grants are managed by plant-wide L4 approvers of the grant's plant."""
    level = await registry.get_effective_level(person_id, HierarchyScope(plant_code))
    if level < ApprovalLevel.L4:
        raise InsufficientApprovalLevel(
            "manage_grants",
            level,
            int(ApprovalLevel.L4),
            message=f"Managing approval grants for plant {plant_code} requires a plant-wide level 4 grant",
        )


# ============== Grant Endpoints ==============

@router.get("/grants", response_model=ApprovalGrantListResponse)
async def list_grants(
    registry: Registry,
    person_id: Optional[int] = None,
    level: Optional[int] = Query(None, ge=1, le=4),
    active_only: bool = True,
):
    """List approval grants."""
    grants = await registry.query_grants(person_id=person_id, level=level, active_only=active_only)
    return ApprovalGrantListResponse(
        items=[ApprovalGrantResponse.model_validate(g) for g in grants],
        total=len(grants),
    )


@router.post("/grants", response_model=ApprovalGrantResponse, status_code=status.HTTP_201_CREATED)
async def create_grant(
    data: ApprovalGrantCreate,
    registry: Registry,
    current_person: CurrentPerson,
):
    """Grant a person an approval level over a plant / area / line / machine scope."""
    await _require_plant_admin(registry, current_person.id, data.plant_code)
    grant = await registry.create_grant(
        person_id=data.person_id,
        approval_level=data.approval_level,
        plant_code=data.plant_code,
        area_code=data.area_code,
        line_code=data.line_code,
        machine_code=data.machine_code,
        created_by=current_person.id,
    )
    return ApprovalGrantResponse.model_validate(grant)


@router.patch("/grants/{grant_id}", response_model=ApprovalGrantResponse)
async def update_grant(
    grant_id: int,
    data: ApprovalGrantUpdate,
    registry: Registry,
    current_person: CurrentPerson,
):
    """Edit a grant's level, scope or active flag."""
    grant = await registry.get_grant(grant_id)
    if grant is None:
        raise HTTPException(status_code=404, detail="Approval grant not found")

    changes = data.model_dump(exclude_unset=True)
    await _require_plant_admin(registry, current_person.id, grant.plant_code)
    if changes.get("plant_code") and changes["plant_code"] != grant.plant_code:
        await _require_plant_admin(registry, current_person.id, changes["plant_code"])

    grant = await registry.update_grant(grant_id, **changes)
    return ApprovalGrantResponse.model_validate(grant)


@router.delete("/grants/{grant_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_grant(
    grant_id: int,
    registry: Registry,
    current_person: CurrentPerson,
):
    """Delete a grant."""
    grant = await registry.get_grant(grant_id)
    if grant is None:
        raise HTTPException(status_code=404, detail="Approval grant not found")
    await _require_plant_admin(registry, current_person.id, grant.plant_code)
    await registry.delete_grant(grant_id)


# ============== Lookup Endpoints ==============

@router.get("/effective-level", response_model=EffectiveLevelResponse)
async def get_effective_level(
    registry: Registry,
    person_id: int,
    production_unit_id: int,
):
    """Highest approval level the person holds for the production unit (0 = none)."""
    level = await registry.get_effective_level_for_unit(person_id, production_unit_id)
    return EffectiveLevelResponse(
        person_id=person_id,
        production_unit_id=production_unit_id,
        approval_level=level,
    )


@router.get("/approvers", response_model=ApproverListResponse)
async def find_approvers(
    registry: Registry,
    production_unit_id: int,
    level: int = Query(..., ge=1, le=4),
    exclude_person_id: Optional[int] = None,
):
    """Everyone holding exactly ``level`` for the production unit."""
    scope = await registry.get_unit_scope(production_unit_id)
    approvers = await registry.find_approvers(level, scope, exclude_person_id)
    return ApproverListResponse(
        items=[ApproverResponse.model_validate(a) for a in approvers],
        total=len(approvers),
    )
