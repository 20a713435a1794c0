"""
Approval Registry Service.

Stores and queries (person, level, scope) approval grants and answers the
two authority questions of the workflow:

- get_effective_level: highest level a person holds for a production unit
- find_approvers: everyone holding exactly level L for a production unit
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ResourceNotFound
from app.models.approval import ApprovalGrant, ApprovalLevel
from app.models.production_unit import Person, ProductionUnit
from app.services.hierarchy_matcher import (
    HierarchyScope,
    combined_label,
    matching,
    most_specific_first,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApproverMatch:
    """One approver for a unit at one level, with all of their matching scopes."""
    person_id: int
    approval_level: int
    scope_description: str
    name: str
    email: Optional[str] = None
    line_id: Optional[str] = None
    avatar_url: Optional[str] = None
    grant_ids: Tuple[int, ...] = field(default_factory=tuple)


class ApprovalRegistry:
    """Service for approval grant storage and hierarchical authority lookups."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== SCOPE ====================

    async def get_unit(self, unit_id: int) -> Optional[ProductionUnit]:
        return await self.db.get(ProductionUnit, unit_id)

    async def get_unit_scope(self, unit_id: int) -> HierarchyScope:
        """Resolve a production unit into its hierarchy scope."""
        unit = await self.get_unit(unit_id)
        if unit is None:
            raise ResourceNotFound(f"Production unit {unit_id} not found")
        return HierarchyScope.of_unit(unit)

    # ==================== QUERIES ====================

    async def query_grants(
        self,
        person_id: Optional[int] = None,
        level: Optional[int] = None,
        scope: Optional[HierarchyScope] = None,
        active_only: bool = True,
    ) -> List[ApprovalGrant]:
        """
        Query grants, optionally narrowed to those whose scope covers ``scope``.

        The plant filter is pushed to the database; the remaining partial
        match runs in Python since NULL means "all children".
        """
        query = select(ApprovalGrant)
        if person_id is not None:
            query = query.where(ApprovalGrant.person_id == person_id)
        if level is not None:
            query = query.where(ApprovalGrant.approval_level == int(level))
        if scope is not None:
            query = query.where(ApprovalGrant.plant_code == scope.plant)
        if active_only:
            query = query.where(ApprovalGrant.is_active == True)  # noqa: E712
        query = query.order_by(ApprovalGrant.person_id, ApprovalGrant.id)

        result = await self.db.execute(query)
        grants = list(result.scalars().all())
        if scope is not None:
            grants = matching(grants, scope)
        return grants

    async def get_effective_level(self, person_id: int, unit_scope: HierarchyScope) -> int:
        """Maximum approval level among the person's grants covering the scope; 0 if none."""
        grants = await self.query_grants(person_id=person_id, scope=unit_scope)
        return max((grant.approval_level for grant in grants), default=0)

    async def get_effective_level_for_unit(self, person_id: int, unit_id: int) -> int:
        return await self.get_effective_level(person_id, await self.get_unit_scope(unit_id))

    async def has_level(self, person_id: int, unit_scope: HierarchyScope, required_level: int) -> bool:
        return await self.get_effective_level(person_id, unit_scope) >= required_level

    async def find_approvers(
        self,
        level: int,
        unit_scope: HierarchyScope,
        exclude_person_id: Optional[int] = None,
    ) -> List[ApproverMatch]:
        """
        Approvers holding exactly ``level`` for the scope.

        A person with several matching grants at this level (e.g. plant-wide
        and line-specific) appears once, with every matching scope label
        combined into ``scope_description``.
        """
        grants = await self.query_grants(level=level, scope=unit_scope)

        by_person: Dict[int, List[ApprovalGrant]] = {}
        for grant in grants:
            if exclude_person_id is not None and grant.person_id == exclude_person_id:
                continue
            by_person.setdefault(grant.person_id, []).append(grant)

        if not by_person:
            return []

        persons = await self._load_persons(list(by_person.keys()))

        approvers: List[ApproverMatch] = []
        for person_id in sorted(by_person):
            person = persons.get(person_id)
            if person is None or not person.is_active:
                continue
            person_grants = most_specific_first(by_person[person_id])
            approvers.append(ApproverMatch(
                person_id=person_id,
                approval_level=int(level),
                scope_description=combined_label(HierarchyScope.of_grant(g) for g in person_grants),
                name=person.full_name,
                email=person.email,
                line_id=person.line_id,
                avatar_url=person.avatar_url,
                grant_ids=tuple(g.id for g in person_grants),
            ))
        return approvers

    async def _load_persons(self, person_ids: List[int]) -> Dict[int, Person]:
        result = await self.db.execute(select(Person).where(Person.id.in_(person_ids)))
        return {person.id: person for person in result.scalars().all()}

    # ==================== ADMINISTRATION ====================

    async def get_grant(self, grant_id: int) -> Optional[ApprovalGrant]:
        return await self.db.get(ApprovalGrant, grant_id)

    async def create_grant(
        self,
        person_id: int,
        approval_level: int,
        plant_code: str,
        area_code: Optional[str] = None,
        line_code: Optional[str] = None,
        machine_code: Optional[str] = None,
        created_by: Optional[int] = None,
    ) -> ApprovalGrant:
        """Create a grant. Raises ValueError on invalid level / scope, ResourceNotFound for an unknown person."""
        scope = HierarchyScope(plant_code, area_code or None, line_code or None, machine_code or None)
        self._validate(approval_level, scope)

        person = await self.db.get(Person, person_id)
        if person is None:
            raise ResourceNotFound(f"Person {person_id} not found")

        grant = ApprovalGrant(
            person_id=person_id,
            approval_level=int(approval_level),
            plant_code=scope.plant,
            area_code=scope.area,
            line_code=scope.line,
            machine_code=scope.machine,
            created_by=created_by,
        )
        self.db.add(grant)
        await self.db.flush()
        logger.info(f"Approval grant {grant.id} created: person {person_id} L{approval_level} {scope.label}")
        return grant

    async def update_grant(self, grant_id: int, **changes) -> ApprovalGrant:
        """Update level / scope / active flag of a grant."""
        grant = await self.get_grant(grant_id)
        if grant is None:
            raise ResourceNotFound(f"Approval grant {grant_id} not found")

        for key in ("approval_level", "plant_code", "area_code", "line_code", "machine_code", "is_active"):
            if key in changes:
                value = changes[key]
                if key.endswith("_code") and value == "":
                    value = None
                setattr(grant, key, value)

        self._validate(grant.approval_level, HierarchyScope.of_grant(grant))
        await self.db.flush()
        logger.info(f"Approval grant {grant_id} updated: {sorted(changes)}")
        return grant

    async def delete_grant(self, grant_id: int) -> None:
        grant = await self.get_grant(grant_id)
        if grant is None:
            raise ResourceNotFound(f"Approval grant {grant_id} not found")
        await self.db.delete(grant)
        await self.db.flush()
        logger.info(f"Approval grant {grant_id} deleted")

    @staticmethod
    def _validate(approval_level: int, scope: HierarchyScope) -> None:
        if approval_level not in {level.value for level in ApprovalLevel}:
            raise ValueError(f"Approval level must be 1-4, got {approval_level}")
        if not scope.plant:
            raise ValueError("Plant code is required")
        if scope.has_gaps():
            raise ValueError("Scope cannot skip a level (line requires area, machine requires line)")
