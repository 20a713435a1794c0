from typing import Annotated, Optional
import logging

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.models.production_unit import Person
from app.services.approval_registry import ApprovalRegistry
from app.services.workflow_orchestrator import PostCommitEffects, WorkflowOrchestrator


logger = logging.getLogger(__name__)


DB = Annotated[AsyncSession, Depends(get_db)]


async def get_current_person(
    db: DB,
    x_person_id: Annotated[Optional[int], Header(alias="X-Person-Id")] = None,
) -> Person:
    """
    Dependency to get the acting person.

    Authentication happens upstream; the gateway forwards the person number
    (PERSONNO) in the X-Person-Id header.
    """
    if x_person_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Person-Id header is required",
        )

    person = await db.get(Person, x_person_id)
    if person is None or not person.is_active:
        logger.warning(f"Rejected request for unknown or inactive person {x_person_id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Person not found or inactive",
        )
    return person


async def get_optional_person_id(
    x_person_id: Annotated[Optional[int], Header(alias="X-Person-Id")] = None,
) -> Optional[int]:
    return x_person_id


def get_post_commit_effects(request: Request) -> Optional[PostCommitEffects]:
    return getattr(request.app.state, "post_commit_effects", None)


def get_orchestrator(
    db: DB,
    effects: Annotated[Optional[PostCommitEffects], Depends(get_post_commit_effects)],
) -> WorkflowOrchestrator:
    return WorkflowOrchestrator(db, effects)


def get_registry(db: DB) -> ApprovalRegistry:
    return ApprovalRegistry(db)


CurrentPerson = Annotated[Person, Depends(get_current_person)]
OptionalPersonId = Annotated[Optional[int], Depends(get_optional_person_id)]
Orchestrator = Annotated[WorkflowOrchestrator, Depends(get_orchestrator)]
Registry = Annotated[ApprovalRegistry, Depends(get_registry)]
