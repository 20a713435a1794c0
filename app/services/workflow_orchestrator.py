"""
Ticket Workflow Orchestrator.

Runs a workflow action end to end:

1. load the ticket (row-locked) and the actor's effective level for its
   production unit
2. guard through the state machine; a failure raises before anything is
   written
3. apply the transition and append the status history row, committed
   together; a concurrent writer that got there first turns this into
   InvalidTransition against the state it left behind
4. after commit, hand notification fan-out and work order sync to the
   background job queue; their outcome never changes the action result
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import (
    InvalidActionPayload,
    InvalidTransition,
    PersistenceError,
    ResourceNotFound,
    RecipientResolutionError,
    TicketNotFound,
    WorkflowError,
)
from app.jobs.background import BackgroundJobQueue
from app.models.approval import ApprovalLevel
from app.models.production_unit import Person
from app.models.ticket import ActionType, Ticket, TicketStatus, TicketStatusHistory
from app.schemas.ticket import ActionPayload, TicketCreate
from app.services.approval_registry import ApprovalRegistry
from app.services.hierarchy_matcher import HierarchyScope, matching
from app.services.notifier import NotificationDispatcher, build_notification_data
from app.services.recipient_resolver import RecipientResolver
from app.services.ticket_number_service import TicketNumberService
from app.services.ticket_state_machine import (
    TERMINAL_STATUSES,
    get_allowed_actions,
    transition_ticket,
    validate_payload,
    validate_transition,
)
from app.services.work_order_sync import WorkOrderSyncService

logger = logging.getLogger(__name__)

HISTORY_NOTE_MAX_LENGTH = 500


def status_change_note(old_status: Optional[str], new_status: str, note: Optional[str] = None) -> str:
    """History comment: 'Status changed from X to Y' plus the action note."""
    text = f"Status changed from {old_status} to {new_status}"
    if note:
        text = f"{text} - {note}"
    return text[:HISTORY_NOTE_MAX_LENGTH]


@dataclass(frozen=True)
class ActionOutcome:
    ticket: Ticket
    old_status: Optional[str]
    new_status: str


# =============================================================================
# POST-COMMIT SIDE EFFECTS
# =============================================================================

class PostCommitEffects:
    """Schedules notification and work order sync jobs for a committed action."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        jobs: BackgroundJobQueue,
        dispatcher: NotificationDispatcher,
        sync_service: WorkOrderSyncService,
    ):
        self.session_factory = session_factory
        self.jobs = jobs
        self.dispatcher = dispatcher
        self.sync_service = sync_service

    def schedule(self, ticket: Ticket, action: ActionType, actor_id: int, data: dict) -> None:
        self.jobs.submit(
            self.notify(ticket, action, actor_id, data),
            name=f"notify:{ticket.ticket_number}:{action.value}",
        )
        if action is not ActionType.CREATE:
            self.jobs.submit(
                self.sync_service.sync(ticket.id, action),
                name=f"work_order_sync:{ticket.ticket_number}:{action.value}",
            )

    async def notify(self, ticket: Ticket, action: ActionType, actor_id: int, data: dict) -> int:
        """Resolve recipients and deliver. Returns the number of successful sends."""
        try:
            async with self.session_factory() as session:
                recipients = await RecipientResolver(session).resolve(ticket, action, actor_id)
        except Exception as e:
            error = RecipientResolutionError(str(e))
            logger.error(f"[{error.code}] ticket {ticket.id} ({action.value}): {error.message}")
            return 0

        results = await self.dispatcher.dispatch(action.value, data, recipients)
        return sum(1 for result in results if result.success)


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class WorkflowOrchestrator:
    """Ticket creation, workflow actions and ticket queries."""

    def __init__(self, db: AsyncSession, effects: Optional[PostCommitEffects] = None):
        self.db = db
        self.effects = effects
        self.registry = ApprovalRegistry(db)

    # ==================== QUERIES ====================

    async def get_ticket(self, ticket_id: int, for_update: bool = False) -> Ticket:
        query = select(Ticket).where(Ticket.id == ticket_id).execution_options(populate_existing=True)
        if for_update:
            query = query.with_for_update(of=Ticket)
        result = await self.db.execute(query)
        ticket = result.unique().scalar_one_or_none()
        if ticket is None:
            raise TicketNotFound(ticket_id)
        return ticket

    async def get_history(self, ticket_id: int) -> List[TicketStatusHistory]:
        await self.get_ticket(ticket_id)
        result = await self.db.execute(
            select(TicketStatusHistory)
            .where(TicketStatusHistory.ticket_id == ticket_id)
            .order_by(TicketStatusHistory.id)
        )
        return list(result.scalars().all())

    async def allowed_actions_for(self, ticket: Ticket, actor_id: Optional[int]) -> List[str]:
        """Actions out of the ticket's status, narrowed to what ``actor_id`` may do."""
        actions = get_allowed_actions(ticket.status)
        if actor_id is None:
            return [a.value for a in actions]

        level = await self.registry.get_effective_level(actor_id, HierarchyScope.of_unit(ticket.production_unit))
        allowed = []
        for action in actions:
            try:
                validate_transition(ticket, action, actor_id, level)
            except WorkflowError:
                continue
            allowed.append(action.value)
        return allowed

    async def list_pending_for_person(self, person_id: int, limit: int = 100) -> List[Tuple[Ticket, str]]:
        """
        Non-terminal tickets waiting on ``person_id``, each tagged with why:
        accept_approver, reject_approver, planner, assignee, escalate_approver,
        review_approver or close_approver.
        """
        grants = await self.registry.query_grants(person_id=person_id)

        result = await self.db.execute(
            select(Ticket)
            .where(Ticket.status.notin_([s.value for s in TERMINAL_STATUSES]))
            .order_by(Ticket.created_at.desc(), Ticket.id.desc())
        )
        pending: List[Tuple[Ticket, str]] = []
        for ticket in result.unique().scalars().all():
            scope = HierarchyScope.of_unit(ticket.production_unit)
            level = max((g.approval_level for g in matching(grants, scope)), default=0)
            relationship = self._pending_relationship(ticket, person_id, level)
            if relationship:
                pending.append((ticket, relationship))
                if len(pending) >= limit:
                    break
        return pending

    @staticmethod
    def _pending_relationship(ticket: Ticket, person_id: int, level: int) -> Optional[str]:
        status = ticket.status
        if status == TicketStatus.OPEN.value and level >= ApprovalLevel.L2:
            return "accept_approver"
        if status == TicketStatus.REJECTED_PENDING_L3_REVIEW.value and level >= ApprovalLevel.L3:
            return "reject_approver"
        if status == TicketStatus.ACCEPTED.value and level >= ApprovalLevel.L2:
            return "planner"
        if status in (
            TicketStatus.PLANED.value,
            TicketStatus.IN_PROGRESS.value,
            TicketStatus.REOPENED_IN_PROGRESS.value,
        ) and ticket.assigned_to == person_id:
            return "assignee"
        if status == TicketStatus.ESCALATED.value and level >= ApprovalLevel.L3:
            return "escalate_approver"
        if status == TicketStatus.FINISHED.value and level >= ApprovalLevel.L4:
            return "review_approver"
        if status == TicketStatus.REVIEWED.value and (ticket.created_by == person_id or level >= ApprovalLevel.L4):
            return "close_approver"
        return None

    # ==================== CREATE ====================

    async def create_ticket(self, actor_id: int, data: TicketCreate) -> Ticket:
        """Report a new abnormal finding. Anyone may create; L2 approvers are notified."""
        # Numbering first: its fallback path rolls the session back. The
        # counter increment is undone with everything else if a check fails.
        ticket_number = await TicketNumberService(self.db).next_ticket_number()

        unit = await self.registry.get_unit(data.production_unit_id)
        if unit is None:
            raise ResourceNotFound(f"Production unit {data.production_unit_id} not found")
        actor = await self.db.get(Person, actor_id)
        if actor is None:
            raise ResourceNotFound(f"Person {actor_id} not found")

        ticket = Ticket(
            ticket_number=ticket_number,
            title=data.title,
            description=data.description,
            status=TicketStatus.OPEN.value,
            production_unit_id=unit.id,
            created_by=actor_id,
            schedule_finish=data.schedule_finish,
        )
        ticket.production_unit = unit
        self.db.add(ticket)

        try:
            await self.db.flush()
            self.db.add(TicketStatusHistory(
                ticket_id=ticket.id,
                old_status=None,
                new_status=TicketStatus.OPEN.value,
                action=ActionType.CREATE.value,
                changed_by=actor_id,
                notes="Ticket created",
            ))
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to create ticket for unit {data.production_unit_id}: {e}")
            raise PersistenceError(f"Failed to create ticket: {e.__class__.__name__}")

        logger.info(f"Ticket {ticket.ticket_number} created by {actor_id} on unit {unit.id}")
        self._after_commit(ticket, ActionType.CREATE, actor_id, None, ticket.status, actor.full_name, None)
        return ticket

    # ==================== ACTIONS ====================

    async def perform_action(
        self,
        ticket_id: int,
        action,
        actor_id: int,
        payload: Optional[ActionPayload] = None,
    ) -> ActionOutcome:
        """
        Perform a workflow action on a ticket.

        Raises:
            TicketNotFound
            InvalidTransition: no edge from the current status, or another
                actor changed the ticket first
            InsufficientApprovalLevel / NotTicketParticipant
            InvalidActionPayload
            PersistenceError: status + history could not be committed
        """
        action = ActionType(action)
        if action is ActionType.CREATE:
            raise InvalidActionPayload("Tickets are created with create_ticket, not as an action")
        payload = payload or ActionPayload()

        ticket = await self.get_ticket(ticket_id, for_update=True)
        scope = HierarchyScope.of_unit(ticket.production_unit)
        actor_level = await self.registry.get_effective_level(actor_id, scope)

        rule = validate_transition(ticket, action, actor_id, actor_level)
        validate_payload(action, payload)
        if action in (ActionType.PLAN, ActionType.REASSIGN):
            await self._validate_assignee(payload.assigned_to, scope)

        actor = await self.db.get(Person, actor_id)
        old_status = ticket.status
        new_status = transition_ticket(ticket, rule, actor_id, payload, now=datetime.now(timezone.utc))

        changed_to = None
        if action in (ActionType.PLAN, ActionType.REASSIGN):
            changed_to = payload.assigned_to
        elif action is ActionType.ESCALATE:
            changed_to = payload.escalate_to

        note = payload.notes or (payload.rejection_reason if action is ActionType.REJECT else None)
        self.db.add(TicketStatusHistory(
            ticket_id=ticket.id,
            old_status=old_status,
            new_status=new_status.value,
            action=action.value,
            changed_by=actor_id,
            changed_to=changed_to,
            notes=status_change_note(old_status, new_status.value, note),
        ))

        try:
            await self.db.commit()
        except StaleDataError:
            await self.db.rollback()
            current = await self.get_ticket(ticket_id)
            logger.warning(
                f"Ticket {ticket_id} changed concurrently; '{action.value}' by {actor_id} "
                f"lost against status '{current.status}'"
            )
            raise InvalidTransition(
                current.status,
                action.value,
                [a.value for a in get_allowed_actions(current.status)],
            )
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to persist '{action.value}' on ticket {ticket_id}: {e}")
            raise PersistenceError(f"Failed to save ticket transition: {e.__class__.__name__}")

        logger.info(
            f"Ticket {ticket.ticket_number}: {old_status} -> {new_status.value} "
            f"({action.value} by {actor_id}, level {actor_level})"
        )
        self._after_commit(
            ticket, action, actor_id, old_status, new_status.value,
            actor.full_name if actor else None, note,
        )
        return ActionOutcome(ticket=ticket, old_status=old_status, new_status=new_status.value)

    async def accept(self, ticket_id: int, actor_id: int, payload: Optional[ActionPayload] = None) -> ActionOutcome:
        return await self.perform_action(ticket_id, ActionType.ACCEPT, actor_id, payload)

    async def reject(self, ticket_id: int, actor_id: int, payload: Optional[ActionPayload] = None) -> ActionOutcome:
        """Reject; ``escalate_to_l3=False`` skips the L3 review."""
        return await self.perform_action(ticket_id, ActionType.REJECT, actor_id, payload)

    async def plan(self, ticket_id: int, actor_id: int, payload: ActionPayload) -> ActionOutcome:
        """Assign and schedule an accepted ticket."""
        return await self.perform_action(ticket_id, ActionType.PLAN, actor_id, payload)

    async def start(self, ticket_id: int, actor_id: int, payload: Optional[ActionPayload] = None) -> ActionOutcome:
        return await self.perform_action(ticket_id, ActionType.START, actor_id, payload)

    async def finish(self, ticket_id: int, actor_id: int, payload: Optional[ActionPayload] = None) -> ActionOutcome:
        return await self.perform_action(ticket_id, ActionType.FINISH, actor_id, payload)

    async def escalate(self, ticket_id: int, actor_id: int, payload: Optional[ActionPayload] = None) -> ActionOutcome:
        return await self.perform_action(ticket_id, ActionType.ESCALATE, actor_id, payload)

    async def approve_review(self, ticket_id: int, actor_id: int,
                             payload: Optional[ActionPayload] = None) -> ActionOutcome:
        return await self.perform_action(ticket_id, ActionType.APPROVE_REVIEW, actor_id, payload)

    async def approve_close(self, ticket_id: int, actor_id: int,
                            payload: Optional[ActionPayload] = None) -> ActionOutcome:
        return await self.perform_action(ticket_id, ActionType.APPROVE_CLOSE, actor_id, payload)

    async def reassign(self, ticket_id: int, actor_id: int, payload: ActionPayload) -> ActionOutcome:
        return await self.perform_action(ticket_id, ActionType.REASSIGN, actor_id, payload)

    async def reopen(self, ticket_id: int, actor_id: int, payload: Optional[ActionPayload] = None) -> ActionOutcome:
        return await self.perform_action(ticket_id, ActionType.REOPEN, actor_id, payload)

    async def _validate_assignee(self, assignee_id: int, scope: HierarchyScope) -> None:
        assignee = await self.db.get(Person, assignee_id)
        if assignee is None or not assignee.is_active:
            raise InvalidActionPayload(f"Assignee {assignee_id} not found or inactive")
        if not await self.registry.has_level(assignee_id, scope, ApprovalLevel.L2):
            raise InvalidActionPayload(
                f"Assignee {assignee_id} needs approval level {int(ApprovalLevel.L2)} for {scope.label}"
            )

    def _after_commit(self, ticket: Ticket, action: ActionType, actor_id: int,
                      old_status: Optional[str], new_status: str,
                      actor_name: Optional[str], note: Optional[str]) -> None:
        if self.effects is None:
            return
        data = build_notification_data(ticket, action.value, old_status, new_status, actor_name, note)
        self.effects.schedule(ticket, action, actor_id, data)
