from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from app.core.exceptions import (
    InsufficientApprovalLevel,
    InvalidActionPayload,
    InvalidTransition,
    PersistenceError,
    ResourceNotFound,
    TicketNotFound,
)
from app.models.ticket import ActionType, Ticket, TicketStatus, TicketStatusHistory
from app.schemas.ticket import ActionPayload, TicketCreate
from app.services.workflow_orchestrator import WorkflowOrchestrator, status_change_note

from conftest import PLAN_FINISH, PLAN_START


async def history_of(session_factory, ticket_id):
    async with session_factory() as session:
        result = await session.execute(
            select(TicketStatusHistory)
            .where(TicketStatusHistory.ticket_id == ticket_id)
            .order_by(TicketStatusHistory.id)
        )
        return list(result.scalars().all())


async def status_of(session_factory, ticket_id):
    async with session_factory() as session:
        return await session.scalar(select(Ticket.status).where(Ticket.id == ticket_id))


def test_status_change_note():
    assert status_change_note("open", "accepted") == "Status changed from open to accepted"
    assert status_change_note("open", "accepted", "ok") == "Status changed from open to accepted - ok"
    assert len(status_change_note("a", "b", "x" * 1000)) == 500


async def test_create_ticket(orchestrator, effects, notifier, session_factory, seed):
    year = datetime.now(timezone.utc).year % 100

    ticket = await orchestrator.create_ticket(
        seed.creator, TicketCreate(title="Oil leak at gearbox", production_unit_id=seed.unit),
    )
    await effects.jobs.join()

    assert ticket.ticket_number == f"AB{year:02d}-00001"
    assert ticket.status == "open"
    history = await history_of(session_factory, ticket.id)
    assert [(h.old_status, h.new_status, h.action) for h in history] == [(None, "open", "create")]
    assert history[0].notes == "Ticket created"

    # L2 approvers plus the creator as actor; no work order before acceptance
    assert notifier.emailed_person_ids == {seed.supervisor, seed.technician, seed.creator}
    assert {kind for _, kind, _ in notifier.emails} == {"create"}
    assert await effects.sync_service.get_link(ticket.id) is None


async def test_ticket_numbers_increase(orchestrator, seed):
    first = await orchestrator.create_ticket(seed.creator, TicketCreate(title="A", production_unit_id=seed.unit))
    second = await orchestrator.create_ticket(seed.creator, TicketCreate(title="B", production_unit_id=seed.unit))
    assert first.ticket_number.endswith("-00001")
    assert second.ticket_number.endswith("-00002")


async def test_create_ticket_unknown_unit(orchestrator, seed):
    with pytest.raises(ResourceNotFound):
        await orchestrator.create_ticket(seed.creator, TicketCreate(title="A", production_unit_id=9999))


async def test_accept_by_level_two(orchestrator, effects, notifier, make_ticket, session_factory, seed):
    ticket = await make_ticket()

    outcome = await orchestrator.perform_action(ticket.id, "accept", seed.supervisor)
    await effects.jobs.join()

    assert (outcome.old_status, outcome.new_status) == ("open", "accepted")
    assert outcome.ticket.accepted_by == seed.supervisor
    history = await history_of(session_factory, ticket.id)
    accept_rows = [h for h in history if h.action == "accept"]
    assert len(accept_rows) == 1
    assert (accept_rows[0].old_status, accept_rows[0].new_status) == ("open", "accepted")
    assert accept_rows[0].changed_by == seed.supervisor

    # Requester, then the actor
    assert notifier.emailed_person_ids == {seed.creator, seed.supervisor}
    assert len(notifier.chats) == 2

    link = await effects.sync_service.get_link(ticket.id)
    assert link.external_code == "WO000001"
    assert link.sync_status == "success"
    status = await effects.sync_service.work_order_system.get_work_order_status(link.external_id)
    assert status.wf_status_code == "10"


async def test_approve_review_needs_level_four(orchestrator, effects, notifier, make_ticket,
                                               session_factory, seed):
    ticket = await make_ticket(TicketStatus.FINISHED)
    before = await history_of(session_factory, ticket.id)

    with pytest.raises(InsufficientApprovalLevel) as exc_info:
        await orchestrator.perform_action(ticket.id, ActionType.APPROVE_REVIEW, seed.supervisor)
    await effects.jobs.join()

    assert exc_info.value.required_level == 4
    assert exc_info.value.actor_level == 2
    assert await status_of(session_factory, ticket.id) == "finished"
    assert len(await history_of(session_factory, ticket.id)) == len(before)
    assert notifier.emails == []


async def test_invalid_action_leaves_ticket_unchanged(orchestrator, effects, notifier, make_ticket,
                                                      session_factory, seed):
    ticket = await make_ticket()

    with pytest.raises(InvalidTransition):
        await orchestrator.perform_action(ticket.id, ActionType.FINISH, seed.plant_admin)
    await effects.jobs.join()

    assert await status_of(session_factory, ticket.id) == "open"
    assert len(await history_of(session_factory, ticket.id)) == 1
    assert notifier.emails == []


async def test_create_is_not_an_action(orchestrator, make_ticket, seed):
    ticket = await make_ticket()
    with pytest.raises(InvalidActionPayload):
        await orchestrator.perform_action(ticket.id, "create", seed.supervisor)


async def test_unknown_ticket(orchestrator, seed):
    with pytest.raises(TicketNotFound):
        await orchestrator.perform_action(424242, "accept", seed.supervisor)


class InterleavedOrchestrator(WorkflowOrchestrator):
    """Runs ``competitor`` right after the ticket is loaded for update."""

    def __init__(self, db, competitor):
        super().__init__(db)
        self.competitor = competitor
        self._fired = False

    async def get_ticket(self, ticket_id, for_update=False):
        ticket = await super().get_ticket(ticket_id, for_update)
        if for_update and not self._fired:
            self._fired = True
            await self.competitor()
        return ticket


async def test_concurrent_accept_and_reject(db, make_ticket, session_factory, seed):
    ticket = await make_ticket()

    async def accept_first():
        async with session_factory() as other:
            await WorkflowOrchestrator(other).perform_action(ticket.id, "accept", seed.supervisor)

    loser = InterleavedOrchestrator(db, accept_first)
    with pytest.raises(InvalidTransition) as exc_info:
        await loser.perform_action(ticket.id, "reject", seed.technician)

    assert exc_info.value.current_status == "accepted"
    assert await status_of(session_factory, ticket.id) == "accepted"
    actions = [h.action for h in await history_of(session_factory, ticket.id)]
    assert actions == ["create", "accept"]


async def test_second_action_sees_committed_state(make_ticket, session_factory, seed):
    ticket = await make_ticket()

    async with session_factory() as first, session_factory() as second:
        await WorkflowOrchestrator(first).perform_action(ticket.id, "accept", seed.supervisor)
        with pytest.raises(InvalidTransition):
            await WorkflowOrchestrator(second).perform_action(ticket.id, "reject", seed.technician)

    assert await status_of(session_factory, ticket.id) == "accepted"


async def test_persistence_failure_has_no_side_effects(orchestrator, effects, notifier, make_ticket,
                                                       session_factory, monkeypatch, seed):
    ticket = await make_ticket()

    async def failing_commit():
        raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(orchestrator.db, "commit", failing_commit)
    with pytest.raises(PersistenceError):
        await orchestrator.perform_action(ticket.id, "accept", seed.supervisor)
    await effects.jobs.join()

    assert await status_of(session_factory, ticket.id) == "open"
    assert len(await history_of(session_factory, ticket.id)) == 1
    assert notifier.emails == []
    assert await effects.sync_service.get_link(ticket.id) is None


async def test_plan_requires_l2_assignee(orchestrator, make_ticket, seed):
    ticket = await make_ticket(TicketStatus.ACCEPTED)
    payload = ActionPayload(assigned_to=seed.creator, schedule_start=PLAN_START, schedule_finish=PLAN_FINISH)

    with pytest.raises(InvalidActionPayload):
        await orchestrator.perform_action(ticket.id, ActionType.PLAN, seed.supervisor, payload)

    payload = ActionPayload(assigned_to=seed.other_line, schedule_start=PLAN_START, schedule_finish=PLAN_FINISH)
    with pytest.raises(InvalidActionPayload):
        await orchestrator.perform_action(ticket.id, ActionType.PLAN, seed.supervisor, payload)


async def test_plan_records_assignee_in_history(orchestrator, make_ticket, session_factory, seed):
    ticket = await make_ticket(TicketStatus.ACCEPTED)
    payload = ActionPayload(assigned_to=seed.technician, schedule_start=PLAN_START,
                            schedule_finish=PLAN_FINISH, notes="Parts in stock")

    outcome = await orchestrator.perform_action(ticket.id, ActionType.PLAN, seed.supervisor, payload)

    assert outcome.ticket.assigned_to == seed.technician
    last = (await history_of(session_factory, ticket.id))[-1]
    assert last.changed_to == seed.technician
    assert last.notes == "Status changed from accepted to planed - Parts in stock"


async def test_full_lifecycle_and_reopen(make_ticket, orchestrator, session_factory, seed):
    ticket = await make_ticket(TicketStatus.CLOSED)

    outcome = await orchestrator.reopen(ticket.id, seed.creator)
    assert outcome.new_status == "reopened_in_progress"
    outcome = await orchestrator.finish(ticket.id, seed.technician)
    assert outcome.new_status == "finished"

    actions = [h.action for h in await history_of(session_factory, ticket.id)]
    assert actions == ["create", "accept", "plan", "start", "finish", "approve_review",
                       "approve_close", "reopen", "finish"]


async def test_reject_without_l3_review_is_final(orchestrator, make_ticket, seed):
    ticket = await make_ticket()
    payload = ActionPayload(escalate_to_l3=False, rejection_reason="Not a defect")

    outcome = await orchestrator.reject(ticket.id, seed.supervisor, payload)

    assert outcome.new_status == "rejected_final"
    assert outcome.ticket.rejection_reason == "Not a defect"


async def test_escalate_then_reassign(orchestrator, make_ticket, seed):
    ticket = await make_ticket(TicketStatus.ESCALATED)

    with pytest.raises(InsufficientApprovalLevel):
        await orchestrator.perform_action(ticket.id, ActionType.REASSIGN, seed.supervisor,
                                          ActionPayload(assigned_to=seed.supervisor))
    outcome = await orchestrator.perform_action(ticket.id, ActionType.REASSIGN, seed.manager,
                                                ActionPayload(assigned_to=seed.supervisor))

    assert outcome.new_status == "in_progress"
    assert outcome.ticket.assigned_to == seed.supervisor


async def test_allowed_actions_for(orchestrator, make_ticket, seed):
    ticket = await make_ticket()

    assert await orchestrator.allowed_actions_for(ticket, seed.supervisor) == ["accept", "reject"]
    assert await orchestrator.allowed_actions_for(ticket, seed.creator) == []
    assert await orchestrator.allowed_actions_for(ticket, None) == ["accept", "reject"]


async def test_pending_list(orchestrator, make_ticket, seed):
    open_ticket = await make_ticket(TicketStatus.OPEN, title="open one")
    reviewed = await make_ticket(TicketStatus.REVIEWED, title="reviewed one")
    in_progress = await make_ticket(TicketStatus.IN_PROGRESS, title="running one")
    await make_ticket(TicketStatus.CLOSED, title="closed one")

    supervisor = dict((t.id, tag) for t, tag in await orchestrator.list_pending_for_person(seed.supervisor))
    assert supervisor == {open_ticket.id: "accept_approver"}

    technician = dict((t.id, tag) for t, tag in await orchestrator.list_pending_for_person(seed.technician))
    assert technician == {open_ticket.id: "accept_approver", in_progress.id: "assignee"}

    creator = dict((t.id, tag) for t, tag in await orchestrator.list_pending_for_person(seed.creator))
    assert creator == {reviewed.id: "close_approver"}

    admin = dict((t.id, tag) for t, tag in await orchestrator.list_pending_for_person(seed.plant_admin))
    assert admin[reviewed.id] == "close_approver"
    assert admin[open_ticket.id] == "accept_approver"


async def test_history_is_ordered(orchestrator, make_ticket, seed):
    ticket = await make_ticket(TicketStatus.PLANED)
    history = await orchestrator.get_history(ticket.id)
    assert [h.new_status for h in history] == ["open", "accepted", "planed"]
    assert history[1].notes == "Status changed from open to accepted"
