"""
Pending Ticket Reminder Job.

Reminds assignees of the tickets they still have open work on:
- in_progress
- reopened_in_progress
- escalated

Each assignee with a chat id gets one message listing up to 10 tickets,
earliest due first.

Triggers:
- Daily scheduled job (via APScheduler)
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.production_unit import Person
from app.models.ticket import Ticket, TicketStatus

logger = logging.getLogger(__name__)

PENDING_STATUSES = [
    TicketStatus.IN_PROGRESS.value,
    TicketStatus.REOPENED_IN_PROGRESS.value,
    TicketStatus.ESCALATED.value,
]
MAX_TICKETS_PER_MESSAGE = 10


def build_reminder_message(person: Person, tickets: List[Ticket]) -> str:
    lines = [f"Hello {person.full_name}, you have {len(tickets)} pending ticket(s):"]
    for ticket in tickets[:MAX_TICKETS_PER_MESSAGE]:
        due = f" (due {ticket.schedule_finish:%Y-%m-%d})" if ticket.schedule_finish else ""
        lines.append(f"- {ticket.ticket_number} {ticket.title} [{ticket.status}]{due}")
    if len(tickets) > MAX_TICKETS_PER_MESSAGE:
        lines.append(f"...and {len(tickets) - MAX_TICKETS_PER_MESSAGE} more")
    lines.append(f"{settings.FRONTEND_URL.rstrip('/')}/tickets")
    return "\n".join(lines)


async def run_pending_ticket_reminders_job(db: AsyncSession, notifier) -> Dict[str, Any]:
    """
    Send one pending-ticket reminder per assignee.

    Returns:
        Summary of assignees found and messages sent
    """
    logger.info("Starting pending ticket reminders job...")

    results: Dict[str, Any] = {
        "started_at": datetime.now(timezone.utc).isoformat(),
        "assignees": 0,
        "tickets": 0,
        "messages_sent": 0,
        "errors": [],
    }

    ticket_result = await db.execute(
        select(Ticket)
        .where(
            Ticket.status.in_(PENDING_STATUSES),
            Ticket.assigned_to.is_not(None),
        )
        .order_by(Ticket.schedule_finish.asc().nulls_last(), Ticket.created_at.desc())
    )
    by_assignee: Dict[int, List[Ticket]] = {}
    for ticket in ticket_result.unique().scalars().all():
        by_assignee.setdefault(ticket.assigned_to, []).append(ticket)

    if not by_assignee:
        logger.info("No pending tickets to remind about")
        return results

    person_result = await db.execute(
        select(Person).where(
            Person.id.in_(list(by_assignee.keys())),
            Person.is_active == True,  # noqa: E712
            Person.line_id.is_not(None),
        )
    )
    persons = {person.id: person for person in person_result.scalars().all()}

    results["assignees"] = len(persons)
    for person_id, tickets in by_assignee.items():
        person = persons.get(person_id)
        if person is None:
            continue
        results["tickets"] += len(tickets)

        delivery = await notifier.send_chat_message(person.line_id, build_reminder_message(person, tickets))
        if delivery.success:
            results["messages_sent"] += 1
        else:
            logger.warning(f"Pending ticket reminder to person {person_id} failed: {delivery.error}")
            results["errors"].append(f"person {person_id}: {delivery.error}")

    logger.info(
        f"Pending ticket reminders job completed: {results['messages_sent']}/{results['assignees']} "
        f"assignees notified about {results['tickets']} tickets"
    )
    return results
