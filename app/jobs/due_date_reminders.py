"""
Due-Date Reminder Job.

Reminds assignees of planned / started tickets whose scheduled finish is
within DUE_DATE_WINDOW_DAYS days or already past. Each assignee with a chat
id gets one message listing up to 10 tickets, most late first, each marked
Overdue or Due Soon.
"""
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.production_unit import Person
from app.models.ticket import Ticket, TicketStatus

logger = logging.getLogger(__name__)

DUE_DATE_STATUSES = [TicketStatus.PLANED.value, TicketStatus.IN_PROGRESS.value]
MAX_TICKETS_PER_MESSAGE = 10

OVERDUE = "Overdue"
DUE_SOON = "Due Soon"


def _as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def due_label(schedule_finish: datetime, today: date) -> str:
    return OVERDUE if _as_utc(schedule_finish).date() < today else DUE_SOON


def build_due_date_message(person: Person, tickets: List[Ticket], today: date) -> str:
    lines = [f"Hello {person.full_name}, {len(tickets)} ticket(s) are due soon or overdue:"]
    for ticket in tickets[:MAX_TICKETS_PER_MESSAGE]:
        lines.append(
            f"- {ticket.ticket_number} {ticket.title} [{due_label(ticket.schedule_finish, today)}] "
            f"(due {ticket.schedule_finish:%Y-%m-%d})"
        )
    if len(tickets) > MAX_TICKETS_PER_MESSAGE:
        lines.append(f"...and {len(tickets) - MAX_TICKETS_PER_MESSAGE} more")
    lines.append(f"{settings.FRONTEND_URL.rstrip('/')}/tickets")
    return "\n".join(lines)


async def run_due_date_reminders_job(
    db: AsyncSession,
    notifier,
    now: Optional[datetime] = None,
    window_days: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Send one due-date reminder per assignee.

    Returns:
        Summary of assignees found, tickets listed and messages sent
    """
    now = now or datetime.now(timezone.utc)
    window_days = settings.DUE_DATE_WINDOW_DAYS if window_days is None else window_days
    today = now.date()
    cutoff = datetime.combine(today + timedelta(days=window_days + 1), time.min, tzinfo=timezone.utc)

    logger.info(f"Starting due-date reminders job (due before {cutoff:%Y-%m-%d})...")

    results: Dict[str, Any] = {
        "started_at": now.isoformat(),
        "assignees": 0,
        "tickets": 0,
        "overdue": 0,
        "messages_sent": 0,
        "errors": [],
    }

    ticket_result = await db.execute(
        select(Ticket)
        .where(
            Ticket.status.in_(DUE_DATE_STATUSES),
            Ticket.assigned_to.is_not(None),
            Ticket.schedule_finish.is_not(None),
            Ticket.schedule_finish < cutoff,
        )
        .order_by(Ticket.schedule_finish.asc(), Ticket.id.asc())
    )
    by_assignee: Dict[int, List[Ticket]] = {}
    for ticket in ticket_result.unique().scalars().all():
        by_assignee.setdefault(ticket.assigned_to, []).append(ticket)

    if not by_assignee:
        logger.info("No tickets due soon or overdue")
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
        results["overdue"] += sum(1 for t in tickets if due_label(t.schedule_finish, today) == OVERDUE)

        delivery = await notifier.send_chat_message(person.line_id, build_due_date_message(person, tickets, today))
        if delivery.success:
            results["messages_sent"] += 1
        else:
            logger.warning(f"Due-date reminder to person {person_id} failed: {delivery.error}")
            results["errors"].append(f"person {person_id}: {delivery.error}")

    logger.info(
        f"Due-date reminders job completed: {results['messages_sent']}/{results['assignees']} "
        f"assignees notified, {results['overdue']} of {results['tickets']} tickets overdue"
    )
    return results
