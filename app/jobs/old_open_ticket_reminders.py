"""
Old Open Ticket Reminder Job.

Tickets still `open` more than OLD_OPEN_TICKET_HOURS after they were reported
are waiting on an L2 / L3 decision. Every L2 and L3 approver of such a
ticket's production unit who has a chat id gets one message listing their
waiting tickets, oldest first.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.approval import ApprovalLevel
from app.models.ticket import Ticket, TicketStatus
from app.services.approval_registry import ApprovalRegistry, ApproverMatch
from app.services.hierarchy_matcher import HierarchyScope

logger = logging.getLogger(__name__)

REMINDED_LEVELS = (ApprovalLevel.L2, ApprovalLevel.L3)
MAX_TICKETS_PER_MESSAGE = 10


def open_duration(created_at: datetime, now: datetime) -> str:
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    hours = max(int((now - created_at).total_seconds() // 3600), 0)
    if hours >= 24:
        return f"{hours // 24}d {hours % 24}h"
    return f"{hours}h"


def build_old_open_message(name: str, tickets: List[Ticket], now: datetime, hours: int) -> str:
    lines = [f"Hello {name}, {len(tickets)} ticket(s) have been waiting for acceptance over {hours} hours:"]
    for ticket in tickets[:MAX_TICKETS_PER_MESSAGE]:
        lines.append(f"- {ticket.ticket_number} {ticket.title} (open {open_duration(ticket.created_at, now)})")
    if len(tickets) > MAX_TICKETS_PER_MESSAGE:
        lines.append(f"...and {len(tickets) - MAX_TICKETS_PER_MESSAGE} more")
    lines.append(f"{settings.FRONTEND_URL.rstrip('/')}/tickets")
    return "\n".join(lines)


async def run_old_open_ticket_reminders_job(
    db: AsyncSession,
    notifier,
    now: Optional[datetime] = None,
    older_than_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Send one old-open-ticket reminder per L2 / L3 approver.

    Returns:
        Summary of tickets found, approvers notified and messages sent
    """
    now = now or datetime.now(timezone.utc)
    hours = settings.OLD_OPEN_TICKET_HOURS if older_than_hours is None else older_than_hours
    threshold = now - timedelta(hours=hours)

    logger.info(f"Starting old open ticket reminders job (open since before {threshold.isoformat()})...")

    results: Dict[str, Any] = {
        "started_at": now.isoformat(),
        "tickets": 0,
        "approvers": 0,
        "messages_sent": 0,
        "errors": [],
    }

    ticket_result = await db.execute(
        select(Ticket)
        .where(
            Ticket.status == TicketStatus.OPEN.value,
            Ticket.created_at < threshold,
        )
        .order_by(Ticket.created_at.asc(), Ticket.id.asc())
    )
    tickets = list(ticket_result.unique().scalars().all())
    results["tickets"] = len(tickets)
    if not tickets:
        logger.info("No old open tickets")
        return results

    registry = ApprovalRegistry(db)
    approvers_by_unit: Dict[int, List[ApproverMatch]] = {}
    recipients: Dict[int, ApproverMatch] = {}
    tickets_by_person: Dict[int, List[Ticket]] = {}

    for ticket in tickets:
        if ticket.production_unit_id not in approvers_by_unit:
            scope = HierarchyScope.of_unit(ticket.production_unit)
            approvers: List[ApproverMatch] = []
            for level in REMINDED_LEVELS:
                approvers.extend(await registry.find_approvers(int(level), scope))
            approvers_by_unit[ticket.production_unit_id] = approvers

        for approver in approvers_by_unit[ticket.production_unit_id]:
            if not approver.line_id:
                continue
            recipients.setdefault(approver.person_id, approver)
            person_tickets = tickets_by_person.setdefault(approver.person_id, [])
            if ticket not in person_tickets:
                person_tickets.append(ticket)

    results["approvers"] = len(recipients)
    for person_id, approver in recipients.items():
        message = build_old_open_message(approver.name, tickets_by_person[person_id], now, hours)
        delivery = await notifier.send_chat_message(approver.line_id, message)
        if delivery.success:
            results["messages_sent"] += 1
        else:
            logger.warning(f"Old open ticket reminder to person {person_id} failed: {delivery.error}")
            results["errors"].append(f"person {person_id}: {delivery.error}")

    logger.info(
        f"Old open ticket reminders job completed: {results['messages_sent']}/{results['approvers']} "
        f"approvers notified about {results['tickets']} tickets"
    )
    return results
