"""
Ticket notification delivery.

- Notifier: the delivery interface (email + chat), results never raise
- ChannelNotifier: SMTP email + LINE push implementation
- NotificationDispatcher: fans a ticket event out to resolved recipients,
  one independent send per recipient and channel
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from app.config import settings
from app.core.exceptions import NotificationDeliveryError
from app.services.email_service import EMAIL_SUBJECTS, EmailService, get_email_service
from app.services.line_service import LineService, get_line_service
from app.services.recipient_resolver import NotificationRecipient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    error: Optional[str] = None
    channel: Optional[str] = None
    person_id: Optional[int] = None


class Notifier(Protocol):
    async def send_email(self, recipient: NotificationRecipient, template_kind: str,
                         data: Dict[str, Any]) -> DeliveryResult:
        ...

    async def send_chat_message(self, chat_id: str, message: str) -> DeliveryResult:
        ...


# ==================== MESSAGE CONTENT ====================

def build_notification_data(
    ticket,
    action: str,
    old_status: Optional[str],
    new_status: str,
    actor_name: Optional[str] = None,
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    """Plain-data snapshot of a ticket event, safe to use after the session closes."""
    unit = ticket.production_unit
    location = " / ".join(
        code for code in (unit.plant_code, unit.area_code, unit.line_code, unit.machine_code) if code
    ) if unit is not None else None
    return {
        "ticket_id": ticket.id,
        "ticket_number": ticket.ticket_number,
        "title": ticket.title,
        "action": action,
        "old_status": old_status,
        "new_status": new_status,
        "location": location,
        "actor_name": actor_name,
        "notes": notes,
        "ticket_url": f"{settings.FRONTEND_URL.rstrip('/')}/tickets/{ticket.id}",
    }


def build_chat_message(template_kind: str, data: Dict[str, Any]) -> str:
    headline = EMAIL_SUBJECTS.get(template_kind, "Ticket Status Updated - {ticket_number}").format(
        ticket_number=data.get("ticket_number", "")
    )
    lines = [headline, f"Title: {data.get('title')}"]
    if data.get("old_status"):
        lines.append(f"Status: {data.get('old_status')} -> {data.get('new_status')}")
    else:
        lines.append(f"Status: {data.get('new_status')}")
    if data.get("location"):
        lines.append(f"Location: {data['location']}")
    if data.get("actor_name"):
        lines.append(f"By: {data['actor_name']}")
    if data.get("notes"):
        lines.append(f"Notes: {data['notes']}")
    if data.get("ticket_url"):
        lines.append(data["ticket_url"])
    return "\n".join(lines)


# ==================== CHANNEL NOTIFIER ====================

class ChannelNotifier:
    """Email over SMTP and chat over the LINE push API."""

    def __init__(
        self,
        email_service: Optional[EmailService] = None,
        line_service: Optional[LineService] = None,
        timeout: Optional[float] = None,
    ):
        self.email_service = email_service or get_email_service()
        self.line_service = line_service or get_line_service()
        self.timeout = timeout or settings.NOTIFICATION_TIMEOUT_SECONDS

    async def send_email(self, recipient: NotificationRecipient, template_kind: str,
                         data: Dict[str, Any]) -> DeliveryResult:
        if not recipient.email:
            return DeliveryResult(False, "no_email", "email", recipient.person_id)
        data = {**data, "recipient_name": recipient.name, "reason": recipient.reason}
        try:
            # smtplib blocks; the SMTP socket timeout bounds the worker thread
            sent = await asyncio.wait_for(
                asyncio.to_thread(self.email_service.send_ticket_email, recipient.email, template_kind, data),
                timeout=self.timeout * 2,
            )
        except Exception as e:
            return DeliveryResult(False, str(e) or e.__class__.__name__, "email", recipient.person_id)
        return DeliveryResult(sent, None if sent else "send_failed", "email", recipient.person_id)

    async def send_chat_message(self, chat_id: str, message: str) -> DeliveryResult:
        try:
            sent, error = await self.line_service.push_message(chat_id, message)
        except Exception as e:
            return DeliveryResult(False, str(e) or e.__class__.__name__, "line")
        return DeliveryResult(sent, error, "line")


# ==================== DISPATCHER ====================

class NotificationDispatcher:
    """Sends one ticket event to every recipient over every channel they have."""

    def __init__(self, notifier: Notifier):
        self.notifier = notifier

    async def dispatch(
        self,
        template_kind: str,
        data: Dict[str, Any],
        recipients: List[NotificationRecipient],
    ) -> List[DeliveryResult]:
        sends = []
        for recipient in recipients:
            if recipient.email:
                sends.append(self._send(recipient, "email", template_kind, data))
            if recipient.chat_id:
                sends.append(self._send(recipient, "line", template_kind, data))

        if not sends:
            logger.info(f"No deliverable recipients for ticket {data.get('ticket_id')} ({template_kind})")
            return []

        results = await asyncio.gather(*sends)
        delivered = sum(1 for r in results if r.success)
        logger.info(
            f"Ticket {data.get('ticket_id')} {template_kind}: "
            f"{delivered}/{len(results)} notifications delivered to {len(recipients)} recipients"
        )
        return list(results)

    async def _send(self, recipient: NotificationRecipient, channel: str,
                    template_kind: str, data: Dict[str, Any]) -> DeliveryResult:
        try:
            if channel == "email":
                result = await self.notifier.send_email(recipient, template_kind, data)
            else:
                result = await self.notifier.send_chat_message(
                    recipient.chat_id, build_chat_message(template_kind, data)
                )
        except Exception as e:
            result = DeliveryResult(False, str(e) or e.__class__.__name__)

        result = DeliveryResult(result.success, result.error, channel, recipient.person_id)
        if not result.success:
            error = NotificationDeliveryError(result.error or "unknown error")
            logger.error(
                f"[{error.code}] {channel} to person {recipient.person_id} failed "
                f"for ticket {data.get('ticket_id')} ({template_kind}): {error.message}"
            )
        return result
