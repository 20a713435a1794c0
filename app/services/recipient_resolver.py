"""
Notification Recipient Resolver.

Builds the recipient list for a workflow action from three groups, in this
priority order:

1. approval-level recipients   (ACTION_APPROVAL_LEVELS, per level)
2. ticket role recipients      (ACTION_ROLES: creator / assignee / requester)
3. the actor                   (always last)

A person is listed once. When they qualify under several groups the FIRST
group's entry is kept and later ones are dropped, so someone who is both an
L2 approver and the creator is notified as an approver. Whether the other
reasons should be merged or shown is an open product question; the
first-wins order is kept as is.

A failing group (e.g. database error) is rolled back to its savepoint and
logged, and contributes nothing; resolution itself never raises.
"""
import enum
import logging
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.production_unit import Person
from app.models.ticket import ActionType
from app.services.approval_registry import ApprovalRegistry
from app.services.hierarchy_matcher import HierarchyScope

logger = logging.getLogger(__name__)


class TicketRole(str, enum.Enum):
    """Ticket participant roles that receive notifications."""
    CREATOR = "creator"
    ASSIGNEE = "assignee"
    REQUESTER = "requester"  # same person as creator, different wording


class RecipientType(str, enum.Enum):
    APPROVER = "approver"
    CREATOR = "creator"
    ASSIGNEE = "assignee"
    REQUESTER = "requester"
    ACTOR = "actor"


# =============================================================================
# ROUTING TABLES
# =============================================================================

ACTION_APPROVAL_LEVELS: Dict[ActionType, Tuple[int, ...]] = {
    ActionType.CREATE: (2,),
    ActionType.ACCEPT: (),
    ActionType.REJECT: (3,),
    ActionType.PLAN: (),
    ActionType.START: (),
    ActionType.FINISH: (),
    ActionType.ESCALATE: (3, 4),
    ActionType.APPROVE_REVIEW: (4,),
    ActionType.APPROVE_CLOSE: (),
    ActionType.REASSIGN: (),
    ActionType.REOPEN: (2,),
}

ACTION_ROLES: Dict[ActionType, Tuple[TicketRole, ...]] = {
    ActionType.CREATE: (),
    ActionType.ACCEPT: (TicketRole.REQUESTER,),
    ActionType.REJECT: (TicketRole.REQUESTER,),
    ActionType.PLAN: (TicketRole.ASSIGNEE, TicketRole.REQUESTER),
    ActionType.START: (TicketRole.REQUESTER,),
    ActionType.FINISH: (TicketRole.REQUESTER,),
    ActionType.ESCALATE: (TicketRole.REQUESTER,),
    ActionType.APPROVE_REVIEW: (TicketRole.ASSIGNEE,),
    ActionType.APPROVE_CLOSE: (TicketRole.ASSIGNEE, TicketRole.REQUESTER),
    ActionType.REASSIGN: (TicketRole.ASSIGNEE, TicketRole.REQUESTER),
    ActionType.REOPEN: (TicketRole.ASSIGNEE,),
}

for _table_name, _table in (("ACTION_APPROVAL_LEVELS", ACTION_APPROVAL_LEVELS), ("ACTION_ROLES", ACTION_ROLES)):
    _missing = [a.value for a in ActionType if a not in _table]
    if _missing:
        raise RuntimeError(f"{_table_name} has no entry for: {', '.join(_missing)}")

ROLE_REASONS = {
    TicketRole.CREATOR: "Ticket Creator",
    TicketRole.ASSIGNEE: "Ticket Assignee",
    TicketRole.REQUESTER: "Ticket Requester",
}


# =============================================================================
# RECIPIENT TYPES
# =============================================================================

@dataclass(frozen=True)
class ContactInfo:
    person_id: int
    name: str
    email: Optional[str] = None
    chat_id: Optional[str] = None
    avatar_url: Optional[str] = None


@dataclass(frozen=True)
class NotificationRecipient:
    """A person to notify, why, and through which channels."""
    person_id: int
    name: str
    reason: str
    recipient_type: RecipientType
    email: Optional[str] = None
    chat_id: Optional[str] = None
    avatar_url: Optional[str] = None
    approval_level: Optional[int] = None

    @property
    def channels(self) -> List[str]:
        channels = []
        if self.email:
            channels.append("email")
        if self.chat_id:
            channels.append("line")
        return channels

    def to_dict(self) -> dict:
        return {
            "person_id": self.person_id,
            "name": self.name,
            "email": self.email,
            "chat_id": self.chat_id,
            "avatar_url": self.avatar_url,
            "reason": self.reason,
            "recipient_type": self.recipient_type.value,
            "approval_level": self.approval_level,
            "channels": self.channels,
        }


@dataclass(frozen=True)
class ApproverGroup:
    level: int


@dataclass(frozen=True)
class RoleGroup:
    role: TicketRole
    person_id: Optional[int]


@dataclass(frozen=True)
class ActorGroup:
    person_id: int
    action: ActionType


def actor_reason(action: ActionType) -> str:
    return f"Actor Notification - Performed Action: {action.value}"


# =============================================================================
# RESOLVER
# =============================================================================

class RecipientResolver:
    """Computes ordered, deduplicated notification recipients for an action."""

    def __init__(self, db: AsyncSession, registry: Optional[ApprovalRegistry] = None):
        self.db = db
        self.registry = registry or ApprovalRegistry(db)

    async def resolve(self, ticket, action, actor_id: Optional[int]) -> List[NotificationRecipient]:
        """Recipients for ``action`` performed on ``ticket`` by ``actor_id``."""
        action = ActionType(action)
        scope = HierarchyScope.of_unit(ticket.production_unit)
        groups = self._groups(action, created_by=ticket.created_by, assigned_to=ticket.assigned_to)
        if actor_id is not None:
            groups.append(ActorGroup(actor_id, action))
        return await self._collect(groups, scope, exclude_person_id=actor_id, ticket_id=ticket.id)

    async def resolve_for_unit(
        self,
        unit_id: int,
        action,
        created_by: Optional[int] = None,
        assigned_to: Optional[int] = None,
    ) -> List[NotificationRecipient]:
        """
        Preview variant without a ticket: approval-level and role groups for a
        production unit and explicit participants, each enriched with avatar.
        """
        action = ActionType(action)
        scope = await self.registry.get_unit_scope(unit_id)
        groups = self._groups(action, created_by=created_by, assigned_to=assigned_to)
        recipients = await self._collect(groups, scope, exclude_person_id=None, ticket_id=None)
        return await self._with_avatars(recipients)

    # ------------------------------------------------------------------

    @staticmethod
    def _groups(action: ActionType, created_by: Optional[int], assigned_to: Optional[int]) -> list:
        groups: list = [ApproverGroup(level) for level in ACTION_APPROVAL_LEVELS[action]]
        for role in ACTION_ROLES[action]:
            person_id = assigned_to if role is TicketRole.ASSIGNEE else created_by
            groups.append(RoleGroup(role, person_id))
        return groups

    async def _collect(
        self,
        groups: list,
        scope: HierarchyScope,
        exclude_person_id: Optional[int],
        ticket_id: Optional[int],
    ) -> List[NotificationRecipient]:
        recipients: List[NotificationRecipient] = []
        seen = set()
        for group in groups:
            try:
                # Savepoint per group: a failed query must not abort the session for later groups
                async with self.db.begin_nested():
                    candidates = await self._resolve_group(group, scope, exclude_person_id)
            except Exception as e:
                logger.error(f"Recipient group {group} failed for ticket {ticket_id}: {e}")
                continue
            for recipient in candidates:
                if recipient.person_id in seen:
                    continue
                seen.add(recipient.person_id)
                recipients.append(recipient)
        return recipients

    async def _resolve_group(self, group, scope: HierarchyScope,
                             exclude_person_id: Optional[int]) -> List[NotificationRecipient]:
        if isinstance(group, ApproverGroup):
            approvers = await self.registry.find_approvers(group.level, scope, exclude_person_id)
            return [
                NotificationRecipient(
                    person_id=a.person_id,
                    name=a.name,
                    email=a.email,
                    chat_id=a.line_id,
                    reason=f"L{group.level} Approver - {a.scope_description}",
                    recipient_type=RecipientType.APPROVER,
                    approval_level=group.level,
                )
                for a in approvers
            ]

        if isinstance(group, RoleGroup):
            if group.person_id is None:
                return []
            contact = await self.query_contact(group.person_id)
            if contact is None:
                return []
            return [NotificationRecipient(
                person_id=contact.person_id,
                name=contact.name,
                email=contact.email,
                chat_id=contact.chat_id,
                reason=ROLE_REASONS[group.role],
                recipient_type=RecipientType(group.role.value),
            )]

        if isinstance(group, ActorGroup):
            contact = await self.query_contact(group.person_id)
            if contact is None:
                return []
            return [NotificationRecipient(
                person_id=contact.person_id,
                name=contact.name,
                email=contact.email,
                chat_id=contact.chat_id,
                reason=actor_reason(group.action),
                recipient_type=RecipientType.ACTOR,
            )]

        raise TypeError(f"Unknown recipient group: {group!r}")

    async def query_contact(self, person_id: int) -> Optional[ContactInfo]:
        """Contact record of an active person, or None."""
        person = await self.db.get(Person, person_id)
        if person is None or not person.is_active:
            return None
        return ContactInfo(
            person_id=person.id,
            name=person.full_name,
            email=person.email,
            chat_id=person.line_id,
            avatar_url=person.avatar_url,
        )

    async def _with_avatars(self, recipients: Iterable[NotificationRecipient]) -> List[NotificationRecipient]:
        recipients = list(recipients)
        if not recipients:
            return recipients
        try:
            result = await self.db.execute(
                select(Person.id, Person.avatar_url).where(
                    Person.id.in_([r.person_id for r in recipients])
                )
            )
            avatars = {row.id: row.avatar_url for row in result.all()}
        except Exception as e:
            logger.error(f"Avatar lookup failed: {e}")
            return recipients
        return [replace(r, avatar_url=avatars.get(r.person_id)) for r in recipients]
