"""
Shared fixtures: a throwaway SQLite database seeded with one plant
hierarchy, approvers at every level, and recording fakes for the
notification channels.

Seeded hierarchy (plant DJ, area DMH):

    unit 1001  DJ-DMH-L01-M03
    unit 1002  DJ-DMH-L02-M01

Seeded people and grants:

    1 creator       no grants
    2 supervisor    L2 plant DJ + L2 area DJ/DMH
    3 technician    L1 plant DJ + L2 line DJ/DMH/L01
    4 manager       L3 plant DJ
    5 plant admin   L4 plant DJ (has an avatar)
    6 other line    L2 line DJ/DMH/L02
    7 inactive      L2 plant DJ, person deactivated
    8 other plant   L4 plant KR
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Tuple

import pytest

from app.config import Settings
from app.database import create_engine_from_settings, create_session_factory, init_db
from app.jobs.background import BackgroundJobQueue
from app.models.approval import ApprovalGrant
from app.models.production_unit import Person, ProductionUnit
from app.models.ticket import ActionType, TicketStatus
from app.schemas.ticket import ActionPayload, TicketCreate
from app.services.notifier import DeliveryResult, NotificationDispatcher
from app.services.work_order_sync import WorkOrderSyncService
from app.services.work_order_system import SqlWorkOrderSystem
from app.services.workflow_orchestrator import PostCommitEffects, WorkflowOrchestrator


def line_id(digit: str) -> str:
    return "U" + digit * 32


@dataclass(frozen=True)
class Seed:
    unit: int = 1001
    other_unit: int = 1002
    creator: int = 1
    supervisor: int = 2
    technician: int = 3
    manager: int = 4
    plant_admin: int = 5
    other_line: int = 6
    inactive: int = 7
    other_plant: int = 8


SEED = Seed()

PLAN_START = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)
PLAN_FINISH = datetime(2026, 3, 4, 17, 0, tzinfo=timezone.utc)


class RecordingNotifier:
    """Notifier that records every send and succeeds unless told otherwise."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.emails: List[Tuple[int, str, Dict[str, Any]]] = []
        self.chats: List[Tuple[str, str]] = []

    @property
    def emailed_person_ids(self) -> set:
        return {person_id for person_id, _, _ in self.emails}

    async def send_email(self, recipient, template_kind, data):
        self.emails.append((recipient.person_id, template_kind, data))
        if self.fail:
            return DeliveryResult(False, "smtp down", "email", recipient.person_id)
        return DeliveryResult(True, None, "email", recipient.person_id)

    async def send_chat_message(self, chat_id, message):
        self.chats.append((chat_id, message))
        if self.fail:
            return DeliveryResult(False, "HTTP 500", "line")
        return DeliveryResult(True, None, "line")


async def seed_reference_data(session) -> None:
    session.add_all([
        ProductionUnit(id=SEED.unit, code="DJ-DMH-L01-M03", name="Mixer 3",
                       plant_code="DJ", area_code="DMH", line_code="L01", machine_code="M03"),
        ProductionUnit(id=SEED.other_unit, code="DJ-DMH-L02-M01", name="Filler 1",
                       plant_code="DJ", area_code="DMH", line_code="L02", machine_code="M01"),
    ])
    session.add_all([
        Person(id=SEED.creator, first_name="Somchai", last_name="Jaidee",
               email="somchai@example.com", line_id=line_id("1")),
        Person(id=SEED.supervisor, display_name="Area Supervisor",
               email="supervisor@example.com", line_id=line_id("2")),
        Person(id=SEED.technician, first_name="Niran", last_name="Kaewmanee",
               email="niran@example.com", line_id=line_id("3")),
        Person(id=SEED.manager, display_name="Plant Manager", email="manager@example.com"),
        Person(id=SEED.plant_admin, display_name="Plant Director", email="director@example.com",
               avatar_url="https://cdn.example.com/avatars/5.png"),
        Person(id=SEED.other_line, display_name="Line 2 Lead", email="line2@example.com"),
        Person(id=SEED.inactive, display_name="Former Supervisor", email="former@example.com",
               is_active=False),
        Person(id=SEED.other_plant, display_name="KR Director", email="kr@example.com"),
    ])
    await session.flush()
    session.add_all([
        ApprovalGrant(person_id=SEED.supervisor, approval_level=2, plant_code="DJ"),
        ApprovalGrant(person_id=SEED.supervisor, approval_level=2, plant_code="DJ", area_code="DMH"),
        ApprovalGrant(person_id=SEED.technician, approval_level=1, plant_code="DJ"),
        ApprovalGrant(person_id=SEED.technician, approval_level=2, plant_code="DJ",
                      area_code="DMH", line_code="L01"),
        ApprovalGrant(person_id=SEED.manager, approval_level=3, plant_code="DJ"),
        ApprovalGrant(person_id=SEED.plant_admin, approval_level=4, plant_code="DJ"),
        ApprovalGrant(person_id=SEED.other_line, approval_level=2, plant_code="DJ",
                      area_code="DMH", line_code="L02"),
        ApprovalGrant(person_id=SEED.inactive, approval_level=2, plant_code="DJ"),
        ApprovalGrant(person_id=SEED.other_plant, approval_level=4, plant_code="KR"),
    ])
    await session.commit()


# Actions (actor, action, payload) leading from open to each status
_PLAN = ActionPayload(assigned_to=SEED.technician, schedule_start=PLAN_START, schedule_finish=PLAN_FINISH)

_TO_ACCEPTED = [(SEED.supervisor, ActionType.ACCEPT, None)]
_TO_PLANED = _TO_ACCEPTED + [(SEED.supervisor, ActionType.PLAN, _PLAN)]
_TO_IN_PROGRESS = _TO_PLANED + [(SEED.technician, ActionType.START, None)]
_TO_FINISHED = _TO_IN_PROGRESS + [(SEED.technician, ActionType.FINISH, ActionPayload(notes="Bearing replaced"))]
_TO_REVIEWED = _TO_FINISHED + [(SEED.plant_admin, ActionType.APPROVE_REVIEW, None)]
_TO_CLOSED = _TO_REVIEWED + [(SEED.creator, ActionType.APPROVE_CLOSE, None)]

PATHS = {
    TicketStatus.OPEN: [],
    TicketStatus.ACCEPTED: _TO_ACCEPTED,
    TicketStatus.PLANED: _TO_PLANED,
    TicketStatus.IN_PROGRESS: _TO_IN_PROGRESS,
    TicketStatus.FINISHED: _TO_FINISHED,
    TicketStatus.REVIEWED: _TO_REVIEWED,
    TicketStatus.CLOSED: _TO_CLOSED,
    TicketStatus.ESCALATED: _TO_IN_PROGRESS + [(SEED.supervisor, ActionType.ESCALATE, None)],
    TicketStatus.REJECTED_PENDING_L3_REVIEW: [(SEED.supervisor, ActionType.REJECT, None)],
    TicketStatus.REJECTED_FINAL: [(SEED.supervisor, ActionType.REJECT, ActionPayload(escalate_to_l3=False))],
    TicketStatus.REOPENED_IN_PROGRESS: _TO_CLOSED + [(SEED.creator, ActionType.REOPEN, None)],
}


@pytest.fixture
def seed() -> Seed:
    return SEED


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'workflow.db'}",
        PENDING_REMINDER_ENABLED=False,
        DUE_DATE_REMINDER_ENABLED=False,
        OLD_OPEN_REMINDER_ENABLED=False,
        SMTP_USER="",
        SMTP_PASSWORD="",
        LINE_CHANNEL_ACCESS_TOKEN="",
        JOB_DRAIN_TIMEOUT_SECONDS=2.0,
    )


@pytest.fixture
async def engine(test_settings):
    engine = create_engine_from_settings(test_settings)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def session_factory(engine):
    factory = create_session_factory(engine)
    async with factory() as session:
        await seed_reference_data(session)
    return factory


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def work_order_system(session_factory) -> SqlWorkOrderSystem:
    return SqlWorkOrderSystem(session_factory, code_prefix="WO")


@pytest.fixture
def sync_service(session_factory, work_order_system) -> WorkOrderSyncService:
    return WorkOrderSyncService(session_factory, work_order_system, timeout=5.0)


@pytest.fixture
async def effects(session_factory, notifier, sync_service):
    effects = PostCommitEffects(
        session_factory, BackgroundJobQueue(), NotificationDispatcher(notifier), sync_service,
    )
    yield effects
    await effects.jobs.drain(2.0)


@pytest.fixture
def orchestrator(db, effects) -> WorkflowOrchestrator:
    return WorkflowOrchestrator(db, effects)


@pytest.fixture
def make_ticket(db):
    """
    Create a ticket on unit 1001 and walk it to ``status`` without side
    effects. Returns the ticket.
    """
    async def _make(status: TicketStatus = TicketStatus.OPEN, title: str = "Abnormal vibration on mixer"):
        setup = WorkflowOrchestrator(db)
        ticket = await setup.create_ticket(
            SEED.creator, TicketCreate(title=title, production_unit_id=SEED.unit),
        )
        for actor_id, action, payload in PATHS[status]:
            await setup.perform_action(ticket.id, action, actor_id, payload)
        return await setup.get_ticket(ticket.id)

    return _make
