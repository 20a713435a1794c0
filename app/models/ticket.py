"""
Abnormal Finding Ticket Models.

Tables:
- tickets: the maintenance ticket and its workflow fields
- ticket_status_history: append-only log, one row per transition
- ticket_year_counters: per-year sequence backing AB{YY}-{00001} numbers
"""
import enum
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional, List

from sqlalchemy import String, DateTime, ForeignKey, Integer, Text, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base

if TYPE_CHECKING:
    from app.models.production_unit import ProductionUnit
    from app.models.work_order import WorkOrderLink


class TicketStatus(str, enum.Enum):
    """Ticket workflow status (stored as VARCHAR)."""
    OPEN = "open"
    ACCEPTED = "accepted"
    PLANED = "planed"
    IN_PROGRESS = "in_progress"
    REJECTED_PENDING_L3_REVIEW = "rejected_pending_l3_review"
    REJECTED_FINAL = "rejected_final"
    FINISHED = "finished"
    REVIEWED = "reviewed"
    ESCALATED = "escalated"
    CLOSED = "closed"
    REOPENED_IN_PROGRESS = "reopened_in_progress"


class ActionType(str, enum.Enum):
    """Workflow actions. CREATE opens a ticket; the rest move an existing one."""
    CREATE = "create"
    ACCEPT = "accept"
    REJECT = "reject"
    PLAN = "plan"
    START = "start"
    FINISH = "finish"
    ESCALATE = "escalate"
    APPROVE_REVIEW = "approve_review"
    APPROVE_CLOSE = "approve_close"
    REASSIGN = "reassign"
    REOPEN = "reopen"


class Ticket(Base):
    """Abnormal finding maintenance ticket."""
    __tablename__ = "tickets"
    __table_args__ = (
        Index("ix_ticket_status", "status"),
        Index("ix_ticket_assignee_status", "assigned_to", "status"),
        Index("ix_ticket_pu", "production_unit_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ticket_number: Mapped[str] = mapped_column(
        String(30),
        unique=True,
        nullable=False,
        comment="AB{YY}-{00001}"
    )

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(
        String(50),
        default=TicketStatus.OPEN.value,
        nullable=False,
        comment="open, accepted, planed, in_progress, rejected_pending_l3_review, rejected_final, "
                "finished, reviewed, escalated, closed, reopened_in_progress"
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    production_unit_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("production_units.id", ondelete="RESTRICT"),
        nullable=False
    )

    # Participants
    created_by: Mapped[int] = mapped_column(Integer, ForeignKey("persons.id"), nullable=False)
    assigned_to: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("persons.id"), nullable=True)
    escalated_to: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("persons.id"), nullable=True)

    # Schedule
    schedule_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    schedule_finish: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Workflow tracking
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    accepted_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    planned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    planned_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finish_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    escalated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    escalated_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    escalation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reviewed_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reopened_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reopened_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    # Relationships
    production_unit: Mapped["ProductionUnit"] = relationship("ProductionUnit", lazy="joined", innerjoin=True)
    status_history: Mapped[List["TicketStatusHistory"]] = relationship(
        "TicketStatusHistory",
        back_populates="ticket",
        order_by="TicketStatusHistory.id",
        lazy="raise",
    )
    work_order_link: Mapped[Optional["WorkOrderLink"]] = relationship(
        "WorkOrderLink",
        back_populates="ticket",
        uselist=False,
        lazy="raise",
    )

    # Optimistic concurrency: every flush bumps version and the UPDATE is
    # filtered on the version that was read.
    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Ticket {self.ticket_number} [{self.status}]>"


class TicketStatusHistory(Base):
    """Append-only status transition log."""
    __tablename__ = "ticket_status_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ticket_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("tickets.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    old_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    new_status: Mapped[str] = mapped_column(String(50), nullable=False)
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    changed_by: Mapped[int] = mapped_column(Integer, nullable=False)
    changed_to: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="Person the ticket was handed to (plan/reassign/start)"
    )
    notes: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    ticket: Mapped["Ticket"] = relationship("Ticket", back_populates="status_history")


class TicketYearCounter(Base):
    """Per-year ticket sequence; row is locked while incrementing."""
    __tablename__ = "ticket_year_counters"

    year: Mapped[int] = mapped_column(Integer, primary_key=True)
    last_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )
