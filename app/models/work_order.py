"""
Cedar CMMS Work Order Models.

- WorkOrder: the CMMS-side work order record (WO table) written by
  SqlWorkOrderSystem
- WorkOrderLink: the ticket's view of its work order and last sync outcome
- WorkOrderIntegrationLog: one row per sync attempt, success or error
"""
import enum
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from sqlalchemy import String, DateTime, ForeignKey, Integer, Text, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base

if TYPE_CHECKING:
    from app.models.ticket import Ticket


class SyncStatus(str, enum.Enum):
    """Outcome of the last work order sync attempt."""
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


class WorkOrder(Base):
    """Work order record in the CMMS."""
    __tablename__ = "work_orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True, comment="WONO")
    code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True, unique=True, comment="WOCODE")
    wf_status_code: Mapped[str] = mapped_column(String(5), nullable=False, default="10")

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    production_unit_id: Mapped[int] = mapped_column(Integer, nullable=False)
    reported_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    accepted_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    work_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    schedule_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    schedule_finish: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_finish: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    remark: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

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


class WorkOrderLink(Base):
    """Ticket to work order link with last sync status."""
    __tablename__ = "work_order_links"

    ticket_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("tickets.id", ondelete="CASCADE"),
        primary_key=True
    )
    external_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, comment="WONO")
    external_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True, comment="WOCODE")
    sync_status: Mapped[str] = mapped_column(
        String(20),
        default=SyncStatus.PENDING.value,
        nullable=False,
        comment="pending, success, error"
    )
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    ticket: Mapped["Ticket"] = relationship("Ticket", back_populates="work_order_link")


class WorkOrderIntegrationLog(Base):
    """Append-only log of work order sync attempts."""
    __tablename__ = "work_order_integration_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ticket_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    external_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False, comment="create, status_update")
    status: Mapped[str] = mapped_column(String(20), nullable=False, comment="success, error")
    request_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    response_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
