"""
Hierarchical Approval Grant Model.

An approval grant gives a person an approval level over a scope of the
production hierarchy. Unspecified trailing scope fields mean the grant
applies to every child node:

    (DJ, None, None, None)    -> whole plant DJ
    (DJ, DMH, None, None)     -> area DMH of plant DJ
    (DJ, DMH, L01, None)      -> line L01 of area DMH

Approval Levels:
- L1: Creator / requester
- L2: Accept, reject, plan, escalate, start/finish as assignee
- L3: Reassign, final reject, reopen
- L4: Review approval and final close approval
"""
import enum
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Integer, Index, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base

if TYPE_CHECKING:
    from app.models.production_unit import Person


class ApprovalLevel(enum.IntEnum):
    """Authority tier of an approval grant."""
    L1 = 1
    L2 = 2
    L3 = 3
    L4 = 4


class ApprovalGrant(Base):
    """A (person, level, scope) grant maintained by administrators."""
    __tablename__ = "approval_grants"
    __table_args__ = (
        Index("ix_grant_person", "person_id"),
        Index("ix_grant_level_plant", "approval_level", "plant_code"),
        CheckConstraint("approval_level BETWEEN 1 AND 4", name="ck_grant_level_range"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    person_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("persons.id", ondelete="CASCADE"),
        nullable=False
    )
    approval_level: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="1-4, see ApprovalLevel"
    )

    # Scope (partially specified hierarchy tuple)
    plant_code: Mapped[str] = mapped_column(String(20), nullable=False)
    area_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    line_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    machine_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
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

    person: Mapped["Person"] = relationship("Person", lazy="raise")

    def __repr__(self) -> str:
        scope = "/".join(c for c in (self.plant_code, self.area_code, self.line_code, self.machine_code) if c)
        return f"<ApprovalGrant person={self.person_id} L{self.approval_level} {scope}>"
