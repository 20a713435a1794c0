"""
Production Unit (PU) and Person reference models.

Both tables mirror master data owned by the Cedar CMMS:
- ProductionUnit: a node in the plant / area / line / machine hierarchy
- Person: contact record used for notifications (email, LINE, avatar)
"""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, Boolean, DateTime, Integer, Index
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class ProductionUnit(Base):
    """
    Production unit with its resolved hierarchy codes.

    A PU always belongs to a plant; area, line and machine are filled in as
    deep as the PU sits in the hierarchy (a line-level PU has no machine).
    """
    __tablename__ = "production_units"
    __table_args__ = (
        Index("ix_pu_hierarchy", "plant_code", "area_code", "line_code", "machine_code"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, comment="PUNO")
    code: Mapped[str] = mapped_column(
        String(50),
        unique=True,
        nullable=False,
        comment="PUCODE, e.g. DJ-DMH-L01-M03"
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    plant_code: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    area_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    line_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    machine_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<ProductionUnit {self.code}>"


class Person(Base):
    """Person contact record (PERSON table in the CMMS)."""
    __tablename__ = "persons"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, comment="PERSONNO")
    first_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    display_name: Mapped[Optional[str]] = mapped_column(
        String(200),
        nullable=True,
        comment="PERSON_NAME; preferred over first/last when present"
    )

    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    line_id: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
        comment="LINE user id (U + 32 chars) for chat push"
    )
    avatar_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    @property
    def full_name(self) -> str:
        if self.display_name and self.display_name.strip():
            return self.display_name.strip()
        combined = f"{(self.first_name or '').strip()} {(self.last_name or '').strip()}".strip()
        return combined or "Unknown User"

    def __repr__(self) -> str:
        return f"<Person {self.id} {self.full_name}>"
