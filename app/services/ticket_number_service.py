"""
Ticket Number Service.

Format: {PREFIX}{YY}-{SEQUENCE}, e.g. AB25-00001

- Sequence restarts every calendar year
- Atomic increment with database-level locking (SELECT FOR UPDATE)
- If the counter cannot be read or written the number falls back to
  {PREFIX}{YY}-T{timestamp} so ticket creation never fails on numbering

USAGE:
    service = TicketNumberService(db)
    ticket_number = await service.next_ticket_number()
    # Returns: AB25-00001
"""
import logging
import time
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.ticket import TicketYearCounter

logger = logging.getLogger(__name__)

SEQUENCE_PADDING = 5


class TicketNumberService:
    """Generates per-year ticket numbers."""

    def __init__(self, db: AsyncSession, prefix: Optional[str] = None):
        self.db = db
        self.prefix = prefix or settings.TICKET_NUMBER_PREFIX

    def format_number(self, year: int, sequence: int) -> str:
        return f"{self.prefix}{year % 100:02d}-{str(sequence).zfill(SEQUENCE_PADDING)}"

    def fallback_number(self, year: int) -> str:
        return f"{self.prefix}{year % 100:02d}-T{int(time.time() * 1000)}"

    async def next_ticket_number(self, year: Optional[int] = None) -> str:
        """
        Increment the year's counter and return the formatted number.

        Call before writing anything else in the transaction: on failure the
        session is rolled back and the fallback number is returned.
        """
        if year is None:
            year = datetime.now(timezone.utc).year

        try:
            counter = await self._lock_counter(year)
            counter.last_number += 1
            await self.db.flush()
            sequence = counter.last_number
        except SQLAlchemyError as e:
            await self.db.rollback()
            number = self.fallback_number(year)
            logger.error(f"Ticket counter for {year} failed, using fallback number {number}: {e}")
            return number

        return self.format_number(year, sequence)

    async def _lock_counter(self, year: int) -> TicketYearCounter:
        result = await self.db.execute(
            select(TicketYearCounter)
            .where(TicketYearCounter.year == year)
            .with_for_update()
        )
        counter = result.scalar_one_or_none()
        if counter is None:
            counter = TicketYearCounter(year=year, last_number=0)
            self.db.add(counter)
            await self.db.flush()
        return counter

    async def preview_next_number(self, year: Optional[int] = None) -> str:
        """What the next number would be, without incrementing."""
        if year is None:
            year = datetime.now(timezone.utc).year
        counter = await self.db.get(TicketYearCounter, year)
        return self.format_number(year, (counter.last_number if counter else 0) + 1)
