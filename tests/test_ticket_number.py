import re

import pytest
from sqlalchemy.exc import OperationalError

from app.services.ticket_number_service import TicketNumberService


@pytest.fixture
def numbers(db) -> TicketNumberService:
    return TicketNumberService(db, prefix="AB")


def test_format(numbers):
    assert numbers.format_number(2025, 1) == "AB25-00001"
    assert numbers.format_number(2031, 123456) == "AB31-123456"


async def test_sequence_per_year(numbers, db):
    assert await numbers.next_ticket_number(2025) == "AB25-00001"
    assert await numbers.next_ticket_number(2025) == "AB25-00002"
    assert await numbers.next_ticket_number(2026) == "AB26-00001"
    await db.commit()

    assert await numbers.preview_next_number(2025) == "AB25-00003"
    assert await numbers.next_ticket_number(2025) == "AB25-00003"


async def test_rolled_back_number_is_reused(numbers, db):
    assert await numbers.next_ticket_number(2025) == "AB25-00001"
    await db.rollback()
    assert await numbers.next_ticket_number(2025) == "AB25-00001"


async def test_counter_failure_falls_back_to_timestamp(numbers, monkeypatch):
    async def broken(year):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(numbers, "_lock_counter", broken)

    number = await numbers.next_ticket_number(2025)
    assert re.fullmatch(r"AB25-T\d{13}", number)
