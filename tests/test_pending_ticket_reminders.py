from apscheduler.schedulers.asyncio import AsyncIOScheduler

from app.jobs.pending_ticket_reminders import run_pending_ticket_reminders_job
from app.jobs.scheduler import get_job_status, shutdown_scheduler, start_scheduler
from app.models.ticket import TicketStatus

from conftest import RecordingNotifier, line_id


async def test_assignee_gets_one_message(db, make_ticket, seed):
    first = await make_ticket(TicketStatus.IN_PROGRESS, title="Gearbox noise")
    second = await make_ticket(TicketStatus.ESCALATED, title="Belt slipping")
    await make_ticket(TicketStatus.PLANED, title="Not started yet")
    notifier = RecordingNotifier()

    result = await run_pending_ticket_reminders_job(db, notifier)

    assert (result["assignees"], result["tickets"], result["messages_sent"]) == (1, 2, 1)
    assert result["errors"] == []
    chat_id, message = notifier.chats[0]
    assert chat_id == line_id("3")
    assert first.ticket_number in message
    assert second.ticket_number in message
    assert "Not started yet" not in message
    assert message.startswith("Hello Niran Kaewmanee, you have 2 pending ticket(s):")


async def test_failed_reminder_is_reported(db, make_ticket):
    await make_ticket(TicketStatus.IN_PROGRESS)

    result = await run_pending_ticket_reminders_job(db, RecordingNotifier(fail=True))

    assert result["messages_sent"] == 0
    assert len(result["errors"]) == 1


async def test_nothing_pending(db):
    result = await run_pending_ticket_reminders_job(db, RecordingNotifier())
    assert result["assignees"] == 0
    assert result["messages_sent"] == 0


async def test_scheduler_registers_daily_job(test_settings, session_factory):
    settings = test_settings.model_copy(update={"PENDING_REMINDER_ENABLED": True, "PENDING_REMINDER_HOUR": 7})

    scheduler = start_scheduler(settings, session_factory, RecordingNotifier())
    try:
        assert isinstance(scheduler, AsyncIOScheduler)
        jobs = get_job_status(scheduler)
        assert [job["id"] for job in jobs] == ["pending_ticket_reminders"]
        assert "hour='7'" in jobs[0]["trigger"]
    finally:
        shutdown_scheduler(scheduler)


async def test_scheduler_disabled(test_settings, session_factory):
    assert start_scheduler(test_settings, session_factory, RecordingNotifier()) is None
    assert get_job_status(None) == []


async def test_scheduler_registers_all_reminder_jobs(test_settings, session_factory):
    settings = test_settings.model_copy(update={
        "PENDING_REMINDER_ENABLED": True,
        "DUE_DATE_REMINDER_ENABLED": True,
        "DUE_DATE_REMINDER_HOUR": 10,
        "OLD_OPEN_REMINDER_ENABLED": True,
        "OLD_OPEN_REMINDER_HOUR": 11,
    })

    scheduler = start_scheduler(settings, session_factory, RecordingNotifier())
    try:
        jobs = {job["id"]: job for job in get_job_status(scheduler)}
        assert set(jobs) == {"pending_ticket_reminders", "due_date_reminders", "old_open_ticket_reminders"}
        assert "hour='10'" in jobs["due_date_reminders"]["trigger"]
        assert "hour='11'" in jobs["old_open_ticket_reminders"]["trigger"]
    finally:
        shutdown_scheduler(scheduler)
