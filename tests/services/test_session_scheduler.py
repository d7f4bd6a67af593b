"""Tests for SessionScheduler rolling-window top-ups from both triggers."""

import uuid
from datetime import UTC, date, datetime, time, timedelta

import pytest
from sqlalchemy import select

from fulfillment.core.exceptions import AllocationNotFoundError
from fulfillment.db.models import Allocation, TutoringSession
from fulfillment.domain.results import Duplicate
from fulfillment.events.envelope import EventType
from fulfillment.services.session_scheduler import SessionScheduler

pytestmark = pytest.mark.unit

# Monday
NOW = datetime(2026, 10, 19, 9, 0, tzinfo=UTC)
TODAY = NOW.date()


@pytest.fixture
def scheduler(session_factory, emitter, settings):
    return SessionScheduler(session_factory, emitter, settings)


async def _sessions(session_factory, allocation_id) -> list[TutoringSession]:
    async with session_factory() as session:
        result = await session.execute(
            select(TutoringSession)
            .where(TutoringSession.allocation_id == allocation_id)
            .order_by(TutoringSession.scheduled_date)
        )
        return list(result.scalars().all())


async def _status(session_factory, allocation_id) -> str:
    async with session_factory() as session:
        return (await session.get(Allocation, allocation_id)).status


class TestRollingWindow:
    @pytest.mark.asyncio
    async def test_tops_up_to_high_water_after_last_session(self, scheduler, seed_allocation, session_factory, event_log):
        """Tier 10 with 2 upcoming sessions -> 5 new sessions, 7 upcoming."""
        allocation = await seed_allocation(
            tier=10,
            sessions=[(date(2026, 10, 20), "scheduled"), (date(2026, 10, 21), "scheduled")],
        )

        result = await scheduler.ensure_window(allocation.id, now=NOW)

        assert result.upcoming_before == 2
        assert len(result.created) == 5
        assert result.upcoming_after == 7

        sessions = await _sessions(session_factory, allocation.id)
        new_dates = [s.scheduled_date for s in sessions][2:]
        assert new_dates == [
            date(2026, 10, 22),
            date(2026, 10, 23),
            date(2026, 10, 26),
            date(2026, 10, 27),
            date(2026, 10, 28),
        ]
        assert all(s.scheduled_time == time(16, 0) for s in sessions)
        assert all(s.status == "scheduled" for s in sessions)

        [event] = event_log.envelopes("sessions-generated")
        assert event["payload"]["allocationId"] == str(allocation.id)
        assert sorted(event["payload"]["sessionIds"]) == sorted(str(s) for s in result.created)
        assert event["correlationId"] == allocation.correlation_id

    @pytest.mark.asyncio
    async def test_rerun_with_full_window_is_noop(self, scheduler, seed_allocation, session_factory, event_log):
        allocation = await seed_allocation(tier=10)

        first = await scheduler.ensure_window(allocation.id, now=NOW)
        second = await scheduler.ensure_window(allocation.id, now=NOW)

        assert len(first.created) == 7
        assert second.created == []
        assert second.upcoming_before == 7
        assert len(await _sessions(session_factory, allocation.id)) == 7
        assert len(event_log.on_topic("sessions-generated")) == 1

    @pytest.mark.asyncio
    async def test_window_at_low_water_is_left_alone(self, scheduler, seed_allocation):
        allocation = await seed_allocation(
            tier=10,
            sessions=[(TODAY + timedelta(days=d), "scheduled") for d in (1, 2, 3)],
        )

        result = await scheduler.ensure_window(allocation.id, now=NOW)

        assert result.created == []

    @pytest.mark.asyncio
    async def test_never_schedules_beyond_tier(self, scheduler, seed_allocation, session_factory):
        past = [(date(2026, 9, 1) + timedelta(days=d), "completed") for d in range(8)]
        allocation = await seed_allocation(tier=10, sessions=past)

        result = await scheduler.ensure_window(allocation.id, now=NOW)

        assert len(result.created) == 2
        again = await scheduler.ensure_window(allocation.id, now=NOW + timedelta(days=30))
        assert again.created == []
        assert len(await _sessions(session_factory, allocation.id)) == 10

    @pytest.mark.asyncio
    async def test_cancelled_sessions_do_not_consume_tier(self, scheduler, seed_allocation):
        allocation = await seed_allocation(
            tier=3,
            sessions=[(date(2026, 10, 12), "cancelled"), (date(2026, 10, 13), "cancelled")],
        )

        result = await scheduler.ensure_window(allocation.id, now=NOW)

        assert len(result.created) == 3

    @pytest.mark.asyncio
    async def test_respects_start_date_and_days_of_week(self, scheduler, seed_allocation, session_factory):
        allocation = await seed_allocation(
            tier=4,
            start_date=date(2026, 11, 2),
            metadata={"daysOfWeek": ["monday", "wednesday"], "timeSlot": "5:30 PM"},
        )

        result = await scheduler.ensure_window(allocation.id, now=NOW)

        sessions = await _sessions(session_factory, allocation.id)
        assert len(result.created) == 4
        assert [s.scheduled_date for s in sessions] == [
            date(2026, 11, 2),
            date(2026, 11, 4),
            date(2026, 11, 9),
            date(2026, 11, 11),
        ]
        assert all(s.scheduled_time == time(17, 30) for s in sessions)


class TestAllocationStatus:
    @pytest.mark.asyncio
    async def test_first_sessions_activate_approved_allocation(self, scheduler, seed_allocation, session_factory):
        allocation = await seed_allocation(status="approved")

        await scheduler.ensure_window(allocation.id, now=NOW)

        assert await _status(session_factory, allocation.id) == "active"

    @pytest.mark.asyncio
    async def test_ended_allocation_is_skipped(self, scheduler, seed_allocation, session_factory, event_log):
        allocation = await seed_allocation(status="ended")

        result = await scheduler.ensure_window(allocation.id, now=NOW)

        assert result.created == []
        assert result.skipped_reason == "allocation_ended"
        assert await _sessions(session_factory, allocation.id) == []
        assert event_log.records == []

    @pytest.mark.asyncio
    async def test_missing_allocation_raises(self, scheduler):
        with pytest.raises(AllocationNotFoundError):
            await scheduler.ensure_window(uuid.uuid4(), now=NOW)


class TestEventTrigger:
    @pytest.mark.asyncio
    async def test_trainer_allocated_fills_window_once(
        self, scheduler, seed_allocation, make_envelope, session_factory, event_log
    ):
        allocation = await seed_allocation(tier=10)
        envelope = make_envelope(
            EventType.TRAINER_ALLOCATED,
            {
                "allocationId": str(allocation.id),
                "studentId": allocation.student_id,
                "courseId": allocation.course_id,
                "tutorId": allocation.tutor_id,
                "sessionCount": 10,
            },
            correlation_id="corr-001",
            source="allocation-coordinator",
        )

        first = await scheduler.handle(envelope)
        second = await scheduler.handle(envelope)

        assert len(first.created) == 7
        assert isinstance(second, Duplicate)
        assert len(await _sessions(session_factory, allocation.id)) == 7

        [event] = event_log.envelopes("sessions-generated")
        assert event["correlationId"] == "corr-001"
        assert len(event["payload"]["sessionIds"]) == 7


class TestTopUpAll:
    @pytest.mark.asyncio
    async def test_tops_up_every_open_allocation(self, scheduler, seed_allocation):
        await seed_allocation(student_id="S1", status="approved")
        await seed_allocation(student_id="S2", status="active")
        await seed_allocation(student_id="S3", status="ended")

        summary = await scheduler.top_up_all(now=NOW)

        assert summary.allocations == 2
        assert summary.sessions_created == 14
        assert summary.failed == []

    @pytest.mark.asyncio
    async def test_one_failing_allocation_does_not_stop_the_sweep(self, scheduler, seed_allocation, monkeypatch):
        broken = await seed_allocation(student_id="S1")
        healthy = await seed_allocation(student_id="S2")
        original = scheduler.ensure_window

        async def flaky_ensure_window(allocation_id, now=None, trigger=None):
            if allocation_id == broken.id:
                raise ConnectionError("database connection reset")
            return await original(allocation_id, now=now, trigger=trigger)

        monkeypatch.setattr(scheduler, "ensure_window", flaky_ensure_window)

        summary = await scheduler.top_up_all(now=NOW)

        assert summary.failed == [broken.id]
        assert summary.sessions_created == 7
        assert healthy.id not in summary.failed

    @pytest.mark.asyncio
    async def test_stop_request_ends_sweep_between_allocations(self, scheduler, seed_allocation, monkeypatch):
        for student_id in ("S1", "S2", "S3"):
            await seed_allocation(student_id=student_id)
        original = scheduler.ensure_window
        processed = []

        async def ensure_window_then_stop(allocation_id, now=None, trigger=None):
            processed.append(allocation_id)
            result = await original(allocation_id, now=now, trigger=trigger)
            scheduler.request_stop()
            return result

        monkeypatch.setattr(scheduler, "ensure_window", ensure_window_then_stop)

        summary = await scheduler.top_up_all(now=NOW)

        assert len(processed) == 1
        assert summary.allocations == 3
        assert summary.sessions_created == 7
        assert summary.interrupted is True

    @pytest.mark.asyncio
    async def test_full_sweep_is_not_interrupted(self, scheduler, seed_allocation):
        await seed_allocation(student_id="S1")

        summary = await scheduler.top_up_all(now=NOW)

        assert summary.interrupted is False
