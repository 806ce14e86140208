"""Tests for SlotAllocator — slot generation and race-free booking."""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from conftest import NOW, FixedClock
from intake.allocator import BookingStatus, SlotAllocator, section_for_grade
from intake.errors import PersistenceError
from intake.models.records import AdmissionFields


async def _student(gateway, mobile="+15551234567") -> int:
    return await gateway.create_admission(AdmissionFields(displayname="Test Student"), mobile)


class TestCandidateTimes:
    def test_window_skips_friday_and_saturday(self, allocator):
        # Thursday: tomorrow is Friday, then Saturday, then Sunday
        thursday = datetime(2026, 10, 15, 9, 0)
        days = allocator.window_days(thursday)
        assert [d.isoformat() for d in days] == ["2026-10-18"]

    def test_saturday_window_has_three_full_days(self, allocator):
        times = allocator.candidate_times(NOW)
        assert len(times) == 42
        assert times[0] == datetime(2026, 10, 18, 8, 0)
        assert times[-1] == datetime(2026, 10, 20, 14, 30)

    def test_half_hour_steps_end_before_day_end(self, allocator):
        times = allocator.candidate_times(NOW)
        first_day = [t for t in times if t.day == 18]
        assert len(first_day) == 14
        assert all(t.minute in (0, 30) for t in times)
        assert all(8 <= t.hour < 15 for t in times)

    def test_only_strictly_future_times(self, gateway):
        allocator = SlotAllocator(gateway, clock=FixedClock(NOW), window_days=1)
        # A window starting tomorrow is always in the future
        assert all(t > NOW for t in allocator.candidate_times(NOW))

    def test_invalid_hours_rejected(self, gateway):
        with pytest.raises(ValueError):
            SlotAllocator(gateway, clock=FixedClock(), day_start_hour=15, day_end_hour=8)

    def test_section_label(self):
        assert section_for_grade(1) == "Section 1"
        assert section_for_grade(3) == "Section 1"
        assert section_for_grade(4) == "Section 2"
        assert section_for_grade(None) == "Section 2"


class TestAvailableSlots:
    async def test_all_free_initially(self, allocator):
        slots = await allocator.available_slots(grade=3)
        assert len(slots) == 42
        assert slots[0].section == "Section 1"

    async def test_booked_slot_excluded(self, allocator, gateway):
        sid = await _student(gateway)
        target = datetime(2026, 10, 19, 10, 0)
        outcome = await allocator.book(sid, target, for_grade=3)
        assert outcome.ok

        slots = await allocator.available_slots(grade=3)
        assert len(slots) == 41
        assert target not in [s.start for s in slots]

    async def test_recomputation_is_stable(self, allocator):
        first = await allocator.available_slots(grade=5)
        second = await allocator.available_slots(grade=5)
        assert first == second


class TestBooking:
    async def test_book_returns_appointment(self, allocator, gateway):
        sid = await _student(gateway)
        outcome = await allocator.book(sid, datetime(2026, 10, 18, 8, 0), for_grade=3)
        assert outcome.status == BookingStatus.booked
        assert outcome.appointment.student_id == sid
        assert outcome.appointment.purpose == "Admission Inquiry"
        assert outcome.appointment.for_grade == 3

    async def test_second_booking_conflicts(self, allocator, gateway):
        a = await _student(gateway, "+15550000001")
        b = await _student(gateway, "+15550000002")
        start = datetime(2026, 10, 18, 8, 0)

        assert (await allocator.book(a, start)).ok
        outcome = await allocator.book(b, start)
        assert outcome.status == BookingStatus.conflict
        assert outcome.appointment is None

    async def test_concurrent_bookings_exactly_one_wins(self, allocator, gateway):
        ids = [await _student(gateway, f"+1555000000{i}") for i in range(5)]
        start = datetime(2026, 10, 18, 9, 30)

        outcomes = await asyncio.gather(*(allocator.book(sid, start) for sid in ids))
        statuses = [o.status for o in outcomes]
        assert statuses.count(BookingStatus.booked) == 1
        assert statuses.count(BookingStatus.conflict) == 4

        slots = await allocator.available_slots()
        assert start not in [s.start for s in slots]

    async def test_conflict_then_relist_drops_the_slot(self, allocator, gateway):
        a = await _student(gateway, "+15550000001")
        b = await _student(gateway, "+15550000002")
        slots = await allocator.available_slots()
        chosen = slots[0].start

        assert (await allocator.book(a, chosen)).ok
        assert (await allocator.book(b, chosen)).status == BookingStatus.conflict

        fresh = await allocator.available_slots()
        assert fresh[0].start == chosen + timedelta(minutes=30)

    async def test_supersedes_replaces_existing(self, allocator, gateway):
        sid = await _student(gateway)
        old = await allocator.book(sid, datetime(2026, 10, 19, 9, 0))
        new = await allocator.book(
            sid, datetime(2026, 10, 18, 8, 0), supersedes=old.appointment.id
        )
        assert new.ok

        remaining = await allocator.future_appointments(sid)
        assert [a.appdate for a in remaining] == [datetime(2026, 10, 18, 8, 0)]

    async def test_nearest_future_appointment(self, allocator, gateway):
        sid = await _student(gateway)
        await allocator.book(sid, datetime(2026, 10, 20, 9, 0))
        await allocator.book(sid, datetime(2026, 10, 18, 11, 0))
        nearest = await allocator.nearest_future_appointment(sid)
        assert nearest.appdate == datetime(2026, 10, 18, 11, 0)

    async def test_gateway_failure_is_failed_outcome(self, allocator, gateway):
        gateway.book_appointment = AsyncMock(side_effect=PersistenceError("database down"))
        outcome = await allocator.book(1, datetime(2026, 10, 18, 8, 0))
        assert outcome.status == BookingStatus.failed
        assert "database down" in outcome.error
