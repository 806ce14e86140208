"""Slot allocator — bookable meeting times and race-free booking.

Candidate slots are every ``step_minutes`` mark between ``day_start_hour``
(inclusive) and ``day_end_hour`` (exclusive) on each allowed weekday in a
window of ``window_days`` days starting tomorrow.  Anything not strictly
in the future, or already booked, is dropped.  The list is recomputed on
every call so a stale cache never hides a concurrent booking.

Booking is serialized per timestamp in-process and made atomic by the
gateway's transaction plus the unique constraint on the appointment time.
A taken slot comes back as ``BookingStatus.conflict``; nothing raises.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Callable, Iterable, Optional
from zoneinfo import ZoneInfo

from intake.errors import ExternalServiceError, SlotTakenError
from intake.locks import KeyedLock
from intake.models.records import AppointmentDraft, AppointmentRecord
from intake.persistence.base import PersistenceGateway

log = logging.getLogger("intake.allocator")

SUNDAY_TO_THURSDAY = frozenset({6, 0, 1, 2, 3})


@dataclass(frozen=True)
class Slot:
    """One bookable half-hour start time."""

    start: datetime
    section: str


class BookingStatus(str, Enum):
    booked = "booked"
    conflict = "conflict"
    failed = "failed"


@dataclass
class BookingOutcome:
    status: BookingStatus
    appointment: Optional[AppointmentRecord] = None
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.status == BookingStatus.booked


def section_for_grade(grade: Optional[int]) -> str:
    """Display label only; never used to filter slots."""
    if grade is not None and grade <= 3:
        return "Section 1"
    return "Section 2"


def local_clock(tz_name: str) -> Callable[[], datetime]:
    """Naive wall-clock time in *tz_name*."""
    tz = ZoneInfo(tz_name)

    def now() -> datetime:
        return datetime.now(tz).replace(tzinfo=None, microsecond=0)

    return now


class SlotAllocator:
    """Computes available slots and books them without double-booking.

    Typical use::

        allocator = SlotAllocator(gateway, clock=local_clock("Asia/Riyadh"))
        slots = await allocator.available_slots(grade=3)
        outcome = await allocator.book(student_id, slots[0].start, for_grade=3)
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        clock: Callable[[], datetime],
        *,
        window_days: int = 3,
        day_start_hour: int = 8,
        day_end_hour: int = 15,
        step_minutes: int = 30,
        weekdays: Iterable[int] = SUNDAY_TO_THURSDAY,
        tolerance_seconds: float = 1.0,
        host: str = "IntakeBot",
        purpose: str = "Admission Inquiry",
        appointment_type: str = "Admission",
    ) -> None:
        if day_end_hour <= day_start_hour:
            raise ValueError("day_end_hour must be later than day_start_hour")
        if step_minutes <= 0:
            raise ValueError("step_minutes must be positive")
        self._gateway = gateway
        self._clock = clock
        self._window_days = window_days
        self._day_start = day_start_hour
        self._day_end = day_end_hour
        self._step = timedelta(minutes=step_minutes)
        self._weekdays = frozenset(weekdays)
        self._tolerance = tolerance_seconds
        self._host = host
        self._purpose = purpose
        self._type = appointment_type
        self._locks = KeyedLock()

    def now(self) -> datetime:
        return self._clock()

    # ── Generation ──────────────────────────────────────────────

    def window_days(self, now: datetime) -> list[date]:
        """Allowed calendar days in the look-ahead window starting tomorrow."""
        first = now.date() + timedelta(days=1)
        days = (first + timedelta(days=i) for i in range(self._window_days))
        return [d for d in days if d.weekday() in self._weekdays]

    def candidate_times(self, now: datetime) -> list[datetime]:
        """Every slot start in the window strictly after *now*, in order."""
        out: list[datetime] = []
        for day in self.window_days(now):
            t = datetime.combine(day, time(self._day_start))
            end = datetime.combine(day, time(self._day_end))
            while t < end:
                if t > now:
                    out.append(t)
                t += self._step
        return out

    async def available_slots(self, grade: Optional[int] = None) -> list[Slot]:
        """Fresh list of unbooked candidate slots, earliest first."""
        now = self.now()
        candidates = self.candidate_times(now)
        if not candidates:
            return []
        taken = await self._gateway.booked_times(
            candidates[0], candidates[-1] + timedelta(seconds=1)
        )
        section = section_for_grade(grade)
        slots = [Slot(start=t, section=section) for t in candidates if t not in taken]
        log.info(
            "Slots computed: %d candidates, %d booked, %d available (%s)",
            len(candidates), len(candidates) - len(slots), len(slots), section,
        )
        return slots

    # ── Booking ─────────────────────────────────────────────────

    async def book(
        self,
        student_id: int,
        start: datetime,
        *,
        for_grade: Optional[int] = None,
        purpose: Optional[str] = None,
        appointment_type: Optional[str] = None,
        supersedes: Optional[int] = None,
    ) -> BookingOutcome:
        """Book *start* for *student_id*.

        Returns ``booked`` with the new appointment, ``conflict`` if the
        time was taken first, or ``failed`` for any other error.
        """
        draft = AppointmentDraft(
            student_id=student_id,
            appdate=start,
            purpose=purpose or self._purpose,
            host=self._host,
            type=appointment_type or self._type,
            for_grade=for_grade,
        )
        async with self._locks(start):
            try:
                appointment = await self._gateway.book_appointment(
                    draft, tolerance_seconds=self._tolerance, supersedes=supersedes,
                )
            except SlotTakenError:
                log.info("Booking conflict: student_id=%d at %s", student_id, start)
                return BookingOutcome(BookingStatus.conflict, error="slot taken")
            except ExternalServiceError as e:
                log.error("Booking failed: student_id=%d at %s: %s", student_id, start, e)
                return BookingOutcome(BookingStatus.failed, error=str(e))

        log.info("Booked: student_id=%d at %s (id=%d)", student_id, start, appointment.id)
        return BookingOutcome(BookingStatus.booked, appointment=appointment)

    # ── Existing appointments ───────────────────────────────────

    async def nearest_future_appointment(
        self, student_id: int
    ) -> Optional[AppointmentRecord]:
        return await self._gateway.nearest_future_appointment(student_id, self.now())

    async def future_appointments(self, student_id: int) -> list[AppointmentRecord]:
        return await self._gateway.future_appointments(student_id, self.now())
