"""Abstract base class for the persistence gateway.

Defines every read and write the flow and the slot allocator need.
Any storage backend implements this ABC; failures surface as
``PersistenceError`` and a taken appointment time as ``SlotTakenError``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from intake.models.records import (
    AdmissionFields,
    AdmissionRecord,
    AppointmentDraft,
    AppointmentRecord,
    UserInfo,
)


class PersistenceGateway(ABC):
    """Abstract store for admissions, contacts and appointments."""

    # ── Lookups by mobile number ────────────────────────────────

    @abstractmethod
    async def find_student_id(self, mobile: str) -> Optional[int]:
        """Student id linked to *mobile* through its contact info, if any."""

    @abstractmethod
    async def find_pending_admission(
        self,
        student_id: Optional[int] = None,
        mobile: Optional[str] = None,
    ) -> Optional[AdmissionRecord]:
        """The not-yet-enrolled admission for a student id or mobile."""

    @abstractmethod
    async def find_user_info(self, mobile: str) -> Optional[UserInfo]:
        """Role record for *mobile*: guardian first, then student contact."""

    # ── Admissions ──────────────────────────────────────────────

    @abstractmethod
    async def create_admission(self, fields: AdmissionFields, mobile: str) -> int:
        """Insert a student and its contact info atomically.

        Returns:
            The new student id.
        """

    @abstractmethod
    async def update_admission(
        self, student_id: int, fields: AdmissionFields, mobile: str
    ) -> None:
        """Overwrite an existing admission and its contact info."""

    # ── Appointments ────────────────────────────────────────────

    @abstractmethod
    async def future_appointments(
        self, student_id: int, now: datetime
    ) -> list[AppointmentRecord]:
        """All appointments for *student_id* strictly after *now*, earliest first."""

    @abstractmethod
    async def nearest_future_appointment(
        self, student_id: int, now: datetime
    ) -> Optional[AppointmentRecord]:
        """The earliest appointment for *student_id* strictly after *now*."""

    @abstractmethod
    async def booked_times(self, start: datetime, end: datetime) -> set[datetime]:
        """Exact appointment times in the half-open range [start, end)."""

    @abstractmethod
    async def book_appointment(
        self,
        draft: AppointmentDraft,
        tolerance_seconds: float = 1.0,
        supersedes: Optional[int] = None,
    ) -> AppointmentRecord:
        """Insert an appointment in one transaction.

        Raises ``SlotTakenError`` when another appointment lies within
        *tolerance_seconds* of ``draft.appdate`` or the insert violates
        the uniqueness of the appointment time.  When *supersedes* is
        given, that appointment id is deleted in the same transaction.
        """

    # ── Inbound message log ─────────────────────────────────────

    @abstractmethod
    async def save_user_message(
        self, user_id: str, text: str, received_at: datetime
    ) -> None:
        """Append one inbound message to the message log."""
