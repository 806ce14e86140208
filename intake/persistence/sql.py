"""SqlGateway — PersistenceGateway on async SQLAlchemy.

Works with any async driver SQLAlchemy supports; the default deployment
and the test suite use SQLite through aiosqlite.

Usage::

    gateway = SqlGateway("sqlite+aiosqlite:///./intake.db")
    await gateway.init_schema()
    student_id = await gateway.create_admission(fields, mobile="15551234567")
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Optional

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from intake.errors import PersistenceError, SlotTakenError
from intake.models.records import (
    AdmissionFields,
    AdmissionRecord,
    AppointmentDraft,
    AppointmentRecord,
    UserInfo,
)
from intake.persistence.base import PersistenceGateway
from intake.persistence.tables import (
    Appointment,
    Base,
    Guardian,
    Student,
    StudentContactInfo,
    UserMessage,
)

log = logging.getLogger("intake.persistence")


def _appointment(row: Appointment) -> AppointmentRecord:
    return AppointmentRecord(
        id=row.id,
        student_id=row.student_id,
        appdate=row.appdate,
        purpose=row.purpose,
        host=row.host,
        type=row.type,
        for_grade=row.for_grade,
    )


class SqlGateway(PersistenceGateway):
    """PersistenceGateway backed by an async SQLAlchemy engine."""

    def __init__(
        self,
        database_url: str = "",
        *,
        echo: bool = False,
        engine: Optional[AsyncEngine] = None,
    ) -> None:
        if engine is None:
            if not database_url:
                raise ValueError("database_url or engine is required")
            engine = create_async_engine(database_url, echo=echo, pool_pre_ping=True)
        self._engine = engine
        self._sessionmaker = async_sessionmaker(
            engine, expire_on_commit=False, class_=AsyncSession
        )

    async def init_schema(self) -> None:
        """Create any missing tables."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        log.info("Schema ready (%s)", self._engine.url.render_as_string(hide_password=True))

    async def dispose(self) -> None:
        await self._engine.dispose()

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessionmaker() as db:
                yield db
        except SQLAlchemyError as e:
            log.error("Database operation failed: %s", e)
            raise PersistenceError(str(e)) from e

    # ── Lookups ─────────────────────────────────────────────────

    async def find_student_id(self, mobile: str) -> Optional[int]:
        async with self._db() as db:
            stmt = (
                select(StudentContactInfo.student_id)
                .where(or_(StudentContactInfo.mobile == mobile,
                           StudentContactInfo.mobile2 == mobile))
                .order_by(StudentContactInfo.student_id.desc())
                .limit(1)
            )
            return (await db.execute(stmt)).scalar_one_or_none()

    async def find_pending_admission(
        self,
        student_id: Optional[int] = None,
        mobile: Optional[str] = None,
    ) -> Optional[AdmissionRecord]:
        if student_id is None and not mobile:
            return None

        stmt = (
            select(Student, StudentContactInfo.email)
            .join(StudentContactInfo, StudentContactInfo.student_id == Student.id)
            .where(Student.enrolled.is_(False))
        )
        if student_id is not None:
            stmt = stmt.where(Student.id == student_id)
        else:
            stmt = stmt.where(or_(StudentContactInfo.mobile == mobile,
                                  StudentContactInfo.mobile2 == mobile))
        stmt = stmt.order_by(Student.id.desc()).limit(1)

        async with self._db() as db:
            row = (await db.execute(stmt)).first()
        if row is None:
            return None
        student, email = row
        return AdmissionRecord(
            id=student.id,
            displayname=student.displayname,
            email=email,
            grade=student.grade,
            semester=student.semester,
            referral=student.referral,
            regdate=student.regdate,
            enrolled=student.enrolled,
        )

    async def find_user_info(self, mobile: str) -> Optional[UserInfo]:
        async with self._db() as db:
            guardian = (await db.execute(
                select(Guardian).where(Guardian.mobile == mobile).limit(1)
            )).scalar_one_or_none()
            if guardian is not None:
                name = " ".join(p for p in (guardian.firstname, guardian.lastname) if p)
                return UserInfo(role="parent", name=name)

            student = (await db.execute(
                select(Student)
                .join(StudentContactInfo, StudentContactInfo.student_id == Student.id)
                .where(or_(StudentContactInfo.mobile == mobile,
                           StudentContactInfo.mobile2 == mobile))
                .order_by(Student.id.desc())
                .limit(1)
            )).scalar_one_or_none()
            if student is not None:
                return UserInfo(role="student", name=student.displayname or "")
        return None

    # ── Admissions ──────────────────────────────────────────────

    async def create_admission(self, fields: AdmissionFields, mobile: str) -> int:
        async with self._db() as db:
            async with db.begin():
                student = Student(
                    displayname=fields.displayname,
                    grade=fields.grade,
                    semester=fields.semester,
                    referral=fields.referral,
                    enrolled=False,
                )
                db.add(student)
                await db.flush()
                db.add(StudentContactInfo(
                    student_id=student.id,
                    email=fields.email,
                    mobile=mobile,
                ))
            log.info("Admission created: student_id=%d", student.id)
            return student.id

    async def update_admission(
        self, student_id: int, fields: AdmissionFields, mobile: str
    ) -> None:
        async with self._db() as db:
            async with db.begin():
                student = await db.get(Student, student_id)
                if student is None:
                    raise PersistenceError(f"Student {student_id} not found")
                student.displayname = fields.displayname
                student.grade = fields.grade
                student.semester = fields.semester
                student.referral = fields.referral

                contact = (await db.execute(
                    select(StudentContactInfo)
                    .where(StudentContactInfo.student_id == student_id)
                    .limit(1)
                )).scalar_one_or_none()
                if contact is None:
                    db.add(StudentContactInfo(
                        student_id=student_id, email=fields.email, mobile=mobile,
                    ))
                else:
                    contact.email = fields.email
                    if not contact.mobile:
                        contact.mobile = mobile
        log.info("Admission updated: student_id=%d", student_id)

    # ── Appointments ────────────────────────────────────────────

    async def future_appointments(
        self, student_id: int, now: datetime
    ) -> list[AppointmentRecord]:
        async with self._db() as db:
            rows = (await db.execute(
                select(Appointment)
                .where(Appointment.student_id == student_id, Appointment.appdate > now)
                .order_by(Appointment.appdate)
            )).scalars().all()
        return [_appointment(r) for r in rows]

    async def nearest_future_appointment(
        self, student_id: int, now: datetime
    ) -> Optional[AppointmentRecord]:
        async with self._db() as db:
            row = (await db.execute(
                select(Appointment)
                .where(Appointment.student_id == student_id, Appointment.appdate > now)
                .order_by(Appointment.appdate)
                .limit(1)
            )).scalar_one_or_none()
        return _appointment(row) if row is not None else None

    async def booked_times(self, start: datetime, end: datetime) -> set[datetime]:
        async with self._db() as db:
            rows = (await db.execute(
                select(Appointment.appdate)
                .where(Appointment.appdate >= start, Appointment.appdate < end)
            )).scalars().all()
        return set(rows)

    async def book_appointment(
        self,
        draft: AppointmentDraft,
        tolerance_seconds: float = 1.0,
        supersedes: Optional[int] = None,
    ) -> AppointmentRecord:
        tolerance = timedelta(seconds=tolerance_seconds)
        async with self._db() as db:
            try:
                async with db.begin():
                    clash = select(Appointment.id).where(
                        Appointment.appdate >= draft.appdate - tolerance,
                        Appointment.appdate <= draft.appdate + tolerance,
                    )
                    if supersedes is not None:
                        clash = clash.where(Appointment.id != supersedes)
                    if (await db.execute(clash.limit(1))).first() is not None:
                        raise SlotTakenError(draft.appdate)

                    if supersedes is not None:
                        await db.execute(
                            delete(Appointment).where(
                                Appointment.id == supersedes,
                                Appointment.student_id == draft.student_id,
                            )
                        )
                    row = Appointment(**draft.model_dump())
                    db.add(row)
                    await db.flush()
            except IntegrityError as e:
                log.info("Unique constraint rejected appointment at %s", draft.appdate)
                raise SlotTakenError(draft.appdate) from e

        log.info(
            "Appointment booked: id=%d student_id=%d at %s%s",
            row.id, row.student_id, row.appdate,
            f" (replaces {supersedes})" if supersedes is not None else "",
        )
        return _appointment(row)

    # ── Message log ─────────────────────────────────────────────

    async def save_user_message(
        self, user_id: str, text: str, received_at: datetime
    ) -> None:
        async with self._db() as db:
            async with db.begin():
                db.add(UserMessage(user_id=user_id, message=text, received_at=received_at))
