"""SQLAlchemy declarative tables for admissions, contacts and appointments.

Appointment times are naive local datetimes in the calendar time zone;
``appointments.appdate`` is unique so two bookings can never share a slot.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class Student(Base):
    __tablename__ = "students"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    displayname: Mapped[Optional[str]] = mapped_column(String(200))
    grade: Mapped[Optional[int]] = mapped_column(Integer)
    semester: Mapped[Optional[int]] = mapped_column(Integer)
    referral: Mapped[Optional[str]] = mapped_column(String(100))
    regdate: Mapped[datetime] = mapped_column(DateTime, default=datetime.now)
    enrolled: Mapped[bool] = mapped_column(Boolean, default=False)


class StudentContactInfo(Base):
    __tablename__ = "student_contact_info"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    student_id: Mapped[int] = mapped_column(
        ForeignKey("students.id", ondelete="CASCADE"), index=True
    )
    email: Mapped[Optional[str]] = mapped_column(String(254))
    mobile: Mapped[Optional[str]] = mapped_column(String(32), index=True)
    mobile2: Mapped[Optional[str]] = mapped_column(String(32))


class Guardian(Base):
    __tablename__ = "guardians"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    firstname: Mapped[Optional[str]] = mapped_column(String(100))
    lastname: Mapped[Optional[str]] = mapped_column(String(100))
    mobile: Mapped[Optional[str]] = mapped_column(String(32), index=True)
    email: Mapped[Optional[str]] = mapped_column(String(254))


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (UniqueConstraint("appdate", name="uq_appointments_appdate"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    student_id: Mapped[int] = mapped_column(
        ForeignKey("students.id", ondelete="CASCADE"), index=True
    )
    appdate: Mapped[datetime] = mapped_column(DateTime)
    purpose: Mapped[str] = mapped_column(String(200))
    host: Mapped[str] = mapped_column(String(100))
    type: Mapped[str] = mapped_column(String(50))
    for_grade: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now)


class UserMessage(Base):
    __tablename__ = "user_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(100))
    message: Mapped[str] = mapped_column(Text)
    received_at: Mapped[datetime] = mapped_column(DateTime)


Index("ix_user_messages_user_received", UserMessage.user_id, UserMessage.received_at)
