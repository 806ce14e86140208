"""Pydantic views of the rows owned by the persistence gateway."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class AdmissionFields(BaseModel):
    """The five form fields written on confirmation."""

    displayname: Optional[str] = None
    email: Optional[str] = None
    grade: Optional[int] = None
    semester: Optional[int] = None
    referral: Optional[str] = None


class AdmissionRecord(AdmissionFields):
    """A student admission joined with its contact e-mail."""

    id: int
    regdate: Optional[datetime] = None
    enrolled: bool = False


class AppointmentDraft(BaseModel):
    """Everything needed to insert an appointment row."""

    student_id: int
    appdate: datetime
    purpose: str
    host: str
    type: str
    for_grade: Optional[int] = None


class AppointmentRecord(AppointmentDraft):
    id: int


class UserInfo(BaseModel):
    """A linked role record found by mobile number."""

    role: str  # "parent" | "student"
    name: str = ""
