"""Pydantic models tracking one user's conversation through the intake flow."""

from __future__ import annotations

import time
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class FlowState(str, Enum):
    """Every state the intake conversation can be in."""

    admission_displayname = "admission_displayname"
    admission_email = "admission_email"
    admission_grade = "admission_grade"
    admission_semester = "admission_semester"
    admission_referral = "admission_referral"
    admission_confirm = "admission_confirm"
    admission_choose_detail_to_change = "admission_choose_detail_to_change"
    update_detail = "update_detail"
    meeting_offer = "meeting_offer"
    meeting_show_slots = "meeting_show_slots"
    confirm_replace_appointment = "confirm_replace_appointment"
    awaiting_continue = "awaiting_continue"
    check_existing_appointment = "check_existing_appointment"
    confirm_existing_data = "confirm_existing_data"
    confirm_book_another_appointment = "confirm_book_another_appointment"


class SessionData(BaseModel):
    """Collected and derived fields for one admission.

    ``student_id`` is only set while the session works on an existing,
    not-yet-enrolled admission record (or right after a new one was
    persisted); a fresh form leaves it empty until confirmation.
    """

    displayname: Optional[str] = None
    email: Optional[str] = None
    grade: Optional[int] = None
    semester: Optional[int] = None
    referral: Optional[str] = None

    student_id: Optional[int] = None
    detail_to_update: Optional[str] = None

    # Slot selection scratch space
    slots_list: Optional[str] = None
    pending_slot: Optional[datetime] = None
    existing_appointment_date: Optional[datetime] = None

    def has_any_field(self) -> bool:
        return any(
            v is not None
            for v in (self.displayname, self.email, self.grade, self.semester, self.referral)
        )


class SessionRecord(BaseModel):
    """Mutable conversation record for a single user identifier."""

    user_id: str
    state: FlowState
    previous_state: Optional[FlowState] = None
    intent_disabled: bool = False
    data: SessionData = Field(default_factory=SessionData)

    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)

    def summary(self) -> dict:
        """Short form for listings, without personal data."""
        return {
            "user_id": self.user_id,
            "state": self.state.value,
            "previous_state": self.previous_state.value if self.previous_state else None,
            "intent_disabled": self.intent_disabled,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


def mobile_from_user_id(user_id: str) -> str:
    """Strip channel decoration from a user identifier.

    ``whatsapp:+15551234567`` and ``15551234567@c.us`` both carry a bare
    mobile number; the gateway stores numbers without decoration.
    """
    value = user_id.strip()
    if ":" in value:
        value = value.split(":", 1)[1]
    return value.split("@", 1)[0]
