"""Admission intake workflow — field table, detail table and prompt text.

Everything here is pure: no I/O, no oracle calls.  The flow machine in
``intake.session`` decides *when* to move; this module says *where* a
field-collection state leads and *what* the user is shown there.

Happy path::

    admission_displayname → admission_email → admission_grade
      → admission_semester → admission_referral → admission_confirm
      → meeting_offer → meeting_show_slots → awaiting_continue
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Iterable, Optional

from intake.models.session import FlowState, SessionData
from intake.oracle.base import FieldKind
from intake.workflows.schema import DetailDef, FieldStepDef

S = FlowState

DEFAULT_CANCEL_KEYWORD = "exit"


def exit_hint(keyword: str = DEFAULT_CANCEL_KEYWORD) -> str:
    return f'You can type "{keyword}" at any time to cancel the process.'


# ── Fixed replies ───────────────────────────────────────────────────

COMPLETED = "Your admission process is complete. Let us know if you need anything else."
CANCELLED = "Admission process cancelled. You can start again anytime."
SAVE_FAILED = "There was a problem saving your data. Please try again later."
GENERIC_RETRY = "Sorry, something went wrong. Please try again."
GENERIC_FAILURE = "Sorry, something went wrong. Please start again later."
FAREWELL = "No worries! Let us know if you need anything else."
NO_SLOTS = "No available slots in the next three days (Sun–Thu, 8:00–15:00)."
INVALID_SLOT = "Invalid slot number. Please choose one of the listed options."
SLOT_TAKEN = "Sorry, that slot was just taken. Here are the slots that are still free:"
SLOTS_CHANGED = "The available slots have changed since the list was sent. Please choose again:"
REPLACE_FAILED = (
    "Sorry, there was a problem replacing your appointment. "
    "The slot might have been taken. Please try scheduling again."
)
BOOKING_FAILED = "Sorry, there was an error scheduling your appointment. Please try again later."
REPLACE_DECLINED = (
    "Okay, the new appointment slot was not scheduled. Your existing appointment remains."
)
KEEP_APPOINTMENTS = (
    "Okay. Your existing appointments remain scheduled. Let us know if you need anything else."
)
GREETING = "Hello! You can ask about admissions or any general question about the school."
WELCOME_BACK = "Hello! Welcome back."
NO_ANSWER = "Sorry, I couldn't find an answer to that. Please contact the school office."
INVALID_DETAIL = "Please choose a valid detail: Name, Email, Grade, Semester, or Referral."
YES_NO_RETRY = "Sorry, I didn't understand. Please reply Yes or No."
HOW_CAN_I_HELP = "How can I help you today?"


# ── Field table ─────────────────────────────────────────────────────

FIELD_STEPS: dict[FlowState, FieldStepDef] = {
    step.state: step
    for step in (
        FieldStepDef(
            state=S.admission_displayname,
            kind=FieldKind.name,
            key="displayname",
            label="Name",
            prompt="Please provide your full name.",
            next_state=S.admission_email,
        ),
        FieldStepDef(
            state=S.admission_email,
            kind=FieldKind.email,
            key="email",
            label="Email",
            prompt="What is your email address?",
            next_state=S.admission_grade,
        ),
        FieldStepDef(
            state=S.admission_grade,
            kind=FieldKind.grade_level,
            key="grade",
            label="Grade",
            prompt="For which grade are you applying? (e.g., Grade 3).",
            next_state=S.admission_semester,
            numeric=True,
        ),
        FieldStepDef(
            state=S.admission_semester,
            kind=FieldKind.semester,
            key="semester",
            label="Semester",
            prompt="Which semester are you applying for? (1 or 2).",
            next_state=S.admission_referral,
            numeric=True,
        ),
        FieldStepDef(
            state=S.admission_referral,
            kind=FieldKind.referral_source,
            key="referral",
            label="Referral",
            prompt=(
                "How did you hear about us? "
                "(Twitter, Facebook, Instagram, YouTube, Friend, Other)."
            ),
            next_state=S.admission_confirm,
        ),
    )
}

FIELD_ORDER: list[FlowState] = list(FIELD_STEPS)
FIRST_FIELD = FIELD_ORDER[0]

DETAILS: dict[str, DetailDef] = {
    d.name: d
    for d in (
        DetailDef(name="name", kind=FieldKind.name, key="displayname"),
        DetailDef(name="email", kind=FieldKind.email, key="email"),
        DetailDef(name="grade", kind=FieldKind.grade_level, key="grade", numeric=True),
        DetailDef(name="semester", kind=FieldKind.semester, key="semester", numeric=True),
        DetailDef(name="referral", kind=FieldKind.referral_source, key="referral"),
    )
}

YES_NO_STATES = frozenset({
    S.admission_confirm,
    S.meeting_offer,
    S.confirm_replace_appointment,
    S.check_existing_appointment,
    S.confirm_existing_data,
    S.confirm_book_another_appointment,
})

_DIGITS = re.compile(r"\d+")


def coerce_int(value: str) -> Optional[int]:
    """First run of digits in *value* as an int, or None."""
    m = _DIGITS.search(value or "")
    return int(m.group()) if m else None


def parse_detail_choice(text: str) -> Optional[DetailDef]:
    return DETAILS.get(text.strip().lower())


def parse_slot_choice(text: str, count: int) -> Optional[int]:
    """Zero-based index for a 1-based slot number, or None when invalid."""
    value = text.strip()
    if not value.isdigit():
        return None
    n = int(value)
    if 1 <= n <= count:
        return n - 1
    return None


# ── Rendering ───────────────────────────────────────────────────────

def format_clock(dt: datetime) -> str:
    """``8:00 AM`` / ``2:30 PM``."""
    hour = dt.hour % 12 or 12
    return f"{hour}:{dt.minute:02d} {'AM' if dt.hour < 12 else 'PM'}"


def format_day(dt: datetime) -> str:
    """``October 18``."""
    return f"{dt:%B} {dt.day}"


def format_when(dt: datetime) -> str:
    """``October 18, 8:00 AM``."""
    return f"{format_day(dt)}, {format_clock(dt)}"


def render_slot_list(times: Iterable[datetime]) -> str:
    return "\n".join(f"{i}. {format_when(t)}" for i, t in enumerate(times, start=1))


def slot_menu(slots_list: str, keyword: str = DEFAULT_CANCEL_KEYWORD) -> str:
    return (
        "Available slots (8:00 AM–3:00 PM, every 30 min, Sun–Thu):\n"
        f"{slots_list}\n"
        f"Please choose a slot number. {exit_hint(keyword)}"
    )


def _show(value) -> str:
    return str(value) if value not in (None, "") else "Not provided"


def review_lines(data: SessionData) -> str:
    return "\n".join(
        f"- {step.label}: {_show(getattr(data, step.key))}"
        for step in FIELD_STEPS.values()
    )


def review_prompt(data: SessionData, keyword: str = DEFAULT_CANCEL_KEYWORD) -> str:
    return (
        "Please review your details:\n"
        f"{review_lines(data)}\n\n"
        f"Are all details correct? (Yes/No) {exit_hint(keyword)}"
    )


def found_data_prompt(data: SessionData) -> str:
    return (
        "We found your information based on your phone number:\n"
        f"{review_lines(data)}\n\n"
        'Would you like to use these details? (Reply "Yes" to use them, '
        'or "No" to change a detail)'
    )


def appointments_found_prompt(times: Iterable[datetime]) -> str:
    listing = render_slot_list(times)
    return (
        "I found the following upcoming appointment(s) scheduled for your number:\n"
        f"{listing}\n\n"
        "Would you like to book another appointment? (Yes/No)"
    )


def replace_prompt(existing: datetime, new: datetime) -> str:
    return (
        f"You already have an appointment scheduled for {format_when(existing)}. "
        f"Do you want to replace it with the new slot on {format_when(new)}? (Yes/No)"
    )


def booked_message(start: datetime) -> str:
    return f"Your meeting is scheduled for {format_day(start)} at {format_clock(start)}."


def updated_message(detail: str, value) -> str:
    return f"Thank you! Your {detail} has been updated to {value}."


def welcome_back(name: str) -> str:
    return f"Hello {name}! Welcome back." if name else WELCOME_BACK


def prompt_for_state(
    state: FlowState, data: SessionData, keyword: str = DEFAULT_CANCEL_KEYWORD
) -> str:
    """The message that (re-)asks for whatever *state* is waiting on.

    *keyword* is the cancellation keyword named in the exit hint.
    """
    hint = exit_hint(keyword)
    step = FIELD_STEPS.get(state)
    if step is not None:
        return f"{step.prompt} {hint}"

    if state == S.admission_confirm:
        if not data.has_any_field():
            return f"Let's start the admission process. {FIELD_STEPS[FIRST_FIELD].prompt} {hint}"
        return review_prompt(data, keyword)
    if state == S.admission_choose_detail_to_change:
        return (
            "Which detail would you like to change? "
            f"(Name, Email, Grade, Semester, Referral). {hint}"
        )
    if state == S.update_detail:
        detail = (data.detail_to_update or "detail").capitalize()
        return f"Please provide the new value for {detail}. {hint}"
    if state == S.meeting_offer:
        return (
            "Your admission is submitted. Would you like to schedule a meeting now? "
            f"(Yes/No) {hint}"
        )
    if state == S.meeting_show_slots:
        return slot_menu(data.slots_list or "", keyword)
    if state == S.confirm_replace_appointment:
        if data.existing_appointment_date and data.pending_slot:
            return replace_prompt(data.existing_appointment_date, data.pending_slot)
        return "Do you want to replace the existing appointment? (Yes/No)"
    if state == S.awaiting_continue:
        return HOW_CAN_I_HELP
    if state == S.check_existing_appointment:
        return "Would you like to proceed with the admission process anyway? (Yes/No)"
    if state == S.confirm_existing_data:
        return found_data_prompt(data)
    if state == S.confirm_book_another_appointment:
        return "Would you like to book another appointment? (Yes/No)"
    return ""
