"""Shared fixtures: scripted oracle, recording channel, SQLite gateway, fixed clock."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import pytest

from intake.allocator import SlotAllocator
from intake.channels.base import InboundMessage, MessageChannel
from intake.models.records import (
    AdmissionFields,
    AdmissionRecord,
    AppointmentDraft,
    AppointmentRecord,
    UserInfo,
)
from intake.oracle.base import FieldKind, Intent, Oracle, ValidationResult, YesNo
from intake.persistence.base import PersistenceGateway
from intake.persistence.sql import SqlGateway
from intake.session import FlowMachine
from intake.store import SessionStore

USER = "whatsapp:+15551234567"
MOBILE = "+15551234567"

# Saturday; the slot window is Sun 18, Mon 19 and Tue 20 October
NOW = datetime(2026, 10, 17, 9, 0)


class FixedClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeOracle(Oracle):
    """Scripted oracle.

    Intents are looked up by lower-cased text (default Unknown), every
    answer validates as itself unless scripted, and yes/no is literal.
    """

    def __init__(self) -> None:
        self.intents: dict[str, Intent] = {}
        self.default_intent = Intent.unknown
        self.validations: dict[str, ValidationResult] = {}
        self.answers: dict[str, Optional[str]] = {}
        self.calls: list[tuple] = []

    async def classify_intent(self, text: str, state: Optional[str] = None) -> Intent:
        self.calls.append(("classify_intent", text, state))
        return self.intents.get(text.lower(), self.default_intent)

    async def validate_field(self, kind: FieldKind, text: str) -> ValidationResult:
        self.calls.append(("validate_field", kind, text))
        return self.validations.get(text, ValidationResult.accept(text))

    async def interpret_yes_no(self, text: str) -> YesNo:
        self.calls.append(("interpret_yes_no", text))
        return {"yes": YesNo.yes, "no": YesNo.no}.get(text.strip().lower(), YesNo.unknown)

    async def answer_question(self, text: str, knowledge: str) -> Optional[str]:
        self.calls.append(("answer_question", text))
        return self.answers.get(text, f"Answer to: {text}")


class RecordingChannel(MessageChannel):
    def __init__(self, ok: bool = True) -> None:
        self.sent: list[tuple[str, str]] = []
        self.ok = ok

    async def send(self, user_id: str, text: str) -> bool:
        self.sent.append((user_id, text))
        return self.ok

    def texts(self) -> list[str]:
        return [t for _, t in self.sent]


class InMemoryGateway(PersistenceGateway):
    """Dict-backed gateway for tests that run outside an async fixture loop."""

    def __init__(self) -> None:
        self.students: dict[int, AdmissionRecord] = {}
        self.mobiles: dict[int, str] = {}
        self.appointments: dict[int, AppointmentRecord] = {}
        self.guardians: dict[str, str] = {}
        self.messages: list[tuple[str, str, datetime]] = []

    async def find_student_id(self, mobile):
        ids = [sid for sid, m in self.mobiles.items() if m == mobile]
        return max(ids) if ids else None

    async def find_pending_admission(self, student_id=None, mobile=None):
        if student_id is None:
            student_id = await self.find_student_id(mobile)
        record = self.students.get(student_id)
        return record if record is not None and not record.enrolled else None

    async def find_user_info(self, mobile):
        if mobile in self.guardians:
            return UserInfo(role="parent", name=self.guardians[mobile])
        sid = await self.find_student_id(mobile)
        if sid is not None:
            return UserInfo(role="student", name=self.students[sid].displayname or "")
        return None

    async def create_admission(self, fields: AdmissionFields, mobile):
        sid = len(self.students) + 1
        self.students[sid] = AdmissionRecord(id=sid, **fields.model_dump())
        self.mobiles[sid] = mobile
        return sid

    async def update_admission(self, student_id, fields, mobile):
        self.students[student_id] = AdmissionRecord(id=student_id, **fields.model_dump())

    async def future_appointments(self, student_id, now):
        return sorted(
            (a for a in self.appointments.values()
             if a.student_id == student_id and a.appdate > now),
            key=lambda a: a.appdate,
        )

    async def nearest_future_appointment(self, student_id, now):
        found = await self.future_appointments(student_id, now)
        return found[0] if found else None

    async def booked_times(self, start, end):
        return {a.appdate for a in self.appointments.values() if start <= a.appdate < end}

    async def book_appointment(self, draft: AppointmentDraft, tolerance_seconds=1.0, supersedes=None):
        from intake.errors import SlotTakenError

        if any(a.appdate == draft.appdate for a in self.appointments.values()):
            raise SlotTakenError(draft.appdate)
        if supersedes is not None:
            self.appointments.pop(supersedes, None)
        aid = max(self.appointments, default=0) + 1
        record = AppointmentRecord(id=aid, **draft.model_dump())
        self.appointments[aid] = record
        return record

    async def save_user_message(self, user_id, text, received_at):
        self.messages.append((user_id, text, received_at))


def inbound(text: str, user_id: str = USER) -> InboundMessage:
    return InboundMessage(user_id=user_id, text=text, received_at=datetime.now(timezone.utc))


# ── Fixtures ───────────────────────────────────────────────────────

@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
async def gateway(tmp_path):
    gw = SqlGateway(f"sqlite+aiosqlite:///{tmp_path / 'intake.db'}")
    await gw.init_schema()
    yield gw
    await gw.dispose()


@pytest.fixture
def allocator(gateway, clock):
    return SlotAllocator(gateway, clock=clock)


@pytest.fixture
def store():
    return SessionStore()


@pytest.fixture
def machine(store, oracle, gateway, allocator, channel):
    return FlowMachine(
        store=store,
        oracle=oracle,
        gateway=gateway,
        allocator=allocator,
        channel=channel,
        knowledge="Tuition depends on the grade level.",
        started_at=datetime(2000, 1, 1, tzinfo=timezone.utc),
    )
