"""Per-user admission conversation — drives the intake FSM one message at a time.

Each inbound text message goes through ``FlowMachine.handle_message``:
  1. Messages from before process start are dropped
  2. The message is appended to the message log (best effort)
  3. Under the user's lock, global rules run first: a finished flow only
     gets an acknowledgment, the cancel keyword drops the session
  4. Mid-flow questions are answered as an interrupt and the flow parks
     in ``awaiting_continue`` until the user picks it back up
  5. Otherwise the current state's handler validates the answer via the
     oracle, updates the session and queues the next prompt
  6. Replies are sent in order before the lock is released

Handlers work on a copy of the stored session.  If an external service
fails mid-turn the copy is discarded, so the user can simply retry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from intake.allocator import BookingOutcome, BookingStatus, SlotAllocator
from intake.channels.base import InboundMessage, MessageChannel
from intake.debug_events import BroadcasterRegistry
from intake.errors import ExternalServiceError, FlowPreconditionError
from intake.models.records import AdmissionFields
from intake.models.session import FlowState, SessionData, SessionRecord, mobile_from_user_id
from intake.oracle.base import FieldKind, Intent, Oracle, YesNo
from intake.persistence.base import PersistenceGateway
from intake.store import SessionStore, redact_pii
from intake.workflows import admission as wf

log = logging.getLogger("intake.session")

S = FlowState


@dataclass
class Turn:
    """Working state for one inbound message."""

    user_id: str
    text: str
    record: Optional[SessionRecord]
    replies: list[str] = field(default_factory=list)
    ended: bool = False

    def say(self, text: str) -> None:
        if text:
            self.replies.append(text)

    def end(self) -> None:
        self.ended = True

    @property
    def mobile(self) -> str:
        return mobile_from_user_id(self.user_id)


class FlowMachine:
    """Admission intake state machine.

    Typical wiring::

        machine = FlowMachine(
            store=SessionStore(),
            oracle=LLMOracle.from_settings(settings),
            gateway=gateway,
            allocator=SlotAllocator(gateway, clock=local_clock(tz)),
            channel=TwilioMessagingChannel(...),
            knowledge=load_knowledge(settings.knowledge_path),
        )
        await machine.handle_message(InboundMessage(user_id, text))
    """

    def __init__(
        self,
        store: SessionStore,
        oracle: Oracle,
        gateway: PersistenceGateway,
        allocator: SlotAllocator,
        channel: MessageChannel,
        *,
        knowledge: str = "",
        cancel_keyword: str = wf.DEFAULT_CANCEL_KEYWORD,
        supersede_replaced: bool = True,
        broadcasters: Optional[BroadcasterRegistry] = None,
        started_at: Optional[datetime] = None,
    ) -> None:
        self._store = store
        self._oracle = oracle
        self._gateway = gateway
        self._allocator = allocator
        self._channel = channel
        self._knowledge = knowledge
        self._cancel_keyword = cancel_keyword.strip().lower()
        self._supersede = supersede_replaced
        self._broadcasters = broadcasters or BroadcasterRegistry()
        self._started_at = started_at or datetime.now(timezone.utc)

        self._handlers: dict[FlowState, Callable[[Turn], Awaitable[None]]] = {
            S.admission_confirm: self._on_confirm,
            S.admission_choose_detail_to_change: self._on_choose_detail,
            S.update_detail: self._on_update_detail,
            S.meeting_offer: self._on_meeting_offer,
            S.meeting_show_slots: self._on_show_slots,
            S.confirm_replace_appointment: self._on_confirm_replace,
            S.awaiting_continue: self._on_awaiting_continue,
            S.check_existing_appointment: self._on_check_existing_appointment,
            S.confirm_existing_data: self._on_confirm_existing_data,
            S.confirm_book_another_appointment: self._on_confirm_book_another,
        }
        for state in wf.FIELD_STEPS:
            self._handlers[state] = self._on_field

    # ── Public API ────────────────────────────────────────────

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def broadcasters(self) -> BroadcasterRegistry:
        return self._broadcasters

    async def handle_message(self, message: InboundMessage) -> list[str]:
        """Process one inbound message and return the replies sent."""
        if message.received_at < self._started_at:
            log.info("Ignoring message from %s received before start",
                     redact_pii(message.user_id))
            return []
        text = message.text.strip()
        if not text:
            log.info("Ignoring empty message from %s", redact_pii(message.user_id))
            return []

        await self._log_message(message)

        async with self._store.lock(message.user_id):
            stored = self._store.get(message.user_id)
            turn = Turn(
                user_id=message.user_id,
                text=text,
                record=stored.model_copy(deep=True) if stored else None,
            )
            before = stored.state if stored else None
            self._emit(turn, "inbound", {"text": text})

            try:
                await self._dispatch(turn)
            except ExternalServiceError as e:
                log.warning("External service failed for %s in %s: %s",
                            redact_pii(turn.user_id), before, e)
                self._emit(turn, "error", {"error": str(e)})
                turn = Turn(turn.user_id, text, record=None)
                turn.say(wf.GENERIC_RETRY)
            except FlowPreconditionError as e:
                log.error("Flow precondition failed for %s in %s: %s",
                          redact_pii(turn.user_id), before, e)
                self._emit(turn, "error", {"error": str(e)})
                turn.record = None
                turn.replies = [wf.GENERIC_FAILURE]
                turn.end()

            self._commit(turn, before)

            for reply in turn.replies:
                await self._send(turn, reply)
            return turn.replies

    def _prompt(self, state: FlowState, data: SessionData) -> str:
        return wf.prompt_for_state(state, data, self._cancel_keyword)

    def _menu(self, slots_list: str) -> str:
        return wf.slot_menu(slots_list, self._cancel_keyword)

    # ── Dispatch ──────────────────────────────────────────────

    async def _dispatch(self, turn: Turn) -> None:
        record = turn.record

        if record is not None and record.intent_disabled:
            turn.say(wf.COMPLETED)
            return

        if turn.text.lower() == self._cancel_keyword:
            turn.record = None
            turn.end()
            turn.say(wf.CANCELLED)
            return

        if record is None:
            await self._on_no_session(turn)
            return

        if record.state == S.awaiting_continue:
            await self._on_awaiting_continue(turn)
            return

        intent = await self._oracle.classify_intent(turn.text, record.state.value)
        self._emit(turn, "oracle", {"call": "classify_intent", "result": intent.value})
        if intent == Intent.faq:
            await self._interrupt(turn)
            return

        await self._handlers[record.state](turn)

    def _commit(self, turn: Turn, before: Optional[FlowState]) -> None:
        if turn.ended:
            self._store.delete(turn.user_id)
            if before is not None:
                log.info("Flow ended for %s (was %s)", redact_pii(turn.user_id), before.value)
            return
        if turn.record is None:
            return
        self._store.save(turn.record)
        after = turn.record.state
        if after != before:
            log.info(
                "Transition %s: %s → %s",
                redact_pii(turn.user_id), before.value if before else "-", after.value,
            )
            self._emit(turn, "transition", {
                "from": before.value if before else None,
                "to": after.value,
            })

    # ── Questions and interrupts ──────────────────────────────

    async def _answer(self, text: str) -> str:
        answer = await self._oracle.answer_question(text, self._knowledge)
        return answer or wf.NO_ANSWER

    async def _interrupt(self, turn: Turn) -> None:
        record = turn.record
        answer = await self._answer(turn.text)
        record.previous_state = record.state
        record.state = S.awaiting_continue
        turn.say(answer)
        turn.say(self._prompt(S.awaiting_continue, record.data))

    async def _on_no_session(self, turn: Turn) -> None:
        intent = await self._oracle.classify_intent(turn.text, None)
        self._emit(turn, "oracle", {"call": "classify_intent", "result": intent.value})
        if intent == Intent.admission:
            await self._resume(turn)
        elif intent == Intent.faq:
            turn.say(await self._answer(turn.text))
        else:
            info = await self._gateway.find_user_info(turn.mobile)
            turn.say(wf.welcome_back(info.name) if info else wf.GREETING)
            if info:
                turn.say(wf.HOW_CAN_I_HELP)

    async def _on_awaiting_continue(self, turn: Turn) -> None:
        record = turn.record
        intent = await self._oracle.classify_intent(turn.text, record.state.value)
        self._emit(turn, "oracle", {"call": "classify_intent", "result": intent.value})

        if intent == Intent.faq:
            turn.say(await self._answer(turn.text))
            return
        if intent == Intent.admission:
            await self._resume(turn)
            return

        if record.previous_state == S.admission_confirm:
            # A confirmation interrupted by a question is not resumed
            record.intent_disabled = True
            turn.say(wf.COMPLETED)
            return
        if record.previous_state is not None:
            record.state = record.previous_state
            record.previous_state = None
            turn.say(self._prompt(record.state, record.data))
            return

        info = await self._gateway.find_user_info(turn.mobile)
        turn.say(wf.welcome_back(info.name) if info else wf.GREETING)
        turn.end()

    # ── Resumption ────────────────────────────────────────────

    def _enter(self, turn: Turn, state: FlowState, data: SessionData) -> None:
        """Move to *state* with fresh *data*, reusing the session if there is one."""
        if turn.record is None:
            turn.record = SessionRecord(user_id=turn.user_id, state=state, data=data)
        else:
            turn.record.state = state
            turn.record.previous_state = None
            turn.record.data = data

    def _start_fresh(self, turn: Turn) -> None:
        self._enter(turn, wf.FIRST_FIELD, SessionData())
        turn.say(self._prompt(wf.FIRST_FIELD, turn.record.data))

    async def _offer_pending_admission(
        self, turn: Turn, student_id: Optional[int] = None
    ) -> None:
        """Offer an un-enrolled admission on file, or start the form."""
        if student_id is not None:
            pending = await self._gateway.find_pending_admission(student_id=student_id)
        else:
            pending = await self._gateway.find_pending_admission(mobile=turn.mobile)
        if pending is None:
            self._start_fresh(turn)
            return

        data = SessionData(
            displayname=pending.displayname,
            email=pending.email,
            grade=pending.grade,
            semester=pending.semester,
            referral=pending.referral,
            student_id=pending.id,
        )
        self._enter(turn, S.confirm_existing_data, data)
        turn.say(wf.found_data_prompt(data))

    async def _resume(self, turn: Turn) -> None:
        student_id = await self._gateway.find_student_id(turn.mobile)
        if student_id is None:
            self._start_fresh(turn)
            return

        appointments = await self._allocator.future_appointments(student_id)
        if appointments:
            self._enter(turn, S.confirm_book_another_appointment, SessionData())
            turn.say(wf.appointments_found_prompt(a.appdate for a in appointments))
            return

        await self._offer_pending_admission(turn, student_id=student_id)

    # ── Yes/no helpers ────────────────────────────────────────

    async def _yes_no(self, turn: Turn) -> YesNo:
        answer = await self._oracle.interpret_yes_no(turn.text)
        self._emit(turn, "oracle", {"call": "interpret_yes_no", "result": answer.value})
        if answer == YesNo.unknown:
            turn.say(f"{wf.YES_NO_RETRY}\n{self._prompt(turn.record.state, turn.record.data)}")
        return answer

    async def _on_confirm_book_another(self, turn: Turn) -> None:
        answer = await self._yes_no(turn)
        if answer == YesNo.yes:
            await self._offer_pending_admission(turn)
        elif answer == YesNo.no:
            turn.say(wf.KEEP_APPOINTMENTS)
            turn.end()

    async def _on_check_existing_appointment(self, turn: Turn) -> None:
        answer = await self._yes_no(turn)
        if answer == YesNo.yes:
            await self._offer_pending_admission(turn)
        elif answer == YesNo.no:
            turn.say(wf.KEEP_APPOINTMENTS)
            turn.end()

    async def _on_confirm_existing_data(self, turn: Turn) -> None:
        record = turn.record
        answer = await self._yes_no(turn)
        if answer == YesNo.yes:
            record.state = S.meeting_offer
            turn.say(self._prompt(record.state, record.data))
        elif answer == YesNo.no:
            record.state = S.admission_choose_detail_to_change
            turn.say(self._prompt(record.state, record.data))

    # ── Form fields ───────────────────────────────────────────

    async def _validated(self, turn: Turn, kind: FieldKind, numeric: bool):
        """Validated value for the current answer, or None after re-prompting."""
        result = await self._oracle.validate_field(kind, turn.text)
        self._emit(turn, "oracle", {
            "call": "validate_field", "kind": kind.value, "accepted": result.accepted,
        })
        if not result.accepted:
            turn.say(result.message)
            turn.say(self._prompt(turn.record.state, turn.record.data))
            return None

        value = wf.coerce_int(result.normalized_value) if numeric else result.normalized_value
        if value is None or value == "":
            turn.say(self._prompt(turn.record.state, turn.record.data))
            return None
        return value

    async def _on_field(self, turn: Turn) -> None:
        record = turn.record
        step = wf.FIELD_STEPS[record.state]
        value = await self._validated(turn, step.kind, step.numeric)
        if value is None:
            return
        setattr(record.data, step.key, value)
        record.state = step.next_state
        turn.say(self._prompt(record.state, record.data))

    async def _on_confirm(self, turn: Turn) -> None:
        record = turn.record
        data = record.data
        answer = await self._yes_no(turn)

        if answer == YesNo.no:
            record.state = S.admission_choose_detail_to_change
            turn.say(self._prompt(record.state, data))
            return
        if answer != YesNo.yes:
            return

        if data.student_id is None and not data.has_any_field():
            raise FlowPreconditionError("confirm reached with nothing collected")

        fields = AdmissionFields(
            displayname=data.displayname,
            email=data.email,
            grade=data.grade,
            semester=data.semester,
            referral=data.referral,
        )
        try:
            if data.student_id is not None:
                await self._gateway.update_admission(data.student_id, fields, turn.mobile)
            else:
                data.student_id = await self._gateway.create_admission(fields, turn.mobile)
        except ExternalServiceError as e:
            log.error("Saving admission for %s failed: %s", redact_pii(turn.user_id), e)
            turn.say(wf.SAVE_FAILED)
            turn.end()
            return

        record.state = S.meeting_offer
        turn.say(self._prompt(record.state, data))

    async def _on_choose_detail(self, turn: Turn) -> None:
        record = turn.record
        detail = wf.parse_detail_choice(turn.text)
        if detail is None:
            turn.say(wf.INVALID_DETAIL)
            return
        record.data.detail_to_update = detail.name
        record.state = S.update_detail
        turn.say(self._prompt(record.state, record.data))

    async def _on_update_detail(self, turn: Turn) -> None:
        record = turn.record
        detail = wf.DETAILS.get(record.data.detail_to_update or "")
        if detail is None:
            raise FlowPreconditionError("update_detail reached without a detail to update")

        value = await self._validated(turn, detail.kind, detail.numeric)
        if value is None:
            return
        setattr(record.data, detail.key, value)
        record.data.detail_to_update = None
        record.state = S.admission_confirm
        turn.say(wf.updated_message(detail.name, value))
        turn.say(self._prompt(record.state, record.data))

    # ── Meetings ──────────────────────────────────────────────

    async def _list_slots(self, turn: Turn, lead: str = "") -> None:
        """Show fresh availability, or end the flow when nothing is left."""
        record = turn.record
        slots = await self._allocator.available_slots(record.data.grade)
        if not slots:
            turn.say(wf.NO_SLOTS)
            turn.end()
            return
        record.data.slots_list = wf.render_slot_list(s.start for s in slots)
        record.state = S.meeting_show_slots
        turn.say(lead)
        turn.say(self._menu(record.data.slots_list))

    async def _on_meeting_offer(self, turn: Turn) -> None:
        answer = await self._yes_no(turn)
        if answer == YesNo.yes:
            await self._list_slots(turn)
        elif answer == YesNo.no:
            turn.say(wf.FAREWELL)
            turn.end()

    async def _on_show_slots(self, turn: Turn) -> None:
        record = turn.record
        data = record.data
        slots = await self._allocator.available_slots(data.grade)
        if not slots:
            turn.say(wf.NO_SLOTS)
            turn.end()
            return

        current = wf.render_slot_list(s.start for s in slots)
        index = wf.parse_slot_choice(turn.text, len(slots))
        if index is None:
            data.slots_list = current
            turn.say(wf.INVALID_SLOT)
            turn.say(self._menu(current))
            return
        if data.slots_list and data.slots_list != current:
            # The numbering the user saw no longer matches
            data.slots_list = current
            turn.say(wf.SLOTS_CHANGED)
            turn.say(self._menu(current))
            return

        if data.student_id is None:
            raise FlowPreconditionError("slot chosen without a saved admission")

        chosen = slots[index].start
        existing = await self._allocator.nearest_future_appointment(data.student_id)
        if existing is not None:
            data.pending_slot = chosen
            data.existing_appointment_date = existing.appdate
            record.state = S.confirm_replace_appointment
            turn.say(wf.replace_prompt(existing.appdate, chosen))
            return

        outcome = await self._allocator.book(data.student_id, chosen, for_grade=data.grade)
        await self._after_booking(turn, outcome)

    async def _after_booking(self, turn: Turn, outcome: BookingOutcome) -> None:
        record = turn.record
        data = record.data
        self._emit(turn, "booking", {
            "status": outcome.status.value,
            "appdate": outcome.appointment.appdate.isoformat() if outcome.appointment else None,
        })

        if outcome.status == BookingStatus.booked:
            data.slots_list = None
            data.pending_slot = None
            data.existing_appointment_date = None
            record.state = S.awaiting_continue
            record.previous_state = None
            turn.say(wf.booked_message(outcome.appointment.appdate))
            turn.say(self._prompt(record.state, data))
        elif outcome.status == BookingStatus.conflict:
            await self._list_slots(turn, lead=wf.SLOT_TAKEN)
        else:
            turn.say(wf.BOOKING_FAILED)
            turn.end()

    async def _on_confirm_replace(self, turn: Turn) -> None:
        record = turn.record
        data = record.data
        answer = await self._yes_no(turn)

        if answer == YesNo.no:
            data.pending_slot = None
            data.existing_appointment_date = None
            record.state = S.meeting_offer
            turn.say(wf.REPLACE_DECLINED)
            turn.say(self._prompt(record.state, data))
            return
        if answer != YesNo.yes:
            return

        if data.pending_slot is None or data.student_id is None:
            raise FlowPreconditionError("replacement confirmed without a pending slot")

        supersedes = None
        if self._supersede:
            existing = await self._allocator.nearest_future_appointment(data.student_id)
            if existing is not None and existing.appdate == data.existing_appointment_date:
                supersedes = existing.id

        outcome = await self._allocator.book(
            data.student_id, data.pending_slot, for_grade=data.grade, supersedes=supersedes,
        )
        if outcome.ok:
            await self._after_booking(turn, outcome)
            return

        self._emit(turn, "booking", {"status": outcome.status.value, "appdate": None})
        turn.say(wf.REPLACE_FAILED)
        turn.end()

    # ── Side effects ──────────────────────────────────────────

    async def _log_message(self, message: InboundMessage) -> None:
        try:
            await self._gateway.save_user_message(
                message.user_id, message.text, message.received_at.replace(tzinfo=None)
            )
        except ExternalServiceError as e:
            log.warning("Could not log message from %s: %s", redact_pii(message.user_id), e)

    async def _send(self, turn: Turn, text: str) -> None:
        ok = await self._channel.send(turn.user_id, text)
        self._emit(turn, "outbound", {"text": text, "delivered": ok})
        if not ok:
            log.warning("Reply to %s was not delivered", redact_pii(turn.user_id))

    def _emit(self, turn: Turn, event_type: str, data: dict) -> None:
        broadcaster = self._broadcasters.find(turn.user_id)
        if broadcaster is None:
            return
        state = turn.record.state.value if turn.record else ""
        broadcaster.emit(event_type, state, data)
