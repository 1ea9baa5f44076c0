"""Conversation engine for the WhatsApp channel.

Pure transition logic: (state, context, input, phone) -> Transition.
No database or network access happens here; the dispatcher turns the
returned Transition into side effects.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional


class State(str, Enum):
    START = "START"
    REPORT_WAITING_INPUT = "REPORT_WAITING_INPUT"
    BOOKING_TEST_SELECTION = "BOOKING_TEST_SELECTION"
    BOOKING_AREA = "BOOKING_AREA"
    BOOKING_DATE = "BOOKING_DATE"
    BOOKING_SLOT = "BOOKING_SLOT"
    MORE_SERVICES = "MORE_SERVICES"
    FEEDBACK_WAITING = "FEEDBACK_WAITING"
    HUMAN_HANDOVER = "HUMAN_HANDOVER"


class ReplyType(str, Enum):
    TEXT = "TEXT"
    MAIN_MENU = "MAIN_MENU"
    MORE_SERVICES_MENU = "MORE_SERVICES_MENU"
    SEND_LOCATION = "SEND_LOCATION"
    CALL_QUICKBOOK = "CALL_QUICKBOOK"
    HANDOFF = "HANDOFF"
    INTERNAL_NOTIFY = "INTERNAL_NOTIFY"


class Command(str, Enum):
    """Fixed tokens sent by menu buttons (or typed by the user)."""

    MAIN_MENU = "MAIN_MENU"
    MORE_SERVICES = "MORE_SERVICES"
    REQUEST_REPORTS = "REQUEST_REPORTS"
    BOOK_HOME_VISIT = "BOOK_HOME_VISIT"
    TALK_EXECUTIVE = "TALK_EXECUTIVE"
    LAB_TIMINGS = "LAB_TIMINGS"
    SEND_LOCATION = "SEND_LOCATION"
    FEEDBACK = "FEEDBACK"


class Slot(str, Enum):
    """Context keys filled during the home-visit booking flow."""

    TESTS = "tests"
    AREA = "area"
    SELECTED_DATE = "selected_date"
    SELECTED_SLOT = "selected_slot"


MSG_ASK_REPORT_ID = "Please enter your Patient ID or registered mobile number to receive your report."
MSG_REPORT_ACK = "Thank you. Our team will verify and send your report shortly."
MSG_ASK_TESTS = "Please enter the tests or package you would like to book."
MSG_ASK_AREA = "Please enter your area/location."
MSG_ASK_DATE = "Please enter preferred date (DD-MM-YYYY)."
MSG_ASK_SLOT = "Please enter preferred time slot (e.g., 7AM-9AM)."
MSG_HANDOFF = "Connecting you to our executive. Please wait..."
MSG_LAB_TIMINGS = "🕒 Lab Timings:\n\nMon–Sat: 7:00 AM – 8:00 PM\nSunday: 7:00 AM – 2:00 PM"
MSG_ASK_FEEDBACK = "We value your feedback ❤️\n\nPlease type your feedback below."
MSG_FEEDBACK_THANKS = "Thank you for your feedback! We truly appreciate it."
MSG_EXECUTIVE_PENDING = "Our executive will respond shortly. Thank you for your patience."


@dataclass(frozen=True)
class Transition:
    reply_type: ReplyType
    new_state: State
    context: dict[str, Any] = field(default_factory=dict)
    reply_text: Optional[str] = None
    notify_text: Optional[str] = None


def get_slot(context: dict, slot: Slot) -> Optional[str]:
    return context.get(slot.value)


def with_slot(context: dict, slot: Slot, value: str) -> dict:
    """Return a copy of context with one booking slot filled."""
    updated = dict(context)
    updated[slot.value] = value
    return updated


def booking_slots(context: dict) -> dict[str, Optional[str]]:
    return {slot.value: get_slot(context, slot) for slot in Slot}


def parse_state(value: Optional[str]) -> Optional[State]:
    """Stored state -> State. Empty means START, unknown means None."""
    if not value:
        return State.START
    try:
        return State(value)
    except ValueError:
        return None


def _main_menu() -> Transition:
    return Transition(ReplyType.MAIN_MENU, State.START, {})


def _more_services_menu(context: dict) -> Transition:
    return Transition(ReplyType.MORE_SERVICES_MENU, State.MORE_SERVICES, context)


def _text(text: str, new_state: State, context: dict) -> Transition:
    return Transition(ReplyType.TEXT, new_state, context, reply_text=text)


Handler = Callable[[str, str, dict, str], Transition]


def _on_start(command: str, text: str, context: dict, phone: str) -> Transition:
    if command == Command.REQUEST_REPORTS:
        return _text(MSG_ASK_REPORT_ID, State.REPORT_WAITING_INPUT, context)
    if command == Command.BOOK_HOME_VISIT:
        return _text(MSG_ASK_TESTS, State.BOOKING_TEST_SELECTION, context)
    if command == Command.MORE_SERVICES:
        return _more_services_menu(context)
    return _main_menu()


def _on_report_input(command: str, text: str, context: dict, phone: str) -> Transition:
    return Transition(
        ReplyType.INTERNAL_NOTIFY,
        State.START,
        {},
        reply_text=MSG_REPORT_ACK,
        notify_text=f"📄 Report Request\nPhone: {phone}\nInput: {text}",
    )


def _on_booking_tests(command: str, text: str, context: dict, phone: str) -> Transition:
    return _text(MSG_ASK_AREA, State.BOOKING_AREA, with_slot(context, Slot.TESTS, text))


def _on_booking_area(command: str, text: str, context: dict, phone: str) -> Transition:
    return _text(MSG_ASK_DATE, State.BOOKING_DATE, with_slot(context, Slot.AREA, text))


def _on_booking_date(command: str, text: str, context: dict, phone: str) -> Transition:
    return _text(MSG_ASK_SLOT, State.BOOKING_SLOT, with_slot(context, Slot.SELECTED_DATE, text))


def _on_booking_slot(command: str, text: str, context: dict, phone: str) -> Transition:
    return Transition(ReplyType.CALL_QUICKBOOK, State.START, with_slot(context, Slot.SELECTED_SLOT, text))


def _on_more_services(command: str, text: str, context: dict, phone: str) -> Transition:
    if command == Command.TALK_EXECUTIVE:
        return Transition(ReplyType.HANDOFF, State.HUMAN_HANDOVER, context, reply_text=MSG_HANDOFF)
    if command == Command.LAB_TIMINGS:
        return _text(MSG_LAB_TIMINGS, State.START, {})
    if command == Command.SEND_LOCATION:
        return Transition(ReplyType.SEND_LOCATION, State.START, {})
    if command == Command.FEEDBACK:
        return _text(MSG_ASK_FEEDBACK, State.FEEDBACK_WAITING, context)
    return _more_services_menu(context)


def _on_feedback(command: str, text: str, context: dict, phone: str) -> Transition:
    return Transition(
        ReplyType.INTERNAL_NOTIFY,
        State.START,
        {},
        reply_text=MSG_FEEDBACK_THANKS,
        notify_text=f"⭐ New Feedback\nPhone: {phone}\nFeedback: {text}",
    )


def _on_human_handover(command: str, text: str, context: dict, phone: str) -> Transition:
    return _text(MSG_EXECUTIVE_PENDING, State.HUMAN_HANDOVER, context)


STATE_HANDLERS: dict[State, Handler] = {
    State.START: _on_start,
    State.REPORT_WAITING_INPUT: _on_report_input,
    State.BOOKING_TEST_SELECTION: _on_booking_tests,
    State.BOOKING_AREA: _on_booking_area,
    State.BOOKING_DATE: _on_booking_date,
    State.BOOKING_SLOT: _on_booking_slot,
    State.MORE_SERVICES: _on_more_services,
    State.FEEDBACK_WAITING: _on_feedback,
    State.HUMAN_HANDOVER: _on_human_handover,
}

_unhandled_states = set(State) - set(STATE_HANDLERS)
if _unhandled_states:
    raise RuntimeError(f"States without a handler: {sorted(s.value for s in _unhandled_states)}")


def transition(state: Optional[State], context: dict, user_input: str, phone: str) -> Transition:
    """Compute the next step of the conversation."""
    text = user_input or ""
    command = text.upper()
    context = dict(context or {})

    # Global commands work from any state
    if command == Command.MAIN_MENU:
        return _main_menu()
    if command == Command.MORE_SERVICES:
        return _more_services_menu(context)

    handler = STATE_HANDLERS.get(state) if state is not None else None
    if handler is None:
        return _main_menu()
    return handler(command, text, context, phone)


def process_message(session, user_input: str, phone: str) -> Transition:
    """Run one turn for a stored session (anything with current_state and context)."""
    state = parse_state(getattr(session, "current_state", None))
    return transition(state, getattr(session, "context", None) or {}, user_input, phone)
