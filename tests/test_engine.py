import copy
from types import SimpleNamespace

import pytest

from labchat.services.engine import (
    MSG_ASK_AREA,
    MSG_ASK_DATE,
    MSG_ASK_FEEDBACK,
    MSG_ASK_REPORT_ID,
    MSG_ASK_SLOT,
    MSG_ASK_TESTS,
    MSG_EXECUTIVE_PENDING,
    MSG_FEEDBACK_THANKS,
    MSG_HANDOFF,
    MSG_LAB_TIMINGS,
    MSG_REPORT_ACK,
    STATE_HANDLERS,
    Command,
    ReplyType,
    Slot,
    State,
    parse_state,
    process_message,
    transition,
)

PHONE = "919876543210"


class TestStart:
    def test_request_reports(self):
        result = transition(State.START, {}, "REQUEST_REPORTS", PHONE)

        assert result.reply_type == ReplyType.TEXT
        assert result.new_state == State.REPORT_WAITING_INPUT
        assert result.reply_text == MSG_ASK_REPORT_ID

    def test_book_home_visit(self):
        result = transition(State.START, {}, "BOOK_HOME_VISIT", PHONE)

        assert result.new_state == State.BOOKING_TEST_SELECTION
        assert result.reply_text == MSG_ASK_TESTS

    def test_unknown_input_shows_main_menu(self):
        result = transition(State.START, {}, "hello", PHONE)

        assert result.reply_type == ReplyType.MAIN_MENU
        assert result.new_state == State.START
        assert result.context == {}

    def test_commands_are_case_insensitive(self):
        result = transition(State.START, {}, "request_reports", PHONE)

        assert result.new_state == State.REPORT_WAITING_INPUT


class TestReportRequest:
    def test_report_input_notifies_lab(self):
        result = transition(State.REPORT_WAITING_INPUT, {}, "PID-4411", PHONE)

        assert result.reply_type == ReplyType.INTERNAL_NOTIFY
        assert result.new_state == State.START
        assert result.context == {}
        assert result.reply_text == MSG_REPORT_ACK
        assert result.notify_text == f"📄 Report Request\nPhone: {PHONE}\nInput: PID-4411"

    def test_report_input_preserves_case(self):
        result = transition(State.REPORT_WAITING_INPUT, {}, "pid-abc", PHONE)

        assert "Input: pid-abc" in result.notify_text


class TestBookingFlow:
    def test_slots_accumulate_to_quickbook(self):
        state, context = State.START, {}
        steps = [
            ("BOOK_HOME_VISIT", State.BOOKING_TEST_SELECTION, MSG_ASK_TESTS),
            ("CBC, Lipid profile", State.BOOKING_AREA, MSG_ASK_AREA),
            ("Banjara Hills", State.BOOKING_DATE, MSG_ASK_DATE),
            ("12-11-2026", State.BOOKING_SLOT, MSG_ASK_SLOT),
        ]
        for user_input, expected_state, expected_text in steps:
            result = transition(state, context, user_input, PHONE)
            assert result.new_state == expected_state
            assert result.reply_text == expected_text
            state, context = result.new_state, result.context

        result = transition(state, context, "7AM-9AM", PHONE)

        assert result.reply_type == ReplyType.CALL_QUICKBOOK
        assert result.new_state == State.START
        assert result.context == {
            Slot.TESTS.value: "CBC, Lipid profile",
            Slot.AREA.value: "Banjara Hills",
            Slot.SELECTED_DATE.value: "12-11-2026",
            Slot.SELECTED_SLOT.value: "7AM-9AM",
        }

    def test_free_text_is_stored_verbatim(self):
        result = transition(State.BOOKING_AREA, {"tests": "CBC"}, "  Kukatpally  ", PHONE)

        assert result.context["area"] == "  Kukatpally  "


class TestMoreServices:
    def test_talk_to_executive_hands_off(self):
        result = transition(State.MORE_SERVICES, {}, "TALK_EXECUTIVE", PHONE)

        assert result.reply_type == ReplyType.HANDOFF
        assert result.new_state == State.HUMAN_HANDOVER
        assert result.reply_text == MSG_HANDOFF

    def test_lab_timings(self):
        result = transition(State.MORE_SERVICES, {}, "LAB_TIMINGS", PHONE)

        assert result.reply_text == MSG_LAB_TIMINGS
        assert result.new_state == State.START

    def test_send_location(self):
        result = transition(State.MORE_SERVICES, {}, "SEND_LOCATION", PHONE)

        assert result.reply_type == ReplyType.SEND_LOCATION
        assert result.new_state == State.START

    def test_feedback_flow(self):
        asked = transition(State.MORE_SERVICES, {}, "FEEDBACK", PHONE)
        assert asked.reply_text == MSG_ASK_FEEDBACK
        assert asked.new_state == State.FEEDBACK_WAITING

        result = transition(asked.new_state, asked.context, "Great service", PHONE)

        assert result.reply_type == ReplyType.INTERNAL_NOTIFY
        assert result.reply_text == MSG_FEEDBACK_THANKS
        assert result.notify_text == f"⭐ New Feedback\nPhone: {PHONE}\nFeedback: Great service"
        assert result.new_state == State.START

    def test_unknown_input_reshows_menu(self):
        result = transition(State.MORE_SERVICES, {}, "what?", PHONE)

        assert result.reply_type == ReplyType.MORE_SERVICES_MENU
        assert result.new_state == State.MORE_SERVICES


class TestGlobalCommands:
    @pytest.mark.parametrize("state", list(State))
    def test_main_menu_overrides_every_state(self, state):
        result = transition(state, {"tests": "CBC", "area": "X"}, "MAIN_MENU", PHONE)

        assert result.reply_type == ReplyType.MAIN_MENU
        assert result.new_state == State.START
        assert result.context == {}

    @pytest.mark.parametrize("state", list(State))
    def test_more_services_overrides_every_state(self, state):
        result = transition(state, {}, "MORE_SERVICES", PHONE)

        assert result.reply_type == ReplyType.MORE_SERVICES_MENU
        assert result.new_state == State.MORE_SERVICES

    def test_main_menu_during_booking_drops_slots(self):
        result = transition(State.BOOKING_DATE, {"tests": "CBC", "area": "X"}, "main_menu", PHONE)

        assert result.context == {}


class TestTotality:
    def test_every_state_has_handler(self):
        assert set(STATE_HANDLERS) == set(State)

    @pytest.mark.parametrize("state", list(State))
    @pytest.mark.parametrize("user_input", ["", "garbage", "REQUEST_REPORTS", "FEEDBACK", "😀"])
    def test_every_state_and_input_produces_a_reply(self, state, user_input):
        result = transition(state, {}, user_input, PHONE)

        assert isinstance(result.reply_type, ReplyType)
        assert isinstance(result.new_state, State)

    def test_unknown_state_falls_back_to_main_menu(self):
        result = transition(None, {"tests": "CBC"}, "anything", PHONE)

        assert result.reply_type == ReplyType.MAIN_MENU
        assert result.new_state == State.START
        assert result.context == {}

    def test_human_handover_stays_put(self):
        result = transition(State.HUMAN_HANDOVER, {}, "hello?", PHONE)

        assert result.new_state == State.HUMAN_HANDOVER
        assert result.reply_text == MSG_EXECUTIVE_PENDING


class TestPurity:
    def test_input_context_is_not_mutated(self):
        context = {"tests": "CBC"}
        snapshot = copy.deepcopy(context)

        transition(State.BOOKING_AREA, context, "Area 51", PHONE)
        transition(State.MORE_SERVICES, context, "FEEDBACK", PHONE)

        assert context == snapshot

    def test_same_input_same_result(self):
        first = transition(State.BOOKING_SLOT, {"tests": "CBC"}, "7AM", PHONE)
        second = transition(State.BOOKING_SLOT, {"tests": "CBC"}, "7AM", PHONE)

        assert first == second


class TestParseState:
    def test_empty_is_start(self):
        assert parse_state(None) == State.START
        assert parse_state("") == State.START

    def test_unknown_is_none(self):
        assert parse_state("LEGACY_STATE") is None

    def test_known(self):
        assert parse_state("BOOKING_AREA") == State.BOOKING_AREA


class TestProcessMessage:
    def test_reads_session_fields(self):
        session = SimpleNamespace(current_state="BOOKING_TEST_SELECTION", context=None)

        result = process_message(session, "CBC", PHONE)

        assert result.new_state == State.BOOKING_AREA
        assert result.context == {"tests": "CBC"}

    def test_unknown_stored_state_gets_main_menu(self):
        session = SimpleNamespace(current_state="SOMETHING_OLD", context={"x": 1})

        result = process_message(session, Command.REQUEST_REPORTS.value, PHONE)

        assert result.reply_type == ReplyType.MAIN_MENU
        assert result.new_state == State.START
