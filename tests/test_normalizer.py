import pytest

from labchat.services.normalizer import extract_user_input, normalize_payload, select_raw_message

RAW_TEXT_MESSAGE = {
    "id": "wamid.TEXT1",
    "from": "919876543210",
    "type": "text",
    "text": {"body": "Hi"},
}


def _shapes(message: dict) -> dict:
    return {
        "messages": {"messages": [message]},
        "entry": {"entry": [{"changes": [{"value": {"messages": [message]}}]}]},
        "value": {"value": {"messages": [message]}},
    }


class TestShapes:
    @pytest.mark.parametrize("shape", ["messages", "entry", "value"])
    def test_all_envelopes_normalize_the_same(self, shape):
        result = normalize_payload(_shapes(RAW_TEXT_MESSAGE)[shape])

        assert result is not None
        assert result.message_id == "wamid.TEXT1"
        assert result.from_phone == "919876543210"
        assert result.text == "Hi"
        assert result.button_id is None
        assert result.user_input == "Hi"

    def test_direct_relay_shape(self):
        payload = {
            "from": "919876543210",
            "message": {"id": "wamid.TEXT1", "type": "text", "text": "Hi"},
        }

        shape, message = select_raw_message(payload)
        result = normalize_payload(payload)

        assert shape == "direct"
        assert message["text"] == {"body": "Hi"}
        assert result.user_input == "Hi"
        assert result.from_phone == "919876543210"

    def test_direct_shape_wins_over_messages_array(self):
        payload = {
            "from": "911111111111",
            "message": {"id": "wamid.DIRECT", "type": "text", "text": {"body": "direct"}},
            "messages": [{"id": "wamid.ARRAY", "from": "922222222222", "text": {"body": "array"}}],
        }

        result = normalize_payload(payload)

        assert result.message_id == "wamid.DIRECT"
        assert result.text == "direct"

    def test_entry_without_messages_is_ignored(self):
        payload = {"entry": [{"changes": [{"value": {"statuses": [{"id": "wamid.X", "status": "read"}]}}]}]}

        assert normalize_payload(payload) is None

    @pytest.mark.parametrize("payload", [{}, {"foo": "bar"}, [], "text", None, {"messages": []}])
    def test_unmatched_payload_returns_none(self, payload):
        assert normalize_payload(payload) is None


class TestUserInput:
    def test_button_reply(self):
        message = {
            "id": "wamid.BTN",
            "from": "919876543210",
            "type": "interactive",
            "interactive": {"type": "button_reply", "button_reply": {"id": "BOOK_HOME_VISIT", "title": "Book"}},
        }

        result = normalize_payload({"messages": [message]})

        assert result.text is None
        assert result.button_id == "BOOK_HOME_VISIT"
        assert result.user_input == "BOOK_HOME_VISIT"

    def test_list_reply(self):
        message = {
            "id": "wamid.LIST",
            "from": "919876543210",
            "interactive": {"type": "list_reply", "list_reply": {"id": "LAB_TIMINGS", "title": "Timings"}},
        }

        assert normalize_payload({"messages": [message]}).user_input == "LAB_TIMINGS"

    def test_text_wins_over_button(self):
        message = {
            "text": {"body": "hello"},
            "interactive": {"button_reply": {"id": "MAIN_MENU"}},
        }

        assert extract_user_input(message) == ("hello", "MAIN_MENU")
        result = normalize_payload({"messages": [{"id": "m1", "from": "91", **message}]})
        assert result.user_input == "hello"
        assert result.button_id is None

    def test_button_wins_over_list(self):
        message = {"interactive": {"button_reply": {"id": "A"}, "list_reply": {"id": "B"}}}

        assert extract_user_input(message) == (None, "A")

    def test_blank_text_is_not_input(self):
        message = {"id": "m1", "from": "91", "text": {"body": "   "}}

        assert normalize_payload({"messages": [message]}) is None

    def test_media_message_without_text_returns_none(self):
        message = {"id": "m1", "from": "91", "type": "image", "image": {"id": "media-1"}}

        assert normalize_payload({"messages": [message]}) is None

    def test_missing_sender_returns_none(self):
        message = {"id": "m1", "text": {"body": "Hi"}}

        assert normalize_payload({"messages": [message]}) is None

    def test_missing_id_returns_none(self):
        message = {"from": "91", "text": {"body": "Hi"}}

        assert normalize_payload({"messages": [message]}) is None


class TestRawPayload:
    def test_direct_relay_body_is_kept_verbatim(self):
        payload = {
            "from": "919876543210",
            "channel": "mtalkz",
            "message": {"id": "wamid.RELAY", "type": "TEXT", "text": "Hi", "timestamp": "1731400000"},
        }

        result = normalize_payload(payload)

        assert result.raw_payload == payload
        assert result.raw_payload["channel"] == "mtalkz"
        assert result.raw_payload["message"]["timestamp"] == "1731400000"
        assert result.raw_message["type"] == "text"

    def test_envelope_metadata_is_kept(self):
        payload = {
            "entry": [
                {
                    "id": "WABA-1",
                    "changes": [
                        {
                            "value": {
                                "metadata": {"phone_number_id": "PNID-1"},
                                "contacts": [{"wa_id": "919876543210", "profile": {"name": "Asha"}}],
                                "messages": [RAW_TEXT_MESSAGE],
                            }
                        }
                    ],
                }
            ]
        }

        result = normalize_payload(payload)

        assert result.raw_payload == payload
        assert result.raw_message == RAW_TEXT_MESSAGE
