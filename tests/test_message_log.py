from unittest.mock import MagicMock

from sqlalchemy.dialects import postgresql

from labchat.services.message_log import (
    DIRECTION_OUTBOUND,
    log_outbound_message,
    record_inbound_message,
)


class TestRecordInbound:
    def test_first_delivery_is_inserted(self, magic_db):
        magic_db.execute.return_value.rowcount = 1

        inserted = record_inbound_message(
            magic_db,
            message_id="wamid.1",
            phone="91",
            lab_id=None,
            text="Hi",
            payload={"id": "wamid.1"},
        )

        assert inserted is True
        sql = str(magic_db.execute.call_args[0][0].compile(dialect=postgresql.dialect()))
        assert "ON CONFLICT (message_id) DO NOTHING" in sql

    def test_duplicate_delivery_is_not_inserted(self, magic_db):
        magic_db.execute.return_value.rowcount = 0

        inserted = record_inbound_message(
            magic_db,
            message_id="wamid.1",
            phone="91",
            lab_id=None,
            text="Hi",
            payload=None,
        )

        assert inserted is False


class TestLogOutbound:
    def test_adds_row_in_savepoint(self, magic_db):
        log_outbound_message(
            magic_db,
            lab_id=None,
            phone="91",
            text="Hello",
            direction=DIRECTION_OUTBOUND,
            payload={"request": {}, "response": {}},
        )

        magic_db.begin_nested.assert_called_once()
        row = magic_db.add.call_args[0][0]
        assert row.direction == DIRECTION_OUTBOUND
        assert row.message == "Hello"

    def test_failure_is_swallowed(self):
        db = MagicMock()
        db.begin_nested.side_effect = RuntimeError("db down")

        log_outbound_message(db, lab_id=None, phone="91", text="x", direction="status", payload={})

        db.add.assert_not_called()
