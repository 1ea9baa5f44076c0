"""Inbound webhook payload normalization.

The provider (and the relays in front of it) deliver messages in several
envelopes. Each envelope is handled by one shape matcher; matchers are tried
in order and the first one that recognizes the payload wins. The selected raw
message is then reduced to a NormalizedMessage.
"""

from typing import Any, Optional

from labchat.logging_config import get_logger
from labchat.schemas.webhook import NormalizedMessage

logger = get_logger("normalizer")


def _first_dict(items: Any) -> Optional[dict]:
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return items[0]
    return None


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _coerce_str(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list, tuple)):
        return None
    text = str(value).strip()
    return text or None


class PayloadShape:
    name = "base"

    def try_extract(self, payload: dict) -> Optional[dict]:
        """Return the raw message if this shape matches the payload."""
        raise NotImplementedError


class DirectMessageShape(PayloadShape):
    """Relay format: {"from": ..., "message": {"id", "type", "text", ...}}."""

    name = "direct"

    def try_extract(self, payload: dict) -> Optional[dict]:
        message = payload.get("message")
        if not isinstance(message, dict) or not message:
            return None

        message_type = (message.get("type") or "").strip().lower()
        text = None
        if message_type == "text":
            body = message.get("text")
            if isinstance(body, dict):
                body = body.get("body")
            text = {"body": body} if isinstance(body, str) else None

        interactive = message.get("interactive") if message_type == "interactive" else None

        return {
            "id": message.get("id"),
            "from": payload.get("from") or message.get("from"),
            "type": message_type or None,
            "text": text,
            "interactive": interactive,
        }


class MessagesArrayShape(PayloadShape):
    """{"messages": [...]}"""

    name = "messages"

    def try_extract(self, payload: dict) -> Optional[dict]:
        return _first_dict(payload.get("messages"))


class EntryChangesShape(PayloadShape):
    """Cloud API envelope: entry[0].changes[0].value.messages[0]."""

    name = "entry"

    def try_extract(self, payload: dict) -> Optional[dict]:
        entry = _first_dict(payload.get("entry"))
        if not entry:
            return None
        change = _first_dict(entry.get("changes"))
        if not change:
            return None
        return _first_dict(_as_dict(change.get("value")).get("messages"))


class ValueMessagesShape(PayloadShape):
    """A single unwrapped change: {"value": {"messages": [...]}}."""

    name = "value"

    def try_extract(self, payload: dict) -> Optional[dict]:
        return _first_dict(_as_dict(payload.get("value")).get("messages"))


PAYLOAD_SHAPES: tuple[PayloadShape, ...] = (
    DirectMessageShape(),
    MessagesArrayShape(),
    EntryChangesShape(),
    ValueMessagesShape(),
)


def select_raw_message(payload: dict) -> tuple[Optional[str], Optional[dict]]:
    """Return (shape name, raw message) for the first matching shape."""
    if not isinstance(payload, dict):
        return None, None
    for shape in PAYLOAD_SHAPES:
        message = shape.try_extract(payload)
        if message is not None:
            return shape.name, message
    return None, None


def _reply_id(reply: Any) -> Optional[str]:
    return _coerce_str(_as_dict(reply).get("id"))


def extract_user_input(message: dict) -> tuple[Optional[str], Optional[str]]:
    """Return (text, button_id). Text wins over button replies, button over list."""
    text = None
    body = _as_dict(message.get("text")).get("body")
    if isinstance(body, str) and body.strip():
        text = body.strip()

    interactive = _as_dict(message.get("interactive"))
    button_id = _reply_id(interactive.get("button_reply")) or _reply_id(interactive.get("list_reply"))
    return text, button_id


def normalize_payload(payload: Any) -> Optional[NormalizedMessage]:
    """Normalize a raw webhook payload; None means there is nothing to process."""
    shape_name, message = select_raw_message(payload)
    if message is None:
        logger.info(
            "No message found in webhook payload",
            extra={"context": {"payload_keys": list(payload.keys())[:20] if isinstance(payload, dict) else None}},
        )
        return None

    message_id = _coerce_str(message.get("id"))
    from_phone = _coerce_str(message.get("from"))
    if not message_id or not from_phone:
        logger.info(
            "Message missing id or sender",
            extra={"context": {"shape": shape_name, "has_id": bool(message_id), "has_from": bool(from_phone)}},
        )
        return None

    text, button_id = extract_user_input(message)
    if not text and not button_id:
        logger.info(
            "No usable user input",
            extra={"context": {"shape": shape_name, "message_id": message_id, "type": message.get("type")}},
        )
        return None

    # Only one input is carried forward so that user_input is unambiguous
    return NormalizedMessage(
        message_id=message_id,
        from_phone=from_phone,
        text=text,
        button_id=None if text else button_id,
        raw_message=message,
        raw_payload=payload,
    )
