from labchat.services.engine import (
    Command,
    ReplyType,
    State,
    Transition,
    process_message,
    transition,
)
from labchat.services.normalizer import normalize_payload
from labchat.services.session_store import (
    StaleSessionError,
    get_or_create_session,
    update_session,
)

__all__ = [
    "Command",
    "ReplyType",
    "State",
    "Transition",
    "process_message",
    "transition",
    "normalize_payload",
    "StaleSessionError",
    "get_or_create_session",
    "update_session",
]
