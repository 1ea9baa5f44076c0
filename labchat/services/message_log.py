from typing import Any, Optional
from uuid import UUID

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from labchat.logging_config import get_logger
from labchat.models import WhatsAppMessage

logger = get_logger("message_log")

DIRECTION_INBOUND = "inbound"
DIRECTION_OUTBOUND = "outbound"
DIRECTION_STATUS = "status"


def is_known_message(db: Session, message_id: str) -> bool:
    """Cheap pre-check; record_inbound_message is the authoritative dedup."""
    return db.query(WhatsAppMessage.id).filter(WhatsAppMessage.message_id == message_id).first() is not None


def record_inbound_message(
    db: Session,
    *,
    message_id: str,
    phone: str,
    lab_id: Optional[UUID],
    text: str,
    payload: Any,
) -> bool:
    """Append an inbound message. False means the message_id was already logged."""
    stmt = (
        insert(WhatsAppMessage)
        .values(
            message_id=message_id,
            lab_id=lab_id,
            phone=phone,
            message=text,
            direction=DIRECTION_INBOUND,
            payload=payload if payload is not None else {},
        )
        .on_conflict_do_nothing(index_elements=["message_id"])
    )
    result = db.execute(stmt)
    return result.rowcount > 0


def log_outbound_message(
    db: Session,
    *,
    lab_id: Optional[UUID],
    phone: str,
    text: Optional[str],
    direction: str,
    payload: dict,
) -> None:
    """Record a send attempt. Never raises; a failed log must not mask the send result."""
    try:
        with db.begin_nested():
            db.add(
                WhatsAppMessage(
                    lab_id=lab_id,
                    phone=phone,
                    message=text,
                    direction=direction,
                    payload=payload,
                )
            )
    except Exception as exc:
        logger.warning(
            "Failed to log WhatsApp message",
            extra={"context": {"phone": phone, "direction": direction, "error": str(exc)}},
        )


def list_messages_for_phone(db: Session, phone: str, limit: int = 200) -> list[WhatsAppMessage]:
    return (
        db.query(WhatsAppMessage)
        .filter(WhatsAppMessage.phone == phone)
        .order_by(WhatsAppMessage.created_at.asc())
        .limit(limit)
        .all()
    )
