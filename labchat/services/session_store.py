import uuid
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from labchat.config import settings
from labchat.logging_config import get_logger
from labchat.models import ChatSession
from labchat.services.engine import State

logger = get_logger("session_store")

STATUS_ACTIVE = "active"
STATUS_HANDOFF = "handoff"
STATUS_COMPLETED = "completed"
OPEN_STATUSES = (STATUS_ACTIVE, STATUS_HANDOFF)


class StaleSessionError(Exception):
    """The session changed (or left 'active') since it was read."""

    def __init__(self, session_id, expected_version: int):
        self.session_id = session_id
        self.expected_version = expected_version
        super().__init__(f"Session {session_id} is no longer at version {expected_version}")


def find_open_session(db: Session, phone: str) -> Optional[ChatSession]:
    return (
        db.query(ChatSession)
        .filter(ChatSession.phone == phone, ChatSession.status.in_(OPEN_STATUSES))
        .first()
    )


def get_or_create_session(db: Session, phone: str, lab_id: Optional[UUID] = None) -> ChatSession:
    """Return the open session for phone, creating a START session if none exists."""
    session = find_open_session(db, phone)
    if session:
        return session

    now = datetime.now(timezone.utc)
    stmt = (
        insert(ChatSession)
        .values(
            id=uuid.uuid4(),
            phone=phone,
            lab_id=lab_id or settings.default_lab_id,
            current_state=State.START.value,
            context={},
            status=STATUS_ACTIVE,
            version=0,
            last_user_message_at=now,
            created_at=now,
            updated_at=now,
        )
        # A concurrent request may have opened the session first
        .on_conflict_do_nothing()
    )
    result = db.execute(stmt)

    session = find_open_session(db, phone)
    if session is None:
        raise RuntimeError(f"Open session for {phone} vanished after insert")
    if result.rowcount:
        logger.info("Chat session created", extra={"context": {"session_id": str(session.id), "phone": phone}})
    return session


def update_session(
    db: Session,
    session_id: UUID,
    new_state: State,
    context: dict,
    *,
    expected_version: int,
) -> int:
    """Compare-and-swap the state and context of an active session. Returns the new version."""
    now = datetime.now(timezone.utc)
    updated = (
        db.query(ChatSession)
        .filter(
            ChatSession.id == session_id,
            ChatSession.version == expected_version,
            ChatSession.status == STATUS_ACTIVE,
        )
        .update(
            {
                ChatSession.current_state: new_state.value,
                ChatSession.context: context,
                ChatSession.version: ChatSession.version + 1,
                ChatSession.last_user_message_at: now,
                ChatSession.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    if not updated:
        raise StaleSessionError(session_id, expected_version)
    return expected_version + 1


def handoff_to_human(db: Session, session_id: UUID) -> None:
    """Hand the conversation to an operator; the bot stays silent until it is completed."""
    db.query(ChatSession).filter(ChatSession.id == session_id).update(
        {
            ChatSession.status: STATUS_HANDOFF,
            ChatSession.current_state: State.HUMAN_HANDOVER.value,
            ChatSession.version: ChatSession.version + 1,
            ChatSession.updated_at: datetime.now(timezone.utc),
        },
        synchronize_session=False,
    )
    logger.info("Session handed off to human", extra={"context": {"session_id": str(session_id)}})


def complete_session(db: Session, phone: str) -> int:
    """Close every open session for phone. Returns how many were closed."""
    closed = (
        db.query(ChatSession)
        .filter(ChatSession.phone == phone, ChatSession.status.in_(OPEN_STATUSES))
        .update(
            {
                ChatSession.status: STATUS_COMPLETED,
                ChatSession.version: ChatSession.version + 1,
                ChatSession.updated_at: datetime.now(timezone.utc),
            },
            synchronize_session=False,
        )
    )
    if closed:
        logger.info("Session completed", extra={"context": {"phone": phone, "count": closed}})
    return closed


def touch_session(db: Session, session_id: UUID) -> None:
    db.query(ChatSession).filter(ChatSession.id == session_id).update(
        {ChatSession.updated_at: datetime.now(timezone.utc)},
        synchronize_session=False,
    )


def list_sessions(db: Session, status: Optional[str] = None, limit: int = 100) -> list[ChatSession]:
    query = db.query(ChatSession)
    if status:
        query = query.filter(ChatSession.status == status)
    return query.order_by(ChatSession.updated_at.desc()).limit(limit).all()
