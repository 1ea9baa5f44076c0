"""Operator console for conversations handed off to lab staff."""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlalchemy.orm import Session

from labchat.config import settings
from labchat.database import get_db
from labchat.logging_config import get_logger
from labchat.schemas.admin import MessageLogItem, OperatorActionResponse, OperatorReplyRequest, SessionSummary
from labchat.services.message_log import list_messages_for_phone
from labchat.services.session_store import complete_session, find_open_session, list_sessions, touch_session
from labchat.services.whatsapp_service import DeliveryError, send_text_message

logger = get_logger("admin")

router = APIRouter(prefix="/admin", tags=["admin"])


def _require_admin_token(x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token")) -> None:
    expected = settings.admin_token
    if not expected:
        return
    if not x_admin_token or x_admin_token != expected:
        raise HTTPException(status_code=401, detail="Invalid admin token")


@router.get("/sessions", response_model=list[SessionSummary], dependencies=[Depends(_require_admin_token)])
def get_sessions(
    status: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    return list_sessions(db, status=status, limit=limit)


@router.get(
    "/sessions/{phone}/messages",
    response_model=list[MessageLogItem],
    dependencies=[Depends(_require_admin_token)],
)
def get_session_messages(
    phone: str,
    limit: int = Query(default=200, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    return list_messages_for_phone(db, phone, limit=limit)


@router.post(
    "/sessions/{phone}/reply",
    response_model=OperatorActionResponse,
    dependencies=[Depends(_require_admin_token)],
)
def reply_as_operator(phone: str, request: OperatorReplyRequest, db: Session = Depends(get_db)):
    session = find_open_session(db, phone)
    if not session:
        raise HTTPException(status_code=404, detail="No open session for this phone")

    try:
        send_text_message(db, lab_id=session.lab_id, phone=phone, text=request.message)
    except DeliveryError as exc:
        # Keep the logged attempt
        db.commit()
        logger.error(
            "Operator reply failed",
            extra={"context": {"phone": phone, "session_id": str(session.id), "error": str(exc)}},
        )
        raise HTTPException(status_code=502, detail=f"Delivery failed: {exc.message}") from exc

    touch_session(db, session.id)
    db.commit()
    logger.info("Operator reply sent", extra={"context": {"phone": phone, "session_id": str(session.id)}})
    return OperatorActionResponse(success=True, phone=phone, status=session.status, message="Reply sent")


@router.post(
    "/sessions/{phone}/complete",
    response_model=OperatorActionResponse,
    dependencies=[Depends(_require_admin_token)],
)
def complete_conversation(phone: str, db: Session = Depends(get_db)):
    closed = complete_session(db, phone)
    if not closed:
        raise HTTPException(status_code=404, detail="No open session for this phone")
    db.commit()
    return OperatorActionResponse(success=True, phone=phone, status="completed", message=f"Closed {closed} session(s)")
