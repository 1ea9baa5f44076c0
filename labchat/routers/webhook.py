from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session
from starlette.requests import ClientDisconnect

from labchat.config import settings
from labchat.database import get_db
from labchat.logging_config import get_logger
from labchat.schemas.webhook import NormalizedMessage, WebhookResponse
from labchat.services.dedup_cache import mark_processed, was_processed
from labchat.services.dispatcher import apply_transition, deliver_outbox_rows
from labchat.services.engine import process_message
from labchat.services.lab_service import get_lab
from labchat.services.message_log import is_known_message, record_inbound_message
from labchat.services.normalizer import normalize_payload
from labchat.services.outbox_service import claim_outbox_for_message, get_outbox_retry_settings
from labchat.services.session_store import (
    STATUS_HANDOFF,
    StaleSessionError,
    get_or_create_session,
    touch_session,
)

logger = get_logger("webhook")

router = APIRouter()

MAX_TURN_ATTEMPTS = 3


async def _read_payload(request: Request):
    """Request JSON, or a no-op WebhookResponse when there is nothing to process."""
    try:
        return await request.json()
    except ClientDisconnect:
        logger.info("Webhook client disconnected during read")
        return WebhookResponse(success=True, message="Client disconnected")
    except Exception as exc:
        try:
            raw = await request.body()
        except ClientDisconnect:
            return WebhookResponse(success=True, message="Client disconnected")
        if not raw or not raw.strip():
            logger.info("Webhook called with empty body")
            return WebhookResponse(success=True, message="Empty payload")
        logger.warning(
            "Webhook payload is not valid JSON",
            extra={"context": {"error": str(exc), "body_preview": raw[:200].decode("utf-8", "ignore")}},
        )
        return WebhookResponse(success=True, message="Invalid JSON payload")


def _run_turn(db: Session, message: NormalizedMessage) -> tuple[WebhookResponse, bool, bool]:
    """One attempt at a conversation turn.

    Returns (response, committed, queued). Raises StaleSessionError when
    another request advanced the session first.
    """
    phone = message.from_phone
    session = get_or_create_session(db, phone)

    lab = get_lab(db, session.lab_id)
    if lab is None:
        db.rollback()
        logger.error(
            "Lab not found for session",
            extra={"context": {"session_id": str(session.id), "lab_id": str(session.lab_id), "phone": phone}},
        )
        return WebhookResponse(success=True, message="Lab not configured"), False, False

    inserted = record_inbound_message(
        db,
        message_id=message.message_id,
        phone=phone,
        lab_id=lab.id,
        text=message.user_input,
        payload=message.raw_payload,
    )
    if not inserted:
        db.rollback()
        logger.info(
            "Duplicate message ignored",
            extra={"context": {"message_id": message.message_id, "phone": phone, "source": "message_log"}},
        )
        return WebhookResponse(success=True, message="Duplicate message"), False, False

    if session.status == STATUS_HANDOFF:
        touch_session(db, session.id)
        db.commit()
        logger.info(
            "Session in handoff, bot silent",
            extra={"context": {"session_id": str(session.id), "phone": phone}},
        )
        return (
            WebhookResponse(
                success=True,
                message="Session handed off to operator",
                session_id=session.id,
                state=session.current_state,
            ),
            True,
            False,
        )

    result = process_message(session, message.user_input, phone)
    apply_transition(
        db,
        session=session,
        transition=result,
        lab=lab,
        inbound_message_id=message.message_id,
    )
    db.commit()
    return (
        WebhookResponse(success=True, session_id=session.id, state=result.new_state.value),
        True,
        True,
    )


def _deliver_inline(db: Session, inbound_message_id: str) -> None:
    """Send this message's replies now. Whatever fails stays queued for the outbox worker."""
    max_attempts, retry_backoff_seconds = get_outbox_retry_settings()
    try:
        rows = claim_outbox_for_message(db, inbound_message_id)
        results = deliver_outbox_rows(
            db,
            rows,
            max_attempts=max_attempts,
            retry_backoff_seconds=retry_backoff_seconds,
        )
    except Exception as exc:
        db.rollback()
        logger.error(
            "Inline delivery failed",
            extra={"context": {"inbound_message_id": inbound_message_id, "error": str(exc)}},
        )
        return
    logger.info(
        "Inline delivery done",
        extra={"context": {"inbound_message_id": inbound_message_id, **results}},
    )


async def _handle_inbound_payload(payload, db: Session) -> WebhookResponse:
    message = normalize_payload(payload)
    if message is None:
        return WebhookResponse(success=True, message="No usable message")

    if await was_processed(message.message_id) or is_known_message(db, message.message_id):
        logger.info(
            "Duplicate message ignored",
            extra={"context": {"message_id": message.message_id, "phone": message.from_phone}},
        )
        return WebhookResponse(success=True, message="Duplicate message")

    for attempt in range(1, MAX_TURN_ATTEMPTS + 1):
        try:
            response, committed, queued = _run_turn(db, message)
            break
        except StaleSessionError as exc:
            db.rollback()
            logger.warning(
                "Session changed concurrently, retrying turn",
                extra={
                    "context": {
                        "session_id": str(exc.session_id),
                        "message_id": message.message_id,
                        "attempt": attempt,
                    }
                },
            )
            if attempt == MAX_TURN_ATTEMPTS:
                raise

    if committed:
        await mark_processed(message.message_id)
    if queued:
        _deliver_inline(db, message.message_id)
    return response


@router.get("/webhook/whatsapp")
async def verify_whatsapp_webhook(request: Request):
    """Provider subscription handshake; anything else is a liveness check."""
    params = request.query_params
    mode = params.get("hub.mode")
    token = params.get("hub.verify_token")
    challenge = params.get("hub.challenge")
    if (
        mode == "subscribe"
        and challenge is not None
        and settings.webhook_verify_token
        and token == settings.webhook_verify_token
    ):
        logger.info("Webhook verified")
        return PlainTextResponse(challenge)
    return {"ok": True, "message": "WhatsApp Webhook Active"}


@router.post("/webhook/whatsapp", response_model=WebhookResponse)
async def handle_whatsapp_webhook(request: Request, db: Session = Depends(get_db)):
    """Inbound WhatsApp messages. Only an unexpected failure answers 500, so the provider redelivers."""
    payload = await _read_payload(request)
    if isinstance(payload, WebhookResponse):
        return payload

    try:
        return await _handle_inbound_payload(payload, db)
    except Exception as exc:
        try:
            db.rollback()
        except Exception as rollback_exc:
            logger.warning("Webhook rollback failed", extra={"context": {"error": str(rollback_exc)}})
        logger.exception("Webhook processing failed", extra={"context": {"error": str(exc)}})
        return JSONResponse(status_code=500, content={"success": False, "message": "Internal error"})
