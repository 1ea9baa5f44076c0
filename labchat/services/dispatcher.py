"""Turns engine transitions into persisted state and outbox actions, and delivers them."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable

from sqlalchemy.orm import Session

from labchat.logging_config import get_logger
from labchat.models import ChatSession, Lab
from labchat.services.booking_service import (
    MSG_BOOKING_FAILED,
    MSG_BOOKING_RECEIVED,
    BookingError,
    build_booking_failed_notice,
    build_quickbook_payload,
    create_quickbook,
)
from labchat.services.engine import ReplyType, Transition
from labchat.services.lab_service import get_lab
from labchat.services.outbox_service import (
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SENT,
    enqueue_outbox_action,
    mark_outbox_status,
    update_outbox_payload,
)
from labchat.services.session_store import handoff_to_human, update_session
from labchat.services.whatsapp_service import (
    DeliveryError,
    send_location_message,
    send_main_menu,
    send_more_services_menu,
    send_text_message,
)

logger = get_logger("dispatcher")

# Follow-up rows for a failed action sort after the turn's own replies
FOLLOW_UP_SEQ_OFFSET = 100


class ActionType(str, Enum):
    SEND_TEXT = "SEND_TEXT"
    SEND_MAIN_MENU = "SEND_MAIN_MENU"
    SEND_MORE_SERVICES = "SEND_MORE_SERVICES"
    SEND_LOCATION = "SEND_LOCATION"
    CALL_QUICKBOOK = "CALL_QUICKBOOK"


@dataclass
class OutboundAction:
    action_type: ActionType
    payload: dict[str, Any] = field(default_factory=dict)


def _text_action(phone: str, text: str) -> OutboundAction:
    return OutboundAction(ActionType.SEND_TEXT, {"phone": phone, "text": text})


def _main_menu_action(phone: str) -> OutboundAction:
    return OutboundAction(ActionType.SEND_MAIN_MENU, {"phone": phone})


# Planners

def _plan_text(transition: Transition, phone: str, lab: Lab) -> list[OutboundAction]:
    if not transition.reply_text:
        return [_main_menu_action(phone)]
    return [_text_action(phone, transition.reply_text)]


def _plan_main_menu(transition: Transition, phone: str, lab: Lab) -> list[OutboundAction]:
    return [_main_menu_action(phone)]


def _plan_more_services(transition: Transition, phone: str, lab: Lab) -> list[OutboundAction]:
    return [OutboundAction(ActionType.SEND_MORE_SERVICES, {"phone": phone})]


def _plan_location(transition: Transition, phone: str, lab: Lab) -> list[OutboundAction]:
    if lab.latitude is None or lab.longitude is None:
        logger.warning(
            "Lab has no coordinates, sending main menu instead",
            extra={"context": {"lab_id": str(lab.id), "phone": phone}},
        )
        return [_main_menu_action(phone)]
    return [
        OutboundAction(
            ActionType.SEND_LOCATION,
            {
                "phone": phone,
                "latitude": lab.latitude,
                "longitude": lab.longitude,
                "name": lab.name,
                "address": lab.address,
            },
        )
    ]


def _plan_quickbook(transition: Transition, phone: str, lab: Lab) -> list[OutboundAction]:
    return [
        OutboundAction(
            ActionType.CALL_QUICKBOOK,
            {
                "phone": phone,
                "booking": build_quickbook_payload(phone, transition.context),
                "confirmation_text": MSG_BOOKING_RECEIVED,
                "booking_done": False,
            },
        )
    ]


def _plan_handoff(transition: Transition, phone: str, lab: Lab) -> list[OutboundAction]:
    # The status change itself happens in apply_transition
    return _plan_text(transition, phone, lab)


def _plan_internal_notify(transition: Transition, phone: str, lab: Lab) -> list[OutboundAction]:
    actions = []
    if lab.internal_whatsapp_number and transition.notify_text:
        actions.append(_text_action(lab.internal_whatsapp_number, transition.notify_text))
    else:
        logger.warning(
            "Lab has no internal WhatsApp number, notification skipped",
            extra={"context": {"lab_id": str(lab.id), "phone": phone}},
        )
    if transition.reply_text:
        actions.append(_text_action(phone, transition.reply_text))
    return actions


Planner = Callable[[Transition, str, Lab], list[OutboundAction]]

_PLANNERS: dict[ReplyType, Planner] = {
    ReplyType.TEXT: _plan_text,
    ReplyType.MAIN_MENU: _plan_main_menu,
    ReplyType.MORE_SERVICES_MENU: _plan_more_services,
    ReplyType.SEND_LOCATION: _plan_location,
    ReplyType.CALL_QUICKBOOK: _plan_quickbook,
    ReplyType.HANDOFF: _plan_handoff,
    ReplyType.INTERNAL_NOTIFY: _plan_internal_notify,
}

_unplanned = set(ReplyType) - set(_PLANNERS)
if _unplanned:
    raise RuntimeError(f"Reply types without a planner: {sorted(r.value for r in _unplanned)}")


def plan_actions(transition: Transition, *, phone: str, lab: Lab) -> list[OutboundAction]:
    """Ordered outbound actions for a transition. Unknown reply types get the main menu."""
    planner = _PLANNERS.get(transition.reply_type)
    if planner is None:
        logger.warning(
            "Unknown reply type, sending main menu",
            extra={"context": {"reply_type": str(transition.reply_type), "phone": phone}},
        )
        return [_main_menu_action(phone)]
    return planner(transition, phone, lab)


def apply_transition(
    db: Session,
    *,
    session: ChatSession,
    transition: Transition,
    lab: Lab,
    inbound_message_id: str,
) -> list[OutboundAction]:
    """Persist the transition and queue its replies. The caller commits.

    Raises StaleSessionError when the session moved on since it was read.
    """
    update_session(
        db,
        session.id,
        transition.new_state,
        transition.context,
        expected_version=session.version or 0,
    )
    if transition.reply_type == ReplyType.HANDOFF:
        handoff_to_human(db, session.id)

    actions = plan_actions(transition, phone=session.phone, lab=lab)
    for seq, action in enumerate(actions):
        enqueue_outbox_action(
            db,
            lab_id=lab.id,
            session_id=session.id,
            inbound_message_id=inbound_message_id,
            seq=seq,
            action_type=action.action_type.value,
            payload_json=action.payload,
        )
    logger.info(
        "Transition applied",
        extra={
            "context": {
                "session_id": str(session.id),
                "new_state": transition.new_state.value,
                "reply_type": transition.reply_type.value,
                "actions": [action.action_type.value for action in actions],
            }
        },
    )
    return actions


# Executors

def _execute_text(db: Session, lab_id, payload: dict, outbox_id) -> None:
    send_text_message(db, lab_id=lab_id, phone=payload["phone"], text=payload["text"])


def _execute_main_menu(db: Session, lab_id, payload: dict, outbox_id) -> None:
    send_main_menu(db, lab_id=lab_id, phone=payload["phone"])


def _execute_more_services(db: Session, lab_id, payload: dict, outbox_id) -> None:
    send_more_services_menu(db, lab_id=lab_id, phone=payload["phone"])


def _execute_location(db: Session, lab_id, payload: dict, outbox_id) -> None:
    send_location_message(
        db,
        lab_id=lab_id,
        phone=payload["phone"],
        latitude=payload["latitude"],
        longitude=payload["longitude"],
        name=payload.get("name"),
        address=payload.get("address"),
    )


def _execute_quickbook(db: Session, lab_id, payload: dict, outbox_id) -> None:
    if not payload.get("booking_done"):
        create_quickbook(payload["booking"])
        payload = {**payload, "booking_done": True}
        if outbox_id is not None:
            update_outbox_payload(db, outbox_id=outbox_id, payload_json=payload)
    send_text_message(
        db,
        lab_id=lab_id,
        phone=payload["phone"],
        text=payload.get("confirmation_text") or MSG_BOOKING_RECEIVED,
    )


_EXECUTORS: dict[ActionType, Callable[[Session, Any, dict, Any], None]] = {
    ActionType.SEND_TEXT: _execute_text,
    ActionType.SEND_MAIN_MENU: _execute_main_menu,
    ActionType.SEND_MORE_SERVICES: _execute_more_services,
    ActionType.SEND_LOCATION: _execute_location,
    ActionType.CALL_QUICKBOOK: _execute_quickbook,
}


def execute_action(db: Session, *, lab_id, action_type: str, payload: dict, outbox_id=None) -> None:
    """Perform one outbound action. DeliveryError means try again later."""
    _EXECUTORS[ActionType(action_type)](db, lab_id, payload, outbox_id)


def deliver_outbox_rows(
    db: Session,
    rows: list[dict],
    *,
    max_attempts: int,
    retry_backoff_seconds: float,
) -> dict[str, int]:
    results = {"claimed": len(rows), "sent": 0, "failed": 0, "retry_scheduled": 0}

    for row in rows:
        outbox_id = row.get("id")
        if not outbox_id:
            continue
        context = {
            "outbox_id": str(outbox_id),
            "action_type": row.get("action_type"),
            "inbound_message_id": row.get("inbound_message_id"),
            "attempts": row.get("attempts"),
        }
        try:
            execute_action(
                db,
                lab_id=row.get("lab_id"),
                action_type=row.get("action_type"),
                payload=row.get("payload_json") or {},
                outbox_id=outbox_id,
            )
        except DeliveryError as exc:
            # The failed attempt is already in the message log; keep it
            attempts = int(row.get("attempts") or 0)
            if not exc.retryable or attempts >= max_attempts:
                logger.error("Outbox delivery failed", extra={"context": {**context, "error": str(exc)}})
                if isinstance(exc, BookingError):
                    _queue_booking_failure_replies(db, row, str(exc))
                mark_outbox_status(db, outbox_id=outbox_id, status=STATUS_FAILED, last_error=str(exc)[:500])
                results["failed"] += 1
                continue
            backoff = retry_backoff_seconds * (2 ** max(attempts - 1, 0))
            next_attempt_at = datetime.now(timezone.utc) + timedelta(seconds=backoff)
            logger.warning(
                "Outbox delivery retry scheduled",
                extra={"context": {**context, "error": str(exc), "backoff_seconds": backoff}},
            )
            mark_outbox_status(
                db,
                outbox_id=outbox_id,
                status=STATUS_PENDING,
                last_error=str(exc)[:500],
                next_attempt_at=next_attempt_at,
            )
            results["retry_scheduled"] += 1
            continue
        except Exception as exc:
            _rollback(db)
            logger.exception("Outbox action crashed", extra={"context": {**context, "error": str(exc)}})
            mark_outbox_status(
                db,
                outbox_id=outbox_id,
                status=STATUS_FAILED,
                last_error=f"{type(exc).__name__}: {exc}"[:500],
            )
            results["failed"] += 1
            continue

        mark_outbox_status(db, outbox_id=outbox_id, status=STATUS_SENT)
        results["sent"] += 1
        logger.info("Outbox delivered", extra={"context": context})

    return results


def _queue_booking_failure_replies(db: Session, row: dict, error: str) -> None:
    """Tell the user and the lab's staff that a booking could not be placed."""
    payload = row.get("payload_json") or {}
    phone = payload.get("phone")
    if not phone:
        return

    actions = []
    lab = get_lab(db, row.get("lab_id"))
    if lab is not None and lab.internal_whatsapp_number:
        notice = build_booking_failed_notice(payload.get("booking") or {"phone": phone}, error)
        actions.append(_text_action(lab.internal_whatsapp_number, notice))
    else:
        logger.warning(
            "Lab has no internal WhatsApp number, booking failure not reported",
            extra={"context": {"lab_id": str(row.get("lab_id")), "phone": phone}},
        )
    actions.append(_text_action(phone, MSG_BOOKING_FAILED))

    base_seq = int(row.get("seq") or 0) + FOLLOW_UP_SEQ_OFFSET
    for offset, action in enumerate(actions):
        enqueue_outbox_action(
            db,
            lab_id=row.get("lab_id"),
            session_id=row.get("session_id"),
            inbound_message_id=row.get("inbound_message_id"),
            seq=base_seq + offset,
            action_type=action.action_type.value,
            payload_json=action.payload,
        )
    logger.info(
        "Booking failure replies queued",
        extra={"context": {"outbox_id": str(row.get("id")), "phone": phone, "count": len(actions)}},
    )


def _rollback(db: Session) -> None:
    try:
        db.rollback()
    except Exception as exc:
        logger.warning("Outbox rollback failed", extra={"context": {"error": str(exc)}})

