"""Outbound WhatsApp delivery through the lab's configured provider API."""

import json
from typing import Any, Optional
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from labchat.config import settings
from labchat.logging_config import get_logger
from labchat.models import LabApi
from labchat.services.engine import Command
from labchat.services.lab_service import get_lab_api
from labchat.services.message_log import DIRECTION_OUTBOUND, DIRECTION_STATUS, log_outbound_message

logger = get_logger("whatsapp_service")

DEFAULT_MAIN_MENU_TEXT = "Welcome to our lab 👋\n\nHow can we assist you today?"
DEFAULT_MORE_SERVICES_TEXT = "More Services 👇"

RETRYABLE_STATUS_CODES = {408, 425, 429}


class DeliveryError(Exception):
    """An external delivery failed. `retryable` tells the outbox whether to try again."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, retryable: bool = True):
        self.message = message
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(message)


class WhatsAppConfigError(DeliveryError):
    """The lab has no usable outbound API row. Retrying will not help."""

    def __init__(self, message: str):
        super().__init__(message, retryable=False)


def is_retryable_status(status_code: int) -> bool:
    return status_code >= 500 or status_code in RETRYABLE_STATUS_CODES


def get_whatsapp_config(db: Session, lab_id: UUID) -> LabApi:
    config = get_lab_api(db, lab_id)
    if not config or not config.base_url:
        raise WhatsAppConfigError(f"WhatsApp API config not found for lab {lab_id}")
    return config


def _template_text(config: LabApi, key: str, default: str) -> str:
    templates = config.templates if isinstance(config.templates, dict) else {}
    value = templates.get(key)
    return value if isinstance(value, str) and value.strip() else default


def _parse_response(response: httpx.Response) -> dict:
    raw = response.text
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        return {"raw": raw}
    return parsed if isinstance(parsed, dict) else {"raw": parsed}


def _envelope(phone: str, message_type: str, body: dict[str, Any]) -> dict:
    return {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": phone,
        "type": message_type,
        message_type: body,
    }


def build_text_payload(phone: str, text: str) -> dict:
    return _envelope(phone, "text", {"body": text})


def build_main_menu_payload(phone: str, body_text: str = DEFAULT_MAIN_MENU_TEXT) -> dict:
    buttons = [
        (Command.REQUEST_REPORTS, "🧾 Request Reports"),
        (Command.BOOK_HOME_VISIT, "🏠 Book Home Visit"),
        (Command.MORE_SERVICES, "➕ More Services"),
    ]
    return _envelope(
        phone,
        "interactive",
        {
            "type": "button",
            "body": {"text": body_text},
            "action": {
                "buttons": [
                    {"type": "reply", "reply": {"id": command.value, "title": title}} for command, title in buttons
                ]
            },
        },
    )


def build_more_services_payload(phone: str, body_text: str = DEFAULT_MORE_SERVICES_TEXT) -> dict:
    rows = [
        (Command.TALK_EXECUTIVE, "👤 Talk to Executive"),
        (Command.LAB_TIMINGS, "🕒 Lab Timings"),
        (Command.SEND_LOCATION, "📍 Send Lab Location"),
        (Command.FEEDBACK, "⭐ Feedback"),
    ]
    return _envelope(
        phone,
        "interactive",
        {
            "type": "list",
            "body": {"text": body_text},
            "action": {
                "button": "View Services",
                "sections": [
                    {
                        "title": "Customer Support",
                        "rows": [{"id": command.value, "title": title} for command, title in rows],
                    }
                ],
            },
        },
    )


def build_location_payload(
    phone: str,
    *,
    latitude: float,
    longitude: float,
    name: Optional[str],
    address: Optional[str],
) -> dict:
    return _envelope(
        phone,
        "location",
        {"latitude": latitude, "longitude": longitude, "name": name, "address": address},
    )


def send_whatsapp(
    db: Session,
    *,
    lab_id: UUID,
    phone: str,
    payload: dict,
    log_text: Optional[str] = None,
    config: Optional[LabApi] = None,
) -> dict:
    """POST one message to the provider and log the attempt. Raises DeliveryError."""
    config = config or get_whatsapp_config(db, lab_id)
    auth = config.auth_details if isinstance(config.auth_details, dict) else {}
    headers = {"Content-Type": "application/json", "X-API-KEY": auth.get("api_key") or ""}
    log_text = log_text or json.dumps(payload, ensure_ascii=False)

    try:
        with httpx.Client(timeout=settings.whatsapp_timeout_seconds) as client:
            response = client.post(config.base_url, json=payload, headers=headers)
    except httpx.HTTPError as exc:
        log_outbound_message(
            db,
            lab_id=lab_id,
            phone=phone,
            text=log_text,
            direction=DIRECTION_STATUS,
            payload={"request": payload, "error": str(exc)},
        )
        logger.error("WhatsApp request failed", extra={"context": {"phone": phone, "error": str(exc)}})
        raise DeliveryError(f"WhatsApp request failed: {exc}") from exc

    result = _parse_response(response)
    ok = response.is_success
    log_outbound_message(
        db,
        lab_id=lab_id,
        phone=phone,
        text=log_text,
        direction=DIRECTION_OUTBOUND if ok else DIRECTION_STATUS,
        payload={"request": payload, "response": result},
    )

    if not ok:
        logger.error(
            "WhatsApp send rejected",
            extra={"context": {"phone": phone, "status": response.status_code, "body": response.text[:200]}},
        )
        raise DeliveryError(
            result.get("message") or f"WhatsApp failed: {response.status_code} {response.text[:200]}",
            status_code=response.status_code,
            retryable=is_retryable_status(response.status_code),
        )

    logger.info("WhatsApp message sent", extra={"context": {"phone": phone, "type": payload.get("type")}})
    return result


def send_text_message(db: Session, *, lab_id: UUID, phone: str, text: str) -> dict:
    return send_whatsapp(db, lab_id=lab_id, phone=phone, payload=build_text_payload(phone, text), log_text=text)


def send_main_menu(db: Session, *, lab_id: UUID, phone: str) -> dict:
    config = get_whatsapp_config(db, lab_id)
    body_text = _template_text(config, "main_menu_text", DEFAULT_MAIN_MENU_TEXT)
    return send_whatsapp(
        db,
        lab_id=lab_id,
        phone=phone,
        payload=build_main_menu_payload(phone, body_text),
        log_text="Main Menu Sent",
        config=config,
    )


def send_more_services_menu(db: Session, *, lab_id: UUID, phone: str) -> dict:
    config = get_whatsapp_config(db, lab_id)
    body_text = _template_text(config, "more_services_text", DEFAULT_MORE_SERVICES_TEXT)
    return send_whatsapp(
        db,
        lab_id=lab_id,
        phone=phone,
        payload=build_more_services_payload(phone, body_text),
        log_text="More Services Menu Sent",
        config=config,
    )


def send_location_message(
    db: Session,
    *,
    lab_id: UUID,
    phone: str,
    latitude: float,
    longitude: float,
    name: Optional[str] = None,
    address: Optional[str] = None,
) -> dict:
    payload = build_location_payload(phone, latitude=latitude, longitude=longitude, name=name, address=address)
    return send_whatsapp(db, lab_id=lab_id, phone=phone, payload=payload, log_text="Location Sent")
