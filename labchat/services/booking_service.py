"""Home-visit booking through the lab's quickbook endpoint."""

import httpx

from labchat.config import settings
from labchat.logging_config import get_logger
from labchat.services.engine import Slot, get_slot
from labchat.services.whatsapp_service import DeliveryError, is_retryable_status

logger = get_logger("booking_service")

MSG_BOOKING_RECEIVED = "Your booking request has been received. Our team will contact you shortly."
MSG_BOOKING_FAILED = "We couldn't place your booking right now. Our team will contact you shortly."
DEFAULT_PATIENT_NAME = "WhatsApp User"


class BookingError(DeliveryError):
    pass


def build_booking_failed_notice(booking: dict, error: str) -> str:
    """Staff alert for a booking the quickbook endpoint never accepted."""
    return (
        "⚠️ Booking Failed\n"
        f"Phone: {booking.get('phone')}\n"
        f"Tests: {booking.get('packageName')}\n"
        f"Area: {booking.get('area')}\n"
        f"Date: {booking.get('date')}\n"
        f"Slot: {booking.get('timeslot')}\n"
        f"Error: {error}"
    )


def build_quickbook_payload(phone: str, context: dict) -> dict:
    return {
        "patientName": DEFAULT_PATIENT_NAME,
        "phone": phone,
        "packageName": get_slot(context, Slot.TESTS),
        "area": get_slot(context, Slot.AREA),
        "date": get_slot(context, Slot.SELECTED_DATE),
        "timeslot": get_slot(context, Slot.SELECTED_SLOT),
        "persons": 1,
        "whatsapp": True,
        "agree": True,
    }


def create_quickbook(payload: dict) -> dict:
    """Submit a booking request. Raises BookingError if the lab does not accept it."""
    try:
        with httpx.Client(timeout=settings.quickbook_timeout_seconds) as client:
            response = client.post(settings.quickbook_url, json=payload)
    except httpx.HTTPError as exc:
        logger.error("Quickbook request failed", extra={"context": {"phone": payload.get("phone"), "error": str(exc)}})
        raise BookingError(f"Quickbook request failed: {exc}") from exc

    if not response.is_success:
        logger.error(
            "Quickbook rejected booking",
            extra={
                "context": {
                    "phone": payload.get("phone"),
                    "status": response.status_code,
                    "body": response.text[:200],
                }
            },
        )
        raise BookingError(
            f"Quickbook failed: {response.status_code}",
            status_code=response.status_code,
            retryable=is_retryable_status(response.status_code),
        )

    try:
        result = response.json()
    except ValueError:
        result = {"raw": response.text}

    logger.info("Quickbook booking created", extra={"context": {"phone": payload.get("phone")}})
    return result if isinstance(result, dict) else {"raw": result}
