from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class NormalizedMessage(BaseModel):
    """Canonical inbound message, whatever payload shape it arrived in."""

    message_id: str
    from_phone: str
    text: Optional[str] = None
    button_id: Optional[str] = None  # interactive button or list reply id
    raw_message: dict[str, Any] = Field(default_factory=dict)
    # Request body exactly as received, kept for the audit log
    raw_payload: Any = None

    @property
    def user_input(self) -> Optional[str]:
        return self.text or self.button_id


class WebhookResponse(BaseModel):
    success: bool
    message: Optional[str] = None
    session_id: Optional[UUID] = None
    state: Optional[str] = None
