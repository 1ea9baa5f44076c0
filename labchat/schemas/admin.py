from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class SessionSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    phone: str
    lab_id: Optional[UUID] = None
    current_state: str
    status: str
    context: dict[str, Any] = Field(default_factory=dict)
    last_user_message_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class MessageLogItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    message_id: Optional[str] = None
    phone: str
    message: Optional[str] = None
    direction: str
    created_at: Optional[datetime] = None


class OperatorReplyRequest(BaseModel):
    message: str = Field(min_length=1)


class OperatorActionResponse(BaseModel):
    success: bool
    phone: str
    status: Optional[str] = None
    message: Optional[str] = None
