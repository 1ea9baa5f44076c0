import uuid

from sqlalchemy import Column, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from labchat.database import Base


class WhatsAppMessage(Base):
    """Append-only log of every inbound, outbound and status message."""

    __tablename__ = "whatsapp_messages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    # Provider id; set for inbound rows only, NULLs do not collide
    message_id = Column(Text, unique=True)
    lab_id = Column(UUID(as_uuid=True))
    phone = Column(Text, nullable=False, index=True)
    message = Column(Text)
    direction = Column(Text, nullable=False)  # inbound, outbound, status
    payload = Column(JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
