import uuid

from sqlalchemy import Column, ForeignKey, Index, Integer, Text, text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from labchat.database import Base


class ChatSession(Base):
    __tablename__ = "chat_sessions"
    __table_args__ = (
        # One open (active or handoff) conversation per phone
        Index(
            "uq_chat_sessions_open_phone",
            "phone",
            unique=True,
            postgresql_where=text("status <> 'completed'"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    phone = Column(Text, nullable=False, index=True)
    lab_id = Column(UUID(as_uuid=True), ForeignKey("labs.id"))
    current_state = Column(Text, nullable=False, default="START")
    context = Column(JSONB, nullable=False, default=dict)
    status = Column(Text, nullable=False, default="active")  # active, handoff, completed
    version = Column(Integer, nullable=False, default=0)
    last_user_message_at = Column(TIMESTAMP(timezone=True))
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False)

    lab = relationship("Lab", back_populates="sessions")
