from sqlalchemy import Column, Float, ForeignKey, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import relationship

from labchat.database import Base


class Lab(Base):
    __tablename__ = "labs"

    id = Column(UUID(as_uuid=True), primary_key=True)
    name = Column(Text, nullable=False)
    address = Column(Text)
    latitude = Column(Float)
    longitude = Column(Float)
    internal_whatsapp_number = Column(Text)

    apis = relationship("LabApi", back_populates="lab")
    sessions = relationship("ChatSession", back_populates="lab")


class LabApi(Base):
    """Per-lab credentials for an external API (e.g. whatsapp_outbound)."""

    __tablename__ = "labs_apis"

    id = Column(UUID(as_uuid=True), primary_key=True)
    lab_id = Column(UUID(as_uuid=True), ForeignKey("labs.id"), nullable=False)
    api_name = Column(Text, nullable=False)
    base_url = Column(Text, nullable=False)
    auth_details = Column(JSONB, nullable=False, default=dict)
    templates = Column(JSONB, default=dict)

    lab = relationship("Lab", back_populates="apis")
