from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from labchat.models import Lab, LabApi

WHATSAPP_OUTBOUND_API = "whatsapp_outbound"


def get_lab(db: Session, lab_id: Optional[UUID]) -> Optional[Lab]:
    if not lab_id:
        return None
    return db.query(Lab).filter(Lab.id == lab_id).first()


def get_lab_api(db: Session, lab_id: UUID, api_name: str = WHATSAPP_OUTBOUND_API) -> Optional[LabApi]:
    return db.query(LabApi).filter(LabApi.lab_id == lab_id, LabApi.api_name == api_name).first()
