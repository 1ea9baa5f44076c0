from labchat.models.chat_session import ChatSession
from labchat.models.lab import Lab, LabApi
from labchat.models.outbox_message import OutboxMessage
from labchat.models.whatsapp_message import WhatsAppMessage

__all__ = [
    "ChatSession",
    "Lab",
    "LabApi",
    "OutboxMessage",
    "WhatsAppMessage",
]
