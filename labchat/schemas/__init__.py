from labchat.schemas.admin import MessageLogItem, OperatorActionResponse, OperatorReplyRequest, SessionSummary
from labchat.schemas.webhook import NormalizedMessage, WebhookResponse

__all__ = [
    "NormalizedMessage",
    "WebhookResponse",
    "SessionSummary",
    "MessageLogItem",
    "OperatorReplyRequest",
    "OperatorActionResponse",
]
