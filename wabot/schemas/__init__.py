from wabot.schemas.admin import BulkLoadRequest, BulkLoadResponse, FaqRefreshResponse, IntentIn
from wabot.schemas.webhook import InboundMessage, WebhookResponse, WhatsAppWebhookPayload

__all__ = [
    "BulkLoadRequest",
    "BulkLoadResponse",
    "FaqRefreshResponse",
    "InboundMessage",
    "IntentIn",
    "WebhookResponse",
    "WhatsAppWebhookPayload",
]
