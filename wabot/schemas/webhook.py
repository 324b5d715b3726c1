from typing import List, Optional

from pydantic import BaseModel, Field


class WhatsAppText(BaseModel):
    body: str = ""


class WhatsAppMessage(BaseModel):
    id: str
    from_: str = Field(alias="from")
    timestamp: Optional[str] = None
    type: str = "text"
    text: Optional[WhatsAppText] = None


class WhatsAppContact(BaseModel):
    wa_id: Optional[str] = None
    profile: Optional[dict] = None


class WhatsAppMetadata(BaseModel):
    phone_number_id: str
    display_phone_number: Optional[str] = None


class WhatsAppValue(BaseModel):
    messaging_product: Optional[str] = None
    metadata: WhatsAppMetadata
    contacts: List[WhatsAppContact] = []
    messages: List[WhatsAppMessage] = []
    statuses: List[dict] = []


class WhatsAppChange(BaseModel):
    field: Optional[str] = None
    value: WhatsAppValue


class WhatsAppEntry(BaseModel):
    id: Optional[str] = None
    changes: List[WhatsAppChange] = []


class WhatsAppWebhookPayload(BaseModel):
    object: str
    entry: List[WhatsAppEntry] = []


class InboundMessage(BaseModel):
    """Flattened text message extracted from a webhook delivery."""

    phone_number_id: str
    message_id: str
    sender: str
    text: str
    timestamp: Optional[str] = None


class WebhookResponse(BaseModel):
    success: bool
    status: str
    message_id: Optional[str] = None
    handler: Optional[str] = None
