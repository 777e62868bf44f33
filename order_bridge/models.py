from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictStr

ORDER_STATUS_RECEIVED = "Reçu"


class Sender(BaseModel):
    """Page-scoped identity of a conversation participant."""
    id: str


class QuickReply(BaseModel):
    """Quick reply selection attached to a text message."""
    payload: str = ""


class Attachment(BaseModel):
    """Media or fallback attachment on an inbound message."""
    type: str
    payload: Optional[Dict[str, Any]] = None


class IncomingMessage(BaseModel):
    """Message body of a messaging event."""
    mid: Optional[str] = None
    text: Optional[str] = None
    is_echo: bool = False
    quick_reply: Optional[QuickReply] = None
    attachments: List[Attachment] = Field(default_factory=list)


class Postback(BaseModel):
    """Button postback of a messaging event."""
    mid: Optional[str] = None
    title: Optional[str] = None
    payload: Optional[str] = None


class MessagingEvent(BaseModel):
    """Single entry of the webhook `messaging` array."""
    sender: Sender
    recipient: Optional[Sender] = None
    timestamp: Optional[int] = None
    message: Optional[IncomingMessage] = None
    postback: Optional[Postback] = None
    delivery: Optional[Dict[str, Any]] = None
    read: Optional[Dict[str, Any]] = None


class WebhookEntry(BaseModel):
    """One page entry of a webhook delivery."""
    id: Optional[str] = None
    time: Optional[int] = None
    messaging: List[MessagingEvent] = Field(default_factory=list)


class WebhookPayload(BaseModel):
    """Top-level webhook request body."""
    object: str
    entry: List[WebhookEntry] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Response payload for the health endpoint."""
    status: str
    dedup_backend: str


class OrderPayload(BaseModel):
    """Structured order block emitted by the model; field names are the wire format."""
    model_config = ConfigDict(extra="ignore")

    order_confirmed: StrictBool
    customer_name: StrictStr
    phone_number: StrictStr
    address: StrictStr
    items: StrictStr
    total: StrictStr

    def missing_fields(self) -> List[str]:
        """Return required string fields that are blank after trimming."""
        required = ("customer_name", "phone_number", "address", "items")
        return [name for name in required if not getattr(self, name).strip()]


class OrderRecord(BaseModel):
    """Normalized order row handed to persistence."""
    customer_name: str
    phone_number: str
    address: str
    items: str
    total: str
    status: str = ORDER_STATUS_RECEIVED

    @classmethod
    def from_payload(cls, payload: OrderPayload) -> "OrderRecord":
        return cls(
            customer_name=payload.customer_name.strip(),
            phone_number=payload.phone_number.strip(),
            address=payload.address.strip(),
            items=payload.items.strip(),
            total=payload.total.strip(),
        )
