from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class WebhookEnvelope(BaseModel):
    event: str
    instance: str
    data: Any = None

    @field_validator("event", "instance", mode="before")
    @classmethod
    def _require_text(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("must be a non-empty string")
        return value.strip()


class InboundMedia(BaseModel):
    media_type: str  # image, video, audio, document, sticker
    mime_type: Optional[str] = None
    url: Optional[str] = None
    file_name: Optional[str] = None
    caption: Optional[str] = None


class InboundLocation(BaseModel):
    latitude: float
    longitude: float
    name: Optional[str] = None
    address: Optional[str] = None


class InboundMessage(BaseModel):
    """Canonical inbound message decoded from a gateway envelope."""

    instance: str
    message_id: Optional[str] = None
    remote_jid: str
    from_me: bool = False
    push_name: Optional[str] = None
    alt_jid: Optional[str] = None
    text: str
    timestamp: Optional[int] = None
    media: Optional[InboundMedia] = None
    location: Optional[InboundLocation] = None
    raw: dict = Field(default_factory=dict)


class EventOutcome(BaseModel):
    status: str  # processed, duplicate, skipped, failed
    message_id: Optional[str] = None
    conversation_id: Optional[str] = None
    bot_response: Optional[str] = None
    detail: Optional[str] = None


class WebhookResponse(BaseModel):
    success: bool
    message: str
    event: Optional[str] = None
    results: list[EventOutcome] = Field(default_factory=list)
